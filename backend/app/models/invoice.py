from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin


class InvoiceStatus(str, enum.Enum):
    draft = "draft"
    pending = "pending"
    paid = "paid"
    overdue = "overdue"
    cancelled = "cancelled"


ISSUED_STATUSES = frozenset({InvoiceStatus.pending, InvoiceStatus.paid, InvoiceStatus.overdue})


class InvoiceType(str, enum.Enum):
    patient = "patient"
    center = "center"


class Invoice(Base, TimestampMixin):
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint(
            "psychologist_user_id", "invoice_number", name="uq_invoices_psychologist_number"
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    psychologist_user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id"), nullable=False, index=True
    )
    patient_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id"), nullable=True, index=True
    )
    center_id: Mapped[int | None] = mapped_column(
        ForeignKey("centers.id"), nullable=True, index=True
    )
    invoice_type: Mapped[InvoiceType] = mapped_column(
        Enum(InvoiceType, name="invoice_type"), nullable=False, default=InvoiceType.patient
    )
    invoice_number: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    invoice_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[InvoiceStatus] = mapped_column(
        Enum(InvoiceStatus, name="invoice_status"),
        nullable=False,
        default=InvoiceStatus.draft,
        index=True,
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    session_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    bono_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    amount: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    tax: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    tax_rate: Mapped[float] = mapped_column(Float, nullable=False, default=21.0)
    irpf_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    irpf_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    total: Mapped[float] = mapped_column(Float, nullable=False, default=0)

    billing_client_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    billing_client_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    billing_client_tax_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    billing_psychologist_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    billing_psychologist_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    billing_psychologist_tax_id: Mapped[str | None] = mapped_column(String(32), nullable=True)

    is_rectificativa: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    rectifies_invoice_id: Mapped[int | None] = mapped_column(
        ForeignKey("invoices.id"), nullable=True
    )
    rectified_by_invoice_id: Mapped[int | None] = mapped_column(
        ForeignKey("invoices.id"), nullable=True
    )
    rectification_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_editable(self) -> bool:
        return self.status == InvoiceStatus.draft
