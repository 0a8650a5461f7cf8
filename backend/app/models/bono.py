from __future__ import annotations

from sqlalchemy import Boolean, Float, ForeignKey, Integer
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin


class Bono(Base, TimestampMixin):
    __tablename__ = "bono"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    psychologist_user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id"), nullable=False, index=True
    )
    patient_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    total_sessions_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    total_price_bono_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    invoice_id: Mapped[int | None] = mapped_column(
        ForeignKey("invoices.id"), nullable=True, index=True
    )
