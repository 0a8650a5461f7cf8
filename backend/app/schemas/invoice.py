from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.models.invoice import InvoiceStatus, InvoiceType

STATUS_ONLY_TRANSITIONS = frozenset({InvoiceStatus.paid, InvoiceStatus.pending})


class InvoiceItem(BaseModel):
    description: str
    quantity: float = 1
    unit_price: float = 0

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InvoiceCreate(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    psychologist_user_id: Optional[int] = None
    patient_user_id: Optional[int] = None
    center_id: Optional[int] = None
    invoice_type: InvoiceType = InvoiceType.patient
    invoice_number: Optional[str] = Field(default=None, max_length=32)
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    status: Optional[str] = None
    description: Optional[str] = None
    items: list[InvoiceItem] = Field(default_factory=list)
    session_ids: list[int] = Field(default_factory=list)
    bono_ids: list[int] = Field(default_factory=list)
    amount: float = Field(default=0, ge=0)
    tax: Optional[float] = Field(default=None, ge=0)
    tax_rate: Optional[float] = Field(default=None, ge=0, le=100)
    irpf_percent: Optional[float] = Field(default=None, ge=0, le=100)
    total: Optional[float] = None


class InvoiceUpdate(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    invoice_number: Optional[str] = Field(default=None, max_length=32)
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    status: Optional[InvoiceStatus] = None
    description: Optional[str] = None
    items: Optional[list[InvoiceItem]] = None
    session_ids: Optional[list[int]] = None
    bono_ids: Optional[list[int]] = None
    amount: Optional[float] = Field(default=None, ge=0)
    tax: Optional[float] = Field(default=None, ge=0)
    tax_rate: Optional[float] = Field(default=None, ge=0, le=100)
    irpf_percent: Optional[float] = Field(default=None, ge=0, le=100)
    total: Optional[float] = None

    def status_transition(self) -> Optional[InvoiceStatus]:
        """Return the target status when the patch is a bare mark-as-paid/pending."""
        if self.model_fields_set == {"status"} and self.status in STATUS_ONLY_TRANSITIONS:
            return self.status
        return None


class RectifyRequest(BaseModel):
    reason: Optional[str] = None


class InvoiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    psychologist_user_id: int
    patient_user_id: Optional[int] = None
    center_id: Optional[int] = None
    invoice_type: InvoiceType
    invoice_number: str
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    status: InvoiceStatus
    description: Optional[str] = None
    items: list[dict]
    session_ids: list[int]
    bono_ids: list[int]
    amount: float
    tax: float
    tax_rate: float
    irpf_percent: Optional[float] = None
    irpf_amount: float
    total: float
    billing_client_name: Optional[str] = None
    billing_client_address: Optional[str] = None
    billing_client_tax_id: Optional[str] = None
    billing_psychologist_name: Optional[str] = None
    billing_psychologist_address: Optional[str] = None
    billing_psychologist_tax_id: Optional[str] = None
    is_rectificativa: bool
    rectifies_invoice_id: Optional[int] = None
    rectified_by_invoice_id: Optional[int] = None
    rectification_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class RectificationOut(BaseModel):
    original: InvoiceOut
    rectificativa: InvoiceOut
