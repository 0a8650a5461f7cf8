from typing import Optional

from pydantic import BaseModel, ConfigDict

from app.schemas.bono import BonoOut
from app.schemas.session import SessionOut


class UnbilledOut(BaseModel):
    sessions: list[SessionOut]
    bonos: list[BonoOut]


class MonthlyPointOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    month: str
    sessions: int
    revenue: float


class PatientStatsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    patient_user_id: int
    psychologist_user_id: int
    total_sessions: int
    completed_sessions: int
    scheduled_sessions: int
    cancelled_sessions: int
    total_hours: float
    total_revenue: float
    psychologist_earnings: float
    paid_sessions: int
    unpaid_sessions: int
    paid_amount: float
    unpaid_amount: float
    total_invoiced: float
    total_collected: float
    total_pending: float
    active_bonos: int
    bono_sessions_remaining: int
    monthly: list[MonthlyPointOut]


class CarePatientOut(BaseModel):
    id: int
    email: str
    name: str
    center_id: Optional[int] = None
    center_name: Optional[str] = None
