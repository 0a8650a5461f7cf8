from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from app.models.therapy_session import SessionStatus
from app.services.session_values import clamp_percent


class SessionCreate(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    psychologist_user_id: Optional[int] = None
    patient_user_id: Optional[int] = None
    starts_on: Optional[datetime] = None
    ends_on: Optional[datetime] = None
    price: Optional[float] = Field(default=None, ge=0)
    percent_psych: Optional[float] = None
    status: SessionStatus = SessionStatus.scheduled
    paid: bool = False
    notes: Optional[str] = None

    @field_validator("percent_psych")
    @classmethod
    def _clamp_percent(cls, value):
        return None if value is None else clamp_percent(value)


class SessionUpdate(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    patient_user_id: Optional[int] = None
    starts_on: Optional[datetime] = None
    ends_on: Optional[datetime] = None
    price: Optional[float] = Field(default=None, ge=0)
    percent_psych: Optional[float] = None
    status: Optional[SessionStatus] = None
    paid: Optional[bool] = None
    notes: Optional[str] = None

    @field_validator("percent_psych")
    @classmethod
    def _clamp_percent(cls, value):
        return None if value is None else clamp_percent(value)


class AssignBonoRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    bonus_id: int


class SessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    psychologist_user_id: int
    patient_user_id: Optional[int] = None
    starts_on: Optional[datetime] = None
    ends_on: Optional[datetime] = None
    price: float
    percent_psych: float
    status: SessionStatus
    paid: bool
    invoice_id: Optional[int] = None
    bonus_id: Optional[int] = None
    notes: Optional[str] = None
    duration_hours: float
    total_price: float
    psychologist_earnings: float


class BonoAssignmentOut(BaseModel):
    session: SessionOut
    sessions_remaining: int
