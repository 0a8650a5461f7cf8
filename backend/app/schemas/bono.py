from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class BonoCreate(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    psychologist_user_id: Optional[int] = None
    patient_user_id: int
    total_sessions_amount: int = Field(ge=1)
    total_price_bono_amount: float = Field(ge=0)
    paid: bool = False


class BonoUpdate(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    total_sessions_amount: Optional[int] = Field(default=None, ge=1)
    total_price_bono_amount: Optional[float] = Field(default=None, ge=0)
    paid: Optional[bool] = None


class BonoOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    psychologist_user_id: int
    patient_user_id: int
    total_sessions_amount: int
    total_price_bono_amount: float
    paid: bool
    invoice_id: Optional[int] = None
    created_at: datetime
    sessions_used: int = 0
    sessions_remaining: int = 0
