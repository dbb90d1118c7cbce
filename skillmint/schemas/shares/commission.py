import datetime
import decimal
import uuid
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CommissionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_id: uuid.UUID
    course_id: uuid.UUID
    referred_user_id: uuid.UUID
    level: int
    percentage: decimal.Decimal
    order_amount: int
    amount: int
    currency: str
    status: str
    hold_period: str
    hold_until: datetime.datetime
    is_flagged: bool
    created_at: datetime.datetime
    paid_at: Optional[datetime.datetime] = None


class CommissionModerateSchema(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class ReferralLinkSchema(BaseModel):
    referral_code: str = Field(..., min_length=3, max_length=20)
