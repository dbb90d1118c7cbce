import datetime
import uuid
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from skillmint.core.enum import WithdrawalMethod


class WithdrawRequestSchema(BaseModel):
    amount: int = Field(..., gt=0, description="Minor units")
    method: WithdrawalMethod
    account_details: dict[str, Any] = Field(default_factory=dict)


class WithdrawReviewSchema(BaseModel):
    notes: Optional[str] = Field(None, max_length=1000)


class WithdrawRejectSchema(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class WithdrawSettleSchema(BaseModel):
    outcome: Literal["completed", "failed"]
    external_reference: Optional[str] = Field(None, max_length=100)
    reason: Optional[str] = Field(None, max_length=1000)

    @model_validator(mode="after")
    def _check_outcome(self):
        if self.outcome == "completed" and not self.external_reference:
            raise ValueError("external_reference is required for a completed settlement")
        if self.outcome == "failed" and not self.reason:
            raise ValueError("reason is required for a failed settlement")
        return self


class WithdrawalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    amount: int
    processing_fee: int
    net_amount: int
    currency: str
    method: str
    status: str
    is_flagged: bool
    external_reference: Optional[str] = None
    payout_id: Optional[str] = None
    failure_reason: Optional[str] = None
    review_notes: list[Any] = []
    requested_at: datetime.datetime
    approved_at: Optional[datetime.datetime] = None
    completed_at: Optional[datetime.datetime] = None
