import datetime
import decimal
import uuid
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from skillmint.core.enum import PaymentMethod


class OrderCreateSchema(BaseModel):
    course_id: uuid.UUID
    payment_method: PaymentMethod = PaymentMethod.GATEWAY
    referral_code: Optional[str] = Field(None, max_length=20)


class OrderConfirmSchema(BaseModel):
    gateway_payment_id: str = Field(..., min_length=1, max_length=64)
    signature: str = Field(..., min_length=1, max_length=128)


class OrderCancelSchema(BaseModel):
    reason: str = Field("cancelled by user", max_length=500)


class OrderRefundSchema(BaseModel):
    amount: Optional[int] = Field(None, gt=0, description="Minor units; omit for a full refund")
    reason: str = Field(..., min_length=1, max_length=500)


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    buyer_id: uuid.UUID
    course_id: uuid.UUID
    gross_amount: int
    discount: int
    final_amount: int
    currency: str
    referrer_id: Optional[uuid.UUID] = None
    payment_method: str
    status: str
    platform_fee_rate: decimal.Decimal
    commission_rate: Optional[decimal.Decimal] = None
    instructor_share: Optional[int] = None
    platform_share: Optional[int] = None
    commission_share: Optional[int] = None
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    refund_amount: int = 0
    failure_reason: Optional[str] = None
    status_history: list[Any] = []
    created_at: datetime.datetime
    completed_at: Optional[datetime.datetime] = None
    refunded_at: Optional[datetime.datetime] = None


class GatewayCheckoutOut(BaseModel):
    key_id: str
    gateway_order_id: str
    amount: int
    currency: str
