import datetime
import uuid
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class LedgerEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    seq: int
    direction: str
    amount: int
    currency: str
    category: str
    reference: Optional[str] = None
    balance_after: int
    status: str
    reversal_of_id: Optional[uuid.UUID] = None
    description: Optional[str] = None
    created_at: datetime.datetime


class TransferSchema(BaseModel):
    recipient_id: uuid.UUID
    amount: int = Field(..., gt=0)
    idempotency_key: str = Field(..., min_length=8, max_length=100)
    note: Optional[str] = Field(None, max_length=255)


class TopupCreateSchema(BaseModel):
    amount: int = Field(..., gt=0)


class TopupConfirmSchema(BaseModel):
    gateway_payment_id: str = Field(..., min_length=1, max_length=64)
    signature: str = Field(..., min_length=1, max_length=128)


class TopupOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    amount: int
    currency: str
    status: str
    gateway_order_id: Optional[str] = None
    created_at: datetime.datetime
    completed_at: Optional[datetime.datetime] = None


class AdminAdjustSchema(BaseModel):
    amount: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=500)
    idempotency_key: Optional[str] = Field(None, max_length=100)


class FreezeSchema(BaseModel):
    frozen: bool = True
