import decimal
from typing import Optional

from pydantic import BaseModel, Field

from skillmint.core.policy import CommissionTier, HoldPeriods


class UpdatePolicySchema(BaseModel):
    """Partial update; omitted fields keep their current value."""

    platform_fee_rate: Optional[decimal.Decimal] = Field(None, ge=0, lt=1)
    commission_level_rates: Optional[dict[int, decimal.Decimal]] = None
    tiers: Optional[list[CommissionTier]] = None
    hold_periods: Optional[HoldPeriods] = None
    new_affiliate_days: Optional[int] = Field(None, ge=0)
    high_value_commission_threshold: Optional[int] = Field(None, ge=0)
    pending_expiry_days: Optional[int] = Field(None, ge=1)
    approved_unpaid_expiry_days: Optional[int] = Field(None, ge=1)
    min_payout: Optional[int] = Field(None, ge=1)
    max_withdrawal: Optional[int] = Field(None, ge=1)
    monthly_withdrawal_cap: Optional[int] = Field(None, ge=1)
    withdrawal_fee_percent: Optional[decimal.Decimal] = Field(None, ge=0, le=50)
    withdrawal_fee_min: Optional[int] = Field(None, ge=0)
    auto_approve_commission_max: Optional[int] = Field(None, ge=0)
    auto_approve_withdrawal_max: Optional[int] = Field(None, ge=0)
    pending_order_auto_cancel_hours: Optional[int] = Field(None, ge=1)
