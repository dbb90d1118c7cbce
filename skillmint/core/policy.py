import uuid
from decimal import Decimal
from typing import Optional

from fastapi import Request
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.core.errors import ValidationFailure
from skillmint.db.models.database import PlatformSettings
from skillmint.libs.formats.datetime import now as get_now
from skillmint.libs.formats.money import percent_of


class CommissionTier(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    min_referrals: int = Field(ge=0)
    max_referrals: Optional[int] = Field(None, ge=0)  # None = unbounded
    base_rate: Decimal = Field(ge=0, le=50)  # level-1 percent when the course sets none
    bonus_rate: Decimal = Field(ge=0, le=50)  # points added to level 2 and 3 defaults

    def contains(self, referrals: int) -> bool:
        if referrals < self.min_referrals:
            return False
        return self.max_referrals is None or referrals <= self.max_referrals


class HoldPeriods(BaseModel):
    model_config = ConfigDict(frozen=True)

    standard: int = Field(7, ge=0, le=365)
    new_affiliate: int = Field(14, ge=0, le=365)
    high_value: int = Field(30, ge=0, le=365)
    disputed: int = Field(45, ge=0, le=365)


DEFAULT_TIERS = [
    CommissionTier(name="Bronze", min_referrals=0, max_referrals=10, base_rate=Decimal("10"), bonus_rate=Decimal("0")),
    CommissionTier(name="Silver", min_referrals=11, max_referrals=50, base_rate=Decimal("12"), bonus_rate=Decimal("2")),
    CommissionTier(name="Gold", min_referrals=51, max_referrals=200, base_rate=Decimal("15"), bonus_rate=Decimal("5")),
    CommissionTier(name="Platinum", min_referrals=201, max_referrals=1000, base_rate=Decimal("18"), bonus_rate=Decimal("8")),
    CommissionTier(name="Diamond", min_referrals=1001, max_referrals=None, base_rate=Decimal("20"), bonus_rate=Decimal("10")),
]


class MonetaryPolicy(BaseModel):
    """Every recognized monetary option. Amounts are minor units (paise)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    platform_fee_rate: Decimal = Field(Decimal("0.10"), ge=0, lt=1)
    commission_level_rates: dict[int, Decimal] = Field(
        default_factory=lambda: {1: Decimal("10"), 2: Decimal("5"), 3: Decimal("2")}
    )
    tiers: list[CommissionTier] = Field(default_factory=lambda: list(DEFAULT_TIERS))
    hold_periods: HoldPeriods = Field(default_factory=HoldPeriods)
    new_affiliate_days: int = Field(30, ge=0)
    high_value_commission_threshold: int = Field(500_000, ge=0)
    pending_expiry_days: int = Field(30, ge=1)
    approved_unpaid_expiry_days: int = Field(90, ge=1)
    min_payout: int = Field(10_000, ge=1)
    max_withdrawal: int = Field(5_000_000, ge=1)
    monthly_withdrawal_cap: int = Field(50_000_000, ge=1)
    withdrawal_fee_percent: Decimal = Field(Decimal("2"), ge=0, le=50)
    withdrawal_fee_min: int = Field(1_000, ge=0)
    auto_approve_commission_max: int = Field(100_000, ge=0)
    auto_approve_withdrawal_max: int = Field(500_000, ge=0)
    pending_order_auto_cancel_hours: int = Field(24, ge=1)

    @model_validator(mode="after")
    def _check_consistency(self):
        if set(self.commission_level_rates) != {1, 2, 3}:
            raise ValueError("commission_level_rates must define levels 1, 2 and 3")
        for level, rate in self.commission_level_rates.items():
            if rate < 0 or rate > 50:
                raise ValueError(f"commission rate for level {level} must be in [0, 50]")

        if not self.tiers:
            raise ValueError("at least one commission tier is required")
        previous_max = -1
        for index, tier in enumerate(self.tiers):
            if tier.min_referrals <= previous_max:
                raise ValueError(f"tier {tier.name} overlaps the previous tier")
            if tier.max_referrals is not None and tier.max_referrals < tier.min_referrals:
                raise ValueError(f"tier {tier.name} has max below min")
            if tier.max_referrals is None and index != len(self.tiers) - 1:
                raise ValueError("only the last tier may be unbounded")
            previous_max = tier.max_referrals if tier.max_referrals is not None else previous_max

        if self.min_payout > self.max_withdrawal:
            raise ValueError("min_payout cannot exceed max_withdrawal")
        if self.max_withdrawal > self.monthly_withdrawal_cap:
            raise ValueError("max_withdrawal cannot exceed monthly_withdrawal_cap")
        return self

    def tier_for(self, referrals: int) -> Optional[CommissionTier]:
        for tier in self.tiers:
            if tier.contains(referrals):
                return tier
        return None

    def level_rate(
        self, level: int, course_rate: Optional[Decimal], tier: Optional[CommissionTier]
    ) -> Decimal:
        if level == 1:
            if course_rate is not None:
                return Decimal(course_rate)
            return tier.base_rate if tier else self.commission_level_rates[1]
        rate = self.commission_level_rates[level]
        if tier:
            rate = min(rate + tier.bonus_rate, Decimal("50"))
        return rate

    def withdrawal_fee(self, amount: int) -> int:
        fee = max(percent_of(amount, self.withdrawal_fee_percent), self.withdrawal_fee_min)
        return min(fee, amount)


def parse_policy(data: dict | None) -> MonetaryPolicy:
    try:
        return MonetaryPolicy.model_validate(data or {})
    except ValidationError as e:
        raise ValidationFailure(
            "Invalid monetary policy",
            errors=e.errors(include_url=False, include_context=False),
        )


class PolicyService:
    """
    Process-wide holder of the current policy snapshot.
    Created at startup, read on every request, swapped only by reload/update.
    """

    def __init__(self, policy: MonetaryPolicy | None = None):
        self._snapshot = policy or MonetaryPolicy()
        self.loaded_at = None

    def get(self) -> MonetaryPolicy:
        return self._snapshot

    async def reload(self, db: AsyncSession) -> MonetaryPolicy:
        row = await db.scalar(select(PlatformSettings).where(PlatformSettings.id == 1))
        if row is None:
            row = PlatformSettings(
                id=1, policy=MonetaryPolicy().model_dump(mode="json"), updated_at=get_now()
            )
            db.add(row)
            await db.commit()
            logger.info("🧾 Platform settings row created with default policy")

        self._snapshot = parse_policy(row.policy)
        self.loaded_at = get_now()
        logger.info("🔄 Monetary policy reloaded")
        return self._snapshot

    async def update(
        self, db: AsyncSession, patch: dict, admin_id: uuid.UUID | None
    ) -> MonetaryPolicy:
        merged = self._snapshot.model_dump(mode="json")
        merged.update(patch)
        policy = parse_policy(merged)

        row = await db.scalar(select(PlatformSettings).where(PlatformSettings.id == 1))
        if row is None:
            row = PlatformSettings(id=1)
            db.add(row)
        row.policy = policy.model_dump(mode="json")
        row.updated_by = admin_id
        row.updated_at = get_now()
        await db.commit()

        self._snapshot = policy
        self.loaded_at = get_now()
        logger.success(f"✔ Monetary policy updated by {admin_id}: {sorted(patch)}")
        return policy


def get_policy_service(request: Request) -> PolicyService:
    return request.app.state.policy
