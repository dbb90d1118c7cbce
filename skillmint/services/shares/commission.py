import uuid
from datetime import datetime, timedelta

from fastapi import Depends
from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.core.enum import (
    COMMISSION_FLOWS,
    CommissionStatus,
    EntryCategory,
    can_transition,
)
from skillmint.core.errors import AppError, Internal, InvalidTransition, NotFound
from skillmint.core.leases import LeaseManager, get_lease_manager, user_key
from skillmint.core.permissions import Capability, ensure_capability
from skillmint.core.policy import MonetaryPolicy, PolicyService, get_policy_service
from skillmint.db.models.database import Commissions, Courses, Orders, User
from skillmint.db.session import get_session
from skillmint.libs.formats.datetime import isoformat
from skillmint.libs.formats.datetime import now as get_now
from skillmint.libs.formats.money import percent_of
from skillmint.services.shares.ledger import LedgerService, get_system_accounts
from skillmint.services.shares.referral import ReferralService, is_commission_earner

MAX_LEVELS = 3


def commission_key(commission_id) -> str:
    return f"commission:{commission_id}"


class CommissionService:
    """
    Multi-level commission engine.

    - ``attribute`` runs inside the order-completion envelope and only writes
      Commission rows.
    - Payouts move money from the affiliate reserve account to the affiliate.
    """

    def __init__(
        self,
        db: AsyncSession = Depends(get_session),
        leases: LeaseManager = Depends(get_lease_manager),
        policy: PolicyService = Depends(get_policy_service),
    ):
        self.db = db
        self.leases = leases
        self.policy = policy
        self.ledger = LedgerService(db, leases)
        self.referrals = ReferralService(db)

    # ============================================================
    # HELPERS
    # ============================================================
    @staticmethod
    def _record(commission: Commissions, target: str, actor=None, note: str | None = None):
        history = list(commission.status_history or [])
        history.append(
            {
                "from": commission.status,
                "to": target,
                "at": isoformat(get_now()),
                "actor": str(actor) if actor else None,
                "note": note,
            }
        )
        commission.status_history = history

    def _transition(self, commission: Commissions, target: str, actor=None, note=None):
        if not can_transition(COMMISSION_FLOWS, commission.status, target):
            raise InvalidTransition("commission", commission.status, target)
        self._record(commission, target, actor, note)
        commission.status = target
        commission.updated_at = get_now()

    async def _load(self, commission_id: uuid.UUID, lock: bool = False) -> Commissions:
        stmt = select(Commissions).where(Commissions.id == commission_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        commission = await self.db.scalar(stmt)
        if commission is None:
            raise NotFound("Commission not found")
        return commission

    def _hold_period(
        self, affiliate: User, amount: int, policy: MonetaryPolicy, at: datetime
    ) -> tuple[str, int]:
        periods = policy.hold_periods
        if affiliate.needs_recovery:
            return "disputed", periods.disputed
        if amount >= policy.high_value_commission_threshold:
            return "high_value", periods.high_value
        if affiliate.created_at and affiliate.created_at > at - timedelta(days=policy.new_affiliate_days):
            return "new_affiliate", periods.new_affiliate
        return "standard", periods.standard

    async def for_order(self, order_id: uuid.UUID) -> list[Commissions]:
        return list(
            (
                await self.db.scalars(
                    select(Commissions)
                    .where(Commissions.order_id == order_id)
                    .order_by(Commissions.level)
                    .execution_options(populate_existing=True)
                )
            ).all()
        )

    # ============================================================
    # ATTRIBUTION
    # ============================================================
    async def attribute(self, order: Orders, buyer: User, course: Courses) -> list[Commissions]:
        """
        Walk buyer → referrer → … for up to three positions and write one
        Commission per eligible position. Idempotent on (order, level).
        """
        existing = await self.for_order(order.id)
        if existing:
            return existing

        policy = self.policy.get()
        at = get_now()
        created: list[Commissions] = []
        visited: set[uuid.UUID] = set()
        current_id = order.referrer_id or buyer.referred_by_id

        for level in range(1, MAX_LEVELS + 1):
            if current_id is None:
                break
            if current_id in visited:
                logger.warning(f"⚠ Referral cycle at {current_id} for order {order.id}, walk stopped")
                break
            affiliate = await self.db.get(User, current_id)
            if affiliate is None:
                break
            visited.add(current_id)
            next_id = affiliate.referred_by_id

            if affiliate.id == buyer.id:
                logger.warning(f"⚠ Self-referral skipped at level {level} for order {order.id}")
                current_id = next_id
                continue

            if not is_commission_earner(affiliate):
                # an ineligible position consumes the rest of the chain
                logger.info(f"Level {level} affiliate {affiliate.id} ineligible, chain ends for order {order.id}")
                break

            tier = policy.tier_for(await self.referrals.direct_referrals(affiliate.id))
            course_rate = order.commission_rate if level == 1 else None
            rate = policy.level_rate(level, course_rate, tier)
            if rate <= 0:
                current_id = next_id
                continue

            amount = percent_of(order.final_amount, rate)
            hold_name, hold_days = self._hold_period(affiliate, amount, policy, at)
            commission = Commissions(
                id=uuid.uuid4(),
                affiliate_id=affiliate.id,
                referred_user_id=buyer.id,
                order_id=order.id,
                course_id=course.id,
                level=level,
                percentage=rate,
                order_amount=order.final_amount,
                amount=amount,
                currency=order.currency,
                status=CommissionStatus.PENDING.value,
                hold_period=hold_name,
                hold_until=at + timedelta(days=hold_days),
                status_history=[
                    {"from": None, "to": CommissionStatus.PENDING.value, "at": isoformat(at), "actor": None, "note": None}
                ],
                created_at=at,
            )
            if amount == 0:
                self._transition(commission, CommissionStatus.CANCELLED.value, note="zero amount")
            self.db.add(commission)
            created.append(commission)
            current_id = next_id

        await self.db.flush()
        if created:
            logger.info(f"💸 {len(created)} commission(s) attributed for order {order.id}")
        return created

    # ============================================================
    # PAYOUT
    # ============================================================
    async def _pay(self, commission: Commissions, reserve_id: uuid.UUID) -> None:
        debit, credit = await self.ledger.transfer(
            reserve_id,
            commission.affiliate_id,
            commission.amount,
            EntryCategory.COMMISSION_PAYOUT.value,
            commission_key(commission.id),
            commission_key(commission.id),
            description=f"Level {commission.level} commission",
        )
        commission.payout_entry_id = credit.id
        commission.paid_at = get_now()
        self._transition(commission, CommissionStatus.PAID.value)

    async def _approve_and_pay(self, commission: Commissions, reserve_id, actor=None, note=None):
        self._transition(commission, CommissionStatus.APPROVED.value, actor, note)
        commission.approved_at = get_now()
        if commission.amount > 0:
            await self._pay(commission, reserve_id)

    async def release_due(self, at: datetime | None = None) -> dict:
        """Background sweep: pending commissions past their hold are approved and paid."""
        at = at or get_now()
        policy = self.policy.get()
        system = await get_system_accounts(self.db)
        await self.db.commit()

        due = (
            await self.db.execute(
                select(Commissions.id, Commissions.affiliate_id).where(
                    Commissions.status == CommissionStatus.PENDING.value,
                    Commissions.hold_until <= at,
                    Commissions.is_flagged.is_(False),
                )
            )
        ).all()

        summary = {"paid": 0, "under_review": 0, "failed": 0}
        for commission_id, affiliate_id in due:
            async with self.leases.hold(commission_key(commission_id)):
                async with self.leases.hold(user_key(affiliate_id), user_key(system.reserve_id)):
                    try:
                        commission = await self._load(commission_id, lock=True)
                        if commission.status != CommissionStatus.PENDING.value or commission.is_flagged:
                            continue
                        if commission.amount > policy.auto_approve_commission_max:
                            self._transition(
                                commission, CommissionStatus.UNDER_REVIEW.value, note="above auto-approve limit"
                            )
                            summary["under_review"] += 1
                        else:
                            await self._approve_and_pay(commission, system.reserve_id, note="hold elapsed")
                            summary["paid"] += 1
                        await self.db.commit()
                    except Exception as e:
                        await self.db.rollback()
                        summary["failed"] += 1
                        logger.error(f"❌ Commission {commission_id} release failed: {e}")
        return summary

    async def expire_stale(self, at: datetime | None = None) -> dict:
        at = at or get_now()
        policy = self.policy.get()
        pending_cutoff = at - timedelta(days=policy.pending_expiry_days)
        approved_cutoff = at - timedelta(days=policy.approved_unpaid_expiry_days)

        expired = (
            await self.db.scalars(
                select(Commissions).where(
                    Commissions.status == CommissionStatus.PENDING.value,
                    # measured from the end of the hold, not from creation
                    Commissions.hold_until < pending_cutoff,
                )
            )
        ).all()
        for commission in expired:
            self._transition(commission, CommissionStatus.EXPIRED.value, note="pending too long")

        stale = (
            await self.db.scalars(
                select(Commissions).where(
                    Commissions.status == CommissionStatus.APPROVED.value,
                    Commissions.approved_at < approved_cutoff,
                )
            )
        ).all()
        for commission in stale:
            self._transition(commission, CommissionStatus.CANCELLED.value, note="approved but never paid")

        await self.db.commit()
        return {"expired": len(expired), "cancelled": len(stale)}

    # ============================================================
    # REVERSAL (refund of the originating order)
    # ============================================================
    async def reverse_for_order(self, order: Orders, reason: str) -> list[Commissions]:
        """Cancel unpaid commissions and claw back paid ones. Caller holds the user leases."""
        system = await get_system_accounts(self.db)
        commissions = await self.for_order(order.id)
        for commission in commissions:
            if commission.status == CommissionStatus.PAID.value:
                clawback = await self.ledger.reverse(
                    commission.payout_entry_id,
                    f"Refund of order {order.id}: {reason}",
                    allow_negative=True,
                )
                reserve_debit = await self.ledger.find_by_key(
                    system.reserve_id, commission_key(commission.id)
                )
                if reserve_debit is not None:
                    await self.ledger.reverse(reserve_debit.id, f"Refund of order {order.id}")
                self._transition(commission, CommissionStatus.REJECTED.value, note=f"clawback: {reason}")

                wallet = await self.ledger.get_wallet(commission.affiliate_id)
                if wallet.available < 0:
                    affiliate = await self.db.get(User, commission.affiliate_id)
                    affiliate.needs_recovery = True
                    logger.warning(
                        f"⚠ Affiliate {commission.affiliate_id} negative after clawback "
                        f"({wallet.available}), flagged for recovery (entry {clawback.id})"
                    )
            elif commission.status in (
                CommissionStatus.PENDING.value,
                CommissionStatus.APPROVED.value,
                CommissionStatus.HOLD.value,
                CommissionStatus.UNDER_REVIEW.value,
            ):
                self._transition(commission, CommissionStatus.CANCELLED.value, note=f"order refunded: {reason}")
        await self.db.flush()
        return commissions

    async def affiliates_for_order(self, order_id: uuid.UUID) -> list[uuid.UUID]:
        """Affiliates whose commission on the order is paid or could still be paid."""
        rows = await self.db.scalars(
            select(Commissions.affiliate_id).where(
                Commissions.order_id == order_id,
                Commissions.status.notin_(
                    [
                        CommissionStatus.REJECTED.value,
                        CommissionStatus.CANCELLED.value,
                        CommissionStatus.EXPIRED.value,
                    ]
                ),
            )
        )
        return list(rows.all())

    # ============================================================
    # ADMIN MODERATION
    # ============================================================
    async def _moderate(self, commission_id: uuid.UUID, admin: User, action):
        ensure_capability(admin, Capability.APPROVE_COMMISSION)
        commission = await self._load(commission_id)
        system = await get_system_accounts(self.db)
        async with self.leases.hold(commission_key(commission_id)):
            async with self.leases.hold(user_key(commission.affiliate_id), user_key(system.reserve_id)):
                try:
                    commission = await self._load(commission_id, lock=True)
                    await action(commission, system)
                    await self.db.commit()
                    return commission
                except AppError:
                    await self.db.rollback()
                    raise
                except Exception as e:
                    await self.db.rollback()
                    logger.error(f"❌ Commission {commission_id} moderation failed: {e}")
                    raise Internal("Commission moderation failed")

    async def approve_async(self, commission_id: uuid.UUID, admin: User, notes: str | None = None):
        async def action(commission, system):
            if commission.status == CommissionStatus.APPROVED.value:
                await self._pay(commission, system.reserve_id)
            else:
                await self._approve_and_pay(commission, system.reserve_id, admin.id, notes)
            logger.success(f"✔ Commission {commission.id} approved by {admin.id}")

        return await self._moderate(commission_id, admin, action)

    async def reject_async(self, commission_id: uuid.UUID, admin: User, reason: str):
        async def action(commission, system):
            if commission.status == CommissionStatus.PAID.value:
                raise InvalidTransition("commission", commission.status, CommissionStatus.REJECTED.value)
            self._transition(commission, CommissionStatus.REJECTED.value, admin.id, reason)
            commission.notes = reason

        return await self._moderate(commission_id, admin, action)

    async def hold_async(self, commission_id: uuid.UUID, admin: User, reason: str):
        async def action(commission, system):
            self._transition(commission, CommissionStatus.HOLD.value, admin.id, reason)
            commission.notes = reason

        return await self._moderate(commission_id, admin, action)

    async def review_async(self, commission_id: uuid.UUID, admin: User, reason: str):
        async def action(commission, system):
            self._transition(commission, CommissionStatus.UNDER_REVIEW.value, admin.id, reason)
            commission.notes = reason

        return await self._moderate(commission_id, admin, action)

    async def flag_async(self, commission_id: uuid.UUID, admin: User, reason: str):
        async def action(commission, system):
            commission.is_flagged = True
            self._record(commission, commission.status, admin.id, f"flagged: {reason}")

        return await self._moderate(commission_id, admin, action)

    # ============================================================
    # QUERIES
    # ============================================================
    async def list_for_affiliate(
        self, affiliate_id: uuid.UUID, status: str | None = None, level: int | None = None
    ) -> list[Commissions]:
        stmt = select(Commissions).where(Commissions.affiliate_id == affiliate_id)
        if status:
            stmt = stmt.where(Commissions.status == status)
        if level:
            stmt = stmt.where(Commissions.level == level)
        rows = await self.db.scalars(stmt.order_by(Commissions.created_at.desc()))
        return list(rows.all())

    async def stats(self, affiliate: User) -> dict:
        rows = (
            await self.db.execute(
                select(
                    Commissions.status,
                    func.count(Commissions.id),
                    func.coalesce(func.sum(Commissions.amount), 0),
                )
                .where(Commissions.affiliate_id == affiliate.id)
                .group_by(Commissions.status)
            )
        ).all()
        by_status = {status: {"count": count, "amount": int(total)} for status, count, total in rows}
        referrals = await self.referrals.direct_referrals(affiliate.id)
        tier = self.policy.get().tier_for(referrals)
        return {
            "referral_code": affiliate.referral_code,
            "direct_referrals": referrals,
            "tier": tier.name if tier else None,
            "by_status": by_status,
            "total_paid": by_status.get(CommissionStatus.PAID.value, {}).get("amount", 0),
            "total_pending": sum(
                by_status.get(s, {}).get("amount", 0)
                for s in (
                    CommissionStatus.PENDING.value,
                    CommissionStatus.APPROVED.value,
                    CommissionStatus.HOLD.value,
                    CommissionStatus.UNDER_REVIEW.value,
                )
            ),
        }
