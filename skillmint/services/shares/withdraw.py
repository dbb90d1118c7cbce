import uuid
from datetime import datetime

from fastapi import Depends
from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.core.enum import (
    WITHDRAWAL_FLOWS,
    EntryCategory,
    UserRole,
    WithdrawalMethod,
    WithdrawalStatus,
    can_transition,
)
from skillmint.core.errors import (
    AppError,
    Conflict,
    Forbidden,
    InsufficientFunds,
    Internal,
    InvalidTransition,
    NotFound,
    Unprocessable,
    Upstream,
    UpstreamTimeout,
    ValidationFailure,
)
from skillmint.core.leases import LeaseManager, get_lease_manager, user_key
from skillmint.core.permissions import Capability, ensure_capability
from skillmint.core.policy import PolicyService, get_policy_service
from skillmint.core.settings import settings
from skillmint.db.models.database import User, WithdrawalRequests
from skillmint.db.session import get_session
from skillmint.libs.formats.datetime import isoformat, month_start
from skillmint.libs.formats.datetime import now as get_now
from skillmint.libs.formats.money import format_amount
from skillmint.services.shares.ledger import LedgerService, get_system_accounts
from skillmint.services.shares.mailer import MailerService, get_mailer_service
from skillmint.services.shares.razorpay_service import (
    RazorpayError,
    RazorpayService,
    get_razorpay_service,
)

# statuses that do not count against the monthly cap
RELEASED = (
    WithdrawalStatus.REJECTED.value,
    WithdrawalStatus.CANCELLED.value,
    WithdrawalStatus.FAILED.value,
)


def withdrawal_key(withdrawal_id) -> str:
    return f"withdrawal:{withdrawal_id}"


class WithdrawService:
    def __init__(
        self,
        db: AsyncSession = Depends(get_session),
        leases: LeaseManager = Depends(get_lease_manager),
        policy: PolicyService = Depends(get_policy_service),
        mailer: MailerService = Depends(get_mailer_service),
        gateway: RazorpayService = Depends(get_razorpay_service),
    ):
        self.db = db
        self.leases = leases
        self.policy = policy
        self.mailer = mailer
        self.gateway = gateway
        self.ledger = LedgerService(db, leases)

    # ============================================================
    # HELPERS
    # ============================================================
    async def _load(self, withdrawal_id: uuid.UUID, lock: bool = False) -> WithdrawalRequests:
        stmt = select(WithdrawalRequests).where(WithdrawalRequests.id == withdrawal_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        withdrawal = await self.db.scalar(stmt)
        if withdrawal is None:
            raise NotFound("Withdrawal not found")
        return withdrawal

    @staticmethod
    def _note(withdrawal: WithdrawalRequests, actor, text: str | None):
        notes = list(withdrawal.review_notes or [])
        notes.append(
            {
                "status": withdrawal.status,
                "by": str(actor) if actor else None,
                "note": text,
                "at": isoformat(get_now()),
            }
        )
        withdrawal.review_notes = notes

    def _transition(self, withdrawal: WithdrawalRequests, target: str, actor=None, note=None):
        if not can_transition(WITHDRAWAL_FLOWS, withdrawal.status, target):
            raise InvalidTransition("withdrawal", withdrawal.status, target)
        withdrawal.status = target
        withdrawal.updated_at = get_now()
        self._note(withdrawal, actor, note)

    async def _envelope(self, withdrawal_id: uuid.UUID, label: str, work, extra_users=()):
        """
        Lease order: withdrawal first, then the owner (and any extra owners) together.
        Commits on success, rolls back on any failure.
        """
        async with self.leases.hold(withdrawal_key(withdrawal_id)):
            current = await self._load(withdrawal_id, lock=True)
            keys = [user_key(current.user_id)] + [user_key(u) for u in extra_users]
            async with self.leases.hold(*keys):
                try:
                    result = await work(current)
                    await self.db.commit()
                    return result
                except AppError:
                    await self.db.rollback()
                    raise
                except Exception as e:
                    await self.db.rollback()
                    logger.error(f"❌ {label} for withdrawal {withdrawal_id} failed: {e}")
                    raise Internal(f"{label} failed")

    async def _release(self, withdrawal: WithdrawalRequests, reason: str):
        if withdrawal.reserve_entry_id:
            await self.ledger.reverse(
                withdrawal.reserve_entry_id,
                reason,
                category=EntryCategory.WITHDRAWAL_RELEASE.value,
            )

    async def _notify(self, withdrawal: WithdrawalRequests):
        user = await self.db.get(User, withdrawal.user_id)
        if user:
            await self.mailer.send_withdrawal_update(
                user.email, user.fullname, withdrawal.status, format_amount(withdrawal.amount, withdrawal.currency)
            )

    async def monthly_total(self, user_id: uuid.UUID, at: datetime | None = None) -> int:
        at = at or get_now()
        total = await self.db.scalar(
            select(func.coalesce(func.sum(WithdrawalRequests.amount), 0)).where(
                WithdrawalRequests.user_id == user_id,
                WithdrawalRequests.requested_at >= month_start(at),
                WithdrawalRequests.status.notin_(RELEASED),
            )
        )
        return int(total)

    # ============================================================
    # REQUEST WITHDRAW
    # ============================================================
    async def request_withdraw_async(
        self,
        user: User,
        amount: int,
        method: str,
        account_details: dict | None = None,
    ) -> WithdrawalRequests:
        try:
            method = WithdrawalMethod(method).value
        except ValueError:
            raise ValidationFailure("Unknown withdrawal method", errors={"method": method})

        policy = self.policy.get()
        if not isinstance(amount, int) or amount <= 0:
            raise ValidationFailure("Invalid withdrawal amount")
        if amount < policy.min_payout:
            raise ValidationFailure(
                f"Minimum withdrawal is {format_amount(policy.min_payout)}",
                errors={"min_payout": policy.min_payout},
            )
        if amount > policy.max_withdrawal:
            raise ValidationFailure(
                f"Maximum withdrawal is {format_amount(policy.max_withdrawal)}",
                errors={"max_withdrawal": policy.max_withdrawal},
            )

        withdrawal_id = uuid.uuid4()
        async with self.leases.hold(withdrawal_key(withdrawal_id)):
            async with self.leases.hold(user_key(user.id)):
                try:
                    wallet = await self.ledger.get_wallet(user.id, lock=True)
                    if wallet.is_locked:
                        raise Forbidden("Wallet is frozen")

                    used = await self.monthly_total(user.id)
                    if used + amount > policy.monthly_withdrawal_cap:
                        raise Unprocessable(
                            "Monthly withdrawal cap exceeded",
                            errors={"cap": policy.monthly_withdrawal_cap, "used": used},
                        )
                    if wallet.available < amount:
                        raise InsufficientFunds(
                            errors={"available": wallet.available, "requested": amount}
                        )

                    fee = policy.withdrawal_fee(amount)
                    withdrawal = WithdrawalRequests(
                        id=withdrawal_id,
                        user_id=user.id,
                        amount=amount,
                        processing_fee=fee,
                        net_amount=amount - fee,
                        currency=wallet.currency,
                        method=method,
                        account_details=account_details or {},
                        status=WithdrawalStatus.PENDING.value,
                        requested_at=get_now(),
                    )
                    self.db.add(withdrawal)
                    await self.db.flush()

                    entry = await self.ledger.debit(
                        user.id,
                        amount,
                        EntryCategory.WITHDRAWAL_RESERVE.value,
                        str(withdrawal_id),
                        f"withdrawal:{withdrawal_id}:reserve",
                        pending=True,
                        description=f"Reserved for withdrawal via {method}",
                    )
                    withdrawal.reserve_entry_id = entry.id
                    self._note(withdrawal, user.id, "requested")
                    await self.db.commit()
                except AppError:
                    await self.db.rollback()
                    raise
                except Exception as e:
                    await self.db.rollback()
                    logger.error(f"❌ Withdrawal request for {user.id} failed: {e}")
                    raise Internal("Withdrawal request failed")

        logger.success(f"✔ Withdrawal {withdrawal_id} requested by {user.id}: {amount}")
        return withdrawal

    # ============================================================
    # REVIEW
    # ============================================================
    async def approve_async(self, withdrawal_id: uuid.UUID, admin: User, notes: str | None = None):
        ensure_capability(admin, Capability.APPROVE_WITHDRAWAL)

        async def work(withdrawal):
            if withdrawal.status not in (WithdrawalStatus.PENDING.value, WithdrawalStatus.UNDER_REVIEW.value):
                raise InvalidTransition("withdrawal", withdrawal.status, WithdrawalStatus.APPROVED.value)
            self._transition(withdrawal, WithdrawalStatus.APPROVED.value, admin.id, notes)
            withdrawal.reviewed_by = admin.id
            withdrawal.approved_at = get_now()
            return withdrawal

        withdrawal = await self._envelope(withdrawal_id, "Approval", work)
        logger.success(f"✔ Withdrawal {withdrawal_id} approved by {admin.id}")
        await self._notify(withdrawal)
        return withdrawal

    async def reject_async(self, withdrawal_id: uuid.UUID, admin: User, reason: str):
        ensure_capability(admin, Capability.APPROVE_WITHDRAWAL)

        async def work(withdrawal):
            self._transition(withdrawal, WithdrawalStatus.REJECTED.value, admin.id, reason)
            await self._release(withdrawal, f"Withdrawal rejected: {reason}")
            withdrawal.reviewed_by = admin.id
            withdrawal.rejected_at = get_now()
            return withdrawal

        withdrawal = await self._envelope(withdrawal_id, "Rejection", work)
        logger.info(f"🚫 Withdrawal {withdrawal_id} rejected by {admin.id}")
        await self._notify(withdrawal)
        return withdrawal

    async def cancel_async(self, withdrawal_id: uuid.UUID, actor: User):
        async def work(withdrawal):
            if withdrawal.user_id != actor.id:
                raise Forbidden("Only the owner can cancel a withdrawal")
            if withdrawal.status != WithdrawalStatus.PENDING.value:
                raise InvalidTransition("withdrawal", withdrawal.status, WithdrawalStatus.CANCELLED.value)
            self._transition(withdrawal, WithdrawalStatus.CANCELLED.value, actor.id, "cancelled by owner")
            await self._release(withdrawal, "Withdrawal cancelled by owner")
            return withdrawal

        withdrawal = await self._envelope(withdrawal_id, "Cancellation", work)
        logger.info(f"🚫 Withdrawal {withdrawal_id} cancelled by owner")
        return withdrawal

    async def flag_async(self, withdrawal_id: uuid.UUID, admin: User, reason: str):
        ensure_capability(admin, Capability.APPROVE_WITHDRAWAL)

        async def work(withdrawal):
            withdrawal.is_flagged = True
            if withdrawal.status in (WithdrawalStatus.PENDING.value, WithdrawalStatus.APPROVED.value):
                self._transition(withdrawal, WithdrawalStatus.UNDER_REVIEW.value, admin.id, f"flagged: {reason}")
            else:
                self._note(withdrawal, admin.id, f"flagged: {reason}")
            return withdrawal

        withdrawal = await self._envelope(withdrawal_id, "Flag", work)
        logger.warning(f"⚠ Withdrawal {withdrawal_id} flagged: {reason}")
        return withdrawal

    # ============================================================
    # SETTLEMENT
    # ============================================================
    async def begin_settlement_async(self, withdrawal_id: uuid.UUID, admin: User):
        ensure_capability(admin, Capability.PROCESS_WITHDRAWAL)

        async def work(withdrawal):
            if withdrawal.status == WithdrawalStatus.PROCESSING.value:
                return withdrawal
            if withdrawal.status != WithdrawalStatus.APPROVED.value:
                raise InvalidTransition("withdrawal", withdrawal.status, WithdrawalStatus.PROCESSING.value)
            self._transition(withdrawal, WithdrawalStatus.PROCESSING.value, admin.id, "payout initiated")
            withdrawal.processed_at = get_now()
            return withdrawal

        withdrawal = await self._envelope(withdrawal_id, "Settlement start", work)
        logger.info(f"🚀 Withdrawal {withdrawal_id} processing ({withdrawal.method})")

        if withdrawal.payout_id or not settings.RAZORPAYX_ACCOUNT_NUMBER:
            # manual rail: the admin reports back through complete/fail
            return withdrawal
        return await self._initiate_payout(withdrawal)

    async def _initiate_payout(self, withdrawal: WithdrawalRequests) -> WithdrawalRequests:
        """Hand the net amount to the payout rail. Failures leave the withdrawal in processing."""
        fund_account_id = (withdrawal.account_details or {}).get("fund_account_id")
        if not fund_account_id:
            logger.warning(f"⚠ Withdrawal {withdrawal.id} has no fund account, payout left to admin")
            return withdrawal
        try:
            payout = await self.gateway.create_payout(
                account_number=settings.RAZORPAYX_ACCOUNT_NUMBER,
                fund_account_id=fund_account_id,
                amount=withdrawal.net_amount,
                currency=withdrawal.currency,
                mode="UPI" if withdrawal.method == WithdrawalMethod.UPI.value else "IMPS",
                reference_id=str(withdrawal.id),
            )
        except RazorpayError as e:
            logger.error(f"❌ Payout for withdrawal {withdrawal.id} failed: {e}")
            if e.transient:
                raise UpstreamTimeout("Payout rail unavailable")
            raise Upstream("Payout rail rejected the withdrawal")

        async def work(current):
            current.payout_id = payout.get("id")
            self._note(current, None, f"payout initiated: {current.payout_id}")
            return current

        return await self._envelope(withdrawal.id, "Payout link", work)

    async def complete_settlement_async(self, withdrawal_id: uuid.UUID, admin: User, external_ref: str):
        ensure_capability(admin, Capability.PROCESS_WITHDRAWAL)
        if not external_ref:
            raise ValidationFailure("External reference is required")
        system = await get_system_accounts(self.db)
        await self.db.commit()

        async def work(withdrawal):
            if withdrawal.status == WithdrawalStatus.COMPLETED.value:
                if withdrawal.external_reference == external_ref:
                    return withdrawal
                raise Conflict("Withdrawal already settled with another reference")
            if withdrawal.status != WithdrawalStatus.PROCESSING.value:
                raise InvalidTransition("withdrawal", withdrawal.status, WithdrawalStatus.COMPLETED.value)

            taken = await self.db.scalar(
                select(WithdrawalRequests.id).where(
                    WithdrawalRequests.external_reference == external_ref,
                    WithdrawalRequests.id != withdrawal.id,
                )
            )
            if taken is not None:
                raise Conflict("External reference already used")

            await self.ledger.complete(withdrawal.reserve_entry_id)
            if withdrawal.processing_fee > 0:
                await self.ledger.credit(
                    system.platform_id,
                    withdrawal.processing_fee,
                    EntryCategory.WITHDRAWAL_SETTLE.value,
                    str(withdrawal.id),
                    f"withdrawal:{withdrawal.id}:fee",
                    description="Withdrawal processing fee",
                )
            withdrawal.external_reference = external_ref
            withdrawal.completed_at = get_now()
            self._transition(withdrawal, WithdrawalStatus.COMPLETED.value, admin.id, f"settled: {external_ref}")
            return withdrawal

        withdrawal = await self._envelope(
            withdrawal_id, "Settlement", work, extra_users=(system.platform_id,)
        )
        logger.success(f"✔ Withdrawal {withdrawal_id} settled ({external_ref})")
        await self._notify(withdrawal)
        return withdrawal

    async def fail_settlement_async(self, withdrawal_id: uuid.UUID, admin: User, reason: str):
        ensure_capability(admin, Capability.PROCESS_WITHDRAWAL)

        async def work(withdrawal):
            if withdrawal.status == WithdrawalStatus.FAILED.value:
                return withdrawal
            self._transition(withdrawal, WithdrawalStatus.FAILED.value, admin.id, reason)
            await self._release(withdrawal, f"Payout failed: {reason}")
            withdrawal.failure_reason = reason
            return withdrawal

        withdrawal = await self._envelope(withdrawal_id, "Settlement failure", work)
        logger.warning(f"⚠ Withdrawal {withdrawal_id} failed: {reason}")
        await self._notify(withdrawal)
        return withdrawal

    # ============================================================
    # SWEEP
    # ============================================================
    async def auto_approve_due(self) -> dict:
        limit = self.policy.get().auto_approve_withdrawal_max
        ids = (
            await self.db.scalars(
                select(WithdrawalRequests.id).where(
                    WithdrawalRequests.status == WithdrawalStatus.PENDING.value,
                    WithdrawalRequests.is_flagged.is_(False),
                    WithdrawalRequests.amount <= limit,
                )
            )
        ).all()

        approved = 0
        for withdrawal_id in ids:

            async def work(withdrawal):
                if withdrawal.status != WithdrawalStatus.PENDING.value or withdrawal.is_flagged:
                    return None
                self._transition(withdrawal, WithdrawalStatus.APPROVED.value, None, "auto-approved")
                withdrawal.approved_at = get_now()
                return withdrawal

            try:
                if await self._envelope(withdrawal_id, "Auto approval", work) is not None:
                    approved += 1
            except AppError as e:
                logger.error(f"❌ Auto approval of {withdrawal_id} failed: {e.message}")
        return {"approved": approved}

    # ============================================================
    # QUERIES
    # ============================================================
    async def get_async(self, withdrawal_id: uuid.UUID, actor: User) -> WithdrawalRequests:
        withdrawal = await self._load(withdrawal_id)
        if withdrawal.user_id != actor.id and actor.role != UserRole.ADMIN.value:
            raise Forbidden("Not your withdrawal")
        return withdrawal

    async def list_async(
        self,
        user_id: uuid.UUID | None = None,
        status: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict:
        stmt = select(WithdrawalRequests)
        count_stmt = select(func.count(WithdrawalRequests.id))
        if user_id:
            stmt = stmt.where(WithdrawalRequests.user_id == user_id)
            count_stmt = count_stmt.where(WithdrawalRequests.user_id == user_id)
        if status:
            stmt = stmt.where(WithdrawalRequests.status == status)
            count_stmt = count_stmt.where(WithdrawalRequests.status == status)

        total = await self.db.scalar(count_stmt)
        rows = await self.db.scalars(
            stmt.order_by(WithdrawalRequests.requested_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return {"page": page, "limit": limit, "total": total, "items": list(rows.all())}
