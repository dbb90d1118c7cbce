import uuid
from datetime import datetime

from fastapi import Depends
from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.core.enum import EntryCategory, TopupStatus
from skillmint.core.errors import (
    AppError,
    Forbidden,
    Internal,
    NotFound,
    SignatureInvalid,
    Upstream,
    UpstreamTimeout,
    ValidationFailure,
)
from skillmint.core.leases import LeaseManager, get_lease_manager, user_key
from skillmint.core.permissions import Capability, ensure_capability
from skillmint.core.security import verify_payment_signature
from skillmint.core.settings import settings
from skillmint.db.models.database import User, WalletTopups
from skillmint.db.session import get_session
from skillmint.libs.formats.datetime import now as get_now
from skillmint.services.shares.ledger import LedgerService
from skillmint.services.shares.razorpay_service import (
    RazorpayError,
    RazorpayService,
    get_razorpay_service,
)


class WalletsService:
    def __init__(
        self,
        db: AsyncSession = Depends(get_session),
        leases: LeaseManager = Depends(get_lease_manager),
        gateway: RazorpayService = Depends(get_razorpay_service),
    ):
        self.db = db
        self.leases = leases
        self.gateway = gateway
        self.ledger = LedgerService(db, leases)

    async def _commit(self, label: str, work):
        try:
            result = await work()
            await self.db.commit()
            return result
        except AppError:
            await self.db.rollback()
            raise
        except Exception as e:
            await self.db.rollback()
            logger.error(f"❌ {label} failed: {e}")
            raise Internal(f"{label} failed")

    async def _get_user(self, user_id: uuid.UUID) -> User:
        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFound("User not found")
        return user

    # ============================================================
    # READ
    # ============================================================
    async def summary_async(self, user: User) -> dict:
        wallet = await self.ledger.get_wallet(user.id)
        await self.db.commit()
        return {
            "user_id": user.id,
            "currency": wallet.currency,
            "total": wallet.balance,
            "available": wallet.available,
            "reserved": wallet.reserved,
            "total_earned": wallet.total_earned,
            "total_withdrawn": wallet.total_withdrawn,
            "is_locked": wallet.is_locked,
            "needs_recovery": user.needs_recovery,
            "last_transaction_at": wallet.last_transaction_at,
        }

    async def transactions_async(
        self,
        user: User,
        *,
        category: str | None = None,
        direction: str | None = None,
        status: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        cursor: int | None = None,
        limit: int = 20,
    ) -> dict:
        return await self.ledger.scan(
            user.id,
            category=category,
            direction=direction,
            status=status,
            date_from=date_from,
            date_to=date_to,
            cursor=cursor,
            limit=limit,
        )

    # ============================================================
    # TRANSFER
    # ============================================================
    async def transfer_async(
        self,
        sender: User,
        recipient_id: uuid.UUID,
        amount: int,
        idempotency_key: str,
        note: str | None = None,
    ) -> dict:
        if recipient_id == sender.id:
            raise ValidationFailure("Cannot transfer to yourself")
        if not idempotency_key:
            raise ValidationFailure("Idempotency key is required")
        recipient = await self._get_user(recipient_id)
        if not recipient.is_active:
            raise ValidationFailure("Recipient is not active")

        key = f"transfer:{idempotency_key}"

        async def work():
            wallet = await self.ledger.get_wallet(sender.id, lock=True)
            replay = await self.ledger.find_by_key(sender.id, key)
            if wallet.is_locked and replay is None:
                raise Forbidden("Wallet is frozen")
            return await self.ledger.transfer(
                sender.id,
                recipient.id,
                amount,
                EntryCategory.TRANSFER.value,
                key,
                key,
                description=note or f"Transfer to {recipient.fullname}",
            )

        async with self.leases.hold(user_key(sender.id), user_key(recipient.id)):
            debit, credit = await self._commit("Transfer", work)

        logger.success(f"✔ Transfer {key}: {sender.id} → {recipient.id} ({amount})")
        return {"debit": debit, "credit": credit}

    # ============================================================
    # ADMIN
    # ============================================================
    async def admin_credit_async(self, admin: User, user_id: uuid.UUID, amount: int, reason: str, idempotency_key: str | None = None):
        ensure_capability(admin, Capability.CREDIT_WALLET)
        await self._get_user(user_id)
        key = f"admin:{idempotency_key or uuid.uuid4()}"
        entry = await self._commit(
            "Admin credit",
            lambda: self.ledger.credit(
                user_id, amount, EntryCategory.ADMIN_ADJUSTMENT.value, f"admin:{admin.id}", key,
                description=reason,
            ),
        )
        logger.info(f"🏦 Admin {admin.id} credited {amount} to {user_id}: {reason}")
        return entry

    async def admin_debit_async(self, admin: User, user_id: uuid.UUID, amount: int, reason: str, idempotency_key: str | None = None):
        ensure_capability(admin, Capability.DEBIT_WALLET)
        await self._get_user(user_id)
        key = f"admin:{idempotency_key or uuid.uuid4()}"
        entry = await self._commit(
            "Admin debit",
            lambda: self.ledger.debit(
                user_id, amount, EntryCategory.ADMIN_ADJUSTMENT.value, f"admin:{admin.id}", key,
                description=reason,
            ),
        )
        logger.info(f"🏦 Admin {admin.id} debited {amount} from {user_id}: {reason}")
        return entry

    async def freeze_async(self, admin: User, user_id: uuid.UUID, frozen: bool = True):
        ensure_capability(admin, Capability.FREEZE_WALLET)
        await self._get_user(user_id)

        async def work():
            wallet = await self.ledger.get_wallet(user_id, lock=True)
            wallet.is_locked = frozen
            return wallet

        async with self.leases.hold(user_key(user_id)):
            wallet = await self._commit("Wallet freeze", work)
        logger.warning(f"⚠ Wallet of {user_id} {'frozen' if frozen else 'unfrozen'} by {admin.id}")
        return wallet

    async def reconcile_async(self, admin: User, user_id: uuid.UUID) -> dict:
        ensure_capability(admin, Capability.FREEZE_WALLET)
        await self._get_user(user_id)

        async def work():
            wallet = await self.ledger.get_wallet(user_id, lock=True)
            derived = await self.ledger.recompute(user_id)
            drift = {
                "total": wallet.balance - derived["total"],
                "reserved": wallet.reserved - derived["reserved"],
            }
            wallet.balance = derived["total"]
            wallet.reserved = derived["reserved"]
            wallet.last_seq = max(wallet.last_seq, derived["last_seq"])
            return {**derived, "drift": drift, "repaired": any(drift.values())}

        async with self.leases.hold(user_key(user_id)):
            report = await self._commit("Reconcile", work)
        if report["repaired"]:
            logger.warning(f"⚠ Wallet drift repaired for {user_id}: {report['drift']}")
        return report

    # ============================================================
    # TOP-UP
    # ============================================================
    async def create_topup_async(self, user: User, amount: int) -> dict:
        if not isinstance(amount, int) or amount <= 0:
            raise ValidationFailure("Invalid top-up amount")
        topup = WalletTopups(
            id=uuid.uuid4(),
            user_id=user.id,
            amount=amount,
            currency=settings.CURRENCY,
            status=TopupStatus.PENDING.value,
            created_at=get_now(),
        )
        self.db.add(topup)
        await self.db.commit()

        try:
            gateway_order = await self.gateway.create_order(
                amount=amount,
                currency=topup.currency,
                receipt=f"topup-{topup.id}",
                notes={"topup_id": str(topup.id), "user_id": str(user.id)},
            )
        except RazorpayError as e:
            if e.transient:
                raise UpstreamTimeout("Payment gateway unavailable")
            topup.status = TopupStatus.FAILED.value
            await self.db.commit()
            raise Upstream("Payment gateway rejected the top-up")

        topup.gateway_order_id = gateway_order["id"]
        await self.db.commit()
        logger.info(f"💳 Top-up {topup.id} created for {user.id} ({amount})")
        return {
            "topup": topup,
            "gateway": {
                "key_id": self.gateway.key_id,
                "gateway_order_id": topup.gateway_order_id,
                "amount": amount,
                "currency": topup.currency,
            },
        }

    async def confirm_topup_async(
        self, topup_id: uuid.UUID, gateway_payment_id: str, signature: str, actor: User
    ) -> WalletTopups:
        topup = await self.db.get(WalletTopups, topup_id)
        if topup is None:
            raise NotFound("Top-up not found")
        if topup.user_id != actor.id:
            raise Forbidden("Not your top-up")
        if not verify_payment_signature(
            topup.gateway_order_id or "", gateway_payment_id, signature, settings.RAZORPAY_KEY_SECRET
        ):
            logger.warning(f"⚠ Signature mismatch for top-up {topup_id}")
            raise SignatureInvalid()

        async def work():
            fresh = await self.db.scalar(
                select(WalletTopups)
                .where(WalletTopups.id == topup_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            if fresh.status == TopupStatus.COMPLETED.value:
                return fresh
            if fresh.status != TopupStatus.PENDING.value:
                raise ValidationFailure("Top-up is no longer payable")
            entry = await self.ledger.credit(
                fresh.user_id,
                fresh.amount,
                EntryCategory.TOPUP.value,
                str(fresh.id),
                f"topup:{fresh.id}",
                description="Wallet top-up",
            )
            fresh.gateway_payment_id = gateway_payment_id
            fresh.entry_id = entry.id
            fresh.status = TopupStatus.COMPLETED.value
            fresh.completed_at = get_now()
            return fresh

        async with self.leases.hold(f"topup:{topup_id}"):
            async with self.leases.hold(user_key(topup.user_id)):
                topup = await self._commit("Top-up confirmation", work)
        logger.success(f"✔ Top-up {topup.id} credited ({topup.amount})")
        return topup
