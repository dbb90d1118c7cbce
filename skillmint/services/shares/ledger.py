import uuid
from dataclasses import dataclass
from datetime import datetime

from fastapi import Depends
from loguru import logger
from sqlalchemy import and_, case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.core.enum import EntryCategory, EntryDirection, EntryStatus, UserRole
from skillmint.core.errors import (
    InsufficientFunds,
    InvalidTransition,
    NotFound,
    ValidationFailure,
)
from skillmint.core.leases import LeaseManager, get_lease_manager, user_key
from skillmint.db.models.database import LedgerEntries, User, Wallets
from skillmint.db.session import get_session
from skillmint.libs.formats.datetime import now as get_now

PLATFORM_EMAIL = "platform@skillmint.internal"
RESERVE_EMAIL = "affiliate-reserve@skillmint.internal"

EARNING_CATEGORIES = {
    EntryCategory.COURSE_EARNING.value,
    EntryCategory.COMMISSION_PAYOUT.value,
    EntryCategory.PLATFORM_FEE.value,
    EntryCategory.WITHDRAWAL_SETTLE.value,
}

# statuses that count towards the posted balance
POSTED = (EntryStatus.COMPLETED.value, EntryStatus.REVERSED.value)


@dataclass(frozen=True)
class SystemAccounts:
    platform_id: uuid.UUID
    reserve_id: uuid.UUID


async def get_system_accounts(db: AsyncSession) -> SystemAccounts:
    """House accounts, created on first use."""
    accounts = {}
    for email, name, code in (
        (PLATFORM_EMAIL, "SkillMint Platform", "SYSPLATFORM"),
        (RESERVE_EMAIL, "SkillMint Affiliate Reserve", "SYSRESERVE"),
    ):
        user = await db.scalar(select(User).where(User.email == email))
        if user is None:
            user = User(
                id=uuid.uuid4(),
                fullname=name,
                email=email,
                role=UserRole.SYSTEM.value,
                referral_code=code,
            )
            db.add(user)
            await db.flush()
            logger.info(f"🏦 System account created: {email}")
        accounts[email] = user.id
    return SystemAccounts(
        platform_id=accounts[PLATFORM_EMAIL], reserve_id=accounts[RESERVE_EMAIL]
    )


class LedgerService:
    """
    Double-entry wallet ledger, the only writer of monetary state.

    Entries are append-only; only their status moves
    (pending → completed, pending/completed → reversed).
    ``wallets`` caches the per-owner view:
    - balance  = Σ posted credits − Σ posted debits (posted = completed or reversed)
    - reserved = Σ pending debits
    - available = balance − reserved

    Nothing here commits; the caller owns the transaction.
    """

    def __init__(
        self,
        db: AsyncSession = Depends(get_session),
        leases: LeaseManager = Depends(get_lease_manager),
    ):
        self.db = db
        self.leases = leases

    # ============================================================
    # WALLET VIEW
    # ============================================================
    async def get_wallet(self, owner_id: uuid.UUID, lock: bool = False) -> Wallets:
        stmt = select(Wallets).where(Wallets.user_id == owner_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        wallet = await self.db.scalar(stmt)
        if wallet is None:
            owner = await self.db.get(User, owner_id)
            if owner is None:
                raise NotFound("Wallet owner not found")
            wallet = Wallets(user_id=owner_id, balance=0, reserved=0, last_seq=0)
            self.db.add(wallet)
            await self.db.flush()
        return wallet

    async def _is_system(self, owner_id: uuid.UUID) -> bool:
        owner = await self.db.get(User, owner_id)
        if owner is None:
            raise NotFound("Wallet owner not found")
        return owner.role == UserRole.SYSTEM.value

    async def balance(self, owner_id: uuid.UUID) -> dict:
        wallet = await self.db.scalar(
            select(Wallets)
            .where(Wallets.user_id == owner_id)
            .execution_options(populate_existing=True)
        )
        if wallet is None:
            return {"total": 0, "available": 0, "reserved": 0}
        return {
            "total": wallet.balance,
            "available": wallet.available,
            "reserved": wallet.reserved,
        }

    async def find_by_key(
        self, owner_id: uuid.UUID, idempotency_key: str
    ) -> LedgerEntries | None:
        return await self.db.scalar(
            select(LedgerEntries).where(
                LedgerEntries.owner_id == owner_id,
                LedgerEntries.idempotency_key == idempotency_key,
            )
        )

    async def _load_entry(self, entry_id: uuid.UUID) -> LedgerEntries:
        entry = await self.db.scalar(
            select(LedgerEntries)
            .where(LedgerEntries.id == entry_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if entry is None:
            raise NotFound("Ledger entry not found")
        return entry

    def _append(
        self,
        wallet: Wallets,
        *,
        direction: str,
        amount: int,
        category: str,
        reference: str | None,
        idempotency_key: str,
        status: str,
        description: str | None = None,
        reversal_of_id: uuid.UUID | None = None,
    ) -> LedgerEntries:
        wallet.last_seq += 1
        wallet.last_transaction_at = get_now()
        entry = LedgerEntries(
            id=uuid.uuid4(),
            owner_id=wallet.user_id,
            seq=wallet.last_seq,
            direction=direction,
            amount=amount,
            currency=wallet.currency,
            category=category,
            reference=reference,
            idempotency_key=idempotency_key,
            balance_after=wallet.balance,
            status=status,
            reversal_of_id=reversal_of_id,
            description=description,
            created_at=get_now(),
        )
        self.db.add(entry)
        return entry

    # ============================================================
    # POST
    # ============================================================
    async def post(
        self,
        owner_id: uuid.UUID,
        direction: str,
        amount: int,
        category: str,
        reference: str | None,
        idempotency_key: str,
        *,
        pending: bool = False,
        allow_negative: bool = False,
        description: str | None = None,
    ) -> LedgerEntries:
        """Append one entry. A repeated ``idempotency_key`` returns the first entry."""
        direction = EntryDirection(direction).value
        category = EntryCategory(category).value
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValidationFailure("Amount must be a positive integer of minor units")
        if pending and direction != EntryDirection.DEBIT.value:
            raise ValidationFailure("Only debits can be reserved")
        if not idempotency_key:
            raise ValidationFailure("Idempotency key is required")

        async with self.leases.hold(user_key(owner_id)):
            existing = await self.find_by_key(owner_id, idempotency_key)
            if existing is not None:
                return existing

            wallet = await self.get_wallet(owner_id, lock=True)

            if direction == EntryDirection.DEBIT.value:
                exempt = allow_negative or await self._is_system(owner_id)
                if not exempt and wallet.available - amount < 0:
                    raise InsufficientFunds(
                        errors={"available": wallet.available, "requested": amount}
                    )
                if pending:
                    wallet.reserved += amount
                else:
                    wallet.balance -= amount
            else:
                wallet.balance += amount
                if category in EARNING_CATEGORIES:
                    wallet.total_earned += amount

            entry = self._append(
                wallet,
                direction=direction,
                amount=amount,
                category=category,
                reference=reference,
                idempotency_key=idempotency_key,
                status=EntryStatus.PENDING.value if pending else EntryStatus.COMPLETED.value,
                description=description,
            )
            await self.db.flush()
            return entry

    async def credit(self, owner_id, amount, category, reference, idempotency_key, **kw):
        return await self.post(
            owner_id, EntryDirection.CREDIT.value, amount, category, reference, idempotency_key, **kw
        )

    async def debit(self, owner_id, amount, category, reference, idempotency_key, **kw):
        return await self.post(
            owner_id, EntryDirection.DEBIT.value, amount, category, reference, idempotency_key, **kw
        )

    async def transfer(
        self,
        from_id: uuid.UUID,
        to_id: uuid.UUID,
        amount: int,
        category: str,
        reference: str | None,
        idempotency_key: str,
        description: str | None = None,
    ) -> tuple[LedgerEntries, LedgerEntries]:
        """Debit one owner and credit another under both leases."""
        if from_id == to_id:
            raise ValidationFailure("Cannot transfer to the same wallet")
        async with self.leases.hold(user_key(from_id), user_key(to_id)):
            debit = await self.debit(
                from_id, amount, category, reference, idempotency_key, description=description
            )
            credit = await self.credit(
                to_id, amount, category, reference, idempotency_key, description=description
            )
            return debit, credit

    # ============================================================
    # COMPLETE (pending → completed)
    # ============================================================
    async def complete(self, entry_id: uuid.UUID) -> LedgerEntries:
        entry = await self.db.get(LedgerEntries, entry_id)
        if entry is None:
            raise NotFound("Ledger entry not found")

        async with self.leases.hold(user_key(entry.owner_id)):
            entry = await self._load_entry(entry_id)
            if entry.status == EntryStatus.COMPLETED.value:
                return entry
            if entry.status != EntryStatus.PENDING.value:
                raise InvalidTransition("ledger entry", entry.status, EntryStatus.COMPLETED.value)

            wallet = await self.get_wallet(entry.owner_id, lock=True)
            wallet.reserved -= entry.amount
            wallet.balance -= entry.amount
            if entry.category == EntryCategory.WITHDRAWAL_RESERVE.value:
                wallet.total_withdrawn += entry.amount
            wallet.last_transaction_at = get_now()
            entry.status = EntryStatus.COMPLETED.value
            await self.db.flush()
            return entry

    # ============================================================
    # REVERSE
    # ============================================================
    async def reverse(
        self,
        entry_id: uuid.UUID,
        reason: str,
        *,
        category: str | None = None,
        allow_negative: bool = False,
    ) -> LedgerEntries:
        """
        Write the compensating entry for ``entry_id`` and mark it reversed.
        Reversing a pending reservation releases it; the posted balance is unchanged.
        A second call returns the compensating entry written by the first.
        """
        entry = await self.db.get(LedgerEntries, entry_id)
        if entry is None:
            raise NotFound("Ledger entry not found")

        async with self.leases.hold(user_key(entry.owner_id)):
            entry = await self._load_entry(entry_id)
            key = f"reversal:{entry.id}"
            if entry.status == EntryStatus.REVERSED.value:
                existing = await self.find_by_key(entry.owner_id, key)
                if existing is not None:
                    return existing
                raise InvalidTransition("ledger entry", entry.status, EntryStatus.REVERSED.value)
            if entry.reversal_of_id is not None:
                raise InvalidTransition("ledger entry", "compensating", EntryStatus.REVERSED.value)

            wallet = await self.get_wallet(entry.owner_id, lock=True)
            opposite = (
                EntryDirection.CREDIT.value
                if entry.direction == EntryDirection.DEBIT.value
                else EntryDirection.DEBIT.value
            )

            if entry.status == EntryStatus.PENDING.value:
                # the reserved debit becomes posted and is offset by the credit below
                wallet.reserved -= entry.amount
                wallet.balance -= entry.amount
            elif opposite == EntryDirection.DEBIT.value:
                exempt = allow_negative or await self._is_system(entry.owner_id)
                if not exempt and wallet.available - entry.amount < 0:
                    raise InsufficientFunds(
                        errors={"available": wallet.available, "requested": entry.amount}
                    )
                if entry.category in EARNING_CATEGORIES:
                    wallet.total_earned -= entry.amount
            elif entry.category == EntryCategory.WITHDRAWAL_RESERVE.value:
                wallet.total_withdrawn -= entry.amount

            if opposite == EntryDirection.CREDIT.value:
                wallet.balance += entry.amount
            else:
                wallet.balance -= entry.amount

            entry.status = EntryStatus.REVERSED.value
            compensating = self._append(
                wallet,
                direction=opposite,
                amount=entry.amount,
                category=category or entry.category,
                reference=entry.reference,
                idempotency_key=key,
                status=EntryStatus.COMPLETED.value,
                description=reason,
                reversal_of_id=entry.id,
            )
            await self.db.flush()
            return compensating

    # ============================================================
    # SCAN / RECOMPUTE
    # ============================================================
    async def scan(
        self,
        owner_id: uuid.UUID,
        *,
        category: str | None = None,
        direction: str | None = None,
        status: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        cursor: int | None = None,
        limit: int = 20,
    ) -> dict:
        """Newest first. ``cursor`` is the last ``seq`` seen; ``next_cursor`` is None at the end."""
        limit = max(1, min(limit, 100))
        conditions = [LedgerEntries.owner_id == owner_id]
        if category:
            conditions.append(LedgerEntries.category == category)
        if direction:
            conditions.append(LedgerEntries.direction == direction)
        if status:
            conditions.append(LedgerEntries.status == status)
        if date_from:
            conditions.append(LedgerEntries.created_at >= date_from)
        if date_to:
            conditions.append(LedgerEntries.created_at <= date_to)
        if cursor is not None:
            conditions.append(LedgerEntries.seq < cursor)

        rows = (
            await self.db.scalars(
                select(LedgerEntries)
                .where(and_(*conditions))
                .order_by(LedgerEntries.seq.desc())
                .limit(limit + 1)
            )
        ).all()
        items = list(rows[:limit])
        next_cursor = items[-1].seq if len(rows) > limit else None
        return {"items": items, "next_cursor": next_cursor, "limit": limit}

    async def recompute(self, owner_id: uuid.UUID) -> dict:
        """Balance and reservation derived from the entry stream alone."""
        signed = case(
            (LedgerEntries.direction == EntryDirection.CREDIT.value, LedgerEntries.amount),
            else_=-LedgerEntries.amount,
        )
        total = await self.db.scalar(
            select(func.coalesce(func.sum(signed), 0)).where(
                LedgerEntries.owner_id == owner_id,
                LedgerEntries.status.in_(POSTED),
            )
        )
        reserved = await self.db.scalar(
            select(func.coalesce(func.sum(LedgerEntries.amount), 0)).where(
                LedgerEntries.owner_id == owner_id,
                LedgerEntries.status == EntryStatus.PENDING.value,
                LedgerEntries.direction == EntryDirection.DEBIT.value,
            )
        )
        last_seq = await self.db.scalar(
            select(func.coalesce(func.max(LedgerEntries.seq), 0)).where(
                LedgerEntries.owner_id == owner_id
            )
        )
        return {"total": int(total), "reserved": int(reserved), "last_seq": int(last_seq)}
