import hashlib
import secrets
import string
import uuid

from fastapi import Depends
from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.core.enum import COMMISSION_EARNING_ROLES
from skillmint.core.errors import Conflict, InvalidReferral, NotFound
from skillmint.db.models.database import User
from skillmint.db.session import get_session
from skillmint.libs.formats.datetime import now as get_now

_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_code(user_id: uuid.UUID, fullname: str) -> str:
    """3 letters of the name + 4 hex of md5(user id) + 3 random characters."""
    letters = "".join(ch for ch in (fullname or "").upper() if ch.isalpha())[:3]
    letters = letters.ljust(3, "X")
    digest = hashlib.md5(str(user_id).encode("utf-8")).hexdigest()[:4].upper()
    tail = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(3))
    return f"{letters}{digest}{tail}"


def is_commission_earner(user: User | None) -> bool:
    return bool(user and user.is_active and user.role in COMMISSION_EARNING_ROLES)


class ReferralService:
    def __init__(self, db: AsyncSession = Depends(get_session)):
        self.db = db

    async def ensure_code(self, user: User) -> str:
        if user.referral_code:
            return user.referral_code
        for _ in range(10):
            code = generate_code(user.id, user.fullname)
            taken = await self.db.scalar(select(User.id).where(User.referral_code == code))
            if taken is None:
                user.referral_code = code
                await self.db.flush()
                return code
        raise Conflict("Could not allocate a unique referral code")

    async def resolve(self, code: str | None) -> User | None:
        if not code:
            return None
        return await self.db.scalar(
            select(User).where(User.referral_code == code.strip().upper())
        )

    async def validate(self, code: str, buyer: User) -> User:
        """Referrer for ``code`` or InvalidReferral."""
        referrer = await self.resolve(code)
        if referrer is None:
            raise InvalidReferral("Referral code not found")
        if referrer.id == buyer.id:
            raise InvalidReferral("Self-referral is not allowed")
        if not is_commission_earner(referrer):
            raise InvalidReferral("Referrer cannot earn commissions")
        return referrer

    async def _walk_up(self, start_id: uuid.UUID | None, limit: int = 1000):
        seen = set()
        current = start_id
        while current is not None and current not in seen and len(seen) < limit:
            seen.add(current)
            yield current
            current = await self.db.scalar(
                select(User.referred_by_id).where(User.id == current)
            )

    async def link(self, user: User, code: str) -> User:
        """First linkage only; rejects self-referral and anything that would close a cycle."""
        if user.referred_by_id is not None:
            raise Conflict("Referrer already set")
        referrer = await self.validate(code, user)

        async for ancestor in self._walk_up(referrer.id):
            if ancestor == user.id:
                logger.warning(f"⚠ Referral cycle rejected: {user.id} → {referrer.id}")
                raise InvalidReferral("Referral would create a cycle")

        user.referred_by_id = referrer.id
        user.referred_at = get_now()
        await self.db.commit()
        logger.success(f"✔ User {user.id} linked to referrer {referrer.id}")
        return referrer

    async def direct_referrals(self, user_id: uuid.UUID) -> int:
        return await self.db.scalar(
            select(func.count(User.id)).where(User.referred_by_id == user_id)
        )

    async def get_user(self, user_id: uuid.UUID) -> User:
        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFound("User not found")
        return user
