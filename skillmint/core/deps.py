# skillmint/core/deps.py
import uuid
from typing import List, Optional

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.core.context import get_request
from skillmint.core.errors import Forbidden, Unauthenticated
from skillmint.core.permissions import Capability, ensure_capability
from skillmint.core.security import SecurityService
from skillmint.db.models.database import User
from skillmint.db.session import get_session


class AuthorizationService:
    def __init__(
        self,
        db: AsyncSession = Depends(get_session),
        security: SecurityService = Depends(SecurityService),
    ):
        self.db = db
        self.security = security

    # ==============================
    # CORE AUTH CHECKS
    # ==============================

    @staticmethod
    def _read_token() -> str | None:
        request = get_request()
        token = request.cookies.get("access_token")
        if token:
            return token
        header = request.headers.get("authorization")
        if header and header.lower().startswith("bearer "):
            return header.split(" ", 1)[1].strip()
        return None

    async def get_current_user(self) -> User:
        """Current user from the ``access_token`` cookie or a bearer header."""
        token = self._read_token()
        if not token:
            raise Unauthenticated("Token not found")

        try:
            payload = await self.security.decode_access_token(token)
        except ValueError as e:
            raise Unauthenticated(str(e))

        try:
            user_id = uuid.UUID(str(payload.get("sub")))
        except ValueError:
            raise Unauthenticated("Invalid token")

        user = await self.db.scalar(select(User).where(User.id == user_id))
        if not user or not user.is_active:
            raise Unauthenticated("Invalid token")
        return user

    # ==============================
    # ROLE / CAPABILITY ACCESS CONTROL
    # ==============================

    async def require_role(self, required_roles: Optional[List[str]] = None) -> User:
        current_user = await self.get_current_user()
        if required_roles and current_user.role not in required_roles:
            raise Forbidden("Permission denied")
        return current_user

    async def require_capability(self, capability: Capability) -> User:
        current_user = await self.get_current_user()
        ensure_capability(current_user, capability)
        return current_user
