import uuid

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.core.policy import MonetaryPolicy, PolicyService
from skillmint.db.session import get_session
from skillmint.schemas.admin.policy import UpdatePolicySchema


class PlatformPolicyService:
    """Admin view over the monetary policy stored in ``platform_settings``."""

    def __init__(self, db: AsyncSession, policy: PolicyService):
        self.db = db
        self.policy = policy

    def get(self) -> dict:
        return {
            "policy": self.policy.get().model_dump(mode="json"),
            "loaded_at": self.policy.loaded_at,
        }

    async def update(self, schema: UpdatePolicySchema, admin_id: uuid.UUID) -> MonetaryPolicy:
        patch = schema.model_dump(mode="json", exclude_unset=True)
        return await self.policy.update(self.db, patch, admin_id)

    async def reload(self) -> MonetaryPolicy:
        return await self.policy.reload(self.db)


def get_platform_policy_service(
    request: Request, db: AsyncSession = Depends(get_session)
) -> PlatformPolicyService:
    return PlatformPolicyService(db, request.app.state.policy)
