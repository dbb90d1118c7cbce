from fastapi import APIRouter, Depends

from skillmint.core.deps import AuthorizationService
from skillmint.core.enum import UserRole
from skillmint.libs.response import ok
from skillmint.schemas.admin.policy import UpdatePolicySchema
from skillmint.services.admin.platform_policy import (
    PlatformPolicyService,
    get_platform_policy_service,
)

router = APIRouter(prefix="/admin/policy", tags=["Admin Policy"])


@router.get("")
async def get_policy(
    service: PlatformPolicyService = Depends(get_platform_policy_service),
    authorization: AuthorizationService = Depends(AuthorizationService),
):
    await authorization.require_role([UserRole.ADMIN.value])
    return ok(service.get())


@router.put("")
async def update_policy(
    body: UpdatePolicySchema,
    service: PlatformPolicyService = Depends(get_platform_policy_service),
    authorization: AuthorizationService = Depends(AuthorizationService),
):
    admin = await authorization.require_role([UserRole.ADMIN.value])
    policy = await service.update(body, admin.id)
    return ok(policy.model_dump(mode="json"), "Policy updated")


@router.post("/reload")
async def reload_policy(
    service: PlatformPolicyService = Depends(get_platform_policy_service),
    authorization: AuthorizationService = Depends(AuthorizationService),
):
    await authorization.require_role([UserRole.ADMIN.value])
    policy = await service.reload()
    return ok(policy.model_dump(mode="json"), "Policy reloaded")
