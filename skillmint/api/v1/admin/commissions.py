import uuid

from fastapi import APIRouter, Depends

from skillmint.core.deps import AuthorizationService
from skillmint.core.errors import NotFound
from skillmint.core.permissions import Capability
from skillmint.libs.response import ok
from skillmint.schemas.shares.commission import CommissionModerateSchema, CommissionOut
from skillmint.services.shares.commission import CommissionService

router = APIRouter(prefix="/admin/commissions", tags=["ADMIN commissions"])


@router.post("/{commission_id}/{action}")
async def moderate_commission(
    commission_id: uuid.UUID,
    action: str,
    schema: CommissionModerateSchema | None = None,
    auth: AuthorizationService = Depends(AuthorizationService),
    service: CommissionService = Depends(CommissionService),
):
    admin = await auth.require_capability(Capability.APPROVE_COMMISSION)
    schema = schema or CommissionModerateSchema()
    reason = schema.reason or f"{action} by admin"
    handlers = {
        "approve": lambda: service.approve_async(commission_id, admin, schema.reason),
        "reject": lambda: service.reject_async(commission_id, admin, reason),
        "hold": lambda: service.hold_async(commission_id, admin, reason),
        "review": lambda: service.review_async(commission_id, admin, reason),
        "flag": lambda: service.flag_async(commission_id, admin, reason),
    }
    handler = handlers.get(action)
    if handler is None:
        raise NotFound("Unknown commission action")
    commission = await handler()
    return ok(CommissionOut.model_validate(commission), f"Commission {commission.status}")
