from fastapi import APIRouter, Depends, Query
from fastapi_pagination import Params, paginate

from skillmint.core.deps import AuthorizationService
from skillmint.core.enum import CommissionStatus
from skillmint.libs.response import ok
from skillmint.schemas.shares.commission import CommissionOut, ReferralLinkSchema
from skillmint.services.shares.commission import CommissionService
from skillmint.services.shares.referral import ReferralService

router = APIRouter(prefix="/affiliate", tags=["Affiliate"])


@router.get("/commissions")
async def list_commissions(
    status: CommissionStatus | None = None,
    level: int | None = Query(None, ge=1, le=3),
    params: Params = Depends(),
    auth: AuthorizationService = Depends(AuthorizationService),
    service: CommissionService = Depends(CommissionService),
):
    user = await auth.get_current_user()
    rows = await service.list_for_affiliate(
        user.id, status=status.value if status else None, level=level
    )
    return ok(paginate([CommissionOut.model_validate(c) for c in rows], params))


@router.get("/stats")
async def get_stats(
    auth: AuthorizationService = Depends(AuthorizationService),
    service: CommissionService = Depends(CommissionService),
    referrals: ReferralService = Depends(ReferralService),
):
    user = await auth.get_current_user()
    if not user.referral_code:
        await referrals.ensure_code(user)
        await referrals.db.commit()
    return ok(await service.stats(user))


@router.post("/link")
async def link_referrer(
    schema: ReferralLinkSchema,
    auth: AuthorizationService = Depends(AuthorizationService),
    referrals: ReferralService = Depends(ReferralService),
):
    user = await auth.get_current_user()
    referrer = await referrals.link(user, schema.referral_code)
    return ok({"referred_by_id": referrer.id, "referral_code": referrer.referral_code}, "Referrer linked")
