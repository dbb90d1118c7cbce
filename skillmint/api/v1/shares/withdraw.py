import uuid

from fastapi import APIRouter, Depends, Query

from skillmint.core.deps import AuthorizationService
from skillmint.core.enum import WithdrawalStatus
from skillmint.libs.response import ok
from skillmint.schemas.shares.withdraw import (
    WithdrawalOut,
    WithdrawRequestSchema,
)
from skillmint.services.shares.withdraw import WithdrawService

router = APIRouter(prefix="/withdrawals", tags=["Withdrawals"])


@router.post("", status_code=201)
async def request_withdrawal(
    schema: WithdrawRequestSchema,
    auth: AuthorizationService = Depends(AuthorizationService),
    service: WithdrawService = Depends(WithdrawService),
):
    user = await auth.get_current_user()
    withdrawal = await service.request_withdraw_async(
        user, schema.amount, schema.method.value, schema.account_details
    )
    return ok(WithdrawalOut.model_validate(withdrawal), "Withdrawal requested")


@router.get("")
async def list_my_withdrawals(
    status: WithdrawalStatus | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    auth: AuthorizationService = Depends(AuthorizationService),
    service: WithdrawService = Depends(WithdrawService),
):
    user = await auth.get_current_user()
    result = await service.list_async(
        user_id=user.id,
        status=status.value if status else None,
        page=page,
        limit=limit,
    )
    result["items"] = [WithdrawalOut.model_validate(w) for w in result["items"]]
    return ok(result)


@router.get("/{withdrawal_id}")
async def get_withdrawal(
    withdrawal_id: uuid.UUID,
    auth: AuthorizationService = Depends(AuthorizationService),
    service: WithdrawService = Depends(WithdrawService),
):
    user = await auth.get_current_user()
    return ok(WithdrawalOut.model_validate(await service.get_async(withdrawal_id, user)))


@router.post("/{withdrawal_id}/cancel")
async def cancel_withdrawal(
    withdrawal_id: uuid.UUID,
    auth: AuthorizationService = Depends(AuthorizationService),
    service: WithdrawService = Depends(WithdrawService),
):
    user = await auth.get_current_user()
    withdrawal = await service.cancel_async(withdrawal_id, user)
    return ok(WithdrawalOut.model_validate(withdrawal), "Withdrawal cancelled")
