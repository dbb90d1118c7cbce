import uuid

from fastapi import APIRouter, Depends, Query

from skillmint.core.deps import AuthorizationService
from skillmint.core.enum import WithdrawalStatus
from skillmint.core.permissions import Capability
from skillmint.libs.response import ok
from skillmint.schemas.shares.withdraw import (
    WithdrawalOut,
    WithdrawRejectSchema,
    WithdrawReviewSchema,
    WithdrawSettleSchema,
)
from skillmint.services.shares.withdraw import WithdrawService

router = APIRouter(prefix="/admin/withdrawals", tags=["ADMIN withdrawals"])


@router.get("")
async def list_withdrawals(
    user_id: uuid.UUID | None = None,
    status: WithdrawalStatus | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    auth: AuthorizationService = Depends(AuthorizationService),
    service: WithdrawService = Depends(WithdrawService),
):
    await auth.require_capability(Capability.APPROVE_WITHDRAWAL)
    result = await service.list_async(
        user_id=user_id,
        status=status.value if status else None,
        page=page,
        limit=limit,
    )
    result["items"] = [WithdrawalOut.model_validate(w) for w in result["items"]]
    return ok(result)


@router.post("/{withdrawal_id}/approve")
async def approve_withdrawal(
    withdrawal_id: uuid.UUID,
    schema: WithdrawReviewSchema | None = None,
    auth: AuthorizationService = Depends(AuthorizationService),
    service: WithdrawService = Depends(WithdrawService),
):
    admin = await auth.require_capability(Capability.APPROVE_WITHDRAWAL)
    withdrawal = await service.approve_async(withdrawal_id, admin, schema.notes if schema else None)
    return ok(WithdrawalOut.model_validate(withdrawal), "Withdrawal approved")


@router.post("/{withdrawal_id}/reject")
async def reject_withdrawal(
    withdrawal_id: uuid.UUID,
    schema: WithdrawRejectSchema,
    auth: AuthorizationService = Depends(AuthorizationService),
    service: WithdrawService = Depends(WithdrawService),
):
    admin = await auth.require_capability(Capability.APPROVE_WITHDRAWAL)
    withdrawal = await service.reject_async(withdrawal_id, admin, schema.reason)
    return ok(WithdrawalOut.model_validate(withdrawal), "Withdrawal rejected")


@router.post("/{withdrawal_id}/flag")
async def flag_withdrawal(
    withdrawal_id: uuid.UUID,
    schema: WithdrawRejectSchema,
    auth: AuthorizationService = Depends(AuthorizationService),
    service: WithdrawService = Depends(WithdrawService),
):
    admin = await auth.require_capability(Capability.APPROVE_WITHDRAWAL)
    withdrawal = await service.flag_async(withdrawal_id, admin, schema.reason)
    return ok(WithdrawalOut.model_validate(withdrawal), "Withdrawal flagged")


@router.post("/{withdrawal_id}/process")
async def process_withdrawal(
    withdrawal_id: uuid.UUID,
    auth: AuthorizationService = Depends(AuthorizationService),
    service: WithdrawService = Depends(WithdrawService),
):
    admin = await auth.require_capability(Capability.PROCESS_WITHDRAWAL)
    withdrawal = await service.begin_settlement_async(withdrawal_id, admin)
    return ok(WithdrawalOut.model_validate(withdrawal), "Withdrawal processing")


@router.post("/{withdrawal_id}/settle")
async def settle_withdrawal(
    withdrawal_id: uuid.UUID,
    schema: WithdrawSettleSchema,
    auth: AuthorizationService = Depends(AuthorizationService),
    service: WithdrawService = Depends(WithdrawService),
):
    admin = await auth.require_capability(Capability.PROCESS_WITHDRAWAL)
    if schema.outcome == "completed":
        withdrawal = await service.complete_settlement_async(withdrawal_id, admin, schema.external_reference)
    else:
        withdrawal = await service.fail_settlement_async(withdrawal_id, admin, schema.reason)
    return ok(WithdrawalOut.model_validate(withdrawal), f"Withdrawal {withdrawal.status}")
