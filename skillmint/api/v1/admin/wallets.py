import uuid

from fastapi import APIRouter, Depends

from skillmint.core.deps import AuthorizationService
from skillmint.core.permissions import Capability
from skillmint.libs.response import ok
from skillmint.schemas.shares.wallet import AdminAdjustSchema, FreezeSchema, LedgerEntryOut
from skillmint.services.shares.wallets import WalletsService

router = APIRouter(prefix="/admin/wallets", tags=["ADMIN wallets"])


@router.post("/{user_id}/credit")
async def credit_wallet(
    user_id: uuid.UUID,
    schema: AdminAdjustSchema,
    auth: AuthorizationService = Depends(AuthorizationService),
    service: WalletsService = Depends(WalletsService),
):
    admin = await auth.require_capability(Capability.CREDIT_WALLET)
    entry = await service.admin_credit_async(admin, user_id, schema.amount, schema.reason, schema.idempotency_key)
    return ok(LedgerEntryOut.model_validate(entry), "Wallet credited")


@router.post("/{user_id}/debit")
async def debit_wallet(
    user_id: uuid.UUID,
    schema: AdminAdjustSchema,
    auth: AuthorizationService = Depends(AuthorizationService),
    service: WalletsService = Depends(WalletsService),
):
    admin = await auth.require_capability(Capability.DEBIT_WALLET)
    entry = await service.admin_debit_async(admin, user_id, schema.amount, schema.reason, schema.idempotency_key)
    return ok(LedgerEntryOut.model_validate(entry), "Wallet debited")


@router.post("/{user_id}/freeze")
async def freeze_wallet(
    user_id: uuid.UUID,
    schema: FreezeSchema | None = None,
    auth: AuthorizationService = Depends(AuthorizationService),
    service: WalletsService = Depends(WalletsService),
):
    admin = await auth.require_capability(Capability.FREEZE_WALLET)
    wallet = await service.freeze_async(admin, user_id, schema.frozen if schema else True)
    return ok({"user_id": user_id, "is_locked": wallet.is_locked}, "Wallet updated")


@router.post("/{user_id}/reconcile")
async def reconcile_wallet(
    user_id: uuid.UUID,
    auth: AuthorizationService = Depends(AuthorizationService),
    service: WalletsService = Depends(WalletsService),
):
    admin = await auth.require_capability(Capability.FREEZE_WALLET)
    return ok(await service.reconcile_async(admin, user_id), "Wallet reconciled")
