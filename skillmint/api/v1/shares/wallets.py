import datetime
import uuid

from fastapi import APIRouter, Depends, Query

from skillmint.core.deps import AuthorizationService
from skillmint.core.enum import EntryCategory, EntryDirection, EntryStatus
from skillmint.libs.response import ok
from skillmint.schemas.shares.wallet import (
    LedgerEntryOut,
    TopupConfirmSchema,
    TopupCreateSchema,
    TopupOut,
    TransferSchema,
)
from skillmint.services.shares.ledger import LedgerService
from skillmint.services.shares.wallets import WalletsService

router = APIRouter(prefix="/wallet", tags=["Wallet"])


@router.get("/balance")
async def get_balance(
    auth: AuthorizationService = Depends(AuthorizationService),
    ledger: LedgerService = Depends(LedgerService),
):
    user = await auth.get_current_user()
    return ok(await ledger.balance(user.id))


@router.get("/summary")
async def get_summary(
    auth: AuthorizationService = Depends(AuthorizationService),
    service: WalletsService = Depends(WalletsService),
):
    user = await auth.get_current_user()
    return ok(await service.summary_async(user))


@router.get("/transactions")
async def list_transactions(
    category: EntryCategory | None = None,
    direction: EntryDirection | None = None,
    status: EntryStatus | None = None,
    date_from: datetime.datetime | None = None,
    date_to: datetime.datetime | None = None,
    cursor: int | None = Query(None, ge=1),
    limit: int = Query(20, ge=1, le=100),
    auth: AuthorizationService = Depends(AuthorizationService),
    service: WalletsService = Depends(WalletsService),
):
    user = await auth.get_current_user()
    page = await service.transactions_async(
        user,
        category=category.value if category else None,
        direction=direction.value if direction else None,
        status=status.value if status else None,
        date_from=date_from,
        date_to=date_to,
        cursor=cursor,
        limit=limit,
    )
    page["items"] = [LedgerEntryOut.model_validate(e) for e in page["items"]]
    return ok(page)


@router.post("/transfer")
async def transfer(
    schema: TransferSchema,
    auth: AuthorizationService = Depends(AuthorizationService),
    service: WalletsService = Depends(WalletsService),
):
    sender = await auth.get_current_user()
    result = await service.transfer_async(
        sender, schema.recipient_id, schema.amount, schema.idempotency_key, schema.note
    )
    return ok(LedgerEntryOut.model_validate(result["debit"]), "Transfer completed")


@router.post("/topups", status_code=201)
async def create_topup(
    schema: TopupCreateSchema,
    auth: AuthorizationService = Depends(AuthorizationService),
    service: WalletsService = Depends(WalletsService),
):
    user = await auth.get_current_user()
    result = await service.create_topup_async(user, schema.amount)
    return ok(
        {"topup": TopupOut.model_validate(result["topup"]), "gateway": result["gateway"]},
        "Top-up created",
    )


@router.post("/topups/{topup_id}/confirm")
async def confirm_topup(
    topup_id: uuid.UUID,
    schema: TopupConfirmSchema,
    auth: AuthorizationService = Depends(AuthorizationService),
    service: WalletsService = Depends(WalletsService),
):
    user = await auth.get_current_user()
    topup = await service.confirm_topup_async(topup_id, schema.gateway_payment_id, schema.signature, user)
    return ok(TopupOut.model_validate(topup), "Top-up credited")
