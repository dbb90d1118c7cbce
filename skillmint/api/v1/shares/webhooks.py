from fastapi import APIRouter, Depends, Header, Request

from skillmint.libs.response import ok
from skillmint.services.shares.payment import PaymentService

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/gateway")
async def gateway_webhook(
    request: Request,
    x_razorpay_signature: str | None = Header(None),
    service: PaymentService = Depends(PaymentService),
):
    # the signature covers the exact bytes received
    raw_body = await request.body()
    result = await service.handle_webhook_async(raw_body, x_razorpay_signature)
    return ok(result, "Webhook accepted")
