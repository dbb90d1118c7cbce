import uuid

from fastapi import APIRouter, Depends

from skillmint.core.deps import AuthorizationService
from skillmint.core.permissions import Capability
from skillmint.libs.response import ok
from skillmint.schemas.shares.orders import (
    GatewayCheckoutOut,
    OrderCancelSchema,
    OrderConfirmSchema,
    OrderCreateSchema,
    OrderOut,
    OrderRefundSchema,
)
from skillmint.services.shares.payment import PaymentService

router = APIRouter(prefix="/orders", tags=["Orders"])


@router.post("", status_code=201)
async def create_order(
    schema: OrderCreateSchema,
    auth: AuthorizationService = Depends(AuthorizationService),
    service: PaymentService = Depends(PaymentService),
):
    buyer = await auth.get_current_user()
    result = await service.create_order_async(
        buyer,
        course_id=schema.course_id,
        payment_method=schema.payment_method.value,
        referral_code=schema.referral_code,
    )
    gateway = result["gateway"]
    return ok(
        {
            "order": OrderOut.model_validate(result["order"]),
            "gateway": GatewayCheckoutOut(**gateway) if gateway else None,
        },
        "Order created",
    )


@router.get("/{order_id}")
async def get_order(
    order_id: uuid.UUID,
    auth: AuthorizationService = Depends(AuthorizationService),
    service: PaymentService = Depends(PaymentService),
):
    user = await auth.get_current_user()
    order = await service.get_order_async(order_id, user)
    return ok(OrderOut.model_validate(order))


@router.post("/{order_id}/confirm")
async def confirm_gateway_payment(
    order_id: uuid.UUID,
    schema: OrderConfirmSchema,
    auth: AuthorizationService = Depends(AuthorizationService),
    service: PaymentService = Depends(PaymentService),
):
    buyer = await auth.get_current_user()
    order = await service.confirm_gateway_payment_async(
        order_id, schema.gateway_payment_id, schema.signature, actor=buyer
    )
    return ok(OrderOut.model_validate(order), "Payment confirmed")


@router.post("/{order_id}/pay-wallet")
async def confirm_wallet_payment(
    order_id: uuid.UUID,
    auth: AuthorizationService = Depends(AuthorizationService),
    service: PaymentService = Depends(PaymentService),
):
    buyer = await auth.get_current_user()
    order = await service.confirm_wallet_payment_async(order_id, buyer)
    return ok(OrderOut.model_validate(order), "Payment confirmed")


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: uuid.UUID,
    schema: OrderCancelSchema | None = None,
    auth: AuthorizationService = Depends(AuthorizationService),
    service: PaymentService = Depends(PaymentService),
):
    user = await auth.get_current_user()
    reason = schema.reason if schema else "cancelled by user"
    order = await service.cancel_async(order_id, user, reason)
    return ok(OrderOut.model_validate(order), "Order cancelled")


@router.post("/{order_id}/refund")
async def refund_order(
    order_id: uuid.UUID,
    schema: OrderRefundSchema,
    auth: AuthorizationService = Depends(AuthorizationService),
    service: PaymentService = Depends(PaymentService),
):
    admin = await auth.require_capability(Capability.PROCESS_REFUND)
    order = await service.refund_async(order_id, schema.amount, schema.reason, admin)
    return ok(OrderOut.model_validate(order), "Order refunded")
