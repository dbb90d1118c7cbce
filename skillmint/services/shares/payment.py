import json
import uuid
from datetime import datetime, timedelta

from fastapi import Depends
from loguru import logger
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.core.enum import (
    ORDER_FLOWS,
    EntryCategory,
    OrderStatus,
    PaymentMethod,
    UserRole,
    can_transition,
)
from skillmint.core.errors import (
    AppError,
    Conflict,
    DuplicatePurchase,
    Forbidden,
    Internal,
    InvalidReferral,
    InvalidTransition,
    NotFound,
    SignatureInvalid,
    Upstream,
    UpstreamTimeout,
    ValidationFailure,
)
from skillmint.core.leases import LeaseManager, get_lease_manager, order_key, user_key
from skillmint.core.permissions import Capability, ensure_capability
from skillmint.core.policy import PolicyService, get_policy_service
from skillmint.core.security import verify_payment_signature, verify_webhook_signature
from skillmint.core.settings import settings
from skillmint.db.models.database import Courses, Orders, User, WebhookEvents
from skillmint.db.session import get_session
from skillmint.libs.formats.datetime import isoformat
from skillmint.libs.formats.datetime import now as get_now
from skillmint.libs.formats.money import format_amount, fraction_of, percent_of, prorate
from skillmint.services.shares.commission import CommissionService
from skillmint.services.shares.enrollment import EnrollmentService
from skillmint.services.shares.ledger import LedgerService, get_system_accounts
from skillmint.services.shares.mailer import MailerService, get_mailer_service
from skillmint.services.shares.razorpay_service import (
    RazorpayError,
    RazorpayService,
    get_razorpay_service,
)
from skillmint.services.shares.referral import ReferralService

REFUNDABLE = (OrderStatus.REFUNDED.value, OrderStatus.PARTIALLY_REFUNDED.value)


class PaymentService:
    """
    Payment coordinator: drives an Order through
    pending → processing → completed → refunded / partially_refunded.
    Every public method is one transactional envelope under the order lease.
    """

    def __init__(
        self,
        db: AsyncSession = Depends(get_session),
        leases: LeaseManager = Depends(get_lease_manager),
        policy: PolicyService = Depends(get_policy_service),
        gateway: RazorpayService = Depends(get_razorpay_service),
        mailer: MailerService = Depends(get_mailer_service),
    ):
        self.db = db
        self.leases = leases
        self.policy = policy
        self.gateway = gateway
        self.mailer = mailer
        self.ledger = LedgerService(db, leases)
        self.commissions = CommissionService(db, leases, policy)
        self.enrollments = EnrollmentService(db)
        self.referrals = ReferralService(db)

    # ============================================================
    # HELPERS
    # ============================================================
    async def _load_order(self, order_id: uuid.UUID, lock: bool = False) -> Orders:
        stmt = select(Orders).where(Orders.id == order_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        order = await self.db.scalar(stmt)
        if order is None:
            raise NotFound("Order not found")
        return order

    @staticmethod
    def _transition(order: Orders, target: str, note: str | None = None):
        if not can_transition(ORDER_FLOWS, order.status, target):
            raise InvalidTransition("order", order.status, target)
        history = list(order.status_history or [])
        history.append({"from": order.status, "to": target, "at": isoformat(get_now()), "note": note})
        order.status_history = history
        order.status = target
        order.updated_at = get_now()

    async def _run(self, label: str, work):
        """Commit ``work`` or roll everything back."""
        try:
            result = await work()
            await self.db.commit()
            return result
        except AppError:
            await self.db.rollback()
            raise
        except Exception as e:
            await self.db.rollback()
            logger.error(f"❌ {label} failed: {e}")
            raise Internal(f"{label} failed")

    async def _already_purchased(
        self, buyer_id: uuid.UUID, course_id: uuid.UUID, exclude: uuid.UUID | None = None
    ) -> bool:
        stmt = select(Orders.id).where(
            Orders.buyer_id == buyer_id,
            Orders.course_id == course_id,
            Orders.status.in_([OrderStatus.COMPLETED.value, OrderStatus.PARTIALLY_REFUNDED.value]),
        )
        if exclude is not None:
            stmt = stmt.where(Orders.id != exclude)
        return await self.db.scalar(stmt.limit(1)) is not None

    async def get_order_async(self, order_id: uuid.UUID, actor: User) -> Orders:
        order = await self._load_order(order_id)
        if order.buyer_id != actor.id and actor.role != UserRole.ADMIN.value:
            raise Forbidden("Not your order")
        return order

    # ============================================================
    # CREATE
    # ============================================================
    async def _resolve_referrer(self, code: str | None, buyer: User) -> User | None:
        if not code:
            return None
        try:
            return await self.referrals.validate(code, buyer)
        except InvalidReferral as e:
            if settings.REJECT_UNRESOLVED_REFERRAL:
                raise
            logger.warning(f"⚠ Referral code ignored for buyer {buyer.id}: {e.message}")
            return None

    async def create_order_async(
        self,
        buyer: User,
        course_id: uuid.UUID,
        payment_method: str,
        referral_code: str | None = None,
    ) -> dict:
        try:
            method = PaymentMethod(payment_method).value
        except ValueError:
            raise ValidationFailure("Unknown payment method", errors={"payment_method": payment_method})

        course = await self.db.get(Courses, course_id)
        if course is None or not course.is_published:
            raise NotFound("Course not found")

        if await self._already_purchased(buyer.id, course.id):
            raise DuplicatePurchase()
        open_wallet_order = await self.db.scalar(
            select(Orders.id).where(
                Orders.buyer_id == buyer.id,
                Orders.course_id == course.id,
                Orders.payment_method == PaymentMethod.WALLET.value,
                Orders.status.in_([OrderStatus.PENDING.value, OrderStatus.PROCESSING.value]),
            ).limit(1)
        )
        if open_wallet_order is not None:
            raise DuplicatePurchase("A wallet order for this course is already open")

        referrer = await self._resolve_referrer(referral_code, buyer)

        gross = course.price
        final = min(course.effective_price, gross)
        if final <= 0:
            raise ValidationFailure("Course has no payable amount")

        policy = self.policy.get()
        order = Orders(
            id=uuid.uuid4(),
            buyer_id=buyer.id,
            course_id=course.id,
            gross_amount=gross,
            discount=gross - final,
            final_amount=final,
            currency=course.currency,
            referrer_id=referrer.id if referrer else None,
            referral_code=referral_code if referrer else None,
            payment_method=method,
            status=OrderStatus.PENDING.value,
            platform_fee_rate=policy.platform_fee_rate,
            commission_rate=course.commission_rate,
            reserve_rate=(
                course.commission_rate
                if course.commission_rate is not None
                else policy.commission_level_rates[1]
            ),
            status_history=[{"from": None, "to": OrderStatus.PENDING.value, "at": isoformat(get_now()), "note": None}],
            created_at=get_now(),
        )

        if method == PaymentMethod.WALLET.value:
            return await self._create_wallet_order(order, buyer)
        return await self._create_gateway_order(order, course)

    async def _create_wallet_order(self, order: Orders, buyer: User) -> dict:
        async def work():
            self.db.add(order)
            await self.db.flush()
            entry = await self.ledger.debit(
                buyer.id,
                order.final_amount,
                EntryCategory.COURSE_PURCHASE.value,
                str(order.id),
                f"order:{order.id}:purchase",
                pending=True,
                description="Course purchase reservation",
            )
            order.reserve_entry_id = entry.id
            self._transition(order, OrderStatus.PROCESSING.value, "wallet funds reserved")
            await self.db.flush()
            return order

        async with self.leases.hold(order_key(order.id)):
            async with self.leases.hold(user_key(buyer.id)):
                await self._run("Wallet order", work)
        logger.success(f"✔ Wallet order {order.id} reserved {order.final_amount}")
        return {"order": order, "gateway": None}

    async def _create_gateway_order(self, order: Orders, course: Courses) -> dict:
        async with self.leases.hold(order_key(order.id)):
            self.db.add(order)
            await self._run("Order creation", self._noop)

            try:
                gateway_order = await self.gateway.create_order(
                    amount=order.final_amount,
                    currency=order.currency,
                    receipt=str(order.id),
                    notes={"order_id": str(order.id), "course_id": str(course.id)},
                )
            except RazorpayError as e:
                if e.transient:
                    # stays pending, the auto-cancel sweep reaps it
                    raise UpstreamTimeout("Payment gateway unavailable")

                async def fail():
                    fresh = await self._load_order(order.id, lock=True)
                    fresh.failure_reason = str(e)[:500]
                    self._transition(fresh, OrderStatus.FAILED.value, "gateway rejected order")

                await self._run("Order failure", fail)
                raise Upstream("Payment gateway rejected the order")

            async def record():
                fresh = await self._load_order(order.id, lock=True)
                fresh.gateway_order_id = gateway_order["id"]
                return fresh

            order = await self._run("Order gateway link", record)

        logger.success(f"✔ Gateway order {order.gateway_order_id} created for order {order.id}")
        return {
            "order": order,
            "gateway": {
                "key_id": self.gateway.key_id,
                "gateway_order_id": order.gateway_order_id,
                "amount": order.final_amount,
                "currency": order.currency,
            },
        }

    @staticmethod
    async def _noop():
        return None

    # ============================================================
    # COMPLETION (shared by gateway, wallet and webhook paths)
    # ============================================================
    def _shares(self, order: Orders) -> tuple[int, int, int]:
        platform = fraction_of(order.final_amount, order.platform_fee_rate)
        reserve = percent_of(order.final_amount, order.reserve_rate)
        instructor = order.final_amount - platform - reserve
        if instructor < 0:
            reserve = max(order.final_amount - platform, 0)
            instructor = order.final_amount - platform - reserve
        return instructor, platform, reserve

    async def _completion_keys(self, order: Orders) -> list[str]:
        course = await self.db.get(Courses, order.course_id)
        system = await get_system_accounts(self.db)
        return [
            user_key(order.buyer_id),
            user_key(course.instructor_id),
            user_key(system.platform_id),
            user_key(system.reserve_id),
        ]

    async def _fail_duplicate(self, order: Orders, gateway_payment_id: str | None = None) -> Orders:
        """
        Second order for a course the buyer already owns: fail it and give the
        money back. Wallet reservations are released, captured gateway
        payments are refunded in full as the last step before commit.
        """
        if gateway_payment_id:
            order.gateway_payment_id = gateway_payment_id
        await self._abort(order, OrderStatus.FAILED.value, "course already purchased")
        if gateway_payment_id:
            try:
                await self.gateway.refund_payment(
                    gateway_payment_id,
                    order.final_amount,
                    notes={"order_id": str(order.id), "reason": "duplicate purchase"},
                )
            except RazorpayError as e:
                logger.error(f"❌ Duplicate payment refund failed for order {order.id}: {e}")
                if e.transient:
                    raise UpstreamTimeout("Payment gateway unavailable")
                raise Upstream("Payment gateway rejected the refund")
            order.refund_amount = order.final_amount
            order.refund_reason = "duplicate purchase"
            order.refunded_at = get_now()
        logger.warning(f"⚠ Order {order.id} failed as a duplicate purchase of course {order.course_id}")
        return order

    async def _complete(self, order: Orders, note: str) -> Orders:
        """
        Caller holds the order lease and the completion keys until commit,
        and has ruled out a duplicate purchase under them.
        """
        course = await self.db.get(Courses, order.course_id)
        buyer = await self.db.get(User, order.buyer_id)
        system = await get_system_accounts(self.db)
        instructor_share, platform_share, reserve_share = self._shares(order)

        async with self.leases.hold(*await self._completion_keys(order)):
            if order.payment_method == PaymentMethod.WALLET.value:
                await self.ledger.complete(order.reserve_entry_id)

            ref = str(order.id)
            credits = (
                (course.instructor_id, instructor_share, EntryCategory.COURSE_EARNING.value, "course-earning"),
                (system.platform_id, platform_share, EntryCategory.PLATFORM_FEE.value, "platform-fee"),
                (system.reserve_id, reserve_share, EntryCategory.COMMISSION_PAYOUT.value, "commission-reserve"),
            )
            for owner_id, amount, category, suffix in credits:
                if amount > 0:
                    await self.ledger.credit(owner_id, amount, category, ref, f"order:{order.id}:{suffix}")

            order.instructor_share = instructor_share
            order.platform_share = platform_share
            order.commission_share = reserve_share
            order.completed_at = get_now()
            self._transition(order, OrderStatus.COMPLETED.value, note)

            await self.enrollments.grant(order)
            await self.commissions.attribute(order, buyer, course)
            await self.db.flush()
        return order

    async def _notify_completed(self, order: Orders):
        buyer = await self.db.get(User, order.buyer_id)
        course = await self.db.get(Courses, order.course_id)
        if buyer and course:
            await self.mailer.send_enrollment_confirmation(
                buyer.email, buyer.fullname, course.title, format_amount(order.final_amount, order.currency)
            )

    # ============================================================
    # CONFIRM
    # ============================================================
    async def confirm_gateway_payment_async(
        self, order_id: uuid.UUID, gateway_payment_id: str, signature: str, actor: User | None = None
    ) -> Orders:
        async with self.leases.hold(order_key(order_id)):
            order = await self._load_order(order_id, lock=True)
            if actor is not None and order.buyer_id != actor.id:
                raise Forbidden("Not your order")
            if order.payment_method != PaymentMethod.GATEWAY.value:
                raise Conflict("Order is not a gateway order")
            if not verify_payment_signature(
                order.gateway_order_id or "", gateway_payment_id, signature, settings.RAZORPAY_KEY_SECRET
            ):
                logger.warning(f"⚠ Signature mismatch for order {order_id}")
                raise SignatureInvalid()

            if order.status == OrderStatus.COMPLETED.value or order.status in REFUNDABLE:
                if order.gateway_payment_id == gateway_payment_id:
                    return order
                raise Conflict("Order already paid with a different payment")

            async def work():
                order.gateway_payment_id = gateway_payment_id
                order.gateway_signature = signature
                return await self._complete(order, "gateway payment verified")

            async with self.leases.hold(*await self._completion_keys(order)):
                if await self._already_purchased(order.buyer_id, order.course_id, exclude=order.id):
                    await self._run("Duplicate payment", lambda: self._fail_duplicate(order, gateway_payment_id))
                    raise DuplicatePurchase("Course already purchased, payment refunded")
                order = await self._run("Payment confirmation", work)

        logger.success(f"✔ Order {order.id} completed via gateway payment {gateway_payment_id}")
        await self._notify_completed(order)
        return order

    async def confirm_wallet_payment_async(self, order_id: uuid.UUID, actor: User) -> Orders:
        async with self.leases.hold(order_key(order_id)):
            order = await self._load_order(order_id, lock=True)
            if order.buyer_id != actor.id:
                raise Forbidden("Not your order")
            if order.payment_method != PaymentMethod.WALLET.value:
                raise Conflict("Order is not a wallet order")
            if order.status == OrderStatus.COMPLETED.value:
                return order

            async with self.leases.hold(*await self._completion_keys(order)):
                if await self._already_purchased(order.buyer_id, order.course_id, exclude=order.id):
                    await self._run("Duplicate wallet order", lambda: self._fail_duplicate(order))
                    raise DuplicatePurchase("Course already purchased, reservation released")
                order = await self._run(
                    "Wallet payment confirmation",
                    lambda: self._complete(order, "wallet funds captured"),
                )

        logger.success(f"✔ Order {order.id} completed from wallet")
        await self._notify_completed(order)
        return order

    # ============================================================
    # CANCEL / FAIL / EXPIRE
    # ============================================================
    async def _abort(self, order: Orders, target: str, reason: str):
        self._transition(order, target, reason)
        if order.payment_method == PaymentMethod.WALLET.value and order.reserve_entry_id:
            async with self.leases.hold(user_key(order.buyer_id)):
                await self.ledger.reverse(order.reserve_entry_id, f"Order {target}: {reason}")
        if target == OrderStatus.CANCELLED.value:
            order.cancelled_at = get_now()
        else:
            order.failure_reason = reason
        await self.db.flush()
        return order

    async def cancel_async(self, order_id: uuid.UUID, actor: User, reason: str = "cancelled by user") -> Orders:
        async with self.leases.hold(order_key(order_id)):
            order = await self._load_order(order_id, lock=True)
            if order.buyer_id != actor.id and actor.role != UserRole.ADMIN.value:
                raise Forbidden("Not your order")
            order = await self._run(
                "Order cancellation", lambda: self._abort(order, OrderStatus.CANCELLED.value, reason)
            )
        logger.info(f"🚫 Order {order.id} cancelled")
        return order

    async def fail_async(self, order_id: uuid.UUID, reason: str) -> Orders:
        async with self.leases.hold(order_key(order_id)):
            order = await self._load_order(order_id, lock=True)
            if order.status == OrderStatus.FAILED.value:
                return order
            return await self._run(
                "Order failure", lambda: self._abort(order, OrderStatus.FAILED.value, reason)
            )

    async def expire_stale_orders(self, at: datetime | None = None) -> dict:
        at = at or get_now()
        cutoff = at - timedelta(hours=self.policy.get().pending_order_auto_cancel_hours)
        stale_ids = (
            await self.db.scalars(
                select(Orders.id).where(
                    Orders.status.in_([OrderStatus.PENDING.value, OrderStatus.PROCESSING.value]),
                    Orders.created_at < cutoff,
                )
            )
        ).all()

        expired = 0
        for order_id in stale_ids:
            async with self.leases.hold(order_key(order_id)):
                try:
                    order = await self._load_order(order_id, lock=True)
                    if order.status not in (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value):
                        continue
                    await self._abort(order, OrderStatus.EXPIRED.value, "payment window elapsed")
                    await self.db.commit()
                    expired += 1
                except Exception as e:
                    await self.db.rollback()
                    logger.error(f"❌ Order {order_id} expiry failed: {e}")
        return {"expired": expired}

    # ============================================================
    # REFUND
    # ============================================================
    async def _apply_refund(self, order: Orders, amount: int, reason: str, call_gateway: bool) -> Orders:
        if amount <= 0 or amount > order.final_amount:
            raise ValidationFailure(
                "Refund amount out of range", errors={"amount": amount, "max": order.final_amount}
            )
        full = amount == order.final_amount
        target = OrderStatus.REFUNDED.value if full else OrderStatus.PARTIALLY_REFUNDED.value
        if not can_transition(ORDER_FLOWS, order.status, target):
            raise InvalidTransition("order", order.status, target)

        course = await self.db.get(Courses, order.course_id)
        system = await get_system_accounts(self.db)
        affiliates = await self.commissions.affiliates_for_order(order.id)

        if full:
            clawbacks = [order.instructor_share or 0, order.platform_share or 0, order.commission_share or 0]
        else:
            platform = prorate(order.platform_share or 0, amount, order.final_amount)
            reserve = prorate(order.commission_share or 0, amount, order.final_amount)
            clawbacks = [max(amount - platform - reserve, 0), platform, reserve]

        keys = [user_key(order.buyer_id), user_key(course.instructor_id), user_key(system.platform_id), user_key(system.reserve_id)]
        keys += [user_key(a) for a in affiliates]

        async with self.leases.hold(*keys):
            ref = str(order.id)
            owners = (course.instructor_id, system.platform_id, system.reserve_id)
            for owner_id, clawback, suffix in zip(owners, clawbacks, ("instructor", "platform", "reserve")):
                if clawback > 0:
                    await self.ledger.debit(
                        owner_id, clawback, EntryCategory.REFUND.value, ref, f"order:{order.id}:refund:{suffix}",
                        description=f"Refund clawback: {reason}",
                    )

            if order.payment_method == PaymentMethod.WALLET.value:
                await self.ledger.credit(
                    order.buyer_id, amount, EntryCategory.REFUND.value, ref, f"order:{order.id}:refund:buyer",
                    description=f"Refund: {reason}",
                )

            await self.commissions.reverse_for_order(order, reason)
            if full:
                await self.enrollments.revoke(order)

            order.refund_amount = amount
            order.refund_reason = reason
            order.refunded_at = get_now()
            self._transition(order, target, reason)
            await self.db.flush()

            # last step before commit: a gateway failure rolls everything back
            if call_gateway and order.payment_method == PaymentMethod.GATEWAY.value:
                try:
                    await self.gateway.refund_payment(
                        order.gateway_payment_id, amount, notes={"order_id": ref, "reason": reason[:200]}
                    )
                except RazorpayError as e:
                    logger.error(f"❌ Gateway refund failed for order {order.id}: {e}")
                    if e.transient:
                        raise UpstreamTimeout("Payment gateway unavailable")
                    raise Upstream("Payment gateway rejected the refund")
        return order

    async def refund_async(self, order_id: uuid.UUID, amount: int | None, reason: str, actor: User) -> Orders:
        ensure_capability(actor, Capability.PROCESS_REFUND)
        async with self.leases.hold(order_key(order_id)):
            order = await self._load_order(order_id, lock=True)
            refund_amount = order.final_amount if amount is None else amount
            order = await self._run(
                "Refund", lambda: self._apply_refund(order, refund_amount, reason, call_gateway=True)
            )
        logger.success(f"✔ Order {order.id} {order.status} ({refund_amount}) by {actor.id}")

        buyer = await self.db.get(User, order.buyer_id)
        course = await self.db.get(Courses, order.course_id)
        if buyer and course:
            await self.mailer.send_refund_notice(
                buyer.email, buyer.fullname, course.title, format_amount(refund_amount, order.currency)
            )
        return order

    # ============================================================
    # WEBHOOK
    # ============================================================
    async def handle_webhook_async(self, raw_body: bytes, signature: str | None) -> dict:
        if not verify_webhook_signature(raw_body, signature or "", settings.RAZORPAY_WEBHOOK_SECRET):
            logger.warning("⚠ Webhook signature mismatch")
            raise SignatureInvalid()
        try:
            payload = json.loads(raw_body)
            event = payload["event"]
        except (ValueError, KeyError, TypeError):
            raise ValidationFailure("Malformed webhook payload")

        entities = payload.get("payload") or {}
        payment = (entities.get("payment") or {}).get("entity") or {}
        refund = (entities.get("refund") or {}).get("entity") or {}
        payment_id = refund.get("payment_id") or payment.get("id")
        if not payment_id:
            raise ValidationFailure("Webhook carries no payment id")

        seen = await self.db.scalar(
            select(WebhookEvents.id).where(WebhookEvents.event == event, WebhookEvents.payment_id == payment_id)
        )
        if seen is not None:
            return {"event": event, "status": "duplicate"}

        gateway_order_id = payment.get("order_id")
        matches = []
        if event == "payment.captured":
            if gateway_order_id:
                matches.append(Orders.gateway_order_id == gateway_order_id)
        elif event in ("payment.failed", "refund.processed"):
            matches.append(Orders.gateway_payment_id == payment_id)
            if gateway_order_id:
                matches.append(Orders.gateway_order_id == gateway_order_id)
        order = await self.db.scalar(select(Orders).where(or_(*matches))) if matches else None

        async def record(handler=None):
            if handler is not None:
                await handler()
            self.db.add(WebhookEvents(event=event, payment_id=payment_id, payload=payload, received_at=get_now()))
            await self.db.flush()

        if order is None:
            logger.info(f"Webhook {event} for {payment_id} has no matching order")
            return await self._record_event(record, event)

        async with self.leases.hold(order_key(order.id)):
            order = await self._load_order(order.id, lock=True)

            async def on_captured():
                if order.status in (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value):
                    if await self._already_purchased(order.buyer_id, order.course_id, exclude=order.id):
                        await self._fail_duplicate(order, payment_id)
                        return
                    order.gateway_payment_id = payment_id
                    await self._complete(order, "payment.captured webhook")
                elif order.status != OrderStatus.COMPLETED.value and order.status not in REFUNDABLE:
                    logger.warning(f"⚠ Payment {payment_id} captured for {order.status} order {order.id}")

            async def on_failed():
                if order.status in (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value):
                    await self._abort(order, OrderStatus.FAILED.value, payment.get("error_description") or "payment failed")

            async def on_refund():
                if order.status == OrderStatus.COMPLETED.value:
                    amount = int(refund.get("amount") or order.final_amount)
                    await self._apply_refund(order, amount, "refund.processed webhook", call_gateway=False)

            handler = {
                "payment.captured": on_captured,
                "payment.failed": on_failed,
                "refund.processed": on_refund,
            }.get(event)
            keys = await self._completion_keys(order) if event == "payment.captured" else []
            async with self.leases.hold(*keys):
                result = await self._record_event(lambda: record(handler), event)

        logger.success(f"✔ Webhook {event} for order {order.id} handled, status={order.status}")
        return result

    async def _record_event(self, work, event: str) -> dict:
        try:
            await work()
            await self.db.commit()
        except IntegrityError:
            # a concurrent delivery of the same event won the insert
            await self.db.rollback()
            return {"event": event, "status": "duplicate"}
        except AppError:
            await self.db.rollback()
            raise
        except Exception as e:
            await self.db.rollback()
            logger.error(f"❌ Webhook {event} failed: {e}")
            raise Internal(f"Webhook {event} failed")
        return {"event": event, "status": "processed"}
