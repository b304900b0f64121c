import json
import logging
import re
import secrets
import time
import uuid
from datetime import timedelta
from typing import List, Optional, Sequence

from ordersync.config import Settings
from ordersync.db.models import utcnow
from ordersync.engine import state_machine
from ordersync.engine.pricing import money, price_cart, to_minor_units, validate_address
from ordersync.errors import (
    ActorNotAllowedError,
    AlreadyAssignedError,
    AuthError,
    ConditionFailed,
    GatewayError,
    InvalidSignatureError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from ordersync.gateway.base import PaymentGateway
from ordersync.store.change_feed import Subscription
from ordersync.store.order_store import OrderStore
from ordersync.types.order_types import (
    Actor,
    ActorRole,
    AttemptOutcome,
    CartLine,
    ConfirmationSource,
    OrderFilter,
    OrderSnapshot,
    OrderStatus,
    PaymentAttempt,
    PaymentInitiation,
    PaymentMethod,
    PaymentResolution,
    PaymentStatus,
    Verification,
)

logger = logging.getLogger("sync-engine")

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

WEBHOOK_EVENTS = {"charge.success", "charge.failed"}
GATEWAY_SUCCESS = {"success"}
GATEWAY_FAILURE = {"failed", "reversed"}

UNPAID = (PaymentStatus.PENDING, PaymentStatus.FAILED)

SUCCESS_CASES = [
    ({"payment_status": UNPAID, "status": OrderStatus.PLACED},
     {"payment_status": PaymentStatus.PAID, "status": OrderStatus.CONFIRMED}),
    ({"payment_status": UNPAID},
     {"payment_status": PaymentStatus.PAID}),
]
FAILURE_CASES = [
    ({"payment_status": PaymentStatus.PENDING},
     {"payment_status": PaymentStatus.FAILED}),
]


def new_reference(order_id: str) -> str:
    return f"sp_{order_id}_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


class OrderSyncEngine:
    """Mediates between actor commands, the order store and the payment gateway.

    The engine holds no durable state. Every write goes to the store as a
    conditional update, so concurrent callers (the two payment channels,
    racing drivers) are resolved by the store's guards rather than locks.
    """

    def __init__(self, store: OrderStore, gateway: PaymentGateway, settings: Settings):
        self.store = store
        self.gateway = gateway
        self.settings = settings

    # -- checkout -------------------------------------------------------

    async def place_order(
        self,
        cart_lines: Sequence[CartLine],
        delivery_address: str,
        customer: Optional[Actor],
        *,
        special_instructions: Optional[str] = None,
        payment_method: PaymentMethod = PaymentMethod.PAYSTACK,
        customer_phone: Optional[str] = None,
    ) -> str:
        if customer is None or not customer.id:
            raise AuthError("You must be signed in to place an order")
        if customer.role != ActorRole.CUSTOMER:
            raise ActorNotAllowedError("Only customers can place orders", actor=customer.id)

        lines, subtotal = price_cart(cart_lines, self.settings.max_order_items)
        address = validate_address(delivery_address, self.settings.min_address_length)
        delivery_fee = money(self.settings.delivery_fee)
        prep_minutes = self.settings.estimated_prep_minutes

        now = utcnow()
        order = OrderSnapshot(
            id=uuid.uuid4().hex,
            customer_id=customer.id,
            restaurant_id=self.settings.restaurant_id,
            driver_id=None,
            items=lines,
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            total_amount=money(subtotal + delivery_fee),
            delivery_address=address,
            special_instructions=(special_instructions or "").strip() or None,
            customer_phone=customer_phone or customer.phone,
            payment_method=PaymentMethod(payment_method),
            status=OrderStatus.PLACED,
            payment_status=PaymentStatus.PENDING,
            payment_reference=None,
            created_at=now,
            updated_at=now,
            estimated_prep_time=prep_minutes,
            estimated_delivery_time=now + timedelta(
                minutes=prep_minutes + self.settings.estimated_transit_minutes
            ),
            version=1,
        )
        await self.store.insert(order)
        logger.info(f"[SyncEngine] order placed: {order.id} total={order.total_amount}")
        return order.id

    async def initiate_payment(
        self,
        order_id: str,
        amount_total=None,
        *,
        email: str,
        customer_name: Optional[str] = None,
    ) -> PaymentInitiation:
        order = await self.store.get(order_id)
        if order.payment_method == PaymentMethod.CASH:
            raise ValidationError("Cash orders are paid on delivery", order_id=order_id)
        if order.payment_status == PaymentStatus.PAID:
            raise ValidationError("Order is already paid", order_id=order_id)
        if order.is_terminal:
            raise ValidationError(f"Order is already {order.status.value}", order_id=order_id)
        if amount_total is not None and money(amount_total) != order.total_amount:
            raise ValidationError(
                f"Amount {amount_total} does not match order total {order.total_amount}",
                order_id=order_id,
            )
        if not email or not EMAIL_RE.match(email):
            raise ValidationError("Invalid email format")

        reference = new_reference(order_id)
        metadata = {
            "order_id": order_id,
            "customer_name": customer_name or "",
            "customer_phone": order.customer_phone or "",
        }
        try:
            authorization = await self.gateway.initialize(
                email, to_minor_units(order.total_amount), reference, metadata
            )
        except GatewayError as e:
            logger.warning(f"[SyncEngine] payment initiation failed: {order_id}: {e.message}")
            return PaymentInitiation(order_id=order_id, outcome=AttemptOutcome.ERROR, message=e.message)

        # The order must carry the reference before the customer can pay,
        # otherwise an early webhook has nothing to match.
        await self.store.record_payment_attempt(
            order_id,
            authorization.reference,
            order.total_amount,
            expected={"payment_status": UNPAID, "status": state_machine.NON_TERMINAL},
        )
        interaction = await self.gateway.open_user_interaction(authorization)
        logger.info(f"[SyncEngine] payment initiated: {order_id} ref={authorization.reference}")
        return PaymentInitiation(
            order_id=order_id,
            outcome=AttemptOutcome.PENDING,
            reference=interaction.reference,
            authorization_url=interaction.authorization_url,
            access_code=interaction.access_code,
            message="Complete the payment to confirm your order",
        )

    # -- payment reconciliation -----------------------------------------

    async def confirm_payment(
        self,
        reference: str,
        source: ConfirmationSource = ConfirmationSource.CALLBACK,
    ) -> PaymentResolution:
        """Idempotently settle the attempt identified by ``reference``.

        Safe to run concurrently from the callback and the webhook: the
        attempt row can leave ``pending`` only once and the losing caller
        gets the recorded result back.
        """
        source = ConfirmationSource(source)
        attempt = await self.store.get_payment_attempt(reference)
        if attempt.is_settled:
            logger.info(f"[SyncEngine] confirmation duplicate ({source.value}): {reference} already {attempt.outcome.value}")
            return await self._resolution(attempt, changed=False)

        verification = await self.gateway.verify_by_reference(reference)
        outcome = self._classify(verification, attempt)
        if outcome is None:
            logger.info(f"[SyncEngine] payment not final ({source.value}): {reference} status={verification.status}")
            return await self._resolution(attempt, changed=False, message="Payment has not completed yet")

        cases = SUCCESS_CASES if outcome == AttemptOutcome.SUCCESS else FAILURE_CASES
        try:
            settlement = await self.store.settle_payment(
                reference, outcome, source, verification.payload, cases
            )
        except ConditionFailed as e:
            logger.info(f"[SyncEngine] confirmation lost race ({source.value}): {reference}")
            return await self._resolution(e.context["attempt"], changed=False)

        order = settlement.order
        if outcome == AttemptOutcome.SUCCESS:
            if not settlement.order_changed:
                logger.warning(f"[SyncEngine] payment {reference} succeeded but order {order.id} was already paid")
            elif order.status == OrderStatus.CANCELLED:
                logger.warning(f"[SyncEngine] payment {reference} succeeded for cancelled order {order.id}, refund needed")
        logger.info(
            f"[SyncEngine] payment settled ({source.value}): {order.id} ref={reference} "
            f"outcome={outcome.value} payment_status={order.payment_status.value}"
        )
        return PaymentResolution(
            reference=reference,
            order_id=order.id,
            outcome=outcome,
            payment_status=order.payment_status,
            status=order.status,
            changed=settlement.order_changed,
            message=self._payment_message(outcome),
        )

    def _classify(self, verification: Verification, attempt: PaymentAttempt) -> Optional[AttemptOutcome]:
        if not verification.verified:
            return None
        if verification.status in GATEWAY_SUCCESS:
            expected = to_minor_units(attempt.amount)
            if verification.amount_minor is not None and verification.amount_minor != expected:
                logger.error(
                    f"[SyncEngine] amount mismatch: {attempt.reference} charged={verification.amount_minor} expected={expected}"
                )
                return AttemptOutcome.FAILED
            return AttemptOutcome.SUCCESS
        if verification.status in GATEWAY_FAILURE:
            return AttemptOutcome.FAILED
        return None

    async def _resolution(self, attempt: PaymentAttempt, changed: bool, message: str = "") -> PaymentResolution:
        order = await self.store.get(attempt.order_id)
        return PaymentResolution(
            reference=attempt.reference,
            order_id=order.id,
            outcome=attempt.outcome,
            payment_status=order.payment_status,
            status=order.status,
            changed=changed,
            message=message or self._payment_message(attempt.outcome),
        )

    @staticmethod
    def _payment_message(outcome: AttemptOutcome) -> str:
        if outcome == AttemptOutcome.SUCCESS:
            return "Payment successful and verified."
        if outcome == AttemptOutcome.FAILED:
            return "Payment was not successful. You can retry with a new payment."
        if outcome == AttemptOutcome.CANCELLED:
            return "Payment cancelled by user."
        return "Payment is still pending."

    def parse_webhook(self, raw_body: bytes, signature: Optional[str]) -> Optional[str]:
        """Return the reference a signed webhook refers to, or None to ignore it."""
        if not self.gateway.verify_signature(raw_body, signature or ""):
            logger.warning("[SyncEngine] webhook rejected: invalid signature")
            raise InvalidSignatureError("Invalid webhook signature")
        try:
            event = json.loads(raw_body)
        except ValueError as e:
            raise ValidationError("Webhook body is not valid JSON") from e

        kind = event.get("event")
        reference = (event.get("data") or {}).get("reference")
        if kind not in WEBHOOK_EVENTS or not reference:
            logger.info(f"[SyncEngine] webhook ignored: {kind}")
            return None
        return reference

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> Optional[PaymentResolution]:
        reference = self.parse_webhook(raw_body, signature)
        if reference is None:
            return None
        try:
            return await self.confirm_payment(reference, ConfirmationSource.WEBHOOK)
        except NotFoundError:
            logger.warning(f"[SyncEngine] webhook for unknown reference dropped: {reference}")
            return None

    async def cancel_payment_attempt(self, reference: str) -> PaymentResolution:
        attempt = await self.store.mark_attempt_cancelled(reference)
        logger.info(f"[SyncEngine] payment window closed: {attempt.order_id} ref={reference} outcome={attempt.outcome.value}")
        return await self._resolution(attempt, changed=False)

    async def get_payment_attempt(self, reference: str) -> PaymentAttempt:
        return await self.store.get_payment_attempt(reference)

    # -- fulfillment ----------------------------------------------------

    async def advance_status(self, order_id: str, target, actor: Optional[Actor]) -> OrderSnapshot:
        if actor is None or not actor.id:
            raise AuthError("Missing actor identity")
        try:
            target = OrderStatus(target)
        except ValueError as e:
            raise ValidationError(f"Unknown status {target!r}") from e

        order = await self.store.get(order_id)
        if (target == OrderStatus.PICKED_UP and actor.role == ActorRole.DRIVER
                and order.driver_id not in (None, actor.id)):
            raise AlreadyAssignedError(f"Order {order_id} is assigned to another driver", order_id=order_id)
        state_machine.check_transition(order, target, actor)

        expected = {"status": order.status}
        new = {"status": target}
        if state_machine.requires_payment(order, target):
            expected["payment_status"] = PaymentStatus.PAID
        if target == OrderStatus.PICKED_UP:
            if order.driver_id is None:
                if actor.role != ActorRole.DRIVER:
                    raise InvalidTransitionError(f"Order {order_id} has no driver to pick it up", order_id=order_id)
                expected["driver_id"] = None
                new["driver_id"] = actor.id
            else:
                expected["driver_id"] = order.driver_id
        elif target == OrderStatus.DELIVERED:
            expected["driver_id"] = order.driver_id
            if order.payment_method == PaymentMethod.CASH:
                new["payment_status"] = PaymentStatus.PAID

        try:
            updated = await self.store.conditional_update(order_id, expected, new)
        except ConditionFailed as e:
            raise self._conflict(e, order, target, actor) from e

        logger.info(
            f"[SyncEngine] status {order.status.value} -> {target.value} by {actor.role.value}:{actor.id}: {order_id}"
        )
        return updated

    def _conflict(self, error: ConditionFailed, before: OrderSnapshot, target: OrderStatus, actor: Actor):
        current: Optional[OrderSnapshot] = error.context.get("current")
        if current is None:
            return error
        if target == OrderStatus.PICKED_UP and current.driver_id not in (None, actor.id):
            logger.info(f"[SyncEngine] assignment race lost by {actor.id}: {before.id}")
            return AlreadyAssignedError(f"Order {before.id} was taken by another driver", order_id=before.id)
        if current.status != before.status:
            return InvalidTransitionError(
                f"Order {before.id} moved to {current.status.value} before {target.value} could apply",
                order_id=before.id, current=current.status, target=target,
            )
        return error

    async def claim_order(self, order_id: str, driver: Optional[Actor]) -> OrderSnapshot:
        if driver is None or not driver.id:
            raise AuthError("Missing actor identity")
        if driver.role != ActorRole.DRIVER:
            raise ActorNotAllowedError("Only drivers can accept orders", actor=driver.id)

        order = await self.store.get(order_id)
        if order.driver_id == driver.id:
            return order
        if order.driver_id is not None:
            raise AlreadyAssignedError(f"Order {order_id} is assigned to another driver", order_id=order_id)
        if order.status not in state_machine.CLAIMABLE:
            raise InvalidTransitionError(f"Order {order_id} is {order.status.value} and cannot be accepted", order_id=order_id)

        try:
            updated = await self.store.conditional_update(
                order_id,
                {"driver_id": None, "status": state_machine.CLAIMABLE},
                {"driver_id": driver.id},
                event_type="DRIVER_ASSIGNED",
            )
        except ConditionFailed as e:
            current = e.context.get("current")
            if current is not None and current.driver_id == driver.id:
                return current
            if current is not None and current.driver_id is not None:
                raise AlreadyAssignedError(f"Order {order_id} was taken by another driver", order_id=order_id) from e
            raise InvalidTransitionError(f"Order {order_id} can no longer be accepted", order_id=order_id) from e

        logger.info(f"[SyncEngine] driver assigned: {order_id} driver={driver.id}")
        return updated

    # -- reads and subscriptions ----------------------------------------

    async def get_order(self, order_id: str) -> OrderSnapshot:
        return await self.store.get(order_id)

    async def list_orders(self, order_filter: Optional[OrderFilter] = None, limit: int = 50) -> List[OrderSnapshot]:
        return await self.store.list(order_filter, limit=limit)

    def subscribe(self, order_filter: OrderFilter, since_seq: Optional[int] = None) -> Subscription:
        return self.store.subscribe(order_filter, since_seq=since_seq)
