import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Dict, List, Optional, Sequence, Set

from ordersync.consoles.projection import OrderProjection
from ordersync.engine.state_machine import CLAIMABLE
from ordersync.engine.sync_engine import OrderSyncEngine
from ordersync.errors import (
    AlreadyAssignedError,
    ConditionFailed,
    InvalidTransitionError,
    NotFoundError,
    OrderSyncError,
)
from ordersync.store.change_feed import Subscription
from ordersync.types.order_types import (
    Actor,
    ActorRole,
    AttemptOutcome,
    CartLine,
    OrderChange,
    OrderFilter,
    OrderSnapshot,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)

logger = logging.getLogger("console")

STATUS_MESSAGES = {
    OrderStatus.PLACED: ("Order Placed", "Your order has been received"),
    OrderStatus.CONFIRMED: ("Order Confirmed", "Restaurant is preparing your order"),
    OrderStatus.PREPARING: ("Order Preparing", "Your food is being prepared"),
    OrderStatus.READY: ("Order Ready", "Your order is ready for pickup"),
    OrderStatus.PICKED_UP: ("Order Picked Up", "Driver is on the way to you"),
    OrderStatus.DELIVERED: ("Order Delivered", "Your order has been delivered!"),
    OrderStatus.CANCELLED: ("Order Cancelled", "Your order has been cancelled"),
}


@dataclass(frozen=True)
class Notification:
    title: str
    description: str
    variant: str = "default"


@dataclass(frozen=True)
class CommandResult:
    ok: bool
    message: str
    order: Optional[OrderSnapshot] = None
    error: Optional[str] = None
    retryable: bool = False
    data: Optional[object] = None


class ActorConsole:
    """Base for the role-specific consoles.

    A console only learns about orders through its change-feed
    subscription and through the results of its own commands; engine
    errors stop here and become a ``CommandResult``.
    """

    role: ActorRole

    def __init__(self, engine: OrderSyncEngine, actor: Actor):
        if actor.role != self.role:
            raise ValueError(f"{type(self).__name__} needs a {self.role.value} actor, got {actor.role.value}")
        self.engine = engine
        self.actor = actor
        self.projection = OrderProjection()
        self.pending: Set[str] = set()
        self.notifications: List[Notification] = []
        self._subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None

    def order_filter(self) -> OrderFilter:
        raise NotImplementedError

    async def start(self) -> None:
        # Subscribe before loading so nothing committed in between is missed.
        self._subscription = self.engine.subscribe(self.order_filter())
        for order in await self.engine.list_orders(self.order_filter()):
            self._track(order)
        self._task = asyncio.create_task(self._consume())
        logger.info(f"[{type(self).__name__}] started: {self.actor.id} tracking {len(self.projection)} orders")

    async def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
        if self._task is not None:
            await self._task
            self._task = None

    async def settle(self) -> None:
        """Wait until every change already published has been merged."""
        while self._subscription is not None and self._subscription.pending():
            await asyncio.sleep(0)

    async def _consume(self) -> None:
        async for change in self._subscription:
            try:
                self.on_change(change)
            except Exception as e:
                logger.error(f"[{type(self).__name__}] failed to merge change for {change.order_id}: {e}")
                raise

    def on_change(self, change: OrderChange) -> None:
        before = self.projection.get(change.order_id)
        if not self.projection.apply(change):
            return
        after = self.projection.get(change.order_id)
        if before is not None and before.status != after.status:
            self.on_status(after)
        self._reconcile(change.order_id)

    def on_status(self, order: OrderSnapshot) -> None:
        pass

    def _reconcile(self, order_id: str) -> None:
        """Runs after every local update to an order."""

    def _track(self, order: OrderSnapshot) -> None:
        self.projection.apply_snapshot(order)
        self._reconcile(order.id)

    def get(self, order_id: str) -> Optional[OrderSnapshot]:
        return self.projection.get(order_id)

    @property
    def orders(self) -> List[OrderSnapshot]:
        return list(self.projection)

    def notify(self, title: str, description: str, variant: str = "default") -> None:
        self.notifications.append(Notification(title, description, variant))

    async def refresh(self, order_id: str) -> Optional[OrderSnapshot]:
        try:
            latest = await self.engine.get_order(order_id)
        except NotFoundError:
            self.projection.discard(order_id)
            return None
        current = self.projection.get(order_id)
        if current is None or latest.version >= current.version:
            self.projection.replace(latest)
            self._reconcile(order_id)
        return latest

    async def _command(self, order_id: str, call: Awaitable, success: str) -> CommandResult:
        self.pending.add(order_id)
        try:
            result = await call
        except AlreadyAssignedError as e:
            await self.refresh(order_id)
            self.notify("Order Unavailable", "Another driver already took this order", "destructive")
            return CommandResult(False, e.message, error=type(e).__name__, retryable=True)
        except (InvalidTransitionError, ConditionFailed) as e:
            # Client desync: resync quietly instead of alarming the user.
            logger.warning(f"[{type(self).__name__}] desync on {order_id}: {e.message}")
            latest = await self.refresh(order_id)
            return CommandResult(False, e.message, order=latest, error=type(e).__name__, retryable=e.retryable)
        except OrderSyncError as e:
            self.notify("Update Failed", e.message or "Failed to update order status", "destructive")
            return CommandResult(False, e.message, error=type(e).__name__, retryable=e.retryable)
        finally:
            self.pending.discard(order_id)

        if isinstance(result, OrderSnapshot):
            self._track(result)
            return CommandResult(True, success, order=result)
        return CommandResult(True, success, data=result)

    async def advance(self, order_id: str, target: OrderStatus) -> CommandResult:
        label = target.value.replace("_", " ")
        return await self._command(
            order_id,
            self.engine.advance_status(order_id, target, self.actor),
            f"Order status changed to {label}",
        )

    async def cancel(self, order_id: str) -> CommandResult:
        return await self.advance(order_id, OrderStatus.CANCELLED)


class CustomerConsole(ActorConsole):
    role = ActorRole.CUSTOMER

    def __init__(self, engine: OrderSyncEngine, actor: Actor):
        super().__init__(engine, actor)
        self.retired: Dict[str, OrderSnapshot] = {}

    def order_filter(self) -> OrderFilter:
        return OrderFilter(customer_id=self.actor.id)

    @property
    def active_orders(self) -> List[OrderSnapshot]:
        return list(self.projection)

    def get(self, order_id: str) -> Optional[OrderSnapshot]:
        return self.projection.get(order_id) or self.retired.get(order_id)

    def _track(self, order: OrderSnapshot) -> None:
        if order.id in self.retired:
            return
        super()._track(order)

    def on_change(self, change: OrderChange) -> None:
        if change.order_id in self.retired:
            return
        super().on_change(change)

    def on_status(self, order: OrderSnapshot) -> None:
        title, description = STATUS_MESSAGES[order.status]
        self.notify(title, description, "destructive" if order.status == OrderStatus.CANCELLED else "default")

    async def refresh(self, order_id: str) -> Optional[OrderSnapshot]:
        if order_id not in self.retired:
            return await super().refresh(order_id)
        # Retired orders are kept current but never tracked again.
        try:
            latest = await self.engine.get_order(order_id)
        except NotFoundError:
            return None
        if latest.version >= self.retired[order_id].version:
            self.retired[order_id] = latest
        return latest

    def _reconcile(self, order_id: str) -> None:
        self._retire_if_done(order_id)

    def _retire_if_done(self, order_id: str) -> None:
        order = self.projection.get(order_id)
        if order is not None and order.is_terminal:
            self.retired[order_id] = self.projection.discard(order_id)
            logger.info(f"[CustomerConsole] stopped tracking {order.status.value} order: {order_id}")

    async def checkout(
        self,
        cart_lines: Sequence[CartLine],
        delivery_address: str,
        *,
        email: Optional[str] = None,
        payment_method: PaymentMethod = PaymentMethod.PAYSTACK,
        special_instructions: Optional[str] = None,
        customer_name: Optional[str] = None,
    ) -> CommandResult:
        try:
            order_id = await self.engine.place_order(
                cart_lines,
                delivery_address,
                self.actor,
                special_instructions=special_instructions,
                payment_method=payment_method,
            )
        except OrderSyncError as e:
            self.notify("Order Failed", e.message or "Could not place your order. Please try again.", "destructive")
            return CommandResult(False, e.message, error=type(e).__name__, retryable=True)

        await self.refresh(order_id)
        self.notify("Order Placed", "Your order has been successfully placed!")
        if payment_method == PaymentMethod.CASH:
            return CommandResult(True, "Order placed, pay the driver on delivery", order=self.get(order_id))
        return await self.pay(order_id, email=email, customer_name=customer_name)

    async def pay(self, order_id: str, *, email: Optional[str], customer_name: Optional[str] = None) -> CommandResult:
        result = await self._command(
            order_id,
            self.engine.initiate_payment(order_id, email=email, customer_name=customer_name),
            "Complete the payment to confirm your order",
        )
        initiation = result.data
        if result.ok and initiation.reference:
            await self.refresh(order_id)
        if result.ok and initiation.outcome == AttemptOutcome.ERROR:
            self.notify("Payment Failed", f"{initiation.message}. Please try again.", "destructive")
            return CommandResult(False, initiation.message, order=self.get(order_id),
                                 error="GatewayError", retryable=True, data=initiation)
        return CommandResult(result.ok, result.message, order=self.get(order_id), error=result.error,
                             retryable=result.retryable, data=initiation)

    async def _attempt(self, reference: str):
        try:
            return await self.engine.get_payment_attempt(reference), None
        except OrderSyncError as e:
            self.notify("Payment Failed", e.message, "destructive")
            return None, CommandResult(False, e.message, error=type(e).__name__, retryable=e.retryable)

    async def payment_completed(self, reference: str) -> CommandResult:
        attempt, failure = await self._attempt(reference)
        if failure is not None:
            return failure
        result = await self._command(
            attempt.order_id, self.engine.confirm_payment(reference), "Payment processed"
        )
        if not result.ok:
            return result
        resolution = result.data
        if resolution.payment_status == PaymentStatus.PAID:
            self.notify("Payment Successful", "Your order has been confirmed and is being prepared!")
        elif resolution.outcome == AttemptOutcome.FAILED:
            self.notify("Payment Failed", resolution.message, "destructive")
        await self.refresh(attempt.order_id)
        return CommandResult(resolution.payment_status == PaymentStatus.PAID, resolution.message,
                             order=self.get(attempt.order_id), data=resolution)

    async def payment_closed(self, reference: str) -> CommandResult:
        attempt, failure = await self._attempt(reference)
        if failure is not None:
            return failure
        result = await self._command(
            attempt.order_id, self.engine.cancel_payment_attempt(reference), "Payment cancelled by user."
        )
        if result.ok:
            self.notify("Payment Cancelled", "You can retry the payment at any time", "destructive")
        return result


class RestaurantConsole(ActorConsole):
    role = ActorRole.RESTAURANT

    def __init__(self, engine: OrderSyncEngine, actor: Actor, restaurant_id: str):
        super().__init__(engine, actor)
        self.restaurant_id = restaurant_id

    def order_filter(self) -> OrderFilter:
        return OrderFilter(restaurant_id=self.restaurant_id)

    def on_change(self, change: OrderChange) -> None:
        is_new = change.order_id not in self.projection and change.version == 1
        super().on_change(change)
        if is_new:
            order = change.order
            self.notify("New Order Received!", f"Order #{order.id[-8:]} - GH₵{order.total_amount}")

    @property
    def active_orders(self) -> List[OrderSnapshot]:
        return [o for o in self.projection if not o.is_terminal]

    @property
    def history(self) -> List[OrderSnapshot]:
        return [o for o in self.projection if o.is_terminal]

    @property
    def awaiting_payment(self) -> List[OrderSnapshot]:
        return [
            o for o in self.active_orders
            if o.payment_status != PaymentStatus.PAID and o.payment_method != PaymentMethod.CASH
        ]

    @property
    def pending_count(self) -> int:
        kitchen = (OrderStatus.PLACED, OrderStatus.CONFIRMED, OrderStatus.PREPARING)
        return sum(1 for o in self.projection if o.status in kitchen)

    async def confirm(self, order_id: str) -> CommandResult:
        return await self.advance(order_id, OrderStatus.CONFIRMED)

    async def start_preparing(self, order_id: str) -> CommandResult:
        return await self.advance(order_id, OrderStatus.PREPARING)

    async def mark_ready(self, order_id: str) -> CommandResult:
        return await self.advance(order_id, OrderStatus.READY)


class DriverConsole(ActorConsole):
    role = ActorRole.DRIVER

    def order_filter(self) -> OrderFilter:
        return OrderFilter(driver_id=self.actor.id)

    @property
    def available_orders(self) -> List[OrderSnapshot]:
        return [o for o in self.projection if o.driver_id is None and o.status in CLAIMABLE]

    @property
    def my_orders(self) -> List[OrderSnapshot]:
        return [o for o in self.projection if o.driver_id == self.actor.id and not o.is_terminal]

    @property
    def history(self) -> List[OrderSnapshot]:
        return [o for o in self.projection if o.driver_id == self.actor.id and o.is_terminal]

    def _reconcile(self, order_id: str) -> None:
        order = self.projection.get(order_id)
        if order is not None and order.driver_id not in (None, self.actor.id):
            self.projection.discard(order_id)
            logger.info(f"[DriverConsole] {self.actor.id} dropped order taken by {order.driver_id}: {order_id}")

    async def repoll(self) -> List[OrderSnapshot]:
        for order in await self.engine.list_orders(self.order_filter()):
            self._track(order)
        return self.available_orders

    async def accept(self, order_id: str) -> CommandResult:
        result = await self._command(order_id, self.engine.claim_order(order_id, self.actor), "Order accepted")
        if result.error == AlreadyAssignedError.__name__:
            await self.repoll()
        return result

    async def pick_up(self, order_id: str) -> CommandResult:
        result = await self.advance(order_id, OrderStatus.PICKED_UP)
        if result.error == AlreadyAssignedError.__name__:
            await self.repoll()
        return result

    async def deliver(self, order_id: str) -> CommandResult:
        return await self.advance(order_id, OrderStatus.DELIVERED)
