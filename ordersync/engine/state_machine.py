"""Order status graph and the guards every transition goes through.

All status rules live here; callers ask ``check_transition`` instead of
comparing status strings themselves.
"""
from typing import Dict, FrozenSet, Optional

from ordersync.errors import ActorNotAllowedError, InvalidTransitionError, PaymentRequiredError
from ordersync.types.order_types import (
    Actor,
    ActorRole,
    OrderSnapshot,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)

NEXT_STATUS: Dict[OrderStatus, OrderStatus] = {
    OrderStatus.PLACED: OrderStatus.CONFIRMED,
    OrderStatus.CONFIRMED: OrderStatus.PREPARING,
    OrderStatus.PREPARING: OrderStatus.READY,
    OrderStatus.READY: OrderStatus.PICKED_UP,
    OrderStatus.PICKED_UP: OrderStatus.DELIVERED,
}

STATUS_RANK: Dict[OrderStatus, int] = {
    OrderStatus.PLACED: 0,
    OrderStatus.CONFIRMED: 1,
    OrderStatus.PREPARING: 2,
    OrderStatus.READY: 3,
    OrderStatus.PICKED_UP: 4,
    OrderStatus.DELIVERED: 5,
    OrderStatus.CANCELLED: 6,
}

TERMINAL: FrozenSet[OrderStatus] = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})
NON_TERMINAL = tuple(s for s in OrderStatus if s not in TERMINAL)

PAYMENT_GATED: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.PICKED_UP,
    OrderStatus.DELIVERED,
})

# Statuses in which a driver may accept an order ahead of pickup.
CLAIMABLE = (OrderStatus.CONFIRMED, OrderStatus.PREPARING, OrderStatus.READY)

ROLE_TARGETS: Dict[ActorRole, FrozenSet[OrderStatus]] = {
    ActorRole.CUSTOMER: frozenset({OrderStatus.CANCELLED}),
    ActorRole.RESTAURANT: frozenset({
        OrderStatus.CONFIRMED,
        OrderStatus.PREPARING,
        OrderStatus.READY,
        OrderStatus.CANCELLED,
    }),
    ActorRole.DRIVER: frozenset({OrderStatus.PICKED_UP, OrderStatus.DELIVERED}),
    ActorRole.ADMIN: frozenset(OrderStatus),
}

CUSTOMER_CANCELLABLE = frozenset({OrderStatus.PLACED, OrderStatus.CONFIRMED})


def next_status(status: OrderStatus) -> Optional[OrderStatus]:
    return NEXT_STATUS.get(status)


def is_valid_transition(current: OrderStatus, target: OrderStatus) -> bool:
    if current in TERMINAL:
        return False
    if target == OrderStatus.CANCELLED:
        return True
    return NEXT_STATUS.get(current) == target


def requires_payment(order: OrderSnapshot, target: OrderStatus) -> bool:
    return target in PAYMENT_GATED and order.payment_method != PaymentMethod.CASH


def supersedes(current: OrderStatus, incoming: OrderStatus) -> bool:
    """Whether a projection holding ``current`` may take ``incoming``."""
    if current == incoming:
        return True
    if current in TERMINAL:
        return False
    if incoming == OrderStatus.CANCELLED:
        return True
    return STATUS_RANK[incoming] > STATUS_RANK[current]


def check_transition(order: OrderSnapshot, target: OrderStatus, actor: Actor) -> None:
    if not is_valid_transition(order.status, target):
        raise InvalidTransitionError(
            f"Cannot move order {order.id} from {order.status.value} to {target.value}",
            order_id=order.id, current=order.status, target=target,
        )

    if target not in ROLE_TARGETS.get(actor.role, frozenset()):
        raise ActorNotAllowedError(
            f"A {actor.role.value} cannot move an order to {target.value}",
            order_id=order.id, actor=actor.id,
        )

    if target == OrderStatus.CANCELLED:
        if actor.role == ActorRole.CUSTOMER:
            if actor.id != order.customer_id:
                raise ActorNotAllowedError("Customers can only cancel their own orders", order_id=order.id)
            if order.status not in CUSTOMER_CANCELLABLE:
                raise ActorNotAllowedError(
                    f"Order {order.id} is already {order.status.value} and can no longer be cancelled",
                    order_id=order.id,
                )
        return

    if requires_payment(order, target) and order.payment_status != PaymentStatus.PAID:
        raise PaymentRequiredError(
            f"Order {order.id} cannot move to {target.value} before payment is confirmed",
            order_id=order.id, payment_status=order.payment_status,
        )

    if target == OrderStatus.DELIVERED:
        if order.driver_id is None:
            raise InvalidTransitionError(f"Order {order.id} has no driver", order_id=order.id)
        if actor.role == ActorRole.DRIVER and actor.id != order.driver_id:
            raise ActorNotAllowedError(f"Order {order.id} belongs to another driver", order_id=order.id)
