from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


class OrderStatus(str, Enum):
    PLACED = "placed"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    PAYSTACK = "paystack"
    CASH = "cash"


class AttemptOutcome(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ERROR = "error"


class ConfirmationSource(str, Enum):
    CALLBACK = "callback"
    WEBHOOK = "webhook"
    SWEEP = "sweep"


class ActorRole(str, Enum):
    CUSTOMER = "customer"
    RESTAURANT = "restaurant"
    DRIVER = "driver"
    ADMIN = "admin"


@dataclass(frozen=True)
class Actor:
    id: str
    role: ActorRole
    phone: Optional[str] = None


@dataclass(frozen=True)
class Customization:
    id: str
    name: str
    price: Decimal


@dataclass(frozen=True)
class CartLine:
    food_item_id: str
    name: str
    price: Decimal
    quantity: int
    customizations: Tuple[Customization, ...] = ()


@dataclass(frozen=True)
class OrderLine:
    food_item_id: str
    name: str
    price: Decimal
    quantity: int
    customizations: Tuple[Customization, ...]
    total_price: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "food_item_id": self.food_item_id,
            "name": self.name,
            "price": str(self.price),
            "quantity": self.quantity,
            "customizations": [
                {"id": c.id, "name": c.name, "price": str(c.price)} for c in self.customizations
            ],
            "total_price": str(self.total_price),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderLine":
        return cls(
            food_item_id=str(data["food_item_id"]),
            name=data["name"],
            price=Decimal(data["price"]),
            quantity=int(data["quantity"]),
            customizations=tuple(
                Customization(id=c["id"], name=c["name"], price=Decimal(c["price"]))
                for c in data.get("customizations", [])
            ),
            total_price=Decimal(data["total_price"]),
        )


@dataclass(frozen=True)
class OrderSnapshot:
    """Immutable copy of an order row as of one `version`."""

    id: str
    customer_id: str
    restaurant_id: str
    driver_id: Optional[str]
    items: Tuple[OrderLine, ...]
    subtotal: Decimal
    delivery_fee: Decimal
    total_amount: Decimal
    delivery_address: str
    special_instructions: Optional[str]
    customer_phone: Optional[str]
    payment_method: PaymentMethod
    status: OrderStatus
    payment_status: PaymentStatus
    payment_reference: Optional[str]
    created_at: datetime
    updated_at: datetime
    estimated_prep_time: Optional[int]
    estimated_delivery_time: Optional[datetime]
    version: int

    @property
    def is_terminal(self) -> bool:
        return self.status in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)

    def with_fields(self, **values) -> "OrderSnapshot":
        return replace(self, **values)


@dataclass(frozen=True)
class OrderChange:
    """One mutation as seen by the change feed."""

    order: OrderSnapshot
    changed_fields: FrozenSet[str]
    previous: Dict[str, Any] = field(default_factory=dict)
    seq: int = 0

    @property
    def order_id(self) -> str:
        return self.order.id

    @property
    def version(self) -> int:
        return self.order.version

    def previous_order(self) -> OrderSnapshot:
        return self.order.with_fields(**self.previous) if self.previous else self.order


@dataclass(frozen=True)
class OrderFilter:
    """Selects which orders a subscriber sees.

    Unset criteria match everything. `driver_id` also matches unassigned
    orders so drivers can see the pool of available work.
    """

    order_ids: Optional[FrozenSet[str]] = None
    customer_id: Optional[str] = None
    restaurant_id: Optional[str] = None
    driver_id: Optional[str] = None

    def matches_order(self, order: OrderSnapshot) -> bool:
        if self.order_ids is not None and order.id not in self.order_ids:
            return False
        if self.customer_id is not None and order.customer_id != self.customer_id:
            return False
        if self.restaurant_id is not None and order.restaurant_id != self.restaurant_id:
            return False
        if self.driver_id is not None and order.driver_id not in (None, self.driver_id):
            return False
        return True

    def matches(self, change: OrderChange) -> bool:
        return self.matches_order(change.order) or self.matches_order(change.previous_order())


@dataclass(frozen=True)
class Authorization:
    reference: str
    authorization_url: str
    access_code: Optional[str] = None


@dataclass(frozen=True)
class UserInteraction:
    reference: str
    authorization_url: str
    access_code: Optional[str] = None


@dataclass(frozen=True)
class Verification:
    reference: str
    verified: bool
    status: str
    amount_minor: Optional[int]
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentAttempt:
    reference: str
    order_id: str
    amount: Decimal
    outcome: AttemptOutcome
    source: Optional[ConfirmationSource]
    payload: Dict[str, Any]
    created_at: datetime
    resolved_at: Optional[datetime]

    @property
    def is_settled(self) -> bool:
        return self.outcome in (AttemptOutcome.SUCCESS, AttemptOutcome.FAILED)


@dataclass(frozen=True)
class PaymentInitiation:
    order_id: str
    outcome: AttemptOutcome
    reference: Optional[str] = None
    authorization_url: Optional[str] = None
    access_code: Optional[str] = None
    message: str = ""


@dataclass(frozen=True)
class PaymentResolution:
    reference: str
    order_id: str
    outcome: AttemptOutcome
    payment_status: PaymentStatus
    status: OrderStatus
    changed: bool
    message: str = ""


@dataclass(frozen=True)
class Settlement:
    attempt: PaymentAttempt
    order: OrderSnapshot
    order_changed: bool


def line_items_from_json(items: List[Dict[str, Any]]) -> Tuple[OrderLine, ...]:
    return tuple(OrderLine.from_dict(item) for item in items or [])
