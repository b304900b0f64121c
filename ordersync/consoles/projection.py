from typing import Dict, Iterator, Optional, Tuple

from ordersync.engine.state_machine import supersedes
from ordersync.types.order_types import OrderChange, OrderSnapshot, PaymentStatus

MERGED_FIELDS = frozenset({"status", "payment_status", "driver_id", "payment_reference"})


class OrderProjection:
    """A console's local, non-authoritative view of some orders.

    Changes are merged field by field: a field only takes a value from a
    change newer than the one that last set it, and never moves backwards
    (status rank, ``paid``, an assigned driver). Replayed or duplicated
    changes are therefore harmless.
    """

    def __init__(self):
        self._orders: Dict[str, OrderSnapshot] = {}
        self._field_versions: Dict[Tuple[str, str], int] = {}

    def __contains__(self, order_id: str) -> bool:
        return order_id in self._orders

    def __iter__(self) -> Iterator[OrderSnapshot]:
        return iter(sorted(self._orders.values(), key=lambda o: o.created_at, reverse=True))

    def __len__(self) -> int:
        return len(self._orders)

    def get(self, order_id: str) -> Optional[OrderSnapshot]:
        return self._orders.get(order_id)

    def apply(self, change: OrderChange) -> bool:
        incoming = change.order
        current = self._orders.get(incoming.id)
        if current is None:
            self.replace(incoming)
            return True

        updates = {}
        for name in change.changed_fields & MERGED_FIELDS:
            key = (incoming.id, name)
            if incoming.version <= self._field_versions.get(key, 0):
                continue
            value = getattr(incoming, name)
            if not self._accepts(name, getattr(current, name), value):
                continue
            updates[name] = value
            self._field_versions[key] = incoming.version

        if not updates:
            return False
        if incoming.version > current.version:
            updates["version"] = incoming.version
            updates["updated_at"] = incoming.updated_at
        self._orders[incoming.id] = current.with_fields(**updates)
        return True

    def apply_snapshot(self, order: OrderSnapshot) -> bool:
        return self.apply(OrderChange(order=order, changed_fields=MERGED_FIELDS))

    def replace(self, order: OrderSnapshot) -> None:
        self._orders[order.id] = order
        for name in MERGED_FIELDS:
            self._field_versions[(order.id, name)] = order.version

    def discard(self, order_id: str) -> Optional[OrderSnapshot]:
        for name in MERGED_FIELDS:
            self._field_versions.pop((order_id, name), None)
        return self._orders.pop(order_id, None)

    @staticmethod
    def _accepts(name: str, current, incoming) -> bool:
        if name == "status":
            return supersedes(current, incoming)
        if name == "payment_status":
            return current != PaymentStatus.PAID or incoming == PaymentStatus.PAID
        if name == "driver_id":
            return current is None or incoming == current
        return True
