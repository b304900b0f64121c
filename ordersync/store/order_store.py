import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ordersync.db.models import Event, Order, Payment, utcnow
from ordersync.errors import ConditionFailed, NotFoundError, StoreWriteError
from ordersync.store.change_feed import ChangeFeed, Subscription
from ordersync.types.order_types import (
    AttemptOutcome,
    ConfirmationSource,
    OrderChange,
    OrderFilter,
    OrderSnapshot,
    OrderStatus,
    PaymentAttempt,
    PaymentMethod,
    PaymentStatus,
    Settlement,
    line_items_from_json,
)

logger = logging.getLogger("order-store")

# Fields whose changes are interesting to subscribers.
TRACKED_FIELDS = frozenset({"status", "payment_status", "driver_id", "payment_reference"})

Case = Tuple[Dict[str, Any], Dict[str, Any]]


def _db_value(value):
    return value.value if isinstance(value, Enum) else value


def _json_value(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def to_snapshot(row: Order) -> OrderSnapshot:
    return OrderSnapshot(
        id=row.id,
        customer_id=row.customer_id,
        restaurant_id=row.restaurant_id,
        driver_id=row.driver_id,
        items=line_items_from_json(row.items_json),
        subtotal=Decimal(row.subtotal),
        delivery_fee=Decimal(row.delivery_fee),
        total_amount=Decimal(row.total_amount),
        delivery_address=row.delivery_address,
        special_instructions=row.special_instructions,
        customer_phone=row.customer_phone,
        payment_method=PaymentMethod(row.payment_method),
        status=OrderStatus(row.status),
        payment_status=PaymentStatus(row.payment_status),
        payment_reference=row.payment_reference,
        created_at=row.created_at,
        updated_at=row.updated_at,
        estimated_prep_time=row.estimated_prep_time,
        estimated_delivery_time=row.estimated_delivery_time,
        version=row.version,
    )


def snapshot_to_json(order: OrderSnapshot) -> Dict[str, Any]:
    return {
        "id": order.id,
        "customer_id": order.customer_id,
        "restaurant_id": order.restaurant_id,
        "driver_id": order.driver_id,
        "items": [line.to_dict() for line in order.items],
        "subtotal": str(order.subtotal),
        "delivery_fee": str(order.delivery_fee),
        "total_amount": str(order.total_amount),
        "delivery_address": order.delivery_address,
        "special_instructions": order.special_instructions,
        "customer_phone": order.customer_phone,
        "payment_method": order.payment_method.value,
        "status": order.status.value,
        "payment_status": order.payment_status.value,
        "payment_reference": order.payment_reference,
        "created_at": _json_value(order.created_at),
        "updated_at": _json_value(order.updated_at),
        "estimated_prep_time": order.estimated_prep_time,
        "estimated_delivery_time": _json_value(order.estimated_delivery_time),
        "version": order.version,
    }


def snapshot_from_json(data: Dict[str, Any]) -> OrderSnapshot:
    def _dt(value):
        return datetime.fromisoformat(value) if value else None

    return OrderSnapshot(
        id=data["id"],
        customer_id=data["customer_id"],
        restaurant_id=data["restaurant_id"],
        driver_id=data.get("driver_id"),
        items=line_items_from_json(data["items"]),
        subtotal=Decimal(data["subtotal"]),
        delivery_fee=Decimal(data["delivery_fee"]),
        total_amount=Decimal(data["total_amount"]),
        delivery_address=data["delivery_address"],
        special_instructions=data.get("special_instructions"),
        customer_phone=data.get("customer_phone"),
        payment_method=PaymentMethod(data["payment_method"]),
        status=OrderStatus(data["status"]),
        payment_status=PaymentStatus(data["payment_status"]),
        payment_reference=data.get("payment_reference"),
        created_at=_dt(data["created_at"]),
        updated_at=_dt(data["updated_at"]),
        estimated_prep_time=data.get("estimated_prep_time"),
        estimated_delivery_time=_dt(data.get("estimated_delivery_time")),
        version=data["version"],
    )


def _restore_previous(previous: Dict[str, Any]) -> Dict[str, Any]:
    restored = dict(previous)
    if restored.get("status") is not None:
        restored["status"] = OrderStatus(restored["status"])
    if restored.get("payment_status") is not None:
        restored["payment_status"] = PaymentStatus(restored["payment_status"])
    return restored


def to_attempt(row: Payment) -> PaymentAttempt:
    return PaymentAttempt(
        reference=row.reference,
        order_id=row.order_id,
        amount=Decimal(row.amount),
        outcome=AttemptOutcome(row.outcome),
        source=ConfirmationSource(row.source) if row.source else None,
        payload=row.payload_json or {},
        created_at=row.created_at,
        resolved_at=row.resolved_at,
    )


def _event_type(new: Dict[str, Any]) -> str:
    if "status" in new:
        return "STATUS_CHANGED"
    if "payment_status" in new:
        return "PAYMENT_STATUS_CHANGED"
    if "driver_id" in new:
        return "DRIVER_ASSIGNED"
    if "payment_reference" in new:
        return "PAYMENT_REFERENCE_SET"
    return "ORDER_UPDATED"


def _guard(column, expected):
    if isinstance(expected, (tuple, list, set, frozenset)):
        values = [_db_value(v) for v in expected]
        present = [v for v in values if v is not None]
        if None in values:
            return or_(column.is_(None), column.in_(present))
        return column.in_(present)
    if expected is None:
        return column.is_(None)
    return column == _db_value(expected)


class OrderStore:
    """Durable order records, the payment-attempt ledger and the change log.

    Every mutation is a conditional update: an ``UPDATE ... WHERE`` guarded
    on the values the caller expects, checked through the affected row
    count. A change is published to the feed only after its commit.
    """

    def __init__(self, session_factory, feed: Optional[ChangeFeed] = None):
        self._session_factory = session_factory
        self.feed = feed or ChangeFeed()

    # -- orders ---------------------------------------------------------

    async def insert(self, order: OrderSnapshot) -> str:
        with self._session_factory() as db:
            try:
                db.add(Order(
                    id=order.id,
                    customer_id=order.customer_id,
                    restaurant_id=order.restaurant_id,
                    driver_id=order.driver_id,
                    items_json=[line.to_dict() for line in order.items],
                    subtotal=order.subtotal,
                    delivery_fee=order.delivery_fee,
                    total_amount=order.total_amount,
                    delivery_address=order.delivery_address,
                    special_instructions=order.special_instructions,
                    customer_phone=order.customer_phone,
                    payment_method=order.payment_method.value,
                    status=order.status.value,
                    payment_status=order.payment_status.value,
                    payment_reference=order.payment_reference,
                    estimated_prep_time=order.estimated_prep_time,
                    estimated_delivery_time=order.estimated_delivery_time,
                    version=order.version,
                    created_at=order.created_at,
                    updated_at=order.updated_at,
                ))
                event = Event(
                    order_id=order.id,
                    type="ORDER_PLACED",
                    version=order.version,
                    payload_json={"fields": sorted(TRACKED_FIELDS), "order": snapshot_to_json(order)},
                    previous_json={},
                    ts=utcnow(),
                )
                db.add(event)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"[OrderStore] insert failed: {order.id}: {e}")
                raise StoreWriteError(f"Failed to persist order {order.id}", order_id=order.id) from e

        logger.info(f"[OrderStore] inserted: {order.id}")
        self.feed.publish(OrderChange(order=order, changed_fields=TRACKED_FIELDS, seq=event.id))
        return order.id

    async def get(self, order_id: str) -> OrderSnapshot:
        with self._session_factory() as db:
            row = db.get(Order, order_id)
            if row is None:
                raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
            return to_snapshot(row)

    async def list(self, order_filter: Optional[OrderFilter] = None, limit: int = 50) -> List[OrderSnapshot]:
        order_filter = order_filter or OrderFilter()
        with self._session_factory() as db:
            query = db.query(Order)
            if order_filter.order_ids is not None:
                query = query.filter(Order.id.in_(list(order_filter.order_ids)))
            if order_filter.customer_id is not None:
                query = query.filter(Order.customer_id == order_filter.customer_id)
            if order_filter.restaurant_id is not None:
                query = query.filter(Order.restaurant_id == order_filter.restaurant_id)
            if order_filter.driver_id is not None:
                query = query.filter(_guard(Order.driver_id, (order_filter.driver_id, None)))
            rows = query.order_by(Order.created_at.desc()).limit(limit).all()
            return [to_snapshot(row) for row in rows]

    async def conditional_update(
        self,
        order_id: str,
        expected: Dict[str, Any],
        new: Dict[str, Any],
        event_type: Optional[str] = None,
    ) -> OrderSnapshot:
        """Apply ``new`` only if the order currently matches ``expected``.

        Expected values may be a tuple meaning "any of these". Raises
        ``ConditionFailed`` carrying the current snapshot when the guard does
        not hold, ``NotFoundError`` for an unknown id.
        """
        with self._session_factory() as db:
            try:
                change = self._cas(db, order_id, expected, new, event_type)
                if change is None:
                    db.rollback()
                    current = db.get(Order, order_id)
                    if current is None:
                        raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
                    raise ConditionFailed(
                        f"Order {order_id} no longer matches {expected}",
                        order_id=order_id,
                        current=to_snapshot(current),
                    )
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"[OrderStore] conditional_update failed: {order_id}: {e}")
                raise StoreWriteError(f"Failed to update order {order_id}", order_id=order_id) from e

        self.feed.publish(change)
        return change.order

    def _cas(self, db, order_id: str, expected: Dict[str, Any], new: Dict[str, Any],
             event_type: Optional[str] = None) -> Optional[OrderChange]:
        row = db.get(Order, order_id)
        if row is None:
            raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
        previous = {key: _json_value(getattr(row, key)) for key in new}

        query = db.query(Order).filter(Order.id == order_id)
        for key, value in expected.items():
            query = query.filter(_guard(getattr(Order, key), value))

        values = {key: _db_value(value) for key, value in new.items()}
        values["version"] = Order.version + 1
        values["updated_at"] = utcnow()
        if query.update(values, synchronize_session=False) == 0:
            return None

        db.refresh(row)
        snapshot = to_snapshot(row)
        changed = frozenset(key for key in new if previous[key] != _json_value(getattr(row, key)))
        event = Event(
            order_id=order_id,
            type=event_type or _event_type(new),
            version=snapshot.version,
            payload_json={"fields": sorted(changed), "order": snapshot_to_json(snapshot)},
            previous_json={key: previous[key] for key in changed},
            ts=utcnow(),
        )
        db.add(event)
        db.flush()
        return OrderChange(
            order=snapshot,
            changed_fields=changed,
            previous=_restore_previous({key: previous[key] for key in changed}),
            seq=event.id,
        )

    # -- change feed ----------------------------------------------------

    def changes_since(self, order_filter: OrderFilter, since_seq: int = 0) -> List[OrderChange]:
        with self._session_factory() as db:
            query = db.query(Event).filter(Event.id > since_seq)
            if order_filter.order_ids is not None:
                query = query.filter(Event.order_id.in_(list(order_filter.order_ids)))
            changes = []
            for event in query.order_by(Event.id).all():
                payload = event.payload_json or {}
                change = OrderChange(
                    order=snapshot_from_json(payload["order"]),
                    changed_fields=frozenset(payload.get("fields", [])),
                    previous=_restore_previous(event.previous_json or {}),
                    seq=event.id,
                )
                if order_filter.matches(change):
                    changes.append(change)
            return changes

    def subscribe(self, order_filter: OrderFilter, since_seq: Optional[int] = None) -> Subscription:
        backlog: Iterable[OrderChange] = ()
        if since_seq is not None:
            backlog = self.changes_since(order_filter, since_seq)
        return self.feed.subscribe(order_filter, backlog=backlog)

    # -- payment ledger -------------------------------------------------

    async def record_payment_attempt(
        self,
        order_id: str,
        reference: str,
        amount: Decimal,
        expected: Dict[str, Any],
    ) -> OrderSnapshot:
        """Insert a pending attempt and tag the order with its reference in one transaction."""
        with self._session_factory() as db:
            try:
                db.add(Payment(
                    reference=reference,
                    order_id=order_id,
                    amount=amount,
                    outcome=AttemptOutcome.PENDING.value,
                    payload_json={},
                    created_at=utcnow(),
                ))
                db.flush()
                change = self._cas(db, order_id, expected, {"payment_reference": reference})
                if change is None:
                    db.rollback()
                    current = db.get(Order, order_id)
                    raise ConditionFailed(
                        f"Order {order_id} cannot take payment reference {reference}",
                        order_id=order_id,
                        current=to_snapshot(current) if current else None,
                    )
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise StoreWriteError(f"Payment reference {reference} already recorded", reference=reference) from e
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"[OrderStore] record_payment_attempt failed: {order_id}: {e}")
                raise StoreWriteError(f"Failed to record payment for order {order_id}", order_id=order_id) from e

        logger.info(f"[OrderStore] payment attempt recorded: {order_id} ref={reference}")
        self.feed.publish(change)
        return change.order

    async def get_payment_attempt(self, reference: str) -> PaymentAttempt:
        with self._session_factory() as db:
            row = db.get(Payment, reference)
            if row is None:
                raise NotFoundError(f"Payment reference {reference} not found", reference=reference)
            return to_attempt(row)

    async def list_payment_attempts(self, order_id: str) -> List[PaymentAttempt]:
        with self._session_factory() as db:
            rows = (
                db.query(Payment)
                .filter(Payment.order_id == order_id)
                .order_by(Payment.created_at)
                .all()
            )
            return [to_attempt(row) for row in rows]

    async def mark_attempt_cancelled(self, reference: str) -> PaymentAttempt:
        with self._session_factory() as db:
            try:
                db.query(Payment).filter(
                    Payment.reference == reference,
                    Payment.outcome == AttemptOutcome.PENDING.value,
                ).update({
                    "outcome": AttemptOutcome.CANCELLED.value,
                    "resolved_at": utcnow(),
                }, synchronize_session=False)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise StoreWriteError(f"Failed to cancel payment {reference}", reference=reference) from e
            row = db.get(Payment, reference)
            if row is None:
                raise NotFoundError(f"Payment reference {reference} not found", reference=reference)
            return to_attempt(row)

    async def settle_payment(
        self,
        reference: str,
        outcome: AttemptOutcome,
        source: ConfirmationSource,
        payload: Dict[str, Any],
        order_cases: Sequence[Case],
    ) -> Settlement:
        """Settle an unsettled attempt and apply the first matching order case.

        The attempt row is the idempotency key: only one caller can move it
        out of ``pending``/``cancelled``; everyone else gets
        ``ConditionFailed`` with the recorded attempt. Order cases are tried
        in sequence inside the same transaction; none matching leaves the
        order untouched but still settles the attempt.
        """
        with self._session_factory() as db:
            try:
                count = db.query(Payment).filter(
                    Payment.reference == reference,
                    Payment.outcome.in_([AttemptOutcome.PENDING.value, AttemptOutcome.CANCELLED.value]),
                ).update({
                    "outcome": outcome.value,
                    "source": source.value,
                    "payload_json": payload,
                    "resolved_at": utcnow(),
                }, synchronize_session=False)
                if count == 0:
                    db.rollback()
                    row = db.get(Payment, reference)
                    if row is None:
                        raise NotFoundError(f"Payment reference {reference} not found", reference=reference)
                    raise ConditionFailed(
                        f"Payment {reference} already settled",
                        reference=reference,
                        attempt=to_attempt(row),
                    )

                attempt_row = db.get(Payment, reference)
                change = None
                for expected, new in order_cases:
                    change = self._cas(db, attempt_row.order_id, expected, new)
                    if change is not None:
                        break
                order_row = db.get(Order, attempt_row.order_id)
                attempt = to_attempt(attempt_row)
                order = change.order if change else to_snapshot(order_row)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"[OrderStore] settle_payment failed: {reference}: {e}")
                raise StoreWriteError(f"Failed to settle payment {reference}", reference=reference) from e

        if change is not None and change.changed_fields:
            self.feed.publish(change)
        return Settlement(attempt=attempt, order=order, order_changed=bool(change and change.changed_fields))
