import asyncio

import pytest

from ordersync.engine import state_machine
from ordersync.errors import (
    ActorNotAllowedError,
    AlreadyAssignedError,
    AuthError,
    InvalidTransitionError,
    PaymentRequiredError,
    ValidationError,
)
from ordersync.types.order_types import OrderStatus, PaymentMethod, PaymentStatus

from support import (
    ADMIN,
    CUSTOMER,
    DRIVER_X,
    DRIVER_Y,
    OTHER_CUSTOMER,
    RESTAURANT,
    YieldingStore,
    build_engine,
    drive_to,
    place,
    place_and_pay,
)

S = OrderStatus


@pytest.mark.asyncio
async def test_full_lifecycle(engine):
    order_id = await place_and_pay(engine)
    versions = [(await engine.get_order(order_id)).version]

    for target in (S.PREPARING, S.READY, S.PICKED_UP, S.DELIVERED):
        order = await drive_to(engine, order_id, target)
        assert order.status == target
        versions.append(order.version)

    assert versions == sorted(versions)
    assert len(set(versions)) == len(versions)
    assert order.driver_id == DRIVER_X.id
    assert order.is_terminal


@pytest.mark.asyncio
async def test_restaurant_may_confirm_before_payment(engine):
    order_id = await place(engine)
    order = await engine.advance_status(order_id, "confirmed", RESTAURANT)
    assert order.status == S.CONFIRMED
    assert order.payment_status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_kitchen_work_waits_for_payment(engine):
    order_id = await place(engine)
    await engine.advance_status(order_id, S.CONFIRMED, RESTAURANT)

    with pytest.raises(PaymentRequiredError):
        await engine.advance_status(order_id, S.PREPARING, RESTAURANT)
    assert (await engine.get_order(order_id)).status == S.CONFIRMED


@pytest.mark.asyncio
async def test_skipping_a_step_is_rejected(engine):
    order_id = await place_and_pay(engine)
    with pytest.raises(InvalidTransitionError):
        await engine.advance_status(order_id, S.READY, RESTAURANT)
    with pytest.raises(InvalidTransitionError):
        await engine.advance_status(order_id, S.PLACED, ADMIN)


@pytest.mark.asyncio
async def test_terminal_orders_do_not_move(engine):
    order_id = await place_and_pay(engine)
    await drive_to(engine, order_id, S.PREPARING, S.READY, S.PICKED_UP, S.DELIVERED)

    with pytest.raises(InvalidTransitionError):
        await engine.advance_status(order_id, S.CANCELLED, ADMIN)

    cancelled = await place(engine)
    await engine.advance_status(cancelled, S.CANCELLED, CUSTOMER)
    with pytest.raises(InvalidTransitionError):
        await engine.advance_status(cancelled, S.CONFIRMED, RESTAURANT)


@pytest.mark.asyncio
async def test_cash_order_is_paid_on_delivery(engine):
    order_id = await place(engine, payment_method=PaymentMethod.CASH)
    order = await drive_to(engine, order_id, S.CONFIRMED, S.PREPARING, S.READY, S.PICKED_UP)
    assert order.payment_status == PaymentStatus.PENDING

    order = await drive_to(engine, order_id, S.DELIVERED)
    assert order.payment_status == PaymentStatus.PAID


@pytest.mark.asyncio
async def test_concurrent_pickup_has_one_winner():
    engine, _, _ = build_engine(store_cls=YieldingStore)
    order_id = await place_and_pay(engine)
    await drive_to(engine, order_id, S.PREPARING, S.READY)

    results = await asyncio.gather(
        engine.advance_status(order_id, S.PICKED_UP, DRIVER_X),
        engine.advance_status(order_id, S.PICKED_UP, DRIVER_Y),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1 and len(losers) == 1
    assert isinstance(losers[0], AlreadyAssignedError)
    order = await engine.get_order(order_id)
    assert order.status == S.PICKED_UP
    assert order.driver_id == winners[0].driver_id


@pytest.mark.asyncio
async def test_stale_restaurant_command_reports_transition_error():
    engine, _, _ = build_engine(store_cls=YieldingStore)
    order_id = await place_and_pay(engine)

    results = await asyncio.gather(
        engine.advance_status(order_id, S.PREPARING, RESTAURANT),
        engine.advance_status(order_id, S.PREPARING, RESTAURANT),
        return_exceptions=True,
    )

    assert sum(isinstance(r, InvalidTransitionError) for r in results) == 1
    assert (await engine.get_order(order_id)).status == S.PREPARING


@pytest.mark.asyncio
async def test_pickup_of_assigned_order_by_other_driver(engine):
    order_id = await place_and_pay(engine)
    await drive_to(engine, order_id, S.PREPARING, S.READY, S.PICKED_UP)

    with pytest.raises(AlreadyAssignedError):
        await engine.advance_status(order_id, S.PICKED_UP, DRIVER_Y)
    with pytest.raises(ActorNotAllowedError):
        await engine.advance_status(order_id, S.DELIVERED, DRIVER_Y)


@pytest.mark.asyncio
async def test_claim_then_pickup(engine):
    order_id = await place_and_pay(engine)

    claimed = await engine.claim_order(order_id, DRIVER_X)
    assert claimed.driver_id == DRIVER_X.id
    assert claimed.status == S.CONFIRMED
    assert (await engine.claim_order(order_id, DRIVER_X)).version == claimed.version

    with pytest.raises(AlreadyAssignedError):
        await engine.claim_order(order_id, DRIVER_Y)

    await drive_to(engine, order_id, S.PREPARING, S.READY)
    with pytest.raises(AlreadyAssignedError):
        await engine.advance_status(order_id, S.PICKED_UP, DRIVER_Y)
    order = await engine.advance_status(order_id, S.PICKED_UP, DRIVER_X)
    assert order.driver_id == DRIVER_X.id


@pytest.mark.asyncio
async def test_claim_rules(engine):
    order_id = await place(engine)
    with pytest.raises(InvalidTransitionError):
        await engine.claim_order(order_id, DRIVER_X)
    with pytest.raises(ActorNotAllowedError):
        await engine.claim_order(order_id, RESTAURANT)
    with pytest.raises(AuthError):
        await engine.claim_order(order_id, None)


@pytest.mark.asyncio
async def test_customer_cancellation_window(engine):
    placed = await place(engine)
    assert (await engine.advance_status(placed, S.CANCELLED, CUSTOMER)).status == S.CANCELLED

    confirmed = await place(engine)
    await engine.advance_status(confirmed, S.CONFIRMED, RESTAURANT)
    assert (await engine.advance_status(confirmed, S.CANCELLED, CUSTOMER)).status == S.CANCELLED

    preparing = await place_and_pay(engine)
    await drive_to(engine, preparing, S.PREPARING)
    with pytest.raises(ActorNotAllowedError, match="can no longer be cancelled"):
        await engine.advance_status(preparing, S.CANCELLED, CUSTOMER)


@pytest.mark.asyncio
async def test_customers_only_cancel_their_own_orders(engine):
    order_id = await place(engine)
    with pytest.raises(ActorNotAllowedError):
        await engine.advance_status(order_id, S.CANCELLED, OTHER_CUSTOMER)


@pytest.mark.asyncio
async def test_restaurant_and_admin_cancel_late(engine):
    ready = await place_and_pay(engine)
    await drive_to(engine, ready, S.PREPARING, S.READY)
    assert (await engine.advance_status(ready, S.CANCELLED, RESTAURANT)).status == S.CANCELLED

    picked_up = await place_and_pay(engine)
    await drive_to(engine, picked_up, S.PREPARING, S.READY, S.PICKED_UP)
    with pytest.raises(ActorNotAllowedError):
        await engine.advance_status(picked_up, S.CANCELLED, DRIVER_X)
    assert (await engine.advance_status(picked_up, S.CANCELLED, ADMIN)).status == S.CANCELLED


@pytest.mark.asyncio
async def test_role_permissions(engine):
    order_id = await place(engine)
    with pytest.raises(ActorNotAllowedError):
        await engine.advance_status(order_id, S.CONFIRMED, DRIVER_X)
    with pytest.raises(ActorNotAllowedError):
        await engine.advance_status(order_id, S.CONFIRMED, CUSTOMER)
    assert (await engine.advance_status(order_id, S.CONFIRMED, ADMIN)).status == S.CONFIRMED


@pytest.mark.asyncio
async def test_pickup_needs_a_driver(engine):
    order_id = await place_and_pay(engine)
    await drive_to(engine, order_id, S.PREPARING, S.READY)
    with pytest.raises(InvalidTransitionError, match="no driver"):
        await engine.advance_status(order_id, S.PICKED_UP, ADMIN)


@pytest.mark.asyncio
async def test_bad_command_input(engine):
    order_id = await place(engine)
    with pytest.raises(ValidationError):
        await engine.advance_status(order_id, "teleported", RESTAURANT)
    with pytest.raises(AuthError):
        await engine.advance_status(order_id, S.CONFIRMED, None)


def test_transition_table():
    assert state_machine.next_status(S.PLACED) == S.CONFIRMED
    assert state_machine.next_status(S.PICKED_UP) == S.DELIVERED
    assert state_machine.next_status(S.DELIVERED) is None

    assert state_machine.is_valid_transition(S.READY, S.PICKED_UP)
    assert state_machine.is_valid_transition(S.PICKED_UP, S.CANCELLED)
    assert not state_machine.is_valid_transition(S.PLACED, S.PREPARING)
    assert not state_machine.is_valid_transition(S.CANCELLED, S.CANCELLED)
    assert not state_machine.is_valid_transition(S.DELIVERED, S.CANCELLED)


def test_supersedes():
    assert state_machine.supersedes(S.PLACED, S.READY)
    assert state_machine.supersedes(S.READY, S.READY)
    assert state_machine.supersedes(S.PREPARING, S.CANCELLED)
    assert not state_machine.supersedes(S.READY, S.CONFIRMED)
    assert not state_machine.supersedes(S.CANCELLED, S.DELIVERED)
    assert not state_machine.supersedes(S.DELIVERED, S.CANCELLED)
