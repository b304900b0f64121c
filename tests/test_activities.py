import pytest
from temporalio.testing import ActivityEnvironment

from ordersync import services
from ordersync.activities.activities import (
    activity_cancel_payment_attempt,
    activity_confirm_payment,
    activity_get_payment_state,
)
from ordersync.errors import GatewayRequestError

from support import place


@pytest.fixture
def activity_env(engine):
    services.set_engine(engine)
    yield ActivityEnvironment()
    services.set_engine(None)


async def initiate(engine):
    order_id = await place(engine)
    initiation = await engine.initiate_payment(order_id, email="ama@example.com")
    return order_id, initiation.reference


@pytest.mark.asyncio
async def test_confirm_activity_settles_payment(activity_env, engine):
    order_id, reference = await initiate(engine)

    result = await activity_env.run(activity_confirm_payment, reference, "webhook")

    assert result["outcome"] == "success"
    assert result["payment_status"] == "paid"
    assert result["status"] == "confirmed"
    assert result["changed"] is True
    assert result["order_id"] == order_id

    again = await activity_env.run(activity_confirm_payment, reference, "sweep")
    assert again["changed"] is False


@pytest.mark.asyncio
async def test_confirm_activity_unknown_reference(activity_env):
    result = await activity_env.run(activity_confirm_payment, "sp_missing", "callback")
    assert result == {"reference": "sp_missing", "outcome": "unknown", "changed": False}


@pytest.mark.asyncio
async def test_confirm_activity_raises_gateway_errors_for_retry(activity_env, engine, gateway):
    _, reference = await initiate(engine)
    gateway.fail_verify = GatewayRequestError("Payment service temporarily unavailable")

    with pytest.raises(GatewayRequestError):
        await activity_env.run(activity_confirm_payment, reference, "callback")


@pytest.mark.asyncio
async def test_cancel_activity(activity_env, engine):
    _, reference = await initiate(engine)

    result = await activity_env.run(activity_cancel_payment_attempt, reference)
    assert result["outcome"] == "cancelled"

    missing = await activity_env.run(activity_cancel_payment_attempt, "sp_missing")
    assert missing["outcome"] == "unknown"


@pytest.mark.asyncio
async def test_payment_state_activity(activity_env, engine):
    order_id, reference = await initiate(engine)

    state = await activity_env.run(activity_get_payment_state, reference)
    assert state == {"reference": reference, "order_id": order_id, "outcome": "pending"}

    missing = await activity_env.run(activity_get_payment_state, "sp_missing")
    assert missing["outcome"] == "NOT_FOUND"
