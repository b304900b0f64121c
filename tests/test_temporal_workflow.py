import os
import uuid

import pytest
from temporalio.client import Client
from temporalio.testing import WorkflowEnvironment
from temporalio.worker import Worker

from ordersync import services
from ordersync.activities.activities import (
    activity_cancel_payment_attempt,
    activity_confirm_payment,
    activity_get_payment_state,
)
from ordersync.workflows import PaymentWorkflow

from support import place

pytestmark = pytest.mark.skipif(
    os.getenv("TEMPORAL_TESTS") != "1",
    reason="set TEMPORAL_TESTS=1 to run against a Temporal test server",
)

ACTIVITIES = [activity_confirm_payment, activity_cancel_payment_attempt, activity_get_payment_state]


async def initiate(engine):
    order_id = await place(engine)
    initiation = await engine.initiate_payment(order_id, email="ama@example.com")
    return order_id, initiation.reference


async def run_payment(env, reference, sweep_seconds=60, **start_kwargs):
    task_queue = f"payment-test-{uuid.uuid4().hex[:8]}"
    async with Worker(env.client, task_queue=task_queue, workflows=[PaymentWorkflow], activities=ACTIVITIES):
        handle = await env.client.start_workflow(
            PaymentWorkflow.run,
            args=[reference, sweep_seconds],
            id=f"payment-{reference}",
            task_queue=task_queue,
            **start_kwargs,
        )
        return await handle.result()


@pytest.fixture
def bound_engine(engine):
    services.set_engine(engine)
    yield engine
    services.set_engine(None)


@pytest.mark.asyncio
async def test_callback_signal_settles_payment(bound_engine):
    order_id, reference = await initiate(bound_engine)

    async with await WorkflowEnvironment.start_time_skipping() as env:
        result = await run_payment(env, reference, start_signal="confirm", start_signal_args=["callback"])

    assert result["outcome"] == "success"
    order = await bound_engine.get_order(order_id)
    assert order.payment_status.value == "paid"


@pytest.mark.asyncio
async def test_sweep_verifies_silent_payment(bound_engine, gateway):
    order_id, reference = await initiate(bound_engine)

    async with await WorkflowEnvironment.start_time_skipping() as env:
        result = await run_payment(env, reference)

    assert result["outcome"] == "success"
    assert gateway.verify_calls == [reference]
    assert (await bound_engine.get_order(order_id)).status.value == "confirmed"


@pytest.mark.asyncio
async def test_sweep_skips_payment_settled_without_workflow(bound_engine, gateway):
    order_id, reference = await initiate(bound_engine)
    await bound_engine.confirm_payment(reference)

    async with await WorkflowEnvironment.start_time_skipping() as env:
        result = await run_payment(env, reference)

    assert result["outcome"] == "success"
    assert result["order_id"] == order_id
    assert result["changed"] is False
    assert gateway.verify_calls == [reference]


@pytest.mark.asyncio
async def test_sweep_after_closed_checkout_leaves_order_unpaid(bound_engine, gateway):
    order_id, reference = await initiate(bound_engine)
    gateway.statuses[reference] = "abandoned"

    async with await WorkflowEnvironment.start_time_skipping() as env:
        result = await run_payment(env, reference, start_signal="cancel")

    assert result["outcome"] == "cancelled"
    assert (await bound_engine.get_order(order_id)).payment_status.value == "pending"


@pytest.mark.asyncio
async def test_temporal_connection():
    address = os.getenv("TEMPORAL_ADDRESS", "localhost:7233")
    try:
        client = await Client.connect(address)
        assert client is not None
    except Exception as e:
        pytest.fail(f"Temporal connection failed: {e}")
