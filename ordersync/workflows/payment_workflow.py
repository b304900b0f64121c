import asyncio
import logging
from datetime import timedelta
from typing import Optional
from temporalio import workflow

with workflow.unsafe.imports_passed_through():
    from ordersync.activities.signals import PaymentSignalManager, SETTLED_OUTCOMES

logger = logging.getLogger("payment-workflow")


@workflow.defn
class PaymentWorkflow:
    """Funnels every confirmation for one gateway reference through one place.

    The callback route, the webhook route and the checkout itself all use
    signal-with-start on ``payment-<reference>``. When nothing settles the
    payment within the sweep window the workflow verifies by reference
    itself.
    """

    def __init__(self):
        self._signals: Optional[PaymentSignalManager] = None
        self.reference: Optional[str] = None
        self.result: Optional[dict] = None

    def _manager(self) -> PaymentSignalManager:
        if self._signals is None:
            self._signals = PaymentSignalManager(logger, workflow.info().task_queue)
        return self._signals

    @workflow.signal
    async def confirm(self, source: str):
        self._manager().queue_confirm(source)

    @workflow.signal
    async def cancel(self):
        self._manager().queue_cancel()

    @workflow.query
    def state(self) -> dict:
        return {"reference": self.reference, "result": self.result}

    @workflow.run
    async def run(self, reference: str, sweep_seconds: int) -> dict:
        self.reference = reference
        signals = self._manager()

        while True:
            swept = False
            try:
                await workflow.wait_condition(signals.has_pending, timeout=timedelta(seconds=sweep_seconds))
            except asyncio.TimeoutError:
                state = await signals.payment_state(reference)
                if state["outcome"] in SETTLED_OUTCOMES or state["outcome"] == "NOT_FOUND":
                    # Settled outside the workflow, e.g. by a route running without Temporal.
                    logger.info(f"[PaymentWorkflow] already {state['outcome']}, no sweep needed: {reference}")
                    self.result = {**state, "changed": False}
                    break
                logger.info(f"[PaymentWorkflow] no confirmation within {sweep_seconds}s, sweeping: {reference}")
                signals.queue_confirm("sweep")
                swept = True

            result = await signals.process_signals(reference)
            if result is not None:
                self.result = result
            if swept or (result and result.get("outcome") in SETTLED_OUTCOMES):
                break

        logger.info(f"[PaymentWorkflow] COMPLETED: {reference}: {self.result}")
        return self.result or {"reference": reference, "outcome": "pending", "changed": False}
