from datetime import timedelta
from typing import Optional
from temporalio import workflow
from temporalio.common import RetryPolicy

with workflow.unsafe.imports_passed_through():
    from ordersync.activities.activities import (
        activity_cancel_payment_attempt,
        activity_confirm_payment,
        activity_get_payment_state,
    )

FAST_RETRY_POLICY = RetryPolicy(
    maximum_attempts=20,
    initial_interval=timedelta(milliseconds=500),
    backoff_coefficient=2.0,
    maximum_interval=timedelta(seconds=30),
)

SETTLED_OUTCOMES = {"success", "failed", "unknown"}


class PaymentSignalManager:
    """Queues confirm/cancel signals for one payment reference and replays them as activities."""

    def __init__(self, logger, task_queue: str):
        self.logger = logger
        self.task_queue = task_queue
        self.signal_queue = []

    def queue_confirm(self, source: str):
        self.signal_queue.append(("confirm", source))

    def queue_cancel(self):
        self.signal_queue.append(("cancel", None))

    def has_pending(self) -> bool:
        return bool(self.signal_queue)

    async def process_signals(self, reference: str) -> Optional[dict]:
        result = None
        while self.signal_queue:
            signal_type, payload = self.signal_queue.pop(0)
            if signal_type == "confirm":
                result = await self._handle_confirm(reference, payload)
                if result.get("outcome") in SETTLED_OUTCOMES:
                    self.signal_queue.clear()
                    break
            elif signal_type == "cancel":
                result = await self._handle_cancel(reference)
        return result

    async def _handle_confirm(self, reference: str, source: str) -> dict:
        result = await workflow.execute_activity(
            activity_confirm_payment,
            args=[reference, source],
            start_to_close_timeout=timedelta(seconds=30),
            retry_policy=FAST_RETRY_POLICY,
            task_queue=self.task_queue,
        )
        self.logger.info(f"[PaymentSignals] confirm ({source}): {reference} -> {result.get('outcome')}")
        return result

    async def _handle_cancel(self, reference: str) -> dict:
        result = await workflow.execute_activity(
            activity_cancel_payment_attempt,
            reference,
            start_to_close_timeout=timedelta(seconds=10),
            retry_policy=FAST_RETRY_POLICY,
            task_queue=self.task_queue,
        )
        self.logger.info(f"[PaymentSignals] cancel: {reference}")
        return result

    async def payment_state(self, reference: str) -> dict:
        return await workflow.execute_activity(
            activity_get_payment_state,
            reference,
            start_to_close_timeout=timedelta(seconds=10),
            retry_policy=FAST_RETRY_POLICY,
            task_queue=self.task_queue,
        )
