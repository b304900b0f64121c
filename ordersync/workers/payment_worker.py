import logging
import asyncio
from temporalio.client import Client
from temporalio.worker import Worker
from ordersync.config import configure_logging, get_settings
from ordersync.workflows.payment_workflow import PaymentWorkflow
from ordersync.activities.activities import (
    activity_confirm_payment,
    activity_cancel_payment_attempt,
    activity_get_payment_state,
)

logger = logging.getLogger("payment-worker")

async def main():
    configure_logging()
    settings = get_settings()
    try:
        logger.info(f"Connecting to Temporal at {settings.temporal_address}...")
        client = await Client.connect(settings.temporal_address)
        worker = Worker(
            client,
            task_queue=settings.payment_task_queue,
            workflows=[PaymentWorkflow],
            activities=[
                activity_confirm_payment,
                activity_cancel_payment_attempt,
                activity_get_payment_state,
            ],
        )
        logger.info(f"Payment worker running on task queue: {settings.payment_task_queue}")
        await worker.run()
    except Exception as e:
        logger.error(f"Payment worker crashed: {str(e)}")
        raise

if __name__ == "__main__":
    asyncio.run(main())
