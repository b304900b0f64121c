import logging
from dataclasses import asdict
from temporalio import activity
from ordersync.errors import GatewayError, NotFoundError
from ordersync.types.order_types import ConfirmationSource, PaymentResolution

logger = logging.getLogger("activity")


def resolution_to_dict(resolution: PaymentResolution) -> dict:
    data = asdict(resolution)
    data["outcome"] = resolution.outcome.value
    data["payment_status"] = resolution.payment_status.value
    data["status"] = resolution.status.value
    return data


@activity.defn
async def activity_confirm_payment(reference: str, source: str) -> dict:
    from ..services import get_engine

    attempt = activity.info().attempt
    logger.info(f"[Activity] confirm_payment attempt {attempt} ({source}): {reference}")
    try:
        resolution = await get_engine().confirm_payment(reference, ConfirmationSource(source))
    except NotFoundError:
        logger.warning(f"[Activity] confirm_payment unknown reference: {reference}")
        return {"reference": reference, "outcome": "unknown", "changed": False}
    except GatewayError as e:
        logger.warning(f"[Activity] confirm_payment gateway error: {reference}: {e.message}")
        raise
    except Exception as e:
        logger.error(f"[Activity] confirm_payment error: {reference}: {str(e)}")
        raise
    return resolution_to_dict(resolution)


@activity.defn
async def activity_cancel_payment_attempt(reference: str) -> dict:
    from ..services import get_engine

    logger.info(f"[Activity] cancel_payment_attempt: {reference}")
    try:
        resolution = await get_engine().cancel_payment_attempt(reference)
    except NotFoundError:
        logger.warning(f"[Activity] cancel_payment_attempt unknown reference: {reference}")
        return {"reference": reference, "outcome": "unknown", "changed": False}
    return resolution_to_dict(resolution)


@activity.defn
async def activity_get_payment_state(reference: str) -> dict:
    from ..services import get_engine

    try:
        attempt = await get_engine().get_payment_attempt(reference)
    except NotFoundError:
        return {"reference": reference, "outcome": "NOT_FOUND"}
    return {"reference": reference, "order_id": attempt.order_id, "outcome": attempt.outcome.value}
