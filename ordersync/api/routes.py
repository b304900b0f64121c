import logging
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field

from ordersync import services
from ordersync.activities.activities import resolution_to_dict
from ordersync.config import get_settings
from ordersync.engine.sync_engine import OrderSyncEngine
from ordersync.errors import AuthError, NotFoundError
from ordersync.store.order_store import snapshot_to_json
from ordersync.types.order_types import (
    Actor,
    ActorRole,
    CartLine,
    ConfirmationSource,
    Customization,
    OrderFilter,
    PaymentMethod,
)
from ordersync.workflows import PaymentWorkflow

logger = logging.getLogger("api")

router = APIRouter()


class CustomizationInput(BaseModel):
    id: str
    name: str
    price: Decimal = Decimal("0")


class CartLineInput(BaseModel):
    food_item_id: str
    name: str
    price: Decimal
    quantity: int = 1
    customizations: List[CustomizationInput] = Field(default_factory=list)

    def to_cart_line(self) -> CartLine:
        return CartLine(
            food_item_id=self.food_item_id,
            name=self.name,
            price=self.price,
            quantity=self.quantity,
            customizations=tuple(Customization(id=c.id, name=c.name, price=c.price) for c in self.customizations),
        )


class OrderInput(BaseModel):
    items: List[CartLineInput]
    delivery_address: str
    special_instructions: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.PAYSTACK
    customer_phone: Optional[str] = None


class PaymentInput(BaseModel):
    email: str
    amount: Optional[Decimal] = None
    customer_name: Optional[str] = None


class StatusInput(BaseModel):
    status: str


def get_engine() -> OrderSyncEngine:
    return services.get_engine()


def get_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
) -> Optional[Actor]:
    if not x_actor_id or not x_actor_role:
        return None
    try:
        return Actor(id=x_actor_id, role=ActorRole(x_actor_role))
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Unknown actor role '{x_actor_role}'")


def require_actor(actor: Optional[Actor]) -> Actor:
    if actor is None:
        raise AuthError("Missing actor identity")
    return actor


def filter_for(actor: Actor) -> OrderFilter:
    if actor.role == ActorRole.CUSTOMER:
        return OrderFilter(customer_id=actor.id)
    if actor.role == ActorRole.DRIVER:
        return OrderFilter(driver_id=actor.id)
    if actor.role == ActorRole.RESTAURANT:
        return OrderFilter(restaurant_id=get_settings().restaurant_id)
    return OrderFilter()


async def dispatch_payment_signal(request: Request, engine: OrderSyncEngine, reference: str,
                                  signal: str, source: Optional[ConfirmationSource] = None) -> dict:
    """Route a payment signal through the payment workflow, or straight to the engine without Temporal."""
    client = request.app.state.client
    if client is None:
        if signal == "cancel":
            resolution = await engine.cancel_payment_attempt(reference)
        else:
            resolution = await engine.confirm_payment(reference, source)
        return {"queued": False, **resolution_to_dict(resolution)}

    settings = get_settings()
    await client.start_workflow(
        PaymentWorkflow.run,
        args=[reference, settings.payment_sweep_seconds],
        id=f"payment-{reference}",
        task_queue=settings.payment_task_queue,
        start_signal=signal,
        start_signal_args=[source.value] if source else [],
    )
    logger.info(f"[{reference}] {signal} signal sent ({source.value if source else 'user'})")
    return {"queued": True, "reference": reference}


@router.post("/orders", tags=["Orders"], status_code=201)
async def place_order(order: OrderInput, actor: Optional[Actor] = Depends(get_actor),
                      engine: OrderSyncEngine = Depends(get_engine)):
    order_id = await engine.place_order(
        [line.to_cart_line() for line in order.items],
        order.delivery_address,
        actor,
        special_instructions=order.special_instructions,
        payment_method=order.payment_method,
        customer_phone=order.customer_phone,
    )
    snapshot = await engine.get_order(order_id)
    return {"order_id": order_id, "order": snapshot_to_json(snapshot)}


@router.get("/orders", tags=["Orders"])
async def list_orders(limit: int = 50, actor: Optional[Actor] = Depends(get_actor),
                      engine: OrderSyncEngine = Depends(get_engine)):
    orders = await engine.list_orders(filter_for(require_actor(actor)), limit=limit)
    return {"orders": [snapshot_to_json(o) for o in orders]}


@router.get("/orders/{order_id}", tags=["Orders"])
async def get_order(order_id: str, actor: Optional[Actor] = Depends(get_actor),
                    engine: OrderSyncEngine = Depends(get_engine)):
    actor = require_actor(actor)
    snapshot = await engine.get_order(order_id)
    if not filter_for(actor).matches_order(snapshot):
        # Orders outside the actor's scope read as missing.
        raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
    return snapshot_to_json(snapshot)


@router.post("/orders/{order_id}/status", tags=["Orders"])
async def advance_status(order_id: str, body: StatusInput, actor: Optional[Actor] = Depends(get_actor),
                         engine: OrderSyncEngine = Depends(get_engine)):
    snapshot = await engine.advance_status(order_id, body.status, actor)
    return snapshot_to_json(snapshot)


@router.post("/orders/{order_id}/claim", tags=["Orders"])
async def claim_order(order_id: str, actor: Optional[Actor] = Depends(get_actor),
                      engine: OrderSyncEngine = Depends(get_engine)):
    snapshot = await engine.claim_order(order_id, actor)
    return snapshot_to_json(snapshot)


@router.post("/orders/{order_id}/payments", tags=["Payments"])
async def initiate_payment(order_id: str, body: PaymentInput, request: Request,
                           engine: OrderSyncEngine = Depends(get_engine)):
    initiation = await engine.initiate_payment(
        order_id, body.amount, email=body.email, customer_name=body.customer_name
    )
    client = request.app.state.client
    if client is not None and initiation.reference:
        settings = get_settings()
        await client.start_workflow(
            PaymentWorkflow.run,
            args=[initiation.reference, settings.payment_sweep_seconds],
            id=f"payment-{initiation.reference}",
            task_queue=settings.payment_task_queue,
        )
    return {
        "order_id": initiation.order_id,
        "status": initiation.outcome.value,
        "reference": initiation.reference,
        "authorization_url": initiation.authorization_url,
        "access_code": initiation.access_code,
        "message": initiation.message,
    }


@router.get("/payments/callback", tags=["Payments"])
async def payment_callback(reference: str, request: Request, engine: OrderSyncEngine = Depends(get_engine)):
    return await dispatch_payment_signal(request, engine, reference, "confirm", ConfirmationSource.CALLBACK)


@router.post("/payments/{reference}/cancel", tags=["Payments"])
async def cancel_payment(reference: str, request: Request, engine: OrderSyncEngine = Depends(get_engine)):
    return await dispatch_payment_signal(request, engine, reference, "cancel")


@router.post("/webhooks/paystack", tags=["Payments"])
async def paystack_webhook(request: Request, x_paystack_signature: Optional[str] = Header(None),
                           engine: OrderSyncEngine = Depends(get_engine)):
    reference = engine.parse_webhook(await request.body(), x_paystack_signature)
    if reference is None:
        return {"received": True}
    try:
        result = await dispatch_payment_signal(request, engine, reference, "confirm", ConfirmationSource.WEBHOOK)
    except NotFoundError:
        logger.warning(f"[{reference}] webhook for unknown reference dropped")
        return {"received": True}
    return {"received": True, **result}
