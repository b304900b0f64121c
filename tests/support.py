import asyncio
import json
from decimal import Decimal
from typing import Dict, List, Optional

from ordersync.config import Settings
from ordersync.db.session import make_session_factory
from ordersync.engine.sync_engine import OrderSyncEngine
from ordersync.gateway.base import PaymentGateway
from ordersync.gateway.paystack import sign_payload
from ordersync.store.order_store import OrderStore
from ordersync.types.order_types import (
    Actor,
    ActorRole,
    Authorization,
    CartLine,
    Customization,
    UserInteraction,
    Verification,
)

WEBHOOK_SECRET = "sk_test_webhook_secret"
ADDRESS = "12 Independence Ave, Accra"

CUSTOMER = Actor(id="cust-1", role=ActorRole.CUSTOMER, phone="+233200000000")
OTHER_CUSTOMER = Actor(id="cust-2", role=ActorRole.CUSTOMER)
RESTAURANT = Actor(id="kitchen-1", role=ActorRole.RESTAURANT)
DRIVER_X = Actor(id="driver-x", role=ActorRole.DRIVER)
DRIVER_Y = Actor(id="driver-y", role=ActorRole.DRIVER)
ADMIN = Actor(id="admin-1", role=ActorRole.ADMIN)


def make_settings(**overrides) -> Settings:
    values = dict(database_url="sqlite://", paystack_secret_key=WEBHOOK_SECRET)
    values.update(overrides)
    return Settings(**values)


def jollof(price="15.99", quantity=1, customizations=()) -> CartLine:
    return CartLine(
        food_item_id="jollof-01",
        name="Jollof Rice",
        price=Decimal(price),
        quantity=quantity,
        customizations=tuple(customizations),
    )


def extra(name: str, price: str) -> Customization:
    return Customization(id=name.lower().replace(" ", "-"), name=name, price=Decimal(price))


class FakeGateway(PaymentGateway):
    """Scripted gateway: every reference verifies as ``success`` unless told otherwise."""

    name = "fake"

    def __init__(self, secret: str = WEBHOOK_SECRET):
        self.secret = secret
        self.store: Optional[OrderStore] = None
        self.initialized: Dict[str, int] = {}
        self.metadata: Dict[str, dict] = {}
        self.statuses: Dict[str, str] = {}
        self.amounts: Dict[str, int] = {}
        self.reference_at_open: Dict[str, Optional[str]] = {}
        self.verify_calls: List[str] = []
        self.fail_initialize: Optional[Exception] = None
        self.fail_verify: Optional[Exception] = None
        self.yield_on_verify = False

    async def initialize(self, email, amount_minor, reference, metadata) -> Authorization:
        if self.fail_initialize is not None:
            raise self.fail_initialize
        self.initialized[reference] = amount_minor
        self.metadata[reference] = metadata
        return Authorization(
            reference=reference,
            authorization_url=f"https://checkout.test/{reference}",
            access_code=f"ac_{reference[-6:]}",
        )

    async def open_user_interaction(self, authorization: Authorization) -> UserInteraction:
        if self.store is not None:
            order = await self.store.get(self.metadata[authorization.reference]["order_id"])
            self.reference_at_open[authorization.reference] = order.payment_reference
        return UserInteraction(
            reference=authorization.reference,
            authorization_url=authorization.authorization_url,
            access_code=authorization.access_code,
        )

    async def verify_by_reference(self, reference: str) -> Verification:
        self.verify_calls.append(reference)
        if self.yield_on_verify:
            await asyncio.sleep(0)
        if self.fail_verify is not None:
            raise self.fail_verify
        status = self.statuses.get(reference, "success")
        amount = self.amounts.get(reference, self.initialized.get(reference))
        return Verification(
            reference=reference,
            verified=True,
            status=status,
            amount_minor=amount,
            payload={"reference": reference, "status": status, "amount": amount},
        )

    def verify_signature(self, raw_body: bytes, signature: str) -> bool:
        return bool(signature) and sign_payload(self.secret, raw_body) == signature


class YieldingStore(OrderStore):
    """Suspends after every read so concurrent commands interleave between read and write."""

    async def get(self, order_id):
        order = await super().get(order_id)
        await asyncio.sleep(0)
        return order


def build_engine(store_cls=OrderStore, **settings_overrides):
    settings = make_settings(**settings_overrides)
    session_factory = make_session_factory(settings.database_url)
    store = store_cls(session_factory)
    gateway = FakeGateway()
    gateway.store = store
    return OrderSyncEngine(store, gateway, settings), store, gateway


def webhook_body(event: str, reference: str) -> bytes:
    return json.dumps({"event": event, "data": {"reference": reference, "status": "success"}}).encode()


def signed(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return sign_payload(secret, body)


async def place(engine, customer=CUSTOMER, lines=None, **kwargs) -> str:
    return await engine.place_order(lines or [jollof()], ADDRESS, customer, **kwargs)


async def place_and_pay(engine, customer=CUSTOMER) -> str:
    order_id = await place(engine, customer)
    initiation = await engine.initiate_payment(order_id, email="ama@example.com")
    await engine.confirm_payment(initiation.reference)
    return order_id


async def drive_to(engine, order_id: str, *targets):
    order = None
    for target in targets:
        actor = DRIVER_X if target.value in ("picked_up", "delivered") else RESTAURANT
        order = await engine.advance_status(order_id, target, actor)
    return order
