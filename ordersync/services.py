from typing import Optional

from ordersync.config import get_settings
from ordersync.engine.sync_engine import OrderSyncEngine

_engine: Optional[OrderSyncEngine] = None


def build_engine() -> OrderSyncEngine:
    from ordersync.db.session import SessionLocal, init_db
    from ordersync.gateway.paystack import PaystackGateway
    from ordersync.store.order_store import OrderStore

    settings = get_settings()
    init_db()
    return OrderSyncEngine(OrderStore(SessionLocal), PaystackGateway(settings), settings)


def get_engine() -> OrderSyncEngine:
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def set_engine(engine: Optional[OrderSyncEngine]) -> None:
    global _engine
    _engine = engine
