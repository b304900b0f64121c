import logging
import asyncio
import socket

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from temporalio.client import Client

from ordersync.api.routes import router
from ordersync.config import configure_logging, get_settings
from ordersync.db.dump import render_tables
from ordersync.db.session import SessionLocal
from ordersync.errors import (
    ActorNotAllowedError,
    AlreadyAssignedError,
    AuthError,
    ConditionFailed,
    GatewayError,
    InvalidSignatureError,
    InvalidTransitionError,
    NotFoundError,
    OrderSyncError,
    StoreWriteError,
    ValidationError,
)

configure_logging()
logger = logging.getLogger("main")

app = FastAPI(title="ordersync")
app.state.client = None
app.include_router(router)

ERROR_STATUS = [
    (ActorNotAllowedError, 403),
    (AuthError, 401),
    (InvalidSignatureError, 401),
    (ValidationError, 422),
    (NotFoundError, 404),
    (AlreadyAssignedError, 409),
    (InvalidTransitionError, 409),
    (ConditionFailed, 409),
    (GatewayError, 502),
    (StoreWriteError, 503),
]


def status_for(error: OrderSyncError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


@app.exception_handler(OrderSyncError)
async def order_sync_error_handler(request: Request, exc: OrderSyncError):
    status_code = status_for(exc)
    if isinstance(exc, InvalidTransitionError):
        logger.error(f"[{request.url.path}] rejected transition: {exc.message}")
    elif status_code >= 500:
        logger.error(f"[{request.url.path}] {type(exc).__name__}: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "error": type(exc).__name__, "retryable": exc.retryable},
    )


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


async def wait_for_temporal(host="localhost", port=7233, timeout=30):
    for i in range(timeout):
        try:
            with socket.create_connection((host, port), timeout=1):
                logger.info(f"Temporal server is ready (attempt {i+1})")
                return True
        except OSError:
            await asyncio.sleep(1)
    return False


@app.post("/start-server", tags=["System"])
async def connect_temporal():
    settings = get_settings()
    host, _, port = settings.temporal_address.partition(":")
    logger.info(f"Waiting for Temporal server at {settings.temporal_address}...")
    ready = await wait_for_temporal(host, int(port or 7233))
    if not ready:
        raise HTTPException(status_code=503, detail="Temporal server did not start in time")

    try:
        app.state.client = await Client.connect(settings.temporal_address)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Startup failed: {str(e)}")
    logger.info("Temporal client connected.")
    return {"status": "Temporal client connected", "task_queue": settings.payment_task_queue}


@app.get("/db-dump", tags=["Database"])
async def db_dump(db: Session = Depends(get_db)):
    print(render_tables(db))
    return {"status": "DB dump printed to terminal"}


@app.get("/", tags=["System"])
async def root():
    return {"status": "ok"}
