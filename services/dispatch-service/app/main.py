import asyncio
import logging

from fastapi import Depends, FastAPI

from .config import DISPATCH_MODE, LOG_LEVEL, RABBIT_URL
from .errors import DispatchError, dispatch_error_handler
from .event_consumer import start_consumer_with_retry
from .expiry_worker import expiry_loop
from .middleware import RequestLoggingMiddleware
from .notifications import post_commit
from .payment_provider import provider
from .rabbitmq import publisher
from .routes import router
from .security import ROLE_OWNER, Principal, get_principal, require_role

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("dispatch-service")

app = FastAPI(title="Dispatch Service")
app.add_middleware(RequestLoggingMiddleware)
app.include_router(router)
app.add_exception_handler(DispatchError, dispatch_error_handler)

_stop_event = asyncio.Event()
_expiry_task = None
_consumer_task = None


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "service": "dispatch-service",
        "dispatch_mode": DISPATCH_MODE,
        "events_enabled": publisher.enabled,
    }


@app.get("/system/breakers")
async def breakers_status(principal: Principal = Depends(get_principal)):
    require_role(principal, [ROLE_OWNER])
    return {"breakers": [await provider.breaker.status()]}


@app.on_event("startup")
async def startup():
    global _expiry_task, _consumer_task
    _stop_event.clear()
    try:
        await publisher.connect()
    except Exception as e:
        logger.warning("RabbitMQ connect failed at startup; continuing: %s", e)

    if RABBIT_URL and DISPATCH_MODE == "async":
        _consumer_task = asyncio.create_task(start_consumer_with_retry(_stop_event))

    _expiry_task = asyncio.create_task(expiry_loop(_stop_event))


@app.on_event("shutdown")
async def shutdown():
    _stop_event.set()

    if _expiry_task:
        try:
            await _expiry_task
        except Exception:
            logger.exception("expiry worker stopped with an error")

    if _consumer_task:
        try:
            conn = await _consumer_task
            if conn and not conn.is_closed:
                await conn.close()
        except Exception:
            logger.exception("failed to close consumer connection")

    await post_commit.drain()

    try:
        await publisher.close()
    except Exception:
        logger.exception("failed to close publisher")
