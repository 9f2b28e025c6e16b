import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from .config import settings
from .database import SessionLocal, init_db
from .redis_client import redis_client
from .routers import bookings, slots
from .services.slots.exceptions import CapacityError, TransientStoreError, ValidationError

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info(f"Pawbook API started (timezone={settings.timezone})")
    yield


app = FastAPI(title="Pawbook Booking API", lifespan=lifespan)

app.include_router(slots.router)
app.include_router(bookings.router)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(CapacityError)
async def capacity_error_handler(request: Request, exc: CapacityError):
    logger.info(f"Booking rejected ({exc.reason}): {exc}")
    return JSONResponse(
        status_code=409,
        content={
            "detail": str(exc),
            "reason": exc.reason,
            "requested": exc.requested,
            "remaining_capacity": exc.remaining,
            "other_staff_potentially_available": exc.other_staff_potentially_available,
        },
    )


@app.exception_handler(TransientStoreError)
async def transient_error_handler(request: Request, exc: TransientStoreError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.get("/health")
def health():
    db_ok = True
    with SessionLocal() as db:
        try:
            db.execute(text("SELECT 1"))
        except OperationalError as e:
            logger.error(f"Health check: database unavailable: {e}")
            db_ok = False

    redis_state = "disabled"
    if redis_client is not None:
        try:
            redis_state = "ok" if redis_client.ping() else "down"
        except RedisError as e:
            logger.error(f"Health check: Redis unavailable: {e}")
            redis_state = "down"

    return {"database": db_ok, "redis": redis_state}
