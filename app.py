from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from redis.exceptions import RedisError
from routers.signaling import signaling_router
from schemas.signaling import HealthResponse
from backend import SignalBackend, get_signal_backend
from constants import ROOM_TTL_SECONDS, SWEEP_INTERVAL_SECONDS
from logging_config import get_logger, setup_logging
import asyncio
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


async def sweep_expired_rooms(backend: SignalBackend, interval: int):
    """Background task removing rooms nobody has touched for longer than the TTL."""
    logger.info(f"Starting room expiry sweep every {interval}s (TTL {ROOM_TTL_SECONDS}s)")
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                removed = backend.sweep_expired()
                if removed:
                    logger.info(f"Expiry sweep removed {removed} idle rooms")
            except Exception as e:
                logger.error(f"Error during room expiry sweep: {e}", exc_info=True)
    except asyncio.CancelledError:
        logger.info("Room expiry sweep cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    backend = get_signal_backend()
    logger.info(f"Signaling relay using {backend.name} backend")

    sweep_task = None
    if ROOM_TTL_SECONDS > 0 and not backend.expires_natively:
        sweep_task = asyncio.create_task(sweep_expired_rooms(backend, SWEEP_INTERVAL_SECONDS))
    yield
    if sweep_task:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
        logger.debug("Stopped room expiry sweep")


app = FastAPI(lifespan=lifespan)

# Browser peers call the relay cross-origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(signaling_router)


@app.exception_handler(RequestValidationError)
async def invalid_request_handler(request: Request, exc: RequestValidationError):
    # Unparseable or wrongly typed bodies are reported like any other missing field
    logger.warning(f"Invalid request on {request.method} {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=400, content={"detail": "Invalid request body"})


@app.exception_handler(RedisError)
async def signal_store_error_handler(request: Request, exc: RedisError):
    logger.error(f"Signal store error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=503, content={"detail": "Signal store unavailable"})


@app.get("/health", response_model=HealthResponse)
async def health(backend: SignalBackend = Depends(get_signal_backend)):
    return HealthResponse(status="ok", backend=backend.name)


logger.info("FastAPI application initialized")
