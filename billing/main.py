import logging
import sys
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from billing.api.router import api_router
from billing.config import settings
from billing.core.database import init_db

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"

# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = ("stripe", "apscheduler", "sqlalchemy.engine", "uvicorn.access")

# Paths whose every request is logged, not only failures
AUDITED_PREFIXES = ("/api/v1/webhooks", "/api/v1/internal")


def setup_logging() -> None:
    """Configure application logging."""
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
        stream=sys.stdout,
        force=True,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    from billing.services.scheduler import scheduler

    setup_logging()
    logger.info(f"Subscription billing API starting up (region={settings.billing_region})")
    if not settings.stripe_enabled:
        logger.warning("STRIPE_SECRET_KEY is not set; provider calls will fail")
    if not settings.internal_service_token:
        logger.warning("INTERNAL_SERVICE_TOKEN is not set; /internal endpoints will return 503")
    if settings.debug:
        await init_db()

    scheduler.start()
    try:
        yield
    finally:
        scheduler.stop()
        logger.info("Subscription billing API shutting down")


app = FastAPI(
    title="Subscription Billing API",
    description="Subscription lifecycle and payment reconciliation",
    version="0.1.0",
    lifespan=lifespan,
)

# The gateway terminates TLS and forwards identity headers
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=["*"])

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log failed requests plus every webhook and internal call, with timing."""
    if request.method == "OPTIONS" or request.url.path == "/health":
        return await call_next(request)

    started = time.perf_counter()
    response = await call_next(request)

    path = request.url.path
    if response.status_code >= 400 or path.startswith(AUDITED_PREFIXES):
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(f"{request.method} {path} -> {response.status_code} ({elapsed_ms:.0f}ms)")

    return response


app.include_router(api_router)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
