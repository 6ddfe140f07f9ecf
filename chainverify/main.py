"""
FastAPI entry point
"""
import logging
import time
import uuid
from contextlib import asynccontextmanager
from fastapi import FastAPI, Response, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration

from chainverify import __version__
from chainverify.config import get_settings
from chainverify.database import AsyncSessionLocal, init_db
from chainverify.routers import admin_payments
from chainverify.services.payment_methods import UnsupportedPaymentMethodError
from chainverify.services.payment_state import PaymentStateError
from chainverify.services.payment_store import PaymentNotFoundError
from chainverify.services.payment_verification import build_verification_service
from chainverify.utils.request_context import request_id_ctx_var, RequestIdFilter, JsonFormatter
from chainverify.utils.metrics import REQUEST_COUNT, REQUEST_LATENCY, IN_PROGRESS, get_route_name

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle"""
    settings.validate_secrets()
    await init_db()

    service = build_verification_service(settings, AsyncSessionLocal)
    app.state.verification_service = service
    if settings.verification_scheduler_enabled:
        service.start()
    else:
        logger.info("Embedded verification scheduler disabled; expecting Celery beat")

    yield

    await service.aclose()


app = FastAPI(
    title="ChainVerify API",
    description="On-chain payment verification service",
    version=__version__,
    lifespan=lifespan,
)


def _error_response(status_code: int, message: str, code=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "status": "error",
            "message": message,
            "code": code if code is not None else status_code,
        },
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return _error_response(exc.status_code, exc.detail)


@app.exception_handler(PaymentNotFoundError)
async def payment_not_found_handler(request: Request, exc: PaymentNotFoundError):
    return _error_response(status.HTTP_404_NOT_FOUND, str(exc))


@app.exception_handler(PaymentStateError)
async def payment_state_handler(request: Request, exc: PaymentStateError):
    logger.warning(f"Rejected payment state change: {exc.message}")
    return _error_response(status.HTTP_409_CONFLICT, exc.message, exc.error_code)


@app.exception_handler(UnsupportedPaymentMethodError)
async def unsupported_method_handler(request: Request, exc: UnsupportedPaymentMethodError):
    return _error_response(status.HTTP_400_BAD_REQUEST, str(exc))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "status": "error",
            "message": "Validation Error",
            "details": exc.errors(),
            "code": 422
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {exc}", exc_info=True)
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error")


@app.middleware("http")
async def request_context_middleware(request, call_next):
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    request.state.request_id = request_id
    token = request_id_ctx_var.set(request_id)
    response = None
    start = time.perf_counter()
    if settings.metrics_enabled:
        IN_PROGRESS.inc()

    try:
        response = await call_next(request)
        return response
    finally:
        duration = time.perf_counter() - start
        path = get_route_name(request.scope)
        status_code = response.status_code if response else 500
        if settings.metrics_enabled:
            REQUEST_COUNT.labels(request.method, path, str(status_code)).inc()
            REQUEST_LATENCY.labels(request.method, path).observe(duration)
            IN_PROGRESS.dec()
        request_id_ctx_var.reset(token)
        if response is not None:
            response.headers["X-Request-ID"] = request_id


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "X-Request-ID",
        "X-Admin-Token",
    ],
    expose_headers=["X-Request-ID"],
)

# ========== API v1 ==========

API_V1_PREFIX = "/api/v1"

app.include_router(
    admin_payments.router,
    prefix=f"{API_V1_PREFIX}/admin/crypto-payments",
    tags=["V1-crypto-payments-admin"],
)


@app.get("/api/v1/health")
async def health_check():
    """
    Health check

    Returns:
        service status and whether the embedded scheduler is running
    """
    service = getattr(app.state, "verification_service", None)
    return {
        "status": "ok",
        "service": "chainverify",
        "version": __version__,
        "api_version": "v1",
        "scheduler_running": bool(service and service.is_running),
    }


@app.get("/metrics")
async def metrics():
    """Prometheus metrics"""
    if not settings.metrics_enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestIdFilter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.setLevel(settings.log_level)
        uvicorn_logger.propagate = False


def init_sentry() -> None:
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            integrations=[FastApiIntegration()],
            traces_sample_rate=settings.sentry_traces_sample_rate,
            profiles_sample_rate=settings.sentry_profiles_sample_rate,
        )


configure_logging()
init_sentry()
