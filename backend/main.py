"""
Farm Shop API - FastAPI Application

Google sign-in, product catalog, Stripe one-time checkout and
webhook-driven order fulfillment with two-phase inventory reservations.
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from database import async_session
from domain.errors import DomainError
from domain.responses import error_response
from routes import admin, auth, health, orders, products, stripe_webhooks, users
from services.email_sender import LoggingEmailSender, SmtpEmailSender
from services.identity_provider import GoogleIdentityProvider
from services.notification_service import NotificationDispatcher
from services.payment_provider import StripePaymentProvider
from services.reservation_sweeper import ReservationSweeper

# ── Logging ─────────────────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ── External clients ────────────────────────────────────────────────

def _build_email_sender():
    if not settings.smtp_host:
        return LoggingEmailSender()
    return SmtpEmailSender(
        host=settings.smtp_host,
        port=settings.smtp_port,
        sender=settings.email_from,
        username=settings.smtp_username,
        password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
    )


payment_provider = StripePaymentProvider(
    api_key=settings.stripe_secret_key,
    webhook_secret=settings.stripe_webhook_secret,
    tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
)
identity_provider = GoogleIdentityProvider(
    client_id=settings.google_client_id,
    client_secret=settings.google_client_secret,
    redirect_uri=settings.google_redirect_uri,
)
notification_dispatcher = NotificationDispatcher(
    async_session,
    _build_email_sender(),
    max_attempts=settings.notification_max_attempts,
    base_delay_seconds=settings.notification_backoff_base_seconds,
    max_delay_seconds=settings.notification_backoff_max_seconds,
    poll_seconds=settings.notification_poll_seconds,
)
reservation_sweeper = ReservationSweeper(
    async_session,
    payment_provider,
    ttl_minutes=settings.reservation_ttl_minutes,
    interval_seconds=settings.reservation_sweep_seconds,
)


# ── Lifespan ────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: create DB tables, start background workers. Shutdown: stop them."""
    # Ensure data/ directory exists for SQLite
    os.makedirs("data", exist_ok=True)

    settings.validate_production_settings()

    from database import init_db
    await init_db()

    await notification_dispatcher.start()
    await reservation_sweeper.start()

    yield  # app runs here

    await reservation_sweeper.stop()
    await notification_dispatcher.stop()

    from services.async_executor import shutdown_executor
    shutdown_executor()

    from database import dispose_db
    await dispose_db()

    logger.info("Shutting down")


# ── App Factory ─────────────────────────────────────────────────────

app = FastAPI(
    title="Farm Shop API",
    description="Farm produce store: Google sign-in, Stripe checkout, inventory-safe order fulfillment",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.payment_provider = payment_provider
app.state.identity_provider = identity_provider
app.state.notification_dispatcher = notification_dispatcher
app.state.reservation_sweeper = reservation_sweeper

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routes ──────────────────────────────────────────────────────────

app.include_router(health.router)
app.include_router(auth.router)
app.include_router(users.router)
app.include_router(products.router)
app.include_router(orders.router)
app.include_router(stripe_webhooks.router)
app.include_router(admin.router)


# ── Exception Handlers ──────────────────────────────────────────────

_HTTP_ERROR_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    429: "rate_limited",
    500: "server_misconfigured",
    502: "bad_gateway",
    503: "service_unavailable",
}


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """
    Catch-all for unhandled exceptions.

    Never return raw exception details to clients; the full traceback is
    logged server-side.
    """
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=error_response("internal_server_error", "Internal server error"),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc: HTTPException):
    """
    Standardize HTTPException responses for frontend consumers.

    Keeps the original HTTP status code, but wraps the payload.
    """
    headers = getattr(exc, "headers", None)

    if isinstance(exc, DomainError):
        return JSONResponse(
            status_code=exc.status_code,
            content=error_response(exc.code, exc.message, exc.details),
            headers=headers,
        )

    detail = exc.detail
    message = detail if isinstance(detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(
            _HTTP_ERROR_CODES.get(exc.status_code, "http_error"),
            message,
            detail if not isinstance(detail, str) else None,
        ),
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content=error_response("request_validation", "Invalid request", jsonable_errors(exc)),
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]


# ── Entrypoint ──────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")
