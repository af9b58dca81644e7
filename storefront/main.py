"""
Main Application - FastAPI application setup.
"""

import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.sessions import SessionMiddleware
from starlette.routing import Match

from storefront.api.dependencies import Storefront
from storefront.api.routes import router, shop_router, single_router
from storefront.config import Settings, get_settings
from storefront.db.session import create_engine
from storefront.exceptions import (
    CaptureFailedError,
    DownloadNotAuthorizedError,
    InvalidAmountError,
    InvalidRequestError,
    NotFoundError,
    PersistenceError,
    ProductFileMissingError,
    ProductGoneError,
    ProductNotFoundError,
    StorefrontError,
    TransactionNotFoundError,
    UpstreamError,
)
from storefront.models.api import ErrorResponse
from storefront.observability import (
    get_logger,
    log_context,
    metrics,
    setup_logging,
    setup_tracing,
)
from storefront.observability.tracing import instrument_fastapi, instrument_sqlalchemy
from storefront.services.catalog import CatalogStore
from storefront.services.download import DownloadGate
from storefront.services.ledger import TransactionLedger
from storefront.services.notifications import ReceiptNotifier
from storefront.services.paypal_provider import PayPalProvider
from storefront.services.purchase import PurchaseAuthorizationEngine
from storefront.services.sessions import GrantStore, InMemoryGrantStore, RedisGrantStore

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


def build_storefront(settings: Settings) -> Storefront:
    """Wire every component from settings. Nothing touches disk or network yet."""
    catalog = CatalogStore(settings.products_path)

    engine = create_engine(settings.database_url, echo=settings.log_level.upper() == "DEBUG")
    instrument_sqlalchemy(engine)
    ledger = TransactionLedger(engine, settings.database_url)

    provider = PayPalProvider(
        client_id=settings.paypal_client_id,
        client_secret=settings.paypal_client_secret,
        api_base=settings.paypal_api_base,
        timeout_seconds=settings.paypal_timeout_seconds,
        token_safety_margin_seconds=settings.paypal_token_safety_margin_seconds,
    )

    grant_store: GrantStore
    if settings.session_backend == "redis":
        grant_store = RedisGrantStore.from_url(settings.redis_url, settings.session_max_age)
    else:
        grant_store = InMemoryGrantStore(
            settings.session_max_age, max_entries=settings.session_memory_max_grants
        )

    notifier = ReceiptNotifier(
        mode=settings.app_mode,
        sender=settings.email_from,
        subject=settings.email_subject,
        enabled=settings.email_enabled,
        use_sendmail=settings.email_use_sendmail,
        sendmail_path=settings.sendmail_path,
        smtp_host=settings.email_host,
        smtp_port=settings.email_port,
        smtp_user=settings.email_user,
        smtp_password=settings.email_pass,
        site_title=settings.site_title,
        footer_domain=settings.footer_domain,
    )

    purchase_engine = PurchaseAuthorizationEngine(
        catalog=catalog,
        provider=provider,
        ledger=ledger,
        notifier=notifier,
        mode=settings.app_mode,
        single_product_id=settings.single_product_id,
        store_currency=settings.store_currency,
    )

    gate = DownloadGate(
        catalog=catalog,
        ledger=ledger,
        downloads_dir=settings.downloads_dir,
        mode=settings.app_mode,
        single_product_id=settings.single_product_id,
    )

    return Storefront(
        settings=settings,
        catalog=catalog,
        ledger=ledger,
        provider=provider,
        grant_store=grant_store,
        notifier=notifier,
        engine=purchase_engine,
        gate=gate,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events. A startup failure (invalid
    catalog, missing single product, unwritable ledger) stops the server.
    """
    storefront: Storefront = app.state.storefront
    settings = storefront.settings

    # Startup
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        mode=settings.app_mode,
        paypal_mode=settings.paypal_api_mode,
        session_backend=settings.session_backend,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )
    await storefront.startup()

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await storefront.shutdown()
    logger.info("storefront_resources_closed")


# ============================================================================
# Error Handlers
# ============================================================================

_NOT_FOUND_MESSAGES: dict[type[NotFoundError], str] = {
    ProductNotFoundError: "Product not found.",
    TransactionNotFoundError: "No matching purchase found.",
    ProductGoneError: "Product configuration not found.",
    ProductFileMissingError: "File not found or an error occurred.",
}


def _error_response(
    status_code: int, message: str, redirect: str | None = None
) -> JSONResponse:
    body = ErrorResponse(message=message, redirect=redirect)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


def error_response_for(exc: StorefrontError) -> JSONResponse:
    """Map a domain error to its status code and client-safe message."""
    if isinstance(exc, InvalidRequestError):
        return _error_response(status.HTTP_400_BAD_REQUEST, exc.message)
    if isinstance(exc, NotFoundError):
        message = _NOT_FOUND_MESSAGES.get(type(exc), "Not found.")
        return _error_response(status.HTTP_404_NOT_FOUND, message)
    if isinstance(exc, InvalidAmountError):
        return _error_response(status.HTTP_400_BAD_REQUEST, "Invalid payment amount.")
    if isinstance(exc, DownloadNotAuthorizedError):
        return _error_response(
            status.HTTP_403_FORBIDDEN,
            "Download not authorized. Please verify your purchase.",
            redirect=exc.redirect_to,
        )
    if isinstance(exc, CaptureFailedError):
        return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, exc.message)
    if isinstance(exc, UpstreamError):
        return _error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to capture payment."
        )
    if isinstance(exc, PersistenceError):
        return _error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Your payment was received but could not be recorded. "
            "Please contact support with your PayPal order ID.",
        )
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error.")


async def storefront_exception_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    """Render domain errors as `{success: false, message}`."""
    response = error_response_for(exc)
    if response.status_code >= 500:
        metrics.record_error(type(exc).__name__, endpoint_label(request))
    logger.info(
        "request_rejected",
        path=request.url.path,
        method=request.method,
        status_code=response.status_code,
        error_type=type(exc).__name__,
    )
    return response


def _validation_message(errors: list[dict]) -> str:
    """Human-readable summary of the first validation error."""
    if not errors:
        return "Invalid request."
    error = errors[0]
    ctx = error.get("ctx") or {}
    if error.get("type") == "value_error" and "error" in ctx:
        return str(ctx["error"])
    loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query")]
    field = ".".join(loc)
    return f"{field}: {error.get('msg')}" if field else str(error.get("msg"))


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Log detailed validation errors and answer 400."""
    errors = exc.errors()

    # Sanitize errors for JSON serialization (ctx may contain non-serializable objects)
    sanitized_errors = []
    for error in errors:
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return _error_response(status.HTTP_400_BAD_REQUEST, _validation_message(list(errors)))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort: one failing request must not take the process down."""
    metrics.record_error(type(exc).__name__, endpoint_label(request))
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error.")


# ============================================================================
# Middleware
# ============================================================================


# Proxy headers middleware - trust X-Forwarded-* headers from nginx
class ProxyHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to handle X-Forwarded-* headers from reverse proxy."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        forwarded_proto = request.headers.get("X-Forwarded-Proto")
        if forwarded_proto:
            request.scope["scheme"] = forwarded_proto

        forwarded_host = request.headers.get("X-Forwarded-Host")
        if forwarded_host:
            headers = [(k, v) for k, v in request.scope["headers"] if k != b"host"]
            headers.append((b"host", forwarded_host.encode("latin-1")))
            request.scope["headers"] = headers

        response = await call_next(request)
        return response


UNMATCHED_ENDPOINT = "unmatched"


def endpoint_label(request: Request) -> str:
    """Route template for metric labels, so path parameters do not mint new series."""
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match != Match.NONE:
            return getattr(route, "path", UNMATCHED_ENDPOINT)
    return UNMATCHED_ENDPOINT


async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    path = request.url.path

    # Track in-progress requests
    endpoint = endpoint_label(request)
    method = request.method
    metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()

    with log_context(request_id=request_id):
        logger.info("request_started", method=method, path=path)

        try:
            response = await call_next(request)
            duration = time.time() - start_time

            metrics.record_http_request(endpoint, method, response.status_code, duration)

            logger.info(
                "request_completed",
                method=method,
                path=path,
                status_code=response.status_code,
                duration_seconds=duration,
            )

            response.headers["X-Request-ID"] = request_id
            return response
        except Exception as e:
            duration = time.time() - start_time
            metrics.record_http_request(endpoint, method, 500, duration)
            metrics.record_error(type(e).__name__, "http_request")

            logger.error(
                "request_failed",
                method=method,
                path=path,
                error=str(e),
                duration_seconds=duration,
                exc_info=True,
            )
            raise
        finally:
            metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()


# ============================================================================
# Application Factory
# ============================================================================


def create_app(settings: Settings | None = None, storefront: Storefront | None = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Configuration; the process-wide settings when omitted
        storefront: Pre-wired components (tests); built from settings when omitted
    """
    settings = settings or get_settings()
    storefront = storefront or build_storefront(settings)

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description=settings.api_description,
        lifespan=lifespan,
    )
    app.state.storefront = storefront

    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StorefrontError, storefront_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # Setup tracing
    setup_tracing()
    instrument_fastapi(app)

    # Session cookie holds only an opaque id; grants live in the grant store
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        session_cookie=settings.session_cookie_name,
        max_age=settings.session_max_age,
        same_site="lax",
        https_only=settings.session_https_only,
    )
    app.add_middleware(ProxyHeadersMiddleware)
    app.middleware("http")(logging_middleware)

    # Register routes
    app.include_router(router)
    if settings.is_shop_mode:
        app.include_router(shop_router)
    else:
        app.include_router(single_router)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint."""
        return {
            "service": settings.api_title,
            "version": settings.api_version,
            "mode": settings.app_mode,
            "status": "running",
        }

    if settings.metrics_enabled:

        @app.get("/metrics")
        async def metrics_endpoint() -> Response:
            """
            Prometheus metrics endpoint.

            Returns metrics in Prometheus text format.
            """
            return PlainTextResponse(generate_latest())

    return app


app = create_app()


def main() -> None:
    """Run the storefront with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "storefront.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
        proxy_headers=True,
    )


if __name__ == "__main__":
    main()
