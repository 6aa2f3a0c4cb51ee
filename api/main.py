"""FastAPI application for the credential engine."""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path

import fastapi
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from core.config import get_settings
from core.database import (
    create_engine,
    create_session_maker,
    dispose_engine,
    init_db,
)
from core.errors import (
    AnchorRejectedError,
    AnchorUnavailableError,
    CertificateNotFoundError,
    CredentialError,
    InvalidTransitionError,
    PersistenceConflictError,
    RenderError,
    RenderErrorReason,
    RevocationNotAllowedError,
    ValidationError,
)
from core.ledger import build_anchor_adapter
from core.logger import configure_logging
from core.ratelimit import limiter, rate_limit_exceeded_handler
from core.telemetry import RequestContextMiddleware, SecurityHeadersMiddleware
from routes import certificates_router, health_router, verification_router
from services.anchor_retry_service import anchor_retry_loop

configure_logging()
logger = logging.getLogger(__name__)


def credential_error_status(exc: CredentialError) -> int:
    """HTTP status for an engine failure."""
    if isinstance(exc, RenderError):
        return 404 if exc.reason == RenderErrorReason.TEMPLATE_NOT_FOUND else 422
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, CertificateNotFoundError):
        return 404
    if isinstance(exc, InvalidTransitionError | PersistenceConflictError):
        return 409
    if isinstance(exc, RevocationNotAllowedError):
        return 403
    if isinstance(exc, AnchorRejectedError):
        return 502
    if isinstance(exc, AnchorUnavailableError):
        return 503
    return 500


async def credential_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """Map engine failures to JSON error responses."""
    if not isinstance(exc, CredentialError):
        return await global_exception_handler(request, exc)

    status_code = credential_error_status(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log(
        "request.credential_error",
        extra={
            "code": exc.code,
            "status_code": status_code,
            "path": request.url.path,
            "method": request.method,
        },
    )

    content: dict = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, ValidationError) and exc.field:
        content["field"] = exc.field
    if isinstance(exc, RenderError):
        content["reason"] = exc.reason.value
        if exc.placeholders:
            content["placeholders"] = exc.placeholders

    return JSONResponse(status_code=status_code, content=content)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler for unhandled exceptions."""
    logger.exception(
        "unhandled.exception",
        extra={
            "exc_type": type(exc).__name__,
            "path": request.url.path,
            "method": request.method,
        },
    )
    return JSONResponse(
        status_code=500,
        content={
            "detail": "An unexpected error occurred. Please try again.",
            "code": "internal_error",
        },
    )


async def validation_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """Handler for request validation errors."""
    if not isinstance(exc, RequestValidationError):
        return JSONResponse(status_code=500, content={"detail": "Unexpected error"})

    logger.warning(
        "request.validation_error",
        extra={
            "path": request.url.path,
            "method": request.method,
            "error_count": len(exc.errors()),
        },
    )
    return JSONResponse(
        status_code=422,
        content={
            "detail": jsonable_errors(exc),
            "code": ValidationError.code,
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    """Pydantic errors without the raw ``ctx`` objects (not JSON serializable)."""
    return [
        {key: value for key, value in error.items() if key != "ctx"}
        for error in exc.errors()
    ]


async def _run_alembic_migrations() -> None:
    """Run Alembic migrations in a subprocess.

    psycopg2's connection pool cleanup deadlocks inside
    asyncio.to_thread when uvloop is the event loop.  Running
    migrations as a subprocess avoids the issue entirely.
    """
    import subprocess
    import sys

    cmd = [
        sys.executable,
        "-c",
        (
            "from alembic import command; "
            "from alembic.config import Config; "
            "command.upgrade(Config('alembic.ini'), 'head')"
        ),
    ]
    cwd = Path(__file__).parent

    result = await asyncio.to_thread(
        lambda: subprocess.run(
            cmd, cwd=cwd, capture_output=True, text=True, timeout=120
        )
    )

    if result.returncode != 0:
        stderr = result.stderr.strip()
        logger.error("migrations.failed", extra={"stderr": stderr})
        raise RuntimeError(f"Alembic migration failed:\n{stderr}")

    logger.info("migrations.complete")


@asynccontextmanager
async def lifespan(app: fastapi.FastAPI):
    """Create DB engine and ledger adapter at startup, dispose on shutdown."""
    settings = get_settings()
    app.state.engine = create_engine()
    app.state.session_maker = create_session_maker(app.state.engine)
    app.state.anchor_adapter = build_anchor_adapter(settings)

    app.state.init_done = False
    app.state.init_error = None

    try:
        async with asyncio.timeout(60):
            await init_db(app.state.engine)

        if settings.run_migrations_on_startup:
            async with asyncio.timeout(120):
                await _run_alembic_migrations()

        app.state.init_done = True
        logger.info(
            "init.complete",
            extra={
                "anchor_backend": settings.anchor_backend,
                "anchor_policy": settings.anchor_policy,
            },
        )
    except TimeoutError:
        logger.error(
            "init.timeout",
            extra={
                "init_done": app.state.init_done,
                "hint": "Startup hung; check DB connectivity and migration state",
            },
        )
        raise RuntimeError("Application startup timed out")
    except Exception as e:
        app.state.init_error = str(e)
        logger.error(
            "init.failed",
            extra={"error": str(e)},
            exc_info=True,
        )
        raise

    background_tasks: list[asyncio.Task] = []
    if settings.anchor_retry_enabled and settings.anchor_policy != "never":
        background_tasks.append(
            asyncio.create_task(
                anchor_retry_loop(
                    app.state.session_maker,
                    app.state.anchor_adapter,
                    settings.anchor_retry_interval_seconds,
                )
            )
        )

    try:
        yield
    finally:
        for task in background_tasks:
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("background.task.failed")

        await app.state.anchor_adapter.aclose()
        await dispose_engine(app.state.engine)


_settings = get_settings()

app = fastapi.FastAPI(
    title="Credential Engine API",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if _settings.enable_docs or _settings.debug else None,
    redoc_url="/redoc" if _settings.enable_docs or _settings.debug else None,
    openapi_url=("/openapi.json" if _settings.enable_docs or _settings.debug else None),
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(CredentialError, credential_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

app.add_middleware(GZipMiddleware, minimum_size=500)
app.add_middleware(SecurityHeadersMiddleware)
# Outermost, so every log line for the request carries its request_id
app.add_middleware(RequestContextMiddleware)

app.include_router(health_router)
app.include_router(certificates_router)
app.include_router(verification_router)
