"""Liveness, readiness and operational health endpoints."""

import logging

from fastapi import APIRouter, HTTPException, Request
from starlette import status

from core.database import check_db_connection, comprehensive_health_check
from core.ratelimit import limiter, verify_limit
from core.telemetry import SERVICE_NAME
from models import AnchorState
from repositories.certificate_repository import CertificateRepository
from schemas import DetailedHealthResponse, HealthResponse, PoolStatusResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _pending_anchor_backlog(request: Request) -> int | None:
    """Certificates still waiting on a deferred anchor; None if unreadable."""
    try:
        async with request.app.state.session_maker() as session:
            counts = await CertificateRepository(session).count_by_anchor_state()
    except Exception:
        logger.warning("health.anchor_backlog.failed", exc_info=True)
        return None
    return counts.get(AnchorState.PENDING_RETRY, 0)


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Liveness: the process is up and serving requests."""
    return HealthResponse(status="healthy", service=SERVICE_NAME)


@router.get("/health/detailed", response_model=DetailedHealthResponse)
@limiter.limit(verify_limit)
async def health_detailed(request: Request) -> DetailedHealthResponse:
    """Component status for operators.

    Reports database reachability, the configured ledger backend, how many
    certificates are queued for a deferred anchor, and pool metrics.
    Always returns 200; read the individual fields.
    """
    result = await comprehensive_health_check(request.app.state.engine)

    pool_status = None
    if result["pool"] is not None:
        pool_status = PoolStatusResponse(**result["pool"]._asdict())

    adapter = getattr(request.app.state, "anchor_adapter", None)
    pending = await _pending_anchor_backlog(request) if result["database"] else None

    return DetailedHealthResponse(
        status="healthy" if result["database"] else "unhealthy",
        service=SERVICE_NAME,
        database=result["database"],
        ledger_backend=getattr(adapter, "backend", "none"),
        pending_anchors=pending,
        pool=pool_status,
    )


@router.get(
    "/ready",
    response_model=HealthResponse,
    responses={
        503: {
            "description": "Startup incomplete or failed, or database unreachable",
            "content": {
                "application/json": {"example": {"detail": "Database unavailable"}}
            },
        }
    },
)
@limiter.limit(verify_limit)
async def ready(request: Request) -> HealthResponse:
    """Readiness: startup finished and the certificate store answers."""
    init_error = getattr(request.app.state, "init_error", None)
    if init_error:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Initialization failed: {init_error}",
        )

    if not getattr(request.app.state, "init_done", False):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Starting",
        )

    try:
        await check_db_connection(request.app.state.engine)
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        ) from e

    return HealthResponse(status="ready", service=SERVICE_NAME)
