"""Certificate issuance, lifecycle and document endpoints.

Engine failures (validation, render, anchor, conflict) propagate as
CredentialError subclasses and are mapped to HTTP responses in main.py.
"""

from fastapi import APIRouter, HTTPException, Path, Query, Request, Response
from fastapi.responses import HTMLResponse

from core.config import get_settings
from core.database import DbSession
from core.ledger import LedgerDep
from core.ratelimit import issue_limit, limiter
from rendering.certificates import DocumentExportUnavailableError
from schemas import (
    CertificateData,
    CertificateListResponse,
    IssueCertificateRequest,
    RevokeCertificateRequest,
    VerificationResult,
)
from services.issuance_service import (
    IssueCertificateCommand,
    export_certificate_pdf,
    get_certificate,
    issue_certificate,
    list_certificates,
    render_certificate_document,
    revoke_certificate,
)
from services.verification_service import verify_by_id

router = APIRouter(prefix="/api/certificates", tags=["certificates"])

CertificateId = Path(min_length=1, max_length=36)


def _get_cache_control() -> str:
    """Get appropriate Cache-Control header value based on environment."""
    settings = get_settings()
    if settings.environment.lower() == "development":
        return "no-store"
    return "private, max-age=300"


# --- Collection endpoints ---


@router.post(
    "",
    response_model=CertificateData,
    status_code=201,
    responses={
        404: {"description": "Template not found"},
        409: {"description": "Identifier conflict"},
        422: {"description": "Invalid request or unresolved placeholders"},
        502: {"description": "Ledger rejected the anchor"},
    },
)
@limiter.limit(issue_limit)
async def issue_certificate_endpoint(
    request: Request,
    body: IssueCertificateRequest,
    db: DbSession,
    ledger: LedgerDep,
) -> CertificateData:
    """Issue a certificate and optionally anchor its fingerprint."""
    command = IssueCertificateCommand(
        issuer_id=body.issuer_id,
        recipient_id=body.recipient_id,
        title=body.title,
        description=body.description,
        issue_date=body.issue_date,
        expiry_date=body.expiry_date,
        template_id=body.template_id,
        template_version=body.template_version,
        image_url=body.image_url,
        metadata=body.metadata.as_dict(),
        anchor=body.anchor,
    )
    return await issue_certificate(db, ledger, command)


@router.get("", response_model=CertificateListResponse)
async def list_certificates_endpoint(
    db: DbSession,
    recipient_id: str | None = Query(default=None, max_length=64),
    issuer_id: str | None = Query(default=None, max_length=64),
    limit: int = Query(default=100, ge=1, le=500),
) -> CertificateListResponse:
    """List certificates for one recipient or one issuer."""
    certificates = await list_certificates(
        db, recipient_id=recipient_id, issuer_id=issuer_id, limit=limit
    )
    return CertificateListResponse(
        certificates=certificates, count=len(certificates)
    )


# --- Parameterized routes ---


@router.get(
    "/{certificate_id}",
    response_model=CertificateData,
    responses={404: {"description": "Certificate not found"}},
)
async def get_certificate_endpoint(
    db: DbSession,
    certificate_id: str = CertificateId,
) -> CertificateData:
    return await get_certificate(db, certificate_id)


@router.post(
    "/{certificate_id}/revoke",
    response_model=CertificateData,
    responses={
        403: {"description": "Actor may not revoke this certificate"},
        404: {"description": "Certificate not found"},
        409: {"description": "Certificate is not in issued status"},
    },
)
async def revoke_certificate_endpoint(
    body: RevokeCertificateRequest,
    db: DbSession,
    certificate_id: str = CertificateId,
) -> CertificateData:
    """Revoke an issued certificate. Irreversible."""
    return await revoke_certificate(
        db, certificate_id, reason=body.reason, revoked_by=body.revoked_by
    )


@router.get("/{certificate_id}/verify", response_model=VerificationResult)
async def verify_certificate_endpoint(
    db: DbSession,
    ledger: LedgerDep,
    certificate_id: str = CertificateId,
) -> VerificationResult:
    """Verify a certificate by id. Unknown ids yield a not_found verdict."""
    return await verify_by_id(db, ledger, certificate_id)


@router.get(
    "/{certificate_id}/document",
    response_class=HTMLResponse,
    responses={404: {"description": "Certificate or template not found"}},
)
async def get_certificate_document_endpoint(
    db: DbSession,
    certificate_id: str = CertificateId,
) -> HTMLResponse:
    """Rendered certificate document (HTML)."""
    document = await render_certificate_document(db, certificate_id)
    return HTMLResponse(
        content=document,
        headers={"Cache-Control": _get_cache_control()},
    )


@router.get(
    "/{certificate_id}/pdf",
    responses={
        200: {"content": {"application/pdf": {}}, "description": "PDF certificate"},
        404: {"description": "Certificate not found"},
        501: {"description": "PDF generation not available"},
    },
)
async def get_certificate_pdf_endpoint(
    db: DbSession,
    certificate_id: str = CertificateId,
) -> Response:
    """Certificate as a PDF document."""
    try:
        pdf_content = await export_certificate_pdf(db, certificate_id)
    except DocumentExportUnavailableError as e:
        raise HTTPException(status_code=501, detail=str(e)) from e

    return Response(
        content=pdf_content,
        media_type="application/pdf",
        headers={
            "Content-Disposition": (
                f'attachment; filename="certificate-{certificate_id}.pdf"'
            ),
            "Cache-Control": _get_cache_control(),
        },
    )
