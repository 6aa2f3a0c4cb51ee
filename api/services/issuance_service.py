"""Certificate issuance and lifecycle.

This module handles:
- Issuing certificates (validate, render, fingerprint, anchor, persist)
- Revoking certificates
- Reading certificates with their issuer, recipient and template
- Re-rendering the certificate document (HTML and PDF)

Routes should delegate all certificate business logic to this module.
Functions here flush but never commit; the caller owns the transaction.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from core.config import AnchorPolicy, Settings, get_settings
from core.errors import (
    AnchorRejectedError,
    AnchorUnavailableError,
    CertificateNotFoundError,
    InvalidTransitionError,
    PersistenceConflictError,
    RenderError,
    RevocationNotAllowedError,
    ValidationError,
)
from core.ledger import AnchorAdapter, log_orphaned_anchor
from models import (
    ISSUING_ROLES,
    AnchorState,
    Certificate,
    CertificateStatus,
    Template,
    User,
    UserRole,
    today,
    utcnow,
)
from rendering.certificates import html_to_pdf, render_certificate
from repositories.certificate_repository import CertificateRepository
from repositories.template_repository import TemplateRepository
from repositories.user_repository import UserRepository
from schemas import CertificateData
from services.certificate_content import (
    to_blueprint,
    to_canonical_fields,
    to_certificate_data,
    to_render_context,
)
from services.fingerprint_service import fingerprint
from services.serial_numbers import generate_serial_number

logger = logging.getLogger(__name__)

# One retry with fresh identifiers after an insert conflict
MAX_ISSUE_ATTEMPTS = 2
MAX_SERIAL_ALLOCATION_ATTEMPTS = 5


@dataclass(frozen=True)
class IssueCertificateCommand:
    issuer_id: str
    recipient_id: str
    title: str
    description: str = ""
    issue_date: date | None = None
    expiry_date: date | None = None
    template_id: str | None = None
    template_version: int | None = None
    image_url: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    anchor: bool = False


@dataclass(frozen=True)
class _AnchorOutcome:
    state: AnchorState
    reference: str | None = None
    anchored_at: datetime | None = None
    next_attempt_at: datetime | None = None


def should_anchor(policy: AnchorPolicy, requested: bool) -> bool:
    if policy == "always":
        return True
    if policy == "never":
        return False
    return requested


async def _validate_parties(
    db: AsyncSession, command: IssueCertificateCommand
) -> tuple[User, User]:
    user_repo = UserRepository(db)

    issuer = await user_repo.get_by_id(command.issuer_id)
    if issuer is None or not issuer.is_active:
        raise ValidationError(
            f"Issuer {command.issuer_id} does not exist", field="issuer_id"
        )
    if issuer.role not in ISSUING_ROLES:
        raise ValidationError(
            f"User {issuer.id} with role {issuer.role.value} cannot issue certificates",
            field="issuer_id",
        )

    recipient = await user_repo.get_by_id(command.recipient_id)
    if recipient is None or not recipient.is_active:
        raise ValidationError(
            f"Recipient {command.recipient_id} does not exist", field="recipient_id"
        )
    return issuer, recipient


def _validate_content(command: IssueCertificateCommand, issue_date: date) -> None:
    if not command.title.strip():
        raise ValidationError("Title cannot be blank", field="title")

    if command.expiry_date is not None and command.expiry_date < issue_date:
        raise ValidationError(
            "Expiry date cannot be before issue date", field="expiry_date"
        )


async def _resolve_template(
    db: AsyncSession, template_id: str | None, version: int | None
) -> Template:
    template_repo = TemplateRepository(db)

    if template_id is None:
        template = await template_repo.get_default()
    elif version is None:
        template = await template_repo.get_latest(template_id)
    else:
        template = await template_repo.get_version(template_id, version)

    if template is None:
        raise RenderError.template_not_found(template_id, version)
    return template


async def _allocate_serial(cert_repo: CertificateRepository, prefix: str) -> str:
    for _ in range(MAX_SERIAL_ALLOCATION_ATTEMPTS):
        serial = generate_serial_number(prefix)
        if not await cert_repo.serial_exists(serial):
            return serial
    raise PersistenceConflictError("Could not allocate a unique serial number")


async def _anchor(
    adapter: AnchorAdapter,
    digest: str,
    *,
    certificate_id: str,
    settings: Settings,
) -> _AnchorOutcome:
    """Anchor a fingerprint, deferring on an outage.

    Raises:
        AnchorRejectedError: The ledger refused the write.
    """
    now = utcnow()
    try:
        reference = await adapter.anchor(bytes.fromhex(digest))
    except AnchorUnavailableError as e:
        logger.warning(
            "certificate.anchor.deferred",
            extra={"certificate_id": certificate_id, "error": e.message},
        )
        return _AnchorOutcome(
            state=AnchorState.PENDING_RETRY,
            next_attempt_at=now
            + timedelta(seconds=settings.anchor_retry_base_delay_seconds),
        )
    except AnchorRejectedError as e:
        logger.warning(
            "certificate.anchor.rejected",
            extra={"certificate_id": certificate_id, "error": e.message},
        )
        raise

    return _AnchorOutcome(
        state=AnchorState.ANCHORED, reference=reference, anchored_at=now
    )


async def issue_certificate(
    db: AsyncSession,
    adapter: AnchorAdapter,
    command: IssueCertificateCommand,
    *,
    settings: Settings | None = None,
) -> CertificateData:
    """Issue a certificate in ``issued`` status.

    Validation, rendering and anchor rejection all fail before anything is
    written. An anchor outage does not fail issuance: the certificate is
    stored unanchored with a deferred retry scheduled.

    Raises:
        ValidationError: Unknown/inactive parties, non-issuing role, blank
            title or expiry before issue date.
        RenderError: Template missing or placeholders unresolved.
        AnchorRejectedError: The ledger refused the fingerprint.
        PersistenceConflictError: Identifier collision persisted after retry.
    """
    settings = settings or get_settings()
    issue_date = command.issue_date or today()

    issuer, recipient = await _validate_parties(db, command)
    _validate_content(command, issue_date)
    template = await _resolve_template(
        db, command.template_id, command.template_version
    )
    anchor_requested = should_anchor(settings.anchor_policy, command.anchor)

    cert_repo = CertificateRepository(db)
    certificate: Certificate | None = None

    for attempt in range(1, MAX_ISSUE_ATTEMPTS + 1):
        certificate_id = str(uuid.uuid4())
        serial_number = await _allocate_serial(cert_repo, settings.serial_prefix)

        draft = Certificate(
            id=certificate_id,
            serial_number=serial_number,
            title=command.title.strip(),
            description=command.description,
            issuer_id=issuer.id,
            recipient_id=recipient.id,
            issuer_name=issuer.display_name,
            recipient_name=recipient.display_name,
            recipient_email=recipient.email,
            image_url=command.image_url,
            issue_date=issue_date,
            expiry_date=command.expiry_date,
            details=dict(command.metadata),
            template_id=template.id,
            template_version=template.version,
        )

        document = render_certificate(to_render_context(draft), to_blueprint(template))
        digest = fingerprint(
            document, to_canonical_fields(draft), settings.hash_algorithm_version
        )

        if anchor_requested:
            outcome = await _anchor(
                adapter, digest, certificate_id=certificate_id, settings=settings
            )
        else:
            outcome = _AnchorOutcome(state=AnchorState.UNANCHORED)

        try:
            certificate = await cert_repo.create(
                id=draft.id,
                serial_number=draft.serial_number,
                title=draft.title,
                description=draft.description,
                issuer_id=draft.issuer_id,
                recipient_id=draft.recipient_id,
                issuer_name=draft.issuer_name,
                recipient_name=draft.recipient_name,
                recipient_email=draft.recipient_email,
                image_url=draft.image_url,
                issue_date=draft.issue_date,
                expiry_date=draft.expiry_date,
                details=draft.details,
                template_id=draft.template_id,
                template_version=draft.template_version,
                status=CertificateStatus.ISSUED,
                fingerprint=digest,
                hash_algorithm=settings.hash_algorithm_version,
                anchor_state=outcome.state,
                blockchain_hash=outcome.reference,
                anchored_at=outcome.anchored_at,
                anchor_attempts=0,
                next_anchor_attempt_at=outcome.next_attempt_at,
            )
        except PersistenceConflictError:
            logger.warning(
                "certificate.issue.conflict",
                extra={
                    "certificate_id": certificate_id,
                    "attempt": attempt,
                },
            )
            if outcome.reference is not None:
                log_orphaned_anchor(
                    certificate_id, outcome.reference, reason="insert_conflict"
                )
            if attempt == MAX_ISSUE_ATTEMPTS:
                raise
            continue
        break

    assert certificate is not None

    logger.info(
        "certificate.issued",
        extra={
            "certificate_id": certificate.id,
            "serial_number": certificate.serial_number,
            "issuer_id": issuer.id,
            "anchor_state": certificate.anchor_state.value,
        },
    )
    return to_certificate_data(
        certificate,
        on=today(),
        issuer=issuer,
        recipient=recipient,
        template=template,
        verify_base_url=settings.public_verify_url,
    )


async def revoke_certificate(
    db: AsyncSession,
    certificate_id: str,
    reason: str,
    revoked_by: str,
) -> CertificateData:
    """Revoke an issued certificate. Irreversible.

    Raises:
        ValidationError: Blank reason.
        CertificateNotFoundError: No such certificate.
        RevocationNotAllowedError: Actor is neither the issuer nor an admin.
        InvalidTransitionError: Certificate is not in ``issued`` status.
        PersistenceConflictError: Row changed concurrently.
    """
    reason = reason.strip()
    if not reason:
        raise ValidationError("Revocation reason cannot be blank", field="reason")

    cert_repo = CertificateRepository(db)
    certificate = await cert_repo.get_for_update(certificate_id)
    if certificate is None:
        raise CertificateNotFoundError(certificate_id)

    actor = await UserRepository(db).get_by_id(revoked_by)
    if actor is None or not actor.is_active:
        raise RevocationNotAllowedError(f"Unknown actor {revoked_by}")
    if actor.id != certificate.issuer_id and actor.role != UserRole.ADMIN:
        raise RevocationNotAllowedError(
            "Only the issuing user or an admin can revoke a certificate"
        )

    if certificate.status == CertificateStatus.REVOKED:
        raise InvalidTransitionError(f"Certificate {certificate_id} already revoked")
    if certificate.status != CertificateStatus.ISSUED:
        raise InvalidTransitionError(
            f"Cannot revoke a certificate in {certificate.status.value} status"
        )

    certificate.status = CertificateStatus.REVOKED
    certificate.revocation_reason = reason
    certificate.revoked_at = utcnow()
    certificate.revoked_by_id = actor.id

    try:
        await db.flush()
    except StaleDataError as e:
        raise PersistenceConflictError(
            f"Certificate {certificate_id} was modified concurrently"
        ) from e

    logger.info(
        "certificate.revoked",
        extra={"certificate_id": certificate_id, "revoked_by": actor.id},
    )
    return await get_certificate(db, certificate_id)


async def get_certificate(db: AsyncSession, certificate_id: str) -> CertificateData:
    """Read-time view of a certificate with issuer, recipient and template.

    Raises:
        CertificateNotFoundError: No such certificate.
    """
    certificate = await CertificateRepository(db).get_by_id(certificate_id)
    if certificate is None:
        raise CertificateNotFoundError(certificate_id)

    users = await UserRepository(db).get_many(
        [certificate.issuer_id, certificate.recipient_id]
    )
    template = await TemplateRepository(db).get_version(
        certificate.template_id, certificate.template_version
    )
    return to_certificate_data(
        certificate,
        on=today(),
        issuer=users.get(certificate.issuer_id),
        recipient=users.get(certificate.recipient_id),
        template=template,
        verify_base_url=get_settings().public_verify_url,
    )


async def list_certificates(
    db: AsyncSession,
    *,
    recipient_id: str | None = None,
    issuer_id: str | None = None,
    limit: int = 100,
) -> list[CertificateData]:
    """Certificates for exactly one recipient or one issuer."""
    if (recipient_id is None) == (issuer_id is None):
        raise ValidationError("Provide exactly one of recipient_id or issuer_id")

    cert_repo = CertificateRepository(db)
    if recipient_id is not None:
        certificates = await cert_repo.list_by_recipient(recipient_id, limit=limit)
    else:
        certificates = await cert_repo.list_by_issuer(issuer_id, limit=limit)

    on = today()
    verify_base_url = get_settings().public_verify_url
    return [
        to_certificate_data(c, on=on, verify_base_url=verify_base_url)
        for c in certificates
    ]


async def render_certificate_document(db: AsyncSession, certificate_id: str) -> str:
    """Re-render a certificate with the template version it was issued with.

    Raises:
        CertificateNotFoundError: No such certificate.
        RenderError: Pinned template missing or placeholders unresolved.
    """
    certificate = await CertificateRepository(db).get_by_id(certificate_id)
    if certificate is None:
        raise CertificateNotFoundError(certificate_id)

    template = await TemplateRepository(db).get_version(
        certificate.template_id, certificate.template_version
    )
    if template is None:
        raise RenderError.template_not_found(
            certificate.template_id, certificate.template_version
        )
    return render_certificate(to_render_context(certificate), to_blueprint(template))


async def export_certificate_pdf(db: AsyncSession, certificate_id: str) -> bytes:
    """Render a certificate to PDF.

    WeasyPrint layout is CPU-bound, so it runs in the default executor.

    Raises:
        DocumentExportUnavailableError: WeasyPrint system libraries missing.
    """
    document = await render_certificate_document(db, certificate_id)
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, html_to_pdf, document)
