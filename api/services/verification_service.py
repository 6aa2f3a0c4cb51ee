"""Certificate verification.

Verification re-renders a stored certificate with the exact template version
it was issued with, recomputes its fingerprint and compares it with the
stored one. If the certificate is anchored, the ledger is asked to confirm
the recomputed fingerprint as well.

Content integrity and anchor confirmation are reported as two independent
signals. A ledger outage therefore never looks like forgery, and a revoked
certificate still reports intact content.

Verdict precedence (first match wins):
    not_found > tampered > anchor_mismatch > revoked > expired > draft > valid
"""

import logging
import uuid
from collections.abc import Sequence
from datetime import date

from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import (
    AnchorRejectedError,
    AnchorUnavailableError,
    RenderError,
    RenderErrorReason,
    ValidationError,
)
from core.ledger import AnchorAdapter
from models import AnchorState, Certificate, EffectiveStatus, today, utcnow
from rendering.certificates import render_certificate
from repositories.certificate_repository import CertificateRepository
from repositories.template_repository import TemplateRepository
from schemas import (
    MAX_BATCH_SIZE,
    BatchVerificationResult,
    CertificateSummary,
    MerkleLeafResult,
    MerkleProofSchema,
    MerkleVerificationResponse,
    TrustLevel,
    Verdict,
    VerificationResult,
)
from services.certificate_content import (
    effective_status,
    to_blueprint,
    to_canonical_fields,
    to_render_context,
)
from services.fingerprint_service import (
    fingerprint,
    fingerprints_match,
    verify_merkle_proof,
)
from services.serial_numbers import is_valid_serial_number, normalize_serial_number

logger = logging.getLogger(__name__)

_MESSAGES: dict[Verdict, str] = {
    Verdict.VALID: "Certificate is authentic and currently valid.",
    Verdict.TAMPERED: (
        "Certificate content does not match its recorded fingerprint. "
        "It may have been altered."
    ),
    Verdict.ANCHOR_MISMATCH: (
        "Certificate content matches the record, but the ledger anchor "
        "could not confirm it."
    ),
    Verdict.REVOKED: "Certificate is authentic but has been revoked by its issuer.",
    Verdict.EXPIRED: "Certificate is authentic but has expired.",
    Verdict.DRAFT: "Certificate has not been issued.",
    Verdict.NOT_FOUND: "No certificate matches this locator.",
}


def _not_found(locator: str, message: str | None = None) -> VerificationResult:
    return VerificationResult(
        locator=locator,
        found=False,
        verdict=Verdict.NOT_FOUND,
        content_integrity=False,
        anchor_confirmed=None,
        trust_level=TrustLevel.NONE,
        message=message or _MESSAGES[Verdict.NOT_FOUND],
        checked_at=utcnow(),
    )


def _summarize(certificate: Certificate) -> CertificateSummary:
    return CertificateSummary(
        id=certificate.id,
        serial_number=certificate.serial_number,
        title=certificate.title,
        issuer_name=certificate.issuer_name,
        recipient_name=certificate.recipient_name,
        issue_date=certificate.issue_date,
        expiry_date=certificate.expiry_date,
        revocation_reason=certificate.revocation_reason,
        revoked_at=certificate.revoked_at,
    )


def decide_verdict(
    *,
    content_integrity: bool,
    anchor_confirmed: bool | None,
    status: EffectiveStatus,
) -> Verdict:
    if not content_integrity:
        return Verdict.TAMPERED
    if anchor_confirmed is False:
        return Verdict.ANCHOR_MISMATCH
    if status == EffectiveStatus.REVOKED:
        return Verdict.REVOKED
    if status == EffectiveStatus.EXPIRED:
        return Verdict.EXPIRED
    if status == EffectiveStatus.DRAFT:
        return Verdict.DRAFT
    return Verdict.VALID


def _trust_level(content_integrity: bool, anchor_confirmed: bool | None) -> TrustLevel:
    if not content_integrity:
        return TrustLevel.NONE
    if anchor_confirmed:
        return TrustLevel.LEDGER_CONFIRMED
    return TrustLevel.RECORD_ONLY


async def _recompute_fingerprint(
    db: AsyncSession, certificate: Certificate
) -> str | None:
    """Fingerprint of the certificate as it renders today, or None if the
    stored data no longer satisfies the pinned template.

    Raises:
        RenderError: The pinned template version is missing.
    """
    template = await TemplateRepository(db).get_version(
        certificate.template_id, certificate.template_version
    )
    if template is None:
        raise RenderError.template_not_found(
            certificate.template_id, certificate.template_version
        )

    try:
        document = render_certificate(
            to_render_context(certificate), to_blueprint(template)
        )
    except RenderError as e:
        if e.reason != RenderErrorReason.MISSING_PLACEHOLDER:
            raise
        logger.warning(
            "verification.render.unresolved",
            extra={"certificate_id": certificate.id, "placeholders": e.placeholders},
        )
        return None

    return fingerprint(
        document, to_canonical_fields(certificate), certificate.hash_algorithm
    )


async def _confirm_anchor(
    adapter: AnchorAdapter, certificate: Certificate, recomputed: str | None
) -> bool | None:
    if (
        certificate.anchor_state != AnchorState.ANCHORED
        or not certificate.blockchain_hash
        or recomputed is None
    ):
        return None

    try:
        return await adapter.confirm(
            certificate.blockchain_hash, bytes.fromhex(recomputed)
        )
    except AnchorUnavailableError as e:
        logger.warning(
            "verification.anchor.unavailable",
            extra={"certificate_id": certificate.id, "error": e.message},
        )
        return None
    except AnchorRejectedError as e:
        logger.warning(
            "verification.anchor.rejected",
            extra={"certificate_id": certificate.id, "error": e.message},
        )
        return False


async def evaluate_certificate(
    db: AsyncSession,
    adapter: AnchorAdapter,
    certificate: Certificate,
    *,
    locator: str,
    on: date | None = None,
) -> VerificationResult:
    """Verify a loaded certificate. Read-only."""
    recomputed = await _recompute_fingerprint(db, certificate)
    content_integrity = recomputed is not None and fingerprints_match(
        certificate.fingerprint, recomputed
    )
    anchor_confirmed = await _confirm_anchor(adapter, certificate, recomputed)
    status = effective_status(certificate, on or today())

    verdict = decide_verdict(
        content_integrity=content_integrity,
        anchor_confirmed=anchor_confirmed,
        status=status,
    )

    logger.info(
        "certificate.verified",
        extra={
            "certificate_id": certificate.id,
            "verdict": verdict.value,
            "content_integrity": content_integrity,
            "anchor_confirmed": anchor_confirmed,
        },
    )

    return VerificationResult(
        locator=locator,
        found=True,
        verdict=verdict,
        content_integrity=content_integrity,
        anchor_confirmed=anchor_confirmed,
        anchor_state=certificate.anchor_state,
        effective_status=status,
        trust_level=_trust_level(content_integrity, anchor_confirmed),
        hash_algorithm=certificate.hash_algorithm,
        certificate=_summarize(certificate),
        message=_MESSAGES[verdict],
        checked_at=utcnow(),
    )


async def verify_by_id(
    db: AsyncSession,
    adapter: AnchorAdapter,
    certificate_id: str,
    *,
    on: date | None = None,
) -> VerificationResult:
    certificate = await CertificateRepository(db).get_by_id(certificate_id)
    if certificate is None:
        return _not_found(certificate_id)
    return await evaluate_certificate(
        db, adapter, certificate, locator=certificate_id, on=on
    )


async def verify_by_serial(
    db: AsyncSession,
    adapter: AnchorAdapter,
    serial_number: str,
    *,
    on: date | None = None,
) -> VerificationResult:
    """Public verification by the serial printed on the certificate.

    Malformed serials and bad check symbols are answered without a lookup.
    """
    if not is_valid_serial_number(serial_number):
        return _not_found(
            serial_number,
            "Serial number is malformed or fails its checksum. Check for typos.",
        )

    normalized = normalize_serial_number(serial_number)
    certificate = await CertificateRepository(db).get_by_serial(normalized)
    if certificate is None:
        return _not_found(serial_number)
    return await evaluate_certificate(
        db, adapter, certificate, locator=serial_number, on=on
    )


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


async def verify_locator(
    db: AsyncSession,
    adapter: AnchorAdapter,
    locator: str,
    *,
    on: date | None = None,
) -> VerificationResult:
    """Verify by certificate id (UUID) or serial number."""
    locator = locator.strip()
    if _is_uuid(locator):
        return await verify_by_id(db, adapter, locator, on=on)
    return await verify_by_serial(db, adapter, locator, on=on)


async def verify_batch(
    db: AsyncSession,
    adapter: AnchorAdapter,
    locators: Sequence[str],
    *,
    on: date | None = None,
) -> BatchVerificationResult:
    """Verify up to MAX_BATCH_SIZE certificates, each independently.

    Raises:
        ValidationError: More than MAX_BATCH_SIZE locators.
    """
    if len(locators) > MAX_BATCH_SIZE:
        raise ValidationError(
            f"Batch size {len(locators)} exceeds maximum of {MAX_BATCH_SIZE}",
            field="locators",
        )

    results = [await verify_locator(db, adapter, loc, on=on) for loc in locators]
    successful = sum(1 for r in results if r.verdict == Verdict.VALID)

    return BatchVerificationResult(
        results=results,
        total=len(results),
        successful=successful,
        failed=len(results) - successful,
    )


def verify_merkle_batch(
    root: str, proofs: Sequence[MerkleProofSchema]
) -> MerkleVerificationResponse:
    """Check several Merkle inclusion proofs against one root.

    Raises:
        ValidationError: More than MAX_BATCH_SIZE proofs.
    """
    if len(proofs) > MAX_BATCH_SIZE:
        raise ValidationError(
            f"Batch size {len(proofs)} exceeds maximum of {MAX_BATCH_SIZE}",
            field="proofs",
        )

    root_bytes = bytes.fromhex(root)
    results = [
        MerkleLeafResult(
            leaf=proof.leaf.lower(),
            is_valid=verify_merkle_proof(
                root_bytes,
                bytes.fromhex(proof.leaf),
                [bytes.fromhex(s) for s in proof.siblings],
                proof.sibling_on_left,
            ),
        )
        for proof in proofs
    ]
    return MerkleVerificationResponse(root=root.lower(), results=results)
