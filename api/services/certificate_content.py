"""Helpers shared by issuance and verification.

Issuance and verification derive the render context and canonical fields
from a certificate row through these functions only; any drift between the
two would make freshly issued certificates fail verification.
"""

from datetime import date
from urllib.parse import urlencode

from models import Certificate, CertificateStatus, EffectiveStatus, Template, User
from rendering.certificates import RenderContext, TemplateBlueprint
from schemas import CertificateData, TemplateSummary, UserSummary
from services.fingerprint_service import CanonicalFields


def effective_status(certificate: Certificate, on: date) -> EffectiveStatus:
    """Stored status with the time-based expiry overlay applied.

    Revocation wins over expiry. ``expired`` means ``on`` is strictly after
    the expiry date, so a certificate is still valid on its last day.
    """
    if certificate.status == CertificateStatus.REVOKED:
        return EffectiveStatus.REVOKED
    if (
        certificate.status == CertificateStatus.ISSUED
        and certificate.expiry_date is not None
        and on > certificate.expiry_date
    ):
        return EffectiveStatus.EXPIRED
    return EffectiveStatus(certificate.status.value)


def to_blueprint(template: Template) -> TemplateBlueprint:
    return TemplateBlueprint(
        id=template.id,
        version=template.version,
        html=template.html,
        styles=template.styles or {},
        placeholders=tuple(template.placeholders or ()),
    )


def to_render_context(certificate: Certificate) -> RenderContext:
    return RenderContext(
        certificate_id=certificate.id,
        serial_number=certificate.serial_number,
        title=certificate.title,
        description=certificate.description,
        issuer_name=certificate.issuer_name,
        recipient_name=certificate.recipient_name,
        recipient_email=certificate.recipient_email,
        issue_date=certificate.issue_date,
        expiry_date=certificate.expiry_date,
        image_url=certificate.image_url,
        metadata=dict(certificate.details or {}),
    )


def to_canonical_fields(certificate: Certificate) -> CanonicalFields:
    return CanonicalFields(
        id=certificate.id,
        serial_number=certificate.serial_number,
        issuer_id=certificate.issuer_id,
        recipient_id=certificate.recipient_id,
        issuer_name=certificate.issuer_name,
        recipient_name=certificate.recipient_name,
        recipient_email=certificate.recipient_email,
        issue_date=certificate.issue_date,
        expiry_date=certificate.expiry_date,
        template_id=certificate.template_id,
        template_version=certificate.template_version,
        title=certificate.title,
        description=certificate.description,
        metadata=dict(certificate.details or {}),
    )


def build_verify_url(base_url: str, serial_number: str) -> str:
    return f"{base_url}?{urlencode({'serial': serial_number})}"


def to_certificate_data(
    certificate: Certificate,
    *,
    on: date,
    issuer: User | None = None,
    recipient: User | None = None,
    template: Template | None = None,
    verify_base_url: str | None = None,
) -> CertificateData:
    return CertificateData(
        id=certificate.id,
        serial_number=certificate.serial_number,
        title=certificate.title,
        description=certificate.description,
        issuer_id=certificate.issuer_id,
        recipient_id=certificate.recipient_id,
        issuer_name=certificate.issuer_name,
        recipient_name=certificate.recipient_name,
        recipient_email=certificate.recipient_email,
        image_url=certificate.image_url,
        pdf_url=certificate.pdf_url,
        issue_date=certificate.issue_date,
        expiry_date=certificate.expiry_date,
        status=certificate.status,
        effective_status=effective_status(certificate, on),
        anchor_state=certificate.anchor_state,
        blockchain_hash=certificate.blockchain_hash,
        fingerprint=certificate.fingerprint,
        hash_algorithm=certificate.hash_algorithm,
        metadata=dict(certificate.details or {}),
        template_id=certificate.template_id,
        template_version=certificate.template_version,
        revocation_reason=certificate.revocation_reason,
        revoked_at=certificate.revoked_at,
        created_at=certificate.created_at,
        updated_at=certificate.updated_at,
        issuer=UserSummary.model_validate(issuer) if issuer else None,
        recipient=UserSummary.model_validate(recipient) if recipient else None,
        template=TemplateSummary.model_validate(template) if template else None,
        verify_url=(
            build_verify_url(verify_base_url, certificate.serial_number)
            if verify_base_url
            else None
        ),
    )
