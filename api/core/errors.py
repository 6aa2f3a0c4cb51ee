"""Typed failures raised by the credential engine.

Routes translate these into HTTP responses (see main.py). Verification
outcomes such as tampering are NOT errors; they are verdict states on
``VerificationResult``.
"""

from enum import StrEnum


class CredentialError(Exception):
    """Base class for all engine failures."""

    code = "credential_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CredentialError):
    """Bad input. Raised before any side effect."""

    code = "validation_error"

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class RenderErrorReason(StrEnum):
    MISSING_PLACEHOLDER = "missing_placeholder"
    TEMPLATE_NOT_FOUND = "template_not_found"


class RenderError(CredentialError):
    """Rendering could not produce a document."""

    code = "render_error"

    def __init__(
        self,
        reason: RenderErrorReason,
        message: str,
        *,
        placeholders: list[str] | None = None,
    ):
        super().__init__(message)
        self.reason = reason
        self.placeholders = placeholders or []

    @classmethod
    def missing_placeholders(cls, names: list[str]) -> "RenderError":
        return cls(
            RenderErrorReason.MISSING_PLACEHOLDER,
            f"Unresolved template placeholders: {', '.join(names)}",
            placeholders=names,
        )

    @classmethod
    def template_not_found(
        cls, template_id: str | None, version: int | None = None
    ) -> "RenderError":
        if template_id is None:
            target = "default template"
        elif version is None:
            target = f"template {template_id}"
        else:
            target = f"template {template_id} v{version}"
        return cls(RenderErrorReason.TEMPLATE_NOT_FOUND, f"No {target} found")


class AnchorError(CredentialError):
    """Base class for ledger failures."""

    code = "anchor_error"


class AnchorUnavailableError(AnchorError):
    """Ledger unreachable, timed out or failing. Retryable."""

    code = "anchor_unavailable"


class AnchorRejectedError(AnchorError):
    """Ledger refused the write. Fatal for the current issuance attempt."""

    code = "anchor_rejected"


class PersistenceConflictError(CredentialError):
    """Duplicate certificate id or serial number on insert."""

    code = "persistence_conflict"


class CertificateNotFoundError(CredentialError):
    code = "certificate_not_found"

    def __init__(self, locator: str):
        super().__init__(f"Certificate {locator} not found")
        self.locator = locator


class InvalidTransitionError(CredentialError):
    """Requested status change is not allowed from the current status."""

    code = "invalid_transition"


class RevocationNotAllowedError(CredentialError):
    """Actor may not revoke this certificate."""

    code = "revocation_not_allowed"
