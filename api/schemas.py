"""Pydantic schemas for requests, responses and service results."""

from datetime import date, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import AnchorState, CertificateStatus, EffectiveStatus, UserRole

MAX_BATCH_SIZE = 50


# --- Shared pieces ---


class CertificateMetadata(BaseModel):
    """Free-form certificate metadata.

    ``grade`` and ``course_name`` are the well-known keys; anything else goes
    into ``extra`` and is addressable from templates by its own name.
    """

    grade: str | None = Field(default=None, max_length=100)
    course_name: str | None = Field(default=None, max_length=255)
    extra: dict[str, str] = Field(default_factory=dict)

    @field_validator("extra")
    @classmethod
    def validate_extra_keys(cls, v: dict[str, str]) -> dict[str, str]:
        for key in v:
            if not key.isidentifier():
                raise ValueError(f"Metadata key {key!r} must be an identifier")
        return v

    def as_dict(self) -> dict[str, str]:
        """Flat mapping stored on the certificate row."""
        data: dict[str, str] = dict(self.extra)
        if self.grade is not None:
            data["grade"] = self.grade
        if self.course_name is not None:
            data["course_name"] = self.course_name
        return data


class UserSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    role: UserRole


class TemplateSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    version: int
    name: str
    description: str | None = None
    placeholders: list[str] = Field(default_factory=list)
    is_default: bool = False


# --- Issuance ---


class IssueCertificateRequest(BaseModel):
    """Request body for POST /api/certificates."""

    issuer_id: str = Field(min_length=1, max_length=64)
    recipient_id: str = Field(min_length=1, max_length=64)
    title: str = Field(min_length=1, max_length=255)
    description: str = Field(default="", max_length=5000)
    issue_date: date | None = None
    expiry_date: date | None = None
    template_id: str | None = Field(default=None, max_length=64)
    template_version: int | None = Field(default=None, ge=1)
    image_url: str | None = Field(default=None, max_length=2048)
    metadata: CertificateMetadata = Field(default_factory=CertificateMetadata)
    anchor: bool = False

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Title cannot be blank")
        return v


class RevokeCertificateRequest(BaseModel):
    reason: str = Field(min_length=3, max_length=1000)
    revoked_by: str = Field(min_length=1, max_length=64)


class CertificateData(BaseModel):
    """Full read-time view of a certificate, joined with its users and template."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    serial_number: str
    title: str
    description: str
    issuer_id: str
    recipient_id: str
    issuer_name: str
    recipient_name: str
    recipient_email: str
    image_url: str | None = None
    pdf_url: str | None = None
    issue_date: date
    expiry_date: date | None = None
    status: CertificateStatus
    effective_status: EffectiveStatus
    anchor_state: AnchorState
    blockchain_hash: str | None = None
    fingerprint: str
    hash_algorithm: str
    metadata: dict[str, str] = Field(default_factory=dict)
    template_id: str
    template_version: int
    revocation_reason: str | None = None
    revoked_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    issuer: UserSummary | None = None
    recipient: UserSummary | None = None
    template: TemplateSummary | None = None
    verify_url: str | None = None


class CertificateListResponse(BaseModel):
    certificates: list[CertificateData]
    count: int


# --- Verification ---


class Verdict(StrEnum):
    VALID = "valid"
    TAMPERED = "tampered"
    ANCHOR_MISMATCH = "anchor_mismatch"
    REVOKED = "revoked"
    EXPIRED = "expired"
    DRAFT = "draft"
    NOT_FOUND = "not_found"


class TrustLevel(StrEnum):
    LEDGER_CONFIRMED = "ledger_confirmed"
    RECORD_ONLY = "record_only"
    NONE = "none"


class CertificateSummary(BaseModel):
    """Public subset of a certificate shown to verifiers."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    serial_number: str
    title: str
    issuer_name: str | None = None
    recipient_name: str | None = None
    issue_date: date
    expiry_date: date | None = None
    revocation_reason: str | None = None
    revoked_at: datetime | None = None


class VerificationResult(BaseModel):
    """Structured verdict. Content integrity and anchor confirmation are
    reported independently; ``verdict`` is a convenience summary."""

    locator: str
    found: bool
    verdict: Verdict
    content_integrity: bool
    anchor_confirmed: bool | None = None
    anchor_state: AnchorState | None = None
    effective_status: EffectiveStatus | None = None
    trust_level: TrustLevel
    hash_algorithm: str | None = None
    certificate: CertificateSummary | None = None
    message: str
    checked_at: datetime


class BatchVerifyRequest(BaseModel):
    locators: list[str] = Field(default_factory=list)

    @field_validator("locators")
    @classmethod
    def validate_locators(cls, v: list[str]) -> list[str]:
        if len(v) > MAX_BATCH_SIZE:
            raise ValueError(f"At most {MAX_BATCH_SIZE} locators per batch")
        return v


class BatchVerificationResult(BaseModel):
    results: list[VerificationResult]
    total: int
    successful: int
    failed: int


class MerkleProofSchema(BaseModel):
    leaf: str = Field(pattern=r"^[0-9a-fA-F]{64}$")
    siblings: list[str] = Field(default_factory=list)
    # Optional; True where the sibling at that level is the left child
    sibling_on_left: list[bool] = Field(default_factory=list)

    @field_validator("siblings")
    @classmethod
    def validate_siblings(cls, v: list[str]) -> list[str]:
        for sibling in v:
            if len(sibling) != 64:
                raise ValueError("Each sibling must be a 32-byte hex digest")
            bytes.fromhex(sibling)
        return v

    @model_validator(mode="after")
    def validate_sides(self) -> "MerkleProofSchema":
        if self.sibling_on_left and len(self.sibling_on_left) != len(self.siblings):
            raise ValueError("sibling_on_left must have one flag per sibling")
        return self


class MerkleVerifyRequest(BaseModel):
    root: str = Field(pattern=r"^[0-9a-fA-F]{64}$")
    proofs: list[MerkleProofSchema] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_size(self) -> "MerkleVerifyRequest":
        if len(self.proofs) > MAX_BATCH_SIZE:
            raise ValueError(f"At most {MAX_BATCH_SIZE} proofs per batch")
        return self


class MerkleLeafResult(BaseModel):
    leaf: str
    is_valid: bool


class MerkleVerificationResponse(BaseModel):
    root: str
    results: list[MerkleLeafResult]


# --- Background work ---


class AnchorRetryReport(BaseModel):
    attempted: int = 0
    anchored: int = 0
    deferred: int = 0
    abandoned: int = 0
    skipped: int = 0
    # Ledger references issued but not stored because the row changed
    orphaned: int = 0


# --- Health ---


class HealthResponse(BaseModel):
    status: str
    service: str


class PoolStatusResponse(BaseModel):
    pool_size: int
    checked_out: int
    overflow: int
    checked_in: int


class DetailedHealthResponse(BaseModel):
    status: str
    service: str
    database: bool
    ledger_backend: str
    pending_anchors: int | None = None
    pool: PoolStatusResponse | None = None
