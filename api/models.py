"""SQLAlchemy models for certificate issuance and verification."""

from datetime import UTC, date, datetime
from enum import Enum as PyEnum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, declared_attr, mapped_column, validates

from core.database import Base
from core.errors import InvalidTransitionError


def utcnow() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def today() -> date:
    """Return current UTC date."""
    return datetime.now(UTC).date()


def _enum_column(enum_cls: type[PyEnum], name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        values_callable=lambda x: [e.value for e in x],
    )


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    @declared_attr
    def created_at(cls) -> Mapped[datetime]:
        return mapped_column(DateTime(timezone=True), default=utcnow)

    @declared_attr
    def updated_at(cls) -> Mapped[datetime]:
        return mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class UserRole(str, PyEnum):
    ADMIN = "admin"
    ISSUER = "issuer"
    HOLDER = "holder"


ISSUING_ROLES = frozenset({UserRole.ADMIN, UserRole.ISSUER})


class User(TimestampMixin, Base):
    """Issuer or recipient identity.

    Owned by the identity service; the engine only reads these rows.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        _enum_column(UserRole, "user_role"), nullable=False, default=UserRole.HOLDER
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    @property
    def display_name(self) -> str:
        name = " ".join(p for p in (self.first_name, self.last_name) if p)
        return name or self.email


class Template(TimestampMixin, Base):
    """Rendering blueprint, immutable per (id, version).

    Editing a template writes a new version; certificates pin the version
    they were rendered with so historical verification stays stable.
    """

    __tablename__ = "templates"
    __table_args__ = (Index("ix_templates_default", "is_default"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    html: Mapped[str] = mapped_column(Text, nullable=False)
    styles: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    placeholders: Mapped[list[str]] = mapped_column(JSON, default=list)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    created_by_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("users.id"), nullable=True
    )


class CertificateStatus(str, PyEnum):
    """Stored lifecycle status. ``expired`` is never stored (see EffectiveStatus)."""

    DRAFT = "draft"
    ISSUED = "issued"
    REVOKED = "revoked"


class EffectiveStatus(str, PyEnum):
    """Status presented to callers after the time-based expiry overlay."""

    DRAFT = "draft"
    ISSUED = "issued"
    REVOKED = "revoked"
    EXPIRED = "expired"


class AnchorState(str, PyEnum):
    """Ledger anchoring state of a certificate.

    UNANCHORED: never anchored (policy, or retries abandoned)
    PENDING_RETRY: ledger was unavailable at issuance; awaiting retry
    ANCHORED: ``blockchain_hash`` holds the ledger reference
    """

    UNANCHORED = "unanchored"
    PENDING_RETRY = "pending_retry"
    ANCHORED = "anchored"


class Certificate(TimestampMixin, Base):
    """An issued credential.

    Content fields are immutable after issuance. Only status, revocation
    fields and anchor fields change, and ``blockchain_hash`` is written at
    most once.
    """

    __tablename__ = "certificates"
    __table_args__ = (
        CheckConstraint(
            "expiry_date IS NULL OR expiry_date >= issue_date",
            name="ck_certificates_expiry_after_issue",
        ),
        ForeignKeyConstraint(
            ["template_id", "template_version"],
            ["templates.id", "templates.version"],
            name="fk_certificates_template_version",
        ),
        Index("ix_certificates_recipient", "recipient_id"),
        Index("ix_certificates_issuer", "issuer_id"),
        Index("ix_certificates_anchor_due", "anchor_state", "next_anchor_attempt_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    serial_number: Mapped[str] = mapped_column(
        String(32), nullable=False, unique=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    issuer_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id"), nullable=False
    )
    recipient_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id"), nullable=False
    )
    # Names as they were at issuance; user rows may change afterwards
    issuer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    recipient_name: Mapped[str] = mapped_column(String(255), nullable=False)
    recipient_email: Mapped[str] = mapped_column(String(255), nullable=False)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    pdf_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[CertificateStatus] = mapped_column(
        _enum_column(CertificateStatus, "certificate_status"),
        nullable=False,
        default=CertificateStatus.DRAFT,
    )
    # Named "metadata" in the table; the attribute name is reserved by SQLAlchemy
    details: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    template_id: Mapped[str] = mapped_column(String(64), nullable=False)
    template_version: Mapped[int] = mapped_column(Integer, nullable=False)

    fingerprint: Mapped[str] = mapped_column(String(128), nullable=False)
    hash_algorithm: Mapped[str] = mapped_column(String(32), nullable=False)

    anchor_state: Mapped[AnchorState] = mapped_column(
        _enum_column(AnchorState, "anchor_state"),
        nullable=False,
        default=AnchorState.UNANCHORED,
    )
    blockchain_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    anchored_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    anchor_attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_anchor_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    revocation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    revoked_by_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("users.id"), nullable=True
    )

    # Optimistic lock: a revoke and a deferred-anchor retry racing on the same
    # row cannot both commit against the same version.
    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    @validates("blockchain_hash")
    def validate_blockchain_hash(self, key: str, value: str | None) -> str | None:
        # Read the loaded value directly; an unloaded attribute counts as unset
        current = self.__dict__.get(key)
        if current is not None and value != current:
            raise InvalidTransitionError(
                f"Certificate {self.id} is already anchored as {current}"
            )
        return value
