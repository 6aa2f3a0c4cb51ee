"""Tests for issuance_service: issuing, revoking and reading certificates."""

import uuid
from datetime import UTC, date, datetime
from unittest.mock import patch

import pytest
import time_machine
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings
from core.errors import (
    AnchorRejectedError,
    AnchorUnavailableError,
    CertificateNotFoundError,
    InvalidTransitionError,
    PersistenceConflictError,
    RenderError,
    RenderErrorReason,
    RevocationNotAllowedError,
    ValidationError,
)
from core.ledger import InMemoryLedger
from models import (
    AnchorState,
    Certificate,
    CertificateStatus,
    EffectiveStatus,
    Template,
    User,
    UserRole,
)
from repositories.certificate_repository import CertificateRepository
from repositories.template_repository import TemplateRepository
from services.issuance_service import (
    IssueCertificateCommand,
    get_certificate,
    issue_certificate,
    list_certificates,
    render_certificate_document,
    revoke_certificate,
    should_anchor,
)
from services.serial_numbers import generate_serial_number, is_valid_serial_number
from tests.factories import (
    DEFAULT_TEMPLATE_HTML,
    CertificateFactory,
    UserFactory,
    create_async,
)

pytestmark = pytest.mark.integration


def _command(issuer: User, recipient: User, **overrides) -> IssueCertificateCommand:
    fields = {
        "issuer_id": issuer.id,
        "recipient_id": recipient.id,
        "title": "Cloud Foundations",
        "description": "Completed all modules",
        "issue_date": date(2025, 1, 5),
    }
    fields.update(overrides)
    return IssueCertificateCommand(**fields)


async def _certificate_count(db: AsyncSession) -> int:
    return await db.scalar(select(func.count()).select_from(Certificate))


class TestShouldAnchor:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "policy,requested,expected",
        [
            ("always", False, True),
            ("always", True, True),
            ("never", True, False),
            ("never", False, False),
            ("on_demand", True, True),
            ("on_demand", False, False),
        ],
    )
    def test_policy(self, policy, requested, expected):
        assert should_anchor(policy, requested) is expected


class TestIssueCertificate:
    """Tests for issue_certificate()."""

    async def test_issues_certificate(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        result = await issue_certificate(
            db_session, ledger, _command(issuer, recipient), settings=test_settings
        )

        assert result.status == CertificateStatus.ISSUED
        assert result.effective_status == EffectiveStatus.ISSUED
        assert result.anchor_state == AnchorState.UNANCHORED
        assert result.blockchain_hash is None
        assert result.template_id == "classic"
        assert result.template_version == 1
        assert result.hash_algorithm == "sha256-v1"
        assert len(result.fingerprint) == 64
        assert is_valid_serial_number(result.serial_number)
        assert result.serial_number.startswith("CRT-")
        assert ledger.records == {}

        stored = await CertificateRepository(db_session).get_by_id(result.id)
        assert stored is not None
        assert stored.fingerprint == result.fingerprint

    async def test_snapshots_party_names(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        result = await issue_certificate(
            db_session, ledger, _command(issuer, recipient), settings=test_settings
        )

        assert result.issuer_name == "Ada Byron"
        assert result.recipient_name == "Grace Hopper"
        assert result.recipient_email == recipient.email
        assert result.issuer is not None and result.issuer.id == issuer.id
        assert result.template is not None and result.template.is_default

    async def test_includes_verify_url(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        result = await issue_certificate(
            db_session, ledger, _command(issuer, recipient), settings=test_settings
        )

        assert result.verify_url is not None
        assert result.verify_url.startswith(test_settings.public_verify_url + "?serial=")

    async def test_anchors_when_requested(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        result = await issue_certificate(
            db_session,
            ledger,
            _command(issuer, recipient, anchor=True),
            settings=test_settings,
        )

        assert result.anchor_state == AnchorState.ANCHORED
        assert result.blockchain_hash == "mem:1"
        assert ledger.records["mem:1"] == bytes.fromhex(result.fingerprint)

    async def test_always_policy_anchors_without_request(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        settings = test_settings.model_copy(update={"anchor_policy": "always"})

        result = await issue_certificate(
            db_session, ledger, _command(issuer, recipient), settings=settings
        )

        assert result.anchor_state == AnchorState.ANCHORED

    async def test_never_policy_ignores_request(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        settings = test_settings.model_copy(update={"anchor_policy": "never"})

        result = await issue_certificate(
            db_session,
            ledger,
            _command(issuer, recipient, anchor=True),
            settings=settings,
        )

        assert result.anchor_state == AnchorState.UNANCHORED
        assert ledger.records == {}

    async def test_ledger_outage_defers_anchor(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        ledger.fail_with = AnchorUnavailableError

        with time_machine.travel(datetime(2025, 1, 5, 12, 0, tzinfo=UTC), tick=False):
            result = await issue_certificate(
                db_session,
                ledger,
                _command(issuer, recipient, anchor=True),
                settings=test_settings,
            )

        assert result.status == CertificateStatus.ISSUED
        assert result.anchor_state == AnchorState.PENDING_RETRY
        assert result.blockchain_hash is None

        stored = await CertificateRepository(db_session).get_by_id(result.id)
        assert stored.anchor_attempts == 0
        assert stored.next_anchor_attempt_at == datetime(
            2025, 1, 5, 12, 0, 30, tzinfo=UTC
        )

    async def test_ledger_rejection_stores_nothing(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        ledger.fail_with = AnchorRejectedError

        with pytest.raises(AnchorRejectedError):
            await issue_certificate(
                db_session,
                ledger,
                _command(issuer, recipient, anchor=True),
                settings=test_settings,
            )

        assert await _certificate_count(db_session) == 0

    async def test_rejection_irrelevant_when_not_anchoring(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        ledger.fail_with = AnchorRejectedError

        result = await issue_certificate(
            db_session, ledger, _command(issuer, recipient), settings=test_settings
        )

        assert result.anchor_state == AnchorState.UNANCHORED

    async def test_defaults_issue_date_to_utc_today(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        with time_machine.travel(datetime(2025, 3, 1, 23, 30, tzinfo=UTC), tick=False):
            result = await issue_certificate(
                db_session,
                ledger,
                _command(issuer, recipient, issue_date=None),
                settings=test_settings,
            )

        assert result.issue_date == date(2025, 3, 1)

    async def test_expiry_equal_to_issue_date_allowed(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        result = await issue_certificate(
            db_session,
            ledger,
            _command(issuer, recipient, expiry_date=date(2025, 1, 5)),
            settings=test_settings,
        )

        assert result.expiry_date == date(2025, 1, 5)

    async def test_expiry_before_issue_rejected(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        with pytest.raises(ValidationError) as exc_info:
            await issue_certificate(
                db_session,
                ledger,
                _command(issuer, recipient, expiry_date=date(2025, 1, 4)),
                settings=test_settings,
            )

        assert exc_info.value.field == "expiry_date"
        assert await _certificate_count(db_session) == 0

    async def test_blank_title_rejected(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        with pytest.raises(ValidationError) as exc_info:
            await issue_certificate(
                db_session,
                ledger,
                _command(issuer, recipient, title="   "),
                settings=test_settings,
            )

        assert exc_info.value.field == "title"

    async def test_holder_cannot_issue(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        holder = await create_async(UserFactory, db_session, role=UserRole.HOLDER)

        with pytest.raises(ValidationError, match="cannot issue"):
            await issue_certificate(
                db_session, ledger, _command(holder, recipient), settings=test_settings
            )

    async def test_admin_can_issue(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        admin: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        result = await issue_certificate(
            db_session, ledger, _command(admin, recipient), settings=test_settings
        )

        assert result.issuer_id == admin.id

    async def test_unknown_issuer_rejected(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        ghost = UserFactory.build(role=UserRole.ISSUER)

        with pytest.raises(ValidationError) as exc_info:
            await issue_certificate(
                db_session, ledger, _command(ghost, recipient), settings=test_settings
            )

        assert exc_info.value.field == "issuer_id"

    async def test_inactive_recipient_rejected(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        default_template: Template,
        test_settings: Settings,
    ):
        inactive = await create_async(UserFactory, db_session, is_active=False)

        with pytest.raises(ValidationError) as exc_info:
            await issue_certificate(
                db_session, ledger, _command(issuer, inactive), settings=test_settings
            )

        assert exc_info.value.field == "recipient_id"

    async def test_no_default_template(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        test_settings: Settings,
    ):
        with pytest.raises(RenderError) as exc_info:
            await issue_certificate(
                db_session, ledger, _command(issuer, recipient), settings=test_settings
            )

        assert exc_info.value.reason == RenderErrorReason.TEMPLATE_NOT_FOUND

    async def test_unknown_template_version(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        with pytest.raises(RenderError) as exc_info:
            await issue_certificate(
                db_session,
                ledger,
                _command(issuer, recipient, template_id="classic", template_version=9),
                settings=test_settings,
            )

        assert exc_info.value.reason == RenderErrorReason.TEMPLATE_NOT_FOUND

    async def test_template_id_uses_latest_version(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        await TemplateRepository(db_session).create_version(
            "classic",
            name="Classic v2",
            html=DEFAULT_TEMPLATE_HTML + "<footer>v2</footer>",
        )

        latest = await issue_certificate(
            db_session,
            ledger,
            _command(issuer, recipient, template_id="classic"),
            settings=test_settings,
        )
        pinned = await issue_certificate(
            db_session,
            ledger,
            _command(issuer, recipient, template_id="classic", template_version=1),
            settings=test_settings,
        )

        assert latest.template_version == 2
        assert pinned.template_version == 1

    async def test_missing_placeholder_stores_nothing(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        test_settings: Settings,
    ):
        template = Template(
            id="graded",
            version=1,
            name="Graded",
            html="<p>{{recipientName}} earned {{grade}}</p>",
            styles={},
            placeholders=["recipientName", "grade"],
            is_default=True,
        )
        db_session.add(template)
        await db_session.flush()

        with pytest.raises(RenderError) as exc_info:
            await issue_certificate(
                db_session,
                ledger,
                _command(issuer, recipient, anchor=True),
                settings=test_settings,
            )

        assert exc_info.value.placeholders == ["grade"]
        assert ledger.records == {}
        assert await _certificate_count(db_session) == 0

    async def test_metadata_fills_placeholder(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        test_settings: Settings,
    ):
        template = Template(
            id="graded",
            version=1,
            name="Graded",
            html="<p>{{recipientName}} earned {{grade}} in {{courseName}}</p>",
            styles={},
            placeholders=["grade"],
            is_default=True,
        )
        db_session.add(template)
        await db_session.flush()

        result = await issue_certificate(
            db_session,
            ledger,
            _command(
                issuer,
                recipient,
                metadata={"grade": "A", "course_name": "AWS 101"},
            ),
            settings=test_settings,
        )
        document = await render_certificate_document(db_session, result.id)

        assert result.metadata == {"grade": "A", "course_name": "AWS 101"}
        assert "Grace Hopper earned A in AWS 101" in document


class TestIssueConflicts:
    """Tests for identifier collisions on insert."""

    async def test_retries_with_fresh_identifiers(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        existing = await create_async(
            CertificateFactory,
            db_session,
            issuer_id=issuer.id,
            recipient_id=recipient.id,
        )
        db_session.expunge(existing)
        fresh_id = uuid.uuid4()

        with patch(
            "services.issuance_service.uuid.uuid4",
            side_effect=[uuid.UUID(existing.id), fresh_id],
        ):
            result = await issue_certificate(
                db_session, ledger, _command(issuer, recipient), settings=test_settings
            )

        assert result.id == str(fresh_id)
        assert await _certificate_count(db_session) == 2

    async def test_gives_up_after_second_conflict(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        attempts: list[str] = []

        async def always_conflict(self, **fields):
            attempts.append(fields["id"])
            raise PersistenceConflictError("duplicate")

        with patch.object(CertificateRepository, "create", always_conflict):
            with pytest.raises(PersistenceConflictError):
                await issue_certificate(
                    db_session,
                    ledger,
                    _command(issuer, recipient),
                    settings=test_settings,
                )

        assert len(attempts) == 2
        assert attempts[0] != attempts[1]
        assert await _certificate_count(db_session) == 0

    async def test_conflict_after_anchoring_logs_orphaned_reference(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        existing = await create_async(
            CertificateFactory,
            db_session,
            issuer_id=issuer.id,
            recipient_id=recipient.id,
        )
        db_session.expunge(existing)

        with (
            patch(
                "services.issuance_service.uuid.uuid4",
                side_effect=[uuid.UUID(existing.id), uuid.uuid4()],
            ),
            patch("core.ledger.logger") as ledger_logger,
        ):
            result = await issue_certificate(
                db_session,
                ledger,
                _command(issuer, recipient, anchor=True),
                settings=test_settings,
            )

        assert len(ledger.records) == 2
        ledger_logger.error.assert_called_once()
        assert ledger_logger.error.call_args.args == ("anchor.orphaned",)
        extra = ledger_logger.error.call_args.kwargs["extra"]
        assert extra["certificate_id"] == existing.id
        assert extra["reason"] == "insert_conflict"
        assert extra["reference"] in ledger.records
        assert extra["reference"] != result.blockchain_hash


class TestIssueUniqueness:
    """Issuing many certificates never repeats an id or serial number."""

    async def test_many_issuances_have_distinct_identifiers(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        count = 25
        results = [
            await issue_certificate(
                db_session,
                ledger,
                _command(issuer, recipient, title=f"Course {i}"),
                settings=test_settings,
            )
            for i in range(count)
        ]

        assert len({r.id for r in results}) == count
        assert len({r.serial_number for r in results}) == count
        assert await db_session.scalar(
            select(func.count(func.distinct(Certificate.serial_number)))
        ) == count
        assert await _certificate_count(db_session) == count

    async def test_taken_serial_is_never_reused(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        existing = await create_async(
            CertificateFactory,
            db_session,
            issuer_id=issuer.id,
            recipient_id=recipient.id,
        )
        fresh_serial = generate_serial_number("CRT")

        with patch(
            "services.issuance_service.generate_serial_number",
            side_effect=[existing.serial_number, fresh_serial],
        ):
            result = await issue_certificate(
                db_session, ledger, _command(issuer, recipient), settings=test_settings
            )

        assert result.serial_number == fresh_serial
        assert result.id != existing.id


class TestRevokeCertificate:
    """Tests for revoke_certificate()."""

    @pytest.fixture
    async def issued(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        return await issue_certificate(
            db_session, ledger, _command(issuer, recipient), settings=test_settings
        )

    async def test_issuer_can_revoke(
        self, db_session: AsyncSession, issued, issuer: User
    ):
        result = await revoke_certificate(
            db_session, issued.id, reason="Issued in error", revoked_by=issuer.id
        )

        assert result.status == CertificateStatus.REVOKED
        assert result.effective_status == EffectiveStatus.REVOKED
        assert result.revocation_reason == "Issued in error"
        assert result.revoked_at is not None

    async def test_admin_can_revoke(self, db_session: AsyncSession, issued, admin: User):
        result = await revoke_certificate(
            db_session, issued.id, reason="Policy breach", revoked_by=admin.id
        )

        assert result.status == CertificateStatus.REVOKED

    async def test_other_issuer_cannot_revoke(
        self, db_session: AsyncSession, issued
    ):
        other = await create_async(UserFactory, db_session, role=UserRole.ISSUER)

        with pytest.raises(RevocationNotAllowedError):
            await revoke_certificate(
                db_session, issued.id, reason="Not mine", revoked_by=other.id
            )

    async def test_unknown_actor_cannot_revoke(self, db_session: AsyncSession, issued):
        with pytest.raises(RevocationNotAllowedError):
            await revoke_certificate(
                db_session, issued.id, reason="Who am I", revoked_by="user_ghost"
            )

    async def test_revoking_twice_fails(
        self, db_session: AsyncSession, issued, issuer: User
    ):
        await revoke_certificate(
            db_session, issued.id, reason="First", revoked_by=issuer.id
        )

        with pytest.raises(InvalidTransitionError, match="already revoked"):
            await revoke_certificate(
                db_session, issued.id, reason="Second", revoked_by=issuer.id
            )

    async def test_blank_reason_rejected(
        self, db_session: AsyncSession, issued, issuer: User
    ):
        with pytest.raises(ValidationError):
            await revoke_certificate(
                db_session, issued.id, reason="  ", revoked_by=issuer.id
            )

    async def test_unknown_certificate(self, db_session: AsyncSession, issuer: User):
        with pytest.raises(CertificateNotFoundError):
            await revoke_certificate(
                db_session, str(uuid.uuid4()), reason="Gone", revoked_by=issuer.id
            )

    async def test_content_is_unchanged(
        self, db_session: AsyncSession, issued, issuer: User
    ):
        result = await revoke_certificate(
            db_session, issued.id, reason="Issued in error", revoked_by=issuer.id
        )

        assert result.fingerprint == issued.fingerprint
        assert result.title == issued.title
        assert result.serial_number == issued.serial_number


class TestReadCertificates:
    async def test_get_certificate(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        issued = await issue_certificate(
            db_session, ledger, _command(issuer, recipient), settings=test_settings
        )

        result = await get_certificate(db_session, issued.id)

        assert result.id == issued.id
        assert result.recipient is not None
        assert result.recipient.email == recipient.email
        assert result.template is not None
        assert result.template.version == 1

    async def test_get_unknown_certificate(self, db_session: AsyncSession):
        with pytest.raises(CertificateNotFoundError):
            await get_certificate(db_session, str(uuid.uuid4()))

    async def test_list_by_recipient_and_issuer(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        for title in ("First", "Second"):
            await issue_certificate(
                db_session,
                ledger,
                _command(issuer, recipient, title=title),
                settings=test_settings,
            )

        by_recipient = await list_certificates(db_session, recipient_id=recipient.id)
        by_issuer = await list_certificates(db_session, issuer_id=issuer.id)

        assert len(by_recipient) == 2
        assert {c.id for c in by_recipient} == {c.id for c in by_issuer}

    async def test_list_requires_exactly_one_filter(self, db_session: AsyncSession):
        with pytest.raises(ValidationError):
            await list_certificates(db_session)
        with pytest.raises(ValidationError):
            await list_certificates(db_session, recipient_id="a", issuer_id="b")

    async def test_render_document(
        self,
        db_session: AsyncSession,
        ledger: InMemoryLedger,
        issuer: User,
        recipient: User,
        default_template: Template,
        test_settings: Settings,
    ):
        issued = await issue_certificate(
            db_session, ledger, _command(issuer, recipient), settings=test_settings
        )

        document = await render_certificate_document(db_session, issued.id)

        assert "Grace Hopper" in document
        assert "January 5, 2025" in document
        assert issued.serial_number in document
