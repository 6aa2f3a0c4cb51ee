"""Repository for certificate operations."""

from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import exists, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import PersistenceConflictError
from models import AnchorState, Certificate, CertificateStatus
from repositories.utils import log_slow_query


class CertificateRepository:
    """Repository for certificate CRUD operations."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get_by_id(self, certificate_id: str) -> Certificate | None:
        result = await self.db.execute(
            select(Certificate).where(Certificate.id == certificate_id)
        )
        return result.scalar_one_or_none()

    @log_slow_query("get_certificate_by_serial")
    async def get_by_serial(self, serial_number: str) -> Certificate | None:
        """Get a certificate by its serial number (for public verification).

        Expects serial_number to be normalized by the service layer.
        """
        result = await self.db.execute(
            select(Certificate).where(Certificate.serial_number == serial_number)
        )
        return result.scalar_one_or_none()

    async def serial_exists(self, serial_number: str) -> bool:
        result = await self.db.execute(
            select(exists().where(Certificate.serial_number == serial_number))
        )
        return bool(result.scalar())

    async def get_for_update(self, certificate_id: str) -> Certificate | None:
        """Load a certificate with a row lock (SELECT ... FOR UPDATE).

        SQLite ignores the lock clause; the optimistic version_id check on
        flush still catches concurrent writers there.
        """
        result = await self.db.execute(
            select(Certificate)
            .where(Certificate.id == certificate_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @log_slow_query("list_certificates_by_recipient")
    async def list_by_recipient(
        self,
        recipient_id: str,
        *,
        limit: int = 100,
    ) -> Sequence[Certificate]:
        """Certificates held by a recipient, most recent first."""
        result = await self.db.execute(
            select(Certificate)
            .where(Certificate.recipient_id == recipient_id)
            .order_by(Certificate.issue_date.desc(), Certificate.created_at.desc())
            .limit(limit)
        )
        return result.scalars().all()

    @log_slow_query("list_certificates_by_issuer")
    async def list_by_issuer(
        self,
        issuer_id: str,
        *,
        limit: int = 100,
    ) -> Sequence[Certificate]:
        """Certificates issued by a user, most recent first."""
        result = await self.db.execute(
            select(Certificate)
            .where(Certificate.issuer_id == issuer_id)
            .order_by(Certificate.issue_date.desc(), Certificate.created_at.desc())
            .limit(limit)
        )
        return result.scalars().all()

    @log_slow_query("list_due_deferred_anchors")
    async def list_due_for_anchor(
        self,
        now: datetime,
        *,
        limit: int = 50,
    ) -> Sequence[Certificate]:
        """Issued certificates waiting on a deferred anchor whose retry is due."""
        result = await self.db.execute(
            select(Certificate)
            .where(
                Certificate.anchor_state == AnchorState.PENDING_RETRY,
                Certificate.status == CertificateStatus.ISSUED,
                Certificate.next_anchor_attempt_at <= now,
            )
            .order_by(Certificate.next_anchor_attempt_at)
            .limit(limit)
        )
        return result.scalars().all()

    async def count_by_anchor_state(self) -> dict[AnchorState, int]:
        """Issued certificates per anchor state, for operational dashboards."""
        result = await self.db.execute(
            select(Certificate.anchor_state, func.count())
            .where(Certificate.status == CertificateStatus.ISSUED)
            .group_by(Certificate.anchor_state)
        )
        return {state: count for state, count in result.all()}

    async def create(self, **fields: Any) -> Certificate:
        """Insert a certificate inside a savepoint.

        Calls flush() but does NOT commit; the caller is responsible for
        transaction management. A duplicate id or serial number rolls back
        only the savepoint and raises PersistenceConflictError, so the
        caller can retry with fresh identifiers in the same transaction.
        """
        certificate = Certificate(**fields)
        try:
            async with self.db.begin_nested():
                self.db.add(certificate)
                await self.db.flush()
        except IntegrityError as e:
            raise PersistenceConflictError(
                "Certificate id or serial number already exists"
            ) from e
        return certificate
