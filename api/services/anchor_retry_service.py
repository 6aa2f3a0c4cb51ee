"""Deferred anchor retries.

Certificates issued while the ledger was unavailable are stored with
``anchor_state=pending_retry``. This module retries them with exponential
backoff until they are anchored or the attempt budget runs out, at which
point they fall back to ``unanchored`` (still valid, record-only trust).
"""

import asyncio
import logging
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from core.config import Settings, get_settings
from core.errors import AnchorRejectedError, AnchorUnavailableError
from core.ledger import AnchorAdapter, log_orphaned_anchor
from models import AnchorState, CertificateStatus, utcnow
from repositories.certificate_repository import CertificateRepository
from schemas import AnchorRetryReport

logger = logging.getLogger(__name__)


def next_retry_delay(attempts: int, *, base_seconds: int, max_seconds: int) -> timedelta:
    """Backoff after ``attempts`` failed retries: base * 2**attempts, capped."""
    return timedelta(seconds=min(max_seconds, base_seconds * 2**attempts))


async def retry_deferred_anchors(
    db: AsyncSession,
    adapter: AnchorAdapter,
    *,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> AnchorRetryReport:
    """Retry one batch of due deferred anchors.

    Stops at the first outage; certificates after it in the batch keep
    their schedule and attempt count. Flushes but does NOT commit.
    """
    settings = settings or get_settings()
    now = now or utcnow()
    report = AnchorRetryReport()
    cert_repo = CertificateRepository(db)

    due = await cert_repo.list_due_for_anchor(
        now, limit=settings.anchor_retry_batch_size
    )
    due_ids = [c.id for c in due]

    for certificate_id in due_ids:
        reference: str | None = None
        try:
            async with db.begin_nested():
                certificate = await cert_repo.get_for_update(certificate_id)
                if (
                    certificate is None
                    or certificate.anchor_state != AnchorState.PENDING_RETRY
                    or certificate.status != CertificateStatus.ISSUED
                ):
                    report.skipped += 1
                    continue

                report.attempted += 1
                try:
                    reference = await adapter.anchor(
                        bytes.fromhex(certificate.fingerprint)
                    )
                except AnchorUnavailableError as e:
                    certificate.anchor_attempts += 1
                    if certificate.anchor_attempts >= settings.anchor_retry_max_attempts:
                        certificate.anchor_state = AnchorState.UNANCHORED
                        certificate.next_anchor_attempt_at = None
                        report.abandoned += 1
                        logger.error(
                            "anchor.retry.abandoned",
                            extra={
                                "certificate_id": certificate_id,
                                "attempts": certificate.anchor_attempts,
                                "error": e.message,
                            },
                        )
                    else:
                        certificate.next_anchor_attempt_at = now + next_retry_delay(
                            certificate.anchor_attempts,
                            base_seconds=settings.anchor_retry_base_delay_seconds,
                            max_seconds=settings.anchor_retry_max_delay_seconds,
                        )
                        report.deferred += 1
                        logger.warning(
                            "anchor.retry.deferred",
                            extra={
                                "certificate_id": certificate_id,
                                "attempts": certificate.anchor_attempts,
                            },
                        )
                    await db.flush()
                    break
                except AnchorRejectedError as e:
                    certificate.anchor_attempts += 1
                    certificate.anchor_state = AnchorState.UNANCHORED
                    certificate.next_anchor_attempt_at = None
                    report.abandoned += 1
                    logger.error(
                        "anchor.retry.rejected",
                        extra={"certificate_id": certificate_id, "error": e.message},
                    )
                else:
                    certificate.anchor_state = AnchorState.ANCHORED
                    certificate.blockchain_hash = reference
                    certificate.anchored_at = now
                    certificate.next_anchor_attempt_at = None
                await db.flush()
                if reference is not None:
                    report.anchored += 1
                    logger.info(
                        "anchor.retry.anchored",
                        extra={"certificate_id": certificate_id},
                    )
        except StaleDataError:
            report.skipped += 1
            logger.warning(
                "anchor.retry.concurrent_update",
                extra={"certificate_id": certificate_id},
            )
            if reference is not None:
                report.orphaned += 1
                log_orphaned_anchor(
                    certificate_id, reference, reason="concurrent_update"
                )

    if report.attempted:
        logger.info("anchor.retry.batch_completed", extra=report.model_dump())
    return report


async def run_anchor_retry_batch(
    session_maker: async_sessionmaker[AsyncSession],
    adapter: AnchorAdapter,
) -> AnchorRetryReport:
    """Run one retry batch in its own transaction."""
    async with session_maker() as session:
        try:
            report = await retry_deferred_anchors(session, adapter)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
    return report


async def anchor_retry_loop(
    session_maker: async_sessionmaker[AsyncSession],
    adapter: AnchorAdapter,
    interval_seconds: int,
) -> None:
    """Background loop that retries deferred anchors on a timer.

    Runs forever until cancelled. Failures are logged but do not stop the
    loop; due certificates are picked up again on the next tick.
    """
    while True:
        try:
            await run_anchor_retry_batch(session_maker, adapter)
        except Exception:
            logger.exception("anchor.retry.batch_failed")
        await asyncio.sleep(interval_seconds)
