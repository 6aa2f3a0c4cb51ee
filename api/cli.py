#!/usr/bin/env python3
"""CLI for credential engine management tasks.

Usage:
    python -m cli <command>

Commands:
    migrate             Run database migrations
    retry-anchors       Retry one batch of deferred ledger anchors
    verify <locator>    Verify a certificate by id or serial number
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _get_alembic_config():
    from alembic.config import Config

    api_dir = Path(__file__).resolve().parent
    cfg = Config(str(api_dir / "alembic.ini"))
    # Make script_location absolute so it works from any working directory.
    cfg.set_main_option("script_location", str(api_dir / "alembic"))
    return cfg


def cmd_migrate() -> int:
    """Run database migrations."""
    from alembic import command

    logger.info("Running database migrations...")
    command.upgrade(_get_alembic_config(), "head")
    logger.info("Migrations complete")
    return 0


async def _retry_anchors() -> int:
    from core.config import get_settings
    from core.database import create_engine, create_session_maker, dispose_engine
    from core.ledger import build_anchor_adapter
    from services.anchor_retry_service import run_anchor_retry_batch

    engine = create_engine()
    adapter = build_anchor_adapter(get_settings())
    try:
        report = await run_anchor_retry_batch(create_session_maker(engine), adapter)
    finally:
        await adapter.aclose()
        await dispose_engine(engine)

    logger.info(
        f"Deferred anchors: attempted={report.attempted} anchored={report.anchored} "
        f"deferred={report.deferred} abandoned={report.abandoned} "
        f"skipped={report.skipped} orphaned={report.orphaned}"
    )
    return 0


def cmd_retry_anchors() -> int:
    """Retry one batch of deferred ledger anchors."""
    return asyncio.run(_retry_anchors())


async def _verify(locator: str) -> int:
    from core.config import get_settings
    from core.database import create_engine, create_session_maker, dispose_engine
    from core.ledger import build_anchor_adapter
    from schemas import Verdict
    from services.verification_service import verify_locator

    engine = create_engine()
    adapter = build_anchor_adapter(get_settings())
    try:
        async with create_session_maker(engine)() as session:
            result = await verify_locator(session, adapter, locator)
    finally:
        await adapter.aclose()
        await dispose_engine(engine)

    print(result.model_dump_json(indent=2))
    return 0 if result.verdict == Verdict.VALID else 2


def cmd_verify(locator: str) -> int:
    """Verify a certificate and print the structured verdict."""
    return asyncio.run(_verify(locator))


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Credential engine CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser(
        "migrate",
        help="Run database migrations",
    )
    subparsers.add_parser(
        "retry-anchors",
        help="Retry one batch of deferred ledger anchors",
    )
    verify_parser = subparsers.add_parser(
        "verify",
        help="Verify a certificate by id or serial number",
    )
    verify_parser.add_argument("locator", help="Certificate id or serial number")

    args = parser.parse_args()

    if args.command == "migrate":
        return cmd_migrate()
    elif args.command == "retry-anchors":
        return cmd_retry_anchors()
    elif args.command == "verify":
        return cmd_verify(args.locator)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
