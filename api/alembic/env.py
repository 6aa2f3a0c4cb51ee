from __future__ import annotations

import logging
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from logging.config import fileConfig
from pathlib import Path

from sqlalchemy import Connection, create_engine, text

# Ensure parent directory (api/) is in Python path for module imports
sys.path.insert(0, str(Path(__file__).parent.parent))

# Import models so they register with Base.metadata
import models  # noqa: F401
from alembic import context
from core.config import get_settings
from core.database import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

# Use SQLAlchemy model metadata for autogenerate
target_metadata = Base.metadata

# Shared by every replica of this service
_ADVISORY_LOCK_KEY = 418907223

_LOCK_TIMEOUT_SECONDS = 120


def _get_sync_database_url() -> str:
    """Get a synchronous database URL for migrations.

    Uses psycopg2 / sqlite3 (synchronous drivers) instead of asyncpg /
    aiosqlite to avoid event loop conflicts when running in a subprocess
    or background thread.
    """
    url = get_settings().database_url
    if "+asyncpg" in url:
        url = url.replace("+asyncpg", "+psycopg2")
    if "+aiosqlite" in url:
        url = url.replace("+aiosqlite", "")
    return url


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    url = _get_sync_database_url()
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


@contextmanager
def _migration_lock(connection: Connection) -> Iterator[None]:
    """Hold a Postgres advisory lock so only one replica migrates at a time.

    SQLite is single-writer already and gets no lock.
    """
    logger = logging.getLogger("alembic")
    if connection.dialect.name != "postgresql":
        yield
        return

    deadline = time.monotonic() + _LOCK_TIMEOUT_SECONDS
    while True:
        result = connection.execute(
            text("SELECT pg_try_advisory_lock(:key)"), {"key": _ADVISORY_LOCK_KEY}
        )
        acquired = result.scalar()
        result.close()
        if acquired:
            connection.commit()
            logger.info("migration.lock.acquired")
            break
        if time.monotonic() >= deadline:
            raise RuntimeError(
                f"Failed to acquire migration lock within {_LOCK_TIMEOUT_SECONDS}s. "
                "Another process may be stuck holding the lock."
            )
        logger.debug("migration.lock.waiting")
        time.sleep(2)

    try:
        yield
    finally:
        try:
            connection.execute(
                text("SELECT pg_advisory_unlock(:key)"), {"key": _ADVISORY_LOCK_KEY}
            ).close()
            logger.info("migration.lock.released")
        except Exception as unlock_error:
            # Released with the session anyway
            logger.warning("migration.lock.release_failed: %s", unlock_error)


def _run_migrations(connection: Connection) -> None:
    with _migration_lock(connection):
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()


def run_migrations_online() -> None:
    url = _get_sync_database_url()
    engine = create_engine(url)

    with engine.connect() as connection:
        _run_migrations(connection)


def run() -> None:
    if context.is_offline_mode():
        run_migrations_offline()
    else:
        run_migrations_online()


run()
