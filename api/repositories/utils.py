"""Timing and failure logging for repository queries."""

import time
from collections.abc import Awaitable, Callable, Sized
from functools import wraps
from typing import ParamSpec, TypeVar

from core.config import get_settings
from core.logger import get_logger

logger = get_logger(__name__)

P = ParamSpec("P")
R = TypeVar("R")


def log_slow_query(
    operation_name: str,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """Decorator that logs repository calls slower than DB_SLOW_QUERY_MS.

    Failures are logged at ERROR and re-raised. For list-returning queries
    the slow-query line also carries the row count, which separates a bad
    plan from a large result.

    Usage:
        @log_slow_query("list_due_deferred_anchors")
        async def list_due_for_anchor(self, now: datetime) -> Sequence[Certificate]:
            ...
    """

    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            start_time = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    "db.query.failed",
                    db_operation=operation_name,
                    db_duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                    db_error_type=type(e).__name__,
                )
                raise

            duration_ms = (time.perf_counter() - start_time) * 1000
            if duration_ms > get_settings().db_slow_query_ms:
                logger.warning(
                    "db.query.slow",
                    db_operation=operation_name,
                    db_duration_ms=round(duration_ms, 2),
                    db_rows=len(result) if isinstance(result, Sized) else None,
                )
            return result

        return wrapper

    return decorator
