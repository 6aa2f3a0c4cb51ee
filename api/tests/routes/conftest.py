"""Route test configuration: rate limiter off, committed seed data."""

from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from models import Template, User


@pytest.fixture(autouse=True)
def _disable_rate_limiter():
    """Disable slowapi rate limiting so route handlers can be called directly."""
    with patch("core.ratelimit.limiter.enabled", False):
        yield


@pytest.fixture
async def seeded(
    db_session: AsyncSession,
    issuer: User,
    admin: User,
    recipient: User,
    default_template: Template,
) -> dict[str, User | Template]:
    """Commit users and the default template so request sessions can see them."""
    await db_session.commit()
    return {
        "issuer": issuer,
        "admin": admin,
        "recipient": recipient,
        "template": default_template,
    }
