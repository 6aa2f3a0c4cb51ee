"""Repository for certificate templates.

Templates are immutable per (id, version). "Editing" a template means
writing the next version; older versions stay readable forever so stored
certificates can be re-rendered exactly as issued.
"""

from collections.abc import Sequence
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from models import Template


class TemplateRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get_version(self, template_id: str, version: int) -> Template | None:
        result = await self.db.execute(
            select(Template).where(
                Template.id == template_id,
                Template.version == version,
            )
        )
        return result.scalar_one_or_none()

    async def get_latest(self, template_id: str) -> Template | None:
        result = await self.db.execute(
            select(Template)
            .where(Template.id == template_id)
            .order_by(Template.version.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_default(self) -> Template | None:
        """Latest version of the template flagged as default."""
        result = await self.db.execute(
            select(Template)
            .where(Template.is_default.is_(True))
            .order_by(Template.version.desc(), Template.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_versions(self, template_id: str) -> Sequence[Template]:
        result = await self.db.execute(
            select(Template)
            .where(Template.id == template_id)
            .order_by(Template.version)
        )
        return result.scalars().all()

    async def create_version(
        self,
        template_id: str,
        *,
        name: str,
        html: str,
        styles: dict[str, Any] | None = None,
        placeholders: list[str] | None = None,
        description: str | None = None,
        is_default: bool = False,
        created_by_id: str | None = None,
    ) -> Template:
        """Write the next version of a template.

        Calls flush() but does NOT commit; the caller owns the transaction.
        """
        current = await self.db.execute(
            select(func.max(Template.version)).where(Template.id == template_id)
        )
        next_version = (current.scalar_one_or_none() or 0) + 1

        template = Template(
            id=template_id,
            version=next_version,
            name=name,
            description=description,
            html=html,
            styles=styles or {},
            placeholders=placeholders or [],
            is_default=is_default,
            created_by_id=created_by_id,
        )
        self.db.add(template)
        await self.db.flush()
        return template
