"""Repository layer for database operations.

Repositories encapsulate all database queries, keeping services focused on
business rules. This separation provides:
- Single source of truth for database operations
- Easier testing (repositories can be mocked)
- Reusable queries across issuance, verification and background retries
"""

from repositories.certificate_repository import CertificateRepository
from repositories.template_repository import TemplateRepository
from repositories.user_repository import UserRepository
from repositories.utils import log_slow_query

__all__ = [
    "CertificateRepository",
    "TemplateRepository",
    "UserRepository",
    "log_slow_query",
]
