"""Service layer for business logic.

Services encapsulate all business logic, keeping routes thin and focused
on HTTP handling. This separation provides:
- Clear business rules in one place
- Orchestration of repositories, rendering, hashing and the ledger
- Reusable logic across HTTP routes, the CLI and background tasks

Layer hierarchy:
    Routes (HTTP) -> Services (Business Logic) -> Repositories (Database)

Services should:
- Contain all business rules and validation
- Orchestrate calls to repositories
- Raise typed errors from core.errors
- Flush, never commit (the caller owns the transaction)

Services should NOT:
- Directly execute SQL queries (use repositories)
- Know about HTTP request/response details
"""
