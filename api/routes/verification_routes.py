"""Public verification endpoints.

Verification never returns an error for an unknown certificate: a
``not_found`` verdict is a normal answer.
"""

from fastapi import APIRouter, Query, Request

from core.database import DbSession
from core.ledger import LedgerDep
from core.ratelimit import batch_verify_limit, limiter, verify_limit
from schemas import (
    BatchVerificationResult,
    BatchVerifyRequest,
    MerkleVerificationResponse,
    MerkleVerifyRequest,
    VerificationResult,
)
from services.verification_service import (
    verify_batch,
    verify_by_serial,
    verify_merkle_batch,
)

router = APIRouter(prefix="/api/verify", tags=["verification"])


@router.get("", response_model=VerificationResult)
@limiter.limit(verify_limit)
async def verify_serial_endpoint(
    request: Request,
    db: DbSession,
    ledger: LedgerDep,
    serial: str = Query(min_length=1, max_length=64),
) -> VerificationResult:
    """Verify a certificate by the serial number printed on it."""
    return await verify_by_serial(db, ledger, serial)


@router.post("/batch", response_model=BatchVerificationResult)
@limiter.limit(batch_verify_limit)
async def verify_batch_endpoint(
    request: Request,
    body: BatchVerifyRequest,
    db: DbSession,
    ledger: LedgerDep,
) -> BatchVerificationResult:
    """Verify up to 50 certificates by id or serial number."""
    return await verify_batch(db, ledger, body.locators)


@router.post("/merkle", response_model=MerkleVerificationResponse)
@limiter.limit(batch_verify_limit)
async def verify_merkle_endpoint(
    request: Request,
    body: MerkleVerifyRequest,
) -> MerkleVerificationResponse:
    """Check Merkle inclusion proofs for up to 50 fingerprints against a root."""
    return verify_merkle_batch(body.root, body.proofs)
