"""Ledger adapters for anchoring certificate fingerprints.

The engine only needs two capabilities from a ledger: record a fingerprint
and get back an opaque reference, and later confirm that a reference still
holds a given fingerprint. Failures come in two flavours:

- ``AnchorUnavailableError``: network down, timeout, 5xx, circuit open.
  Retryable; issuance defers the anchor.
- ``AnchorRejectedError``: the ledger refused the write (4xx). Fatal for the
  current issuance attempt.

SCALABILITY:
- Circuit breaker fails fast when the ledger is down (5 failures -> 60s)
- Retry with exponential backoff for transient failures (3 attempts)
- Connection pooling via a shared httpx.AsyncClient per adapter
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Annotated, Protocol

import httpx
from circuitbreaker import CircuitBreakerError, circuit
from fastapi import Depends, Request
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)
from tenacity.wait import wait_base

from core.config import Settings
from core.errors import AnchorRejectedError, AnchorUnavailableError

logger = logging.getLogger(__name__)


class AnchorAdapter(Protocol):
    async def anchor(self, fingerprint: bytes) -> str: ...

    async def confirm(self, reference: str, fingerprint: bytes) -> bool: ...

    async def aclose(self) -> None: ...


class InMemoryLedger:
    """Process-local ledger for development and tests.

    ``fail_with`` makes every call raise the given error class until it is
    cleared, which is how tests simulate an outage or a refusal.
    """

    backend = "memory"

    def __init__(self) -> None:
        self.records: dict[str, bytes] = {}
        self.fail_with: type[AnchorUnavailableError | AnchorRejectedError] | None = (
            None
        )
        self._counter = itertools.count(1)

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with("In-memory ledger configured to fail")

    async def anchor(self, fingerprint: bytes) -> str:
        self._maybe_fail()
        reference = f"mem:{next(self._counter)}"
        self.records[reference] = fingerprint
        return reference

    async def confirm(self, reference: str, fingerprint: bytes) -> bool:
        self._maybe_fail()
        return self.records.get(reference) == fingerprint

    async def aclose(self) -> None:
        return None


class LedgerServerError(Exception):
    """Raised when the ledger returns a 5xx error (retriable)."""


# Exceptions that should trigger retry and circuit breaker
RETRIABLE_EXCEPTIONS: tuple[type[Exception], ...] = (
    httpx.RequestError,
    httpx.TimeoutException,
    LedgerServerError,
)


class HttpLedger:
    """Client for a ledger gateway exposing ``/anchors``.

    ``POST /anchors`` with ``{"fingerprint": <hex>}`` returns
    ``{"reference": ...}``; ``GET /anchors/{reference}`` returns
    ``{"fingerprint": <hex>}``.
    """

    backend = "http"

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_wait: wait_base | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._api_key = api_key
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

        retrying = retry(
            stop=stop_after_attempt(3),
            wait=retry_wait or wait_exponential_jitter(initial=0.5, max=10),
            retry=retry_if_exception_type(RETRIABLE_EXCEPTIONS),
            reraise=True,
        )
        breaker = circuit(
            failure_threshold=5,
            recovery_timeout=60,
            expected_exception=RETRIABLE_EXCEPTIONS,
            name=f"ledger_circuit:{self.base_url}",
        )
        self._send = breaker(retrying(self._send_once))

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None and not self._client.is_closed:
            return self._client

        async with self._client_lock:
            if self._client is not None and not self._client.is_closed:
                return self._client

            headers = {"Accept": "application/json"}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"

            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=httpx.Timeout(self.timeout, connect=5.0),
                follow_redirects=False,
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
                transport=self._transport,
            )
            return self._client

    async def _send_once(
        self, method: str, path: str, json_body: dict | None = None
    ) -> httpx.Response:
        client = await self._get_client()
        response = await client.request(method, path, json=json_body)
        if response.status_code >= 500:
            raise LedgerServerError(f"Ledger returned {response.status_code}")
        return response

    async def _request(
        self, method: str, path: str, json_body: dict | None = None
    ) -> httpx.Response:
        try:
            async with asyncio.timeout(self.timeout):
                return await self._send(method, path, json_body)
        except CircuitBreakerError as e:
            logger.warning("ledger.circuit_open", extra={"url": self.base_url})
            raise AnchorUnavailableError("Ledger circuit is open") from e
        except TimeoutError as e:
            logger.warning(
                "ledger.timeout",
                extra={"url": self.base_url, "timeout": self.timeout},
            )
            raise AnchorUnavailableError("Ledger request timed out") from e
        except RETRIABLE_EXCEPTIONS as e:
            logger.warning(
                "ledger.unavailable",
                extra={"url": self.base_url, "error": str(e)},
            )
            raise AnchorUnavailableError(f"Ledger unavailable: {e}") from e

    async def anchor(self, fingerprint: bytes) -> str:
        response = await self._request(
            "POST", "/anchors", {"fingerprint": fingerprint.hex()}
        )
        if response.status_code >= 400:
            logger.warning(
                "ledger.anchor.rejected",
                extra={"status_code": response.status_code},
            )
            raise AnchorRejectedError(
                f"Ledger rejected anchor (HTTP {response.status_code})"
            )

        try:
            reference = response.json()["reference"]
        except (ValueError, KeyError, TypeError) as e:
            raise AnchorRejectedError("Ledger returned a malformed anchor") from e

        if not isinstance(reference, str) or not reference:
            raise AnchorRejectedError("Ledger returned an empty reference")
        return reference

    async def confirm(self, reference: str, fingerprint: bytes) -> bool:
        response = await self._request("GET", f"/anchors/{reference}")
        if response.status_code == 404:
            return False
        if response.status_code >= 400:
            raise AnchorRejectedError(
                f"Ledger refused lookup (HTTP {response.status_code})"
            )

        try:
            recorded = response.json()["fingerprint"]
        except (ValueError, KeyError, TypeError):
            return False
        return isinstance(recorded, str) and recorded.lower() == fingerprint.hex()

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None


def build_anchor_adapter(settings: Settings) -> InMemoryLedger | HttpLedger:
    if settings.anchor_backend == "http":
        return HttpLedger(
            settings.ledger_url,
            api_key=settings.ledger_api_key,
            timeout=settings.anchor_timeout_seconds,
        )
    return InMemoryLedger()


def get_anchor_adapter(request: Request) -> AnchorAdapter:
    return request.app.state.anchor_adapter


LedgerDep = Annotated[AnchorAdapter, Depends(get_anchor_adapter)]


def log_orphaned_anchor(certificate_id: str, reference: str, *, reason: str) -> None:
    """Record a ledger anchor that no stored certificate points at.

    Ledger entries cannot be withdrawn, so the reference is logged at ERROR
    for reconciliation.
    """
    logger.error(
        "anchor.orphaned",
        extra={
            "certificate_id": certificate_id,
            "reference": reference,
            "reason": reason,
        },
    )
