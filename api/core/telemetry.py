"""Request context and response hardening middleware.

Pure ASGI middleware (no BaseHTTPMiddleware) so streaming responses and
background tasks are not buffered.
"""

import os
import re
import time
import uuid

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from core.logger import bind_contextvars, clear_contextvars, get_logger

logger = get_logger(__name__)

SERVICE_NAME = os.getenv("SERVICE_NAME", "credential-engine")
SERVICE_VERSION = os.getenv("SERVICE_VERSION", "0.1.0")

# Requests slower than this are always logged
SLOW_REQUEST_MS = 1000

# Caller-supplied request ids are reused only when they look like ids
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{8,128}$")


def resolve_request_id(scope: Scope) -> str:
    """Reuse an inbound x-request-id when it is well formed, else mint one."""
    for name, value in scope.get("headers", []):
        if name == b"x-request-id":
            candidate = value.decode("latin-1").strip()
            if _REQUEST_ID_RE.match(candidate):
                return candidate
            break
    return str(uuid.uuid4())


class SecurityHeadersMiddleware:
    """Adds security headers (X-Content-Type-Options, X-Frame-Options, CSP, etc)."""

    SECURITY_HEADERS: list[tuple[bytes, bytes]] = [
        (b"x-content-type-options", b"nosniff"),
        (b"x-frame-options", b"DENY"),
        (b"x-xss-protection", b"0"),
        (b"referrer-policy", b"strict-origin-when-cross-origin"),
        (
            b"content-security-policy",
            b"default-src 'self';"
            b" style-src 'self' 'unsafe-inline';"
            b" img-src 'self' https: data:;"
            b" font-src 'self';"
            b" frame-ancestors 'none'",
        ),
        (b"strict-transport-security", b"max-age=31536000; includeSubDomains"),
        (b"permissions-policy", b"camera=(), microphone=(), geolocation=()"),
    ]

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_wrapper(message: Message) -> None:
            if message.get("type") == "http.response.start":
                headers: list[tuple[bytes, bytes]] = list(message.get("headers", []))
                headers.extend(self.SECURITY_HEADERS)
                message["headers"] = headers
            await send(message)

        await self.app(scope, receive, send_wrapper)


class RequestContextMiddleware:
    """Binds request context into structlog and emits one line per notable request.

    - request_id (inbound x-request-id when valid), method and path are bound to contextvars, so every log line
      emitted while handling the request carries them
    - x-request-id and x-request-duration-ms response headers
    - request.completed is logged for errors and slow requests
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start_time = time.perf_counter()
        method = scope.get("method", "UNKNOWN")
        path = scope.get("path", "")
        request_id = resolve_request_id(scope)

        clear_contextvars()
        bind_contextvars(
            request_id=request_id,
            http_method=method,
            http_path=path,
            service_name=SERVICE_NAME,
        )

        response_status: int | None = None

        async def send_wrapper(message: Message) -> None:
            nonlocal response_status

            if message.get("type") == "http.response.start":
                response_status = int(message.get("status", 0))
                headers: list[tuple[bytes, bytes]] = list(message.get("headers", []))
                duration_ms = (time.perf_counter() - start_time) * 1000
                headers.append(
                    (b"x-request-duration-ms", f"{duration_ms:.2f}".encode())
                )
                headers.append((b"x-request-id", request_id.encode()))
                message["headers"] = headers

            elif message.get("type") == "http.response.body" and not message.get(
                "more_body", False
            ):
                duration_ms = (time.perf_counter() - start_time) * 1000
                route = scope.get("route")
                route_path = getattr(route, "path", None) or path

                should_emit = (
                    response_status is None
                    or response_status >= 400
                    or duration_ms > SLOW_REQUEST_MS
                )
                if should_emit:
                    logger.info(
                        "request.completed",
                        http_route=route_path,
                        http_status_code=response_status,
                        duration_ms=round(duration_ms, 2),
                        outcome=(
                            "success"
                            if response_status and response_status < 400
                            else "error"
                        ),
                    )

            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.info(
                "request.completed",
                duration_ms=round(duration_ms, 2),
                outcome="exception",
                exception_type=type(exc).__name__,
            )
            raise
        finally:
            clear_contextvars()
