# src/shared/middleware.py
from __future__ import annotations

import time
from typing import Optional

from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from src.shared.logging import bind_request_context, clear_request_context, get_logger, set_correlation_id

logger = get_logger("http")

TENANT_HEADER = "X-Tenant-ID"


class CorrelationIdMiddleware:
    """
    Request-scoped log context for the HTTP surface.

    Every request gets a correlation id (taken from ``X-Correlation-ID`` or generated) that
    is echoed back in the response headers. The caller's tenant header, when sent, is bound
    as well so ingestion and dispatch log lines can be filtered per tenant. One
    ``request_finished`` line is logged per request.
    """

    def __init__(self, app: ASGIApp, header_name: str = "X-Correlation-ID"):
        self.app = app
        self.header_name = header_name
        self._raw_header = header_name.lower().encode("latin-1")

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        corr = set_correlation_id(headers.get(self.header_name))
        scope.setdefault("state", {})["correlation_id"] = corr
        bind_request_context(
            path=scope.get("path"),
            method=scope.get("method"),
            tenant_id=_tenant_hint(headers.get(TENANT_HEADER)),
        )
        started = time.perf_counter()
        status_code = 500

        async def send_with_correlation(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message.get("status", 500)
                message["headers"] = [
                    *[(k, v) for k, v in message.get("headers", []) if k.lower() != self._raw_header],
                    (self._raw_header, corr.encode("latin-1")),
                ]
            await send(message)

        try:
            await self.app(scope, receive, send_with_correlation)
        finally:
            log = logger.warning if status_code >= 500 else logger.info
            log(
                "request_finished",
                status_code=status_code,
                duration_ms=round((time.perf_counter() - started) * 1000.0, 2),
            )
            clear_request_context()


def _tenant_hint(value: Optional[str]) -> Optional[str]:
    # Logged as sent; validation happens in the route dependency.
    value = (value or "").strip()
    return value[:64] or None
