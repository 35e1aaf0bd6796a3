# backend/shield_audit/api/middleware.py
"""ASGI middleware that records one api_request audit entry per HTTP request.

The entry is written after the response has been sent, with the endpoint,
method, status and duration in details, so the query engine's operational
filters (http_method, min/max duration) work over API traffic.

Usage:
    app.add_middleware(AuditRequestMiddleware, excluded_paths=("/health",))
"""

import logging
import time

from shield_audit.audit.errors import EventValidationError
from shield_audit.audit.models import AuditEventType, RawEvent
from shield_audit.audit.setup import get_recorder

logger = logging.getLogger(__name__)

USER_ID_HEADER = "x-user-id"
SESSION_ID_HEADER = "x-session-id"
REQUEST_ID_HEADER = "x-request-id"
CACHE_HEADER = "x-cache"

AUDIT_API_PREFIX = "/api/audit"


def resource_type_for_path(path: str) -> str:
    """Resource type written to the api_request entry for ``path``."""
    if path == AUDIT_API_PREFIX or path.startswith(f"{AUDIT_API_PREFIX}/"):
        return "audit_logs"
    return "api"


class AuditRequestMiddleware:
    """Record every HTTP request as an api_request entry.

    Recording uses the process-wide recorder; when it is not initialized the
    request passes through unrecorded.

    Args:
        app: The wrapped ASGI application
        lowest_privilege_role: user_id written when no X-User-ID header is sent
        excluded_paths: Paths never recorded (health checks, docs)
    """

    def __init__(
        self,
        app,
        lowest_privilege_role: str = "anonymous",
        excluded_paths: tuple[str, ...] = (),
    ):
        self.app = app
        self.lowest_privilege_role = lowest_privilege_role
        self.excluded_paths = frozenset(excluded_paths)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http" or scope.get("path", "") in self.excluded_paths:
            await self.app(scope, receive, send)
            return

        start_time = time.perf_counter()
        status_code = 500
        cache_header: str | None = None

        async def send_wrapper(message):
            nonlocal status_code, cache_header
            if message["type"] == "http.response.start":
                status_code = message.get("status", 500)
                cache_header = self._get_header(message.get("headers", []), CACHE_HEADER)
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception:
            status_code = 500
            raise
        finally:
            duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
            await self._record(scope, status_code, duration_ms, cache_header)

    async def _record(
        self, scope, status_code: int, duration_ms: float, cache_header: str | None
    ) -> None:
        recorder = get_recorder()
        if recorder is None:
            return

        headers = scope.get("headers", [])
        method = scope.get("method", "")
        path = scope.get("path", "")
        client = scope.get("client")

        details = {
            "api_endpoint": path,
            "http_method": method,
            "response_status": status_code,
            "duration_ms": duration_ms,
            "session_id": self._get_header(headers, SESSION_ID_HEADER),
            "request_id": self._get_header(headers, REQUEST_ID_HEADER),
        }
        if cache_header is not None:
            details["cache_hit"] = cache_header.upper() == "HIT"

        event = RawEvent(
            event_type=AuditEventType.API_REQUEST.value,
            user_id=self._get_header(headers, USER_ID_HEADER) or self.lowest_privilege_role,
            action=method.lower() or "request",
            resource_type=resource_type_for_path(path),
            ip_address=self._client_ip(headers, client),
            user_agent=self._get_header(headers, "user-agent"),
            success=status_code < 400,
            details=details,
        )
        try:
            await recorder.record(event)
        except EventValidationError as e:
            logger.warning(f"Could not record api_request for {method} {path}: {e}")

    @classmethod
    def _client_ip(cls, headers, client) -> str | None:
        forwarded = cls._get_header(headers, "x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return client[0] if client else None

    @staticmethod
    def _get_header(headers, name: str) -> str | None:
        """Extract a header value from ASGI-style header pairs."""
        key = name.lower().encode()
        for header_name, value in headers:
            if header_name.lower() == key and value:
                return value.decode("utf-8", errors="replace").strip() or None
        return None
