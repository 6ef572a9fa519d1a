"""AVG (Dutch GDPR) privacy middleware and PII masking helpers.

Masks Dutch PII (IBANs, BSNs, phone numbers, e-mail addresses) before it
reaches the logs, adds privacy and security headers to all responses,
and builds the explicit :class:`AuditContext` handed to the services.
"""

from __future__ import annotations

import re
import time
from typing import Final
from uuid import uuid4

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from config.settings import settings
from src.models.audit import AuditContext

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# PII sanitisation patterns
# ---------------------------------------------------------------------------

# IBAN: country code, check digits, then 11-30 alphanumerics, optionally
# grouped by spaces.  We preserve the country code and the last 4.
_IBAN_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"\b([A-Z]{2})\d{2}(?:\s?[A-Z0-9]){7,26}?\s?([A-Z0-9]{4})\b"
)

# Dutch phone numbers: +31 / 0031 / 0 followed by 9 digits, optionally
# separated.  We preserve only the last 4 digits.
_PHONE_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?:\+31|0031|\b0)[\s-]?(?:\d[\s-]?){5}(\d{4})\b"
)

# BSN (burgerservicenummer): 9 digits, optionally dotted as 1234.56.789.
_BSN_PATTERN: Final[re.Pattern[str]] = re.compile(r"\b\d{4}\.?\d{2}\.?(\d{3})\b")

# Email addresses (basic pattern).
_EMAIL_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"
)


def sanitize_iban(text: str) -> str:
    """``NL91ABNA0417164300`` becomes ``NLXX...4300``."""
    return _IBAN_PATTERN.sub(lambda m: f"{m.group(1)}XX...{m.group(2)}", text)


def sanitize_phone(text: str) -> str:
    """``+31 6 12345678`` becomes ``XXXXXX5678``."""
    return _PHONE_PATTERN.sub(lambda m: f"XXXXXX{m.group(1)}", text)


def sanitize_bsn(text: str) -> str:
    """``123456782`` becomes ``XXXXXX782``."""
    return _BSN_PATTERN.sub(lambda m: f"XXXXXX{m.group(1)}", text)


def sanitize_email(text: str) -> str:
    """Mask email addresses in *text*."""
    return _EMAIL_PATTERN.sub("[EMAIL_REDACTED]", text)


def sanitize_pii(text: str) -> str:
    """Apply all PII sanitisation routines to *text*.

    Order matters: IBANs first (their digit runs would otherwise match
    the phone and BSN patterns), then phone, BSN and email.
    """
    text = sanitize_iban(text)
    text = sanitize_phone(text)
    text = sanitize_bsn(text)
    text = sanitize_email(text)
    return text


# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------


def client_ip(request: Request, trusted_proxy_count: int | None = None) -> str:
    """Extract the real client IP from behind trusted proxies.

    With ``trusted_proxy_count = N``, the rightmost N entries in
    ``X-Forwarded-For`` are proxy addresses and the client is
    ``ips[-(N + 1)]``.
    """
    if trusted_proxy_count is None:
        trusted_proxy_count = settings.trusted_proxy_count

    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for and trusted_proxy_count > 0:
        ips = [ip.strip() for ip in forwarded_for.split(",")]
        client_index = -(trusted_proxy_count + 1)
        if abs(client_index) <= len(ips):
            return ips[client_index]
        # Header shorter than expected -- use leftmost as best guess
        return ips[0]

    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host
    return "unknown"


def audit_context_from_request(request: Request) -> AuditContext:
    """Build the explicit audit context for one request.

    The actor comes from ``X-Actor-Id`` (set by the authenticating
    gateway) and the session from ``X-Session-Id``.
    """
    return AuditContext(
        actor_id=request.headers.get("X-Actor-Id"),
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        session_id=request.headers.get("X-Session-Id"),
    )


# ---------------------------------------------------------------------------
# Privacy Middleware
# ---------------------------------------------------------------------------


class PrivacyMiddleware(BaseHTTPMiddleware):
    """Middleware implementing AVG logging and header requirements.

    - Binds a request id into the structlog context for the request.
    - Logs sanitised request lines (method, path, masked client IP).
    - Adds privacy-related HTTP headers to every response.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.perf_counter()

        logger.info(
            "request.incoming",
            method=request.method,
            path=sanitize_pii(request.url.path),
            client_ip=sanitize_pii(client_ip(request)),
        )

        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        logger.info(
            "request.completed",
            request_id=request_id,
            status=response.status_code,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )

        # -- Add security and privacy headers --------------------------------
        response.headers["X-Request-Id"] = request_id
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains; preload"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        response.headers["X-AVG-Compliant"] = "true"
        response.headers["X-Data-Processing-Purpose"] = "statutory-compliance-audit"
        response.headers["X-Data-Retention-Policy"] = "statutory"
        response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, private"
        response.headers["Pragma"] = "no-cache"

        return response
