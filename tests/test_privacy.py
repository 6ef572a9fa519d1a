"""Tests for AVG privacy middleware (PII sanitisation, request context)."""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.requests import Request

from src.middleware.privacy import (
    PrivacyMiddleware,
    audit_context_from_request,
    client_ip,
    sanitize_bsn,
    sanitize_email,
    sanitize_iban,
    sanitize_phone,
    sanitize_pii,
)


def _request(
    headers: dict[str, str] | None = None,
    client: tuple[str, int] | None = ("10.1.1.1", 5000),
) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


# -----------------------------------------------------------------------
# IBAN sanitisation tests
# -----------------------------------------------------------------------


class TestSanitizeIban:
    def test_dutch_iban(self) -> None:
        result = sanitize_iban("Rekening NL91ABNA0417164300")
        assert result == "Rekening NLXX...4300", (
            f"IBAN should keep country code and last 4: got '{result}'"
        )

    def test_no_iban_unchanged(self) -> None:
        text = "Geen rekeningnummer hier."
        assert sanitize_iban(text) == text


# -----------------------------------------------------------------------
# Phone sanitisation tests
# -----------------------------------------------------------------------


class TestSanitizePhone:
    def test_international_format(self) -> None:
        result = sanitize_phone("Bel +31 6 12345678")
        assert result == "Bel XXXXXX5678", f"+31 number should be masked: got '{result}'"

    def test_national_format(self) -> None:
        result = sanitize_phone("Mobiel: 0612345678")
        assert "XXXXXX5678" in result, f"06 number should be masked: got '{result}'"
        assert "0612" not in result

    def test_no_phone_unchanged(self) -> None:
        text = "No phone number here."
        assert sanitize_phone(text) == text, "text without phone numbers should be unchanged"


class TestSanitizeBsn:
    def test_plain_bsn(self) -> None:
        assert sanitize_bsn("BSN 123456782") == "BSN XXXXXX782"

    def test_dotted_bsn(self) -> None:
        assert sanitize_bsn("BSN 1234.56.782") == "BSN XXXXXX782"


class TestSanitizeEmail:
    def test_basic_email(self) -> None:
        result = sanitize_email("Email: jan@example.nl")
        assert "[EMAIL_REDACTED]" in result, "email should be replaced with [EMAIL_REDACTED]"
        assert "jan@example.nl" not in result, "original email should be removed"

    def test_multiple_emails(self) -> None:
        result = sanitize_email("Contact a@b.nl or c@d.com")
        assert result.count("[EMAIL_REDACTED]") == 2, "both emails should be redacted"


# -----------------------------------------------------------------------
# Combined sanitize_pii tests
# -----------------------------------------------------------------------


class TestSanitizePII:
    def test_combined_all_pii(self) -> None:
        text = "IBAN NL91ABNA0417164300, tel 0612345678, BSN 123456782, mail jan@example.nl"
        result = sanitize_pii(text)
        assert "NLXX...4300" in result, "IBAN should be masked"
        assert "XXXXXX5678" in result, "Phone should be masked"
        assert "XXXXXX782" in result, "BSN should be masked"
        assert "[EMAIL_REDACTED]" in result, "Email should be redacted"
        assert "jan@example.nl" not in result

    def test_no_pii_unchanged(self) -> None:
        text = "Dit is een gewoon bericht zonder persoonsgegevens."
        assert sanitize_pii(text) == text, "text without PII should be unchanged"

    def test_empty_string(self) -> None:
        assert sanitize_pii("") == ""


# -----------------------------------------------------------------------
# Request context
# -----------------------------------------------------------------------


class TestClientIp:
    def test_trusted_proxy_picks_client_entry(self) -> None:
        request = _request({"X-Forwarded-For": "203.0.113.7, 10.0.0.2"})
        assert client_ip(request, trusted_proxy_count=1) == "203.0.113.7"

    def test_short_header_uses_leftmost(self) -> None:
        request = _request({"X-Forwarded-For": "203.0.113.7"})
        assert client_ip(request, trusted_proxy_count=2) == "203.0.113.7"

    def test_no_trusted_proxies_uses_leftmost(self) -> None:
        request = _request({"X-Forwarded-For": "198.51.100.1, 10.0.0.2"})
        assert client_ip(request, trusted_proxy_count=0) == "198.51.100.1"

    def test_real_ip_header(self) -> None:
        request = _request({"X-Real-IP": " 198.51.100.9 "})
        assert client_ip(request, trusted_proxy_count=0) == "198.51.100.9"

    def test_socket_peer(self) -> None:
        assert client_ip(_request(), trusted_proxy_count=0) == "10.1.1.1"
        assert client_ip(_request(client=None), trusted_proxy_count=0) == "unknown"

    def test_audit_context(self) -> None:
        request = _request(
            {"X-Actor-Id": "user-9", "X-Session-Id": "sess-1", "User-Agent": "pytest"}
        )
        context = audit_context_from_request(request)
        assert context.actor_id == "user-9"
        assert context.session_id == "sess-1"
        assert context.user_agent == "pytest"
        assert context.ip_address == "10.1.1.1"


# -----------------------------------------------------------------------
# Middleware headers
# -----------------------------------------------------------------------


class TestPrivacyMiddleware:
    def _client(self) -> TestClient:
        app = FastAPI()
        app.add_middleware(PrivacyMiddleware)

        @app.get("/ping")
        async def ping() -> dict[str, str]:
            return {"status": "ok"}

        return TestClient(app)

    def test_privacy_headers(self) -> None:
        response = self._client().get("/ping")
        assert response.status_code == 200
        assert response.headers["X-AVG-Compliant"] == "true"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]
        assert response.headers["X-Request-Id"], "a request id is always assigned"

    def test_request_id_is_echoed(self) -> None:
        response = self._client().get("/ping", headers={"X-Request-Id": "req-123"})
        assert response.headers["X-Request-Id"] == "req-123"
