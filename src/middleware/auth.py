"""Operator authentication for job, scan and erasure-execution endpoints.

Operators send ``X-Admin-API-Key``.  While a key is being rotated the
previous key (``TRUSTLEDGER_ADMIN_API_KEY_PREVIOUS``) keeps working and
every use of it is logged, so the old key can be retired once the logs go
quiet.  Rejected attempts land in the audit trail as LOGIN events against
the ``operator-api`` user.
"""

from __future__ import annotations

import hmac
from typing import Final

import structlog
from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from config.settings import settings
from src.middleware.privacy import audit_context_from_request, client_ip, sanitize_pii
from src.models.enums import AuditAction
from src.services.errors import PartialWriteError

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

OPERATOR_USER_ID: Final[str] = "operator-api"

_api_key_header = APIKeyHeader(name="X-Admin-API-Key", auto_error=False)


def _key_matches(candidate: str, configured: str) -> bool:
    if not configured:
        return False
    return hmac.compare_digest(candidate.encode(), configured.encode())


async def _audit_rejection(request: Request, reason: str) -> None:
    recorder = getattr(request.app.state, "recorder", None)
    if recorder is None:
        return
    try:
        await recorder.log_auth_event(
            AuditAction.LOGIN,
            OPERATOR_USER_ID,
            audit_context_from_request(request),
            {"success": False, "reason": reason, "path": request.url.path},
        )
    except PartialWriteError as exc:
        logger.error("auth.audit_write_failed", ledger_key=exc.ledger_key)


async def require_admin_api_key(
    request: Request,
    api_key: str | None = Security(_api_key_header),
) -> str:
    """FastAPI dependency guarding operator endpoints.

    Returns the accepted key.  Raises 401 without a key and 403 for a key
    that matches neither the current nor the previous one.  Without a
    configured key, development lets the request through and production
    answers 503.

    Usage::

        @router.post("/jobs/{job}", dependencies=[Depends(require_admin_api_key)])
        async def run_job(...): ...
    """
    current_key = settings.admin_api_key

    if not current_key:
        if not settings.is_production:
            logger.warning(
                "auth.admin_key_not_configured",
                note="Admin API key not set; allowing request in development mode",
            )
            return ""
        logger.error("auth.admin_key_not_configured_production")
        raise HTTPException(
            status_code=503,
            detail="Admin authentication is not configured.",
        )

    masked_ip = sanitize_pii(client_ip(request))

    if not api_key:
        logger.warning("auth.missing_api_key", path=request.url.path, client_ip=masked_ip)
        await _audit_rejection(request, "missing_key")
        raise HTTPException(
            status_code=401,
            detail="Missing X-Admin-API-Key header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if _key_matches(api_key, current_key):
        return api_key

    if _key_matches(api_key, settings.admin_api_key_previous):
        logger.warning("auth.previous_key_used", path=request.url.path, client_ip=masked_ip)
        return api_key

    logger.warning("auth.invalid_api_key", path=request.url.path, client_ip=masked_ip)
    await _audit_rejection(request, "invalid_key")
    raise HTTPException(status_code=403, detail="Invalid API key.")
