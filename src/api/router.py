"""Main API router combining all v1 route modules.

Aggregates all routers under the ``/api/v1`` prefix so the
FastAPI application only needs to include a single router.

Includes:
    * Core: health, audit trail
    * Compliance: mandatory-field scans and issues
    * Data-subject rights: GDPR erasure and access
    * Risk: PSD2 SCA and Wwft customer due diligence
    * Admin: scheduled job triggers
"""

from __future__ import annotations

from fastapi import APIRouter

from src.api.v1 import audit, compliance, gdpr, health, jobs, psd2, wwft

api_router = APIRouter(prefix="/api/v1")

# -- Core sub-routers ------------------------------------------------------
api_router.include_router(health.router)
api_router.include_router(audit.router)

# -- Compliance sub-routers ------------------------------------------------
api_router.include_router(compliance.router)
api_router.include_router(gdpr.router)
api_router.include_router(psd2.router)
api_router.include_router(wwft.router)

# -- Admin sub-routers -----------------------------------------------------
api_router.include_router(jobs.router)
