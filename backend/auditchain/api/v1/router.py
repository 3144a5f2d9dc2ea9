"""API v1 router aggregator."""

from fastapi import APIRouter

from auditchain.api.v1 import audit, compliance, ws

router = APIRouter(prefix="/api/v1")
router.include_router(audit.router)
router.include_router(compliance.router)
router.include_router(ws.router)
