"""
FastAPI dependency providers.

The service graph is built once at startup and kept on ``app.state``;
routes never reach for module-level singletons.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request, WebSocket

from auditchain.services.audit.service import AuditService


def get_audit_service(request: Request) -> AuditService:
    return request.app.state.audit_service


def get_ws_audit_service(websocket: WebSocket) -> AuditService:
    return websocket.app.state.audit_service


Service = Annotated[AuditService, Depends(get_audit_service)]
