"""
WebSocket endpoint for live audit events.

Clients connect to /ws/events, optionally filtered by ``actor_id`` or
``event_type``, and receive each committed event as a JSON text frame.
"""

from __future__ import annotations

import asyncio
import contextlib

import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from auditchain.api.deps import get_ws_audit_service
from auditchain.db.models.audit import EventType
from auditchain.services.streaming.subscriptions import filter_key

_log = structlog.get_logger(__name__)
router = APIRouter(tags=["websocket"])


@router.websocket("/ws/events")
async def event_stream(
    websocket: WebSocket,
    actor_id: str | None = Query(default=None),
    event_type: str | None = Query(default=None),
) -> None:
    if event_type is not None and event_type not in {t.value for t in EventType}:
        await websocket.close(code=1008, reason="Unknown event_type")
        return

    service = get_ws_audit_service(websocket)
    key = filter_key(actor_id, event_type)
    await websocket.accept()
    _log.info("ws_client_connected", filter=key)

    async with service.subscriptions.subscribe(key) as queue:

        async def pump() -> None:
            while True:
                event = await queue.get()
                await websocket.send_text(event.model_dump_json())

        sender = asyncio.create_task(pump())
        try:
            # Inbound frames are ignored; receiving only detects the disconnect
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            _log.info("ws_client_disconnected", filter=key)
        finally:
            sender.cancel()
            with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
                await sender
