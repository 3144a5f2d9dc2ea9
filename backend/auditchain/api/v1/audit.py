"""Audit event ingestion, query, integrity and statistics endpoints."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from fastapi import APIRouter, Body, Query, Request, status

from auditchain.api.deps import Service
from auditchain.core.errors import ValidationError
from auditchain.db.base import utcnow
from auditchain.db.models.audit import EventType
from auditchain.schemas.audit import (
    ActorActivity,
    AuditEventOut,
    AuditEventPage,
    ChainVerificationResult,
    EventIntegrityResult,
    ResumeStats,
    TransitionRequest,
    TypeCount,
)

router = APIRouter(prefix="/audit", tags=["audit"])

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@router.post(
    "/events",
    response_model=AuditEventOut,
    status_code=status.HTTP_201_CREATED,
    summary="Submit an audit event",
)
async def submit_event(
    request: Request, service: Service, draft: dict[str, Any] = Body(...)
) -> AuditEventOut:
    """
    Validate, hash-chain and durably commit one event.

    The body is checked by the ingestion pipeline itself so that missing
    fields surface as EVT_001 rather than a framework error. A draft
    without trace identifiers inherits them from the request's
    ``traceparent`` header.
    """
    trace = getattr(request.state, "trace", None)
    if trace is not None and not draft.get("trace_id"):
        draft = {**draft, "trace_id": trace[0], "span_id": draft.get("span_id") or trace[1]}
    return await service.submit(draft)


@router.get("/events/{event_id}", response_model=AuditEventOut, summary="Get one event")
async def get_event(event_id: str, service: Service) -> AuditEventOut:
    return await service.get_event(event_id)


@router.get(
    "/events/{event_id}/integrity",
    response_model=EventIntegrityResult,
    summary="Verify one event against its digest and predecessor",
)
async def verify_event(event_id: str, service: Service) -> EventIntegrityResult:
    return await service.verify_event(event_id)


@router.get("/events", response_model=AuditEventPage, summary="List or search events")
async def list_events(
    service: Service,
    actor_id: str | None = Query(default=None),
    event_type: EventType | None = Query(default=None),
    from_: datetime | None = Query(default=None, alias="from"),
    to: datetime | None = Query(default=None),
    q: str | None = Query(default=None, description="Free-text search"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
) -> AuditEventPage:
    """Filter by exactly one of actor, type, text, or period (the default)."""
    chosen = [name for name, value in (("actor_id", actor_id), ("event_type", event_type), ("q", q)) if value]
    if len(chosen) > 1:
        raise ValidationError("Use only one filter at a time", detail={"filters": chosen})
    if actor_id:
        return await service.get_by_actor(actor_id, page, page_size)
    if event_type:
        return await service.get_by_type(event_type, page, page_size)
    if q:
        return await service.search_text(q, page, page_size)
    return await service.get_by_period(from_ or _EPOCH, to or utcnow(), page, page_size)


@router.post(
    "/events/{event_id}/transition",
    response_model=AuditEventOut,
    summary="Apply a lifecycle transition",
)
async def transition_event(
    event_id: str, body: TransitionRequest, service: Service
) -> AuditEventOut:
    return await service.transition(event_id, body.status)


@router.get(
    "/timeline/{entity_type}/{entity_id}",
    response_model=list[AuditEventOut],
    summary="Ordered history of one entity",
)
async def get_timeline(entity_type: str, entity_id: str, service: Service) -> list[AuditEventOut]:
    return await service.get_timeline(entity_type, entity_id)


@router.get(
    "/traces/{trace_id}",
    response_model=list[AuditEventOut],
    summary="Events sharing one correlation or trace id",
)
async def get_by_trace(trace_id: str, service: Service) -> list[AuditEventOut]:
    return await service.get_by_trace(trace_id)


@router.get(
    "/actors/{actor_id}/personal-data",
    response_model=list[AuditEventOut],
    summary="Events of an actor that carry personal data",
)
async def get_personal_data(actor_id: str, service: Service) -> list[AuditEventOut]:
    return await service.get_personal_data_for_actor(actor_id)


@router.get(
    "/verify",
    response_model=ChainVerificationResult,
    summary="Verify audit hash chain integrity",
)
async def verify_chain(
    service: Service,
    from_: datetime | None = Query(default=None, alias="from"),
    to: datetime | None = Query(default=None),
    strict: bool = Query(default=False, description="Answer 409 CHN_002 on a broken chain"),
) -> ChainVerificationResult:
    """
    Recompute every digest in the range from the store and walk the links.

    Returns the index of the first broken link within the range, if any.
    """
    if strict:
        checked = await service.ensure_chain_intact(from_, to)
        return ChainVerificationResult(valid=True, checked=checked)
    return await service.verify_chain(from_, to)


@router.get("/stats", response_model=ResumeStats, summary="Summary statistics")
async def get_stats(
    service: Service, since: datetime | None = Query(default=None)
) -> ResumeStats:
    return await service.get_resume_stats(since or utcnow() - timedelta(hours=24))


@router.get("/stats/by-type", response_model=list[TypeCount], summary="Event counts per type")
async def get_stats_by_type(
    service: Service,
    from_: datetime | None = Query(default=None, alias="from"),
    to: datetime | None = Query(default=None),
) -> list[TypeCount]:
    end = to or utcnow()
    return await service.count_by_type(from_ or end - timedelta(days=30), end)


@router.get("/stats/actors", response_model=list[ActorActivity], summary="Most active actors")
async def get_most_active_actors(
    service: Service,
    since: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=50),
) -> list[ActorActivity]:
    return await service.most_active_actors(since or utcnow() - timedelta(hours=24), limit)
