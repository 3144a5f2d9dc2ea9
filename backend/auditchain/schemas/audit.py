"""Audit event schemas."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from auditchain.db.models.audit import EventCategory, EventStatus, EventType, Severity


class EventDraft(BaseModel):
    """
    Ingestion contract accepted from upstream producers.

    Required fields are optional here on purpose: their absence is
    reported by the ingestion pipeline as a ValidationError before any
    hashing or persistence takes place.
    """

    event_type: EventType | None = None
    actor_id: str | None = None
    actor_name: str | None = None
    session_id: str | None = None
    source_ip: str | None = None
    user_agent: str | None = None
    target_type: str | None = None
    target_id: str | None = None
    target_name: str | None = None
    action: str | None = None
    before_state: dict[str, Any] | None = None
    after_state: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    severity: Severity | None = None
    trace_id: str | None = None
    span_id: str | None = None

    model_config = {"extra": "forbid"}


class AuditEventOut(BaseModel):
    """Committed event as returned to readers and stored in the cache."""

    id: str
    sequence: int
    event_type: EventType
    status: EventStatus
    severity: Severity
    actor_id: str
    actor_name: str | None
    session_id: str | None
    source_ip: str | None
    user_agent: str | None
    target_type: str | None
    target_id: str | None
    target_name: str | None
    action: str
    before_state: dict[str, Any] | None
    after_state: dict[str, Any] | None
    before_state_digest: str | None
    after_state_digest: str | None
    event_metadata: dict[str, Any] = Field(default_factory=dict)
    trace_id: str | None
    span_id: str | None
    self_hash: str
    prev_hash: str
    compliance_category: EventCategory
    contains_personal_data: bool
    retention_until: datetime
    anonymized: bool
    occurred_at: datetime
    processed_at: datetime | None

    model_config = {"from_attributes": True}


class AuditEventPage(BaseModel):
    items: list[AuditEventOut]
    total: int
    page: int
    page_size: int


class ChainVerificationResult(BaseModel):
    valid: bool
    checked: int
    broken_at_index: int | None = Field(
        default=None, description="Position of the first broken link within the verified range"
    )
    broken_event_id: str | None = None
    reason: str | None = None


class ResumeStats(BaseModel):
    since: datetime
    total: int
    critical: int
    errors: int
    personal_data_count: int
    distinct_actors: int


class TypeCount(BaseModel):
    event_type: EventType
    total: int


class ActorActivity(BaseModel):
    actor_id: str
    actor_name: str | None
    total: int
    last_event_at: datetime


class TransitionRequest(BaseModel):
    status: EventStatus


class RetentionResult(BaseModel):
    operation: str
    affected: int


class ReprocessResult(BaseModel):
    attempted: int
    recovered: int


class EventIntegrityResult(BaseModel):
    event_id: str
    sequence: int
    valid: bool
    digest_valid: bool
    link_valid: bool
    reason: str | None = None
    checked_at: datetime


# ── Compliance report ──────────────────────────────────────────────────── #


class ComplianceStatus(StrEnum):
    COMPLIANT = "COMPLIANT"
    NEEDS_ATTENTION = "NEEDS_ATTENTION"
    PARTIALLY_COMPLIANT = "PARTIALLY_COMPLIANT"
    NON_COMPLIANT = "NON_COMPLIANT"


class ViolationKind(StrEnum):
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    EXCESSIVE_RETENTION = "EXCESSIVE_RETENTION"
    UNDELIVERED_CRITICAL = "UNDELIVERED_CRITICAL"
    MISSING_RECORD = "MISSING_RECORD"


class ViolationSeverity(StrEnum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class ComplianceViolation(BaseModel):
    kind: ViolationKind
    severity: ViolationSeverity
    occurrences: int
    description: str


class ComplianceSummary(BaseModel):
    total_events: int
    events_with_violation: int
    compliance_percentage: float
    personal_data_accessed: int
    erasure_requests: int
    anonymizations: int
    data_exports: int
    status: ComplianceStatus


class ComplianceReport(BaseModel):
    id: str
    report_type: str
    period_start: datetime
    period_end: datetime
    generated_at: datetime
    generated_by: str
    summary: ComplianceSummary
    violations: list[ComplianceViolation]
    chain: ChainVerificationResult
    events_by_type: dict[str, int]
