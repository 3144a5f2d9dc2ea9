"""
Immutable audit event model.

Events form a hash chain ordered by ``sequence``: each event records the
SHA-256 ``self_hash`` of the event committed immediately before it in
``prev_hash``. ``sequence`` is unique, so two writers that both read the
same tail cannot both commit; the loser retries against the new tail.

Only ``status``, ``processed_at`` and the anonymization-affected fields
change after commit.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, BigInteger, Boolean, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from auditchain.db.base import Base, UTCDateTime, UUIDPrimaryKeyMixin, utcnow


class EventStatus(StrEnum):
    CREATED = "CREATED"
    VALIDATED = "VALIDATED"
    PROCESSED = "PROCESSED"
    ARCHIVED = "ARCHIVED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"
    REPROCESSING = "REPROCESSING"
    EXPIRED = "EXPIRED"
    ANONYMIZED = "ANONYMIZED"


class Severity(StrEnum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class EventCategory(StrEnum):
    AUTHENTICATION = "AUTHENTICATION"
    AUTHORIZATION = "AUTHORIZATION"
    PERSONAL_DATA = "PERSONAL_DATA"
    FINANCIAL = "FINANCIAL"
    COMMUNICATION = "COMMUNICATION"
    COMPLIANCE = "COMPLIANCE"
    SECURITY = "SECURITY"
    ERROR = "ERROR"
    SYSTEM = "SYSTEM"


class EventType(StrEnum):
    """Closed catalogue of auditable facts, valued by their wire code."""

    # Authentication
    LOGIN_SUCCESS = "auth.login.success"
    LOGIN_FAILURE = "auth.login.failure"
    LOGIN_BLOCKED = "auth.login.blocked"
    LOGOUT = "auth.logout"
    PASSWORD_CHANGED = "auth.password.changed"
    PASSWORD_RESET = "auth.password.reset"
    TOKEN_CREATED = "auth.token.created"
    TOKEN_REFRESHED = "auth.token.refreshed"
    TOKEN_REVOKED = "auth.token.revoked"

    # Authorization
    ACCESS_DENIED = "auth.access.denied"
    PERMISSION_GRANTED = "auth.permission.granted"
    PERMISSION_REVOKED = "auth.permission.revoked"
    ROLE_ASSIGNED = "auth.role.assigned"
    ROLE_REMOVED = "auth.role.removed"

    # Personal data
    DATA_CREATED = "data.created"
    DATA_ACCESSED = "data.accessed"
    DATA_MODIFIED = "data.modified"
    DATA_DELETED = "data.deleted"
    DATA_EXPORTED = "data.exported"
    DATA_ANONYMIZED = "data.anonymized"

    # User lifecycle
    USER_CREATED = "user.created"
    USER_UPDATED = "user.updated"
    USER_DEACTIVATED = "user.deactivated"
    USER_REACTIVATED = "user.reactivated"

    # Financial
    TRANSACTION_CREATED = "finance.transaction.created"
    TRANSACTION_APPROVED = "finance.transaction.approved"
    TRANSACTION_REJECTED = "finance.transaction.rejected"
    PAYMENT_PROCESSED = "finance.payment.processed"
    BALANCE_CHANGED = "finance.balance.changed"

    # Communication
    MESSAGE_SENT = "comm.message.sent"
    MESSAGE_EDITED = "comm.message.edited"
    MESSAGE_DELETED = "comm.message.deleted"
    NOTIFICATION_SENT = "comm.notification.sent"
    EMAIL_SENT = "comm.email.sent"

    # System configuration
    CONFIG_CHANGED = "system.config.changed"
    FEATURE_FLAG_TOGGLED = "system.feature.toggled"
    CACHE_CLEARED = "system.cache.cleared"
    BACKUP_COMPLETED = "system.backup.completed"

    # Security
    INTRUSION_ATTEMPT = "security.intrusion.attempt"
    KEY_ROTATED = "security.key.rotated"
    CERTIFICATE_RENEWED = "security.certificate.renewed"

    # Compliance
    CONSENT_GIVEN = "compliance.consent.given"
    CONSENT_WITHDRAWN = "compliance.consent.withdrawn"
    RIGHT_TO_BE_FORGOTTEN = "compliance.right.forgotten"
    DATA_PORTABILITY = "compliance.data.portability"

    # Errors
    APPLICATION_ERROR = "error.application"
    DATABASE_ERROR = "error.database"
    INTEGRATION_ERROR = "error.integration"
    AUTHENTICATION_ERROR = "error.authentication"

    # Monitoring
    RATE_LIMIT_EXCEEDED = "monitor.rate.limit.exceeded"
    RESOURCE_UNAVAILABLE = "monitor.resource.unavailable"
    ALERT_TRIGGERED = "monitor.alert.triggered"

    CUSTOM = "custom.event"


def _enum_column(enum_cls: type[StrEnum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=64,
        values_callable=lambda members: [m.value for m in members],
    )


class AuditEvent(Base, UUIDPrimaryKeyMixin):
    """Single hash-chained audit event."""

    __tablename__ = "audit_events"
    __table_args__ = (
        UniqueConstraint("sequence", name="uq_audit_events_sequence"),
        Index("ix_audit_events_target", "target_type", "target_id", "sequence"),
        Index("ix_audit_events_actor_sequence", "actor_id", "sequence"),
    )

    # Commit order of the chain; assigned inside the append critical section
    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)

    event_type: Mapped[EventType] = mapped_column(
        _enum_column(EventType, "audit_event_type"), nullable=False, index=True
    )
    status: Mapped[EventStatus] = mapped_column(
        _enum_column(EventStatus, "audit_event_status"),
        default=EventStatus.CREATED,
        nullable=False,
        index=True,
    )
    severity: Mapped[Severity] = mapped_column(
        _enum_column(Severity, "audit_severity"), default=Severity.INFO, nullable=False
    )

    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    actor_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    source_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)

    target_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    target_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    target_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    action: Mapped[str] = mapped_column(Text, nullable=False)
    before_state: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    after_state: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    # Survive anonymization so the chain digest stays reproducible
    before_state_digest: Mapped[str | None] = mapped_column(String(64), nullable=True)
    after_state_digest: Mapped[str | None] = mapped_column(String(64), nullable=True)
    event_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    trace_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    span_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    self_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    # Empty string for the first event of the chain
    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False, default="")

    compliance_category: Mapped[EventCategory] = mapped_column(
        _enum_column(EventCategory, "audit_event_category"), nullable=False
    )
    contains_personal_data: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    retention_until: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    anonymized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    occurred_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, index=True
    )
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Optimistic lock for the mutable fields (status, scrub)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": row_version}

    def __repr__(self) -> str:
        return f"<AuditEvent #{self.sequence} {self.event_type} [{self.actor_id}]>"


class ChainCheckpoint(Base, UUIDPrimaryKeyMixin):
    """
    Anchor left behind when the oldest part of the chain is purged.

    The first surviving event must link to ``anchor_hash``, the self_hash
    of the last deleted event.
    """

    __tablename__ = "audit_chain_checkpoints"

    purged_through_sequence: Mapped[int] = mapped_column(
        BigInteger, nullable=False, unique=True
    )
    anchor_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    purged_count: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
