"""Database model registry. Import all models here so Alembic can discover them."""

from auditchain.db.models.audit import (
    AuditEvent,
    ChainCheckpoint,
    EventCategory,
    EventStatus,
    EventType,
    Severity,
)

__all__ = [
    "AuditEvent",
    "ChainCheckpoint",
    "EventCategory",
    "EventStatus",
    "EventType",
    "Severity",
]
