"""
AuditChain error taxonomy.

An error carries a stable code (EVT_, CHN_, INF_ or GEN_ prefixed), the
HTTP status it maps to, a message, and a JSON-safe ``detail`` mapping.

Ingestion either fully succeeds or fails with one of these types; there
is no partially committed state visible to callers.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    """Codes are part of the API contract; a retired code is never reassigned."""

    # Ingestion
    EVENT_VALIDATION_FAILED = "EVT_001"
    EVENT_NOT_FOUND = "EVT_002"
    EVENT_INVALID_TRANSITION = "EVT_003"

    # Chain
    CHAIN_CONTENTION = "CHN_001"
    CHAIN_INTEGRITY_VIOLATION = "CHN_002"

    # Infrastructure
    PERSISTENCE_FAILURE = "INF_001"
    DOWNSTREAM_DEGRADED = "INF_002"

    # Generic
    INTERNAL_ERROR = "GEN_001"
    NOT_FOUND = "GEN_002"
    RATE_LIMITED = "GEN_003"


class AppError(Exception):
    """Raised by services; rendered by the HTTP error handlers."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        http_status: int = 500,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status
        self.detail = detail or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code.value,
                "message": self.message,
                "detail": self.detail,
            }
        }


# ── Typed convenience subclasses ──────────────────────────────────────── #


class NotFoundError(AppError):
    def __init__(
        self, entity: str, entity_id: str | None = None, code: ErrorCode = ErrorCode.NOT_FOUND
    ) -> None:
        super().__init__(
            code=code,
            message=f"{entity} {entity_id} does not exist" if entity_id else f"{entity} does not exist",
            http_status=404,
            detail={"entity": entity, "id": entity_id},
        )


class ValidationError(AppError):
    """Malformed or missing input. Raised before any hashing or persistence."""

    def __init__(self, message: str, detail: dict[str, Any] | None = None) -> None:
        super().__init__(
            code=ErrorCode.EVENT_VALIDATION_FAILED,
            message=message,
            http_status=422,
            detail=detail,
        )


class ChainContentionError(AppError):
    """Concurrent appends kept racing for the chain tail past the retry bound."""

    def __init__(self, attempts: int) -> None:
        super().__init__(
            code=ErrorCode.CHAIN_CONTENTION,
            message=f"Chain tail still contended after {attempts} attempts",
            http_status=409,
            detail={"attempts": attempts},
        )
        self.attempts = attempts


class IntegrityViolation(AppError):
    """A recomputed digest or a chain link did not match what is stored."""

    def __init__(self, index: int, event_id: str | None, reason: str) -> None:
        super().__init__(
            code=ErrorCode.CHAIN_INTEGRITY_VIOLATION,
            message=f"Chain broken at index {index}: {reason}",
            http_status=409,
            detail={"index": index, "event_id": event_id, "reason": reason},
        )
        self.index = index
        self.event_id = event_id
        self.reason = reason


class InvalidTransition(AppError):
    def __init__(self, from_status: str, to_status: str) -> None:
        super().__init__(
            code=ErrorCode.EVENT_INVALID_TRANSITION,
            message=f"Transition {from_status} -> {to_status} is not allowed",
            http_status=409,
            detail={"from": from_status, "to": to_status},
        )
        self.from_status = from_status
        self.to_status = to_status


class PersistenceFailure(AppError):
    """The persistence store is unavailable or rejected the write."""

    def __init__(self, operation: str, message: str = "Persistence store unavailable") -> None:
        super().__init__(
            code=ErrorCode.PERSISTENCE_FAILURE,
            message=message,
            http_status=503,
            detail={"operation": operation},
        )
        self.operation = operation


class DownstreamDegraded(AppError):
    """
    Cache or streaming failure.

    Never reaches a submit or read caller. Raised only where the caller
    depends on the side effect, which is the cache purge that follows an
    anonymization.
    """

    def __init__(self, component: str, operation: str, message: str) -> None:
        super().__init__(
            code=ErrorCode.DOWNSTREAM_DEGRADED,
            message=message,
            http_status=503,
            detail={"component": component, "operation": operation},
        )
        self.component = component
        self.operation = operation


class RateLimited(AppError):
    def __init__(self, limit: str) -> None:
        super().__init__(
            code=ErrorCode.RATE_LIMITED,
            message=f"Rate limit exceeded: {limit}",
            http_status=429,
            detail={"limit": limit},
        )
