"""
Redis Streams emitter with circuit breaker, retry and dead-letter queue.

Emission is best-effort and at-least-once: consumers dedupe by event id.
Nothing in here ever raises to the ingestion pipeline.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import StrEnum

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from auditchain.config.settings import Settings
from auditchain.core.metrics import DOWNSTREAM_DEGRADED, STREAM_EMITS
from auditchain.db.base import utcnow
from auditchain.schemas.audit import AuditEventOut

_log = structlog.get_logger(__name__)


# ── Circuit Breaker ───────────────────────────────────────────────────── #


class CircuitState(StrEnum):
    CLOSED = "closed"       # Normal operation
    OPEN = "open"           # Failing; skip straight to the dead-letter queue
    HALF_OPEN = "half_open" # Trial state; allow one call


@dataclass
class CircuitBreaker:
    """
    Time-based circuit breaker around the stream transport.

    States:
      CLOSED   → normal; failures increment counter.
      OPEN     → rejects all calls; transitions to HALF_OPEN after timeout.
      HALF_OPEN→ allows one test call; success → CLOSED, failure → OPEN.
    """

    threshold: int
    timeout_seconds: int
    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _last_failure_time: float = field(default=0.0, init=False)

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN:
            if time.monotonic() - self._last_failure_time >= self.timeout_seconds:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = time.monotonic()
        if self._failure_count >= self.threshold:
            self._state = CircuitState.OPEN
            _log.warning(
                "stream_circuit_opened",
                failures=self._failure_count,
                threshold=self.threshold,
            )

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)


# ── Emitter ───────────────────────────────────────────────────────────── #


class EmitOutcome(StrEnum):
    ACKED = "acked"
    DEAD_LETTERED = "dead_lettered"
    DISABLED = "disabled"


class StreamingEmitter:
    """
    Fan committed events out to a Redis stream.

    Each failed XADD is retried with exponential back-off; once retries
    are exhausted (or the circuit is open) the event goes to the
    dead-letter stream with the failure reason.
    """

    def __init__(self, redis: Redis | None, settings: Settings) -> None:
        self._redis = redis if settings.streaming_enabled else None
        self._settings = settings
        self._circuit = CircuitBreaker(
            threshold=settings.stream_circuit_breaker_threshold,
            timeout_seconds=settings.stream_circuit_breaker_timeout_seconds,
        )

    @property
    def enabled(self) -> bool:
        return self._redis is not None

    @property
    def circuit(self) -> CircuitBreaker:
        return self._circuit

    async def emit(self, event: AuditEventOut) -> EmitOutcome:
        redis = self._redis
        if redis is None:
            return EmitOutcome.DISABLED

        if not self._circuit.allow_request():
            await self._dead_letter(redis, event, "circuit_open")
            return EmitOutcome.DEAD_LETTERED

        max_retries = self._settings.stream_max_retries
        base = self._settings.stream_backoff_base_seconds
        last_error = ""

        for attempt in range(1, max_retries + 2):
            try:
                await asyncio.wait_for(
                    redis.xadd(self._settings.stream_key, self._fields(event)),
                    timeout=self._settings.redis_timeout_seconds,
                )
                self._circuit.record_success()
                STREAM_EMITS.labels(result="acked").inc()
                _log.debug("stream_event_emitted", event_id=event.id, attempt=attempt)
                return EmitOutcome.ACKED
            except (RedisError, TimeoutError, OSError) as exc:
                self._circuit.record_failure()
                last_error = str(exc) or type(exc).__name__
                _log.warning(
                    "stream_emit_failed",
                    event_id=event.id,
                    attempt=attempt,
                    max_retries=max_retries,
                    error=last_error,
                )
                if attempt > max_retries or not self._circuit.allow_request():
                    break
                await asyncio.sleep(base * 2 ** (attempt - 1))

        DOWNSTREAM_DEGRADED.labels(component="stream", operation="emit").inc()
        await self._dead_letter(redis, event, last_error or "emit_failed")
        return EmitOutcome.DEAD_LETTERED

    @staticmethod
    def _fields(event: AuditEventOut) -> dict[str, str]:
        return {
            "event_id": event.id,
            "event_type": event.event_type.value,
            "actor_id": event.actor_id,
            "sequence": str(event.sequence),
            "payload": event.model_dump_json(),
        }

    async def _dead_letter(self, redis: Redis, event: AuditEventOut, reason: str) -> None:
        fields = {
            **self._fields(event),
            "original_event_id": event.id,
            "dlq_timestamp": utcnow().isoformat(),
            "failure_reason": reason,
        }
        STREAM_EMITS.labels(result="dead_lettered").inc()
        try:
            await asyncio.wait_for(
                redis.xadd(self._settings.dead_letter_key, fields),
                timeout=self._settings.redis_timeout_seconds,
            )
            _log.warning("stream_emit_dead_lettered", event_id=event.id, reason=reason)
        except (RedisError, TimeoutError, OSError) as exc:
            DOWNSTREAM_DEGRADED.labels(component="stream", operation="dead_letter").inc()
            _log.error(
                "stream_dead_letter_failed",
                event_id=event.id,
                reason=reason,
                error=str(exc) or type(exc).__name__,
            )
