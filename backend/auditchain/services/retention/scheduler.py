"""
Background task that runs retention housekeeping on a fixed interval.

Each tick retries pending post-anonymization cache purges, then sweeps
expired events. A failing tick is logged and the loop carries on.
"""

from __future__ import annotations

import asyncio
import contextlib

import structlog

from auditchain.core.errors import AppError
from auditchain.services.retention.engine import RetentionEngine

_log = structlog.get_logger(__name__)


class RetentionScheduler:
    def __init__(self, engine: RetentionEngine, interval_seconds: float) -> None:
        self._engine = engine
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="retention-sweep")
        _log.info("retention_scheduler_started", interval_seconds=self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        _log.info("retention_scheduler_stopped")

    async def run_once(self) -> int:
        await self._engine.retry_cache_purges()
        try:
            return await self._engine.sweep_expired()
        except AppError as exc:
            # Next tick retries; already-expired batches stay committed
            _log.error("retention_sweep_failed", error_code=exc.code.value, error=exc.message)
            return 0

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.run_once()
            except Exception as exc:
                _log.error("retention_tick_failed", error=str(exc), exc_info=True)
