"""
Execution monitor: claims, heartbeats, stale reclamation and the minute cap.

Runs on every orchestrator instance. The claim primitive of the repository
is the only coordination point between instances, so everything here is a
single repository call that is safe to race.

Claim keeper:
    While an executor drives an execution, ``keep_claim`` renews its claim
    every ``renew_interval_seconds`` (a third of the TTL by default), so a
    submission that spends minutes in retries keeps the lease. The first
    refused renewal ends the keeper; the next guarded write then raises
    ClaimLostError.

Tick:
    ::

        tick(now)
        ├── find_stale_claims(now)         RUNNING with expired/absent claim
        │   └── requeue_stale(id, now)     → INQUEUE, claim cleared
        └── find_running_started_before(now - cap)
            └── set_cancelling(id, SYSTEM_MINUTE_CAP_EXPIRE)

    Reclaimed executions are never marked FAILED; the DPS keeps the
    authoritative task progress and the next claimant resumes monitoring.

Tags:
    monitor, claim, heartbeat, reclamation, minute-cap, metis-core
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from metis_core.core.errors import RepositoryError
from metis_core.core.logging import get_logger
from metis_core.core.timestamps import utc_now
from metis_core.execution.retry import ExponentialBackoff, RetryStrategy, call_with_retry
from metis_core.persistence.repository import ExecutionRepository
from metis_core.workflow.models import CancelledSystemId, Claim, WorkflowExecution

logger = get_logger(__name__)


@dataclass
class MonitorStats:
    """Counters for the monitor loop."""

    tick_count: int = 0
    requeued: int = 0
    minute_capped: int = 0
    last_tick: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tick_count": self.tick_count,
            "requeued": self.requeued,
            "minute_capped": self.minute_capped,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "last_error": self.last_error,
        }


class ExecutionMonitor:
    """Claims executions for this worker and keeps the fleet healthy."""

    def __init__(
        self,
        repository: ExecutionRepository,
        *,
        worker_id: str,
        claim_ttl: timedelta,
        tick_seconds: float = 60.0,
        wall_clock_cap: timedelta = timedelta(days=7),
        repository_retry: RetryStrategy | None = None,
        renew_interval_seconds: float | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.worker_id = worker_id
        self.claim_ttl = claim_ttl
        self.tick_seconds = tick_seconds
        self.wall_clock_cap = wall_clock_cap
        self.renew_interval_seconds = (
            claim_ttl.total_seconds() / 3 if renew_interval_seconds is None else renew_interval_seconds
        )
        self._retry = repository_retry or ExponentialBackoff(max_retries=3)
        self._clock = clock
        self._stats = MonitorStats()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(cls, repository: ExecutionRepository, settings: Any, **kwargs: Any) -> ExecutionMonitor:
        return cls(
            repository,
            worker_id=settings.worker_id,
            claim_ttl=settings.claim_ttl,
            tick_seconds=settings.scheduler_tick_seconds,
            wall_clock_cap=settings.wall_clock_cap,
            repository_retry=ExponentialBackoff(max_retries=settings.repository_retry_attempts),
            **kwargs,
        )

    # === Claims ===

    async def claim_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Claim *execution_id* for this worker; the claimed record or None."""
        claimed = await call_with_retry(
            self._retry,
            self.repository.try_claim,
            execution_id,
            self.worker_id,
            self.claim_ttl,
            self._clock(),
        )
        if not claimed:
            logger.debug("monitor.claim_refused", execution_id=execution_id, worker_id=self.worker_id)
            return None
        execution = await call_with_retry(self._retry, self.repository.get_by_id, execution_id)
        if execution is None:
            return None
        logger.info("monitor.claimed", execution_id=execution_id, worker_id=self.worker_id)
        return execution

    def heartbeat(self, execution: WorkflowExecution) -> None:
        """Extend the claim carried by *execution*; persisted by the next write."""
        execution.claim = Claim(worker_id=self.worker_id, expires_at=self._clock() + self.claim_ttl)

    async def renew_claim(self, execution: WorkflowExecution) -> bool:
        """Extend the stored claim now; False once the claim is gone."""
        now = self._clock()
        renewed = await call_with_retry(
            self._retry,
            self.repository.renew_claim,
            execution.id,
            self.worker_id,
            self.claim_ttl,
            now,
        )
        if renewed:
            execution.claim = Claim(worker_id=self.worker_id, expires_at=now + self.claim_ttl)
        else:
            logger.warning("monitor.claim_renewal_refused", execution_id=execution.id, worker_id=self.worker_id)
        return renewed

    async def keep_claim(self, execution: WorkflowExecution) -> None:
        """Renew the claim on *execution* until cancelled or refused."""
        while True:
            await asyncio.sleep(self.renew_interval_seconds)
            try:
                if not await self.renew_claim(execution):
                    return
            except RepositoryError as exc:
                # the lease may still be live; the next round retries
                logger.warning("monitor.claim_renewal_failed", execution_id=execution.id, error=exc.message)

    async def release(self, execution_id: str) -> None:
        await call_with_retry(self._retry, self.repository.release_claim, execution_id, self.worker_id)

    # === Tick ===

    async def tick(self, now: datetime | None = None) -> MonitorStats:
        """Requeue stale executions and apply the wall-clock cap."""
        now = now or self._clock()
        self._stats.tick_count += 1
        self._stats.last_tick = now

        try:
            stale = await call_with_retry(self._retry, self.repository.find_stale_claims, now)
            for execution_id in stale:
                if await call_with_retry(self._retry, self.repository.requeue_stale, execution_id, now):
                    self._stats.requeued += 1
                    logger.warning("monitor.execution_requeued", execution_id=execution_id)

            cutoff = now - self.wall_clock_cap
            expired = await call_with_retry(
                self._retry, self.repository.find_running_started_before, cutoff
            )
            for execution_id in expired:
                flagged = await call_with_retry(
                    self._retry,
                    self.repository.set_cancelling,
                    execution_id,
                    CancelledSystemId.SYSTEM_MINUTE_CAP_EXPIRE.value,
                )
                if flagged:
                    self._stats.minute_capped += 1
                    logger.warning(
                        "monitor.minute_cap_expired",
                        execution_id=execution_id,
                        cap_minutes=int(self.wall_clock_cap.total_seconds() // 60),
                    )
        except RepositoryError as exc:
            self._stats.last_error = exc.message
            logger.error("monitor.tick_failed", error=exc.message)

        return self._stats

    # === Lifecycle ===

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            logger.warning("monitor.already_running")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("monitor.started", tick_seconds=self.tick_seconds, worker_id=self.worker_id)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("monitor.stopped")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def get_stats(self) -> MonitorStats:
        return self._stats

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.tick_seconds)
            except TimeoutError:
                pass


__all__ = ["ExecutionMonitor", "MonitorStats"]
