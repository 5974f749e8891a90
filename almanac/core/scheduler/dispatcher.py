# almanac/core/scheduler/dispatcher.py
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from almanac.core.defaults import LEASE_GRACE_MS
from almanac.core.errors import ExecutionError
from almanac.core.logging import get_logger
from almanac.core.models.config import DispatcherConfig
from almanac.core.models.schedule_task import ScheduleTask
from almanac.core.scheduler.handlers import HandlerRegistry
from almanac.core.scheduler.lease import LeaseStore
from almanac.core.scheduler.state import TaskRepository
from almanac.core.scheduler.tracker import ExecutionTracker
from almanac.core.types.status import ExecutionStatus
from almanac.core.utils.timeconv import utcnow

logger = get_logger('dispatcher')


@dataclass(frozen=True)
class DispatchResult:
    """What one tick did with one due task. ``status`` is None when it did not run."""

    task_id: str
    status: Optional[ExecutionStatus]
    error: Optional[str] = None

    @property
    def ran(self) -> bool:
        return self.status is not None


class Dispatcher:
    """
    Polls for due tasks and runs each under a lease and a timeout.

    Responsibilities:
    1. Fetch due tasks (enabled, dispatchable, next_execution_time <= now)
    2. Claim a per-task lease so overlapping ticks or replicas never double-fire
    3. Run the handler for the task type under the task's timeout
    4. Hand the outcome to the ExecutionTracker

    Tasks in one tick run concurrently; a failure in one never aborts the rest.
    """

    def __init__(
        self,
        repository: TaskRepository,
        lease_store: LeaseStore,
        tracker: ExecutionTracker,
        handlers: HandlerRegistry,
        config: Optional[DispatcherConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.lease_store = lease_store
        self.tracker = tracker
        self.handlers = handlers
        self.config = config or DispatcherConfig()
        self.clock = clock
        self._stop = asyncio.Event()

    @property
    def owner_id(self) -> str:
        return self.config.owner_id

    def request_stop(self) -> None:
        """Request the loop to stop after the current tick."""
        self._stop.set()

    async def run_forever(self) -> None:
        """Main dispatcher loop."""
        logger.info(
            f'Starting dispatcher loop as {self.owner_id}, '
            f'poll_interval={self.config.poll_interval_seconds}s'
        )
        self._stop.clear()

        while not self._stop.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error(f'Error in dispatcher loop: {e}', exc_info=True)

            # Wait for poll interval or stop signal
            try:
                await asyncio.wait_for(
                    self._stop.wait(),
                    timeout=self.config.poll_interval_seconds,
                )
                break
            except asyncio.TimeoutError:
                continue

        logger.info('Dispatcher stopped')

    async def tick(self, now: Optional[datetime] = None) -> list[DispatchResult]:
        """Run every task due at ``now`` once."""
        now = now or self.clock()
        due = await self.repository.find_due(now, self.config.batch_size)
        if not due:
            return []

        logger.debug(f'{len(due)} task(s) due at {now.isoformat()}')
        outcomes = await asyncio.gather(
            *(self._dispatch(task, now) for task in due),
            return_exceptions=True,
        )

        results: list[DispatchResult] = []
        for task, outcome in zip(due, outcomes):
            if isinstance(outcome, DispatchResult):
                results.append(outcome)
            elif isinstance(outcome, Exception):
                logger.error(
                    f"Dispatch of task '{task.id}' failed: {outcome}",
                    exc_info=outcome,
                )
                results.append(DispatchResult(task.id, None, str(outcome)))
            else:
                # CancelledError and friends belong to the caller
                raise outcome
        return results

    async def _dispatch(self, candidate: ScheduleTask, now: datetime) -> DispatchResult:
        if not candidate.can_execute(now):
            return DispatchResult(candidate.id, None)

        timeout = self._timeout_for(candidate)
        ttl_ms = max(self.config.lease_ttl_ms, int(timeout * 1000) + LEASE_GRACE_MS)
        acquired = await self.lease_store.acquire(
            candidate.id, self.owner_id, timedelta(milliseconds=ttl_ms), now
        )
        if not acquired:
            logger.debug(f"Task '{candidate.id}' is leased elsewhere, skipping")
            return DispatchResult(candidate.id, None)

        try:
            # Re-read under the lease; the polled copy may be stale
            task = await self.repository.get(candidate.id)
            if task is None or not task.can_execute(now):
                return DispatchResult(candidate.id, None)

            slot = task.next_execution_time
            started_at = self.clock()
            status, error = await self._execute(task, timeout)
            await self.tracker.record(
                task.id,
                status,
                started_at,
                self.clock(),
                slot=slot,
                error=error,
            )
            return DispatchResult(task.id, status, error)
        finally:
            await self.lease_store.release(candidate.id, self.owner_id)

    async def _execute(
        self, task: ScheduleTask, timeout: float
    ) -> tuple[ExecutionStatus, Optional[str]]:
        try:
            status = await asyncio.wait_for(self.handlers.run(task), timeout=timeout)
            return status, None
        except asyncio.TimeoutError:
            logger.warning(f"Task '{task.id}' timed out after {timeout}s")
            return ExecutionStatus.TIMEOUT, f'timed out after {timeout}s'
        except ExecutionError as e:
            logger.warning(f"Task '{task.id}' failed: {e.message}")
            return ExecutionStatus.FAILED, e.message
        except Exception as e:
            logger.error(f"Task '{task.id}' raised {type(e).__name__}: {e}", exc_info=True)
            return ExecutionStatus.FAILED, f'{type(e).__name__}: {e}'

    def _timeout_for(self, task: ScheduleTask) -> float:
        return float(task.execution.timeout_seconds or self.config.default_timeout_seconds)
