import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from reportflow.core.config import Settings, get_settings
from reportflow.core.context import SchedulerContext
from reportflow.schemas.scheduler import ClaimResult
from reportflow.services.execution_runner import ExecutionRunner
from reportflow.services.scheduler_service import SchedulerService

logger = logging.getLogger(__name__)


class SchedulerLoop:
    """Polls for due schedules, claims them and runs the claimed executions.

    A schedule is claimed only once a concurrency slot is free, so pending
    executions never queue up behind the limit long enough to look stale.
    """

    def __init__(
        self,
        context: SchedulerContext,
        service: SchedulerService,
        runner: ExecutionRunner,
        settings: Optional[Settings] = None,
    ) -> None:
        self.context = context
        self.service = service
        self.runner = runner
        self.settings = settings or get_settings()
        self._running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._semaphore_loop: Optional[asyncio.AbstractEventLoop] = None

    def _slots(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(self.settings.scheduler_max_concurrent_executions)
            self._semaphore_loop = loop
        return self._semaphore

    async def tick(self) -> List[str]:
        """Run one polling pass; returns the ids of executions it ran."""
        try:
            now = self.context.now()
            db = self.context.session_factory()
            try:
                self._recover_stale(db, now)
                due = self.service.find_due_schedules(db, now, self.settings.scheduler_batch_size)
            finally:
                db.close()

            if not due:
                return []
            logger.info("Found %s due schedule(s)", len(due))
            results = await asyncio.gather(*(self._process(schedule_id, due_at) for schedule_id, due_at in due))
            return [execution_id for execution_id in results if execution_id]
        except Exception as exc:
            logger.exception("Scheduler tick failed: %s", exc)
            return []

    def _recover_stale(self, db, now: datetime) -> None:
        try:
            recovered = self.service.claimer.recover_stale(
                db,
                now,
                catch_up=self.settings.scheduler_catch_up_missed_runs,
            )
        except Exception as exc:
            db.rollback()
            logger.exception("Stale execution recovery failed: %s", exc)
            return
        if recovered:
            logger.warning("Recovered %s stale execution(s)", len(recovered))

    async def _process(self, schedule_id: str, due_at: datetime) -> Optional[str]:
        async with self._slots():
            execution_id = self._claim(schedule_id, due_at)
            if execution_id is None:
                return None
            try:
                await self.runner.run(execution_id)
            except Exception as exc:
                logger.exception("Execution %s for schedule %s crashed: %s", execution_id, schedule_id, exc)
            finally:
                self._reschedule(schedule_id, due_at)
            return execution_id

    def _claim(self, schedule_id: str, due_at: datetime) -> Optional[str]:
        db = self.context.session_factory()
        try:
            result, execution_id = self.service.claimer.try_claim(db, schedule_id, due_at, self.context.now())
        except Exception as exc:
            db.rollback()
            logger.exception("Failed to claim schedule %s: %s", schedule_id, exc)
            return None
        finally:
            db.close()

        if result != ClaimResult.CLAIMED:
            logger.debug("Schedule %s not claimed for %s: %s", schedule_id, due_at.isoformat(), result.value)
            return None
        return execution_id

    def _reschedule(self, schedule_id: str, anchor: datetime) -> None:
        db = self.context.session_factory()
        try:
            next_run_at = self.service.reschedule_after_run(db, schedule_id, anchor)
            if next_run_at is not None:
                logger.info("Schedule %s next due at %s", schedule_id, next_run_at.isoformat())
            else:
                logger.info("Schedule %s left parked after run", schedule_id)
        except Exception as exc:
            db.rollback()
            logger.exception("Failed to reschedule schedule %s: %s", schedule_id, exc)
        finally:
            db.close()

    async def run_forever(self) -> None:
        self._running = True
        self._stop_event = asyncio.Event()
        poll_interval = self.settings.scheduler_poll_interval_seconds

        while self._running:
            # The next poll starts only after every execution of this one has finished.
            await self.tick()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
