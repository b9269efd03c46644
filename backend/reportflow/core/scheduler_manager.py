import asyncio
import logging
from typing import Optional

from reportflow.core.config import get_settings
from reportflow.core.context import SchedulerContext
from reportflow.database.connection import SessionLocal
from reportflow.services.collaborators import (
    HttpQueryExecutor,
    HttpTenantDirectory,
    SmtpEmailTransport,
)
from reportflow.services.execution_runner import ExecutionRunner
from reportflow.services.notification_service import NotificationService
from reportflow.services.scheduler_loop import SchedulerLoop
from reportflow.services.scheduler_service import SchedulerService

logger = logging.getLogger(__name__)

# Shared by the API and the loop so cancellations reach in-flight runs.
scheduler_context = SchedulerContext(session_factory=SessionLocal)

_scheduler_service: Optional[SchedulerService] = None
_execution_runner: Optional[ExecutionRunner] = None
_scheduler_loop: Optional[SchedulerLoop] = None
_scheduler_task: Optional[asyncio.Task] = None


def get_scheduler_service() -> SchedulerService:
    global _scheduler_service
    if _scheduler_service is None:
        _scheduler_service = SchedulerService(scheduler_context, HttpTenantDirectory())
    return _scheduler_service


def get_execution_runner() -> ExecutionRunner:
    global _execution_runner
    if _execution_runner is None:
        settings = get_settings()
        _execution_runner = ExecutionRunner(
            scheduler_context,
            HttpQueryExecutor(settings),
            NotificationService(SmtpEmailTransport(settings), HttpTenantDirectory(settings)),
            timeout_seconds=settings.scheduler_execution_timeout_seconds,
        )
    return _execution_runner


def build_scheduler_loop() -> SchedulerLoop:
    return SchedulerLoop(scheduler_context, get_scheduler_service(), get_execution_runner(), get_settings())


async def start_scheduler() -> None:
    global _scheduler_loop, _scheduler_task
    settings = get_settings()
    if not settings.scheduler_enabled:
        logger.info("Scheduler is disabled via configuration")
        return
    if _scheduler_task is not None:
        return
    _scheduler_loop = build_scheduler_loop()
    _scheduler_task = asyncio.create_task(_scheduler_loop.run_forever())
    logger.info(
        "Scheduler started (poll every %ss, up to %s concurrent executions)",
        settings.scheduler_poll_interval_seconds,
        settings.scheduler_max_concurrent_executions,
    )


async def stop_scheduler() -> None:
    global _scheduler_loop, _scheduler_task
    if _scheduler_task is None:
        return
    _scheduler_loop.stop()
    try:
        await _scheduler_task
    finally:
        _scheduler_task = None
        _scheduler_loop = None
        logger.info("Scheduler stopped")
