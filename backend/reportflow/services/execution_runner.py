import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from reportflow.core.context import SchedulerContext
from reportflow.core.errors import ExecutionCancelled, ExecutorUnavailableError, QueryExecutionError
from reportflow.database.models import models as db_models
from reportflow.schemas.scheduler import (
    ApprovalState,
    EmailSecurityLevel,
    ExecutionErrorKind,
    ExecutionRecord,
    ExecutionStatus,
    ReportPayload,
)
from reportflow.services.collaborators import QueryExecutor
from reportflow.services.execution_ledger import ExecutionLedger, execution_ledger, format_error
from reportflow.services.notification_service import NotificationService
from reportflow.services.scheduler_events import log_scheduler_event

logger = logging.getLogger(__name__)


@dataclass
class _Outcome:
    status: ExecutionStatus
    emails_sent: int = 0
    emails_failed: int = 0
    error_message: Optional[str] = None


class ExecutionRunner:
    """Runs one claimed execution from pending to a terminal status.

    The timeout bounds the report query only: once delivery starts, emails
    already sent cannot be taken back, so a slow transport is accounted per
    recipient instead.
    """

    def __init__(
        self,
        context: SchedulerContext,
        query_executor: QueryExecutor,
        notifier: NotificationService,
        timeout_seconds: float = 300,
        ledger: Optional[ExecutionLedger] = None,
    ) -> None:
        self.context = context
        self.query_executor = query_executor
        self.notifier = notifier
        self.timeout_seconds = timeout_seconds
        self.ledger = ledger or execution_ledger

    async def run(self, execution_id: str) -> Optional[ExecutionRecord]:
        db = self.context.session_factory()
        try:
            return await self._run(db, execution_id)
        finally:
            db.close()

    async def _run(self, db: Session, execution_id: str) -> Optional[ExecutionRecord]:
        record = self.ledger.get(db, execution_id)
        if record is None:
            logger.error("Execution %s not found", execution_id)
            return None

        schedule_id = record.schedule_id
        tenant_id = record.tenant_id
        report_id = record.report_id

        if not self.ledger.mark_running(db, execution_id):
            logger.warning("Execution %s is no longer pending; not running it", execution_id)
            return self.ledger.to_schema(self.ledger.get(db, execution_id))

        outcome = await self._execute(db, schedule_id, tenant_id, report_id)

        finalized = self.ledger.finalize(
            db,
            execution_id,
            outcome.status,
            completed_at=self.context.now(),
            emails_sent=outcome.emails_sent,
            emails_failed=outcome.emails_failed,
            error_message=outcome.error_message,
        )
        if not finalized:
            logger.warning(
                "Execution %s was already finalized elsewhere; dropping outcome %s",
                execution_id,
                outcome.status.value,
            )
        else:
            log_scheduler_event(
                db,
                event_type=f"execution_{outcome.status.value}",
                message=f"Execution {execution_id} {outcome.status.value}",
                tenant_id=tenant_id,
                schedule_id=schedule_id,
                execution_id=execution_id,
                details={
                    "emails_sent": outcome.emails_sent,
                    "emails_failed": outcome.emails_failed,
                    "error_message": outcome.error_message,
                },
                level="INFO" if outcome.status == ExecutionStatus.COMPLETED else "WARNING",
                timestamp=self.context.now(),
            )
        return self.ledger.to_schema(self.ledger.get(db, execution_id))

    async def _execute(self, db: Session, schedule_id: str, tenant_id: int, report_id: int) -> _Outcome:
        try:
            self._raise_if_cancelled(db, schedule_id)
            raw = await self._query(db, schedule_id, report_id)
            try:
                payload = ReportPayload.model_validate(raw)
            except ValidationError as exc:
                return _Outcome(
                    ExecutionStatus.FAILED,
                    error_message=format_error(
                        ExecutionErrorKind.MALFORMED_PAYLOAD,
                        f"{exc.error_count()} validation error(s) in report payload",
                    ),
                )

            self._raise_if_cancelled(db, schedule_id)
            schedule = db.get(db_models.ReportSchedule, schedule_id)
            recipients = [r.email for r in schedule.recipients]
            dispatch = await self.notifier.dispatch(
                payload,
                recipients,
                tenant_id=tenant_id,
                security_level=EmailSecurityLevel(schedule.email_security_level),
                should_cancel=lambda: self._is_cancelled(db, schedule_id),
            )
            return _Outcome(
                ExecutionStatus.COMPLETED,
                emails_sent=dispatch.sent,
                emails_failed=dispatch.failed,
            )
        except ExecutionCancelled as exc:
            logger.info("Execution for schedule %s cancelled: %s", schedule_id, exc.reason)
            return _Outcome(
                ExecutionStatus.CANCELLED,
                emails_sent=exc.sent,
                emails_failed=exc.failed,
                error_message=exc.reason,
            )
        except asyncio.TimeoutError:
            return _Outcome(
                ExecutionStatus.FAILED,
                error_message=format_error(
                    ExecutionErrorKind.TIMEOUT,
                    f"report query exceeded {self.timeout_seconds:g}s",
                ),
            )
        except ExecutorUnavailableError as exc:
            return _Outcome(
                ExecutionStatus.FAILED,
                error_message=format_error(ExecutionErrorKind.EXECUTOR_UNAVAILABLE, str(exc)),
            )
        except QueryExecutionError as exc:
            return _Outcome(
                ExecutionStatus.FAILED,
                error_message=format_error(ExecutionErrorKind.EXECUTOR_ERROR, str(exc)),
            )
        except Exception as exc:
            logger.exception("Execution for schedule %s failed unexpectedly", schedule_id)
            return _Outcome(
                ExecutionStatus.FAILED,
                error_message=format_error(ExecutionErrorKind.INTERNAL_ERROR, str(exc) or type(exc).__name__),
            )

    async def _query(self, db: Session, schedule_id: str, report_id: int) -> Mapping[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds
        task = asyncio.ensure_future(self.query_executor.execute(report_id))
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                done, _ = await asyncio.wait(
                    {task},
                    timeout=min(remaining, self.context.cancel_check_interval_seconds),
                )
                if done:
                    return task.result()
                self._raise_if_cancelled(db, schedule_id)
        finally:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    def _raise_if_cancelled(self, db: Session, schedule_id: str) -> None:
        if self._is_cancelled(db, schedule_id):
            raise ExecutionCancelled("cancelled: schedule disabled, deleted or no longer approved")

    def _is_cancelled(self, db: Session, schedule_id: str) -> bool:
        if self.context.cancellations.is_cancelled(schedule_id):
            return True
        row = (
            db.query(
                db_models.ReportSchedule.is_enabled,
                db_models.ReportSchedule.deleted_at,
                db_models.ReportSchedule.approval_state,
            )
            .filter(db_models.ReportSchedule.id == schedule_id)
            .first()
        )
        if row is None:
            return True
        is_enabled, deleted_at, approval_state = row
        return not is_enabled or deleted_at is not None or approval_state != ApprovalState.APPROVED.value
