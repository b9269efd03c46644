from datetime import datetime
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from reportflow.database.models import models as db_models
from reportflow.schemas.scheduler import (
    IN_FLIGHT_STATUSES,
    ExecutionErrorKind,
    ExecutionRecord,
    ExecutionStatus,
    ExecutionTrigger,
)


def format_error(kind: ExecutionErrorKind, detail: str) -> str:
    return f"{kind.value}: {detail}"


class ExecutionLedger:
    """Append-only store of execution attempts.

    Records only move forward: pending -> running -> one terminal status.
    Every transition is a conditional update on the current status, so a
    record that reached a terminal status is never written again.
    """

    def new_pending(
        self,
        schedule: db_models.ReportSchedule,
        scheduled_for: datetime,
        started_at: datetime,
        trigger: ExecutionTrigger = ExecutionTrigger.SCHEDULE,
    ) -> db_models.ScheduleExecution:
        return db_models.ScheduleExecution(
            schedule_id=schedule.id,
            tenant_id=schedule.tenant_id,
            report_id=schedule.report_id,
            scheduled_for=scheduled_for,
            trigger=trigger.value,
            started_at=started_at,
            completed_at=None,
            status=ExecutionStatus.PENDING.value,
            emails_sent=0,
            emails_failed=0,
            error_message=None,
        )

    def get(self, db: Session, execution_id: str) -> Optional[db_models.ScheduleExecution]:
        return (
            db.query(db_models.ScheduleExecution)
            .filter(db_models.ScheduleExecution.id == execution_id)
            .first()
        )

    def in_flight(self, db: Session, schedule_id: str) -> Optional[db_models.ScheduleExecution]:
        return (
            db.query(db_models.ScheduleExecution)
            .filter(
                db_models.ScheduleExecution.schedule_id == schedule_id,
                db_models.ScheduleExecution.status.in_(IN_FLIGHT_STATUSES),
            )
            .first()
        )

    def for_occurrence(
        self,
        db: Session,
        schedule_id: str,
        scheduled_for: datetime,
    ) -> Optional[db_models.ScheduleExecution]:
        return (
            db.query(db_models.ScheduleExecution)
            .filter(
                db_models.ScheduleExecution.schedule_id == schedule_id,
                db_models.ScheduleExecution.scheduled_for == scheduled_for,
                db_models.ScheduleExecution.trigger == ExecutionTrigger.SCHEDULE.value,
            )
            .first()
        )

    def find_stale(self, db: Session, started_before: datetime) -> List[db_models.ScheduleExecution]:
        return (
            db.query(db_models.ScheduleExecution)
            .filter(
                db_models.ScheduleExecution.status.in_(IN_FLIGHT_STATUSES),
                db_models.ScheduleExecution.started_at < started_before,
            )
            .order_by(db_models.ScheduleExecution.started_at)
            .all()
        )

    def mark_running(self, db: Session, execution_id: str) -> bool:
        result = db.execute(
            update(db_models.ScheduleExecution)
            .where(
                db_models.ScheduleExecution.id == execution_id,
                db_models.ScheduleExecution.status == ExecutionStatus.PENDING.value,
            )
            .values(status=ExecutionStatus.RUNNING.value)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1

    def finalize(
        self,
        db: Session,
        execution_id: str,
        status: ExecutionStatus,
        completed_at: datetime,
        emails_sent: int = 0,
        emails_failed: int = 0,
        error_message: Optional[str] = None,
    ) -> bool:
        """Move a pending/running record to ``status`` together with its counts.

        Returns False when the record was already terminal, for example after
        stale-claim recovery took it over.
        """
        if status.value in IN_FLIGHT_STATUSES:
            raise ValueError(f"'{status.value}' is not a terminal status")
        result = db.execute(
            update(db_models.ScheduleExecution)
            .where(
                db_models.ScheduleExecution.id == execution_id,
                db_models.ScheduleExecution.status.in_(IN_FLIGHT_STATUSES),
            )
            .values(
                status=status.value,
                completed_at=completed_at,
                emails_sent=emails_sent,
                emails_failed=emails_failed,
                error_message=error_message,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1

    def mark_stale(self, db: Session, execution: db_models.ScheduleExecution, now: datetime) -> bool:
        """Fail an abandoned record, guarded on the status it was observed in."""
        result = db.execute(
            update(db_models.ScheduleExecution)
            .where(
                db_models.ScheduleExecution.id == execution.id,
                db_models.ScheduleExecution.status == execution.status,
            )
            .values(
                status=ExecutionStatus.FAILED.value,
                completed_at=now,
                error_message=format_error(ExecutionErrorKind.STALE, "execution abandoned"),
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1

    def list_for_schedule(
        self,
        db: Session,
        tenant_id: int,
        schedule_id: str,
        started_after: Optional[datetime] = None,
        started_before: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[ExecutionRecord]:
        query = db.query(db_models.ScheduleExecution).filter(
            db_models.ScheduleExecution.tenant_id == tenant_id,
            db_models.ScheduleExecution.schedule_id == schedule_id,
        )
        return self._window(query, started_after, started_before, limit)

    def list_for_tenant(
        self,
        db: Session,
        tenant_id: int,
        started_after: Optional[datetime] = None,
        started_before: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[ExecutionRecord]:
        query = db.query(db_models.ScheduleExecution).filter(
            db_models.ScheduleExecution.tenant_id == tenant_id,
        )
        return self._window(query, started_after, started_before, limit)

    def _window(self, query, started_after, started_before, limit) -> List[ExecutionRecord]:
        if started_after is not None:
            query = query.filter(db_models.ScheduleExecution.started_at >= started_after)
        if started_before is not None:
            query = query.filter(db_models.ScheduleExecution.started_at < started_before)
        records = query.order_by(db_models.ScheduleExecution.started_at.desc()).limit(limit).all()
        return [self.to_schema(r) for r in records]

    @staticmethod
    def to_schema(record: db_models.ScheduleExecution) -> ExecutionRecord:
        return ExecutionRecord(
            id=record.id,
            schedule_id=record.schedule_id,
            tenant_id=record.tenant_id,
            report_id=record.report_id,
            scheduled_for=record.scheduled_for,
            trigger=ExecutionTrigger(record.trigger),
            started_at=record.started_at,
            completed_at=record.completed_at,
            status=ExecutionStatus(record.status),
            emails_sent=record.emails_sent,
            emails_failed=record.emails_failed,
            error_message=record.error_message,
        )


execution_ledger = ExecutionLedger()
