import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from reportflow.core.context import CancellationRegistry
from reportflow.database.models import models as db_models
from reportflow.schemas.scheduler import ClaimResult, ExecutionTrigger
from reportflow.services.approval_gate import ApprovalGate
from reportflow.services.execution_ledger import ExecutionLedger, execution_ledger
from reportflow.services.recurrence import next_due_after, spec_from_schedule
from reportflow.services.scheduler_events import log_scheduler_event

logger = logging.getLogger(__name__)


class ScheduleClaimer:
    """Hands out at most one execution slot per schedule per due instant.

    A claim is one transaction: a compare-and-swap of ``next_run_at`` from the
    observed due instant to NULL, plus the insert of a pending execution.
    Losing callers see zero affected rows (or a violation of the in-flight
    unique index) and back off.
    """

    def __init__(
        self,
        ledger: Optional[ExecutionLedger] = None,
        cancellations: Optional[CancellationRegistry] = None,
        stale_after_seconds: int = 1800,
    ) -> None:
        self.ledger = ledger or execution_ledger
        self.cancellations = cancellations
        self.stale_after = timedelta(seconds=stale_after_seconds)

    def try_claim(
        self,
        db: Session,
        schedule_id: str,
        due_instant: datetime,
        now: datetime,
    ) -> tuple[ClaimResult, Optional[str]]:
        if due_instant > now:
            return ClaimResult.NOT_DUE, None

        result = db.execute(
            update(db_models.ReportSchedule)
            .where(
                db_models.ReportSchedule.id == schedule_id,
                db_models.ReportSchedule.next_run_at == due_instant,
                ApprovalGate.eligible_clause(),
            )
            .values(next_run_at=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            return self._classify_miss(db, schedule_id, due_instant), None

        schedule = db.get(db_models.ReportSchedule, schedule_id)
        record = self.ledger.new_pending(schedule, scheduled_for=due_instant, started_at=now)
        db.add(record)
        try:
            db.commit()
        except IntegrityError:
            # A manual run holds the in-flight slot; leave next_run_at untouched.
            db.rollback()
            logger.debug("Schedule %s already has an execution in flight", schedule_id)
            return ClaimResult.ALREADY_CLAIMED, None

        if self.cancellations is not None:
            self.cancellations.reset(schedule_id)
        logger.info("Claimed schedule %s for %s (execution %s)", schedule_id, due_instant.isoformat(), record.id)
        return ClaimResult.CLAIMED, record.id

    def _classify_miss(self, db: Session, schedule_id: str, due_instant: datetime) -> ClaimResult:
        schedule = db.get(db_models.ReportSchedule, schedule_id)
        if schedule is None:
            return ClaimResult.NOT_DUE
        if self.ledger.for_occurrence(db, schedule_id, due_instant) is not None:
            return ClaimResult.ALREADY_CLAIMED
        if schedule.next_run_at is None and self.ledger.in_flight(db, schedule_id) is not None:
            return ClaimResult.ALREADY_CLAIMED
        return ClaimResult.NOT_DUE

    def claim_manual(
        self,
        db: Session,
        schedule: db_models.ReportSchedule,
        now: datetime,
    ) -> tuple[ClaimResult, Optional[str]]:
        """Reserve an out-of-band run; ``next_run_at`` is left as it is."""
        record = self.ledger.new_pending(
            schedule,
            scheduled_for=now,
            started_at=now,
            trigger=ExecutionTrigger.MANUAL,
        )
        db.add(record)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            return ClaimResult.ALREADY_CLAIMED, None
        if self.cancellations is not None:
            self.cancellations.reset(schedule.id)
        return ClaimResult.CLAIMED, record.id

    def recover_stale(self, db: Session, now: datetime, catch_up: bool = False) -> List[str]:
        """Fail executions stuck past the liveness window and reopen their schedules.

        Each stale record is taken over with a conditional update on the
        status it was seen in, so concurrent recoverers cannot both win.
        """
        recovered: List[str] = []
        for record in self.ledger.find_stale(db, now - self.stale_after):
            execution_id = record.id
            schedule_id = record.schedule_id
            tenant_id = record.tenant_id
            scheduled_for = record.scheduled_for
            trigger = record.trigger
            observed_status = record.status
            if not self.ledger.mark_stale(db, record, now):
                continue
            recovered.append(execution_id)
            logger.warning(
                "Recovered stale execution %s for schedule %s (was %s)",
                execution_id,
                schedule_id,
                observed_status,
            )
            log_scheduler_event(
                db,
                event_type="stale_claim_recovered",
                message=f"Execution {execution_id} abandoned while {observed_status}; marked failed",
                tenant_id=tenant_id,
                schedule_id=schedule_id,
                execution_id=execution_id,
                details={"scheduled_for": scheduled_for.isoformat(), "observed_status": observed_status},
                level="WARNING",
                timestamp=now,
            )
            if trigger == ExecutionTrigger.SCHEDULE.value:
                self.release(db, schedule_id, scheduled_for, now, catch_up)
        return recovered

    def release(
        self,
        db: Session,
        schedule_id: str,
        anchor: datetime,
        now: datetime,
        catch_up: bool = False,
    ) -> Optional[datetime]:
        """Set the next due instant after a claimed occurrence at ``anchor``.

        Only fills a NULL ``next_run_at`` on a still-eligible schedule: a
        schedule disabled, deleted or un-approved meanwhile stays parked.
        """
        schedule = db.get(db_models.ReportSchedule, schedule_id)
        if schedule is None:
            return None
        not_before = anchor if catch_up else now
        next_run_at = next_due_after(spec_from_schedule(schedule), schedule.timezone, anchor, not_before)
        result = db.execute(
            update(db_models.ReportSchedule)
            .where(
                db_models.ReportSchedule.id == schedule_id,
                db_models.ReportSchedule.next_run_at.is_(None),
                ApprovalGate.eligible_clause(),
            )
            .values(next_run_at=next_run_at)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return next_run_at if result.rowcount == 1 else None
