import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError
from sqlalchemy.orm import Session

from reportflow.core.config import get_settings
from reportflow.core.context import SchedulerContext
from reportflow.core.errors import ScheduleLimitError, ScheduleNotFoundError, ScheduleValidationError
from reportflow.database.models import models as db_models
from reportflow.schemas.scheduler import (
    ApprovalState,
    ClaimResult,
    EmailSecurityLevel,
    ExecutionRecord,
    ExecutionTrigger,
    Frequency,
    Recipient,
    RecurrenceSpec,
    Schedule,
    ScheduleCreate,
    ScheduleUpdate,
    SchedulerLogEntry,
)
from reportflow.services.approval_gate import ApprovalGate
from reportflow.services.collaborators import TenantDirectory
from reportflow.services.execution_ledger import ExecutionLedger, execution_ledger
from reportflow.services.notification_service import email_domain, is_external
from reportflow.services.recurrence import next_due, resolve_timezone, spec_from_schedule
from reportflow.services.schedule_claimer import ScheduleClaimer
from reportflow.services.scheduler_events import list_events_for_schedule, log_scheduler_event

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

DISPOSABLE_DOMAINS = frozenset(
    {
        "guerrillamail.com",
        "mailinator.com",
        "tempmail.com",
        "10minutemail.com",
        "throwaway.email",
    }
)


class SchedulerService:
    """Tenant-scoped management of report schedules.

    Every configuration error is raised here, before a schedule can reach
    the scheduler loop. Whether the caller may manage schedules at all is
    decided by the capability check at the API boundary.
    """

    def __init__(
        self,
        context: SchedulerContext,
        tenant_directory: TenantDirectory,
        claimer: Optional[ScheduleClaimer] = None,
        ledger: Optional[ExecutionLedger] = None,
    ) -> None:
        self.settings = get_settings()
        self.context = context
        self.tenant_directory = tenant_directory
        self.ledger = ledger or execution_ledger
        self.claimer = claimer or ScheduleClaimer(
            ledger=self.ledger,
            cancellations=context.cancellations,
            stale_after_seconds=self.settings.scheduler_stale_execution_seconds,
        )
        self.gate = ApprovalGate(context.cancellations)

    # --- Validation ---

    def _build_spec(
        self,
        frequency: Frequency,
        time_of_day: str,
        timezone_name: str,
        day_of_week: Optional[int],
        day_of_month: Optional[int],
    ) -> RecurrenceSpec:
        try:
            spec = RecurrenceSpec(
                frequency=frequency,
                time_of_day=time_of_day,
                day_of_week=day_of_week,
                day_of_month=day_of_month,
            )
        except ValidationError as exc:
            error = exc.errors()[0]
            field = str(error["loc"][0]) if error.get("loc") else None
            raise ScheduleValidationError(error["msg"], field=field) from exc
        try:
            resolve_timezone(timezone_name)
        except ValueError as exc:
            raise ScheduleValidationError(str(exc), field="timezone") from exc
        return spec

    def _normalize_recipients(self, recipients: List[str]) -> List[str]:
        normalized: List[str] = []
        seen: Set[str] = set()
        for raw in recipients:
            email = (raw or "").strip()
            if not EMAIL_PATTERN.match(email):
                raise ScheduleValidationError(f"Invalid email address: {raw}", field="recipients")
            if email_domain(email) in DISPOSABLE_DOMAINS:
                raise ScheduleValidationError(
                    f"Disposable email addresses are not allowed: {email}",
                    field="recipients",
                )
            key = email.lower()
            if key in seen:
                continue
            seen.add(key)
            normalized.append(email)

        if not normalized:
            raise ScheduleValidationError("At least one recipient is required", field="recipients")
        if len(normalized) > self.settings.schedule_max_recipients:
            raise ScheduleValidationError(
                f"At most {self.settings.schedule_max_recipients} recipients are allowed",
                field="recipients",
            )
        return normalized

    async def _classify(self, tenant_id: int, recipients: List[str]) -> Tuple[List[str], List[str]]:
        allowed = await self.tenant_directory.allowed_domains(tenant_id)
        external = [e for e in recipients if is_external(e, allowed)]
        internal = [e for e in recipients if not is_external(e, allowed)]
        return internal, external

    def _recipient_rows(
        self,
        recipients: List[str],
        external: List[str],
        now: datetime,
    ) -> List[db_models.ScheduleRecipient]:
        return [
            db_models.ScheduleRecipient(
                email=email,
                domain=email_domain(email),
                is_external=email in external,
                created_at=now,
            )
            for email in recipients
        ]

    # --- Queries ---

    def _query(self, db: Session, tenant_id: int):
        return db.query(db_models.ReportSchedule).filter(
            db_models.ReportSchedule.tenant_id == tenant_id,
            db_models.ReportSchedule.deleted_at.is_(None),
        )

    def _get_model(self, db: Session, tenant_id: int, schedule_id: str) -> db_models.ReportSchedule:
        db_schedule = self._query(db, tenant_id).filter(db_models.ReportSchedule.id == schedule_id).first()
        if db_schedule is None:
            raise ScheduleNotFoundError(f"Schedule {schedule_id} not found")
        return db_schedule

    def get_schedule(self, db: Session, tenant_id: int, schedule_id: str) -> Optional[Schedule]:
        try:
            return self._to_schedule_schema(self._get_model(db, tenant_id, schedule_id))
        except ScheduleNotFoundError:
            return None

    def list_schedules(
        self,
        db: Session,
        tenant_id: int,
        include_disabled: bool = True,
        report_id: Optional[int] = None,
    ) -> List[Schedule]:
        query = self._query(db, tenant_id)
        if not include_disabled:
            query = query.filter(db_models.ReportSchedule.is_enabled.is_(True))
        if report_id is not None:
            query = query.filter(db_models.ReportSchedule.report_id == report_id)
        schedules = query.order_by(db_models.ReportSchedule.created_at.desc()).all()
        return [self._to_schedule_schema(s) for s in schedules]

    def find_due_schedules(self, db: Session, now: datetime, limit: int) -> List[Tuple[str, datetime]]:
        """(id, next_run_at) of eligible schedules due at ``now``, oldest first."""
        rows = (
            db.query(db_models.ReportSchedule.id, db_models.ReportSchedule.next_run_at)
            .filter(
                ApprovalGate.eligible_clause(),
                db_models.ReportSchedule.next_run_at.isnot(None),
                db_models.ReportSchedule.next_run_at <= now,
            )
            .order_by(db_models.ReportSchedule.next_run_at.asc(), db_models.ReportSchedule.id)
            .limit(limit)
            .all()
        )
        return [(schedule_id, next_run_at) for schedule_id, next_run_at in rows]

    # --- Mutations ---

    async def create_schedule(
        self,
        db: Session,
        tenant_id: int,
        user_id: int,
        schedule_in: ScheduleCreate,
    ) -> Schedule:
        timezone_name = schedule_in.timezone or self.settings.scheduler_default_timezone
        spec = self._build_spec(
            schedule_in.frequency,
            schedule_in.time_of_day,
            timezone_name,
            schedule_in.day_of_week,
            schedule_in.day_of_month,
        )
        recipients = self._normalize_recipients(schedule_in.recipients)
        internal, external = await self._classify(tenant_id, recipients)

        if schedule_in.is_enabled:
            self._check_active_limit(db, tenant_id)

        now = self.context.now()
        approval_state = self.gate.initial_state(schedule_in.requires_approval)
        db_schedule = db_models.ReportSchedule(
            tenant_id=tenant_id,
            report_id=schedule_in.report_id,
            name=schedule_in.name,
            frequency=spec.frequency.value,
            time_of_day=spec.time_of_day,
            timezone=timezone_name,
            day_of_week=spec.day_of_week,
            day_of_month=spec.day_of_month,
            next_run_at=next_due(spec, timezone_name, now) if schedule_in.is_enabled else None,
            email_security_level=schedule_in.email_security_level.value,
            requires_approval=schedule_in.requires_approval,
            approval_state=approval_state.value,
            is_enabled=schedule_in.is_enabled,
            created_by=user_id,
            created_at=now,
            last_modified_by=user_id,
            last_modified_at=now,
            updated_at=now,
        )
        db_schedule.recipients = self._recipient_rows(recipients, external, now)
        db.add(db_schedule)
        db.commit()
        db.refresh(db_schedule)

        log_scheduler_event(
            db,
            event_type="schedule_created_with_external" if external else "schedule_created",
            message=f"Schedule '{db_schedule.name}' created",
            tenant_id=tenant_id,
            schedule_id=db_schedule.id,
            user_id=user_id,
            details={
                "report_id": db_schedule.report_id,
                "frequency": db_schedule.frequency,
                "internal_emails": internal,
                "external_emails": external,
                "total_recipients": len(recipients),
            },
            timestamp=self.context.now(),
        )
        return self._to_schedule_schema(db_schedule)

    def _check_active_limit(self, db: Session, tenant_id: int, exclude_id: Optional[str] = None) -> None:
        query = self._query(db, tenant_id).filter(db_models.ReportSchedule.is_enabled.is_(True))
        if exclude_id is not None:
            query = query.filter(db_models.ReportSchedule.id != exclude_id)
        limit = self.settings.schedule_max_active_per_tenant
        if query.count() >= limit:
            raise ScheduleLimitError(f"Maximum of {limit} active schedules per tenant")

    async def update_schedule(
        self,
        db: Session,
        tenant_id: int,
        user_id: int,
        schedule_id: str,
        schedule_in: ScheduleUpdate,
    ) -> Schedule:
        db_schedule = self._get_model(db, tenant_id, schedule_id)
        now = self.context.now()
        changes = schedule_in.model_dump(exclude_unset=True)

        recurrence_fields = {"frequency", "time_of_day", "timezone", "day_of_week", "day_of_month"}
        recurrence_changed = bool(recurrence_fields & changes.keys())
        if recurrence_changed:
            timezone_name = changes.get("timezone") or db_schedule.timezone
            spec = self._build_spec(
                changes.get("frequency", db_schedule.frequency),
                changes.get("time_of_day", db_schedule.time_of_day),
                timezone_name,
                changes.get("day_of_week", db_schedule.day_of_week),
                changes.get("day_of_month", db_schedule.day_of_month),
            )
            db_schedule.frequency = spec.frequency.value
            db_schedule.time_of_day = spec.time_of_day
            db_schedule.timezone = timezone_name
            db_schedule.day_of_week = spec.day_of_week
            db_schedule.day_of_month = spec.day_of_month

        recipient_change: Optional[Dict[str, Any]] = None
        if schedule_in.recipients is not None:
            recipients = self._normalize_recipients(schedule_in.recipients)
            internal, external = await self._classify(tenant_id, recipients)
            old_external = [r.email for r in db_schedule.recipients if r.is_external]
            old_internal = [r.email for r in db_schedule.recipients if not r.is_external]
            recipient_change = {
                "before": {"total": len(db_schedule.recipients), "external": old_external, "internal": old_internal},
                "after": {"total": len(recipients), "external": external, "internal": internal},
                "added_external": [e for e in external if e not in old_external],
                "removed_external": [e for e in old_external if e not in external],
            }
            db_schedule.recipients.clear()
            db.flush()
            db_schedule.recipients.extend(self._recipient_rows(recipients, external, now))

        if schedule_in.name is not None:
            db_schedule.name = schedule_in.name
        if schedule_in.email_security_level is not None:
            db_schedule.email_security_level = schedule_in.email_security_level.value

        if schedule_in.is_enabled is not None and schedule_in.is_enabled != db_schedule.is_enabled:
            if schedule_in.is_enabled:
                self._check_active_limit(db, tenant_id, exclude_id=db_schedule.id)
                self.context.cancellations.reset(db_schedule.id)
            else:
                db_schedule.next_run_at = None
                self.context.cancellations.cancel(db_schedule.id)
            db_schedule.is_enabled = schedule_in.is_enabled

        if db_schedule.is_enabled and (recurrence_changed or schedule_in.is_enabled):
            # A schedule claimed by the loop gets its next instant when the run releases it.
            if db_schedule.next_run_at is not None or not self._awaiting_release(db, db_schedule.id):
                db_schedule.next_run_at = next_due(spec_from_schedule(db_schedule), db_schedule.timezone, now)

        db_schedule.last_modified_by = user_id
        db_schedule.last_modified_at = now
        db_schedule.updated_at = now
        db.add(db_schedule)
        db.commit()
        db.refresh(db_schedule)

        if recipient_change is not None:
            self._log_recipient_change(db, db_schedule, user_id, recipient_change)
        log_scheduler_event(
            db,
            event_type="schedule_updated",
            message=f"Schedule '{db_schedule.name}' updated",
            tenant_id=tenant_id,
            schedule_id=db_schedule.id,
            user_id=user_id,
            details={"updated_fields": sorted(changes.keys())},
            timestamp=self.context.now(),
        )
        return self._to_schedule_schema(db_schedule)

    def _log_recipient_change(
        self,
        db: Session,
        db_schedule: db_models.ReportSchedule,
        user_id: int,
        change: Dict[str, Any],
    ) -> None:
        common = {"tenant_id": db_schedule.tenant_id, "schedule_id": db_schedule.id, "user_id": user_id}
        log_scheduler_event(
            db,
            event_type="schedule_recipients_changed",
            message=f"Recipients of schedule '{db_schedule.name}' changed",
            details=change,
            **common,
            timestamp=self.context.now(),
        )
        if change["added_external"]:
            log_scheduler_event(
                db,
                event_type="external_recipient_added",
                message=f"External recipients added to schedule '{db_schedule.name}'",
                details={"added_emails": change["added_external"]},
                level="WARNING",
                **common,
                timestamp=self.context.now(),
            )
        if change["removed_external"]:
            log_scheduler_event(
                db,
                event_type="external_recipient_removed",
                message=f"External recipients removed from schedule '{db_schedule.name}'",
                details={"removed_emails": change["removed_external"]},
                **common,
                timestamp=self.context.now(),
            )

    def delete_schedule(self, db: Session, tenant_id: int, user_id: int, schedule_id: str) -> None:
        db_schedule = self._get_model(db, tenant_id, schedule_id)
        now = self.context.now()
        db_schedule.deleted_at = now
        db_schedule.is_enabled = False
        db_schedule.next_run_at = None
        db_schedule.last_modified_by = user_id
        db_schedule.last_modified_at = now
        db_schedule.updated_at = now
        db.add(db_schedule)
        db.commit()
        self.context.cancellations.cancel(schedule_id)

        log_scheduler_event(
            db,
            event_type="schedule_deleted",
            message=f"Schedule '{db_schedule.name}' deleted",
            tenant_id=tenant_id,
            schedule_id=schedule_id,
            user_id=user_id,
            timestamp=self.context.now(),
        )

    # --- Approval ---

    def submit_for_approval(self, db: Session, tenant_id: int, user_id: int, schedule_id: str) -> Schedule:
        db_schedule = self._get_model(db, tenant_id, schedule_id)
        self.gate.submit(db_schedule)
        return self._commit_approval_change(db, db_schedule, user_id, "schedule_submitted_for_approval")

    def approve_schedule(self, db: Session, tenant_id: int, user_id: int, schedule_id: str) -> Schedule:
        db_schedule = self._get_model(db, tenant_id, schedule_id)
        now = self.context.now()
        self.gate.approve(db_schedule, approver_id=user_id, now=now)
        if db_schedule.is_enabled and db_schedule.next_run_at is None and not self._awaiting_release(db, schedule_id):
            db_schedule.next_run_at = next_due(spec_from_schedule(db_schedule), db_schedule.timezone, now)
        return self._commit_approval_change(db, db_schedule, user_id, "schedule_approved")

    def revoke_approval(self, db: Session, tenant_id: int, user_id: int, schedule_id: str) -> Schedule:
        db_schedule = self._get_model(db, tenant_id, schedule_id)
        self.gate.revoke(db_schedule)
        return self._commit_approval_change(db, db_schedule, user_id, "schedule_approval_revoked")

    def _commit_approval_change(
        self,
        db: Session,
        db_schedule: db_models.ReportSchedule,
        user_id: int,
        event_type: str,
    ) -> Schedule:
        now = self.context.now()
        db_schedule.last_modified_by = user_id
        db_schedule.last_modified_at = now
        db_schedule.updated_at = now
        db.add(db_schedule)
        db.commit()
        db.refresh(db_schedule)
        log_scheduler_event(
            db,
            event_type=event_type,
            message=f"Schedule '{db_schedule.name}' is now {db_schedule.approval_state}",
            tenant_id=db_schedule.tenant_id,
            schedule_id=db_schedule.id,
            user_id=user_id,
            details={"approval_state": db_schedule.approval_state},
            timestamp=self.context.now(),
        )
        return self._to_schedule_schema(db_schedule)

    def _awaiting_release(self, db: Session, schedule_id: str) -> bool:
        # Manual runs never park next_run_at, so only a scheduled claim will hand it back.
        record = self.ledger.in_flight(db, schedule_id)
        return record is not None and record.trigger == ExecutionTrigger.SCHEDULE.value

    # --- Executions ---

    def trigger_now(self, db: Session, tenant_id: int, user_id: int, schedule_id: str) -> Tuple[ClaimResult, Optional[str]]:
        db_schedule = self._get_model(db, tenant_id, schedule_id)
        if not self.gate.is_eligible(db_schedule):
            raise ScheduleValidationError("Schedule must be enabled and approved to run", field="schedule")
        result, execution_id = self.claimer.claim_manual(db, db_schedule, self.context.now())
        if result == ClaimResult.CLAIMED:
            log_scheduler_event(
                db,
                event_type="manual_run_queued",
                message=f"Manual run of schedule '{db_schedule.name}' queued",
                tenant_id=tenant_id,
                schedule_id=schedule_id,
                execution_id=execution_id,
                user_id=user_id,
                timestamp=self.context.now(),
            )
        return result, execution_id

    def list_executions(
        self,
        db: Session,
        tenant_id: int,
        schedule_id: str,
        started_after: Optional[datetime] = None,
        started_before: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[ExecutionRecord]:
        self._get_model(db, tenant_id, schedule_id)
        return self.ledger.list_for_schedule(
            db,
            tenant_id,
            schedule_id,
            started_after=started_after,
            started_before=started_before,
            limit=limit,
        )

    def get_logs_for_schedule(self, db: Session, tenant_id: int, schedule_id: str) -> List[SchedulerLogEntry]:
        self._get_model(db, tenant_id, schedule_id)
        return list_events_for_schedule(db, tenant_id, schedule_id)

    def reschedule_after_run(
        self,
        db: Session,
        schedule_id: str,
        anchor: datetime,
        now: Optional[datetime] = None,
    ) -> Optional[datetime]:
        return self.claimer.release(
            db,
            schedule_id,
            anchor,
            now or self.context.now(),
            catch_up=self.settings.scheduler_catch_up_missed_runs,
        )

    # --- Conversion ---

    def _to_schedule_schema(self, db_schedule: db_models.ReportSchedule) -> Schedule:
        return Schedule(
            id=db_schedule.id,
            tenant_id=db_schedule.tenant_id,
            report_id=db_schedule.report_id,
            name=db_schedule.name,
            frequency=Frequency(db_schedule.frequency),
            time_of_day=db_schedule.time_of_day,
            timezone=db_schedule.timezone,
            day_of_week=db_schedule.day_of_week,
            day_of_month=db_schedule.day_of_month,
            next_run_at=db_schedule.next_run_at,
            is_enabled=db_schedule.is_enabled,
            requires_approval=db_schedule.requires_approval,
            approval_state=ApprovalState(db_schedule.approval_state),
            approved_by=db_schedule.approved_by,
            approved_at=db_schedule.approved_at,
            email_security_level=EmailSecurityLevel(db_schedule.email_security_level),
            recipients=[
                Recipient(
                    id=r.id,
                    email=r.email,
                    domain=r.domain,
                    is_external=r.is_external,
                    created_at=r.created_at,
                )
                for r in db_schedule.recipients
            ],
            created_by=db_schedule.created_by,
            created_at=db_schedule.created_at,
            last_modified_by=db_schedule.last_modified_by,
            last_modified_at=db_schedule.last_modified_at,
        )
