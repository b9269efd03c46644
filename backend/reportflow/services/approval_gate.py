from datetime import datetime
from typing import Optional

from sqlalchemy import and_

from reportflow.core.context import CancellationRegistry
from reportflow.core.errors import ApprovalError
from reportflow.database.models import models as db_models
from reportflow.schemas.scheduler import ApprovalState


class ApprovalGate:
    """draft -> pending_approval -> approved, with revoke back to pending_approval."""

    def __init__(self, cancellations: Optional[CancellationRegistry] = None) -> None:
        self.cancellations = cancellations

    @staticmethod
    def initial_state(requires_approval: bool) -> ApprovalState:
        return ApprovalState.DRAFT if requires_approval else ApprovalState.APPROVED

    @staticmethod
    def state_of(schedule: db_models.ReportSchedule) -> ApprovalState:
        if not schedule.requires_approval:
            return ApprovalState.APPROVED
        return ApprovalState(schedule.approval_state)

    def is_eligible(self, schedule: db_models.ReportSchedule) -> bool:
        return (
            self.state_of(schedule) == ApprovalState.APPROVED
            and bool(schedule.is_enabled)
            and schedule.deleted_at is None
        )

    @staticmethod
    def eligible_clause():
        return and_(
            db_models.ReportSchedule.approval_state == ApprovalState.APPROVED.value,
            db_models.ReportSchedule.is_enabled.is_(True),
            db_models.ReportSchedule.deleted_at.is_(None),
        )

    def submit(self, schedule: db_models.ReportSchedule) -> None:
        state = self.state_of(schedule)
        if state != ApprovalState.DRAFT:
            raise ApprovalError(f"Cannot submit a schedule in state '{state.value}'")
        schedule.approval_state = ApprovalState.PENDING_APPROVAL.value

    def approve(self, schedule: db_models.ReportSchedule, approver_id: int, now: datetime) -> None:
        state = self.state_of(schedule)
        if state != ApprovalState.PENDING_APPROVAL:
            raise ApprovalError(f"Cannot approve a schedule in state '{state.value}'")
        schedule.approval_state = ApprovalState.APPROVED.value
        schedule.approved_by = approver_id
        schedule.approved_at = now
        if self.cancellations is not None:
            self.cancellations.reset(schedule.id)

    def revoke(self, schedule: db_models.ReportSchedule) -> None:
        if not schedule.requires_approval:
            raise ApprovalError("Schedule does not require approval")
        state = self.state_of(schedule)
        if state != ApprovalState.APPROVED:
            raise ApprovalError(f"Cannot revoke a schedule in state '{state.value}'")
        schedule.approval_state = ApprovalState.PENDING_APPROVAL.value
        schedule.approved_by = None
        schedule.approved_at = None
        schedule.next_run_at = None
        if self.cancellations is not None:
            self.cancellations.cancel(schedule.id)
