from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from reportflow.core.auth import RequestIdentity, get_current_identity, require_schedule_capability
from reportflow.core.errors import (
    ApprovalError,
    ScheduleLimitError,
    ScheduleNotFoundError,
    ScheduleValidationError,
)
from reportflow.core.scheduler_manager import get_execution_runner, get_scheduler_service
from reportflow.database.connection import get_db
from reportflow.schemas.scheduler import (
    ClaimResult,
    ExecutionListResponse,
    ExecutionRecord,
    Schedule,
    ScheduleCreate,
    SchedulerLogEntry,
    ScheduleUpdate,
)
from reportflow.services.execution_runner import ExecutionRunner
from reportflow.services.scheduler_service import SchedulerService

router = APIRouter(prefix="/schedules", tags=["schedules"], dependencies=[Depends(get_current_identity)])


def _to_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ScheduleNotFoundError):
        return HTTPException(status_code=404, detail="Schedule not found")
    if isinstance(exc, ScheduleLimitError):
        return HTTPException(status_code=429, detail=str(exc))
    if isinstance(exc, ApprovalError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ScheduleValidationError):
        return HTTPException(status_code=400, detail={"message": str(exc), "field": exc.field})
    return HTTPException(status_code=500, detail=str(exc))


@router.get("", response_model=list[Schedule])
def list_schedules(
    include_disabled: bool = True,
    report_id: Optional[int] = None,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_current_identity),
    service: SchedulerService = Depends(get_scheduler_service),
) -> list[Schedule]:
    return service.list_schedules(
        db,
        identity.tenant_id,
        include_disabled=include_disabled,
        report_id=report_id,
    )


@router.post(
    "",
    response_model=Schedule,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_schedule_capability)],
)
async def create_schedule(
    schedule_in: ScheduleCreate,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_current_identity),
    service: SchedulerService = Depends(get_scheduler_service),
) -> Schedule:
    try:
        return await service.create_schedule(db, identity.tenant_id, identity.user_id, schedule_in)
    except (ScheduleValidationError, ScheduleLimitError) as exc:
        raise _to_http_error(exc) from exc


@router.get("/{schedule_id}", response_model=Schedule)
def get_schedule(
    schedule_id: str,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_current_identity),
    service: SchedulerService = Depends(get_scheduler_service),
) -> Schedule:
    schedule = service.get_schedule(db, identity.tenant_id, schedule_id)
    if not schedule:
        raise HTTPException(status_code=404, detail="Schedule not found")
    return schedule


@router.patch(
    "/{schedule_id}",
    response_model=Schedule,
    dependencies=[Depends(require_schedule_capability)],
)
async def update_schedule(
    schedule_id: str,
    schedule_in: ScheduleUpdate,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_current_identity),
    service: SchedulerService = Depends(get_scheduler_service),
) -> Schedule:
    try:
        return await service.update_schedule(db, identity.tenant_id, identity.user_id, schedule_id, schedule_in)
    except (ScheduleNotFoundError, ScheduleValidationError, ScheduleLimitError) as exc:
        raise _to_http_error(exc) from exc


@router.delete(
    "/{schedule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_schedule_capability)],
)
def delete_schedule(
    schedule_id: str,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_current_identity),
    service: SchedulerService = Depends(get_scheduler_service),
) -> Response:
    try:
        service.delete_schedule(db, identity.tenant_id, identity.user_id, schedule_id)
    except ScheduleNotFoundError as exc:
        raise _to_http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{schedule_id}/submit",
    response_model=Schedule,
    dependencies=[Depends(require_schedule_capability)],
)
def submit_schedule(
    schedule_id: str,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_current_identity),
    service: SchedulerService = Depends(get_scheduler_service),
) -> Schedule:
    try:
        return service.submit_for_approval(db, identity.tenant_id, identity.user_id, schedule_id)
    except (ScheduleNotFoundError, ApprovalError) as exc:
        raise _to_http_error(exc) from exc


@router.post(
    "/{schedule_id}/approve",
    response_model=Schedule,
    dependencies=[Depends(require_schedule_capability)],
)
def approve_schedule(
    schedule_id: str,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_current_identity),
    service: SchedulerService = Depends(get_scheduler_service),
) -> Schedule:
    try:
        return service.approve_schedule(db, identity.tenant_id, identity.user_id, schedule_id)
    except (ScheduleNotFoundError, ApprovalError) as exc:
        raise _to_http_error(exc) from exc


@router.post(
    "/{schedule_id}/revoke",
    response_model=Schedule,
    dependencies=[Depends(require_schedule_capability)],
)
def revoke_schedule(
    schedule_id: str,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_current_identity),
    service: SchedulerService = Depends(get_scheduler_service),
) -> Schedule:
    try:
        return service.revoke_approval(db, identity.tenant_id, identity.user_id, schedule_id)
    except (ScheduleNotFoundError, ApprovalError) as exc:
        raise _to_http_error(exc) from exc


@router.post(
    "/{schedule_id}/run",
    response_model=ExecutionRecord,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_schedule_capability)],
)
def run_schedule_now(
    schedule_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_current_identity),
    service: SchedulerService = Depends(get_scheduler_service),
    runner: ExecutionRunner = Depends(get_execution_runner),
) -> ExecutionRecord:
    try:
        result, execution_id = service.trigger_now(db, identity.tenant_id, identity.user_id, schedule_id)
    except (ScheduleNotFoundError, ScheduleValidationError) as exc:
        raise _to_http_error(exc) from exc
    if result != ClaimResult.CLAIMED:
        raise HTTPException(status_code=409, detail="An execution of this schedule is already in flight")

    background_tasks.add_task(runner.run, execution_id)
    return service.ledger.to_schema(service.ledger.get(db, execution_id))


@router.get("/{schedule_id}/executions", response_model=ExecutionListResponse)
def list_schedule_executions(
    schedule_id: str,
    started_after: Optional[datetime] = None,
    started_before: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_current_identity),
    service: SchedulerService = Depends(get_scheduler_service),
) -> ExecutionListResponse:
    try:
        executions = service.list_executions(
            db,
            identity.tenant_id,
            schedule_id,
            started_after=started_after,
            started_before=started_before,
            limit=limit,
        )
    except ScheduleNotFoundError as exc:
        raise _to_http_error(exc) from exc
    return ExecutionListResponse(schedule_id=schedule_id, executions=executions)


@router.get("/{schedule_id}/events", response_model=list[SchedulerLogEntry])
def list_schedule_events(
    schedule_id: str,
    db: Session = Depends(get_db),
    identity: RequestIdentity = Depends(get_current_identity),
    service: SchedulerService = Depends(get_scheduler_service),
) -> list[SchedulerLogEntry]:
    try:
        return service.get_logs_for_schedule(db, identity.tenant_id, schedule_id)
    except ScheduleNotFoundError as exc:
        raise _to_http_error(exc) from exc
