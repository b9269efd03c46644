from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

TIME_OF_DAY_PATTERN = r"^([01]\d|2[0-3]):([0-5]\d)$"


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMI_ANNUALLY = "semi_annually"
    ANNUALLY = "annually"


class ApprovalState(str, Enum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"


class EmailSecurityLevel(str, Enum):
    PUBLIC = "public"
    INTERNAL = "internal"
    PII = "pii"
    CONFIDENTIAL = "confidential"

    @property
    def allows_external(self) -> bool:
        return self is EmailSecurityLevel.PUBLIC


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


IN_FLIGHT_STATUSES = (ExecutionStatus.PENDING.value, ExecutionStatus.RUNNING.value)
TERMINAL_STATUSES = (
    ExecutionStatus.COMPLETED.value,
    ExecutionStatus.FAILED.value,
    ExecutionStatus.CANCELLED.value,
)


class ExecutionTrigger(str, Enum):
    SCHEDULE = "schedule"
    MANUAL = "manual"


class ExecutionErrorKind(str, Enum):
    TIMEOUT = "timeout"
    EXECUTOR_UNAVAILABLE = "executor_unavailable"
    EXECUTOR_ERROR = "executor_error"
    MALFORMED_PAYLOAD = "malformed_payload"
    STALE = "stale"
    INTERNAL_ERROR = "internal_error"


class ClaimResult(str, Enum):
    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"
    NOT_DUE = "not_due"


class DeliveryFailureReason(str, Enum):
    POLICY_VIOLATION = "policy_violation"
    TRANSPORT_ERROR = "transport_error"


class RecurrenceSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    frequency: Frequency
    time_of_day: str = Field(pattern=TIME_OF_DAY_PATTERN)
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)

    @model_validator(mode="after")
    def _check_required_days(self) -> "RecurrenceSpec":
        if self.frequency == Frequency.WEEKLY and self.day_of_week is None:
            raise ValueError("day_of_week is required for weekly schedules")
        if self.frequency == Frequency.MONTHLY and self.day_of_month is None:
            raise ValueError("day_of_month is required for monthly schedules")
        return self

    @property
    def hour(self) -> int:
        return int(self.time_of_day.split(":")[0])

    @property
    def minute(self) -> int:
        return int(self.time_of_day.split(":")[1])


class ReportPayload(BaseModel):
    """Result handed back by the report query engine."""

    report_id: int
    title: str
    columns: List[str] = Field(default_factory=list)
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    generated_at: Optional[datetime] = None


class DeliveryFailure(BaseModel):
    email: str
    reason: DeliveryFailureReason
    detail: Optional[str] = None


class DispatchResult(BaseModel):
    sent: int = 0
    failed: int = 0
    failures: List[DeliveryFailure] = Field(default_factory=list)


class ScheduleBase(BaseModel):
    report_id: int
    name: str = Field(min_length=1, max_length=255)
    frequency: Frequency
    time_of_day: str = Field(pattern=TIME_OF_DAY_PATTERN)
    timezone: Optional[str] = None
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    email_security_level: EmailSecurityLevel = EmailSecurityLevel.INTERNAL


class ScheduleCreate(ScheduleBase):
    recipients: List[str] = Field(default_factory=list)
    requires_approval: bool = False
    is_enabled: bool = True


class ScheduleUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    frequency: Optional[Frequency] = None
    time_of_day: Optional[str] = Field(default=None, pattern=TIME_OF_DAY_PATTERN)
    timezone: Optional[str] = None
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    email_security_level: Optional[EmailSecurityLevel] = None
    recipients: Optional[List[str]] = None
    is_enabled: Optional[bool] = None


class Recipient(BaseModel):
    id: str
    email: str
    domain: Optional[str] = None
    is_external: bool
    created_at: Optional[datetime] = None


class Schedule(BaseModel):
    id: str
    tenant_id: int
    report_id: int
    name: str
    frequency: Frequency
    time_of_day: str
    timezone: str
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None
    next_run_at: Optional[datetime] = None
    is_enabled: bool
    requires_approval: bool
    approval_state: ApprovalState
    approved_by: Optional[int] = None
    approved_at: Optional[datetime] = None
    email_security_level: EmailSecurityLevel
    recipients: List[Recipient] = Field(default_factory=list)
    created_by: int
    created_at: datetime
    last_modified_by: Optional[int] = None
    last_modified_at: Optional[datetime] = None


class ExecutionRecord(BaseModel):
    id: str
    schedule_id: str
    tenant_id: int
    report_id: int
    scheduled_for: datetime
    trigger: ExecutionTrigger
    started_at: datetime
    completed_at: Optional[datetime] = None
    status: ExecutionStatus
    emails_sent: int = 0
    emails_failed: int = 0
    error_message: Optional[str] = None


class ExecutionListResponse(BaseModel):
    schedule_id: str
    executions: List[ExecutionRecord]


class SchedulerLogEntry(BaseModel):
    id: int
    schedule_id: Optional[str] = None
    execution_id: Optional[str] = None
    user_id: Optional[int] = None
    level: str
    event_type: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
