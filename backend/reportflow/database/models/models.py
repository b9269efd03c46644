import uuid
from datetime import timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.types import TypeDecorator

from ..connection import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """Stores naive UTC and hands back aware UTC, whatever the backend."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class ReportSchedule(Base):
    __tablename__ = "report_schedules"
    __table_args__ = (
        Index("ix_report_schedules_tenant_deleted_enabled", "tenant_id", "deleted_at", "is_enabled"),
        Index("ix_report_schedules_next_run_enabled_deleted", "next_run_at", "is_enabled", "deleted_at"),
    )

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(Integer, nullable=False, index=True)
    report_id = Column(Integer, nullable=False, index=True)
    name = Column(String, nullable=False)
    frequency = Column(String, nullable=False)
    time_of_day = Column(String, nullable=False)
    timezone = Column(String, nullable=False)
    day_of_week = Column(Integer, nullable=True)
    day_of_month = Column(Integer, nullable=True)
    next_run_at = Column(UTCDateTime, nullable=True)
    email_security_level = Column(String, nullable=False, default="internal")
    requires_approval = Column(Boolean, nullable=False, default=False)
    approval_state = Column(String, nullable=False, default="approved")
    approved_by = Column(Integer, nullable=True)
    approved_at = Column(UTCDateTime, nullable=True)
    is_enabled = Column(Boolean, nullable=False, default=True)
    created_by = Column(Integer, nullable=False, index=True)
    created_at = Column(UTCDateTime)
    last_modified_by = Column(Integer, nullable=True)
    last_modified_at = Column(UTCDateTime, nullable=True)
    updated_at = Column(UTCDateTime)
    deleted_at = Column(UTCDateTime, nullable=True)

    recipients = relationship(
        "ScheduleRecipient",
        back_populates="schedule",
        cascade="all, delete-orphan",
        order_by="ScheduleRecipient.created_at",
    )
    executions = relationship("ScheduleExecution", back_populates="schedule")


class ScheduleRecipient(Base):
    __tablename__ = "report_schedule_recipients"
    __table_args__ = (
        UniqueConstraint("schedule_id", "email", name="uq_report_schedule_recipients_schedule_email"),
        Index("ix_report_schedule_recipients_schedule_external", "schedule_id", "is_external"),
    )

    id = Column(String, primary_key=True, default=_uuid)
    schedule_id = Column(
        String,
        ForeignKey("report_schedules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    email = Column(String, nullable=False)
    domain = Column(String, nullable=True)
    is_external = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime)

    schedule = relationship("ReportSchedule", back_populates="recipients")


class ScheduleExecution(Base):
    __tablename__ = "report_schedule_executions"
    __table_args__ = (
        Index("ix_report_schedule_executions_tenant_started", "tenant_id", "started_at"),
        Index("ix_report_schedule_executions_status_started", "status", "started_at"),
        # At most one pending/running execution per schedule.
        Index(
            "uq_report_schedule_executions_in_flight",
            "schedule_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'running')"),
            postgresql_where=text("status IN ('pending', 'running')"),
        ),
    )

    id = Column(String, primary_key=True, default=_uuid)
    schedule_id = Column(String, ForeignKey("report_schedules.id"), nullable=False, index=True)
    tenant_id = Column(Integer, nullable=False)
    report_id = Column(Integer, nullable=False)
    scheduled_for = Column(UTCDateTime, nullable=False)
    trigger = Column(String, nullable=False, default="schedule")
    started_at = Column(UTCDateTime, nullable=False)
    completed_at = Column(UTCDateTime, nullable=True)
    status = Column(String, nullable=False)
    emails_sent = Column(Integer, nullable=False, default=0)
    emails_failed = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    schedule = relationship("ReportSchedule", back_populates="executions")


class SchedulerEvent(Base):
    __tablename__ = "scheduler_events"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, nullable=True, index=True)
    schedule_id = Column(String, ForeignKey("report_schedules.id"), nullable=True, index=True)
    execution_id = Column(String, ForeignKey("report_schedule_executions.id"), nullable=True)
    user_id = Column(Integer, nullable=True)
    level = Column(String, default="INFO")
    event_type = Column(String, nullable=False)
    message = Column(String, nullable=False)
    details = Column(JSON, default=dict)
    timestamp = Column(UTCDateTime)
