import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from reportflow.core.context import utc_now
from reportflow.database.models import models as db_models
from reportflow.schemas.scheduler import SchedulerLogEntry

logger = logging.getLogger(__name__)


def log_scheduler_event(
    db: Session,
    event_type: str,
    message: str,
    tenant_id: Optional[int] = None,
    schedule_id: Optional[str] = None,
    execution_id: Optional[str] = None,
    user_id: Optional[int] = None,
    details: Optional[Dict[str, Any]] = None,
    level: str = "INFO",
    timestamp: Optional[datetime] = None,
) -> None:
    event = db_models.SchedulerEvent(
        tenant_id=tenant_id,
        schedule_id=schedule_id,
        execution_id=execution_id,
        user_id=user_id,
        level=level,
        event_type=event_type,
        message=message,
        details=details or {},
        timestamp=timestamp or utc_now(),
    )
    db.add(event)
    db.commit()
    logger.log(logging.getLevelName(level), "%s: %s", event_type, message)


def list_events_for_schedule(
    db: Session,
    tenant_id: int,
    schedule_id: str,
    limit: int = 100,
) -> List[SchedulerLogEntry]:
    events = (
        db.query(db_models.SchedulerEvent)
        .filter(
            db_models.SchedulerEvent.tenant_id == tenant_id,
            db_models.SchedulerEvent.schedule_id == schedule_id,
        )
        .order_by(db_models.SchedulerEvent.timestamp.desc(), db_models.SchedulerEvent.id.desc())
        .limit(limit)
        .all()
    )
    return [
        SchedulerLogEntry(
            id=event.id,
            schedule_id=event.schedule_id,
            execution_id=event.execution_id,
            user_id=event.user_id,
            level=event.level,
            event_type=event.event_type,
            message=event.message,
            details=event.details or {},
            timestamp=event.timestamp,
        )
        for event in events
    ]
