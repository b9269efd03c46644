import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Run against a local SQLite file instead of Postgres on localhost.
test_db_path = ROOT / "test.db"
os.environ.setdefault("DATABASE_URL", f"sqlite:///{test_db_path}")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

from reportflow.core.config import get_settings  # noqa: E402

# Drop any settings cached before the environment above was in place.
get_settings.cache_clear()

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from reportflow.core.context import SchedulerContext  # noqa: E402
from reportflow.database.connection import Base  # noqa: E402
from reportflow.database.models import models as db_models  # noqa: E402
from reportflow.services.collaborators import StaticTenantDirectory  # noqa: E402


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class FakeQueryExecutor:
    def __init__(self, payload=None, error=None, delay: float = 0) -> None:
        self.payload = payload
        self.error = error
        self.delay = delay
        self.calls = []

    async def execute(self, report_id: int):
        self.calls.append(report_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.payload is not None:
            return self.payload
        return {"report_id": report_id, "title": f"Report {report_id}", "columns": ["a"], "rows": [{"a": 1}]}


class RecordingTransport:
    def __init__(self, failing=()) -> None:
        self.failing = set(failing)
        self.sent = []

    async def send(self, address, payload) -> None:
        if address in self.failing:
            raise ConnectionError(f"mailbox unavailable: {address}")
        self.sent.append(address)


class FakeCapabilityCheck:
    def __init__(self, allowed: bool = True) -> None:
        self.allowed = allowed

    async def can_schedule_reports(self, user_id: int, tenant_id: int) -> bool:
        return self.allowed


def _sqlite_engine(url: str = "sqlite://"):
    kwargs = {"connect_args": {"check_same_thread": False}}
    if url == "sqlite://":
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def engine():
    engine = _sqlite_engine()
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def file_engine(tmp_path):
    engine = _sqlite_engine(f"sqlite:///{tmp_path / 'scheduler.db'}")
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def clock():
    return FakeClock(datetime(2024, 3, 6, 15, 0, tzinfo=timezone.utc))


@pytest.fixture()
def context(session_factory, clock):
    return SchedulerContext(
        session_factory=session_factory,
        clock=clock,
        cancel_check_interval_seconds=0.01,
    )


@pytest.fixture()
def tenant_directory():
    return StaticTenantDirectory({1: ["acme.com"], 2: ["globex.com"]})


@pytest.fixture()
def make_schedule(clock):
    def _make(db, **overrides):
        now = clock()
        values = dict(
            tenant_id=1,
            report_id=42,
            name="Weekly revenue",
            frequency="weekly",
            time_of_day="09:00",
            timezone="America/New_York",
            day_of_week=0,
            day_of_month=None,
            next_run_at=now - timedelta(minutes=1),
            email_security_level="internal",
            requires_approval=False,
            approval_state="approved",
            is_enabled=True,
            created_by=7,
            created_at=now,
            updated_at=now,
        )
        recipients = overrides.pop("recipients", ["ana@acme.com"])
        values.update(overrides)
        schedule = db_models.ReportSchedule(**values)
        schedule.recipients = [
            db_models.ScheduleRecipient(
                email=email,
                domain=email.rsplit("@", 1)[-1],
                is_external=not email.endswith("@acme.com"),
                created_at=now,
            )
            for email in recipients
        ]
        db.add(schedule)
        db.commit()
        db.refresh(schedule)
        return schedule

    return _make
