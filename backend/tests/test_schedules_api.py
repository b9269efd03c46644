import pytest
from fastapi.testclient import TestClient

from conftest import FakeCapabilityCheck, FakeQueryExecutor, RecordingTransport
from reportflow.core.auth import get_capability_check
from reportflow.core.scheduler_manager import get_execution_runner, get_scheduler_service
from reportflow.database.connection import get_db
from reportflow.main import app
from reportflow.services.execution_runner import ExecutionRunner
from reportflow.services.notification_service import NotificationService
from reportflow.services.scheduler_service import SchedulerService

HEADERS = {"X-Tenant-Id": "1", "X-User-Id": "7"}

SCHEDULE_BODY = {
    "report_id": 42,
    "name": "Weekly revenue",
    "frequency": "weekly",
    "time_of_day": "09:00",
    "timezone": "America/New_York",
    "day_of_week": 0,
    "recipients": ["ana@acme.com"],
}


@pytest.fixture()
def capability():
    return FakeCapabilityCheck(allowed=True)


@pytest.fixture()
def transport():
    return RecordingTransport()


@pytest.fixture()
def client(session_factory, context, tenant_directory, capability, transport):
    service = SchedulerService(context, tenant_directory)
    runner = ExecutionRunner(
        context,
        FakeQueryExecutor(),
        NotificationService(transport, tenant_directory),
        timeout_seconds=5,
    )

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_scheduler_service] = lambda: service
    app.dependency_overrides[get_execution_runner] = lambda: runner
    app.dependency_overrides[get_capability_check] = lambda: capability
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _create(client, **overrides):
    body = dict(SCHEDULE_BODY, **overrides)
    response = client.post("/schedules", json=body, headers=HEADERS)
    assert response.status_code == 201, response.text
    return response.json()


def test_identity_headers_required(client):
    response = client.get("/schedules")

    assert response.status_code == 401


def test_create_get_and_list(client):
    created = _create(client)

    fetched = client.get(f"/schedules/{created['id']}", headers=HEADERS)
    listed = client.get("/schedules", headers=HEADERS)

    assert fetched.status_code == 200
    assert fetched.json()["next_run_at"].startswith("2024-03-10T13:00:00")
    assert [s["id"] for s in listed.json()] == [created["id"]]


def test_other_tenant_cannot_see_schedule(client):
    created = _create(client)

    response = client.get(f"/schedules/{created['id']}", headers={"X-Tenant-Id": "2", "X-User-Id": "7"})

    assert response.status_code == 404


def test_mutations_require_capability(client, capability):
    capability.allowed = False

    response = client.post("/schedules", json=SCHEDULE_BODY, headers=HEADERS)

    assert response.status_code == 403


def test_validation_errors_map_to_400(client):
    response = client.post(
        "/schedules",
        json=dict(SCHEDULE_BODY, recipients=["someone@mailinator.com"]),
        headers=HEADERS,
    )

    assert response.status_code == 400
    assert response.json()["detail"]["field"] == "recipients"


def test_tenant_limit_maps_to_429(client):
    for index in range(10):
        _create(client, name=f"Schedule {index}")

    response = client.post("/schedules", json=SCHEDULE_BODY, headers=HEADERS)

    assert response.status_code == 429


def test_patch_and_delete(client):
    created = _create(client)

    patched = client.patch(f"/schedules/{created['id']}", json={"name": "Renamed"}, headers=HEADERS)
    deleted = client.delete(f"/schedules/{created['id']}", headers=HEADERS)
    missing = client.get(f"/schedules/{created['id']}", headers=HEADERS)

    assert patched.json()["name"] == "Renamed"
    assert deleted.status_code == 204
    assert missing.status_code == 404


def test_illegal_approval_transition_maps_to_409(client):
    created = _create(client)

    response = client.post(f"/schedules/{created['id']}/approve", headers=HEADERS)

    assert response.status_code == 409


def test_approval_endpoints(client):
    created = _create(client, requires_approval=True)

    submitted = client.post(f"/schedules/{created['id']}/submit", headers=HEADERS)
    approved = client.post(f"/schedules/{created['id']}/approve", headers=HEADERS)
    revoked = client.post(f"/schedules/{created['id']}/revoke", headers=HEADERS)

    assert submitted.json()["approval_state"] == "pending_approval"
    assert approved.json()["approval_state"] == "approved"
    assert revoked.json()["approval_state"] == "pending_approval"


def test_run_now_executes_in_background(client, transport):
    created = _create(client)

    response = client.post(f"/schedules/{created['id']}/run", headers=HEADERS)
    executions = client.get(f"/schedules/{created['id']}/executions", headers=HEADERS)

    assert response.status_code == 202
    assert response.json()["trigger"] == "manual"
    assert transport.sent == ["ana@acme.com"]
    records = executions.json()["executions"]
    assert [r["status"] for r in records] == ["completed"]
    assert records[0]["emails_sent"] == 1


def test_run_now_conflicts_with_in_flight_run(client, context):
    created = _create(client)
    service = SchedulerService(context, None)
    db = context.session_factory()
    try:
        service.trigger_now(db, 1, 7, created["id"])
    finally:
        db.close()

    response = client.post(f"/schedules/{created['id']}/run", headers=HEADERS)

    assert response.status_code == 409


def test_events_endpoint_lists_audit_trail(client):
    created = _create(client)
    client.patch(f"/schedules/{created['id']}", json={"name": "Renamed"}, headers=HEADERS)

    response = client.get(f"/schedules/{created['id']}/events", headers=HEADERS)

    assert response.status_code == 200
    assert [e["event_type"] for e in response.json()] == ["schedule_updated", "schedule_created"]
