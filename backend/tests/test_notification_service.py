import asyncio

import pytest

from conftest import RecordingTransport
from reportflow.core.errors import ExecutionCancelled
from reportflow.schemas.scheduler import DeliveryFailureReason, EmailSecurityLevel, ReportPayload
from reportflow.services.collaborators import render_report_text
from reportflow.services.notification_service import NotificationService, is_external


def _payload() -> ReportPayload:
    return ReportPayload(report_id=42, title="Revenue", columns=["region", "total"], rows=[{"region": "EU", "total": 10}])


def test_external_recipient_barred_and_transport_failure_counted(tenant_directory):
    transport = RecordingTransport(failing={"bob@acme.com"})
    notifier = NotificationService(transport, tenant_directory)

    result = asyncio.run(
        notifier.dispatch(
            _payload(),
            ["ana@acme.com", "eve@partner.io", "bob@acme.com"],
            tenant_id=1,
            security_level=EmailSecurityLevel.INTERNAL,
        )
    )

    assert result.sent == 1
    assert result.failed == 2
    assert transport.sent == ["ana@acme.com"]
    reasons = {failure.email: failure.reason for failure in result.failures}
    assert reasons == {
        "eve@partner.io": DeliveryFailureReason.POLICY_VIOLATION,
        "bob@acme.com": DeliveryFailureReason.TRANSPORT_ERROR,
    }


def test_public_reports_may_go_to_external_recipients(tenant_directory):
    transport = RecordingTransport()
    notifier = NotificationService(transport, tenant_directory)

    result = asyncio.run(
        notifier.dispatch(_payload(), ["eve@partner.io"], tenant_id=1, security_level=EmailSecurityLevel.PUBLIC)
    )

    assert result.sent == 1
    assert result.failed == 0


@pytest.mark.parametrize("level", [EmailSecurityLevel.PII, EmailSecurityLevel.CONFIDENTIAL])
def test_sensitive_reports_stay_internal(tenant_directory, level):
    notifier = NotificationService(RecordingTransport(), tenant_directory)

    result = asyncio.run(notifier.dispatch(_payload(), ["eve@partner.io"], tenant_id=1, security_level=level))

    assert result.sent == 0
    assert result.failures[0].reason == DeliveryFailureReason.POLICY_VIOLATION


def test_cancellation_between_sends_keeps_partial_counts(tenant_directory):
    transport = RecordingTransport()
    notifier = NotificationService(transport, tenant_directory)
    checks = iter([False, True])

    with pytest.raises(ExecutionCancelled) as exc_info:
        asyncio.run(
            notifier.dispatch(
                _payload(),
                ["ana@acme.com", "bob@acme.com"],
                tenant_id=1,
                security_level=EmailSecurityLevel.INTERNAL,
                should_cancel=lambda: next(checks),
            )
        )

    assert exc_info.value.sent == 1
    assert transport.sent == ["ana@acme.com"]


def test_domains_compare_case_insensitively():
    assert not is_external("Ana@ACME.com", {"acme.com"})
    assert is_external("ana@acme.com.evil.io", {"acme.com"})
    assert is_external("ana@acme.com", set())


def test_render_report_text_lists_rows():
    text = render_report_text(_payload())

    assert "Revenue" in text
    assert "region | total" in text
    assert "EU | 10" in text
