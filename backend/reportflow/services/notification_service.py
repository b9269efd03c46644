import logging
from typing import Callable, Iterable, Optional, Set

from reportflow.core.errors import ExecutionCancelled
from reportflow.schemas.scheduler import (
    DeliveryFailure,
    DeliveryFailureReason,
    DispatchResult,
    EmailSecurityLevel,
    ReportPayload,
)
from reportflow.services.collaborators import EmailTransport, TenantDirectory

logger = logging.getLogger(__name__)


def email_domain(email: str) -> str:
    return email.strip().rsplit("@", 1)[-1].lower()


def is_external(email: str, allowed_domains: Set[str]) -> bool:
    # No configured domains means nobody counts as internal.
    return email_domain(email) not in allowed_domains


class NotificationService:
    """Fans a finished report out to a schedule's recipients."""

    def __init__(self, transport: EmailTransport, tenant_directory: TenantDirectory) -> None:
        self.transport = transport
        self.tenant_directory = tenant_directory

    async def dispatch(
        self,
        payload: ReportPayload,
        recipients: Iterable[str],
        tenant_id: int,
        security_level: EmailSecurityLevel,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> DispatchResult:
        result = DispatchResult()
        allowed_domains = await self.tenant_directory.allowed_domains(tenant_id)

        for email in recipients:
            if is_external(email, allowed_domains) and not security_level.allows_external:
                result.failed += 1
                result.failures.append(
                    DeliveryFailure(
                        email=email,
                        reason=DeliveryFailureReason.POLICY_VIOLATION,
                        detail=f"External delivery not permitted at security level '{security_level.value}'",
                    )
                )
                logger.warning("Skipping external recipient %s for tenant %s: policy", email, tenant_id)
                continue

            if should_cancel is not None and should_cancel():
                raise ExecutionCancelled("cancelled during delivery", sent=result.sent, failed=result.failed)

            try:
                await self.transport.send(email, payload)
            except Exception as exc:
                result.failed += 1
                result.failures.append(
                    DeliveryFailure(
                        email=email,
                        reason=DeliveryFailureReason.TRANSPORT_ERROR,
                        detail=str(exc),
                    )
                )
                logger.error("Failed to deliver report %s to %s: %s", payload.report_id, email, exc)
                continue

            result.sent += 1

        return result
