"""Interfaces to the services this engine orchestrates but does not own.

The protocols are what the scheduling core depends on. The HTTP and SMTP
classes are the default adapters wired in by the application.
"""

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol, Set

import httpx

from reportflow.core.config import Settings, get_settings
from reportflow.core.errors import DeliveryError, ExecutorUnavailableError, QueryExecutionError
from reportflow.schemas.scheduler import ReportPayload

logger = logging.getLogger(__name__)


class QueryExecutor(Protocol):
    async def execute(self, report_id: int) -> Mapping[str, Any]: ...


class EmailTransport(Protocol):
    async def send(self, address: str, payload: ReportPayload) -> None: ...


class TenantDirectory(Protocol):
    async def allowed_domains(self, tenant_id: int) -> Set[str]: ...


class CapabilityCheck(Protocol):
    async def can_schedule_reports(self, user_id: int, tenant_id: int) -> bool: ...


class HttpQueryExecutor:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    async def execute(self, report_id: int) -> Mapping[str, Any]:
        url = f"{self.settings.report_engine_url.rstrip('/')}/reports/{report_id}/execute"
        try:
            async with httpx.AsyncClient(timeout=self.settings.collaborator_timeout_seconds) as client:
                response = await client.post(url)
                response.raise_for_status()
        except httpx.TransportError as exc:
            raise ExecutorUnavailableError(f"Report engine unreachable: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            raise QueryExecutionError(
                f"Report engine returned {exc.response.status_code} for report {report_id}"
            ) from exc
        return response.json()


class HttpTenantDirectory:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    async def allowed_domains(self, tenant_id: int) -> Set[str]:
        url = f"{self.settings.tenant_directory_url.rstrip('/')}/tenants/{tenant_id}/allowed-domains"
        async with httpx.AsyncClient(timeout=self.settings.collaborator_timeout_seconds) as client:
            response = await client.get(url)
            response.raise_for_status()
        return normalize_domains(response.json().get("domains") or [])


class StaticTenantDirectory:
    def __init__(self, domains_by_tenant: Optional[Dict[int, Iterable[str]]] = None) -> None:
        self.domains_by_tenant = {
            tenant_id: normalize_domains(domains)
            for tenant_id, domains in (domains_by_tenant or {}).items()
        }

    async def allowed_domains(self, tenant_id: int) -> Set[str]:
        return set(self.domains_by_tenant.get(tenant_id, set()))


class HttpCapabilityCheck:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    async def can_schedule_reports(self, user_id: int, tenant_id: int) -> bool:
        url = f"{self.settings.authorization_url.rstrip('/')}/tenants/{tenant_id}/users/{user_id}/capabilities"
        try:
            async with httpx.AsyncClient(timeout=self.settings.collaborator_timeout_seconds) as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Capability lookup failed for user %s in tenant %s: %s", user_id, tenant_id, exc)
            return False
        return bool(response.json().get("can_schedule_reports"))


class SmtpEmailTransport:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    async def send(self, address: str, payload: ReportPayload) -> None:
        message = EmailMessage()
        message["From"] = self.settings.notifications_email_from
        message["To"] = address
        message["Subject"] = f"Scheduled report: {payload.title}"
        message.set_content(render_report_text(payload))
        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryError(str(exc)) from exc

    def _deliver(self, message: EmailMessage) -> None:
        host = self.settings.notifications_email_smtp_host
        port = self.settings.notifications_email_smtp_port
        username = self.settings.notifications_email_username
        password = self.settings.notifications_email_password

        server = smtplib.SMTP(host, port)
        try:
            if self.settings.notifications_email_use_tls:
                server.starttls()
            if username and password:
                server.login(username, password)
            server.send_message(message)
        finally:
            server.quit()


def normalize_domains(domains: Iterable[str]) -> Set[str]:
    return {d.strip().lower().lstrip("@") for d in domains if d and d.strip()}


def render_report_text(payload: ReportPayload) -> str:
    lines = [payload.title, ""]
    if payload.generated_at is not None:
        lines.append(f"Generated at: {payload.generated_at.isoformat()}")
        lines.append("")
    if payload.columns:
        lines.append(" | ".join(payload.columns))
        for row in payload.rows:
            lines.append(" | ".join(str(row.get(column, "")) for column in payload.columns))
    else:
        lines.append("(no data)")
    return "\n".join(lines)
