from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from reportflow.services.collaborators import CapabilityCheck, HttpCapabilityCheck


@dataclass
class RequestIdentity:
    tenant_id: int
    user_id: int


_capability_check: Optional[CapabilityCheck] = None


def get_capability_check() -> CapabilityCheck:
    global _capability_check
    if _capability_check is None:
        _capability_check = HttpCapabilityCheck()
    return _capability_check


# Identity is established upstream and forwarded as headers.


async def get_current_identity(
    x_tenant_id: Optional[int] = Header(None),
    x_user_id: Optional[int] = Header(None),
) -> RequestIdentity:
    if x_tenant_id is None or x_user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "identity_required",
                "message": "X-Tenant-Id and X-User-Id headers are required.",
            },
        )
    return RequestIdentity(tenant_id=x_tenant_id, user_id=x_user_id)


async def require_schedule_capability(
    identity: RequestIdentity = Depends(get_current_identity),
    capability_check: CapabilityCheck = Depends(get_capability_check),
) -> None:
    allowed = await capability_check.can_schedule_reports(identity.user_id, identity.tenant_id)
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "forbidden",
                "message": "You do not have permission to manage report schedules.",
            },
        )
