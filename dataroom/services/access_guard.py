from __future__ import annotations

from dataclasses import dataclass, field
import logging

from dataroom.core.errors import Unauthorized


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestInfo:
    # Client hints recorded on every access log row.
    ip_address: str | None = None
    user_agent: str | None = None
    request_id: str | None = None


@dataclass(frozen=True)
class TenantContext:
    # Caller identity resolved by the upstream authentication layer.
    tenant_id: str
    user_id: str
    authorized_company_ids: frozenset[str]
    user_email: str | None = None
    request: RequestInfo = field(default_factory=RequestInfo)


def require_tenant(context: TenantContext) -> None:
    if not context.tenant_id or not context.user_id:
        raise Unauthorized("Tenant context is incomplete")


def require_company_access(context: TenantContext, company_id: str) -> None:
    # Fail before anything company-owned is read so existence never leaks across tenants.
    require_tenant(context)
    if company_id not in context.authorized_company_ids:
        logger.warning(
            "company_access_denied tenant_id=%s user_id=%s company_id=%s",
            context.tenant_id,
            context.user_id,
            company_id,
        )
        raise Unauthorized("Caller is not authorized for this company")
