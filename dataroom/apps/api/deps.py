from __future__ import annotations

from functools import lru_cache
from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from dataroom.apps.api.response import get_request_id
from dataroom.persistence.db import get_session
from dataroom.providers.storage.base import ObjectStore
from dataroom.providers.storage.factory import get_object_store
from dataroom.services.access_guard import RequestInfo, TenantContext
from dataroom.services.gateway import DataRoomGateway


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; the context manager closes it on success or error.
    async with get_session() as session:
        yield session


@lru_cache
def _cached_store() -> ObjectStore:
    return get_object_store()


def get_store() -> ObjectStore:
    return _cached_store()


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def get_request_info(request: Request) -> RequestInfo:
    # Trust the first hop of X-Forwarded-For; the gateway in front of us sets it.
    forwarded = request.headers.get("X-Forwarded-For")
    ip_address = forwarded.split(",")[0].strip() if forwarded else None
    if not ip_address and request.client is not None:
        ip_address = request.client.host
    return RequestInfo(
        ip_address=ip_address,
        user_agent=request.headers.get("User-Agent"),
        request_id=get_request_id(request),
    )


async def get_tenant_context(
    request_info: RequestInfo = Depends(get_request_info),
    x_tenant_id: str | None = Header(default=None, alias="X-Tenant-Id"),
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    x_user_email: str | None = Header(default=None, alias="X-User-Email"),
    x_company_ids: str | None = Header(default=None, alias="X-Company-Ids"),
) -> TenantContext:
    """Build the caller context from headers set by the upstream auth gateway."""
    if not x_tenant_id or not x_user_id:
        raise _auth_error("Missing tenant or user identity")
    company_ids = frozenset(
        company_id.strip() for company_id in (x_company_ids or "").split(",") if company_id.strip()
    )
    return TenantContext(
        tenant_id=x_tenant_id,
        user_id=x_user_id,
        authorized_company_ids=company_ids,
        user_email=x_user_email.strip().lower() if x_user_email else None,
        request=request_info,
    )


async def get_gateway(
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_store),
) -> DataRoomGateway:
    return DataRoomGateway(db, store=store)
