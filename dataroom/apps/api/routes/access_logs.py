from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from dataroom.apps.api.deps import get_gateway, get_tenant_context
from dataroom.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from dataroom.apps.api.response import SuccessEnvelope, UtcDatetime, success_response
from dataroom.services.access_guard import TenantContext
from dataroom.services.gateway import DataRoomGateway


router = APIRouter(prefix="/rooms/{room_id}", tags=["access-logs"], responses=DEFAULT_ERROR_RESPONSES)


class AccessLogResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    data_room_id: str | None
    document_id: str | None
    viewer_id: str
    viewer_email: str
    action: str
    event: str | None
    ip_address: str
    user_agent: str
    success: bool
    error_reason: str | None
    watermark_id: str | None
    link_id: str | None
    request_id: str | None
    timestamp: UtcDatetime


class AccessLogPageResponse(BaseModel):
    items: list[AccessLogResponse]
    next_cursor: str | None


@router.get("/access-logs", response_model=SuccessEnvelope[AccessLogPageResponse])
async def get_access_logs(
    room_id: str,
    request: Request,
    document_id: str | None = None,
    viewer_id: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int | None = Query(default=None, ge=1),
    cursor: str | None = None,
    context: TenantContext = Depends(get_tenant_context),
    gateway: DataRoomGateway = Depends(get_gateway),
) -> dict:
    page = await gateway.audit.get_access_logs(
        context,
        data_room_id=room_id,
        document_id=document_id,
        viewer_id=viewer_id,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        cursor=cursor,
    )
    data = AccessLogPageResponse(
        items=[AccessLogResponse.model_validate(item) for item in page.items],
        next_cursor=page.next_cursor,
    )
    return success_response(request=request, data=data)
