from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import AliasChoices, BaseModel, Field

from dataroom.apps.api.deps import get_gateway, get_tenant_context
from dataroom.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from dataroom.apps.api.response import SuccessEnvelope, UtcDatetime, success_response
from dataroom.domain.permissions import ViewerPermissions
from dataroom.services.access_guard import TenantContext
from dataroom.services.gateway import DataRoomGateway


router = APIRouter(prefix="/rooms/{room_id}", tags=["viewers"], responses=DEFAULT_ERROR_RESPONSES)


class ViewerResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    data_room_id: str
    email: str
    name: str | None
    company: str | None
    role: str
    permissions: dict[str, Any] = Field(validation_alias=AliasChoices("permissions_json", "permissions"))
    status: str
    invited_by: str
    invited_at: UtcDatetime
    activated_at: UtcDatetime | None
    last_access_at: UtcDatetime | None
    revoked_at: UtcDatetime | None
    nda_signed_at: UtcDatetime | None
    access_count: int
    download_count: int


class ViewerCreateRequest(BaseModel):
    email: str = Field(min_length=3)
    role: str = "viewer"
    name: str | None = None
    company: str | None = None
    permissions: ViewerPermissions | None = None

    model_config = {"extra": "forbid"}


@router.post("/viewers", status_code=201, response_model=SuccessEnvelope[ViewerResponse])
async def add_viewer(
    room_id: str,
    payload: ViewerCreateRequest,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    gateway: DataRoomGateway = Depends(get_gateway),
) -> dict:
    viewer = await gateway.viewers.add_viewer(
        context,
        room_id=room_id,
        email=payload.email,
        role=payload.role,
        permissions=payload.permissions,
        name=payload.name,
        company=payload.company,
    )
    return success_response(request=request, data=ViewerResponse.model_validate(viewer))


@router.get("/viewers", response_model=SuccessEnvelope[list[ViewerResponse]])
async def list_viewers(
    room_id: str,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    gateway: DataRoomGateway = Depends(get_gateway),
) -> dict:
    viewers = await gateway.viewers.list_viewers(context, room_id=room_id)
    return success_response(request=request, data=[ViewerResponse.model_validate(v) for v in viewers])


@router.delete("/viewers/{viewer_id}", response_model=SuccessEnvelope[ViewerResponse])
async def revoke_viewer(
    room_id: str,
    viewer_id: str,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    gateway: DataRoomGateway = Depends(get_gateway),
) -> dict:
    viewer = await gateway.viewers.revoke_viewer(context, room_id=room_id, viewer_id=viewer_id)
    return success_response(request=request, data=ViewerResponse.model_validate(viewer))


@router.post("/nda", response_model=SuccessEnvelope[ViewerResponse])
async def sign_nda(
    room_id: str,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    gateway: DataRoomGateway = Depends(get_gateway),
) -> dict:
    # The caller signs for themselves; identity comes from the context email.
    viewer = await gateway.viewers.record_nda_signature(context, room_id=room_id)
    return success_response(request=request, data=ViewerResponse.model_validate(viewer))
