from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from dataroom.apps.api.deps import get_gateway, get_tenant_context
from dataroom.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from dataroom.apps.api.response import SuccessEnvelope, UtcDatetime, success_response
from dataroom.services.access_guard import TenantContext
from dataroom.services.gateway import DataRoomGateway


logger = logging.getLogger(__name__)
router = APIRouter(tags=["rooms"], responses=DEFAULT_ERROR_RESPONSES)


class RoomResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    tenant_id: str
    company_id: str
    name: str
    description: str
    type: str
    status: str
    watermark_enabled: bool
    watermark_text: str | None
    download_enabled: bool
    print_enabled: bool
    copy_enabled: bool
    screenshot_protection: bool
    expires_at: UtcDatetime | None
    nda_required: bool
    fund_id: str | None
    fund_name: str | None
    documents_count: int
    members_count: int
    created_by: str
    created_at: UtcDatetime
    archived_at: UtcDatetime | None


class RoomCreateRequest(BaseModel):
    company_id: str
    name: str = Field(min_length=1)
    description: str = ""
    type: str = "GENERAL"
    watermark_enabled: bool = True
    watermark_text: str | None = None
    download_enabled: bool = True
    print_enabled: bool = True
    copy_enabled: bool = False
    screenshot_protection: bool = True
    expires_at: UtcDatetime | None = None
    nda_required: bool = False
    fund_id: str | None = None
    fund_name: str | None = None

    # Tenant comes from the caller context, never from the body.
    model_config = {
        "extra": "forbid",
        "json_schema_extra": {
            "examples": [
                {
                    "company_id": "company_1",
                    "name": "Fund III closing",
                    "type": "DUE_DILIGENCE",
                    "download_enabled": False,
                    "nda_required": True,
                }
            ]
        },
    }


@router.post("/rooms", status_code=201, response_model=SuccessEnvelope[RoomResponse])
async def create_room(
    payload: RoomCreateRequest,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    gateway: DataRoomGateway = Depends(get_gateway),
) -> dict:
    room = await gateway.registry.create_room(context, **payload.model_dump())
    return success_response(request=request, data=RoomResponse.model_validate(room))


@router.get("/companies/{company_id}/rooms", response_model=SuccessEnvelope[list[RoomResponse]])
async def list_rooms(
    company_id: str,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    gateway: DataRoomGateway = Depends(get_gateway),
) -> dict:
    rooms = await gateway.registry.list_rooms_for_company(context, company_id)
    return success_response(request=request, data=[RoomResponse.model_validate(room) for room in rooms])


@router.get("/rooms/{room_id}", response_model=SuccessEnvelope[RoomResponse])
async def get_room(
    room_id: str,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    gateway: DataRoomGateway = Depends(get_gateway),
) -> dict:
    room = await gateway.registry.get_room(context, room_id)
    return success_response(request=request, data=RoomResponse.model_validate(room))


@router.post("/rooms/{room_id}/archive", response_model=SuccessEnvelope[RoomResponse])
async def archive_room(
    room_id: str,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    gateway: DataRoomGateway = Depends(get_gateway),
) -> dict:
    room = await gateway.registry.archive_room(context, room_id)
    return success_response(request=request, data=RoomResponse.model_validate(room))
