from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from dataroom.apps.api.deps import get_gateway, get_tenant_context
from dataroom.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from dataroom.apps.api.response import SuccessEnvelope, UtcDatetime, success_response
from dataroom.services.access_guard import TenantContext
from dataroom.services.gateway import DataRoomGateway


router = APIRouter(prefix="/rooms/{room_id}/links", tags=["links"], responses=DEFAULT_ERROR_RESPONSES)


class LinkResponse(BaseModel):
    # Never expose token_hash or pin_hash.
    model_config = {"from_attributes": True}

    id: str
    data_room_id: str
    document_id: str | None
    label: str | None
    expires_at: UtcDatetime
    max_uses: int | None
    current_uses: int
    require_email: bool
    allowed_emails: list[str] | None
    require_pin: bool
    created_by: str
    created_at: UtcDatetime
    revoked_at: UtcDatetime | None


class IssuedLinkResponse(BaseModel):
    link: LinkResponse
    # Shown once; the server keeps only a hash of the token.
    url: str


class LinkCreateRequest(BaseModel):
    document_id: str | None = None
    expires_in_hours: float | None = Field(default=None, gt=0)
    max_uses: int | None = Field(default=None, ge=1)
    require_email: bool = False
    allowed_emails: list[str] | None = None
    require_pin: bool = False
    pin: str | None = Field(default=None, min_length=4, max_length=12)
    label: str | None = None
    can_download: bool | None = None
    can_print: bool | None = None

    model_config = {"extra": "forbid"}


class LinkStatsResponse(BaseModel):
    model_config = {"from_attributes": True}

    total_attempts: int
    successful: int
    failed: int
    unique_emails: int
    last_attempt_at: UtcDatetime | None
    attempts_by_date: dict[str, int]


@router.post("", status_code=201, response_model=SuccessEnvelope[IssuedLinkResponse])
async def create_link(
    room_id: str,
    payload: LinkCreateRequest,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    gateway: DataRoomGateway = Depends(get_gateway),
) -> dict:
    issued = await gateway.links.create_secure_link(context, room_id=room_id, **payload.model_dump())
    data = IssuedLinkResponse(link=LinkResponse.model_validate(issued.link), url=issued.url)
    return success_response(request=request, data=data)


@router.get("", response_model=SuccessEnvelope[list[LinkResponse]])
async def list_links(
    room_id: str,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    gateway: DataRoomGateway = Depends(get_gateway),
) -> dict:
    links = await gateway.links.list_secure_links(context, room_id=room_id)
    return success_response(request=request, data=[LinkResponse.model_validate(link) for link in links])


@router.delete("/{link_id}", response_model=SuccessEnvelope[LinkResponse])
async def revoke_link(
    room_id: str,
    link_id: str,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    gateway: DataRoomGateway = Depends(get_gateway),
) -> dict:
    link = await gateway.links.revoke_secure_link(context, room_id=room_id, link_id=link_id)
    return success_response(request=request, data=LinkResponse.model_validate(link))


@router.get("/{link_id}/stats", response_model=SuccessEnvelope[LinkStatsResponse])
async def link_stats(
    room_id: str,
    link_id: str,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    gateway: DataRoomGateway = Depends(get_gateway),
) -> dict:
    stats = await gateway.audit.get_link_stats(context, data_room_id=room_id, link_id=link_id)
    return success_response(request=request, data=LinkStatsResponse.model_validate(stats))
