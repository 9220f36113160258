from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from dataroom.apps.api.deps import get_gateway, get_tenant_context
from dataroom.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from dataroom.apps.api.response import SuccessEnvelope, UtcDatetime, success_response
from dataroom.services.access_guard import TenantContext
from dataroom.services.gateway import DataRoomGateway


router = APIRouter(prefix="/rooms/{room_id}/documents", tags=["documents"], responses=DEFAULT_ERROR_RESPONSES)


class DocumentResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    data_room_id: str
    name: str
    file_key: str
    mime_type: str
    file_size: int
    folder_id: str | None
    version: int
    previous_version_id: str | None
    download_override: bool | None
    viewer_restrictions: list[str] | None
    folder_restrictions: list[str] | None
    view_count: int
    download_count: int
    uploaded_by: str
    uploaded_at: UtcDatetime
    last_viewed_at: UtcDatetime | None
    deleted_at: UtcDatetime | None


class DocumentUploadRequest(BaseModel):
    file_name: str = Field(min_length=1)
    mime_type: str = "application/pdf"
    file_size: int = Field(default=0, ge=0)
    folder_id: str | None = None
    download_override: bool | None = None
    viewer_restrictions: list[str] | None = None
    folder_restrictions: list[str] | None = None

    model_config = {"extra": "forbid"}


class UploadGrantResponse(BaseModel):
    model_config = {"from_attributes": True}

    document: DocumentResponse
    upload_url: str
    expires_at: UtcDatetime


class WatermarkConfigResponse(BaseModel):
    model_config = {"from_attributes": True}

    text: str
    opacity: float
    font_size: float
    rotation: float
    color: str
    repetitions: int


class ContentGrantResponse(BaseModel):
    model_config = {"from_attributes": True}

    url: str
    watermark_id: str
    expires_at: UtcDatetime
    tracking_code: str
    watermark: WatermarkConfigResponse | None = None


class WatermarkRecordResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    document_id: str
    viewer_id: str
    viewer_email: str
    viewer_name: str | None
    company_name: str | None
    access_timestamp: UtcDatetime
    tracking_code: str
    watermark_text: str
    ip_address: str | None


class TrackingCodeRequest(BaseModel):
    tracking_code: str = Field(min_length=1)


class TrackingCodeResponse(BaseModel):
    matched: bool
    record: WatermarkRecordResponse | None = None


@router.post("", status_code=201, response_model=SuccessEnvelope[UploadGrantResponse])
async def register_document(
    room_id: str,
    payload: DocumentUploadRequest,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    gateway: DataRoomGateway = Depends(get_gateway),
) -> dict:
    grant = await gateway.register_document(context, room_id=room_id, **payload.model_dump())
    return success_response(request=request, data=UploadGrantResponse.model_validate(grant))


@router.get("", response_model=SuccessEnvelope[list[DocumentResponse]])
async def list_documents(
    room_id: str,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    gateway: DataRoomGateway = Depends(get_gateway),
) -> dict:
    documents = await gateway.list_documents(context, room_id=room_id)
    return success_response(request=request, data=[DocumentResponse.model_validate(d) for d in documents])


@router.delete("/{document_id}", response_model=SuccessEnvelope[DocumentResponse])
async def delete_document(
    room_id: str,
    document_id: str,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    gateway: DataRoomGateway = Depends(get_gateway),
) -> dict:
    document = await gateway.delete_document(context, room_id=room_id, document_id=document_id)
    return success_response(request=request, data=DocumentResponse.model_validate(document))


@router.post("/{document_id}/view", response_model=SuccessEnvelope[ContentGrantResponse])
async def view_document(
    room_id: str,
    document_id: str,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    gateway: DataRoomGateway = Depends(get_gateway),
) -> dict:
    grant = await gateway.get_secure_view_url(context, room_id=room_id, document_id=document_id)
    return success_response(request=request, data=ContentGrantResponse.model_validate(grant))


@router.post("/{document_id}/download", response_model=SuccessEnvelope[ContentGrantResponse])
async def download_document(
    room_id: str,
    document_id: str,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    gateway: DataRoomGateway = Depends(get_gateway),
) -> dict:
    grant = await gateway.get_download_url(context, room_id=room_id, document_id=document_id)
    return success_response(request=request, data=ContentGrantResponse.model_validate(grant))


@router.post("/{document_id}/print", response_model=SuccessEnvelope[ContentGrantResponse])
async def print_document(
    room_id: str,
    document_id: str,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    gateway: DataRoomGateway = Depends(get_gateway),
) -> dict:
    grant = await gateway.record_print(context, room_id=room_id, document_id=document_id)
    return success_response(request=request, data=ContentGrantResponse.model_validate(grant))


@router.get("/{document_id}/watermarks", response_model=SuccessEnvelope[list[WatermarkRecordResponse]])
async def watermark_history(
    room_id: str,
    document_id: str,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    gateway: DataRoomGateway = Depends(get_gateway),
) -> dict:
    records = await gateway.get_watermark_history(context, room_id=room_id, document_id=document_id)
    return success_response(request=request, data=[WatermarkRecordResponse.model_validate(r) for r in records])


@router.post("/{document_id}/watermarks/verify", response_model=SuccessEnvelope[TrackingCodeResponse])
async def verify_tracking_code(
    room_id: str,
    document_id: str,
    payload: TrackingCodeRequest,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    gateway: DataRoomGateway = Depends(get_gateway),
) -> dict:
    record = await gateway.verify_tracking_code(
        context, room_id=room_id, document_id=document_id, tracking_code=payload.tracking_code
    )
    data = TrackingCodeResponse(
        matched=record is not None,
        record=WatermarkRecordResponse.model_validate(record) if record else None,
    )
    return success_response(request=request, data=data)
