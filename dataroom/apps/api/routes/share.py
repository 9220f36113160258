from __future__ import annotations

import logging
from typing import Literal

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from dataroom.apps.api.deps import get_gateway, get_request_info
from dataroom.apps.api.openapi import SHARE_ERROR_RESPONSES
from dataroom.apps.api.response import SuccessEnvelope, error_response, success_response
from dataroom.apps.api.routes.documents import ContentGrantResponse
from dataroom.core.errors import DataRoomError
from dataroom.services.access_guard import RequestInfo
from dataroom.services.gateway import DataRoomGateway


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/share", tags=["share"], responses=SHARE_ERROR_RESPONSES)


class RedeemRequest(BaseModel):
    pin: str | None = None
    email: str | None = None
    document_id: str | None = None
    action: Literal["view", "preview", "download", "print"] = "view"

    model_config = {"extra": "forbid"}


@router.post("/{token}", response_model=SuccessEnvelope[ContentGrantResponse])
async def redeem_link(
    token: str,
    request: Request,
    payload: RedeemRequest | None = None,
    request_info: RequestInfo = Depends(get_request_info),
    gateway: DataRoomGateway = Depends(get_gateway),
) -> dict | JSONResponse:
    """Public, unauthenticated redemption of a secure link.

    The audit log keeps the precise failure code; the caller only ever sees
    a generic denial so the endpoint cannot be used to probe tokens. Storage
    outages are only reached with a valid token, so they are denied the same way.
    """
    payload = payload or RedeemRequest()
    try:
        grant = await gateway.redeem_secure_link(
            token,
            pin=payload.pin,
            email=payload.email,
            document_id=payload.document_id,
            action=payload.action,
            request=request_info,
        )
    except DataRoomError as exc:
        logger.info("share_access_denied code=%s", exc.code)
        return JSONResponse(
            content=error_response(request=request, code="ACCESS_DENIED", message="Access denied"),
            status_code=403,
        )
    return success_response(request=request, data=ContentGrantResponse.model_validate(grant))
