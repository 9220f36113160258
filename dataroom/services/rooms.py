from __future__ import annotations

from datetime import datetime
import logging
from typing import Callable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from dataroom.core.errors import DataRoomError, NotFound, PermissionDenied
from dataroom.domain.clock import ensure_utc, utc_now
from dataroom.domain.models import DataRoom, DataRoomViewer
from dataroom.domain.permissions import (
    ROOM_STATUS_ACTIVE,
    ROOM_STATUS_ARCHIVED,
    ROOM_STATUS_EXPIRED,
    ROOM_TYPES,
    VIEWER_STATUS_ACTIVE,
    full_permissions,
    normalize_email,
)
from dataroom.persistence.repos import rooms as rooms_repo
from dataroom.persistence.repos import viewers as viewers_repo
from dataroom.services.access_guard import TenantContext, require_company_access, require_tenant
from dataroom.services.access_log import AccessAuditLog


logger = logging.getLogger(__name__)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex}"


class DataRoomRegistry:
    def __init__(
        self,
        session: AsyncSession,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session = session
        self._clock = clock
        self.audit = AccessAuditLog(session, room_resolver=self.get_room, clock=clock)

    async def create_room(
        self,
        context: TenantContext,
        *,
        company_id: str,
        name: str,
        description: str = "",
        type: str = "GENERAL",
        watermark_enabled: bool = True,
        watermark_text: str | None = None,
        download_enabled: bool = True,
        print_enabled: bool = True,
        copy_enabled: bool = False,
        screenshot_protection: bool = True,
        expires_at: datetime | None = None,
        nda_required: bool = False,
        fund_id: str | None = None,
        fund_name: str | None = None,
    ) -> DataRoom:
        require_company_access(context, company_id)
        if not context.user_email:
            raise PermissionDenied("OWNER_EMAIL_REQUIRED", "Creating a room requires a caller email")
        room_type = type.strip().upper()
        if room_type not in ROOM_TYPES:
            raise ValueError(f"Unsupported room type: {type}")
        if not name.strip():
            raise ValueError("Room name is required")

        now = self._clock()
        room = DataRoom(
            id=new_id("room"),
            tenant_id=context.tenant_id,
            company_id=company_id,
            name=name.strip(),
            description=description,
            type=room_type,
            status=ROOM_STATUS_ACTIVE,
            watermark_enabled=watermark_enabled,
            watermark_text=watermark_text,
            download_enabled=download_enabled,
            print_enabled=print_enabled,
            copy_enabled=copy_enabled,
            screenshot_protection=screenshot_protection,
            expires_at=ensure_utc(expires_at),
            nda_required=nda_required,
            fund_id=fund_id,
            fund_name=fund_name,
            documents_count=0,
            members_count=1,
            created_by=context.user_id,
            created_at=now,
            updated_at=now,
        )
        # The creator becomes the first owner in the same transaction as the room.
        owner = DataRoomViewer(
            id=new_id("viewer"),
            tenant_id=context.tenant_id,
            data_room_id=room.id,
            email=normalize_email(context.user_email),
            role="owner",
            permissions_json=full_permissions().to_json(),
            status=VIEWER_STATUS_ACTIVE,
            invited_by=context.user_id,
            invited_at=now,
            activated_at=now,
            access_count=0,
            download_count=0,
        )
        self._session.add(room)
        await self._session.flush()
        self._session.add(owner)
        self.audit.log_access(
            action="share",
            event="room.created",
            success=True,
            viewer_id=owner.id,
            viewer_email=owner.email,
            tenant_id=context.tenant_id,
            data_room_id=room.id,
            request=context.request,
            timestamp=now,
        )
        await self._session.commit()
        logger.info(
            "data_room_created room_id=%s tenant_id=%s company_id=%s",
            room.id,
            context.tenant_id,
            company_id,
        )
        return room

    async def get_room(self, context: TenantContext, room_id: str) -> DataRoom:
        require_tenant(context)
        room = await rooms_repo.get_room(self._session, tenant_id=context.tenant_id, room_id=room_id)
        if room is None:
            raise NotFound("Data room not found")
        # Re-validate company scope even when the id came from elsewhere.
        require_company_access(context, room.company_id)
        return room

    async def get_open_room(
        self,
        context: TenantContext,
        room_id: str,
        *,
        action: str,
        event: str,
        allow_expired: bool = False,
    ) -> DataRoom:
        """Load a room for a state-changing operation.

        Archived rooms answer NotFound and expired rooms (unless
        ``allow_expired``) answer PermissionDenied; either refusal is logged
        against the room and committed before the error is raised.
        """
        room = await self.get_room(context, room_id)
        error: DataRoomError | None = None
        if room.status == ROOM_STATUS_ARCHIVED:
            error = NotFound("Data room not found")
        elif not allow_expired and self.is_expired(room):
            error = PermissionDenied("ROOM_EXPIRED")
        if error is not None:
            await self.log_denial(context, room, action=action, event=event, error=error)
            raise error
        return room

    async def log_denial(
        self,
        context: TenantContext,
        room: DataRoom,
        *,
        action: str,
        event: str,
        error: DataRoomError,
        viewer_id: str | None = None,
        viewer_email: str | None = None,
        document_id: str | None = None,
        link_id: str | None = None,
    ) -> None:
        self.audit.log_access(
            action=action,
            event=event,
            success=False,
            error_reason=error.reason if isinstance(error, PermissionDenied) else error.code,
            viewer_id=viewer_id or context.user_id,
            viewer_email=viewer_email or context.user_email,
            tenant_id=context.tenant_id,
            data_room_id=room.id,
            document_id=document_id,
            link_id=link_id,
            request=context.request,
            timestamp=self._clock(),
        )
        await self._session.commit()

    def is_expired(self, room: DataRoom) -> bool:
        if room.status == ROOM_STATUS_EXPIRED:
            return True
        expires_at = ensure_utc(room.expires_at)
        return expires_at is not None and expires_at < self._clock()

    async def list_rooms_for_company(self, context: TenantContext, company_id: str) -> list[DataRoom]:
        require_company_access(context, company_id)
        return await rooms_repo.list_rooms_for_company(
            self._session, tenant_id=context.tenant_id, company_id=company_id
        )

    async def archive_room(self, context: TenantContext, room_id: str) -> DataRoom:
        room = await self.get_room(context, room_id)
        actor = None
        if context.user_email:
            actor = await viewers_repo.get_live_viewer_by_email(
                self._session,
                tenant_id=context.tenant_id,
                room_id=room.id,
                email=normalize_email(context.user_email),
            )
        now = self._clock()
        if actor is None or actor.role not in {"owner", "admin"}:
            self.audit.log_access(
                action="delete",
                event="room.archived",
                success=False,
                error_reason="ARCHIVE_REQUIRES_ADMIN",
                viewer_id=actor.id if actor else context.user_id,
                viewer_email=context.user_email,
                tenant_id=context.tenant_id,
                data_room_id=room.id,
                request=context.request,
                timestamp=now,
            )
            await self._session.commit()
            raise PermissionDenied("ARCHIVE_REQUIRES_ADMIN")
        if room.status != ROOM_STATUS_ARCHIVED:
            await rooms_repo.set_status(
                self._session,
                tenant_id=context.tenant_id,
                room_id=room.id,
                status=ROOM_STATUS_ARCHIVED,
                archived_at=now,
            )
        self.audit.log_access(
            action="delete",
            event="room.archived",
            success=True,
            viewer_id=actor.id,
            viewer_email=actor.email,
            tenant_id=context.tenant_id,
            data_room_id=room.id,
            request=context.request,
            timestamp=now,
        )
        await self._session.commit()
        await self._session.refresh(room)
        logger.info("data_room_archived room_id=%s", room.id)
        return room


async def expire_rooms(session: AsyncSession, *, now: datetime | None = None) -> list[str]:
    # Persist ACTIVE -> EXPIRED for rooms past their expiry; used by the maintenance script.
    room_ids = await rooms_repo.expire_rooms(session, now=now or utc_now())
    await session.commit()
    if room_ids:
        logger.info("data_rooms_expired count=%s", len(room_ids))
    return room_ids
