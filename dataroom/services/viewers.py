from __future__ import annotations

from datetime import datetime
import logging
from typing import Callable, NoReturn

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dataroom.core.errors import DataRoomError, DuplicateViewer, NotFound, PermissionDenied
from dataroom.domain.clock import ensure_utc, utc_now
from dataroom.domain.models import DataRoom, DataRoomDocument, DataRoomViewer
from dataroom.domain.permissions import (
    VIEWER_STATUS_ACTIVE,
    VIEWER_STATUS_INVITED,
    VIEWER_STATUS_REVOKED,
    ViewerPermissions,
    full_permissions,
    normalize_email,
    normalize_role,
)
from dataroom.persistence.repos import rooms as rooms_repo
from dataroom.persistence.repos import viewers as viewers_repo
from dataroom.services.access_guard import TenantContext
from dataroom.services.rooms import DataRoomRegistry, new_id


logger = logging.getLogger(__name__)

CONTENT_CAPABILITIES = {"can_view", "can_download", "can_print"}


def effective_permissions(viewer: DataRoomViewer) -> ViewerPermissions:
    if viewer.role == "owner":
        return full_permissions()
    return ViewerPermissions.from_json(viewer.permissions_json)


def evaluate_access(
    *,
    room: DataRoom,
    permissions: ViewerPermissions,
    capability: str,
    principal_id: str,
    now: datetime,
    document: DataRoomDocument | None = None,
    status: str | None = None,
    nda_signed_at: datetime | None = None,
    check_nda: bool = True,
) -> str | None:
    """Return the first deny reason for ``capability``, or None when allowed.

    Checks run in a fixed order: viewer status, individual expiry, explicit
    document and folder denials, the capability flag together with its
    room-level (and for downloads document-level) setting, then the NDA gate.
    ``status`` is None for link redemptions, which carry no viewer record.
    """
    if status is not None and status not in (VIEWER_STATUS_ACTIVE, VIEWER_STATUS_INVITED):
        return f"VIEWER_{status.upper()}"
    expires_at = ensure_utc(permissions.expires_at)
    if expires_at is not None and expires_at < now:
        return "VIEWER_EXPIRED"

    if document is not None:
        if principal_id in (document.viewer_restrictions or []):
            return "DOCUMENT_RESTRICTED"
        if document.id in permissions.document_restrictions:
            return "DOCUMENT_RESTRICTED"
        folders = set(document.folder_restrictions or [])
        if document.folder_id:
            folders.add(document.folder_id)
        if folders & set(permissions.folder_restrictions):
            return "FOLDER_RESTRICTED"

    if not permissions.allows(capability):
        return f"MISSING_{capability.upper()}"
    if capability == "can_download":
        if not room.download_enabled:
            return "ROOM_DOWNLOAD_DISABLED"
        if document is not None and document.download_override is False:
            return "DOCUMENT_DOWNLOAD_DISABLED"
    if capability == "can_print" and not room.print_enabled:
        return "ROOM_PRINT_DISABLED"

    if check_nda and room.nda_required and capability in CONTENT_CAPABILITIES and nda_signed_at is None:
        return "NDA_REQUIRED"
    return None


class ViewerDirectory:
    def __init__(
        self,
        session: AsyncSession,
        *,
        registry: DataRoomRegistry,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session = session
        self._registry = registry
        self._clock = clock
        self.audit = registry.audit

    async def add_viewer(
        self,
        context: TenantContext,
        *,
        room_id: str,
        email: str,
        role: str = "viewer",
        permissions: ViewerPermissions | None = None,
        name: str | None = None,
        company: str | None = None,
    ) -> DataRoomViewer:
        room = await self._registry.get_open_room(context, room_id, action="share", event="viewer.invited")
        actor = await self.require_actor(
            context, room, "can_manage_viewers", action="share", event="viewer.invited"
        )
        normalized_email = normalize_email(email)
        normalized_role = normalize_role(role)
        if not normalized_email:
            raise ValueError("Viewer email is required")
        if normalized_role == "owner" and actor.role != "owner":
            # Owner rights carry full permissions; only an owner may hand them out.
            await self._refuse(
                context, room, actor, event="viewer.invited", error=PermissionDenied("OWNER_INVITE_REQUIRES_OWNER")
            )
        granted = full_permissions() if normalized_role == "owner" else (permissions or ViewerPermissions())
        now = self._clock()
        # Capture ids before any rollback expires the loaded rows.
        actor_id, actor_email = actor.id, actor.email

        existing = await viewers_repo.get_live_viewer_by_email(
            self._session, tenant_id=context.tenant_id, room_id=room.id, email=normalized_email
        )
        if existing is not None:
            await self._deny_duplicate(
                context,
                room_id=room_id,
                actor_id=actor_id,
                actor_email=actor_email,
                email=normalized_email,
                now=now,
            )

        viewer = DataRoomViewer(
            id=new_id("viewer"),
            tenant_id=context.tenant_id,
            data_room_id=room.id,
            email=normalized_email,
            name=name,
            company=company,
            role=normalized_role,
            permissions_json=granted.to_json(),
            status=VIEWER_STATUS_INVITED,
            invited_by=context.user_id,
            invited_at=now,
            access_count=0,
            download_count=0,
        )
        self._session.add(viewer)
        try:
            await self._session.flush()
        except IntegrityError:
            # A concurrent invite won the partial unique index.
            await self._session.rollback()
            await self._deny_duplicate(
                context,
                room_id=room_id,
                actor_id=actor_id,
                actor_email=actor_email,
                email=normalized_email,
                now=now,
            )
        await rooms_repo.adjust_counters(self._session, room_id=room.id, members=1)
        self.audit.log_access(
            action="share",
            event="viewer.invited",
            success=True,
            viewer_id=actor.id,
            viewer_email=actor.email,
            tenant_id=context.tenant_id,
            data_room_id=room.id,
            request=context.request,
            timestamp=now,
        )
        await self._session.commit()
        logger.info(
            "viewer_invited room_id=%s viewer_id=%s role=%s", room.id, viewer.id, normalized_role
        )
        return viewer

    async def _deny_duplicate(
        self,
        context: TenantContext,
        *,
        room_id: str,
        actor_id: str,
        actor_email: str,
        email: str,
        now: datetime,
    ) -> None:
        self.audit.log_access(
            action="share",
            event="viewer.invited",
            success=False,
            error_reason=DuplicateViewer.code,
            viewer_id=actor_id,
            viewer_email=actor_email,
            tenant_id=context.tenant_id,
            data_room_id=room_id,
            request=context.request,
            timestamp=now,
        )
        await self._session.commit()
        logger.warning("viewer_invite_duplicate room_id=%s", room_id)
        raise DuplicateViewer(f"{email} already has access to this data room")

    async def _refuse(
        self,
        context: TenantContext,
        room: DataRoom,
        actor: DataRoomViewer | None,
        *,
        event: str,
        error: DataRoomError,
        action: str = "share",
    ) -> NoReturn:
        await self._registry.log_denial(
            context,
            room,
            action=action,
            event=event,
            error=error,
            viewer_id=actor.id if actor else None,
            viewer_email=actor.email if actor else None,
        )
        logger.warning("viewer_operation_denied room_id=%s event=%s code=%s", room.id, event, error.code)
        raise error

    async def revoke_viewer(self, context: TenantContext, *, room_id: str, viewer_id: str) -> DataRoomViewer:
        """Revoke a viewer.

        Content URLs issued before the revocation stay valid until their own TTL
        runs out; only new requests are refused.
        """
        room = await self._registry.get_open_room(
            context, room_id, action="share", event="viewer.revoked", allow_expired=True
        )
        actor = await self.require_actor(
            context, room, "can_manage_viewers", action="share", event="viewer.revoked"
        )
        viewer = await viewers_repo.get_viewer(
            self._session, tenant_id=context.tenant_id, room_id=room.id, viewer_id=viewer_id
        )
        if viewer is None:
            await self._refuse(context, room, actor, event="viewer.revoked", error=NotFound("Viewer not found"))
        if viewer.role == "owner" and viewer.status != VIEWER_STATUS_REVOKED:
            if actor.role != "owner":
                await self._refuse(
                    context, room, actor, event="viewer.revoked", error=PermissionDenied("OWNER_REVOKE_REQUIRES_OWNER")
                )
            owners = await viewers_repo.count_live_owners(
                self._session, tenant_id=context.tenant_id, room_id=room.id
            )
            if owners <= 1:
                await self._refuse(context, room, actor, event="viewer.revoked", error=PermissionDenied("LAST_OWNER"))
        now = self._clock()
        changed = await viewers_repo.revoke_viewer(
            self._session, tenant_id=context.tenant_id, room_id=room.id, viewer_id=viewer.id, now=now
        )
        self.audit.log_access(
            action="share",
            event="viewer.revoked",
            success=True,
            viewer_id=actor.id,
            viewer_email=actor.email,
            tenant_id=context.tenant_id,
            data_room_id=room.id,
            request=context.request,
            timestamp=now,
        )
        await self._session.commit()
        await self._session.refresh(viewer)
        if changed:
            logger.info("viewer_revoked room_id=%s viewer_id=%s", room.id, viewer.id)
        return viewer

    async def list_viewers(self, context: TenantContext, *, room_id: str) -> list[DataRoomViewer]:
        room = await self._registry.get_room(context, room_id)
        return await viewers_repo.list_viewers(self._session, tenant_id=context.tenant_id, room_id=room.id)

    async def resolve_viewer(
        self, context: TenantContext, room: DataRoom, email: str | None = None
    ) -> DataRoomViewer | None:
        # Prefer the live record; fall back to revoked history so denials can name the viewer.
        lookup = normalize_email(email or context.user_email or "")
        if not lookup:
            return None
        viewer = await viewers_repo.get_live_viewer_by_email(
            self._session, tenant_id=context.tenant_id, room_id=room.id, email=lookup
        )
        if viewer is None:
            viewer = await viewers_repo.get_latest_viewer_by_email(
                self._session, tenant_id=context.tenant_id, room_id=room.id, email=lookup
            )
        return viewer

    def check_permission(
        self,
        room: DataRoom,
        viewer: DataRoomViewer,
        capability: str,
        *,
        document: DataRoomDocument | None = None,
    ) -> str | None:
        return evaluate_access(
            room=room,
            permissions=effective_permissions(viewer),
            capability=capability,
            principal_id=viewer.id,
            now=self._clock(),
            document=document,
            status=viewer.status,
            nda_signed_at=viewer.nda_signed_at,
        )

    async def require_actor(
        self,
        context: TenantContext,
        room: DataRoom,
        capability: str,
        *,
        action: str,
        event: str,
        document: DataRoomDocument | None = None,
    ) -> DataRoomViewer:
        """Resolve the caller's own viewer record and require ``capability``.

        A refusal is logged and committed before PermissionDenied is raised.
        """
        actor = await self.resolve_viewer(context, room)
        if actor is None:
            reason = "NOT_A_MEMBER"
        else:
            reason = evaluate_access(
                room=room,
                permissions=effective_permissions(actor),
                capability=capability,
                principal_id=actor.id,
                now=self._clock(),
                document=document,
                status=actor.status,
                check_nda=False,
            )
        if reason is None:
            return actor
        self.audit.log_access(
            action=action,
            event=event,
            success=False,
            error_reason=reason,
            viewer_id=actor.id if actor else context.user_id,
            viewer_email=actor.email if actor else context.user_email,
            tenant_id=context.tenant_id,
            data_room_id=room.id,
            document_id=document.id if document else None,
            request=context.request,
        )
        await self._session.commit()
        raise PermissionDenied(reason)

    async def record_nda_signature(self, context: TenantContext, *, room_id: str) -> DataRoomViewer:
        room = await self._registry.get_open_room(context, room_id, action="share", event="nda.signed")
        viewer = await self.resolve_viewer(context, room)
        if viewer is None or viewer.status not in (VIEWER_STATUS_ACTIVE, VIEWER_STATUS_INVITED):
            await self._refuse(context, room, viewer, event="nda.signed", error=NotFound("Viewer not found"))
        now = self._clock()
        if viewer.nda_signed_at is None:
            await viewers_repo.set_nda_signed(self._session, viewer_id=viewer.id, now=now)
        self.audit.log_access(
            action="share",
            event="nda.signed",
            success=True,
            viewer_id=viewer.id,
            viewer_email=viewer.email,
            tenant_id=context.tenant_id,
            data_room_id=room.id,
            request=context.request,
            timestamp=now,
        )
        await self._session.commit()
        await self._session.refresh(viewer)
        logger.info("nda_signed room_id=%s viewer_id=%s", room.id, viewer.id)
        return viewer
