from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import secrets
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from dataroom.core.config import get_settings
from dataroom.core.errors import (
    DataRoomError,
    InvalidQuery,
    LinkValidationError,
    NotFound,
    PermissionDenied,
    StorageUnavailable,
)
from dataroom.domain.clock import utc_now
from dataroom.domain.models import DataRoom, DataRoomDocument, DataRoomViewer, SecureLink, WatermarkRecord
from dataroom.domain.permissions import ACTION_CAPABILITY, ROOM_STATUS_ARCHIVED
from dataroom.persistence.repos import documents as documents_repo
from dataroom.persistence.repos import rooms as rooms_repo
from dataroom.persistence.repos import viewers as viewers_repo
from dataroom.providers.storage.base import ObjectStore
from dataroom.services.access_guard import RequestInfo, TenantContext
from dataroom.services.access_log import ANONYMOUS_EMAIL
from dataroom.services.resilience import RetryPolicy, retry_async
from dataroom.services.rooms import DataRoomRegistry, new_id
from dataroom.services.secure_links import SecureLinkService, link_principal
from dataroom.services.viewers import ViewerDirectory, effective_permissions, evaluate_access
from dataroom.services.watermark import (
    WatermarkConfig,
    WatermarkEngine,
    WatermarkIdentity,
    WatermarkLedger,
)


logger = logging.getLogger(__name__)

CONTENT_ACTIONS = ("view", "preview", "download", "print")


@dataclass(frozen=True)
class ContentGrant:
    url: str
    watermark_id: str
    expires_at: datetime
    tracking_code: str
    # None when the room has watermarking switched off.
    watermark: WatermarkConfig | None = None


@dataclass(frozen=True)
class UploadGrant:
    document: DataRoomDocument
    upload_url: str
    expires_at: datetime


def build_storage_key(*, tenant_id: str, company_id: str, room_id: str, document_id: str, file_name: str) -> str:
    return f"tenants/{tenant_id}/companies/{company_id}/rooms/{room_id}/{document_id}/{file_name}"


def latest_versions(documents: list[DataRoomDocument]) -> list[DataRoomDocument]:
    # Rows arrive ordered by name then version desc; keep the first per name.
    seen: set[str] = set()
    latest: list[DataRoomDocument] = []
    for document in documents:
        if document.name in seen:
            continue
        seen.add(document.name)
        latest.append(document)
    return latest


class DataRoomGateway:
    """Orchestrates content access for registered viewers and secure links.

    A content URL is only returned after its watermark record, access log
    entry and counters have committed together. Denials are logged and
    committed before the error is raised.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        store: ObjectStore,
        engine: WatermarkEngine | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session = session
        self._store = store
        self._retry_policy = retry_policy
        self._clock = clock
        self.registry = DataRoomRegistry(session, clock=clock)
        self.viewers = ViewerDirectory(session, registry=self.registry, clock=clock)
        self.links = SecureLinkService(session, registry=self.registry, viewers=self.viewers, clock=clock)
        self.engine = engine or WatermarkEngine()
        self.ledger = WatermarkLedger(session, engine=self.engine)
        self.audit = self.registry.audit

    async def get_secure_view_url(self, context: TenantContext, *, room_id: str, document_id: str) -> ContentGrant:
        return await self._grant_content(context, room_id=room_id, document_id=document_id, action="view")

    async def get_download_url(self, context: TenantContext, *, room_id: str, document_id: str) -> ContentGrant:
        return await self._grant_content(context, room_id=room_id, document_id=document_id, action="download")

    async def record_print(self, context: TenantContext, *, room_id: str, document_id: str) -> ContentGrant:
        return await self._grant_content(context, room_id=room_id, document_id=document_id, action="print")

    async def _grant_content(
        self,
        context: TenantContext,
        *,
        room_id: str,
        document_id: str,
        action: str,
    ) -> ContentGrant:
        if action not in CONTENT_ACTIONS:
            raise ValueError(f"Unsupported content action: {action}")
        room = await self.registry.get_room(context, room_id)
        viewer = await self.viewers.resolve_viewer(context, room)
        document: DataRoomDocument | None = None
        now = self._clock()

        try:
            if room.status == ROOM_STATUS_ARCHIVED:
                raise NotFound("Data room not found")
            if self.registry.is_expired(room):
                raise PermissionDenied("ROOM_EXPIRED")
            if viewer is None:
                raise PermissionDenied("NOT_A_MEMBER")
            document = await documents_repo.get_document(
                self._session, tenant_id=context.tenant_id, room_id=room.id, document_id=document_id
            )
            if document is None or document.deleted_at is not None:
                raise NotFound("Document not found")
            reason = self.viewers.check_permission(
                room, viewer, ACTION_CAPABILITY[action], document=document
            )
            if reason is not None:
                raise PermissionDenied(reason)
            url = await self._presign_get(document, as_attachment=action == "download")
        except (NotFound, PermissionDenied, StorageUnavailable) as exc:
            await self._deny(context, room, viewer, document_id, action, exc)
            raise

        return await self._complete_grant(
            context=context,
            room=room,
            document=document,
            viewer=viewer,
            action=action,
            url=url,
            now=now,
        )

    async def _complete_grant(
        self,
        *,
        context: TenantContext,
        room: DataRoom,
        document: DataRoomDocument,
        viewer: DataRoomViewer,
        action: str,
        url: str,
        now: datetime,
    ) -> ContentGrant:
        settings = get_settings()
        watermark_id = secrets.token_hex(16)
        identity = WatermarkIdentity(
            viewer_email=viewer.email,
            access_timestamp=now,
            viewer_name=viewer.name,
            company_name=viewer.company,
        )
        record = self.ledger.record(
            watermark_id=watermark_id,
            tenant_id=context.tenant_id,
            room_id=room.id,
            document_id=document.id,
            viewer_id=viewer.id,
            identity=identity,
            request=context.request,
        )
        download = action == "download"
        if download:
            await documents_repo.record_download(self._session, document_id=document.id)
        else:
            await documents_repo.record_view(self._session, document_id=document.id, now=now)
        await viewers_repo.record_access(
            self._session,
            viewer_id=viewer.id,
            now=now,
            ip_address=context.request.ip_address,
            download=download,
        )
        self.audit.log_access(
            action=action,
            success=True,
            viewer_id=viewer.id,
            viewer_email=viewer.email,
            tenant_id=context.tenant_id,
            data_room_id=room.id,
            document_id=document.id,
            watermark_id=watermark_id,
            request=context.request,
            timestamp=now,
        )
        await self._session.commit()
        logger.info(
            "content_url_issued action=%s room_id=%s document_id=%s viewer_id=%s watermark_id=%s",
            action,
            room.id,
            document.id,
            viewer.id,
            watermark_id,
        )
        return ContentGrant(
            url=url,
            watermark_id=watermark_id,
            expires_at=now + timedelta(seconds=settings.content_url_ttl_seconds),
            tracking_code=record.tracking_code,
            watermark=self._watermark_config(room, identity, watermark_id),
        )

    async def _deny(
        self,
        context: TenantContext,
        room: DataRoom,
        viewer: DataRoomViewer | None,
        document_id: str,
        action: str,
        exc: DataRoomError,
    ) -> None:
        reason = exc.reason if isinstance(exc, PermissionDenied) else exc.code
        self.audit.log_access(
            action=action,
            success=False,
            error_reason=reason,
            viewer_id=viewer.id if viewer else context.user_id,
            viewer_email=viewer.email if viewer else context.user_email,
            tenant_id=context.tenant_id,
            data_room_id=room.id,
            document_id=document_id,
            request=context.request,
        )
        await self._session.commit()

    def _watermark_config(
        self, room: DataRoom, identity: WatermarkIdentity, watermark_id: str
    ) -> WatermarkConfig | None:
        if not room.watermark_enabled:
            return None
        return self.engine.watermark_config(
            viewer_email=identity.viewer_email,
            access_timestamp=identity.access_timestamp,
            watermark_id=watermark_id,
            custom_text=room.watermark_text,
        )

    async def _presign_get(self, document: DataRoomDocument, *, as_attachment: bool) -> str:
        settings = get_settings()
        return await retry_async(
            lambda: self._store.presign_get(
                document.file_key,
                expires_in=settings.content_url_ttl_seconds,
                filename=document.name,
                as_attachment=as_attachment,
            ),
            policy=self._retry_policy,
        )

    async def register_document(
        self,
        context: TenantContext,
        *,
        room_id: str,
        file_name: str,
        mime_type: str,
        file_size: int = 0,
        folder_id: str | None = None,
        download_override: bool | None = None,
        viewer_restrictions: list[str] | None = None,
        folder_restrictions: list[str] | None = None,
    ) -> UploadGrant:
        settings = get_settings()
        if not file_name or "/" in file_name or file_name in {".", ".."}:
            raise ValueError("file_name must be a plain file name")
        room = await self.registry.get_open_room(context, room_id, action="upload", event="document.uploaded")
        actor = await self.viewers.require_actor(
            context, room, "can_upload", action="upload", event="document.uploaded"
        )
        now = self._clock()
        document_id = new_id("doc")
        file_key = build_storage_key(
            tenant_id=context.tenant_id,
            company_id=room.company_id,
            room_id=room.id,
            document_id=document_id,
            file_name=file_name,
        )
        try:
            upload_url = await retry_async(
                lambda: self._store.presign_put(
                    file_key,
                    content_type=mime_type,
                    expires_in=settings.upload_url_ttl_seconds,
                    metadata={
                        "document-id": document_id,
                        "tenant-id": context.tenant_id,
                        "data-room-id": room.id,
                        "uploaded-by": context.user_id,
                    },
                ),
                policy=self._retry_policy,
            )
        except StorageUnavailable as exc:
            self.audit.log_access(
                action="upload",
                event="document.uploaded",
                success=False,
                error_reason=exc.code,
                viewer_id=actor.id,
                viewer_email=actor.email,
                tenant_id=context.tenant_id,
                data_room_id=room.id,
                request=context.request,
                timestamp=now,
            )
            await self._session.commit()
            raise

        previous = await documents_repo.get_latest_version(
            self._session, tenant_id=context.tenant_id, room_id=room.id, name=file_name
        )
        live_before = await documents_repo.count_live_versions(
            self._session, tenant_id=context.tenant_id, room_id=room.id, name=file_name
        )
        document = DataRoomDocument(
            id=document_id,
            tenant_id=context.tenant_id,
            data_room_id=room.id,
            name=file_name,
            file_key=file_key,
            mime_type=mime_type,
            file_size=file_size,
            folder_id=folder_id,
            version=previous.version + 1 if previous else 1,
            previous_version_id=previous.id if previous else None,
            download_override=download_override,
            viewer_restrictions=viewer_restrictions,
            folder_restrictions=folder_restrictions,
            view_count=0,
            download_count=0,
            uploaded_by=context.user_id,
            uploaded_at=now,
        )
        self._session.add(document)
        if live_before == 0:
            await rooms_repo.adjust_counters(self._session, room_id=room.id, documents=1)
        self.audit.log_access(
            action="upload",
            event="document.uploaded",
            success=True,
            viewer_id=actor.id,
            viewer_email=actor.email,
            tenant_id=context.tenant_id,
            data_room_id=room.id,
            document_id=document.id,
            request=context.request,
            timestamp=now,
        )
        await self._session.commit()
        logger.info(
            "document_registered room_id=%s document_id=%s version=%s",
            room.id,
            document.id,
            document.version,
        )
        return UploadGrant(
            document=document,
            upload_url=upload_url,
            expires_at=now + timedelta(seconds=settings.upload_url_ttl_seconds),
        )

    async def list_documents(self, context: TenantContext, *, room_id: str) -> list[DataRoomDocument]:
        room = await self.registry.get_room(context, room_id)
        if room.status == ROOM_STATUS_ARCHIVED:
            raise NotFound("Data room not found")
        viewer = await self.viewers.resolve_viewer(context, room)
        if viewer is None:
            raise PermissionDenied("NOT_A_MEMBER")
        documents = latest_versions(
            await documents_repo.list_documents(self._session, tenant_id=context.tenant_id, room_id=room.id)
        )
        now = self._clock()
        permissions = effective_permissions(viewer)
        # Hide documents the viewer is explicitly restricted from.
        return [
            document
            for document in documents
            if evaluate_access(
                room=room,
                permissions=permissions,
                capability="can_view",
                principal_id=viewer.id,
                now=now,
                document=document,
                status=viewer.status,
                check_nda=False,
            )
            is None
        ]

    async def delete_document(self, context: TenantContext, *, room_id: str, document_id: str) -> DataRoomDocument:
        room = await self.registry.get_open_room(context, room_id, action="delete", event="document.deleted")
        document = await documents_repo.get_document(
            self._session, tenant_id=context.tenant_id, room_id=room.id, document_id=document_id
        )
        if document is None or document.deleted_at is not None:
            error = NotFound("Document not found")
            await self.registry.log_denial(
                context, room, action="delete", event="document.deleted", error=error, document_id=document_id
            )
            raise error
        actor = await self.viewers.require_actor(
            context, room, "can_delete", action="delete", event="document.deleted", document=document
        )
        now = self._clock()
        await documents_repo.soft_delete(self._session, document_id=document.id, now=now)
        remaining = await documents_repo.count_live_versions(
            self._session, tenant_id=context.tenant_id, room_id=room.id, name=document.name
        )
        if remaining == 0:
            await rooms_repo.adjust_counters(self._session, room_id=room.id, documents=-1)
        self.audit.log_access(
            action="delete",
            event="document.deleted",
            success=True,
            viewer_id=actor.id,
            viewer_email=actor.email,
            tenant_id=context.tenant_id,
            data_room_id=room.id,
            document_id=document.id,
            request=context.request,
            timestamp=now,
        )
        await self._session.commit()
        await self._session.refresh(document)
        logger.info("document_deleted room_id=%s document_id=%s", room.id, document.id)
        return document

    async def redeem_secure_link(
        self,
        token: str,
        *,
        pin: str | None = None,
        email: str | None = None,
        document_id: str | None = None,
        action: str = "view",
        request: RequestInfo | None = None,
    ) -> ContentGrant:
        """Validate a link and hand out a watermarked content URL.

        Exactly one audit row is written per call. The link use is consumed
        only after every check passed and the URL was obtained.
        """
        if action not in CONTENT_ACTIONS:
            raise InvalidQuery(f"Unsupported content action: {action}")
        request = request or RequestInfo()
        link: SecureLink | None = None
        target = document_id
        try:
            redemption = await self.links.check_link(token, pin=pin, email=email)
            link = redemption.link
            if link.document_id:
                if document_id and document_id != link.document_id:
                    raise PermissionDenied("DOCUMENT_NOT_IN_LINK")
                target = link.document_id
            if not target:
                raise PermissionDenied("DOCUMENT_REQUIRED")
            document = await documents_repo.get_document(
                self._session, tenant_id=link.tenant_id, room_id=link.data_room_id, document_id=target
            )
            if document is None or document.deleted_at is not None:
                raise NotFound("Document not found")
            now = self._clock()
            reason = evaluate_access(
                room=redemption.room,
                permissions=redemption.permissions,
                capability=ACTION_CAPABILITY[action],
                principal_id=link_principal(link.id),
                now=now,
                document=document,
                check_nda=False,
            )
            if reason is not None:
                raise PermissionDenied(reason)
            url = await self._presign_get(document, as_attachment=action == "download")
            await self.links.consume_link(link)
        except LinkValidationError as exc:
            self.links.log_attempt(
                exc.link or link,
                success=False,
                error_reason=exc.code,
                email=email,
                request=request,
                action=action,
                document_id=target,
            )
            await self._session.commit()
            raise
        except (NotFound, PermissionDenied, StorageUnavailable) as exc:
            self.links.log_attempt(
                link,
                success=False,
                error_reason=exc.reason if isinstance(exc, PermissionDenied) else exc.code,
                email=email,
                request=request,
                action=action,
                document_id=target,
            )
            await self._session.commit()
            raise

        settings = get_settings()
        watermark_id = secrets.token_hex(16)
        identity = WatermarkIdentity(viewer_email=redemption.email or ANONYMOUS_EMAIL, access_timestamp=now)
        record = self.ledger.record(
            watermark_id=watermark_id,
            tenant_id=link.tenant_id,
            room_id=link.data_room_id,
            document_id=document.id,
            viewer_id=link_principal(link.id),
            identity=identity,
            request=request,
        )
        if action == "download":
            await documents_repo.record_download(self._session, document_id=document.id)
        else:
            await documents_repo.record_view(self._session, document_id=document.id, now=now)
        self.links.log_attempt(
            link,
            success=True,
            email=email,
            request=request,
            action=action,
            document_id=document.id,
            watermark_id=watermark_id,
        )
        await self._session.commit()
        logger.info(
            "secure_link_redeemed link_id=%s document_id=%s watermark_id=%s",
            link.id,
            document.id,
            watermark_id,
        )
        return ContentGrant(
            url=url,
            watermark_id=watermark_id,
            expires_at=now + timedelta(seconds=settings.content_url_ttl_seconds),
            tracking_code=record.tracking_code,
            watermark=self._watermark_config(redemption.room, identity, watermark_id),
        )

    async def get_watermark_history(
        self, context: TenantContext, *, room_id: str, document_id: str
    ) -> list[WatermarkRecord]:
        room = await self.registry.get_room(context, room_id)
        await self._require_document(context, room, document_id)
        return await self.ledger.history(tenant_id=context.tenant_id, document_id=document_id)

    async def verify_tracking_code(
        self, context: TenantContext, *, room_id: str, document_id: str, tracking_code: str
    ) -> WatermarkRecord | None:
        room = await self.registry.get_room(context, room_id)
        await self._require_document(context, room, document_id)
        return await self.ledger.verify_tracking_code(
            tenant_id=context.tenant_id, document_id=document_id, tracking_code=tracking_code
        )

    async def _require_document(self, context: TenantContext, room: DataRoom, document_id: str) -> DataRoomDocument:
        # Deleted documents still resolve here so leaks can be traced after removal.
        document = await documents_repo.get_document(
            self._session, tenant_id=context.tenant_id, room_id=room.id, document_id=document_id
        )
        if document is None:
            raise NotFound("Document not found")
        return document
