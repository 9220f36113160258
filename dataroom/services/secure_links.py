from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import hashlib
import hmac
import logging
import secrets
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from dataroom.core.config import get_settings
from dataroom.core.errors import (
    EmailNotAuthorized,
    EmailRequired,
    InvalidLink,
    InvalidPin,
    LinkExhausted,
    LinkExpired,
    LinkRevoked,
    LinkValidationError,
    NotFound,
    PinRequired,
)
from dataroom.domain.clock import ensure_utc, utc_now
from dataroom.domain.models import DataRoom, SecureLink
from dataroom.domain.permissions import ROOM_STATUS_ARCHIVED, ROOM_STATUS_EXPIRED, ViewerPermissions, normalize_email
from dataroom.persistence.repos import documents as documents_repo
from dataroom.persistence.repos import links as links_repo
from dataroom.persistence.repos import rooms as rooms_repo
from dataroom.services.access_guard import RequestInfo, TenantContext
from dataroom.services.access_log import LINK_REDEEMED_EVENT
from dataroom.services.rooms import DataRoomRegistry, new_id
from dataroom.services.viewers import ViewerDirectory


logger = logging.getLogger(__name__)


def hash_token(token: str) -> str:
    # Only this digest is stored; lookups hash the presented token the same way.
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def hash_pin(link_id: str, pin: str, *, secret: str | None = None) -> str:
    # Key by link id so equal PINs on different links never share a hash.
    key = (secret or get_settings().link_pin_secret).encode("utf-8")
    return hmac.new(key, f"{link_id}:{pin}".encode("utf-8"), hashlib.sha256).hexdigest()


def link_principal(link_id: str | None) -> str:
    return f"link:{link_id or 'unknown'}"


@dataclass(frozen=True)
class IssuedLink:
    link: SecureLink
    # The raw token and URL are only available here, at creation time.
    token: str
    url: str


@dataclass(frozen=True)
class LinkRedemption:
    link: SecureLink
    room: DataRoom
    permissions: ViewerPermissions
    email: str | None


class SecureLinkService:
    def __init__(
        self,
        session: AsyncSession,
        *,
        registry: DataRoomRegistry,
        viewers: ViewerDirectory,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session = session
        self._registry = registry
        self._viewers = viewers
        self._clock = clock
        self.audit = registry.audit

    async def create_secure_link(
        self,
        context: TenantContext,
        *,
        room_id: str,
        document_id: str | None = None,
        expires_in_hours: float | None = None,
        max_uses: int | None = None,
        require_email: bool = False,
        allowed_emails: list[str] | None = None,
        require_pin: bool = False,
        pin: str | None = None,
        label: str | None = None,
        can_download: bool | None = None,
        can_print: bool | None = None,
    ) -> IssuedLink:
        settings = get_settings()
        room = await self._registry.get_open_room(context, room_id, action="share", event="link.created")
        actor = await self._viewers.require_actor(
            context, room, "can_share", action="share", event="link.created"
        )
        if document_id is not None:
            document = await documents_repo.get_document(
                self._session, tenant_id=context.tenant_id, room_id=room.id, document_id=document_id
            )
            if document is None or document.deleted_at is not None:
                error = NotFound("Document not found")
                await self._registry.log_denial(
                    context,
                    room,
                    action="share",
                    event="link.created",
                    error=error,
                    viewer_id=actor.id,
                    viewer_email=actor.email,
                    document_id=document_id,
                )
                raise error
        hours = settings.secure_link_default_expiry_hours if expires_in_hours is None else expires_in_hours
        if hours <= 0:
            raise ValueError("expires_in_hours must be positive")
        if max_uses is not None and max_uses < 1:
            raise ValueError("max_uses must be at least 1")
        if require_pin and not pin:
            raise ValueError("A PIN is required when require_pin is set")

        now = self._clock()
        link_id = new_id("link")
        token = secrets.token_hex(32)
        # Links only ever grant read-side capabilities; the room settings cap them again on redemption.
        permissions = ViewerPermissions(
            can_view=True,
            can_download=room.download_enabled if can_download is None else can_download,
            can_print=room.print_enabled if can_print is None else can_print,
        )
        link = SecureLink(
            id=link_id,
            tenant_id=context.tenant_id,
            data_room_id=room.id,
            document_id=document_id,
            token_hash=hash_token(token),
            label=label,
            expires_at=now + timedelta(hours=hours),
            max_uses=max_uses,
            current_uses=0,
            require_email=require_email,
            allowed_emails=[normalize_email(email) for email in allowed_emails or []] or None,
            require_pin=require_pin or bool(pin),
            pin_hash=hash_pin(link_id, pin) if pin else None,
            permissions_json=permissions.to_json(),
            created_by=context.user_id,
            created_at=now,
        )
        self._session.add(link)
        self.audit.log_access(
            action="share",
            event="link.created",
            success=True,
            viewer_id=actor.id,
            viewer_email=actor.email,
            tenant_id=context.tenant_id,
            data_room_id=room.id,
            document_id=document_id,
            link_id=link_id,
            request=context.request,
            timestamp=now,
        )
        await self._session.commit()
        logger.info(
            "secure_link_created room_id=%s link_id=%s document_id=%s max_uses=%s",
            room.id,
            link_id,
            document_id,
            max_uses,
        )
        url = f"{settings.public_base_url.rstrip('/')}/share/{token}"
        return IssuedLink(link=link, token=token, url=url)

    async def list_secure_links(self, context: TenantContext, *, room_id: str) -> list[SecureLink]:
        room = await self._registry.get_room(context, room_id)
        return await links_repo.list_links(self._session, tenant_id=context.tenant_id, room_id=room.id)

    async def revoke_secure_link(self, context: TenantContext, *, room_id: str, link_id: str) -> SecureLink:
        room = await self._registry.get_open_room(
            context, room_id, action="share", event="link.revoked", allow_expired=True
        )
        actor = await self._viewers.require_actor(
            context, room, "can_share", action="share", event="link.revoked"
        )
        link = await links_repo.get_link(
            self._session, tenant_id=context.tenant_id, room_id=room.id, link_id=link_id
        )
        if link is None:
            error = NotFound("Secure link not found")
            # No link_id on the row: the id matched nothing in this room.
            await self._registry.log_denial(
                context,
                room,
                action="share",
                event="link.revoked",
                error=error,
                viewer_id=actor.id,
                viewer_email=actor.email,
            )
            raise error
        now = self._clock()
        await links_repo.revoke_link(
            self._session,
            tenant_id=context.tenant_id,
            room_id=room.id,
            link_id=link.id,
            revoked_by=context.user_id,
            now=now,
        )
        self.audit.log_access(
            action="share",
            event="link.revoked",
            success=True,
            viewer_id=actor.id,
            viewer_email=actor.email,
            tenant_id=context.tenant_id,
            data_room_id=room.id,
            link_id=link.id,
            request=context.request,
            timestamp=now,
        )
        await self._session.commit()
        await self._session.refresh(link)
        logger.info("secure_link_revoked room_id=%s link_id=%s", room.id, link.id)
        return link

    async def validate_secure_link(
        self,
        token: str,
        *,
        pin: str | None = None,
        email: str | None = None,
        request: RequestInfo | None = None,
    ) -> LinkRedemption:
        """Validate a presented token and consume one use.

        Every attempt writes exactly one audit row carrying the granular
        failure code; callers facing anonymous users should collapse the
        raised error into a generic denial.
        """
        try:
            redemption = await self.check_link(token, pin=pin, email=email)
            await self.consume_link(redemption.link)
        except LinkValidationError as exc:
            self.log_attempt(exc.link, success=False, error_reason=exc.code, email=email, request=request)
            await self._session.commit()
            raise
        self.log_attempt(redemption.link, success=True, email=email, request=request)
        await self._session.commit()
        return redemption

    async def check_link(
        self,
        token: str,
        *,
        pin: str | None = None,
        email: str | None = None,
    ) -> LinkRedemption:
        # Run every check without consuming a use.
        link = await links_repo.get_by_token_hash(self._session, token_hash=hash_token(token or ""))
        if link is None:
            raise InvalidLink()
        now = self._clock()
        if link.revoked_at is not None:
            raise LinkRevoked(link=link)
        if ensure_utc(link.expires_at) < now:
            raise LinkExpired(link=link)
        if link.max_uses is not None and link.current_uses >= link.max_uses:
            raise LinkExhausted(link=link)

        if link.require_pin:
            if not pin:
                raise PinRequired(link=link)
            if not link.pin_hash or not hmac.compare_digest(hash_pin(link.id, pin), link.pin_hash):
                raise InvalidPin(link=link)

        normalized_email = normalize_email(email) if email else None
        if link.require_email:
            if not normalized_email:
                raise EmailRequired(link=link)
            if link.allowed_emails and normalized_email not in link.allowed_emails:
                raise EmailNotAuthorized(link=link)

        room = await rooms_repo.get_room(self._session, tenant_id=link.tenant_id, room_id=link.data_room_id)
        if room is None or room.status == ROOM_STATUS_ARCHIVED:
            raise InvalidLink(link=link)
        room_expires_at = ensure_utc(room.expires_at)
        if room.status == ROOM_STATUS_EXPIRED or (room_expires_at is not None and room_expires_at < now):
            raise LinkExpired(link=link)
        return LinkRedemption(
            link=link,
            room=room,
            permissions=ViewerPermissions.from_json(link.permissions_json),
            email=normalized_email,
        )

    async def consume_link(self, link: SecureLink) -> None:
        now = self._clock()
        if await links_repo.consume_use(self._session, link_id=link.id, now=now):
            await self._session.refresh(link)
            return
        # Lost the conditional write; report whichever limit now applies.
        await self._session.refresh(link)
        if link.revoked_at is not None:
            raise LinkRevoked(link=link)
        if ensure_utc(link.expires_at) < now:
            raise LinkExpired(link=link)
        raise LinkExhausted(link=link)

    def log_attempt(
        self,
        link: SecureLink | None,
        *,
        success: bool,
        email: str | None,
        request: RequestInfo | None,
        error_reason: str | None = None,
        action: str = "view",
        document_id: str | None = None,
        watermark_id: str | None = None,
    ) -> None:
        self.audit.log_access(
            action=action,
            event=LINK_REDEEMED_EVENT,
            success=success,
            error_reason=error_reason,
            viewer_id=link_principal(link.id if link else None),
            viewer_email=normalize_email(email) if email else None,
            tenant_id=link.tenant_id if link else None,
            data_room_id=link.data_room_id if link else None,
            document_id=document_id or (link.document_id if link else None),
            link_id=link.id if link else None,
            watermark_id=watermark_id,
            request=request,
        )
