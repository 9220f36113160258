from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from dataroom.core.config import get_settings
from dataroom.core.errors import InvalidQuery, NotFound
from dataroom.domain.clock import ensure_utc, utc_now
from dataroom.domain.models import DataRoom, DocumentAccessLog
from dataroom.domain.permissions import ACCESS_ACTIONS
from dataroom.persistence.repos import access_logs as access_logs_repo
from dataroom.services.access_guard import RequestInfo, TenantContext
from dataroom.services.cursors import (
    CursorError,
    build_position,
    decode_cursor,
    encode_cursor,
    parse_position,
)


logger = logging.getLogger(__name__)

ANONYMOUS_EMAIL = "anonymous"
LINK_REDEEMED_EVENT = "link.redeemed"
UNKNOWN_CLIENT = "unknown"


@dataclass(frozen=True)
class AccessLogPage:
    items: list[DocumentAccessLog]
    next_cursor: str | None


@dataclass(frozen=True)
class LinkStats:
    total_attempts: int
    successful: int
    failed: int
    unique_emails: int
    last_attempt_at: datetime | None
    attempts_by_date: dict[str, int]


class AccessAuditLog:
    """Append-only record of every access and action inside a data room.

    Entries are written into the caller's session so they commit together with
    the change they describe. Queries are room-scoped and always resolve the
    room through the tenant check first, since log rows carry no company.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        room_resolver: Callable[[TenantContext, str], Awaitable[DataRoom]],
        cursor_secret: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session = session
        self._room_resolver = room_resolver
        self._cursor_secret = cursor_secret or get_settings().cursor_secret
        self._clock = clock

    def log_access(
        self,
        *,
        action: str,
        success: bool,
        viewer_id: str,
        viewer_email: str | None,
        tenant_id: str | None,
        data_room_id: str | None,
        document_id: str | None = None,
        request: RequestInfo | None = None,
        error_reason: str | None = None,
        watermark_id: str | None = None,
        link_id: str | None = None,
        event: str | None = None,
        timestamp: datetime | None = None,
    ) -> DocumentAccessLog:
        if action not in ACCESS_ACTIONS:
            raise ValueError(f"Unsupported access action: {action}")
        request = request or RequestInfo()
        entry = DocumentAccessLog(
            tenant_id=tenant_id,
            data_room_id=data_room_id,
            document_id=document_id,
            viewer_id=viewer_id,
            viewer_email=viewer_email or ANONYMOUS_EMAIL,
            action=action,
            event=event,
            ip_address=request.ip_address or UNKNOWN_CLIENT,
            user_agent=request.user_agent or UNKNOWN_CLIENT,
            success=success,
            error_reason=error_reason,
            watermark_id=watermark_id,
            link_id=link_id,
            request_id=request.request_id,
            timestamp=timestamp or self._clock(),
        )
        access_logs_repo.add_entry(self._session, entry)
        log = logger.info if success else logger.warning
        log(
            "access_logged action=%s event=%s room_id=%s document_id=%s viewer_id=%s success=%s reason=%s",
            action,
            event,
            data_room_id,
            document_id,
            viewer_id,
            success,
            error_reason,
        )
        return entry

    async def get_access_logs(
        self,
        context: TenantContext,
        *,
        data_room_id: str,
        document_id: str | None = None,
        viewer_id: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> AccessLogPage:
        settings = get_settings()
        room = await self._room_resolver(context, data_room_id)
        if room is None:
            raise NotFound("Data room not found")
        if document_id and viewer_id:
            # Each filter selects its own index; combining them is not a supported lookup.
            raise InvalidQuery("Filter by document_id or viewer_id, not both")
        start = ensure_utc(start_date)
        end = ensure_utc(end_date)
        if start and end and start > end:
            raise InvalidQuery("start_date must not be after end_date")
        resolved_limit = limit or settings.access_log_default_limit
        resolved_limit = max(1, min(resolved_limit, settings.access_log_max_limit))

        scope = self._scope(data_room_id, document_id, viewer_id, start, end)
        after = None
        if cursor:
            try:
                after = parse_position(decode_cursor(cursor, self._cursor_secret), expected_scope=scope)
            except CursorError as exc:
                raise InvalidQuery(str(exc)) from exc

        rows = await access_logs_repo.list_entries(
            self._session,
            room_id=data_room_id,
            document_id=document_id,
            viewer_id=viewer_id,
            start=start,
            end=end,
            after=after,
            limit=resolved_limit + 1,
        )
        next_cursor = None
        if len(rows) > resolved_limit:
            rows = rows[:resolved_limit]
            last = rows[-1]
            next_cursor = encode_cursor(
                build_position(scope=scope, timestamp=last.timestamp, row_id=last.id),
                self._cursor_secret,
            )
        return AccessLogPage(items=rows, next_cursor=next_cursor)

    async def get_link_stats(self, context: TenantContext, *, data_room_id: str, link_id: str) -> LinkStats:
        room = await self._room_resolver(context, data_room_id)
        if room is None:
            raise NotFound("Data room not found")
        rows = await access_logs_repo.list_link_entries(
            self._session, room_id=data_room_id, link_id=link_id, event=LINK_REDEEMED_EVENT
        )
        by_date: dict[str, int] = {}
        emails: set[str] = set()
        successful = 0
        for row in rows:
            day = ensure_utc(row.timestamp).date().isoformat()
            by_date[day] = by_date.get(day, 0) + 1
            if row.viewer_email and row.viewer_email != ANONYMOUS_EMAIL:
                emails.add(row.viewer_email.lower())
            if row.success:
                successful += 1
        return LinkStats(
            total_attempts=len(rows),
            successful=successful,
            failed=len(rows) - successful,
            unique_emails=len(emails),
            last_attempt_at=ensure_utc(rows[0].timestamp) if rows else None,
            attempts_by_date=by_date,
        )

    @staticmethod
    def _scope(
        data_room_id: str,
        document_id: str | None,
        viewer_id: str | None,
        start: datetime | None,
        end: datetime | None,
    ) -> str:
        parts: list[Any] = [
            data_room_id,
            document_id or "",
            viewer_id or "",
            start.isoformat() if start else "",
            end.isoformat() if end else "",
        ]
        return "|".join(str(part) for part in parts)
