from __future__ import annotations

from datetime import datetime

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from dataroom.domain.models import DocumentAccessLog


def add_entry(session: AsyncSession, entry: DocumentAccessLog) -> DocumentAccessLog:
    # Insert only; access log rows are never updated or deleted.
    session.add(entry)
    return entry


async def list_entries(
    session: AsyncSession,
    *,
    room_id: str,
    document_id: str | None = None,
    viewer_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    after: tuple[datetime, int] | None = None,
    limit: int = 100,
) -> list[DocumentAccessLog]:
    # Callers must have passed the tenant check on room_id before reaching here.
    stmt = select(DocumentAccessLog).where(DocumentAccessLog.data_room_id == room_id)
    if document_id:
        stmt = stmt.where(DocumentAccessLog.document_id == document_id)
    if viewer_id:
        stmt = stmt.where(DocumentAccessLog.viewer_id == viewer_id)
    if start:
        stmt = stmt.where(DocumentAccessLog.timestamp >= start)
    if end:
        stmt = stmt.where(DocumentAccessLog.timestamp <= end)
    if after is not None:
        # Keyset continuation in (timestamp desc, id desc) order.
        after_ts, after_id = after
        stmt = stmt.where(
            or_(
                DocumentAccessLog.timestamp < after_ts,
                and_(DocumentAccessLog.timestamp == after_ts, DocumentAccessLog.id < after_id),
            )
        )
    stmt = stmt.order_by(DocumentAccessLog.timestamp.desc(), DocumentAccessLog.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_link_entries(
    session: AsyncSession, *, room_id: str, link_id: str, event: str
) -> list[DocumentAccessLog]:
    result = await session.execute(
        select(DocumentAccessLog)
        .where(
            DocumentAccessLog.data_room_id == room_id,
            DocumentAccessLog.link_id == link_id,
            DocumentAccessLog.event == event,
        )
        .order_by(DocumentAccessLog.timestamp.desc(), DocumentAccessLog.id.desc())
    )
    return list(result.scalars().all())
