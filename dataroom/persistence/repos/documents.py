from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dataroom.domain.models import DataRoomDocument
from dataroom.persistence.guards import tenant_predicate


async def get_document(
    session: AsyncSession, *, tenant_id: str, room_id: str, document_id: str
) -> DataRoomDocument | None:
    # Scope by room as well as tenant so document ids never cross rooms.
    result = await session.execute(
        select(DataRoomDocument).where(
            tenant_predicate(DataRoomDocument, tenant_id),
            DataRoomDocument.data_room_id == room_id,
            DataRoomDocument.id == document_id,
        )
    )
    return result.scalar_one_or_none()


async def get_latest_version(
    session: AsyncSession, *, tenant_id: str, room_id: str, name: str
) -> DataRoomDocument | None:
    result = await session.execute(
        select(DataRoomDocument)
        .where(
            tenant_predicate(DataRoomDocument, tenant_id),
            DataRoomDocument.data_room_id == room_id,
            DataRoomDocument.name == name,
        )
        .order_by(DataRoomDocument.version.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_documents(
    session: AsyncSession, *, tenant_id: str, room_id: str
) -> list[DataRoomDocument]:
    # Return every live version; callers collapse to the latest per name.
    result = await session.execute(
        select(DataRoomDocument)
        .where(
            tenant_predicate(DataRoomDocument, tenant_id),
            DataRoomDocument.data_room_id == room_id,
            DataRoomDocument.deleted_at.is_(None),
        )
        .order_by(DataRoomDocument.name, DataRoomDocument.version.desc())
    )
    return list(result.scalars().all())


async def record_view(session: AsyncSession, *, document_id: str, now: datetime) -> None:
    await session.execute(
        update(DataRoomDocument)
        .where(DataRoomDocument.id == document_id)
        .values(view_count=DataRoomDocument.view_count + 1, last_viewed_at=now)
    )


async def record_download(session: AsyncSession, *, document_id: str) -> None:
    await session.execute(
        update(DataRoomDocument)
        .where(DataRoomDocument.id == document_id)
        .values(download_count=DataRoomDocument.download_count + 1)
    )


async def soft_delete(session: AsyncSession, *, document_id: str, now: datetime) -> None:
    # Keep the row so historical access logs still resolve the document.
    await session.execute(
        update(DataRoomDocument)
        .where(DataRoomDocument.id == document_id, DataRoomDocument.deleted_at.is_(None))
        .values(deleted_at=now)
    )


async def count_live_versions(session: AsyncSession, *, tenant_id: str, room_id: str, name: str) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(DataRoomDocument)
        .where(
            tenant_predicate(DataRoomDocument, tenant_id),
            DataRoomDocument.data_room_id == room_id,
            DataRoomDocument.name == name,
            DataRoomDocument.deleted_at.is_(None),
        )
    )
    return int(result.scalar_one())
