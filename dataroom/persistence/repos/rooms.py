from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dataroom.domain.models import DataRoom
from dataroom.domain.permissions import ROOM_STATUS_ACTIVE, ROOM_STATUS_EXPIRED
from dataroom.persistence.guards import tenant_predicate


async def get_room(session: AsyncSession, *, tenant_id: str, room_id: str) -> DataRoom | None:
    # Return None for tenant mismatch to keep 404 semantics.
    result = await session.execute(
        select(DataRoom).where(tenant_predicate(DataRoom, tenant_id), DataRoom.id == room_id)
    )
    return result.scalar_one_or_none()


async def list_rooms_for_company(
    session: AsyncSession, *, tenant_id: str, company_id: str
) -> list[DataRoom]:
    result = await session.execute(
        select(DataRoom)
        .where(tenant_predicate(DataRoom, tenant_id), DataRoom.company_id == company_id)
        .order_by(DataRoom.created_at.desc(), DataRoom.id)
    )
    return list(result.scalars().all())


async def adjust_counters(
    session: AsyncSession,
    *,
    room_id: str,
    members: int = 0,
    documents: int = 0,
) -> None:
    # Increment in SQL so concurrent invitations never lose updates.
    await session.execute(
        update(DataRoom)
        .where(DataRoom.id == room_id)
        .values(
            members_count=DataRoom.members_count + members,
            documents_count=DataRoom.documents_count + documents,
        )
    )


async def set_status(
    session: AsyncSession,
    *,
    tenant_id: str,
    room_id: str,
    status: str,
    archived_at: datetime | None = None,
) -> None:
    values: dict[str, object] = {"status": status}
    if archived_at is not None:
        values["archived_at"] = archived_at
    await session.execute(
        update(DataRoom)
        .where(tenant_predicate(DataRoom, tenant_id), DataRoom.id == room_id)
        .values(**values)
    )


async def expire_rooms(session: AsyncSession, *, now: datetime) -> list[str]:
    # Sweep active rooms past their expiry into EXPIRED; archived rooms stay archived.
    result = await session.execute(
        select(DataRoom.id).where(
            DataRoom.status == ROOM_STATUS_ACTIVE,
            DataRoom.expires_at.is_not(None),
            DataRoom.expires_at < now,
        )
    )
    room_ids = [row[0] for row in result.all()]
    if room_ids:
        await session.execute(
            update(DataRoom)
            .where(DataRoom.id.in_(room_ids), DataRoom.status == ROOM_STATUS_ACTIVE)
            .values(status=ROOM_STATUS_EXPIRED)
        )
    return room_ids
