from __future__ import annotations

from datetime import datetime

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dataroom.domain.models import DataRoomViewer
from dataroom.domain.permissions import (
    VIEWER_STATUS_ACTIVE,
    VIEWER_STATUS_INVITED,
    VIEWER_STATUS_REVOKED,
)
from dataroom.persistence.guards import tenant_predicate


async def get_viewer(
    session: AsyncSession, *, tenant_id: str, room_id: str, viewer_id: str
) -> DataRoomViewer | None:
    result = await session.execute(
        select(DataRoomViewer).where(
            tenant_predicate(DataRoomViewer, tenant_id),
            DataRoomViewer.data_room_id == room_id,
            DataRoomViewer.id == viewer_id,
        )
    )
    return result.scalar_one_or_none()


async def get_live_viewer_by_email(
    session: AsyncSession, *, tenant_id: str, room_id: str, email: str
) -> DataRoomViewer | None:
    # Live means any non-revoked record; at most one exists per (room, email).
    result = await session.execute(
        select(DataRoomViewer).where(
            tenant_predicate(DataRoomViewer, tenant_id),
            DataRoomViewer.data_room_id == room_id,
            DataRoomViewer.email == email,
            DataRoomViewer.status != VIEWER_STATUS_REVOKED,
        )
    )
    return result.scalar_one_or_none()


async def get_latest_viewer_by_email(
    session: AsyncSession, *, tenant_id: str, room_id: str, email: str
) -> DataRoomViewer | None:
    # Fall back to revoked history so denials can still name the viewer.
    result = await session.execute(
        select(DataRoomViewer)
        .where(
            tenant_predicate(DataRoomViewer, tenant_id),
            DataRoomViewer.data_room_id == room_id,
            DataRoomViewer.email == email,
        )
        .order_by(DataRoomViewer.invited_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_viewers(
    session: AsyncSession, *, tenant_id: str, room_id: str
) -> list[DataRoomViewer]:
    result = await session.execute(
        select(DataRoomViewer)
        .where(tenant_predicate(DataRoomViewer, tenant_id), DataRoomViewer.data_room_id == room_id)
        .order_by(DataRoomViewer.invited_at, DataRoomViewer.id)
    )
    return list(result.scalars().all())


async def revoke_viewer(
    session: AsyncSession, *, tenant_id: str, room_id: str, viewer_id: str, now: datetime
) -> bool:
    result = await session.execute(
        update(DataRoomViewer)
        .where(
            tenant_predicate(DataRoomViewer, tenant_id),
            DataRoomViewer.data_room_id == room_id,
            DataRoomViewer.id == viewer_id,
            DataRoomViewer.status != VIEWER_STATUS_REVOKED,
        )
        .values(status=VIEWER_STATUS_REVOKED, revoked_at=now)
    )
    return (result.rowcount or 0) > 0


async def record_access(
    session: AsyncSession,
    *,
    viewer_id: str,
    now: datetime,
    ip_address: str | None,
    download: bool = False,
) -> None:
    # First successful access activates an invited viewer.
    await session.execute(
        update(DataRoomViewer)
        .where(DataRoomViewer.id == viewer_id)
        .values(
            status=case(
                (DataRoomViewer.status == VIEWER_STATUS_INVITED, VIEWER_STATUS_ACTIVE),
                else_=DataRoomViewer.status,
            ),
            activated_at=func.coalesce(DataRoomViewer.activated_at, now),
            last_access_at=now,
            last_ip_address=ip_address,
            access_count=DataRoomViewer.access_count + 1,
            download_count=DataRoomViewer.download_count + (1 if download else 0),
        )
    )


async def set_nda_signed(session: AsyncSession, *, viewer_id: str, now: datetime) -> None:
    await session.execute(
        update(DataRoomViewer).where(DataRoomViewer.id == viewer_id).values(nda_signed_at=now)
    )


async def count_live_owners(session: AsyncSession, *, tenant_id: str, room_id: str) -> int:
    result = await session.execute(
        select(func.count(DataRoomViewer.id)).where(
            tenant_predicate(DataRoomViewer, tenant_id),
            DataRoomViewer.data_room_id == room_id,
            DataRoomViewer.role == "owner",
            DataRoomViewer.status != VIEWER_STATUS_REVOKED,
        )
    )
    return int(result.scalar_one())
