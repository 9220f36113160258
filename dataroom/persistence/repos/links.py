from __future__ import annotations

from datetime import datetime

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dataroom.domain.models import SecureLink
from dataroom.persistence.guards import tenant_predicate


async def get_by_token_hash(session: AsyncSession, *, token_hash: str) -> SecureLink | None:
    # Anonymous redemption has no tenant yet; the hash is the only lookup key.
    result = await session.execute(select(SecureLink).where(SecureLink.token_hash == token_hash))
    return result.scalar_one_or_none()


async def get_link(
    session: AsyncSession, *, tenant_id: str, room_id: str, link_id: str
) -> SecureLink | None:
    result = await session.execute(
        select(SecureLink).where(
            tenant_predicate(SecureLink, tenant_id),
            SecureLink.data_room_id == room_id,
            SecureLink.id == link_id,
        )
    )
    return result.scalar_one_or_none()


async def list_links(session: AsyncSession, *, tenant_id: str, room_id: str) -> list[SecureLink]:
    result = await session.execute(
        select(SecureLink)
        .where(tenant_predicate(SecureLink, tenant_id), SecureLink.data_room_id == room_id)
        .order_by(SecureLink.created_at.desc(), SecureLink.id)
    )
    return list(result.scalars().all())


async def consume_use(session: AsyncSession, *, link_id: str, now: datetime) -> bool:
    # Single conditional write: the limit is re-checked at write time, so two
    # concurrent redemptions of a max_uses=1 link cannot both succeed.
    result = await session.execute(
        update(SecureLink)
        .where(
            SecureLink.id == link_id,
            SecureLink.revoked_at.is_(None),
            SecureLink.expires_at >= now,
            or_(SecureLink.max_uses.is_(None), SecureLink.current_uses < SecureLink.max_uses),
        )
        .values(current_uses=SecureLink.current_uses + 1)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def revoke_link(
    session: AsyncSession,
    *,
    tenant_id: str,
    room_id: str,
    link_id: str,
    revoked_by: str,
    now: datetime,
) -> bool:
    result = await session.execute(
        update(SecureLink)
        .where(
            tenant_predicate(SecureLink, tenant_id),
            SecureLink.data_room_id == room_id,
            SecureLink.id == link_id,
            SecureLink.revoked_at.is_(None),
        )
        .values(revoked_at=now, revoked_by=revoked_by)
    )
    return (result.rowcount or 0) > 0
