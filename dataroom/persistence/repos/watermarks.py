from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dataroom.domain.models import WatermarkRecord
from dataroom.persistence.guards import tenant_predicate


def add_record(session: AsyncSession, record: WatermarkRecord) -> WatermarkRecord:
    session.add(record)
    return record


async def list_for_document(
    session: AsyncSession, *, tenant_id: str, document_id: str
) -> list[WatermarkRecord]:
    result = await session.execute(
        select(WatermarkRecord)
        .where(tenant_predicate(WatermarkRecord, tenant_id), WatermarkRecord.document_id == document_id)
        .order_by(WatermarkRecord.access_timestamp.desc(), WatermarkRecord.id)
    )
    return list(result.scalars().all())


async def find_by_tracking_code(
    session: AsyncSession, *, tenant_id: str, document_id: str, tracking_code: str
) -> list[WatermarkRecord]:
    result = await session.execute(
        select(WatermarkRecord).where(
            tenant_predicate(WatermarkRecord, tenant_id),
            WatermarkRecord.document_id == document_id,
            WatermarkRecord.tracking_code == tracking_code,
        )
    )
    return list(result.scalars().all())
