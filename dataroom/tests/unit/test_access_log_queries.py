from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from dataroom.core.errors import InvalidQuery, NotFound, Unauthorized
from dataroom.services.access_guard import RequestInfo
from dataroom.tests.utils.rooms import make_context, seed_room


BASE = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
WINDOW_END = datetime(2024, 12, 31, tzinfo=timezone.utc)


async def _seed_entries(fixture, session) -> None:
    # Two viewers on two documents, one entry per hour; the last two share a timestamp.
    audit = fixture.gateway.audit
    plan = [
        ("viewer-a", "doc-1", BASE),
        ("viewer-b", "doc-1", BASE + timedelta(hours=1)),
        ("viewer-a", "doc-2", BASE + timedelta(hours=2)),
        ("viewer-b", "doc-2", BASE + timedelta(hours=3)),
        ("viewer-a", "doc-1", BASE + timedelta(hours=4)),
        ("viewer-a", "doc-2", BASE + timedelta(hours=4)),
    ]
    for viewer_id, document_id, timestamp in plan:
        audit.log_access(
            action="view",
            success=True,
            viewer_id=viewer_id,
            viewer_email=f"{viewer_id}@lp.test",
            tenant_id=fixture.owner.tenant_id,
            data_room_id=fixture.room.id,
            document_id=document_id,
            request=RequestInfo(ip_address="192.0.2.1", user_agent="pytest"),
            timestamp=timestamp,
        )
    await session.commit()


@pytest.mark.asyncio
async def test_entries_are_newest_first_and_filterable(session, store) -> None:
    fixture = await seed_room(session, store)
    await _seed_entries(fixture, session)
    audit = fixture.gateway.audit

    page = await audit.get_access_logs(fixture.owner, data_room_id=fixture.room.id, end_date=WINDOW_END)
    stamps = [entry.timestamp.replace(tzinfo=None) for entry in page.items]
    assert stamps == sorted(stamps, reverse=True)
    assert len(page.items) == 6
    assert page.next_cursor is None

    by_viewer = await audit.get_access_logs(
        fixture.owner, data_room_id=fixture.room.id, viewer_id="viewer-b", end_date=WINDOW_END
    )
    assert {entry.viewer_id for entry in by_viewer.items} == {"viewer-b"}
    assert len(by_viewer.items) == 2

    by_document = await audit.get_access_logs(
        fixture.owner, data_room_id=fixture.room.id, document_id="doc-2", end_date=WINDOW_END
    )
    assert len(by_document.items) == 3

    windowed = await audit.get_access_logs(
        fixture.owner,
        data_room_id=fixture.room.id,
        start_date=BASE + timedelta(hours=1),
        end_date=BASE + timedelta(hours=3),
    )
    assert len(windowed.items) == 3


@pytest.mark.asyncio
async def test_cursor_pages_without_gaps_or_duplicates(session, store) -> None:
    fixture = await seed_room(session, store)
    await _seed_entries(fixture, session)
    audit = fixture.gateway.audit

    seen: list[int] = []
    cursor = None
    pages = 0
    while True:
        page = await audit.get_access_logs(
            fixture.owner, data_room_id=fixture.room.id, end_date=WINDOW_END, limit=4, cursor=cursor
        )
        seen.extend(entry.id for entry in page.items)
        pages += 1
        cursor = page.next_cursor
        if cursor is None:
            break

    assert pages == 2
    assert len(seen) == 6
    assert len(set(seen)) == 6


@pytest.mark.asyncio
async def test_cursor_is_bound_to_its_filters(session, store) -> None:
    fixture = await seed_room(session, store)
    await _seed_entries(fixture, session)
    audit = fixture.gateway.audit

    page = await audit.get_access_logs(fixture.owner, data_room_id=fixture.room.id, end_date=WINDOW_END, limit=2)
    assert page.next_cursor

    with pytest.raises(InvalidQuery):
        await audit.get_access_logs(
            fixture.owner,
            data_room_id=fixture.room.id,
            viewer_id="viewer-a",
            end_date=WINDOW_END,
            cursor=page.next_cursor,
        )
    with pytest.raises(InvalidQuery):
        await audit.get_access_logs(
            fixture.owner, data_room_id=fixture.room.id, end_date=WINDOW_END, cursor=page.next_cursor + "x"
        )


@pytest.mark.asyncio
async def test_invalid_range_and_foreign_company_are_rejected(session, store) -> None:
    fixture = await seed_room(session, store)
    audit = fixture.gateway.audit

    with pytest.raises(InvalidQuery):
        await audit.get_access_logs(
            fixture.owner, data_room_id=fixture.room.id, start_date=WINDOW_END, end_date=BASE
        )

    outsider = make_context("owner@fund.test", company_ids=("co-2",))
    with pytest.raises(Unauthorized):
        await audit.get_access_logs(outsider, data_room_id=fixture.room.id)

    other_tenant = make_context("owner@fund.test", tenant_id="t2")
    with pytest.raises(NotFound):
        await audit.get_access_logs(other_tenant, data_room_id=fixture.room.id)


@pytest.mark.asyncio
async def test_unknown_action_is_rejected(session, store) -> None:
    fixture = await seed_room(session, store)

    with pytest.raises(ValueError):
        fixture.gateway.audit.log_access(
            action="exfiltrate",
            success=True,
            viewer_id="viewer-a",
            viewer_email=None,
            tenant_id=fixture.owner.tenant_id,
            data_room_id=fixture.room.id,
        )


@pytest.mark.asyncio
async def test_document_and_viewer_filters_are_mutually_exclusive(session, store) -> None:
    fixture = await seed_room(session, store)
    await _seed_entries(fixture, session)

    with pytest.raises(InvalidQuery):
        await fixture.gateway.audit.get_access_logs(
            fixture.owner,
            data_room_id=fixture.room.id,
            document_id="doc-1",
            viewer_id="viewer-a",
            end_date=WINDOW_END,
        )
