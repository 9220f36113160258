from __future__ import annotations

from datetime import timedelta

import pytest

from dataroom.core.errors import NotFound, PermissionDenied, StorageUnavailable, Unauthorized
from dataroom.domain.clock import utc_now
from dataroom.domain.models import DataRoom
from dataroom.persistence.db import SessionLocal
from dataroom.providers.storage.fake import FakeObjectStore
from dataroom.services.rooms import DataRoomRegistry, expire_rooms
from dataroom.tests.utils.rooms import (
    COMPANY_ID,
    access_log_rows,
    build_gateway,
    invite,
    load,
    make_context,
    seed_room,
)


@pytest.mark.asyncio
async def test_create_room_makes_caller_owner(session, store) -> None:
    fixture = await seed_room(session, store)

    room = await load(DataRoom, fixture.room.id)
    assert room.status == "ACTIVE"
    assert room.type == "DEAL_ROOM"
    assert room.members_count == 1
    assert room.documents_count == 1
    viewers = await fixture.gateway.viewers.list_viewers(fixture.owner, room_id=room.id)
    assert [(viewer.email, viewer.role, viewer.status) for viewer in viewers] == [
        ("owner@fund.test", "owner", "active")
    ]
    rooms = await fixture.gateway.registry.list_rooms_for_company(fixture.owner, COMPANY_ID)
    assert [listed.id for listed in rooms] == [room.id]


@pytest.mark.asyncio
async def test_create_room_validates_caller_and_input(session, store) -> None:
    gateway = build_gateway(session, store)

    with pytest.raises(Unauthorized):
        await gateway.registry.create_room(make_context("owner@fund.test"), company_id="co-9", name="Other")
    with pytest.raises(PermissionDenied) as excinfo:
        await gateway.registry.create_room(make_context(None), company_id=COMPANY_ID, name="No owner")
    assert excinfo.value.reason == "OWNER_EMAIL_REQUIRED"
    with pytest.raises(ValueError):
        await gateway.registry.create_room(make_context("owner@fund.test"), company_id=COMPANY_ID, name="X", type="PARTY")


@pytest.mark.asyncio
async def test_rooms_are_invisible_across_tenants_and_companies(session, store) -> None:
    fixture = await seed_room(session, store)

    with pytest.raises(NotFound):
        await fixture.gateway.registry.get_room(make_context("owner@fund.test", tenant_id="t2"), fixture.room.id)
    with pytest.raises(Unauthorized):
        await fixture.gateway.registry.get_room(
            make_context("owner@fund.test", company_ids=("co-2",)), fixture.room.id
        )


@pytest.mark.asyncio
async def test_only_owner_or_admin_can_archive(session, store) -> None:
    fixture = await seed_room(session, store)
    await invite(fixture, "investor@lp.test")

    with pytest.raises(PermissionDenied) as excinfo:
        await fixture.gateway.registry.archive_room(make_context("investor@lp.test"), fixture.room.id)
    assert excinfo.value.reason == "ARCHIVE_REQUIRES_ADMIN"

    archived = await fixture.gateway.registry.archive_room(fixture.owner, fixture.room.id)
    assert archived.status == "ARCHIVED"
    assert archived.archived_at is not None
    with pytest.raises(NotFound):
        await fixture.gateway.get_secure_view_url(
            fixture.owner, room_id=fixture.room.id, document_id=fixture.document.id
        )
    with pytest.raises(NotFound):
        await invite(fixture, "late@lp.test")
    archive_rows = [row for row in await access_log_rows(fixture.room.id) if row.event == "room.archived"]
    assert [row.success for row in archive_rows] == [False, True]


@pytest.mark.asyncio
async def test_expired_rooms_are_swept_and_refuse_content(session, store) -> None:
    gateway = build_gateway(session, store)
    owner = make_context("owner@fund.test")
    room = await gateway.registry.create_room(
        owner, company_id=COMPANY_ID, name="Closed round", expires_at=utc_now() + timedelta(hours=1)
    )
    grant = await gateway.register_document(owner, room_id=room.id, file_name="deck.pdf", mime_type="application/pdf")

    async with SessionLocal() as sweep_session:
        expired = await expire_rooms(sweep_session, now=utc_now() + timedelta(hours=2))
    assert expired == [room.id]
    assert (await load(DataRoom, room.id)).status == "EXPIRED"

    async with SessionLocal() as later_session:
        later = build_gateway(later_session, store)
        with pytest.raises(PermissionDenied) as excinfo:
            await later.get_secure_view_url(owner, room_id=room.id, document_id=grant.document.id)
        assert excinfo.value.reason == "ROOM_EXPIRED"


@pytest.mark.asyncio
async def test_document_versions_share_one_logical_count(session, store) -> None:
    fixture = await seed_room(session, store)
    owner, room_id = fixture.owner, fixture.room.id

    second = await fixture.gateway.register_document(
        owner, room_id=room_id, file_name="teaser.pdf", mime_type="application/pdf"
    )
    assert second.document.version == 2
    assert second.document.previous_version_id == fixture.document.id
    assert second.document.file_key == (
        f"tenants/t1/companies/{COMPANY_ID}/rooms/{room_id}/{second.document.id}/teaser.pdf"
    )
    assert (await load(DataRoom, room_id)).documents_count == 1

    listed = await fixture.gateway.list_documents(owner, room_id=room_id)
    assert [(document.name, document.version) for document in listed] == [("teaser.pdf", 2)]

    await fixture.gateway.delete_document(owner, room_id=room_id, document_id=second.document.id)
    assert (await load(DataRoom, room_id)).documents_count == 1
    listed = await fixture.gateway.list_documents(owner, room_id=room_id)
    assert [(document.name, document.version) for document in listed] == [("teaser.pdf", 1)]

    await fixture.gateway.delete_document(owner, room_id=room_id, document_id=fixture.document.id)
    assert (await load(DataRoom, room_id)).documents_count == 0
    with pytest.raises(NotFound):
        await fixture.gateway.get_secure_view_url(owner, room_id=room_id, document_id=fixture.document.id)


@pytest.mark.asyncio
async def test_register_document_rejects_path_like_names(session, store) -> None:
    fixture = await seed_room(session, store)

    with pytest.raises(ValueError):
        await fixture.gateway.register_document(
            fixture.owner, room_id=fixture.room.id, file_name="../escape.pdf", mime_type="application/pdf"
        )


@pytest.mark.asyncio
async def test_tracking_code_traces_back_to_viewer_even_after_delete(session, store) -> None:
    fixture = await seed_room(session, store)
    await invite(fixture, "investor@lp.test")
    investor = make_context("investor@lp.test")
    grant = await fixture.gateway.get_secure_view_url(
        investor, room_id=fixture.room.id, document_id=fixture.document.id
    )
    await fixture.gateway.delete_document(fixture.owner, room_id=fixture.room.id, document_id=fixture.document.id)

    record = await fixture.gateway.verify_tracking_code(
        fixture.owner,
        room_id=fixture.room.id,
        document_id=fixture.document.id,
        tracking_code=f"ref: {grant.tracking_code.lower()}",
    )
    assert record is not None
    assert record.id == grant.watermark_id
    assert record.viewer_email == "investor@lp.test"

    missing = await fixture.gateway.verify_tracking_code(
        fixture.owner, room_id=fixture.room.id, document_id=fixture.document.id, tracking_code="AAAAAAAAAA"
    )
    assert missing is None


@pytest.mark.asyncio
async def test_transient_storage_failures_are_retried(session, fast_retry) -> None:
    flaky = FakeObjectStore(base_url="https://storage.test", secret="test-store-secret")
    fixture = await seed_room(session, flaky, retry_policy=fast_retry)
    await invite(fixture, "investor@lp.test")
    flaky.fail_times = 2

    grant = await fixture.gateway.get_secure_view_url(
        make_context("investor@lp.test"), room_id=fixture.room.id, document_id=fixture.document.id
    )

    assert flaky.verify_url(grant.url)
    assert flaky.fail_times == 0


@pytest.mark.asyncio
async def test_persistent_storage_outage_is_logged_without_watermark(session, fast_retry) -> None:
    broken = FakeObjectStore(base_url="https://storage.test", secret="test-store-secret")
    fixture = await seed_room(session, broken, retry_policy=fast_retry)
    await invite(fixture, "investor@lp.test")
    broken.fail_times = 10

    with pytest.raises(StorageUnavailable):
        await fixture.gateway.get_secure_view_url(
            make_context("investor@lp.test"), room_id=fixture.room.id, document_id=fixture.document.id
        )

    assert broken.fail_times == 7
    rows = [row for row in await access_log_rows(fixture.room.id) if row.action == "view"]
    assert [(row.success, row.error_reason) for row in rows] == [(False, "STORAGE_UNAVAILABLE")]
    history = await fixture.gateway.get_watermark_history(
        fixture.owner, room_id=fixture.room.id, document_id=fixture.document.id
    )
    assert history == []


async def _denials(room_id: str, before: int) -> list[tuple[str | None, str | None]]:
    rows = (await access_log_rows(room_id))[before:]
    assert all(row.success is False for row in rows)
    return [(row.event, row.error_reason) for row in rows]


@pytest.mark.asyncio
async def test_mutations_in_expired_room_are_refused_and_logged_once_each(session, store) -> None:
    gateway = build_gateway(session, store)
    owner = make_context("owner@fund.test")
    room = await gateway.registry.create_room(
        owner, company_id=COMPANY_ID, name="Closed round", expires_at=utc_now() + timedelta(hours=1)
    )
    grant = await gateway.register_document(owner, room_id=room.id, file_name="deck.pdf", mime_type="application/pdf")
    async with SessionLocal() as sweep_session:
        await expire_rooms(sweep_session, now=utc_now() + timedelta(hours=2))

    async with SessionLocal() as later_session:
        later = build_gateway(later_session, store)
        before = len(await access_log_rows(room.id))
        attempts = [
            lambda: later.viewers.add_viewer(owner, room_id=room.id, email="late@lp.test"),
            lambda: later.viewers.record_nda_signature(owner, room_id=room.id),
            lambda: later.links.create_secure_link(owner, room_id=room.id, document_id=grant.document.id),
            lambda: later.register_document(owner, room_id=room.id, file_name="memo.pdf", mime_type="application/pdf"),
            lambda: later.delete_document(owner, room_id=room.id, document_id=grant.document.id),
        ]
        for attempt in attempts:
            with pytest.raises(PermissionDenied) as excinfo:
                await attempt()
            assert excinfo.value.reason == "ROOM_EXPIRED"

    assert await _denials(room.id, before) == [
        ("viewer.invited", "ROOM_EXPIRED"),
        ("nda.signed", "ROOM_EXPIRED"),
        ("link.created", "ROOM_EXPIRED"),
        ("document.uploaded", "ROOM_EXPIRED"),
        ("document.deleted", "ROOM_EXPIRED"),
    ]


@pytest.mark.asyncio
async def test_mutations_in_archived_room_are_refused_and_logged_once_each(session, store) -> None:
    fixture = await seed_room(session, store)
    viewer = await invite(fixture, "investor@lp.test")
    issued = await fixture.gateway.links.create_secure_link(
        fixture.owner, room_id=fixture.room.id, document_id=fixture.document.id
    )
    await fixture.gateway.registry.archive_room(fixture.owner, fixture.room.id)
    owner, room_id = fixture.owner, fixture.room.id
    before = len(await access_log_rows(room_id))

    attempts = [
        lambda: fixture.gateway.viewers.add_viewer(owner, room_id=room_id, email="late@lp.test"),
        lambda: fixture.gateway.viewers.revoke_viewer(owner, room_id=room_id, viewer_id=viewer.id),
        lambda: fixture.gateway.links.create_secure_link(owner, room_id=room_id),
        lambda: fixture.gateway.links.revoke_secure_link(owner, room_id=room_id, link_id=issued.link.id),
        lambda: fixture.gateway.delete_document(owner, room_id=room_id, document_id=fixture.document.id),
    ]
    for attempt in attempts:
        with pytest.raises(NotFound):
            await attempt()

    assert await _denials(room_id, before) == [
        ("viewer.invited", "NOT_FOUND"),
        ("viewer.revoked", "NOT_FOUND"),
        ("link.created", "NOT_FOUND"),
        ("link.revoked", "NOT_FOUND"),
        ("document.deleted", "NOT_FOUND"),
    ]


@pytest.mark.asyncio
async def test_missing_targets_of_delete_and_revoke_are_logged(session, store) -> None:
    fixture = await seed_room(session, store)
    owner, room_id = fixture.owner, fixture.room.id
    before = len(await access_log_rows(room_id))

    with pytest.raises(NotFound):
        await fixture.gateway.delete_document(owner, room_id=room_id, document_id="doc-missing")
    with pytest.raises(NotFound):
        await fixture.gateway.viewers.revoke_viewer(owner, room_id=room_id, viewer_id="viewer-missing")
    with pytest.raises(NotFound):
        await fixture.gateway.links.revoke_secure_link(owner, room_id=room_id, link_id="link-missing")
    with pytest.raises(NotFound):
        await fixture.gateway.links.create_secure_link(owner, room_id=room_id, document_id="doc-missing")

    rows = (await access_log_rows(room_id))[before:]
    assert [(row.event, row.error_reason, row.success) for row in rows] == [
        ("document.deleted", "NOT_FOUND", False),
        ("viewer.revoked", "NOT_FOUND", False),
        ("link.revoked", "NOT_FOUND", False),
        ("link.created", "NOT_FOUND", False),
    ]
    assert rows[0].document_id == "doc-missing"
    assert {row.viewer_email for row in rows} == {"owner@fund.test"}
    assert (await load(DataRoom, room_id)).documents_count == 1


@pytest.mark.asyncio
async def test_room_expiry_is_exclusive_of_its_instant(session) -> None:
    expires_at = utc_now()
    room = DataRoom(id="room-1", status="ACTIVE", expires_at=expires_at)

    assert DataRoomRegistry(session, clock=lambda: expires_at).is_expired(room) is False
    later = DataRoomRegistry(session, clock=lambda: expires_at + timedelta(microseconds=1))
    assert later.is_expired(room) is True
