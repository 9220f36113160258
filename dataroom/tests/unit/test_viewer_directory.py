from __future__ import annotations

import pytest

from dataroom.core.errors import DuplicateViewer, PermissionDenied
from dataroom.domain.models import DataRoom, DataRoomDocument, DataRoomViewer
from dataroom.domain.permissions import ViewerPermissions, full_permissions
from dataroom.tests.utils.rooms import access_log_rows, invite, load, make_context, seed_room


@pytest.mark.asyncio
async def test_invite_counts_member_and_rejects_duplicate_live_email(session, store) -> None:
    fixture = await seed_room(session, store)

    viewer = await invite(fixture, "Investor@LP.test")
    assert viewer.email == "investor@lp.test"
    assert viewer.status == "invited"

    with pytest.raises(DuplicateViewer):
        await invite(fixture, "investor@lp.test")

    room = await load(DataRoom, fixture.room.id)
    assert room.members_count == 2
    rows = await access_log_rows(fixture.room.id)
    denied = [row for row in rows if row.event == "viewer.invited" and not row.success]
    assert [row.error_reason for row in denied] == ["DUPLICATE_VIEWER"]


@pytest.mark.asyncio
async def test_revoked_viewer_can_be_invited_again(session, store) -> None:
    fixture = await seed_room(session, store)
    viewer = await invite(fixture, "investor@lp.test")

    revoked = await fixture.gateway.viewers.revoke_viewer(
        fixture.owner, room_id=fixture.room.id, viewer_id=viewer.id
    )
    assert revoked.status == "revoked"
    assert revoked.revoked_at is not None

    again = await invite(fixture, "investor@lp.test")
    assert again.id != viewer.id
    assert again.status == "invited"


@pytest.mark.asyncio
async def test_plain_viewer_cannot_manage_viewers(session, store) -> None:
    fixture = await seed_room(session, store)
    await invite(fixture, "investor@lp.test")
    investor = make_context("investor@lp.test")

    with pytest.raises(PermissionDenied) as excinfo:
        await fixture.gateway.viewers.add_viewer(investor, room_id=fixture.room.id, email="friend@lp.test")

    assert excinfo.value.reason == "MISSING_CAN_MANAGE_VIEWERS"
    rows = await access_log_rows(fixture.room.id)
    assert rows[-1].success is False
    assert rows[-1].error_reason == "MISSING_CAN_MANAGE_VIEWERS"


@pytest.mark.asyncio
async def test_room_download_disabled_denies_download_and_logs_once(session, store) -> None:
    fixture = await seed_room(session, store, download_enabled=False)
    await invite(fixture, "investor@lp.test")
    investor = make_context("investor@lp.test")
    before = len(await access_log_rows(fixture.room.id))

    with pytest.raises(PermissionDenied) as excinfo:
        await fixture.gateway.get_download_url(investor, room_id=fixture.room.id, document_id=fixture.document.id)

    assert excinfo.value.reason == "ROOM_DOWNLOAD_DISABLED"
    rows = (await access_log_rows(fixture.room.id))[before:]
    assert len(rows) == 1
    assert rows[0].action == "download"
    assert rows[0].success is False
    assert rows[0].error_reason == "ROOM_DOWNLOAD_DISABLED"
    assert rows[0].ip_address == "203.0.113.10"

    # Viewing the same document is still allowed.
    grant = await fixture.gateway.get_secure_view_url(
        investor, room_id=fixture.room.id, document_id=fixture.document.id
    )
    assert store.verify_url(grant.url)


@pytest.mark.asyncio
async def test_viewer_restriction_hides_and_blocks_document(session, store) -> None:
    fixture = await seed_room(session, store)
    viewer = await invite(fixture, "investor@lp.test")
    secret = await fixture.gateway.register_document(
        fixture.owner,
        room_id=fixture.room.id,
        file_name="side-letter.pdf",
        mime_type="application/pdf",
        viewer_restrictions=[viewer.id],
    )
    investor = make_context("investor@lp.test")

    visible = await fixture.gateway.list_documents(investor, room_id=fixture.room.id)
    assert [document.name for document in visible] == ["teaser.pdf"]

    with pytest.raises(PermissionDenied) as excinfo:
        await fixture.gateway.get_secure_view_url(
            investor, room_id=fixture.room.id, document_id=secret.document.id
        )
    assert excinfo.value.reason == "DOCUMENT_RESTRICTED"

    owner_view = await fixture.gateway.list_documents(fixture.owner, room_id=fixture.room.id)
    assert sorted(document.name for document in owner_view) == ["side-letter.pdf", "teaser.pdf"]


@pytest.mark.asyncio
async def test_revocation_keeps_issued_urls_but_blocks_new_requests(session, store) -> None:
    fixture = await seed_room(session, store)
    viewer = await invite(fixture, "investor@lp.test")
    investor = make_context("investor@lp.test")

    grant = await fixture.gateway.get_secure_view_url(
        investor, room_id=fixture.room.id, document_id=fixture.document.id
    )
    await fixture.gateway.viewers.revoke_viewer(fixture.owner, room_id=fixture.room.id, viewer_id=viewer.id)

    # Content URLs are capabilities bounded by their own TTL.
    assert store.verify_url(grant.url)
    with pytest.raises(PermissionDenied) as excinfo:
        await fixture.gateway.get_secure_view_url(
            investor, room_id=fixture.room.id, document_id=fixture.document.id
        )
    assert excinfo.value.reason == "VIEWER_REVOKED"


@pytest.mark.asyncio
async def test_successful_view_activates_viewer_and_updates_counters(session, store) -> None:
    fixture = await seed_room(session, store)
    viewer = await invite(fixture, "investor@lp.test")
    investor = make_context("investor@lp.test")

    grant = await fixture.gateway.get_secure_view_url(
        investor, room_id=fixture.room.id, document_id=fixture.document.id
    )
    await fixture.gateway.get_download_url(investor, room_id=fixture.room.id, document_id=fixture.document.id)

    assert len(grant.tracking_code) == 10
    assert grant.watermark is not None
    refreshed = await load(DataRoomViewer, viewer.id)
    assert refreshed.status == "active"
    assert refreshed.access_count == 2
    assert refreshed.download_count == 1
    document = await load(DataRoomDocument, fixture.document.id)
    assert document.view_count == 1
    assert document.download_count == 1
    success = [row for row in await access_log_rows(fixture.room.id) if row.action in {"view", "download"}]
    assert [row.watermark_id is not None for row in success] == [True, True]


@pytest.mark.asyncio
async def test_nda_must_be_signed_before_content_access(session, store) -> None:
    fixture = await seed_room(session, store, nda_required=True)
    await invite(fixture, "investor@lp.test")
    investor = make_context("investor@lp.test")

    with pytest.raises(PermissionDenied) as excinfo:
        await fixture.gateway.get_secure_view_url(
            investor, room_id=fixture.room.id, document_id=fixture.document.id
        )
    assert excinfo.value.reason == "NDA_REQUIRED"

    signed = await fixture.gateway.viewers.record_nda_signature(investor, room_id=fixture.room.id)
    assert signed.nda_signed_at is not None
    grant = await fixture.gateway.get_secure_view_url(
        investor, room_id=fixture.room.id, document_id=fixture.document.id
    )
    assert grant.url


@pytest.mark.asyncio
async def test_outsider_is_not_a_member(session, store) -> None:
    fixture = await seed_room(session, store)
    stranger = make_context("stranger@other.test")

    with pytest.raises(PermissionDenied) as excinfo:
        await fixture.gateway.get_secure_view_url(
            stranger, room_id=fixture.room.id, document_id=fixture.document.id
        )
    assert excinfo.value.reason == "NOT_A_MEMBER"


@pytest.mark.asyncio
async def test_explicit_permissions_are_stored_per_viewer(session, store) -> None:
    fixture = await seed_room(session, store)
    viewer = await invite(
        fixture,
        "analyst@lp.test",
        permissions=ViewerPermissions(can_view=True, folder_restrictions=["folder-legal"]),
    )
    investor = make_context("analyst@lp.test")

    with pytest.raises(PermissionDenied) as excinfo:
        await fixture.gateway.get_download_url(investor, room_id=fixture.room.id, document_id=fixture.document.id)
    assert excinfo.value.reason == "MISSING_CAN_DOWNLOAD"
    assert viewer.permissions_json["folder_restrictions"] == ["folder-legal"]


@pytest.mark.asyncio
async def test_only_owners_grant_or_remove_owner_role(session, store) -> None:
    fixture = await seed_room(session, store)
    await invite(fixture, "admin@fund.test", role="admin", permissions=full_permissions())
    admin = make_context("admin@fund.test")

    with pytest.raises(PermissionDenied) as excinfo:
        await fixture.gateway.viewers.add_viewer(admin, room_id=fixture.room.id, email="boss@fund.test", role="owner")
    assert excinfo.value.reason == "OWNER_INVITE_REQUIRES_OWNER"

    owners = await fixture.gateway.viewers.list_viewers(fixture.owner, room_id=fixture.room.id)
    original = next(viewer for viewer in owners if viewer.role == "owner")
    with pytest.raises(PermissionDenied) as excinfo:
        await fixture.gateway.viewers.revoke_viewer(admin, room_id=fixture.room.id, viewer_id=original.id)
    assert excinfo.value.reason == "OWNER_REVOKE_REQUIRES_OWNER"

    rows = await access_log_rows(fixture.room.id)
    assert [(row.event, row.error_reason) for row in rows[-2:]] == [
        ("viewer.invited", "OWNER_INVITE_REQUIRES_OWNER"),
        ("viewer.revoked", "OWNER_REVOKE_REQUIRES_OWNER"),
    ]
    assert rows[-1].viewer_email == "admin@fund.test"


@pytest.mark.asyncio
async def test_last_owner_cannot_be_revoked(session, store) -> None:
    fixture = await seed_room(session, store)
    owners = await fixture.gateway.viewers.list_viewers(fixture.owner, room_id=fixture.room.id)
    original = owners[0]

    with pytest.raises(PermissionDenied) as excinfo:
        await fixture.gateway.viewers.revoke_viewer(fixture.owner, room_id=fixture.room.id, viewer_id=original.id)
    assert excinfo.value.reason == "LAST_OWNER"

    second = await invite(fixture, "partner@fund.test", role="owner")
    revoked = await fixture.gateway.viewers.revoke_viewer(
        fixture.owner, room_id=fixture.room.id, viewer_id=second.id
    )
    assert revoked.status == "revoked"
    assert (await load(DataRoomViewer, original.id)).status == "active"
