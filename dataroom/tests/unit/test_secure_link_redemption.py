from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from dataroom.core.errors import (
    EmailNotAuthorized,
    EmailRequired,
    InvalidLink,
    InvalidPin,
    LinkExhausted,
    LinkExpired,
    LinkRevoked,
    PermissionDenied,
    PinRequired,
)
from dataroom.domain.clock import utc_now
from dataroom.domain.models import SecureLink
from dataroom.persistence.db import SessionLocal
from dataroom.services.access_guard import RequestInfo
from dataroom.services.gateway import DataRoomGateway
from dataroom.services.secure_links import hash_token
from dataroom.tests.utils.rooms import access_log_rows, build_gateway, invite, load, make_context, seed_room


def _redemptions(rows):
    return [row for row in rows if row.event == "link.redeemed"]


@pytest.mark.asyncio
async def test_created_link_stores_only_token_hash(session, store) -> None:
    fixture = await seed_room(session, store)

    issued = await fixture.gateway.links.create_secure_link(
        fixture.owner, room_id=fixture.room.id, document_id=fixture.document.id, pin="4821"
    )

    assert issued.url == f"https://rooms.test/share/{issued.token}"
    assert len(issued.token) == 64
    stored = await load(SecureLink, issued.link.id)
    assert stored.token_hash == hash_token(issued.token)
    assert stored.pin_hash and "4821" not in stored.pin_hash
    assert stored.require_pin is True
    assert stored.permissions_json["can_view"] is True


@pytest.mark.asyncio
async def test_parallel_redemptions_of_single_use_link_admit_exactly_one(store) -> None:
    async with SessionLocal() as setup_session:
        fixture = await seed_room(setup_session, store)
        issued = await fixture.gateway.links.create_secure_link(
            fixture.owner, room_id=fixture.room.id, document_id=fixture.document.id, max_uses=1
        )

    async def attempt() -> str:
        async with SessionLocal() as task_session:
            gateway = build_gateway(task_session, store)
            try:
                await gateway.redeem_secure_link(issued.token)
            except LinkExhausted:
                return "exhausted"
            return "ok"

    results = await asyncio.gather(*(attempt() for _ in range(5)))

    assert results.count("ok") == 1
    assert results.count("exhausted") == 4
    link = await load(SecureLink, issued.link.id)
    assert link.current_uses == 1
    rows = _redemptions(await access_log_rows(fixture.room.id))
    assert len(rows) == 5
    assert sum(1 for row in rows if row.success) == 1
    assert {row.error_reason for row in rows if not row.success} == {"LINK_EXHAUSTED"}


@pytest.mark.asyncio
async def test_link_is_exhausted_after_max_uses(session, store) -> None:
    fixture = await seed_room(session, store)
    issued = await fixture.gateway.links.create_secure_link(
        fixture.owner, room_id=fixture.room.id, document_id=fixture.document.id, max_uses=2
    )

    await fixture.gateway.redeem_secure_link(issued.token)
    await fixture.gateway.redeem_secure_link(issued.token)
    with pytest.raises(LinkExhausted):
        await fixture.gateway.redeem_secure_link(issued.token)

    link = await load(SecureLink, issued.link.id)
    assert link.current_uses == 2
    rows = _redemptions(await access_log_rows(fixture.room.id))
    assert [row.success for row in rows] == [True, True, False]
    assert rows[-1].error_reason == "LINK_EXHAUSTED"


@pytest.mark.asyncio
async def test_corrupted_token_is_invalid_and_logged_anonymously(session, store) -> None:
    fixture = await seed_room(session, store)
    issued = await fixture.gateway.links.create_secure_link(
        fixture.owner, room_id=fixture.room.id, document_id=fixture.document.id
    )
    corrupted = issued.token[:-1] + ("0" if issued.token[-1] != "0" else "1")

    with pytest.raises(InvalidLink):
        await fixture.gateway.redeem_secure_link(corrupted, request=RequestInfo(ip_address="198.51.100.7"))

    rows = _redemptions(await access_log_rows())
    assert len(rows) == 1
    assert rows[0].error_reason == "INVALID_LINK"
    assert rows[0].link_id is None
    assert rows[0].data_room_id is None
    assert rows[0].viewer_id == "link:unknown"
    assert rows[0].ip_address == "198.51.100.7"
    link = await load(SecureLink, issued.link.id)
    assert link.current_uses == 0


@pytest.mark.asyncio
async def test_email_restricted_link_end_to_end(session, store) -> None:
    fixture = await seed_room(session, store)
    issued = await fixture.gateway.links.create_secure_link(
        fixture.owner,
        room_id=fixture.room.id,
        document_id=fixture.document.id,
        require_email=True,
        allowed_emails=["LP@Investor.test"],
    )

    with pytest.raises(EmailRequired):
        await fixture.gateway.redeem_secure_link(issued.token)
    with pytest.raises(EmailNotAuthorized):
        await fixture.gateway.redeem_secure_link(issued.token, email="other@investor.test")
    grant = await fixture.gateway.redeem_secure_link(issued.token, email="Lp@investor.TEST")

    assert store.verify_url(grant.url)
    history = await fixture.gateway.get_watermark_history(
        fixture.owner, room_id=fixture.room.id, document_id=fixture.document.id
    )
    assert [record.viewer_email for record in history] == ["lp@investor.test"]
    assert history[0].tracking_code == grant.tracking_code

    stats = await fixture.gateway.audit.get_link_stats(
        fixture.owner, data_room_id=fixture.room.id, link_id=issued.link.id
    )
    assert (stats.total_attempts, stats.successful, stats.failed) == (3, 1, 2)
    assert stats.unique_emails == 2
    assert sum(stats.attempts_by_date.values()) == 3


@pytest.mark.asyncio
async def test_pin_protected_link(session, store) -> None:
    fixture = await seed_room(session, store)
    issued = await fixture.gateway.links.create_secure_link(
        fixture.owner, room_id=fixture.room.id, document_id=fixture.document.id, require_pin=True, pin="4821"
    )

    with pytest.raises(PinRequired):
        await fixture.gateway.redeem_secure_link(issued.token)
    with pytest.raises(InvalidPin):
        await fixture.gateway.redeem_secure_link(issued.token, pin="0000")
    await fixture.gateway.redeem_secure_link(issued.token, pin="4821")

    link = await load(SecureLink, issued.link.id)
    assert link.current_uses == 1


@pytest.mark.asyncio
async def test_require_pin_without_pin_is_rejected(session, store) -> None:
    fixture = await seed_room(session, store)

    with pytest.raises(ValueError):
        await fixture.gateway.links.create_secure_link(fixture.owner, room_id=fixture.room.id, require_pin=True)


@pytest.mark.asyncio
async def test_revoked_and_expired_links_are_refused(session, store) -> None:
    fixture = await seed_room(session, store)
    revoked = await fixture.gateway.links.create_secure_link(
        fixture.owner, room_id=fixture.room.id, document_id=fixture.document.id
    )
    expiring = await fixture.gateway.links.create_secure_link(
        fixture.owner, room_id=fixture.room.id, document_id=fixture.document.id, expires_in_hours=1
    )
    await fixture.gateway.links.revoke_secure_link(fixture.owner, room_id=fixture.room.id, link_id=revoked.link.id)

    with pytest.raises(LinkRevoked):
        await fixture.gateway.redeem_secure_link(revoked.token)

    async with SessionLocal() as later_session:
        later = DataRoomGateway(later_session, store=store, clock=lambda: utc_now() + timedelta(hours=2))
        with pytest.raises(LinkExpired):
            await later.redeem_secure_link(expiring.token)


@pytest.mark.asyncio
async def test_room_wide_link_needs_document_and_document_link_is_pinned(session, store) -> None:
    fixture = await seed_room(session, store)
    other = await fixture.gateway.register_document(
        fixture.owner, room_id=fixture.room.id, file_name="model.xlsx", mime_type="application/vnd.ms-excel"
    )
    room_link = await fixture.gateway.links.create_secure_link(fixture.owner, room_id=fixture.room.id)
    pinned = await fixture.gateway.links.create_secure_link(
        fixture.owner, room_id=fixture.room.id, document_id=fixture.document.id
    )

    with pytest.raises(PermissionDenied) as excinfo:
        await fixture.gateway.redeem_secure_link(room_link.token)
    assert excinfo.value.reason == "DOCUMENT_REQUIRED"
    grant = await fixture.gateway.redeem_secure_link(room_link.token, document_id=other.document.id)
    assert grant.url

    with pytest.raises(PermissionDenied) as excinfo:
        await fixture.gateway.redeem_secure_link(pinned.token, document_id=other.document.id)
    assert excinfo.value.reason == "DOCUMENT_NOT_IN_LINK"


@pytest.mark.asyncio
async def test_link_download_is_capped_by_room_setting(session, store) -> None:
    fixture = await seed_room(session, store, download_enabled=False)
    issued = await fixture.gateway.links.create_secure_link(
        fixture.owner, room_id=fixture.room.id, document_id=fixture.document.id, can_download=True
    )

    with pytest.raises(PermissionDenied) as excinfo:
        await fixture.gateway.redeem_secure_link(issued.token, action="download")
    assert excinfo.value.reason == "ROOM_DOWNLOAD_DISABLED"

    link = await load(SecureLink, issued.link.id)
    assert link.current_uses == 0


@pytest.mark.asyncio
async def test_viewer_without_share_capability_cannot_create_links(session, store) -> None:
    fixture = await seed_room(session, store)
    await invite(fixture, "investor@lp.test")

    with pytest.raises(PermissionDenied) as excinfo:
        await fixture.gateway.links.create_secure_link(make_context("investor@lp.test"), room_id=fixture.room.id)
    assert excinfo.value.reason == "MISSING_CAN_SHARE"


@pytest.mark.asyncio
async def test_validate_secure_link_consumes_one_use(session, store) -> None:
    fixture = await seed_room(session, store)
    issued = await fixture.gateway.links.create_secure_link(fixture.owner, room_id=fixture.room.id, max_uses=1)

    redemption = await fixture.gateway.links.validate_secure_link(issued.token, email="Guest@Example.com")

    assert redemption.email == "guest@example.com"
    assert redemption.room.id == fixture.room.id
    with pytest.raises(LinkExhausted):
        await fixture.gateway.links.validate_secure_link(issued.token)
    rows = _redemptions(await access_log_rows(fixture.room.id))
    assert [row.success for row in rows] == [True, False]


@pytest.mark.asyncio
async def test_link_is_redeemable_at_its_exact_expiry_instant(session, store) -> None:
    fixture = await seed_room(session, store)
    issued = await fixture.gateway.links.create_secure_link(
        fixture.owner, room_id=fixture.room.id, document_id=fixture.document.id, expires_in_hours=1
    )
    expires_at = issued.link.expires_at

    async with SessionLocal() as boundary_session:
        at_expiry = DataRoomGateway(boundary_session, store=store, clock=lambda: expires_at)
        grant = await at_expiry.redeem_secure_link(issued.token)
        assert store.verify_url(grant.url)

    async with SessionLocal() as later_session:
        after_expiry = DataRoomGateway(
            later_session, store=store, clock=lambda: expires_at + timedelta(microseconds=1)
        )
        with pytest.raises(LinkExpired):
            await after_expiry.redeem_secure_link(issued.token)

    link = await load(SecureLink, issued.link.id)
    assert link.current_uses == 1
