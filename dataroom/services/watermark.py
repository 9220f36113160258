from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import hmac
import logging
from typing import Iterable
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession

from dataroom.core.config import get_settings
from dataroom.domain.clock import ensure_utc
from dataroom.domain.models import WatermarkRecord
from dataroom.persistence.repos import watermarks as watermarks_repo
from dataroom.providers.rendering.base import RenderedPage
from dataroom.services.access_guard import RequestInfo


logger = logging.getLogger(__name__)

PATTERNS = ("diagonal", "center", "footer", "grid")
GREY = (0.5, 0.5, 0.5)
FOOTER_GREY = (0.4, 0.4, 0.4)
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class WatermarkIdentity:
    viewer_email: str
    access_timestamp: datetime
    viewer_name: str | None = None
    company_name: str | None = None


@dataclass(frozen=True)
class WatermarkOptions:
    pattern: str = "diagonal"
    opacity: float = 0.15
    font_size: float = 10.0
    # Overrides the pattern's own angle for diagonal and center; grid and footer stay flat.
    rotation: float | None = None

    def __post_init__(self) -> None:
        if self.pattern not in PATTERNS:
            raise ValueError(f"Unsupported watermark pattern: {self.pattern}")
        if not 0 < self.opacity <= 1:
            raise ValueError("opacity must be within (0, 1]")
        if self.font_size <= 0:
            raise ValueError("font_size must be positive")


@dataclass(frozen=True)
class TextPlacement:
    text: str
    x: float
    y: float
    size: float
    opacity: float
    rotation: float
    color: tuple[float, float, float]


@dataclass(frozen=True)
class WatermarkConfig:
    """Overlay settings handed to a document renderer."""

    text: str
    opacity: float
    font_size: float
    rotation: float
    color: str
    repetitions: int


class WatermarkEngine:
    """Derives watermark text and tracking codes and lays them out on pages.

    Nothing here reads the wall clock: the access timestamp always comes in
    through ``WatermarkIdentity`` so identical inputs give identical output.
    """

    def __init__(
        self,
        *,
        secret: str | None = None,
        timezone_name: str | None = None,
        code_length: int | None = None,
    ) -> None:
        settings = get_settings()
        self._secret = (secret or settings.watermark_secret).encode("utf-8")
        self._zone = ZoneInfo(timezone_name or settings.watermark_timezone)
        self._code_length = code_length or settings.tracking_code_length

    def format_timestamp(self, value: datetime) -> str:
        return ensure_utc(value).astimezone(self._zone).strftime("%Y-%m-%d %H:%M:%S")

    def generate_watermark_text(self, identity: WatermarkIdentity) -> str:
        parts = [identity.viewer_name or identity.viewer_email]
        if identity.company_name:
            parts.append(identity.company_name)
        parts.extend([identity.viewer_email, self.format_timestamp(identity.access_timestamp)])
        return " | ".join(parts)

    def generate_tracking_code(self, identity: WatermarkIdentity, document_id: str) -> str:
        epoch_ms = (ensure_utc(identity.access_timestamp) - _EPOCH) // timedelta(milliseconds=1)
        message = f"{identity.viewer_email.strip().lower()}|{document_id}|{epoch_ms}"
        digest = hmac.new(self._secret, message.encode("utf-8"), hashlib.sha256).digest()
        return base64.b32encode(digest).decode("ascii")[: self._code_length]

    def plan_page(
        self,
        width: float,
        height: float,
        *,
        text: str,
        tracking_code: str,
        options: WatermarkOptions,
    ) -> list[TextPlacement]:
        size = options.font_size
        opacity = options.opacity
        placements: list[TextPlacement] = []

        if options.pattern == "diagonal":
            # Start off-page and run past it so rotated rows leave no gaps at the edges.
            rotation = -45.0 if options.rotation is None else options.rotation
            y = -height
            while y < height * 2:
                x = -width
                while x < width * 2:
                    placements.append(TextPlacement(text, x, y, size, opacity, rotation, GREY))
                    x += 400
                y += 150
        elif options.pattern == "center":
            rotation = -30.0 if options.rotation is None else options.rotation
            placements.append(
                TextPlacement(
                    f"CONFIDENTIAL\n{text}",
                    width / 2 - 200,
                    height / 2,
                    size * 2,
                    min(opacity * 1.5, 1.0),
                    rotation,
                    GREY,
                )
            )
        elif options.pattern == "grid":
            y = 50.0
            while y < height - 50:
                x = 50.0
                while x < width - 50:
                    placements.append(TextPlacement(text, x, y, size * 0.8, opacity * 0.8, 0.0, GREY))
                    x += 250
                y += 200
        else:
            footer_opacity = min(opacity * 2, 1.0)
            placements.append(TextPlacement(text, 30.0, 20.0, size * 0.9, footer_opacity, 0.0, FOOTER_GREY))
            placements.append(
                TextPlacement(
                    f"REF: {tracking_code}", width - 100, 20.0, size * 0.8, footer_opacity, 0.0, FOOTER_GREY
                )
            )
        return placements

    def apply_watermark(
        self,
        pages: Iterable[RenderedPage],
        *,
        identity: WatermarkIdentity,
        document_id: str,
        options: WatermarkOptions | None = None,
    ) -> str:
        options = options or WatermarkOptions()
        text = self.generate_watermark_text(identity)
        tracking_code = self.generate_tracking_code(identity, document_id)
        count = 0
        for page in pages:
            for placement in self.plan_page(
                page.width, page.height, text=text, tracking_code=tracking_code, options=options
            ):
                page.draw_text(
                    placement.text,
                    x=placement.x,
                    y=placement.y,
                    size=placement.size,
                    opacity=placement.opacity,
                    rotation=placement.rotation,
                    color=placement.color,
                )
            count += 1
        logger.debug(
            "watermark_applied document_id=%s pattern=%s pages=%s", document_id, options.pattern, count
        )
        return tracking_code

    def watermark_config(
        self,
        *,
        viewer_email: str,
        access_timestamp: datetime,
        watermark_id: str,
        custom_text: str | None = None,
    ) -> WatermarkConfig:
        text = custom_text or (
            f"{viewer_email} | {self.format_timestamp(access_timestamp)} | ID: {watermark_id[:8]}"
        )
        return WatermarkConfig(
            text=text,
            opacity=0.15,
            font_size=14,
            rotation=-30,
            color="#000000",
            repetitions=5,
        )


def normalize_tracking_code(code: str) -> str:
    cleaned = code.strip().upper()
    if cleaned.startswith("REF:"):
        cleaned = cleaned[4:].strip()
    return cleaned


class WatermarkLedger:
    """Durable, tenant-scoped history of issued watermarks."""

    def __init__(self, session: AsyncSession, *, engine: WatermarkEngine) -> None:
        self._session = session
        self._engine = engine

    def record(
        self,
        *,
        watermark_id: str,
        tenant_id: str,
        room_id: str,
        document_id: str,
        viewer_id: str,
        identity: WatermarkIdentity,
        request: RequestInfo | None = None,
    ) -> WatermarkRecord:
        # Added to the caller's transaction so it commits with the access log entry.
        request = request or RequestInfo()
        record = WatermarkRecord(
            id=watermark_id,
            tenant_id=tenant_id,
            data_room_id=room_id,
            document_id=document_id,
            viewer_id=viewer_id,
            viewer_email=identity.viewer_email,
            viewer_name=identity.viewer_name,
            company_name=identity.company_name,
            access_timestamp=identity.access_timestamp,
            tracking_code=self._engine.generate_tracking_code(identity, document_id),
            watermark_text=self._engine.generate_watermark_text(identity),
            ip_address=request.ip_address,
            user_agent=request.user_agent,
        )
        return watermarks_repo.add_record(self._session, record)

    async def history(self, *, tenant_id: str, document_id: str) -> list[WatermarkRecord]:
        return await watermarks_repo.list_for_document(
            self._session, tenant_id=tenant_id, document_id=document_id
        )

    async def verify_tracking_code(
        self, *, tenant_id: str, document_id: str, tracking_code: str
    ) -> WatermarkRecord | None:
        code = normalize_tracking_code(tracking_code)
        if not code:
            return None
        candidates = await watermarks_repo.find_by_tracking_code(
            self._session, tenant_id=tenant_id, document_id=document_id, tracking_code=code
        )
        for record in candidates:
            # Re-derive instead of trusting the stored column.
            identity = WatermarkIdentity(
                viewer_email=record.viewer_email,
                access_timestamp=ensure_utc(record.access_timestamp),
                viewer_name=record.viewer_name,
                company_name=record.company_name,
            )
            expected = self._engine.generate_tracking_code(identity, record.document_id)
            if hmac.compare_digest(expected, code):
                logger.info(
                    "tracking_code_verified document_id=%s watermark_id=%s", document_id, record.id
                )
                return record
        logger.info("tracking_code_unmatched document_id=%s", document_id)
        return None
