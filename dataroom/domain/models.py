from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres while keeping SQLite usable for local runs and tests.
JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
AutoIncrementId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class DataRoom(Base):
    __tablename__ = "data_rooms"
    __table_args__ = (
        Index("ix_data_rooms_tenant_company", "tenant_id", "company_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Tenant and company are fixed at creation; every lookup is scoped by both.
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    company_id: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    type: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="ACTIVE", nullable=False)
    watermark_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Optional custom overlay text; default overlays use viewer identity.
    watermark_text: Mapped[str | None] = mapped_column(String, nullable=True)
    download_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    print_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    copy_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    screenshot_protection: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    nda_required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    fund_id: Mapped[str | None] = mapped_column(String, nullable=True)
    fund_name: Mapped[str | None] = mapped_column(String, nullable=True)
    documents_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    members_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_by: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class DataRoomDocument(Base):
    __tablename__ = "data_room_documents"
    __table_args__ = (
        Index("ix_data_room_documents_room_name", "data_room_id", "name"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    data_room_id: Mapped[str] = mapped_column(String, ForeignKey("data_rooms.id"), index=True)
    # Logical file name; uploads under the same name become new versions.
    name: Mapped[str] = mapped_column(String)
    file_key: Mapped[str] = mapped_column(String)
    mime_type: Mapped[str] = mapped_column(String)
    file_size: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    folder_id: Mapped[str | None] = mapped_column(String, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    previous_version_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # None inherits the room setting; False blocks downloads for this document only.
    download_override: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    viewer_restrictions: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    folder_restrictions: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    view_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    download_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    uploaded_by: Mapped[str] = mapped_column(String)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    last_viewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class DataRoomViewer(Base):
    __tablename__ = "data_room_viewers"
    __table_args__ = (
        # At most one live (non-revoked) viewer per room and email.
        Index(
            "uq_data_room_viewers_live_email",
            "data_room_id",
            "email",
            unique=True,
            postgresql_where=text("status <> 'revoked'"),
            sqlite_where=text("status <> 'revoked'"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    data_room_id: Mapped[str] = mapped_column(String, ForeignKey("data_rooms.id"), index=True)
    # Stored lowercased for case-insensitive identity matching.
    email: Mapped[str] = mapped_column(String)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    company: Mapped[str | None] = mapped_column(String, nullable=True)
    role: Mapped[str] = mapped_column(String)
    permissions_json: Mapped[dict[str, Any]] = mapped_column(JsonType)
    status: Mapped[str] = mapped_column(String, default="invited", nullable=False)
    invited_by: Mapped[str] = mapped_column(String)
    invited_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_access_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    nda_signed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    access_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    download_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_ip_address: Mapped[str | None] = mapped_column(String, nullable=True)


class SecureLink(Base):
    __tablename__ = "secure_links"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    data_room_id: Mapped[str] = mapped_column(String, ForeignKey("data_rooms.id"), index=True)
    # Null grants room-wide access; otherwise the link is pinned to one document.
    document_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Store only the SHA-256 of the raw token; the token itself is never persisted.
    token_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    label: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_uses: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    require_email: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    allowed_emails: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    require_pin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    pin_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    permissions_json: Mapped[dict[str, Any]] = mapped_column(JsonType)
    created_by: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_by: Mapped[str | None] = mapped_column(String, nullable=True)


class DocumentAccessLog(Base):
    __tablename__ = "document_access_logs"
    __table_args__ = (
        Index("ix_document_access_logs_room_ts", "data_room_id", "timestamp"),
        Index("ix_document_access_logs_document_ts", "document_id", "timestamp"),
        Index("ix_document_access_logs_viewer_ts", "viewer_id", "timestamp"),
        Index("ix_document_access_logs_link_ts", "link_id", "timestamp"),
    )

    # Append-only: rows are inserted once and never updated or deleted.
    id: Mapped[int] = mapped_column(AutoIncrementId, primary_key=True, autoincrement=True)
    # Null only for link redemptions whose token matched no link.
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    data_room_id: Mapped[str | None] = mapped_column(String, nullable=True)
    document_id: Mapped[str | None] = mapped_column(String, nullable=True)
    viewer_id: Mapped[str] = mapped_column(String)
    viewer_email: Mapped[str] = mapped_column(String)
    action: Mapped[str] = mapped_column(String)
    # Finer-grained event name, e.g. viewer.revoked or link.redeemed.
    event: Mapped[str | None] = mapped_column(String, nullable=True)
    ip_address: Mapped[str] = mapped_column(String)
    user_agent: Mapped[str] = mapped_column(String)
    success: Mapped[bool] = mapped_column(Boolean)
    error_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    watermark_id: Mapped[str | None] = mapped_column(String, nullable=True)
    link_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class WatermarkRecord(Base):
    __tablename__ = "watermark_records"
    __table_args__ = (
        Index("ix_watermark_records_tenant_document", "tenant_id", "document_id"),
        Index("ix_watermark_records_tracking", "tenant_id", "document_id", "tracking_code"),
    )

    # Watermark id handed to the caller and stamped on the access log row.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String)
    data_room_id: Mapped[str] = mapped_column(String, index=True)
    document_id: Mapped[str] = mapped_column(String)
    viewer_id: Mapped[str] = mapped_column(String)
    viewer_email: Mapped[str] = mapped_column(String)
    viewer_name: Mapped[str | None] = mapped_column(String, nullable=True)
    company_name: Mapped[str | None] = mapped_column(String, nullable=True)
    access_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    tracking_code: Mapped[str] = mapped_column(String)
    watermark_text: Mapped[str] = mapped_column(String)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
