"""create data room, viewer, link, access log and watermark tables

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False)


def upgrade() -> None:
    op.create_table(
        "data_rooms",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("company_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="ACTIVE"),
        sa.Column("watermark_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("watermark_text", sa.String(), nullable=True),
        sa.Column("download_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("print_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("copy_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("screenshot_protection", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("nda_required", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("fund_id", sa.String(), nullable=True),
        sa.Column("fund_name", sa.String(), nullable=True),
        sa.Column("documents_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("members_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by", sa.String(), nullable=False),
        _created_at(),
        _created_at("updated_at"),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_data_rooms_tenant_id", "data_rooms", ["tenant_id"])
    op.create_index("ix_data_rooms_tenant_company", "data_rooms", ["tenant_id", "company_id"])

    op.create_table(
        "data_room_documents",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("data_room_id", sa.String(), sa.ForeignKey("data_rooms.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("file_key", sa.String(), nullable=False),
        sa.Column("mime_type", sa.String(), nullable=False),
        sa.Column("file_size", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("folder_id", sa.String(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("previous_version_id", sa.String(), nullable=True),
        sa.Column("download_override", sa.Boolean(), nullable=True),
        sa.Column("viewer_restrictions", postgresql.JSONB(), nullable=True),
        sa.Column("folder_restrictions", postgresql.JSONB(), nullable=True),
        sa.Column("view_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("download_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("uploaded_by", sa.String(), nullable=False),
        _created_at("uploaded_at"),
        sa.Column("last_viewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_data_room_documents_tenant_id", "data_room_documents", ["tenant_id"])
    op.create_index("ix_data_room_documents_data_room_id", "data_room_documents", ["data_room_id"])
    op.create_index("ix_data_room_documents_room_name", "data_room_documents", ["data_room_id", "name"])

    op.create_table(
        "data_room_viewers",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("data_room_id", sa.String(), sa.ForeignKey("data_rooms.id"), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("company", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("permissions_json", postgresql.JSONB(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="invited"),
        sa.Column("invited_by", sa.String(), nullable=False),
        _created_at("invited_at"),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_access_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("nda_signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("access_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("download_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_ip_address", sa.String(), nullable=True),
    )
    op.create_index("ix_data_room_viewers_tenant_id", "data_room_viewers", ["tenant_id"])
    op.create_index("ix_data_room_viewers_data_room_id", "data_room_viewers", ["data_room_id"])
    # One live viewer per (room, email); revoked history may repeat.
    op.create_index(
        "uq_data_room_viewers_live_email",
        "data_room_viewers",
        ["data_room_id", "email"],
        unique=True,
        postgresql_where=sa.text("status <> 'revoked'"),
        sqlite_where=sa.text("status <> 'revoked'"),
    )

    op.create_table(
        "secure_links",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("data_room_id", sa.String(), sa.ForeignKey("data_rooms.id"), nullable=False),
        sa.Column("document_id", sa.String(), nullable=True),
        sa.Column("token_hash", sa.String(), nullable=False),
        sa.Column("label", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("current_uses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("require_email", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("allowed_emails", postgresql.JSONB(), nullable=True),
        sa.Column("require_pin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("pin_hash", sa.String(), nullable=True),
        sa.Column("permissions_json", postgresql.JSONB(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=False),
        _created_at(),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_by", sa.String(), nullable=True),
    )
    op.create_index("ix_secure_links_tenant_id", "secure_links", ["tenant_id"])
    op.create_index("ix_secure_links_data_room_id", "secure_links", ["data_room_id"])
    op.create_index("ix_secure_links_token_hash", "secure_links", ["token_hash"], unique=True)

    op.create_table(
        "document_access_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("data_room_id", sa.String(), nullable=True),
        sa.Column("document_id", sa.String(), nullable=True),
        sa.Column("viewer_id", sa.String(), nullable=False),
        sa.Column("viewer_email", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("event", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=False),
        sa.Column("user_agent", sa.String(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_reason", sa.String(), nullable=True),
        sa.Column("watermark_id", sa.String(), nullable=True),
        sa.Column("link_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_document_access_logs_room_ts", "document_access_logs", ["data_room_id", "timestamp"])
    op.create_index("ix_document_access_logs_document_ts", "document_access_logs", ["document_id", "timestamp"])
    op.create_index("ix_document_access_logs_viewer_ts", "document_access_logs", ["viewer_id", "timestamp"])
    op.create_index("ix_document_access_logs_link_ts", "document_access_logs", ["link_id", "timestamp"])

    op.create_table(
        "watermark_records",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("data_room_id", sa.String(), nullable=False),
        sa.Column("document_id", sa.String(), nullable=False),
        sa.Column("viewer_id", sa.String(), nullable=False),
        sa.Column("viewer_email", sa.String(), nullable=False),
        sa.Column("viewer_name", sa.String(), nullable=True),
        sa.Column("company_name", sa.String(), nullable=True),
        sa.Column("access_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tracking_code", sa.String(), nullable=False),
        sa.Column("watermark_text", sa.String(), nullable=False),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_watermark_records_data_room_id", "watermark_records", ["data_room_id"])
    op.create_index("ix_watermark_records_tenant_document", "watermark_records", ["tenant_id", "document_id"])
    op.create_index(
        "ix_watermark_records_tracking", "watermark_records", ["tenant_id", "document_id", "tracking_code"]
    )


def downgrade() -> None:
    op.drop_table("watermark_records")
    op.drop_table("document_access_logs")
    op.drop_table("secure_links")
    op.drop_table("data_room_viewers")
    op.drop_table("data_room_documents")
    op.drop_table("data_rooms")
