"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

Creates the central chat archive:
- tenants
- sync_state (one row per tenant and sync kind)
- conversations
- participants
- messages
- extensions
- media_files
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Tenants table
    op.create_table(
        "tenants",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("slug", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("ssh_host", sa.String(255), nullable=True),
        sa.Column("ssh_port", sa.Integer, nullable=False, server_default="22"),
        sa.Column("ssh_username", sa.String(128), nullable=True),
        sa.Column("ssh_password_encrypted", sa.Text, nullable=True),
        sa.Column("db_host", sa.String(255), nullable=False, server_default="127.0.0.1"),
        sa.Column("db_port", sa.Integer, nullable=False, server_default="5480"),
        sa.Column("db_name", sa.String(128), nullable=False, server_default="database_single"),
        sa.Column("db_user", sa.String(128), nullable=False, server_default="phonesystem"),
        sa.Column("db_password_encrypted", sa.Text, nullable=True),
        sa.Column(
            "default_storage_backend", sa.String(32), nullable=False, server_default="supabase"
        ),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("sync_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("last_sync_at", sa.DateTime, nullable=True),
        sa.Column("last_activity_at", sa.DateTime, nullable=True),
        *_timestamps(),
    )

    # Sync ledger
    op.create_table(
        "sync_state",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.BigInteger, nullable=False),
        sa.Column("sync_kind", sa.String(32), nullable=False),
        sa.Column(
            "status",
            sa.Enum("idle", "running", "error", name="sync_status_enum"),
            nullable=False,
            server_default="idle",
        ),
        sa.Column("cursor", sa.String(255), nullable=True),
        sa.Column("trigger_requested_at", sa.DateTime, nullable=True),
        sa.Column("started_at", sa.DateTime, nullable=True),
        sa.Column("last_success_at", sa.DateTime, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("last_error_at", sa.DateTime, nullable=True),
        sa.Column("items_synced", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("notes", sa.Text, nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], name="fk_sync_state_tenant"),
        sa.UniqueConstraint("tenant_id", "sync_kind", name="uq_sync_state_tenant_kind"),
    )
    op.create_index("idx_sync_state_status", "sync_state", ["status"])

    # Conversations table
    op.create_table(
        "conversations",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.BigInteger, nullable=False),
        sa.Column("external_conversation_id", sa.String(128), nullable=False),
        sa.Column("name", sa.String(512), nullable=True),
        sa.Column("source_name", sa.String(512), nullable=True),
        sa.Column("channel_type", sa.String(32), nullable=False, server_default="internal"),
        sa.Column("is_external", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_group_chat", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("queue_number", sa.String(32), nullable=True),
        sa.Column("message_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("first_message_at", sa.DateTime, nullable=True),
        sa.Column("last_message_at", sa.DateTime, nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], name="fk_conv_tenant"),
        sa.UniqueConstraint("tenant_id", "external_conversation_id", name="uq_conv_ext"),
    )
    op.create_index("idx_conv_tenant_last_msg", "conversations", ["tenant_id", "last_message_at"])

    # Messages table
    op.create_table(
        "messages",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.BigInteger, nullable=False),
        sa.Column("external_message_id", sa.String(128), nullable=False),
        sa.Column("conversation_id", sa.BigInteger, nullable=False),
        sa.Column("sender_extension", sa.String(64), nullable=True),
        sa.Column("sender_name", sa.String(255), nullable=True),
        sa.Column("sender_phone", sa.String(64), nullable=True),
        sa.Column("content", sa.Text, nullable=True),
        sa.Column("message_type", sa.String(16), nullable=False, server_default="text"),
        sa.Column("has_media", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("sent_at", sa.DateTime, nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], name="fk_msg_tenant"),
        sa.ForeignKeyConstraint(["conversation_id"], ["conversations.id"], name="fk_msg_conv"),
        sa.UniqueConstraint("tenant_id", "external_message_id", name="uq_msg_ext"),
    )
    op.create_index("idx_msg_conv_time", "messages", ["conversation_id", "sent_at"])
    op.create_index("idx_msg_tenant_time", "messages", ["tenant_id", "sent_at"])

    # Participants table
    op.create_table(
        "participants",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.BigInteger, nullable=False),
        sa.Column("conversation_id", sa.BigInteger, nullable=False),
        sa.Column("participant_key", sa.String(255), nullable=False),
        sa.Column(
            "participant_type",
            sa.Enum("extension", "external", name="participant_type_enum"),
            nullable=False,
        ),
        sa.Column("extension_number", sa.String(64), nullable=True),
        sa.Column("external_identity", sa.String(255), nullable=True),
        sa.Column("source_name", sa.String(255), nullable=True),
        sa.Column("display_name", sa.String(255), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], name="fk_participant_tenant"),
        sa.ForeignKeyConstraint(
            ["conversation_id"], ["conversations.id"], name="fk_participant_conv"
        ),
        sa.UniqueConstraint("conversation_id", "participant_key", name="uq_participant"),
    )
    op.create_index(
        "idx_participant_tenant_ext", "participants", ["tenant_id", "extension_number"]
    )

    # Extensions table
    op.create_table(
        "extensions",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.BigInteger, nullable=False),
        sa.Column("extension_number", sa.String(64), nullable=False),
        sa.Column("external_extension_id", sa.String(64), nullable=True),
        sa.Column("first_name", sa.String(128), nullable=True),
        sa.Column("last_name", sa.String(128), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("display_name", sa.String(255), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], name="fk_extension_tenant"),
        sa.UniqueConstraint("tenant_id", "extension_number", name="uq_extension"),
    )

    # Media files table
    op.create_table(
        "media_files",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.BigInteger, nullable=False),
        sa.Column("message_id", sa.BigInteger, nullable=True),
        sa.Column("conversation_id", sa.BigInteger, nullable=True),
        sa.Column("file_name", sa.String(512), nullable=False),
        sa.Column("storage_backend", sa.String(32), nullable=False),
        sa.Column("storage_path", sa.String(700), nullable=False),
        sa.Column("mime_type", sa.String(128), nullable=True),
        sa.Column("file_size", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("original_size", sa.BigInteger, nullable=True),
        sa.Column("compressed_at", sa.DateTime, nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], name="fk_media_tenant"),
        sa.ForeignKeyConstraint(["message_id"], ["messages.id"], name="fk_media_msg"),
        sa.ForeignKeyConstraint(
            ["conversation_id"], ["conversations.id"], name="fk_media_conv"
        ),
        sa.UniqueConstraint("storage_backend", "storage_path", name="uq_media_location"),
    )
    op.create_index("idx_media_tenant_msg", "media_files", ["tenant_id", "message_id"])
    op.create_index("idx_media_size", "media_files", ["file_size"])


def downgrade() -> None:
    op.drop_table("media_files")
    op.drop_table("extensions")
    op.drop_table("participants")
    op.drop_table("messages")
    op.drop_table("conversations")
    op.drop_table("sync_state")
    op.drop_table("tenants")
