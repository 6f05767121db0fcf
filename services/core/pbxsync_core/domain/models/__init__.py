"""Domain models for the PBX chat archive.

This module defines the SQLAlchemy ORM models of the central multi-tenant
store. Every row below ``Tenant`` carries a ``tenant_id``; natural keys
assigned by the PBX (``external_*_id``, ``extension_number``) are unique
per tenant and act as idempotency keys for the merge engine.

Timestamps are stored as naive UTC.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


# =============================================================================
# ENUMS
# =============================================================================


class SyncKind(str):
    """Kinds of ledger-tracked sync work."""

    MESSAGES = "messages"
    EXTENSIONS = "extensions"
    MEDIA_INGEST = "media_ingest"
    MEDIA_LINK = "media_link"

    ALL = (MESSAGES, EXTENSIONS, MEDIA_INGEST, MEDIA_LINK)


class SyncStatus(str):
    """Ledger row status values."""

    IDLE = "idle"
    RUNNING = "running"
    ERROR = "error"


class ChannelType(str):
    """Conversation channel values, derived from the PBX provider type."""

    INTERNAL = "internal"
    SMS = "sms"
    MMS = "mms"
    FACEBOOK = "facebook"
    WHATSAPP = "whatsapp"
    LIVECHAT = "livechat"
    TELEGRAM = "telegram"
    TEAMS = "teams"


class MessageType(str):
    """Message content type values."""

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    FILE = "file"


class ParticipantType(str):
    """Participant type values."""

    EXTENSION = "extension"
    EXTERNAL = "external"


class StorageBackendName(str):
    """Storage backend values."""

    SUPABASE = "supabase"
    S3 = "s3"
    FS = "fs"


# =============================================================================
# TENANTS
# =============================================================================


class Tenant(Base):
    """A customer account with its own PBX and tunnel credentials."""

    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # SSH endpoint of the PBX host
    ssh_host: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ssh_port: Mapped[int] = mapped_column(Integer, nullable=False, default=22)
    ssh_username: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    ssh_password_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # PBX database as seen from the SSH host
    db_host: Mapped[str] = mapped_column(String(255), nullable=False, default="127.0.0.1")
    db_port: Mapped[int] = mapped_column(Integer, nullable=False, default=5480)
    db_name: Mapped[str] = mapped_column(
        String(128), nullable=False, default="database_single"
    )
    db_user: Mapped[str] = mapped_column(String(128), nullable=False, default="phonesystem")
    db_password_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    default_storage_backend: Mapped[str] = mapped_column(
        String(32), nullable=False, default=StorageBackendName.SUPABASE
    )

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sync_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_activity_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    # Relationships
    sync_states: Mapped[list["SyncState"]] = relationship(back_populates="tenant")
    conversations: Mapped[list["Conversation"]] = relationship(back_populates="tenant")


class SyncState(Base):
    """Per-tenant, per-kind sync ledger row.

    At most one row exists for each (tenant_id, sync_kind); the row's
    ``status`` is the mutual exclusion gate for sync cycles.
    """

    __tablename__ = "sync_state"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenants.id"), nullable=False
    )
    sync_kind: Mapped[str] = mapped_column(String(32), nullable=False)

    status: Mapped[str] = mapped_column(
        Enum("idle", "running", "error", name="sync_status_enum"),
        nullable=False,
        default=SyncStatus.IDLE,
    )
    cursor: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    trigger_requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Refreshed by every checkpoint; a running row goes stale from here
    heartbeat_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Identifies the run that currently owns the row
    run_token: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    last_success_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_error_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    items_synced: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "sync_kind", name="uq_sync_state_tenant_kind"),
        Index("idx_sync_state_status", "status"),
    )

    # Relationships
    tenant: Mapped["Tenant"] = relationship(back_populates="sync_states")


# =============================================================================
# ARCHIVED CHAT DATA
# =============================================================================


class Conversation(Base):
    """A PBX chat conversation."""

    __tablename__ = "conversations"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenants.id"), nullable=False
    )
    external_conversation_id: Mapped[str] = mapped_column(String(128), nullable=False)

    # Derived display name; recomputed when participants change
    name: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    # Chat name as reported by the PBX
    source_name: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    channel_type: Mapped[str] = mapped_column(
        String(32), nullable=False, default=ChannelType.INTERNAL
    )
    is_external: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_group_chat: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    queue_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    # Source ("live" or "historical") that last wrote the PBX metadata above
    metadata_source: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    first_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "external_conversation_id", name="uq_conv_ext"),
        Index("idx_conv_tenant_last_msg", "tenant_id", "last_message_at"),
    )

    # Relationships
    tenant: Mapped["Tenant"] = relationship(back_populates="conversations")
    messages: Mapped[list["Message"]] = relationship(back_populates="conversation")
    participants: Mapped[list["Participant"]] = relationship(
        back_populates="conversation"
    )


class Message(Base):
    """A single chat message."""

    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenants.id"), nullable=False
    )
    external_message_id: Mapped[str] = mapped_column(String(128), nullable=False)
    conversation_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("conversations.id"), nullable=False
    )

    sender_extension: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    sender_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sender_phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    message_type: Mapped[str] = mapped_column(
        String(16), nullable=False, default=MessageType.TEXT
    )
    has_media: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "external_message_id", name="uq_msg_ext"),
        Index("idx_msg_conv_time", "conversation_id", "sent_at"),
        Index("idx_msg_tenant_time", "tenant_id", "sent_at"),
    )

    # Relationships
    conversation: Mapped["Conversation"] = relationship(back_populates="messages")
    media_files: Mapped[list["MediaFile"]] = relationship(back_populates="message")


class Participant(Base):
    """A member of a conversation, either a PBX extension or an outside party."""

    __tablename__ = "participants"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenants.id"), nullable=False
    )
    conversation_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("conversations.id"), nullable=False
    )
    participant_key: Mapped[str] = mapped_column(String(255), nullable=False)
    participant_type: Mapped[str] = mapped_column(
        Enum("extension", "external", name="participant_type_enum"), nullable=False
    )

    extension_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    external_identity: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    source_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("conversation_id", "participant_key", name="uq_participant"),
        Index("idx_participant_tenant_ext", "tenant_id", "extension_number"),
    )

    # Relationships
    conversation: Mapped["Conversation"] = relationship(back_populates="participants")


class Extension(Base):
    """A PBX extension (internal user)."""

    __tablename__ = "extensions"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenants.id"), nullable=False
    )
    extension_number: Mapped[str] = mapped_column(String(64), nullable=False)
    external_extension_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    first_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "extension_number", name="uq_extension"),
    )


class MediaFile(Base):
    """A stored media blob, optionally linked to its owning message."""

    __tablename__ = "media_files"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenants.id"), nullable=False
    )
    message_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("messages.id"), nullable=True
    )
    conversation_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("conversations.id"), nullable=True
    )

    file_name: Mapped[str] = mapped_column(String(512), nullable=False)
    storage_backend: Mapped[str] = mapped_column(String(32), nullable=False)
    storage_path: Mapped[str] = mapped_column(String(700), nullable=False)
    mime_type: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Set the first time the pipeline replaces the blob
    original_size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    compressed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("storage_backend", "storage_path", name="uq_media_location"),
        Index("idx_media_tenant_msg", "tenant_id", "message_id"),
        Index("idx_media_size", "file_size"),
    )

    # Relationships
    message: Mapped[Optional["Message"]] = relationship(back_populates="media_files")
