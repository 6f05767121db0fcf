"""Test data factories for PBX Sync Core.

This module provides factory functions to create test data for models and
for the records the extraction client hands to the merge engine. Use these
instead of manually constructing objects in tests for consistency.
"""

import posixpath
import stat
from datetime import datetime, timedelta
from typing import Any, Optional

import paramiko
from sqlalchemy.orm import Session

from pbxsync_core.domain.models import (
    Conversation,
    Extension,
    MediaFile,
    Message,
    Tenant,
)
from pbxsync_core.infrastructure.crypto import CredentialCipher
from pbxsync_core.remote.records import (
    ExtractedBatch,
    RemoteConversation,
    RemoteExtension,
    RemoteMessage,
    RemoteParticipant,
    SourceKind,
)

BASE_TIME = datetime(2024, 1, 15, 12, 0, 0)


def at(minutes: int = 0, seconds: int = 0) -> datetime:
    """A fixed naive-UTC instant offset from ``BASE_TIME``."""
    return BASE_TIME + timedelta(minutes=minutes, seconds=seconds)


# -----------------------------------------------------------------------------
# Tenant Factory
# -----------------------------------------------------------------------------


def create_tenant(
    session: Session,
    slug: str = "acme",
    name: str = "Acme Corp",
    cipher: Optional[CredentialCipher] = None,
    ssh_password: str = "ssh-secret",
    db_password: str = "db-secret",
    **kwargs: Any,
) -> Tenant:
    """Create a Tenant record for testing."""
    tenant = Tenant(
        slug=slug,
        name=name,
        ssh_host=kwargs.pop("ssh_host", f"{slug}.pbx.example.com"),
        ssh_port=kwargs.pop("ssh_port", 22),
        ssh_username=kwargs.pop("ssh_username", "root"),
        ssh_password_encrypted=cipher.encrypt(ssh_password) if cipher else None,
        db_password_encrypted=cipher.encrypt(db_password) if cipher else None,
        **kwargs,
    )
    session.add(tenant)
    session.flush()
    return tenant


# -----------------------------------------------------------------------------
# Archive Factories
# -----------------------------------------------------------------------------


def create_conversation(
    session: Session,
    tenant: Tenant,
    external_conversation_id: str = "conv-1",
    **kwargs: Any,
) -> Conversation:
    """Create a Conversation record for testing."""
    conversation = Conversation(
        tenant_id=tenant.id,
        external_conversation_id=external_conversation_id,
        **kwargs,
    )
    session.add(conversation)
    session.flush()
    return conversation


def create_message(
    session: Session,
    conversation: Conversation,
    external_message_id: str,
    content: Optional[str] = None,
    sent_at: Optional[datetime] = None,
    has_media: bool = False,
    **kwargs: Any,
) -> Message:
    """Create a Message record for testing."""
    message = Message(
        tenant_id=conversation.tenant_id,
        conversation_id=conversation.id,
        external_message_id=external_message_id,
        content=content,
        sent_at=sent_at or BASE_TIME,
        has_media=has_media,
        **kwargs,
    )
    session.add(message)
    session.flush()
    return message


def create_extension(
    session: Session,
    tenant: Tenant,
    extension_number: str = "101",
    first_name: str = "Alice",
    last_name: str = "Smith",
    **kwargs: Any,
) -> Extension:
    """Create an Extension record for testing."""
    extension = Extension(
        tenant_id=tenant.id,
        extension_number=extension_number,
        first_name=first_name,
        last_name=last_name,
        display_name=f"{first_name} {last_name}".strip(),
        **kwargs,
    )
    session.add(extension)
    session.flush()
    return extension


def create_media_file(
    session: Session,
    tenant: Tenant,
    file_name: str = "photo.jpg",
    storage_path: Optional[str] = None,
    storage_backend: str = "fs",
    file_size: int = 0,
    mime_type: Optional[str] = "image/jpeg",
    **kwargs: Any,
) -> MediaFile:
    """Create a MediaFile record for testing."""
    media = MediaFile(
        tenant_id=tenant.id,
        file_name=file_name,
        storage_backend=storage_backend,
        storage_path=storage_path or f"{tenant.slug}/{file_name}",
        file_size=file_size,
        mime_type=mime_type,
        **kwargs,
    )
    session.add(media)
    session.flush()
    return media


# -----------------------------------------------------------------------------
# Remote Record Factories
# -----------------------------------------------------------------------------


def remote_conversation(
    external_id: str = "conv-1",
    source: SourceKind = SourceKind.LIVE,
    chat_name: Optional[str] = None,
    participants_raw: Any = None,
    **kwargs: Any,
) -> RemoteConversation:
    return RemoteConversation(
        external_id=external_id,
        source=source,
        chat_name=chat_name,
        participants_raw=participants_raw,
        **kwargs,
    )


def remote_message(
    external_id: str,
    conversation_external_id: str = "conv-1",
    sent_at: Optional[datetime] = None,
    content: Optional[str] = "hello",
    source: SourceKind = SourceKind.LIVE,
    sender_number: Optional[str] = "101",
    sender_name: Optional[str] = "Alice Smith",
    **kwargs: Any,
) -> RemoteMessage:
    return RemoteMessage(
        external_id=external_id,
        conversation_external_id=conversation_external_id,
        sent_at=sent_at or BASE_TIME,
        source=source,
        content=content,
        sender_number=sender_number,
        sender_name=sender_name,
        **kwargs,
    )


def remote_participant(
    identifier: str,
    name: Optional[str] = None,
    conversation_external_id: str = "conv-1",
    is_external: bool = False,
) -> RemoteParticipant:
    return RemoteParticipant(
        conversation_external_id=conversation_external_id,
        identifier=identifier,
        name=name,
        is_external=is_external,
    )


def remote_extension(
    number: str = "101",
    first_name: Optional[str] = "Alice",
    last_name: Optional[str] = "Smith",
    **kwargs: Any,
) -> RemoteExtension:
    return RemoteExtension(number=number, first_name=first_name, last_name=last_name, **kwargs)


def make_batch(
    conversations: Optional[list[RemoteConversation]] = None,
    participants: Optional[list[RemoteParticipant]] = None,
    messages: Optional[list[RemoteMessage]] = None,
    **kwargs: Any,
) -> ExtractedBatch:
    """An ExtractedBatch with defaults for the parts a test does not care about."""
    return ExtractedBatch(
        conversations=conversations if conversations is not None else [remote_conversation()],
        participants=participants or [],
        messages=messages or [],
        **kwargs,
    )


# -----------------------------------------------------------------------------
# PBX Host Fakes
# -----------------------------------------------------------------------------


class FakeSftp:
    """In-memory stand-in for ``paramiko.SFTPClient``.

    ``files`` maps absolute remote paths to their bytes; directories are
    implied by the paths. ``failing`` paths raise ``OSError`` on download.
    """

    def __init__(self, files: Optional[dict[str, bytes]] = None, failing: tuple[str, ...] = ()):
        self.files = dict(files or {})
        self.failing = set(failing)
        self.downloaded: list[str] = []

    def listdir_attr(self, path: str) -> list[paramiko.SFTPAttributes]:
        prefix = path.rstrip("/") + "/"
        children: dict[str, paramiko.SFTPAttributes] = {}
        for full_path, data in self.files.items():
            if not full_path.startswith(prefix):
                continue
            head, _, rest = full_path[len(prefix):].partition("/")
            attr = paramiko.SFTPAttributes()
            attr.filename = head
            if rest:
                attr.st_mode = stat.S_IFDIR | 0o755
                attr.st_size = 0
            else:
                attr.st_mode = stat.S_IFREG | 0o644
                attr.st_size = len(data)
            children.setdefault(head, attr)
        if not children:
            raise FileNotFoundError(2, "No such file", path)
        return list(children.values())

    def getfo(self, remotepath: str, fl) -> int:
        if remotepath in self.failing:
            raise OSError(f"read failed: {posixpath.basename(remotepath)}")
        self.downloaded.append(remotepath)
        data = self.files[remotepath]
        fl.write(data)
        return len(data)
