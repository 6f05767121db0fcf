"""Merge engine: idempotent upserts of extracted PBX records.

Records are matched on their natural keys (external ids and extension
numbers, always scoped by tenant). A record that does not exist yet is
inserted; one that exists is updated only when a mutable field differs;
an exact duplicate is a no-op. Delivering the same batch twice therefore
leaves the store unchanged.

Derived fields are recomputed in the same pass that changes their inputs:
participant display names follow extension names, and conversation names
follow participant display names.

Usage:
    merger = MergeService(db)
    result = merger.merge_batch(tenant_id, batch)
    db.commit()
"""

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pbxsync_core.domain.errors import MergeError
from pbxsync_core.domain.models import (
    Conversation,
    Extension,
    MediaFile,
    Message,
    MessageType,
    Participant,
    ParticipantType,
)
from pbxsync_core.observability.logging import get_logger
from pbxsync_core.remote.records import (
    ExtractedBatch,
    RemoteConversation,
    RemoteExtension,
    RemoteMessage,
    RemoteParticipant,
    SourceKind,
    parse_participants,
    source_rank,
)

logger = get_logger(__name__)

# A conversation with this many participants or more is a group chat
GROUP_CHAT_MIN_PARTICIPANTS = 3


# =============================================================================
# CONTENT DETECTION
# =============================================================================

_MEDIA_PATTERNS = (
    (MessageType.IMAGE, re.compile(r"\[image\]|\.(?:jpe?g|png|gif|webp|heic)\s*$", re.IGNORECASE)),
    (MessageType.VIDEO, re.compile(r"\[video\]|\.(?:mp4|mov|webm|3gp)\s*$", re.IGNORECASE)),
    (MessageType.FILE, re.compile(r"\[file\]|\[document\]", re.IGNORECASE)),
)


def detect_media(content: Optional[str]) -> tuple[bool, str]:
    """Classify message content as text or a media reference.

    Returns:
        Tuple of (has_media, message_type).
    """
    if not content:
        return False, MessageType.TEXT
    for message_type, pattern in _MEDIA_PATTERNS:
        if pattern.search(content):
            return True, message_type
    return False, MessageType.TEXT


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class MergeResult:
    """Counts for one merged batch."""

    conversations_created: int = 0
    conversations_updated: int = 0
    participants_created: int = 0
    participants_updated: int = 0
    messages_created: int = 0
    messages_updated: int = 0
    messages_unchanged: int = 0

    @property
    def items(self) -> int:
        return self.messages_created + self.messages_updated + self.messages_unchanged

    @property
    def changed(self) -> bool:
        return any(
            (
                self.conversations_created,
                self.conversations_updated,
                self.participants_created,
                self.participants_updated,
                self.messages_created,
                self.messages_updated,
            )
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "conversations_created": self.conversations_created,
            "conversations_updated": self.conversations_updated,
            "participants_created": self.participants_created,
            "participants_updated": self.participants_updated,
            "messages_created": self.messages_created,
            "messages_updated": self.messages_updated,
            "messages_unchanged": self.messages_unchanged,
        }


@dataclass
class ExtensionMergeResult:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    renamed: list[str] = field(default_factory=list)
    participants_updated: int = 0
    conversations_renamed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "renamed": self.renamed,
            "participants_updated": self.participants_updated,
            "conversations_renamed": self.conversations_renamed,
        }


# =============================================================================
# SERVICE
# =============================================================================


def _apply(obj: Any, values: dict[str, Any]) -> bool:
    """Set attributes that differ; return whether anything changed."""
    changed = False
    for key, value in values.items():
        if getattr(obj, key) != value:
            setattr(obj, key, value)
            changed = True
    return changed


def participant_display_name(
    extension: Optional[Extension],
    source_name: Optional[str],
    key: str,
) -> str:
    """Extension name when the participant resolves to one, else the PBX name, else the key."""
    if extension is not None and extension.display_name:
        return extension.display_name
    return source_name or key


class MergeService:
    """Upserts extracted records into the central store.

    The service flushes but never commits; the caller owns the transaction.
    Every read and write is filtered by ``tenant_id``.
    """

    def __init__(self, db: Session):
        self.db = db

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    def merge_batch(self, tenant_id: int, batch: ExtractedBatch) -> MergeResult:
        """Merge one extracted batch: conversations, then participants, then messages.

        Raises:
            MergeError: If a record violates a constraint or references a
                conversation that is neither in the batch nor stored. The
                session is rolled back before raising.
        """
        result = MergeResult()
        try:
            conversations = self._upsert_conversations(tenant_id, batch, result)
            touched = self._upsert_participants(
                tenant_id, conversations, batch.participants, result
            )
            self._upsert_messages(tenant_id, conversations, batch.messages, result)
            self.db.flush()

            touched.update(c.id for c in conversations.values())
            self._refresh_conversations(tenant_id, touched)
            self.db.flush()
        except IntegrityError as e:
            self.db.rollback()
            raise MergeError(f"Constraint violation merging batch for tenant {tenant_id}: {e.orig}") from e
        except MergeError:
            self.db.rollback()
            raise

        logger.debug("Batch merged", tenant_id=tenant_id, **result.to_dict())
        return result

    def merge_conversations(self, tenant_id: int, conversations: list[RemoteConversation]) -> MergeResult:
        """Merge conversation metadata (and its participant arrays) without messages."""
        participants = [
            RemoteParticipant(
                conversation_external_id=c.external_id,
                identifier=identifier,
                name=name,
                is_external=c.is_external,
            )
            for c in conversations
            for identifier, name in parse_participants(c.participants_raw)
        ]
        return self.merge_batch(
            tenant_id, ExtractedBatch(conversations=conversations, participants=participants)
        )

    def _upsert_conversations(
        self,
        tenant_id: int,
        batch: ExtractedBatch,
        result: MergeResult,
    ) -> dict[str, Conversation]:
        wanted = {c.external_id for c in batch.conversations}
        wanted.update(m.conversation_external_id for m in batch.messages)
        wanted.update(p.conversation_external_id for p in batch.participants)
        if not wanted:
            return {}

        existing = {
            c.external_conversation_id: c
            for c in self.db.query(Conversation).filter(
                Conversation.tenant_id == tenant_id,
                Conversation.external_conversation_id.in_(wanted),
            )
        }

        for remote in batch.conversations:
            values: dict[str, Any] = {
                "is_external": remote.is_external,
                "metadata_source": SourceKind(remote.source).value,
            }
            if remote.chat_name is not None:
                values["source_name"] = remote.chat_name
            if remote.provider_type is not None:
                values["channel_type"] = remote.channel_type
            if remote.queue_number is not None:
                values["queue_number"] = remote.queue_number

            conversation = existing.get(remote.external_id)
            if conversation is not None and source_rank(remote.source) < source_rank(
                conversation.metadata_source
            ):
                # Archived metadata is final; a later live page must not undo it
                continue
            if conversation is None:
                conversation = Conversation(
                    tenant_id=tenant_id,
                    external_conversation_id=remote.external_id,
                    **values,
                )
                conversation.channel_type = remote.channel_type
                self.db.add(conversation)
                existing[remote.external_id] = conversation
                result.conversations_created += 1
            elif _apply(conversation, values):
                result.conversations_updated += 1

        missing = wanted - set(existing)
        if missing:
            raise MergeError(
                f"Batch references unknown conversations {sorted(missing)} for tenant {tenant_id}"
            )

        self.db.flush()
        return existing

    def _upsert_participants(
        self,
        tenant_id: int,
        conversations: dict[str, Conversation],
        participants: list[RemoteParticipant],
        result: MergeResult,
    ) -> set[int]:
        touched: set[int] = set()
        if not participants:
            return touched

        extensions = self._extensions_by_number(
            tenant_id, {p.identifier for p in participants}
        )
        conversation_ids = {conversations[p.conversation_external_id].id for p in participants}
        existing = {
            (p.conversation_id, p.participant_key): p
            for p in self.db.query(Participant).filter(
                Participant.tenant_id == tenant_id,
                Participant.conversation_id.in_(conversation_ids),
            )
        }

        for remote in participants:
            conversation = conversations[remote.conversation_external_id]
            key = remote.identifier
            extension = extensions.get(key)
            is_extension = extension is not None or not remote.is_external

            current = existing.get((conversation.id, key))
            source_name = remote.name if remote.name is not None else (
                current.source_name if current is not None else None
            )
            values = {
                "participant_type": (
                    ParticipantType.EXTENSION if is_extension else ParticipantType.EXTERNAL
                ),
                "extension_number": key if is_extension else None,
                "external_identity": None if is_extension else key,
                "source_name": source_name,
                "display_name": participant_display_name(extension, source_name, key),
            }

            if current is None:
                current = Participant(
                    tenant_id=tenant_id,
                    conversation_id=conversation.id,
                    participant_key=key,
                    **values,
                )
                self.db.add(current)
                existing[(conversation.id, key)] = current
                result.participants_created += 1
                touched.add(conversation.id)
            elif _apply(current, values):
                result.participants_updated += 1
                touched.add(conversation.id)

        return touched

    def _upsert_messages(
        self,
        tenant_id: int,
        conversations: dict[str, Conversation],
        messages: list[RemoteMessage],
        result: MergeResult,
    ) -> None:
        if not messages:
            return

        existing = {
            m.external_message_id: m
            for m in self.db.query(Message).filter(
                Message.tenant_id == tenant_id,
                Message.external_message_id.in_({m.external_id for m in messages}),
            )
        }

        for remote in messages:
            has_media, message_type = detect_media(remote.content)
            values = {
                "conversation_id": conversations[remote.conversation_external_id].id,
                "sender_extension": remote.sender_number,
                "sender_name": remote.sender_name,
                "sender_phone": remote.sender_phone,
                "content": remote.content,
                "message_type": message_type,
                "has_media": has_media,
                "sent_at": remote.sent_at,
            }

            message = existing.get(remote.external_id)
            if message is None:
                message = Message(
                    tenant_id=tenant_id,
                    external_message_id=remote.external_id,
                    **values,
                )
                self.db.add(message)
                existing[remote.external_id] = message
                result.messages_created += 1
            elif _apply(message, values):
                result.messages_updated += 1
            else:
                result.messages_unchanged += 1

    # -------------------------------------------------------------------------
    # Derived conversation fields
    # -------------------------------------------------------------------------

    def _refresh_conversations(self, tenant_id: int, conversation_ids: Iterable[int]) -> int:
        """Recompute name, group flag and message stats; return how many were renamed."""
        ids = set(conversation_ids)
        if not ids:
            return 0

        participants: dict[int, list[Participant]] = {}
        for participant in self.db.query(Participant).filter(
            Participant.tenant_id == tenant_id,
            Participant.conversation_id.in_(ids),
        ):
            participants.setdefault(participant.conversation_id, []).append(participant)

        stats = {
            row[0]: row[1:]
            for row in self.db.query(
                Message.conversation_id,
                func.count(Message.id),
                func.min(Message.sent_at),
                func.max(Message.sent_at),
            )
            .filter(Message.tenant_id == tenant_id, Message.conversation_id.in_(ids))
            .group_by(Message.conversation_id)
        }

        renamed = 0
        for conversation in self.db.query(Conversation).filter(
            Conversation.tenant_id == tenant_id, Conversation.id.in_(ids)
        ):
            members = participants.get(conversation.id, [])
            is_group = len(members) >= GROUP_CHAT_MIN_PARTICIPANTS
            joined = ", ".join(sorted(p.display_name or p.participant_key for p in members))
            if is_group:
                name = conversation.source_name or joined or None
            else:
                name = joined or conversation.source_name

            count, first_at, last_at = stats.get(conversation.id, (0, None, None))
            if conversation.name != name:
                renamed += 1
            _apply(
                conversation,
                {
                    "name": name,
                    "is_group_chat": is_group,
                    "message_count": count,
                    "first_message_at": first_at,
                    "last_message_at": last_at,
                },
            )
        return renamed

    # -------------------------------------------------------------------------
    # Extensions
    # -------------------------------------------------------------------------

    def _extensions_by_number(self, tenant_id: int, numbers: set[str]) -> dict[str, Extension]:
        if not numbers:
            return {}
        return {
            e.extension_number: e
            for e in self.db.query(Extension).filter(
                Extension.tenant_id == tenant_id,
                Extension.extension_number.in_(numbers),
            )
        }

    def merge_extensions(
        self, tenant_id: int, extensions: list[RemoteExtension]
    ) -> ExtensionMergeResult:
        """Upsert extensions and cascade display name changes.

        Participants that resolve to a new or renamed extension get their
        display name recomputed, and so do the names of their conversations.

        Raises:
            MergeError: On constraint violation (session rolled back).
        """
        result = ExtensionMergeResult()
        try:
            existing = {
                e.extension_number: e
                for e in self.db.query(Extension).filter(Extension.tenant_id == tenant_id)
            }
            affected: set[str] = set()

            for remote in extensions:
                values: dict[str, Any] = {
                    "external_extension_id": remote.external_id,
                    "first_name": remote.first_name,
                    "last_name": remote.last_name,
                    "display_name": remote.display_name,
                }
                if remote.email is not None:
                    values["email"] = remote.email

                extension = existing.get(remote.number)
                if extension is None:
                    extension = Extension(
                        tenant_id=tenant_id, extension_number=remote.number, **values
                    )
                    self.db.add(extension)
                    existing[remote.number] = extension
                    result.created += 1
                    affected.add(remote.number)
                    continue

                previous_name = extension.display_name
                if _apply(extension, values):
                    result.updated += 1
                    if extension.display_name != previous_name:
                        result.renamed.append(remote.number)
                        affected.add(remote.number)
                else:
                    result.unchanged += 1

            self.db.flush()

            if affected:
                touched = self._cascade_extension_names(
                    tenant_id, {n: existing[n] for n in affected}, result
                )
                self.db.flush()
                result.conversations_renamed = self._refresh_conversations(tenant_id, touched)
                self.db.flush()
        except IntegrityError as e:
            self.db.rollback()
            raise MergeError(f"Constraint violation merging extensions for tenant {tenant_id}: {e.orig}") from e

        if result.renamed:
            logger.info(
                "Extension names changed",
                tenant_id=tenant_id,
                renamed=result.renamed,
                conversations_renamed=result.conversations_renamed,
            )
        return result

    def _cascade_extension_names(
        self,
        tenant_id: int,
        extensions: dict[str, Extension],
        result: ExtensionMergeResult,
    ) -> set[int]:
        touched: set[int] = set()
        for participant in self.db.query(Participant).filter(
            Participant.tenant_id == tenant_id,
            Participant.participant_key.in_(set(extensions)),
        ):
            extension = extensions[participant.participant_key]
            values = {
                "participant_type": ParticipantType.EXTENSION,
                "extension_number": participant.participant_key,
                "external_identity": None,
                "display_name": participant_display_name(
                    extension, participant.source_name, participant.participant_key
                ),
            }
            if _apply(participant, values):
                result.participants_updated += 1
                touched.add(participant.conversation_id)
        return touched

    # -------------------------------------------------------------------------
    # Media registration
    # -------------------------------------------------------------------------

    def register_media(
        self,
        tenant_id: int,
        file_name: str,
        storage_backend: str,
        storage_path: str,
        file_size: int,
        mime_type: Optional[str] = None,
        external_message_id: Optional[str] = None,
    ) -> MediaFile:
        """Record a stored blob, linking it when its message is known.

        Registering the same (backend, path) again updates the row in place.

        Raises:
            MergeError: If the location is already registered to another tenant.
        """
        media = (
            self.db.query(MediaFile)
            .filter(
                MediaFile.tenant_id == tenant_id,
                MediaFile.storage_backend == storage_backend,
                MediaFile.storage_path == storage_path,
            )
            .first()
        )
        if media is None and self._location_taken(storage_backend, storage_path):
            raise MergeError(f"{storage_backend}:{storage_path} belongs to another tenant")

        message = None
        if external_message_id:
            message = (
                self.db.query(Message)
                .filter(
                    Message.tenant_id == tenant_id,
                    Message.external_message_id == external_message_id,
                )
                .first()
            )

        values: dict[str, Any] = {"file_name": file_name, "file_size": file_size}
        if mime_type is not None:
            values["mime_type"] = mime_type
        if message is not None:
            values["message_id"] = message.id
            values["conversation_id"] = message.conversation_id

        if media is None:
            media = MediaFile(
                tenant_id=tenant_id,
                storage_backend=storage_backend,
                storage_path=storage_path,
                **values,
            )
            self.db.add(media)
        else:
            _apply(media, values)

        try:
            self.db.flush()
        except IntegrityError as e:
            self.db.rollback()
            raise MergeError(f"Constraint violation registering media: {e.orig}") from e
        return media

    def _location_taken(self, storage_backend: str, storage_path: str) -> bool:
        # Locations are unique across tenants; only the id is read back
        return (
            self.db.query(MediaFile.id)
            .filter(
                MediaFile.storage_backend == storage_backend,
                MediaFile.storage_path == storage_path,
            )
            .first()
            is not None
        )

    def registered_paths(self, tenant_id: int, storage_backend: str) -> set[str]:
        """Storage paths this tenant already has on ``storage_backend``."""
        rows = self.db.query(MediaFile.storage_path).filter(
            MediaFile.tenant_id == tenant_id,
            MediaFile.storage_backend == storage_backend,
        )
        return {path for (path,) in rows}


__all__ = [
    "ExtensionMergeResult",
    "MergeResult",
    "MergeService",
    "detect_media",
    "participant_display_name",
]
