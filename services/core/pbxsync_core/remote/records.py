"""Records extracted from a PBX database.

These are plain data classes, independent of both psycopg2 rows and the
central ORM models. Every record remembers which source it was read from
(the live working tables or the historical archive views) so that rows
present in both can be reconciled deterministically.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional, TypeVar

from pbxsync_core.domain.models import ChannelType


class SourceKind(str, Enum):
    """Where a record was read from."""

    LIVE = "live"
    HISTORICAL = "historical"


# Higher wins when the same record comes from both sources
SOURCE_PRECEDENCE = {
    SourceKind.LIVE: 0,
    SourceKind.HISTORICAL: 1,
}


def source_rank(source: Optional[str]) -> int:
    """Precedence of a source value; unknown or missing ranks lowest."""
    try:
        return SOURCE_PRECEDENCE[SourceKind(source)]
    except ValueError:
        return -1


# =============================================================================
# CURSOR
# =============================================================================


@dataclass(frozen=True)
class MessageCursor:
    """Keyset position in the merged message stream.

    Messages are ordered by ``(sent_at, message_id)`` where ``message_id``
    is compared as text, matching the ``COLLATE "C"`` ordering used on the
    remote side. The pair is unique, so no two messages share a position.
    """

    sent_at: datetime
    message_id: str

    SEPARATOR = "|"

    def key(self) -> tuple[datetime, str]:
        return (self.sent_at, self.message_id)

    def serialize(self) -> str:
        return f"{self.sent_at.isoformat()}{self.SEPARATOR}{self.message_id}"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["MessageCursor"]:
        """Parse a stored cursor; ``None`` or empty means "from the beginning".

        A bare ISO timestamp (no id part) is accepted and positions the
        cursor before every message at that instant.
        """
        if not value:
            return None
        stamp, _, message_id = value.partition(cls.SEPARATOR)
        return cls(sent_at=datetime.fromisoformat(stamp), message_id=message_id)


# =============================================================================
# RECORDS
# =============================================================================


@dataclass
class RemoteConversation:
    external_id: str
    source: SourceKind
    chat_name: Optional[str] = None
    is_external: bool = False
    queue_number: Optional[str] = None
    provider_type: Optional[str] = None
    participants_raw: Optional[str] = None

    @property
    def channel_type(self) -> str:
        return channel_for_provider(self.provider_type)


@dataclass
class RemoteMessage:
    external_id: str
    conversation_external_id: str
    sent_at: datetime
    source: SourceKind
    content: Optional[str] = None
    sender_number: Optional[str] = None
    sender_name: Optional[str] = None
    sender_phone: Optional[str] = None
    is_external: bool = False
    queue_number: Optional[str] = None

    @property
    def cursor(self) -> MessageCursor:
        return MessageCursor(sent_at=self.sent_at, message_id=self.external_id)


@dataclass
class RemoteParticipant:
    """A participant as named by the PBX.

    ``identifier`` is an extension number, phone number or chat identity;
    whether it refers to an internal extension is decided at merge time,
    once the tenant's extension list is known.
    """

    conversation_external_id: str
    identifier: str
    name: Optional[str] = None
    is_external: bool = False


@dataclass
class RemoteExtension:
    number: str
    external_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None

    @property
    def display_name(self) -> Optional[str]:
        name = " ".join(p for p in (self.first_name, self.last_name) if p).strip()
        return name or None


@dataclass
class ExtractedBatch:
    """One delta page, ordered conversation -> participant -> message."""

    conversations: list[RemoteConversation] = field(default_factory=list)
    participants: list[RemoteParticipant] = field(default_factory=list)
    messages: list[RemoteMessage] = field(default_factory=list)
    next_cursor: Optional[MessageCursor] = None
    has_more: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.messages and not self.conversations


# =============================================================================
# RECONCILIATION
# =============================================================================

R = TypeVar("R", RemoteConversation, RemoteMessage)


def reconcile(records: Iterable[R]) -> list[R]:
    """Collapse records sharing an external id, historical copy winning.

    Each surviving record keeps the position of the first occurrence of
    its external id.
    """
    chosen: dict[str, R] = {}
    for record in records:
        current = chosen.get(record.external_id)
        if current is None or (
            SOURCE_PRECEDENCE[record.source] > SOURCE_PRECEDENCE[current.source]
        ):
            chosen[record.external_id] = record
    return list(chosen.values())


# =============================================================================
# FORMAT HELPERS
# =============================================================================


def parse_participants(raw: Optional[str]) -> list[tuple[str, Optional[str]]]:
    """Parse a PBX participants array into ``(identifier, name)`` pairs.

    The PBX stores either a JSON array (of strings or of objects with
    ``extension``/``name`` keys) or the ``"101:Alice,102:Bob"`` text form.
    Unparseable input yields an empty list.
    """
    if not raw or not raw.strip():
        return []
    raw = raw.strip()

    if raw.startswith("["):
        try:
            items = json.loads(raw)
        except ValueError:
            return []
        result = []
        for item in items:
            if isinstance(item, dict):
                identifier = str(item.get("extension") or item.get("number") or "").strip()
                name = item.get("name") or None
            else:
                identifier, name = _split_pair(str(item))
            if identifier:
                result.append((identifier, name))
        return result

    # Postgres array literal: {"101:Alice","102:Bob"}
    if raw.startswith("{") and raw.endswith("}"):
        raw = raw[1:-1]

    result = []
    for part in raw.split(","):
        identifier, name = _split_pair(part.strip().strip('"'))
        if identifier:
            result.append((identifier, name))
    return result


def _split_pair(text: str) -> tuple[str, Optional[str]]:
    identifier, _, name = text.partition(":")
    identifier = identifier.strip()
    return identifier, (name.strip() or None)


_PROVIDER_CHANNELS = (
    (("sms",), ChannelType.SMS),
    (("mms",), ChannelType.MMS),
    (("facebook", "fb"), ChannelType.FACEBOOK),
    (("whatsapp", "wa"), ChannelType.WHATSAPP),
    (("livechat", "webchat"), ChannelType.LIVECHAT),
    (("telegram",), ChannelType.TELEGRAM),
    (("teams",), ChannelType.TEAMS),
)


def channel_for_provider(provider_type: Optional[str]) -> str:
    """Map a PBX provider type onto a channel; unknown types pass through."""
    if provider_type is None:
        return ChannelType.INTERNAL
    value = str(provider_type).strip().lower()
    if not value:
        return ChannelType.INTERNAL
    for needles, channel in _PROVIDER_CHANNELS:
        if any(needle in value for needle in needles):
            return channel
    return value
