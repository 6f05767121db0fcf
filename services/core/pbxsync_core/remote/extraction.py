"""Read-only extraction from a tenant's PBX PostgreSQL database.

The PBX keeps recent chat activity in live tables (``chat_message``,
``chat_conversation``) and archives it into views
(``chat_messages_history_view``, ``chat_history_view``). A message can be
present in either or both, so every delta page reads both sources,
reconciles them (the archived copy wins) and cuts the page where neither
source can still hold unseen rows.

Usage:
    with open_tunnel(params) as endpoint:
        with RemoteExtractionClient.connect(endpoint, db_name, user, password) as client:
            batch = client.fetch_message_batch(cursor=None)
            while batch.has_more:
                batch = client.fetch_message_batch(batch.next_cursor)
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

import psycopg2
import psycopg2.errors
from psycopg2.extras import RealDictCursor

from pbxsync_core.domain.errors import ConnectivityError, SourceQueryError
from pbxsync_core.observability.logging import get_logger
from pbxsync_core.remote.records import (
    ExtractedBatch,
    MessageCursor,
    RemoteConversation,
    RemoteExtension,
    RemoteMessage,
    RemoteParticipant,
    SourceKind,
    parse_participants,
    reconcile,
)
from pbxsync_core.remote.tunnel import TunnelEndpoint

logger = get_logger(__name__)


# =============================================================================
# QUERIES
# =============================================================================

LIVE_MESSAGES_SQL = """
    SELECT
        m.id_message::text AS message_id,
        m.fkid_chat_conversation::text AS conversation_id,
        c.is_external,
        c.queue_no::text AS queue_number,
        m.party AS sender_participant_no,
        NULL::text AS sender_participant_name,
        NULL::text AS sender_participant_phone,
        m.time_sent,
        m.message
    FROM chat_message m
    JOIN chat_conversation c ON c.id = m.fkid_chat_conversation
    {where}
    ORDER BY m.time_sent, m.id_message::text COLLATE "C"
    LIMIT %(limit)s
"""

LIVE_MESSAGES_AFTER = """
    WHERE m.time_sent > %(after_ts)s
       OR (m.time_sent = %(after_ts)s AND m.id_message::text COLLATE "C" > %(after_id)s)
"""

HISTORY_MESSAGES_SQL = """
    SELECT
        message_id::text AS message_id,
        conversation_id::text AS conversation_id,
        is_external,
        queue_number::text AS queue_number,
        sender_participant_no,
        sender_participant_name,
        sender_participant_phone,
        time_sent,
        message
    FROM chat_messages_history_view
    {where}
    ORDER BY time_sent, message_id::text COLLATE "C"
    LIMIT %(limit)s
"""

HISTORY_MESSAGES_AFTER = """
    WHERE time_sent > %(after_ts)s
       OR (time_sent = %(after_ts)s AND message_id::text COLLATE "C" > %(after_id)s)
"""

LIVE_CONVERSATIONS_BY_ID_SQL = """
    SELECT
        c.id::text AS conversation_id,
        c.public_name AS chat_name,
        c.is_external,
        c.queue_no::text AS queue_number,
        c.provider_type::text AS provider_type,
        c.participants_grp_array::text AS participants_grp_array
    FROM chat_conversation c
    WHERE c.id::text = ANY(%(ids)s)
"""

LIVE_CONVERSATIONS_PAGE_SQL = """
    SELECT
        c.id::text AS conversation_id,
        c.public_name AS chat_name,
        c.is_external,
        c.queue_no::text AS queue_number,
        c.provider_type::text AS provider_type,
        c.participants_grp_array::text AS participants_grp_array,
        c.id AS sort_id
    FROM chat_conversation c
    WHERE c.id > %(after_id)s
    ORDER BY c.id
    LIMIT %(limit)s
"""

HISTORY_CONVERSATIONS_SQL = """
    SELECT DISTINCT ON (conversation_id)
        conversation_id::text AS conversation_id,
        chat_name,
        is_external,
        queue_number::text AS queue_number,
        provider_type::text AS provider_type,
        participants_grp_array::text AS participants_grp_array
    FROM chat_history_view
    WHERE conversation_id::text = ANY(%(ids)s)
    ORDER BY conversation_id, time_sent DESC
"""

EXTENSIONS_V20_SQL = """
    SELECT
        dn.iddn::text AS external_id,
        dn.number AS extension_number,
        dn.firstname,
        dn.lastname
    FROM dn
    WHERE dn.number IS NOT NULL
      AND dn.dntype = 0
    ORDER BY dn.number
"""

EXTENSIONS_LEGACY_SQL = """
    SELECT
        e.id::text AS external_id,
        e.number AS extension_number,
        e.firstname,
        e.lastname
    FROM extensions e
    WHERE e.number IS NOT NULL
    ORDER BY e.number
"""

SCHEMA_OBJECTS_SQL = """
    SELECT table_name
    FROM information_schema.tables
    WHERE table_schema = 'public'
      AND table_name = ANY(%(names)s)
"""

REQUIRED_OBJECTS = (
    "chat_message",
    "chat_conversation",
    "chat_messages_history_view",
    "chat_history_view",
)


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class SchemaReport:
    """Which chat tables and views the remote database exposes."""

    present: list[str] = field(default_factory=list)

    @property
    def missing(self) -> list[str]:
        return [name for name in REQUIRED_OBJECTS if name not in self.present]

    @property
    def is_complete(self) -> bool:
        return not self.missing

    def to_dict(self) -> dict[str, Any]:
        return {"present": self.present, "missing": self.missing}


# =============================================================================
# CLIENT
# =============================================================================


def _to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class RemoteExtractionClient:
    """Reads deltas from one PBX database connection.

    All queries run through :meth:`_query`, which maps driver errors onto
    the sync error taxonomy: missing schema objects become
    ``SourceQueryError``; dropped connections and statement timeouts become
    ``ConnectivityError`` with ``stage="db"``.
    """

    def __init__(self, connection: Any, batch_size: int = 100):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self._conn = connection
        self.batch_size = batch_size

    @classmethod
    def connect(
        cls,
        endpoint: TunnelEndpoint,
        db_name: str,
        db_user: str,
        db_password: Optional[str],
        batch_size: int = 100,
        connect_timeout: int = 15,
        statement_timeout_ms: int = 120_000,
    ) -> "RemoteExtractionClient":
        """Open a read-only session through a tunnel endpoint."""
        try:
            conn = psycopg2.connect(
                host=endpoint.host,
                port=endpoint.port,
                dbname=db_name,
                user=db_user,
                password=db_password,
                connect_timeout=connect_timeout,
                application_name="pbxsync",
                options=f"-c statement_timeout={statement_timeout_ms} -c timezone=UTC",
            )
            conn.set_session(readonly=True, autocommit=True)
        except psycopg2.OperationalError as e:
            raise ConnectivityError(f"PBX database connect failed: {e}", stage="db") from e
        return cls(conn, batch_size=batch_size)

    def close(self) -> None:
        if self._conn is not None and not self._conn.closed:
            self._conn.close()

    def __enter__(self) -> "RemoteExtractionClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Query plumbing
    # -------------------------------------------------------------------------

    @contextmanager
    def _translate_errors(self, name: str) -> Iterator[None]:
        try:
            yield
        except (psycopg2.errors.UndefinedTable, psycopg2.errors.UndefinedColumn) as e:
            raise SourceQueryError(f"{name}: missing schema object: {e}", source=name) from e
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            raise ConnectivityError(f"{name}: {e}", stage="db") from e
        except (psycopg2.ProgrammingError, psycopg2.DataError) as e:
            raise SourceQueryError(f"{name}: {e}", source=name) from e

    def _query(self, name: str, sql: str, params: Optional[dict] = None) -> list[dict]:
        """Run one named query and return its rows as dicts."""
        with self._translate_errors(name):
            with self._conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, params or {})
                rows = [dict(row) for row in cur.fetchall()]
        logger.debug("Remote query", query=name, rows=len(rows))
        return rows

    # -------------------------------------------------------------------------
    # Schema
    # -------------------------------------------------------------------------

    def check_schema(self) -> SchemaReport:
        rows = self._query(
            "schema_objects", SCHEMA_OBJECTS_SQL, {"names": list(REQUIRED_OBJECTS)}
        )
        present = sorted({row["table_name"] for row in rows})
        return SchemaReport(present=present)

    # -------------------------------------------------------------------------
    # Extensions
    # -------------------------------------------------------------------------

    def fetch_extensions(self) -> list[RemoteExtension]:
        """Fetch all extensions, trying the v20 ``dn`` table first."""
        try:
            rows = self._query("extensions_v20", EXTENSIONS_V20_SQL)
        except SourceQueryError as e:
            logger.warning("v20 extension table unavailable, using legacy table", error=str(e))
            rows = self._query("extensions_legacy", EXTENSIONS_LEGACY_SQL)

        extensions = []
        for row in rows:
            number = str(row["extension_number"]).strip()
            if not number:
                continue
            extensions.append(
                RemoteExtension(
                    number=number,
                    external_id=row.get("external_id"),
                    first_name=(row.get("firstname") or None),
                    last_name=(row.get("lastname") or None),
                )
            )
        return extensions

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def _message_params(self, cursor: Optional[MessageCursor]) -> dict:
        params: dict[str, Any] = {"limit": self.batch_size}
        if cursor is not None:
            params["after_ts"] = cursor.sent_at
            params["after_id"] = cursor.message_id
        return params

    def _message_from_row(self, row: dict, source: SourceKind) -> RemoteMessage:
        if row.get("message_id") is None or row.get("conversation_id") is None:
            raise SourceQueryError(f"{source.value} message row without ids", source=source.value)
        if row.get("time_sent") is None:
            raise SourceQueryError(
                f"{source.value} message {row['message_id']} has no time_sent",
                source=source.value,
            )
        return RemoteMessage(
            external_id=str(row["message_id"]),
            conversation_external_id=str(row["conversation_id"]),
            sent_at=_to_utc_naive(row["time_sent"]),
            source=source,
            content=row.get("message"),
            sender_number=(row.get("sender_participant_no") or None),
            sender_name=(row.get("sender_participant_name") or None),
            sender_phone=(row.get("sender_participant_phone") or None),
            is_external=bool(row.get("is_external")),
            queue_number=row.get("queue_number"),
        )

    def fetch_live_messages(self, cursor: Optional[MessageCursor]) -> list[RemoteMessage]:
        sql = LIVE_MESSAGES_SQL.format(where=LIVE_MESSAGES_AFTER if cursor else "")
        rows = self._query("live_messages", sql, self._message_params(cursor))
        return [self._message_from_row(row, SourceKind.LIVE) for row in rows]

    def fetch_history_messages(self, cursor: Optional[MessageCursor]) -> list[RemoteMessage]:
        sql = HISTORY_MESSAGES_SQL.format(where=HISTORY_MESSAGES_AFTER if cursor else "")
        rows = self._query("history_messages", sql, self._message_params(cursor))
        return [self._message_from_row(row, SourceKind.HISTORICAL) for row in rows]

    def fetch_message_batch(self, cursor: Optional[MessageCursor]) -> ExtractedBatch:
        """Fetch the next page of messages after ``cursor`` from both sources.

        A source that returned a full page may hold more rows beyond its
        last one, so the merged page is cut at the smallest such last key.
        Everything at or before the cut has been seen from both sources.

        Returns:
            ExtractedBatch with the referenced conversations and their
            participants, and the cursor to resume from.
        """
        live = self.fetch_live_messages(cursor)
        history = self.fetch_history_messages(cursor)

        messages = reconcile(live + history)
        messages.sort(key=lambda m: m.cursor.key())

        full_pages = [rows for rows in (live, history) if len(rows) >= self.batch_size]
        has_more = bool(full_pages)
        if full_pages:
            cutoff = min(max(m.cursor.key() for m in rows) for rows in full_pages)
            messages = [m for m in messages if m.cursor.key() <= cutoff]

        next_cursor = messages[-1].cursor if messages else cursor

        conversation_ids = list(dict.fromkeys(m.conversation_external_id for m in messages))
        conversations = self.fetch_conversations(conversation_ids, messages)
        participants = self._participants_for(conversations, messages)

        return ExtractedBatch(
            conversations=conversations,
            participants=participants,
            messages=messages,
            next_cursor=next_cursor,
            has_more=has_more,
        )

    # -------------------------------------------------------------------------
    # Conversations
    # -------------------------------------------------------------------------

    @staticmethod
    def _conversation_from_row(row: dict, source: SourceKind) -> RemoteConversation:
        return RemoteConversation(
            external_id=str(row["conversation_id"]),
            source=source,
            chat_name=(row.get("chat_name") or None),
            is_external=bool(row.get("is_external")),
            queue_number=row.get("queue_number"),
            provider_type=row.get("provider_type"),
            participants_raw=row.get("participants_grp_array"),
        )

    def fetch_conversations(
        self,
        conversation_ids: list[str],
        messages: Optional[list[RemoteMessage]] = None,
    ) -> list[RemoteConversation]:
        """Fetch metadata for ``conversation_ids`` from both sources.

        A conversation found in neither source gets a placeholder built
        from its first message so that its messages can still be merged.
        """
        if not conversation_ids:
            return []

        live_rows = self._query(
            "live_conversations", LIVE_CONVERSATIONS_BY_ID_SQL, {"ids": conversation_ids}
        )
        history_rows = self._query(
            "history_conversations", HISTORY_CONVERSATIONS_SQL, {"ids": conversation_ids}
        )
        found = reconcile(
            [self._conversation_from_row(r, SourceKind.LIVE) for r in live_rows]
            + [self._conversation_from_row(r, SourceKind.HISTORICAL) for r in history_rows]
        )
        by_id = {c.external_id: c for c in found}

        first_message: dict[str, RemoteMessage] = {}
        for message in messages or []:
            first_message.setdefault(message.conversation_external_id, message)

        result = []
        for conversation_id in conversation_ids:
            conversation = by_id.get(conversation_id)
            if conversation is None:
                seed = first_message.get(conversation_id)
                logger.warning(
                    "Conversation metadata missing from both sources",
                    conversation_id=conversation_id,
                )
                conversation = RemoteConversation(
                    external_id=conversation_id,
                    source=seed.source if seed else SourceKind.LIVE,
                    is_external=seed.is_external if seed else False,
                    queue_number=seed.queue_number if seed else None,
                )
            result.append(conversation)
        return result

    def fetch_live_conversations(
        self, after_id: int = 0, limit: Optional[int] = None
    ) -> tuple[list[RemoteConversation], Optional[int]]:
        """Page through every live conversation, including ones with no messages.

        Returns:
            The page and the id to pass as ``after_id`` next, or ``None``
            when the last page has been read.
        """
        limit = limit or self.batch_size
        rows = self._query(
            "live_conversation_page",
            LIVE_CONVERSATIONS_PAGE_SQL,
            {"after_id": after_id, "limit": limit},
        )
        conversations = [self._conversation_from_row(r, SourceKind.LIVE) for r in rows]
        next_after = int(rows[-1]["sort_id"]) if len(rows) >= limit else None
        return conversations, next_after

    # -------------------------------------------------------------------------
    # Participants
    # -------------------------------------------------------------------------

    @staticmethod
    def _participants_for(
        conversations: list[RemoteConversation],
        messages: list[RemoteMessage],
    ) -> list[RemoteParticipant]:
        """Participants from the conversations' arrays plus every message sender."""
        seen: dict[tuple[str, str], RemoteParticipant] = {}

        def add(participant: RemoteParticipant) -> None:
            key = (participant.conversation_external_id, participant.identifier)
            current = seen.get(key)
            if current is None:
                seen[key] = participant
            elif not current.name and participant.name:
                current.name = participant.name

        for conversation in conversations:
            for identifier, name in parse_participants(conversation.participants_raw):
                add(
                    RemoteParticipant(
                        conversation_external_id=conversation.external_id,
                        identifier=identifier,
                        name=name,
                        is_external=conversation.is_external,
                    )
                )

        for message in messages:
            identifier = message.sender_number or message.sender_phone
            if not identifier:
                continue
            add(
                RemoteParticipant(
                    conversation_external_id=message.conversation_external_id,
                    identifier=str(identifier).strip(),
                    name=message.sender_name,
                    is_external=message.is_external,
                )
            )

        return list(seen.values())


__all__ = ["RemoteExtractionClient", "SchemaReport"]
