"""Media linker: attach orphaned media files to the messages that mention them.

A media file is orphaned when it was stored without a known owning
message. The linker scans the tenant's candidate messages (those flagged
as carrying media, plus the most recent ones) newest first and links the
orphan to the first message whose content refers to the file name.

Matching rules, checked per message:
    1. the full file name appears in the content (case-insensitive)
    2. the file name without extension appears, if long enough
    3. rules 1 and 2 against the percent-decoded content
    4. a UUID embedded anywhere in the file name appears in the content

When two different messages with the same timestamp both match, the
choice is ambiguous and the orphan is left alone.

Usage:
    linker = MediaLinker(db)
    result = linker.link_orphans(tenant_id)
    db.commit()
"""

import posixpath
import re
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import unquote

from sqlalchemy import or_
from sqlalchemy.orm import Session

from pbxsync_core.domain.errors import LinkAmbiguous
from pbxsync_core.domain.models import MediaFile, Message
from pbxsync_core.observability.logging import get_logger

logger = get_logger(__name__)

UUID_RE = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE
)
PERCENT_ESCAPE_RE = re.compile(r"%[0-9A-Fa-f]{2}")


@dataclass
class LinkResult:
    """Outcome of one linker pass."""

    scanned: int = 0
    linked: int = 0
    unlinked: int = 0
    ambiguous: int = 0
    repaired: int = 0
    linked_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "linked": self.linked,
            "unlinked": self.unlinked,
            "ambiguous": self.ambiguous,
            "repaired": self.repaired,
        }


@dataclass
class _Candidate:
    message: Message
    content: str
    decoded: Optional[str]


def _file_parts(file_name: str) -> tuple[str, str]:
    name = posixpath.basename(file_name).lower()
    stem, _ext = posixpath.splitext(name)
    return name, stem


class MediaLinker:
    """Heuristic orphan-to-message linker."""

    def __init__(self, db: Session, recent_window: int = 1000, min_basename_length: int = 6):
        self.db = db
        self.recent_window = recent_window
        self.min_basename_length = min_basename_length

    def _candidates(self, tenant_id: int) -> list[_Candidate]:
        recent_ids = [
            row[0]
            for row in self.db.query(Message.id)
            .filter(Message.tenant_id == tenant_id)
            .order_by(Message.sent_at.desc(), Message.id.desc())
            .limit(self.recent_window)
        ]
        query = self.db.query(Message).filter(
            Message.tenant_id == tenant_id,
            Message.content.isnot(None),
        )
        if recent_ids:
            query = query.filter(or_(Message.has_media.is_(True), Message.id.in_(recent_ids)))
        else:
            query = query.filter(Message.has_media.is_(True))

        candidates = []
        for message in query.order_by(Message.sent_at.desc(), Message.id.desc()):
            content = message.content.lower()
            decoded = None
            if PERCENT_ESCAPE_RE.search(content):
                decoded = unquote(content)
            candidates.append(_Candidate(message=message, content=content, decoded=decoded))
        return candidates

    def _matches(self, media: MediaFile, candidate: _Candidate) -> bool:
        name, stem = _file_parts(media.file_name)
        texts = [candidate.content]
        if candidate.decoded is not None:
            texts.append(candidate.decoded)

        for text in texts:
            if name and name in text:
                return True
            if len(stem) >= self.min_basename_length and stem in text:
                return True

        embedded = UUID_RE.search(name)
        if embedded is not None:
            token = embedded.group(0).lower()
            return any(token in text for text in texts)
        return False

    def match(self, media: MediaFile, candidates: list[_Candidate]) -> Optional[Message]:
        """Pick the owning message for ``media`` from newest-first candidates.

        Raises:
            LinkAmbiguous: If the newest match shares its timestamp with
                another matching message.
        """
        best: Optional[Message] = None
        tied: list[int] = []
        for candidate in candidates:
            message = candidate.message
            if best is not None and message.sent_at != best.sent_at:
                break
            if self._matches(media, candidate):
                if best is None:
                    best = message
                    tied = [message.id]
                else:
                    tied.append(message.id)
        if len(tied) > 1:
            raise LinkAmbiguous(media.id, tied)
        return best

    def link_orphans(self, tenant_id: int) -> LinkResult:
        """Link this tenant's orphaned media files where a match is found."""
        result = LinkResult()
        orphans = (
            self.db.query(MediaFile)
            .filter(MediaFile.tenant_id == tenant_id, MediaFile.message_id.is_(None))
            .order_by(MediaFile.id)
            .all()
        )
        if not orphans:
            return result

        candidates = self._candidates(tenant_id)
        for media in orphans:
            result.scanned += 1
            try:
                message = self.match(media, candidates)
            except LinkAmbiguous as e:
                logger.info(
                    "Ambiguous media link skipped",
                    tenant_id=tenant_id,
                    media_id=media.id,
                    message_ids=e.message_ids,
                )
                result.ambiguous += 1
                result.unlinked += 1
                continue

            if message is None:
                result.unlinked += 1
                continue

            media.message_id = message.id
            media.conversation_id = message.conversation_id
            result.linked += 1
            result.linked_ids.append(media.id)

        self.db.flush()
        logger.info("Media link pass finished", tenant_id=tenant_id, **result.to_dict())
        return result

    def repair_links(self, tenant_id: int) -> int:
        """Align ``conversation_id`` of linked media with its message's conversation.

        Returns:
            Number of media rows corrected.
        """
        repaired = 0
        rows = (
            self.db.query(MediaFile, Message.conversation_id)
            .join(Message, Message.id == MediaFile.message_id)
            .filter(
                MediaFile.tenant_id == tenant_id,
                Message.tenant_id == tenant_id,
                or_(
                    MediaFile.conversation_id.is_(None),
                    MediaFile.conversation_id != Message.conversation_id,
                ),
            )
            .all()
        )
        for media, conversation_id in rows:
            media.conversation_id = conversation_id
            repaired += 1

        if repaired:
            self.db.flush()
            logger.warning("Repaired media conversation links", tenant_id=tenant_id, repaired=repaired)
        return repaired


__all__ = ["LinkResult", "MediaLinker"]
