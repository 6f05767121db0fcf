"""Getting media blobs into the archive.

Two ways a stored file gets a ``media_files`` row:

    ingest     copy chat attachments from the PBX host over SFTP into the
               tenant's storage backend, registering each one
    discovery  list every configured backend under the tenant's prefix and
               register objects that have no row yet (uploads made outside
               the sync, rows lost to a failed run)

Both leave the files orphaned (no ``message_id``); the media linker
attaches them to messages afterwards.

Usage:
    with open_sftp(endpoint) as sftp:
        MediaIngestService(db, storage, settings).ingest(tenant, sftp)

    MediaDiscovery(db, storage).discover(tenant)
"""

import io
import mimetypes
import posixpath
import re
import stat
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from sqlalchemy.orm import Session

from pbxsync_core.config import Settings, get_settings
from pbxsync_core.domain.errors import MergeError, StorageError
from pbxsync_core.domain.models import Tenant
from pbxsync_core.domain.services.merge import MergeService
from pbxsync_core.infrastructure.retry import RetryConfig, call_with_retry
from pbxsync_core.observability.logging import get_logger
from pbxsync_core.storage import StorageRegistry

logger = get_logger(__name__)

CHAT_MEDIA_FOLDER = "chat-media"

STORAGE_RETRY = RetryConfig(
    max_attempts=3,
    base_delay=1.0,
    max_delay=10.0,
    retryable_exceptions=(StorageError,),
)

_UNSAFE_CHARS = re.compile(r"[#%&{}<>*?$!'\":@+`|=\\]")
_REPEATED_UNDERSCORES = re.compile(r"_+")


def safe_segment(segment: str) -> str:
    """Make one path segment safe for every storage backend's key rules."""
    cleaned = segment.replace("[", "(").replace("]", ")")
    cleaned = _REPEATED_UNDERSCORES.sub("_", _UNSAFE_CHARS.sub("_", cleaned))
    return cleaned.strip("_") or "_"


def chat_media_path(tenant: Tenant, relative_path: str) -> str:
    """Storage key for a PBX chat file, keeping its subfolders."""
    parts = [safe_segment(p) for p in relative_path.split("/") if p and p != ".."]
    return posixpath.join(tenant.slug, CHAT_MEDIA_FOLDER, *parts)


def guess_mime_type(name: str) -> Optional[str]:
    guessed, _ = mimetypes.guess_type(name)
    return guessed


# =============================================================================
# INGEST
# =============================================================================


@dataclass(frozen=True)
class RemoteFile:
    full_path: str
    relative_path: str
    size: int

    @property
    def name(self) -> str:
        return posixpath.basename(self.relative_path)


@dataclass
class IngestResult:
    source_path: Optional[str] = None
    found: int = 0
    synced: int = 0
    skipped: int = 0
    too_large: int = 0
    deferred: int = 0
    bytes: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_path": self.source_path,
            "found": self.found,
            "synced": self.synced,
            "skipped": self.skipped,
            "too_large": self.too_large,
            "deferred": self.deferred,
            "bytes": self.bytes,
            "failed": len(self.errors),
        }


def walk_sftp(sftp: Any, root: str) -> Iterator[RemoteFile]:
    """Every regular file under ``root``, depth first, sorted by name.

    A missing ``root`` yields nothing.
    """
    pending = [""]
    while pending:
        relative_dir = pending.pop()
        directory = posixpath.join(root, relative_dir) if relative_dir else root
        try:
            entries = sorted(sftp.listdir_attr(directory), key=lambda a: a.filename)
        except FileNotFoundError:
            if relative_dir:
                continue
            return
        for attr in entries:
            relative = posixpath.join(relative_dir, attr.filename) if relative_dir else attr.filename
            if attr.st_mode is not None and stat.S_ISDIR(attr.st_mode):
                pending.append(relative)
            elif attr.st_mode is None or stat.S_ISREG(attr.st_mode):
                yield RemoteFile(
                    full_path=posixpath.join(root, relative),
                    relative_path=relative,
                    size=attr.st_size or 0,
                )


class MediaIngestService:
    """Copies new PBX chat attachments into central storage."""

    def __init__(
        self,
        db: Session,
        storage: StorageRegistry,
        settings: Optional[Settings] = None,
        retry: RetryConfig = STORAGE_RETRY,
    ):
        self.db = db
        self.storage = storage
        self.settings = settings or get_settings()
        self.retry = retry
        self.merge = MergeService(db)

    def find_files(self, sftp: Any) -> tuple[Optional[str], list[RemoteFile]]:
        """First configured chat-files directory that holds any files."""
        for root in self.settings.pbx_chat_files_paths:
            files = list(walk_sftp(sftp, root))
            if files:
                return root, files
        return None, []

    def ingest(self, tenant: Tenant, sftp: Any) -> IngestResult:
        """Upload and register every chat file not yet in storage.

        Per-file failures are collected in the result; the pass continues.

        Raises:
            StorageError: If the tenant's storage backend is unusable.
            OSError: If listing the PBX directories fails for a reason other
                than a missing directory.
        """
        result = IngestResult()
        backend_name = tenant.default_storage_backend
        backend = self.storage.get(backend_name)

        root, files = self.find_files(sftp)
        if root is None:
            logger.info(
                "No chat media found on PBX",
                tenant_id=tenant.id,
                paths=self.settings.pbx_chat_files_paths,
            )
            return result
        result.source_path = root
        result.found = len(files)

        known = self.merge.registered_paths(tenant.id, backend_name)
        for remote in files:
            if remote.size > self.settings.media_ingest_max_file_bytes:
                result.too_large += 1
                continue
            storage_path = chat_media_path(tenant, remote.relative_path)
            if storage_path in known:
                result.skipped += 1
                continue
            if result.synced + len(result.errors) >= self.settings.media_ingest_max_files_per_cycle:
                result.deferred += 1
                continue

            try:
                buffer = io.BytesIO()
                sftp.getfo(remote.full_path, buffer)
                data = buffer.getvalue()
                mime_type = guess_mime_type(remote.name)
                call_with_retry(
                    backend.upload,
                    self.retry,
                    storage_path,
                    data,
                    mime_type or "application/octet-stream",
                )
                self.merge.register_media(
                    tenant.id,
                    file_name=remote.name,
                    storage_backend=backend_name,
                    storage_path=storage_path,
                    file_size=len(data),
                    mime_type=mime_type,
                )
                self.db.commit()
            except (StorageError, MergeError, OSError) as e:
                self.db.rollback()
                result.errors.append({"file": remote.relative_path, "error": str(e)})
                logger.warning(
                    "Chat media ingest failed",
                    tenant_id=tenant.id,
                    file=remote.relative_path,
                    error=str(e),
                )
                continue

            known.add(storage_path)
            result.synced += 1
            result.bytes += len(data)

        logger.info("Chat media ingest finished", tenant_id=tenant.id, **result.to_dict())
        return result


# =============================================================================
# DISCOVERY
# =============================================================================


@dataclass
class DiscoveryResult:
    backends: list[str] = field(default_factory=list)
    listed: int = 0
    registered: int = 0
    conflicts: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "backends": self.backends,
            "listed": self.listed,
            "registered": self.registered,
            "conflicts": self.conflicts,
            "errors": self.errors,
        }


class MediaDiscovery:
    """Registers stored objects that have no ``media_files`` row."""

    def __init__(self, db: Session, storage: StorageRegistry):
        self.db = db
        self.storage = storage
        self.merge = MergeService(db)

    def discover(self, tenant: Tenant, backends: Optional[list[str]] = None) -> DiscoveryResult:
        """List each backend under ``<slug>/`` and register unknown objects.

        A backend that cannot be listed is reported and skipped; the others
        are still scanned. An object whose location is already registered
        to another tenant is counted as a conflict and left alone.
        """
        result = DiscoveryResult()
        prefix = f"{tenant.slug}/"

        for name in backends or self.storage.configured_names():
            result.backends.append(name)
            try:
                backend = self.storage.get(name)
                objects = list(backend.list_objects(prefix))
            except StorageError as e:
                result.errors.append({"backend": name, "error": str(e)})
                logger.warning(
                    "Storage listing failed", tenant_id=tenant.id, backend=name, error=str(e)
                )
                continue

            result.listed += len(objects)
            known = self.merge.registered_paths(tenant.id, name)
            for obj in objects:
                if obj.path in known:
                    continue
                file_name = posixpath.basename(obj.path)
                try:
                    self.merge.register_media(
                        tenant.id,
                        file_name=file_name,
                        storage_backend=name,
                        storage_path=obj.path,
                        file_size=obj.size,
                        mime_type=guess_mime_type(file_name),
                    )
                    self.db.commit()
                except MergeError as e:
                    self.db.rollback()
                    result.conflicts += 1
                    logger.warning(
                        "Stored object not registered",
                        tenant_id=tenant.id,
                        backend=name,
                        path=obj.path,
                        error=str(e),
                    )
                    continue
                result.registered += 1

        logger.info("Storage discovery finished", tenant_id=tenant.id, **result.to_dict())
        return result


__all__ = [
    "DiscoveryResult",
    "IngestResult",
    "MediaDiscovery",
    "MediaIngestService",
    "RemoteFile",
    "chat_media_path",
    "walk_sftp",
]
