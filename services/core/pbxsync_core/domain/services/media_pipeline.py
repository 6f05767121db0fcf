"""Media compression, backend migration, backup and restore.

The pipeline replaces stored media with smaller transcoded versions, but
only when the saving clears a minimum threshold. Every replacement can be
preceded by a backup: the original bytes are written to a local directory
together with a ``manifest.json`` describing where each file lived and
what its record looked like, so the whole run can be undone with
:meth:`MediaBackupService.restore`. Moving a tenant's files to another
storage backend writes the same kind of manifest.

Usage:
    pipeline = MediaCompressionPipeline(db, StorageRegistry(settings), settings)

    # Estimate only
    report = pipeline.run(category="image", dry_run=True)

    # Replace, keeping originals for rollback
    report = pipeline.run(category="all", backup_dir="/var/backups/media-2026-10-19")

    # Move a tenant from Supabase to S3
    MediaMigrationService(db, storage).migrate(7, "supabase", "s3", backup_dir="/var/backups/move-7")

    # Roll back either
    MediaBackupService(db, storage).restore("/var/backups/media-2026-10-19")
"""

import hashlib
import json
import mimetypes
import os
import posixpath
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from pbxsync_core.config import Settings, get_settings
from pbxsync_core.domain.errors import (
    CompressionNotBeneficial,
    StorageError,
    TranscodeError,
)
from pbxsync_core.domain.models import MediaFile, utcnow
from pbxsync_core.domain.services.transcode import (
    ImageTranscoder,
    TranscodeResult,
    Transcoder,
    VideoTranscoder,
)
from pbxsync_core.infrastructure.retry import RetryConfig, call_with_retry
from pbxsync_core.observability.logging import get_logger
from pbxsync_core.storage import StorageBackend, StorageRegistry

logger = get_logger(__name__)

STORAGE_RETRY = RetryConfig(
    max_attempts=3,
    base_delay=1.0,
    max_delay=10.0,
    retryable_exceptions=(StorageError,),
)


# =============================================================================
# CATEGORIES
# =============================================================================


class MediaCategory(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    ALL = "all"


IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".heic", ".tif", ".tiff"}
VIDEO_EXTENSIONS = {".mp4", ".mov", ".avi", ".webm", ".mkv", ".3gp", ".m4v"}

# Formats that gain nothing from re-encoding, or would lose animation/vector data
IMAGE_SKIP_TYPES = {"image/webp", "image/gif", "image/svg+xml"}


def category_of(media: MediaFile) -> Optional[MediaCategory]:
    mime = (media.mime_type or "").lower()
    if mime.startswith("image/"):
        return MediaCategory.IMAGE
    if mime.startswith("video/"):
        return MediaCategory.VIDEO
    ext = posixpath.splitext(media.storage_path or media.file_name)[1].lower()
    if ext in IMAGE_EXTENSIONS:
        return MediaCategory.IMAGE
    if ext in VIDEO_EXTENSIONS:
        return MediaCategory.VIDEO
    return None


def _mime_of(media: MediaFile) -> str:
    if media.mime_type:
        return media.mime_type.lower()
    guessed, _ = mimetypes.guess_type(media.file_name)
    return (guessed or "application/octet-stream").lower()


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _with_extension(path: str, extension: str) -> str:
    root, _ = posixpath.splitext(path)
    return f"{root}{extension}"


# =============================================================================
# DATA CLASSES
# =============================================================================


class OutcomeStatus(str, Enum):
    REPLACED = "replaced"
    ESTIMATED = "estimated"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class FileOutcome:
    media_id: int
    status: OutcomeStatus
    original_size: int
    new_size: Optional[int] = None
    reason: Optional[str] = None
    new_path: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "media_id": self.media_id,
            "status": self.status.value,
            "original_size": self.original_size,
            "new_size": self.new_size,
            "reason": self.reason,
            "new_path": self.new_path,
        }


@dataclass
class CompressionReport:
    dry_run: bool
    started_at: datetime = field(default_factory=utcnow)
    outcomes: list[FileOutcome] = field(default_factory=list)

    def add(self, outcome: FileOutcome) -> None:
        self.outcomes.append(outcome)

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def bytes_saved(self) -> int:
        return sum(
            o.original_size - o.new_size
            for o in self.outcomes
            if o.new_size is not None
            and o.status in (OutcomeStatus.REPLACED, OutcomeStatus.ESTIMATED)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat(),
            "processed": len(self.outcomes),
            "replaced": self.count(OutcomeStatus.REPLACED),
            "estimated": self.count(OutcomeStatus.ESTIMATED),
            "skipped": self.count(OutcomeStatus.SKIPPED),
            "failed": self.count(OutcomeStatus.FAILED),
            "bytes_saved": self.bytes_saved,
        }


@dataclass
class ManifestEntry:
    """Everything needed to put one media file back exactly as it was."""

    id: int
    tenant_id: int
    storage_backend: str
    storage_path: str
    file_name: str
    local_path: str
    file_size: int
    record_size: int
    mime_type: Optional[str]
    sha256: str
    message_id: Optional[int] = None
    conversation_id: Optional[int] = None
    original_size: Optional[int] = None
    compressed_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ManifestEntry":
        return cls(
            id=data["id"],
            tenant_id=data["tenant_id"],
            storage_backend=data["storage_backend"],
            storage_path=data["storage_path"],
            file_name=data["file_name"],
            local_path=data["local_path"],
            file_size=data["file_size"],
            record_size=data.get("record_size", data["file_size"]),
            mime_type=data.get("mime_type"),
            sha256=data["sha256"],
            message_id=data.get("message_id"),
            conversation_id=data.get("conversation_id"),
            original_size=data.get("original_size"),
            compressed_at=data.get("compressed_at"),
        )


class BackupManifest:
    """A backup directory: ``manifest.json`` plus ``files/<id><ext>``.

    The manifest is rewritten after every added file, so an interrupted
    run still leaves a manifest covering every original already saved.
    """

    FILE_NAME = "manifest.json"
    FILES_DIR = "files"
    VERSION = 1

    def __init__(self, root: Path, entries: Optional[list[ManifestEntry]] = None, created_at: Optional[str] = None):
        self.root = Path(root)
        self.entries: list[ManifestEntry] = entries or []
        self.created_at = created_at or utcnow().isoformat()
        self._ids = {e.id for e in self.entries}

    @classmethod
    def open_or_create(cls, root: str | Path) -> "BackupManifest":
        root = Path(root)
        if (root / cls.FILE_NAME).exists():
            return cls.load(root)
        (root / cls.FILES_DIR).mkdir(parents=True, exist_ok=True)
        manifest = cls(root)
        manifest.save()
        return manifest

    @classmethod
    def load(cls, root: str | Path) -> "BackupManifest":
        root = Path(root)
        with open(root / cls.FILE_NAME, encoding="utf-8") as f:
            data = json.load(f)
        entries = [ManifestEntry.from_dict(e) for e in data.get("files", [])]
        return cls(root, entries=entries, created_at=data.get("created_at"))

    @property
    def path(self) -> Path:
        return self.root / self.FILE_NAME

    def __contains__(self, media_id: int) -> bool:
        return media_id in self._ids

    def add(self, media: MediaFile, data: bytes) -> ManifestEntry:
        """Save ``data`` as the original of ``media`` and record it.

        A file already in the manifest is kept as first saved, so running
        the pipeline twice into one directory never overwrites an original
        with an already-compressed copy.
        """
        if media.id in self._ids:
            return next(e for e in self.entries if e.id == media.id)

        ext = posixpath.splitext(media.storage_path)[1].lower()
        local_path = f"{self.FILES_DIR}/{media.id}{ext}"
        target = self.root / local_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

        entry = ManifestEntry(
            id=media.id,
            tenant_id=media.tenant_id,
            storage_backend=media.storage_backend,
            storage_path=media.storage_path,
            file_name=media.file_name,
            local_path=local_path,
            file_size=len(data),
            record_size=media.file_size,
            mime_type=media.mime_type,
            sha256=_sha256(data),
            message_id=media.message_id,
            conversation_id=media.conversation_id,
            original_size=media.original_size,
            compressed_at=media.compressed_at.isoformat() if media.compressed_at else None,
        )
        self.entries.append(entry)
        self._ids.add(media.id)
        self.save()
        return entry

    def read(self, entry: ManifestEntry) -> bytes:
        return (self.root / entry.local_path).read_bytes()

    def save(self) -> None:
        payload = {
            "version": self.VERSION,
            "created_at": self.created_at,
            "files": [e.to_dict() for e in self.entries],
        }
        tmp = self.path.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp, self.path)


@dataclass
class BackupReport:
    manifest_path: str
    files: int = 0
    bytes: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "manifest_path": self.manifest_path,
            "files": self.files,
            "bytes": self.bytes,
            "failed": self.failed,
        }


@dataclass
class RestoreReport:
    restored: int = 0
    failed: int = 0
    missing: int = 0
    leftovers: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "restored": self.restored,
            "failed": self.failed,
            "missing": self.missing,
            "leftovers": self.leftovers,
            "errors": self.errors,
        }


# =============================================================================
# SELECTION
# =============================================================================


def select_media(
    db: Session,
    tenant_id: Optional[int] = None,
    category: MediaCategory = MediaCategory.ALL,
    limit: Optional[int] = None,
) -> Iterator[MediaFile]:
    """Media rows for a category, largest first."""
    query = db.query(MediaFile)
    if tenant_id is not None:
        query = query.filter(MediaFile.tenant_id == tenant_id)

    ext_filters = []
    if category in (MediaCategory.IMAGE, MediaCategory.ALL):
        ext_filters.append(MediaFile.mime_type.like("image/%"))
        ext_filters.extend(MediaFile.storage_path.ilike(f"%{ext}") for ext in IMAGE_EXTENSIONS)
    if category in (MediaCategory.VIDEO, MediaCategory.ALL):
        ext_filters.append(MediaFile.mime_type.like("video/%"))
        ext_filters.extend(MediaFile.storage_path.ilike(f"%{ext}") for ext in VIDEO_EXTENSIONS)
    query = query.filter(or_(*ext_filters))

    query = query.order_by(MediaFile.file_size.desc(), MediaFile.id)
    if limit:
        query = query.limit(limit)
    return iter(query.all())


# =============================================================================
# COMPRESSION
# =============================================================================


class MediaCompressionPipeline:
    """Transcode-and-replace with a minimum-benefit gate."""

    def __init__(
        self,
        db: Session,
        storage: StorageRegistry,
        settings: Optional[Settings] = None,
        transcoders: Optional[dict[MediaCategory, Transcoder]] = None,
        retry: RetryConfig = STORAGE_RETRY,
    ):
        self.db = db
        self.storage = storage
        self.settings = settings or get_settings()
        self.transcoders = transcoders or {
            MediaCategory.IMAGE: ImageTranscoder(
                max_dimension=self.settings.image_max_dimension,
                quality=self.settings.image_quality,
            ),
            MediaCategory.VIDEO: VideoTranscoder(
                ffmpeg_path=self.settings.ffmpeg_path,
                max_height=self.settings.video_max_height,
                video_bitrate=self.settings.video_bitrate,
            ),
        }
        self.retry = retry

    def skip_reason(self, media: MediaFile, category: MediaCategory) -> Optional[str]:
        """Why ``media`` should not be compressed, or ``None``."""
        size = media.file_size or 0
        mime = _mime_of(media)
        ext = posixpath.splitext(media.storage_path)[1].lower()

        if category == MediaCategory.IMAGE:
            if size < self.settings.compress_image_min_bytes:
                return "below_min_size"
            if mime in IMAGE_SKIP_TYPES or ext in (".webp", ".gif", ".svg"):
                return "efficient_format"
        elif category == MediaCategory.VIDEO:
            if size < self.settings.compress_video_min_bytes:
                return "below_min_size"
            is_mp4 = mime == "video/mp4" or ext == ".mp4"
            if is_mp4 and size < self.settings.compress_mp4_skip_below_bytes:
                return "efficient_format"
        else:
            return "unsupported_type"
        return None

    def check_benefit(self, original_size: int, new_size: int) -> float:
        """Return the saving in percent.

        Raises:
            CompressionNotBeneficial: If the saving is below the configured minimum.
        """
        if original_size <= 0:
            raise CompressionNotBeneficial(original_size, new_size, 0.0)
        saving = (original_size - new_size) / original_size * 100.0
        if saving < self.settings.compress_min_saving_percent:
            raise CompressionNotBeneficial(original_size, new_size, saving)
        return saving

    def _download(self, backend: StorageBackend, path: str) -> bytes:
        return call_with_retry(backend.download, self.retry, path)

    def _upload(self, backend: StorageBackend, path: str, data: bytes, content_type: str) -> None:
        call_with_retry(backend.upload, self.retry, path, data, content_type)

    def _target_taken(self, media: MediaFile, path: str) -> bool:
        if path == media.storage_path:
            return False
        other = (
            self.db.query(MediaFile.id)
            .filter(
                MediaFile.storage_backend == media.storage_backend,
                MediaFile.storage_path == path,
                MediaFile.id != media.id,
            )
            .first()
        )
        return other is not None

    def process(
        self,
        media: MediaFile,
        dry_run: bool = False,
        manifest: Optional[BackupManifest] = None,
    ) -> FileOutcome:
        """Compress one media file. Never raises for per-file problems."""
        original_size = media.file_size or 0
        category = category_of(media)
        reason = self.skip_reason(media, category) if category else "unsupported_type"
        if reason:
            return FileOutcome(media.id, OutcomeStatus.SKIPPED, original_size, reason=reason)

        transcoder = self.transcoders.get(category)
        if transcoder is None:
            return FileOutcome(media.id, OutcomeStatus.SKIPPED, original_size, reason="no_transcoder")

        backend = self.storage.for_media(media)
        try:
            original = self._download(backend, media.storage_path)
            result: TranscodeResult = transcoder.transcode(original, media.file_name)
            self.check_benefit(len(original), len(result.data))
        except CompressionNotBeneficial as e:
            return FileOutcome(
                media.id,
                OutcomeStatus.SKIPPED,
                original_size,
                new_size=e.new_size,
                reason=f"not_beneficial ({e.saving_percent:.1f}%)",
            )
        except (StorageError, TranscodeError) as e:
            logger.warning("Media compression failed", media_id=media.id, error=str(e))
            return FileOutcome(media.id, OutcomeStatus.FAILED, original_size, reason=str(e))

        new_path = _with_extension(media.storage_path, result.extension)
        if dry_run:
            return FileOutcome(
                media.id,
                OutcomeStatus.ESTIMATED,
                len(original),
                new_size=len(result.data),
                new_path=new_path,
            )

        if self._target_taken(media, new_path):
            return FileOutcome(media.id, OutcomeStatus.SKIPPED, original_size, reason="target_exists")

        return self._replace(media, backend, original, result, new_path, manifest)

    def _replace(
        self,
        media: MediaFile,
        backend: StorageBackend,
        original: bytes,
        result: TranscodeResult,
        new_path: str,
        manifest: Optional[BackupManifest],
    ) -> FileOutcome:
        old_path = media.storage_path
        try:
            if manifest is not None:
                manifest.add(media, original)
            self._upload(backend, new_path, result.data, result.mime_type)
        except (StorageError, OSError) as e:
            logger.warning("Media replacement aborted", media_id=media.id, error=str(e))
            return FileOutcome(media.id, OutcomeStatus.FAILED, len(original), reason=str(e))

        media.storage_path = new_path
        media.file_name = _with_extension(media.file_name, result.extension)
        media.mime_type = result.mime_type
        media.file_size = len(result.data)
        if media.original_size is None:
            media.original_size = len(original)
        media.compressed_at = utcnow()
        self.db.commit()

        if new_path != old_path:
            try:
                call_with_retry(backend.delete, self.retry, old_path)
            except StorageError as e:
                logger.warning(
                    "Old media object left behind",
                    media_id=media.id,
                    path=old_path,
                    error=str(e),
                )

        logger.info(
            "Media compressed",
            media_id=media.id,
            original_size=len(original),
            new_size=len(result.data),
        )
        return FileOutcome(
            media.id,
            OutcomeStatus.REPLACED,
            len(original),
            new_size=len(result.data),
            new_path=new_path,
        )

    def run(
        self,
        tenant_id: Optional[int] = None,
        category: MediaCategory | str = MediaCategory.ALL,
        dry_run: bool = False,
        backup_dir: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> CompressionReport:
        """Compress every eligible media file, largest first.

        Args:
            tenant_id: Restrict to one tenant; ``None`` for all.
            category: ``image``, ``video`` or ``all``.
            dry_run: Transcode in memory and report estimates; write nothing.
            backup_dir: Save originals and a manifest here before replacing.
            limit: Process at most this many files.
        """
        category = MediaCategory(category)
        report = CompressionReport(dry_run=dry_run)
        manifest = BackupManifest.open_or_create(backup_dir) if backup_dir and not dry_run else None

        for media in select_media(self.db, tenant_id, category, limit):
            report.add(self.process(media, dry_run=dry_run, manifest=manifest))

        logger.info("Compression run finished", tenant_id=tenant_id, **report.to_dict())
        return report


# =============================================================================
# BACKUP / RESTORE
# =============================================================================


class MediaBackupService:
    """Bulk download of originals and byte-identical restore."""

    def __init__(self, db: Session, storage: StorageRegistry, retry: RetryConfig = STORAGE_RETRY):
        self.db = db
        self.storage = storage
        self.retry = retry

    def backup(
        self,
        output_dir: str,
        tenant_id: Optional[int] = None,
        category: MediaCategory | str = MediaCategory.ALL,
        limit: Optional[int] = None,
    ) -> BackupReport:
        """Download media into ``output_dir`` and write its manifest."""
        manifest = BackupManifest.open_or_create(output_dir)
        report = BackupReport(manifest_path=str(manifest.path))

        for media in select_media(self.db, tenant_id, MediaCategory(category), limit):
            if media.id in manifest:
                continue
            try:
                data = call_with_retry(
                    self.storage.for_media(media).download, self.retry, media.storage_path
                )
                manifest.add(media, data)
            except (StorageError, OSError) as e:
                logger.warning("Media backup failed", media_id=media.id, error=str(e))
                report.failed += 1
                continue
            report.files += 1
            report.bytes += len(data)

        logger.info("Media backup finished", **report.to_dict())
        return report

    def restore(self, backup_dir: str) -> RestoreReport:
        """Put every file in the manifest back at its original location.

        For each entry: verify the saved bytes, upload them to the original
        path, put the record back as it was when saved, then delete the
        current object when it lives at another path or on another backend.
        Failures are counted per entry and do not stop the run.
        """
        manifest = BackupManifest.load(backup_dir)
        report = RestoreReport()

        for entry in manifest.entries:
            media = self.db.get(MediaFile, entry.id)
            if media is None:
                report.missing += 1
                continue

            try:
                data = manifest.read(entry)
                if _sha256(data) != entry.sha256:
                    raise StorageError(
                        f"Checksum mismatch for {entry.local_path}",
                        path=entry.local_path,
                    )
                target = self.storage.get(entry.storage_backend)
                call_with_retry(
                    target.upload,
                    self.retry,
                    entry.storage_path,
                    data,
                    entry.mime_type or "application/octet-stream",
                )
            except (StorageError, OSError) as e:
                report.failed += 1
                report.errors.append({"id": entry.id, "error": str(e)})
                logger.warning("Media restore failed", media_id=entry.id, error=str(e))
                continue

            current_backend = media.storage_backend
            current_path = media.storage_path

            media.storage_backend = entry.storage_backend
            media.storage_path = entry.storage_path
            media.file_name = entry.file_name
            media.mime_type = entry.mime_type
            media.file_size = entry.record_size
            media.original_size = entry.original_size
            media.compressed_at = (
                datetime.fromisoformat(entry.compressed_at) if entry.compressed_at else None
            )
            self.db.commit()
            report.restored += 1

            if (current_backend, current_path) != (entry.storage_backend, entry.storage_path):
                try:
                    call_with_retry(
                        self.storage.get(current_backend).delete, self.retry, current_path
                    )
                except StorageError as e:
                    report.leftovers += 1
                    logger.warning(
                        "Replacement object left behind",
                        media_id=entry.id,
                        path=current_path,
                        error=str(e),
                    )

        logger.info("Media restore finished", backup_dir=backup_dir, **report.to_dict())
        return report


# =============================================================================
# BACKEND MIGRATION
# =============================================================================


@dataclass
class MigrationReport:
    source_backend: str
    target_backend: str
    dry_run: bool
    manifest_path: Optional[str] = None
    migrated: int = 0
    skipped: int = 0
    failed: int = 0
    leftovers: int = 0
    bytes: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_backend": self.source_backend,
            "target_backend": self.target_backend,
            "dry_run": self.dry_run,
            "manifest_path": self.manifest_path,
            "migrated": self.migrated,
            "skipped": self.skipped,
            "failed": self.failed,
            "leftovers": self.leftovers,
            "bytes": self.bytes,
            "errors": self.errors,
        }


class MediaMigrationService:
    """Moves a tenant's media from one storage backend to another.

    Per file: download from the source, save the original into the backup
    manifest, upload to the target, repoint the record and commit, and only
    then delete the source object. A file whose upload fails keeps its
    record untouched. Restoring the manifest moves files back.
    """

    def __init__(self, db: Session, storage: StorageRegistry, retry: RetryConfig = STORAGE_RETRY):
        self.db = db
        self.storage = storage
        self.retry = retry

    def _target_taken(self, media: MediaFile, target_backend: str) -> bool:
        other = (
            self.db.query(MediaFile.id)
            .filter(
                MediaFile.storage_backend == target_backend,
                MediaFile.storage_path == media.storage_path,
                MediaFile.id != media.id,
            )
            .first()
        )
        return other is not None

    def migrate(
        self,
        tenant_id: int,
        source_backend: str,
        target_backend: str,
        backup_dir: Optional[str] = None,
        dry_run: bool = False,
        limit: Optional[int] = None,
    ) -> MigrationReport:
        """Move every media file of ``tenant_id`` off ``source_backend``.

        Args:
            tenant_id: Tenant whose media moves.
            source_backend: Backend name the files are on now.
            target_backend: Backend name they should end up on.
            backup_dir: Manifest directory recording each move for restore;
                required unless ``dry_run``.
            dry_run: Count files and bytes only; write nothing.
            limit: Move at most this many files.

        Raises:
            StorageError: If either backend is unknown or misconfigured.
            ValueError: If a real run has no ``backup_dir``.
        """
        if backup_dir is None and not dry_run:
            raise ValueError("A backup directory is required to migrate media")
        report = MigrationReport(source_backend, target_backend, dry_run)
        if source_backend == target_backend:
            return report

        source = self.storage.get(source_backend)
        target = self.storage.get(target_backend)

        query = (
            self.db.query(MediaFile)
            .filter(
                MediaFile.tenant_id == tenant_id,
                MediaFile.storage_backend == source_backend,
            )
            .order_by(MediaFile.id)
        )
        if limit:
            query = query.limit(limit)
        rows = query.all()

        if dry_run:
            report.migrated = len(rows)
            report.bytes = sum(m.file_size or 0 for m in rows)
            return report

        manifest = BackupManifest.open_or_create(backup_dir)
        report.manifest_path = str(manifest.path)

        for media in rows:
            if self._target_taken(media, target_backend):
                report.skipped += 1
                report.errors.append({"id": media.id, "error": "target_exists"})
                continue
            self._move(media, source, target, target_backend, manifest, report)

        logger.info("Media migration finished", tenant_id=tenant_id, **report.to_dict())
        return report

    def _move(
        self,
        media: MediaFile,
        source: StorageBackend,
        target: StorageBackend,
        target_backend: str,
        manifest: BackupManifest,
        report: MigrationReport,
    ) -> None:
        path = media.storage_path
        try:
            data = call_with_retry(source.download, self.retry, path)
            manifest.add(media, data)
            call_with_retry(target.upload, self.retry, path, data, _mime_of(media))
        except (StorageError, OSError) as e:
            report.failed += 1
            report.errors.append({"id": media.id, "error": str(e)})
            logger.warning("Media migration failed", media_id=media.id, error=str(e))
            return

        media.storage_backend = target_backend
        self.db.commit()
        report.migrated += 1
        report.bytes += len(data)

        try:
            call_with_retry(source.delete, self.retry, path)
        except StorageError as e:
            report.leftovers += 1
            logger.warning(
                "Source object left behind after migration",
                media_id=media.id,
                path=path,
                error=str(e),
            )


__all__ = [
    "BackupManifest",
    "CompressionReport",
    "MediaBackupService",
    "MediaCategory",
    "MediaCompressionPipeline",
    "MediaMigrationService",
    "MigrationReport",
    "RestoreReport",
]
