"""Unit tests for media compression, backup and restore."""

import json
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from pbxsync_core.domain.errors import StorageError
from pbxsync_core.domain.models import MediaFile
from pbxsync_core.domain.services.media_pipeline import (
    BackupManifest,
    MediaBackupService,
    MediaCategory,
    MediaCompressionPipeline,
    MediaMigrationService,
    OutcomeStatus,
    category_of,
    select_media,
)
from pbxsync_core.domain.services.transcode import TranscodeResult
from pbxsync_core.infrastructure.retry import RetryConfig
from pbxsync_core.storage import StorageRegistry
from pbxsync_core.storage.filesystem import FilesystemStorageBackend

from tests.factories import create_media_file

MB = 1024 * 1024
NO_RETRY = RetryConfig(max_attempts=1)


class FakeTranscoder:
    """Returns ``new_size`` bytes of output, whatever the input."""

    def __init__(self, new_size, mime_type="image/webp", extension=".webp"):
        self.new_size = new_size
        self.mime_type = mime_type
        self.extension = extension
        self.calls = []

    def transcode(self, data, file_name):
        self.calls.append(file_name)
        return TranscodeResult(data=b"w" * self.new_size, mime_type=self.mime_type, extension=self.extension)


def stored_media(db_session, tenant, fs_storage, file_name, data, **kwargs):
    media = create_media_file(db_session, tenant, file_name=file_name, file_size=len(data), **kwargs)
    fs_storage.upload(media.storage_path, data, media.mime_type or "application/octet-stream")
    return media


@pytest.fixture
def original_bytes():
    return bytes(range(256)) * (10 * MB // 256)


def make_pipeline(db_session, storage_registry, test_settings, new_size, transcoder=None):
    return MediaCompressionPipeline(
        db_session,
        storage_registry,
        settings=test_settings,
        transcoders={MediaCategory.IMAGE: transcoder or FakeTranscoder(new_size)},
        retry=NO_RETRY,
    )


class TestCategories:
    """Tests for media classification and selection."""

    def test_category_from_mime_or_extension(self, db_session, tenant):
        image = create_media_file(db_session, tenant, file_name="a.bin", mime_type="image/png")
        video = create_media_file(db_session, tenant, file_name="b.MOV", mime_type=None)
        other = create_media_file(db_session, tenant, file_name="c.pdf", mime_type="application/pdf")

        assert category_of(image) == MediaCategory.IMAGE
        assert category_of(video) == MediaCategory.VIDEO
        assert category_of(other) is None

    def test_selection_is_largest_first(self, db_session, tenant):
        create_media_file(db_session, tenant, file_name="small.jpg", file_size=10)
        create_media_file(db_session, tenant, file_name="big.jpg", file_size=1000)
        create_media_file(db_session, tenant, file_name="doc.pdf", file_size=5000, mime_type="application/pdf")

        names = [m.file_name for m in select_media(db_session, tenant.id, MediaCategory.IMAGE)]

        assert names == ["big.jpg", "small.jpg"]


class TestCompression:
    """Tests for transcode-and-replace."""

    def test_replaces_and_records_new_size(
        self, db_session, tenant, fs_storage, storage_registry, test_settings, original_bytes
    ):
        media = stored_media(db_session, tenant, fs_storage, "photo.jpg", original_bytes)
        pipeline = make_pipeline(db_session, storage_registry, test_settings, 6 * MB)

        report = pipeline.run(tenant_id=tenant.id, category="image")

        assert report.count(OutcomeStatus.REPLACED) == 1
        assert report.bytes_saved == 4 * MB
        row = db_session.get(MediaFile, media.id)
        assert row.file_size == 6 * MB
        assert row.original_size == 10 * MB
        assert row.storage_path == "acme/photo.webp"
        assert row.file_name == "photo.webp"
        assert row.mime_type == "image/webp"
        assert row.compressed_at is not None
        assert fs_storage.download("acme/photo.webp") == b"w" * (6 * MB)
        assert not fs_storage.exists("acme/photo.jpg")

    def test_small_saving_is_skipped(
        self, db_session, tenant, fs_storage, storage_registry, test_settings
    ):
        data = b"j" * 1_000_000
        media = stored_media(db_session, tenant, fs_storage, "photo.jpg", data)
        pipeline = make_pipeline(db_session, storage_registry, test_settings, 980_000)

        report = pipeline.run(tenant_id=tenant.id, category="image")

        outcome = report.outcomes[0]
        assert outcome.status == OutcomeStatus.SKIPPED
        assert outcome.reason.startswith("not_beneficial")
        assert db_session.get(MediaFile, media.id).file_size == 1_000_000
        assert fs_storage.download("acme/photo.jpg") == data

    def test_dry_run_writes_nothing(
        self, db_session, tenant, fs_storage, storage_registry, test_settings, original_bytes, tmp_path
    ):
        media = stored_media(db_session, tenant, fs_storage, "photo.jpg", original_bytes)
        pipeline = make_pipeline(db_session, storage_registry, test_settings, 6 * MB)

        report = pipeline.run(
            tenant_id=tenant.id, category="image", dry_run=True, backup_dir=str(tmp_path / "bk")
        )

        assert report.to_dict()["estimated"] == 1
        assert report.bytes_saved == 4 * MB
        assert db_session.get(MediaFile, media.id).storage_path == "acme/photo.jpg"
        assert not fs_storage.exists("acme/photo.webp")
        assert not (tmp_path / "bk").exists()

    def test_small_and_efficient_files_skip_transcoding(
        self, db_session, tenant, fs_storage, storage_registry, test_settings
    ):
        stored_media(db_session, tenant, fs_storage, "tiny.jpg", b"x" * 1000)
        stored_media(
            db_session, tenant, fs_storage, "anim.gif", b"g" * 500_000, mime_type="image/gif"
        )
        pipeline = make_pipeline(db_session, storage_registry, test_settings, 10)

        report = pipeline.run(tenant_id=tenant.id, category="image")

        reasons = sorted(o.reason for o in report.outcomes)
        assert reasons == ["below_min_size", "efficient_format"]
        assert pipeline.transcoders[MediaCategory.IMAGE].calls == []

    def test_missing_object_is_a_failure(
        self, db_session, tenant, storage_registry, test_settings
    ):
        create_media_file(db_session, tenant, file_name="gone.jpg", file_size=900_000)
        pipeline = make_pipeline(db_session, storage_registry, test_settings, 10)

        report = pipeline.run(tenant_id=tenant.id, category="image")

        assert report.count(OutcomeStatus.FAILED) == 1

    def test_existing_target_path_is_not_overwritten(
        self, db_session, tenant, fs_storage, storage_registry, test_settings
    ):
        stored_media(db_session, tenant, fs_storage, "photo.jpg", b"j" * 1_000_000)
        create_media_file(db_session, tenant, file_name="photo.webp", mime_type="image/webp")
        pipeline = make_pipeline(db_session, storage_registry, test_settings, 100)

        report = pipeline.run(tenant_id=tenant.id, category="image")

        reasons = {o.reason for o in report.outcomes}
        assert "target_exists" in reasons


class TestBackupRestore:
    """Tests for backup manifests and restore."""

    def test_compress_then_restore_is_byte_identical(
        self, db_session, tenant, fs_storage, storage_registry, test_settings, original_bytes, tmp_path
    ):
        media = stored_media(db_session, tenant, fs_storage, "photo.jpg", original_bytes)
        backup_dir = tmp_path / "backup"
        pipeline = make_pipeline(db_session, storage_registry, test_settings, 6 * MB)
        pipeline.run(tenant_id=tenant.id, category="image", backup_dir=str(backup_dir))

        report = MediaBackupService(db_session, storage_registry, retry=NO_RETRY).restore(
            str(backup_dir)
        )

        assert report.restored == 1
        assert report.leftovers == 0
        assert fs_storage.download("acme/photo.jpg") == original_bytes
        assert not fs_storage.exists("acme/photo.webp")
        row = db_session.get(MediaFile, media.id)
        assert row.storage_path == "acme/photo.jpg"
        assert row.file_size == 10 * MB
        assert row.original_size is None
        assert row.compressed_at is None

    def test_backup_writes_manifest(
        self, db_session, tenant, fs_storage, storage_registry, tmp_path
    ):
        media = stored_media(db_session, tenant, fs_storage, "photo.jpg", b"original")
        service = MediaBackupService(db_session, storage_registry, retry=NO_RETRY)

        report = service.backup(str(tmp_path / "bk"), tenant_id=tenant.id)

        assert report.files == 1
        assert report.bytes == len(b"original")
        manifest = json.loads((tmp_path / "bk" / "manifest.json").read_text())
        entry = manifest["files"][0]
        assert entry["id"] == media.id
        assert entry["storage_path"] == "acme/photo.jpg"
        assert (tmp_path / "bk" / entry["local_path"]).read_bytes() == b"original"

        # A second run into the same directory adds nothing
        assert service.backup(str(tmp_path / "bk"), tenant_id=tenant.id).files == 0

    def test_tampered_backup_is_refused(
        self, db_session, tenant, fs_storage, storage_registry, tmp_path
    ):
        stored_media(db_session, tenant, fs_storage, "photo.jpg", b"original")
        service = MediaBackupService(db_session, storage_registry, retry=NO_RETRY)
        service.backup(str(tmp_path / "bk"), tenant_id=tenant.id)
        manifest = BackupManifest.load(tmp_path / "bk")
        (tmp_path / "bk" / manifest.entries[0].local_path).write_bytes(b"tampered")

        report = service.restore(str(tmp_path / "bk"))

        assert report.failed == 1
        assert "Checksum mismatch" in report.errors[0]["error"]

    def test_restore_counts_missing_records(
        self, db_session, tenant, fs_storage, storage_registry, tmp_path
    ):
        media = stored_media(db_session, tenant, fs_storage, "photo.jpg", b"original")
        service = MediaBackupService(db_session, storage_registry, retry=NO_RETRY)
        service.backup(str(tmp_path / "bk"), tenant_id=tenant.id)
        db_session.delete(media)
        db_session.flush()

        assert service.restore(str(tmp_path / "bk")).missing == 1

    def test_restore_brings_back_compression_history(
        self, db_session, tenant, fs_storage, storage_registry, test_settings, original_bytes, tmp_path
    ):
        """A backup taken between two compressions restores the first compression's record."""
        media = stored_media(db_session, tenant, fs_storage, "photo.jpg", original_bytes)
        make_pipeline(
            db_session,
            storage_registry,
            test_settings,
            6 * MB,
            transcoder=FakeTranscoder(6 * MB, mime_type="image/jpeg", extension=".jpeg"),
        ).run(tenant_id=tenant.id, category="image")
        first_compressed_at = datetime(2024, 3, 1, 9, 30)
        db_session.get(MediaFile, media.id).compressed_at = first_compressed_at
        db_session.commit()

        service = MediaBackupService(db_session, storage_registry, retry=NO_RETRY)
        service.backup(str(tmp_path / "bk"), tenant_id=tenant.id)
        make_pipeline(
            db_session,
            storage_registry,
            test_settings,
            3 * MB,
            transcoder=FakeTranscoder(3 * MB, mime_type="image/jpeg", extension=".jpg"),
        ).run(tenant_id=tenant.id, category="image")
        recompressed = db_session.get(MediaFile, media.id)
        assert recompressed.storage_path == "acme/photo.jpg"
        assert recompressed.compressed_at != first_compressed_at

        report = service.restore(str(tmp_path / "bk"))

        assert report.restored == 1
        row = db_session.get(MediaFile, media.id)
        assert row.storage_path == "acme/photo.jpeg"
        assert row.file_size == 6 * MB
        assert row.original_size == 10 * MB
        assert row.compressed_at == first_compressed_at
        assert fs_storage.download("acme/photo.jpeg") == b"w" * (6 * MB)
        assert not fs_storage.exists("acme/photo.jpg")

    def test_manifest_without_compression_fields_restores_as_uncompressed(self, tmp_path):
        manifest = BackupManifest.open_or_create(tmp_path / "bk")
        data = json.loads(manifest.path.read_text())
        data["files"] = [{
            "id": 1, "tenant_id": 1, "storage_backend": "fs", "storage_path": "acme/a.jpg",
            "file_name": "a.jpg", "local_path": "files/1.jpg", "file_size": 1, "record_size": 1,
            "mime_type": "image/jpeg", "sha256": "x", "message_id": None, "conversation_id": None,
        }]
        manifest.path.write_text(json.dumps(data))

        entry = BackupManifest.load(tmp_path / "bk").entries[0]

        assert entry.original_size is None
        assert entry.compressed_at is None


@pytest.fixture
def other_storage(tmp_path):
    return FilesystemStorageBackend(root=str(tmp_path / "bucket"), secret_key="test-secret")


@pytest.fixture
def two_backends(test_settings, fs_storage, other_storage):
    return StorageRegistry(test_settings, backends={"fs": fs_storage, "s3": other_storage})


class TestMigration:
    """Tests for moving a tenant's media between storage backends."""

    def test_moves_file_and_record(
        self, db_session, tenant, fs_storage, other_storage, two_backends, tmp_path
    ):
        media = stored_media(db_session, tenant, fs_storage, "photo.jpg", b"original")
        db_session.commit()

        report = MediaMigrationService(db_session, two_backends, retry=NO_RETRY).migrate(
            tenant.id, "fs", "s3", backup_dir=str(tmp_path / "mig")
        )

        assert report.migrated == 1
        assert report.bytes == len(b"original")
        row = db_session.get(MediaFile, media.id)
        assert row.storage_backend == "s3"
        assert row.storage_path == "acme/photo.jpg"
        assert other_storage.download("acme/photo.jpg") == b"original"
        assert not fs_storage.exists("acme/photo.jpg")
        entry = BackupManifest.load(tmp_path / "mig").entries[0]
        assert entry.storage_backend == "fs"

    def test_restore_moves_file_back(
        self, db_session, tenant, fs_storage, other_storage, two_backends, tmp_path
    ):
        media = stored_media(db_session, tenant, fs_storage, "photo.jpg", b"original")
        db_session.commit()
        MediaMigrationService(db_session, two_backends, retry=NO_RETRY).migrate(
            tenant.id, "fs", "s3", backup_dir=str(tmp_path / "mig")
        )

        report = MediaBackupService(db_session, two_backends, retry=NO_RETRY).restore(
            str(tmp_path / "mig")
        )

        assert report.restored == 1
        assert db_session.get(MediaFile, media.id).storage_backend == "fs"
        assert fs_storage.download("acme/photo.jpg") == b"original"
        assert not other_storage.exists("acme/photo.jpg")

    def test_failed_upload_leaves_record_and_source(
        self, db_session, tenant, fs_storage, test_settings, tmp_path
    ):
        media = stored_media(db_session, tenant, fs_storage, "photo.jpg", b"original")
        db_session.commit()
        broken = MagicMock()
        broken.upload.side_effect = StorageError("bucket quota exceeded", backend="s3")
        registry = StorageRegistry(test_settings, backends={"fs": fs_storage, "s3": broken})

        report = MediaMigrationService(db_session, registry, retry=NO_RETRY).migrate(
            tenant.id, "fs", "s3", backup_dir=str(tmp_path / "mig")
        )

        assert report.failed == 1
        assert report.migrated == 0
        assert "quota" in report.errors[0]["error"]
        row = db_session.get(MediaFile, media.id)
        assert row.storage_backend == "fs"
        assert fs_storage.download("acme/photo.jpg") == b"original"
        broken.delete.assert_not_called()

    def test_dry_run_only_counts(
        self, db_session, tenant, fs_storage, other_storage, two_backends, tmp_path
    ):
        stored_media(db_session, tenant, fs_storage, "a.jpg", b"aaaa")
        stored_media(db_session, tenant, fs_storage, "b.jpg", b"bb")
        db_session.commit()

        report = MediaMigrationService(db_session, two_backends, retry=NO_RETRY).migrate(
            tenant.id, "fs", "s3", backup_dir=str(tmp_path / "mig"), dry_run=True
        )

        assert report.migrated == 2
        assert report.bytes == 6
        assert not (tmp_path / "mig").exists()
        assert not other_storage.exists("acme/a.jpg")

    def test_taken_target_location_is_skipped(
        self, db_session, tenant, fs_storage, two_backends, tmp_path
    ):
        stored_media(db_session, tenant, fs_storage, "photo.jpg", b"original")
        create_media_file(db_session, tenant, file_name="photo.jpg", storage_backend="s3")
        db_session.commit()

        report = MediaMigrationService(db_session, two_backends, retry=NO_RETRY).migrate(
            tenant.id, "fs", "s3", backup_dir=str(tmp_path / "mig")
        )

        assert report.skipped == 1
        assert report.errors == [{"id": report.errors[0]["id"], "error": "target_exists"}]
        assert fs_storage.exists("acme/photo.jpg")

    def test_same_backend_is_a_no_op(self, db_session, tenant, two_backends, tmp_path):
        report = MediaMigrationService(db_session, two_backends).migrate(
            tenant.id, "fs", "fs", backup_dir=str(tmp_path / "mig")
        )

        assert report.to_dict()["migrated"] == 0
        assert not (tmp_path / "mig").exists()
