"""Object storage backends and their registry.

Usage:
    registry = StorageRegistry(get_settings())

    backend = registry.for_media(media_file)
    data = backend.download(media_file.storage_path)
"""

import os
import threading
from typing import Callable, Optional

from pbxsync_core.config import Settings, get_settings
from pbxsync_core.domain.errors import StorageError
from pbxsync_core.domain.models import MediaFile, StorageBackendName
from pbxsync_core.storage.base import StorageBackend, StoredObject


def _build_supabase(settings: Settings) -> StorageBackend:
    from pbxsync_core.storage.supabase_backend import SupabaseStorageBackend

    return SupabaseStorageBackend(
        url=settings.supabase_url,
        service_key=settings.supabase_service_key,
        bucket=settings.supabase_bucket,
    )


def _build_s3(settings: Settings) -> StorageBackend:
    from pbxsync_core.storage.s3 import S3StorageBackend

    return S3StorageBackend(
        bucket=settings.s3_bucket or "",
        endpoint_url=settings.s3_endpoint_url,
        region=settings.s3_region,
        access_key_id=settings.s3_access_key_id,
        secret_access_key=settings.s3_secret_access_key,
    )


def _build_fs(settings: Settings) -> StorageBackend:
    from pbxsync_core.storage.filesystem import FilesystemStorageBackend

    return FilesystemStorageBackend(
        root=settings.fs_storage_path, secret_key=settings.secret_key
    )


_BUILDERS: dict[str, Callable[[Settings], StorageBackend]] = {
    StorageBackendName.SUPABASE: _build_supabase,
    StorageBackendName.S3: _build_s3,
    StorageBackendName.FS: _build_fs,
}


class StorageRegistry:
    """Resolves backend names to lazily-built, cached clients."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        backends: Optional[dict[str, StorageBackend]] = None,
    ):
        self.settings = settings or get_settings()
        self._backends: dict[str, StorageBackend] = dict(backends or {})
        self._lock = threading.Lock()

    def get(self, name: str) -> StorageBackend:
        """Return the backend registered under ``name``.

        Raises:
            StorageError: If the name is unknown or the backend is misconfigured.
        """
        with self._lock:
            if name not in self._backends:
                builder = _BUILDERS.get(name)
                if builder is None:
                    raise StorageError(f"Unknown storage backend: {name}", backend=name)
                self._backends[name] = builder(self.settings)
            return self._backends[name]

    def for_media(self, media: MediaFile) -> StorageBackend:
        """Backend holding ``media``, per its recorded backend name."""
        return self.get(media.storage_backend)

    def default(self) -> StorageBackend:
        return self.get(self.settings.default_storage_backend)

    def configured_names(self) -> list[str]:
        """Names of backends that are registered or have settings present."""
        names = set(self._backends)
        if self.settings.supabase_url and self.settings.supabase_service_key:
            names.add(StorageBackendName.SUPABASE)
        if self.settings.s3_bucket:
            names.add(StorageBackendName.S3)
        if os.path.isdir(self.settings.fs_storage_path):
            names.add(StorageBackendName.FS)
        return sorted(names)


__all__ = ["StorageBackend", "StorageRegistry", "StoredObject"]
