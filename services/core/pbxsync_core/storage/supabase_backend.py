"""Supabase Storage backend."""

import posixpath
from typing import Any, Iterator, Optional

from supabase import Client, create_client

from pbxsync_core.domain.errors import StorageError
from pbxsync_core.storage.base import StorageBackend, StoredObject

LIST_PAGE_SIZE = 100


class SupabaseStorageBackend(StorageBackend):
    """Blob storage in a Supabase Storage bucket.

    The storage3 client raises its own exception types and, for some
    failures, plain HTTP errors; all of them surface as ``StorageError``.
    """

    name = "supabase"

    def __init__(
        self,
        url: Optional[str],
        service_key: Optional[str],
        bucket: str,
        client: Optional[Client] = None,
    ):
        if client is None:
            if not url or not service_key:
                raise StorageError("Supabase URL and service key are required", backend=self.name)
            client = create_client(url, service_key)
        self._client = client
        self.bucket = bucket

    def _bucket(self) -> Any:
        return self._client.storage.from_(self.bucket)

    def signed_url(self, path: str, ttl_seconds: int) -> str:
        try:
            response = self._bucket().create_signed_url(path, ttl_seconds)
        except Exception as e:
            raise StorageError(f"Signed URL failed: {e}", backend=self.name, path=path) from e
        url = response.get("signedURL") or response.get("signedUrl")
        if not url:
            raise StorageError("Signed URL missing from response", backend=self.name, path=path)
        return url

    def download(self, path: str) -> bytes:
        try:
            return self._bucket().download(path)
        except Exception as e:
            raise StorageError(f"Download failed: {e}", backend=self.name, path=path) from e

    def upload(self, path: str, data: bytes, content_type: str) -> None:
        try:
            self._bucket().upload(
                path=path,
                file=data,
                file_options={"content-type": content_type, "upsert": "true"},
            )
        except Exception as e:
            raise StorageError(f"Upload failed: {e}", backend=self.name, path=path) from e

    def delete(self, path: str) -> None:
        try:
            self._bucket().remove([path])
        except Exception as e:
            raise StorageError(f"Delete failed: {e}", backend=self.name, path=path) from e

    def exists(self, path: str) -> bool:
        folder, name = posixpath.split(path)
        try:
            entries = self._bucket().list(folder, {"search": name})
        except Exception as e:
            raise StorageError(f"List failed: {e}", backend=self.name, path=path) from e
        return any(entry.get("name") == name for entry in entries or [])

    def list_objects(self, prefix: str) -> Iterator[StoredObject]:
        # Folders come back as entries without an id
        folders = [prefix.strip("/")]
        while folders:
            folder = folders.pop(0)
            offset = 0
            while True:
                try:
                    entries = self._bucket().list(
                        folder, {"limit": LIST_PAGE_SIZE, "offset": offset}
                    ) or []
                except Exception as e:
                    raise StorageError(f"List failed: {e}", backend=self.name, path=folder) from e
                for entry in entries:
                    path = posixpath.join(folder, entry["name"]) if folder else entry["name"]
                    if entry.get("id") is None:
                        folders.append(path)
                    else:
                        size = (entry.get("metadata") or {}).get("size") or 0
                        yield StoredObject(path=path, size=int(size))
                if len(entries) < LIST_PAGE_SIZE:
                    break
                offset += LIST_PAGE_SIZE
