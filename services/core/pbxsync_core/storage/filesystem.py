"""Local filesystem storage backend.

Used for on-prem deployments and tests. Signed URLs are relative
``/media/<path>?expires=..&signature=..`` links whose HMAC can be checked
with :meth:`FilesystemStorageBackend.verify_signature`.
"""

import hashlib
import hmac
import os
import time
from pathlib import Path
from typing import Iterator, Optional
from urllib.parse import quote

from pbxsync_core.domain.errors import StorageError
from pbxsync_core.storage.base import StorageBackend, StoredObject


class FilesystemStorageBackend(StorageBackend):
    name = "fs"

    def __init__(self, root: str, secret_key: str, url_prefix: str = "/media"):
        self.root = Path(root)
        self._secret = secret_key.encode("utf-8")
        self.url_prefix = url_prefix.rstrip("/")

    def _resolve(self, path: str) -> Path:
        target = (self.root / path.lstrip("/")).resolve()
        if not target.is_relative_to(self.root.resolve()):
            raise StorageError("Path escapes storage root", backend=self.name, path=path)
        return target

    def _sign(self, path: str, expires: int) -> str:
        payload = f"{path}:{expires}".encode("utf-8")
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    def signed_url(self, path: str, ttl_seconds: int) -> str:
        expires = int(time.time()) + ttl_seconds
        signature = self._sign(path, expires)
        return f"{self.url_prefix}/{quote(path)}?expires={expires}&signature={signature}"

    def verify_signature(self, path: str, expires: int, signature: str, now: Optional[float] = None) -> bool:
        if (now if now is not None else time.time()) > expires:
            return False
        return hmac.compare_digest(self._sign(path, expires), signature)

    def download(self, path: str) -> bytes:
        try:
            return self._resolve(path).read_bytes()
        except OSError as e:
            raise StorageError(f"Download failed: {e}", backend=self.name, path=path) from e

    def upload(self, path: str, data: bytes, content_type: str) -> None:
        target = self._resolve(path)
        tmp = target.with_name(target.name + ".part")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            os.replace(tmp, target)
        except OSError as e:
            raise StorageError(f"Upload failed: {e}", backend=self.name, path=path) from e

    def delete(self, path: str) -> None:
        try:
            self._resolve(path).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Delete failed: {e}", backend=self.name, path=path) from e

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def list_objects(self, prefix: str) -> Iterator[StoredObject]:
        base = self._resolve(prefix)
        if not base.is_dir():
            return
        root = self.root.resolve()
        for file_path in sorted(base.rglob("*")):
            if not file_path.is_file() or file_path.name.endswith(".part"):
                continue
            yield StoredObject(
                path=file_path.relative_to(root).as_posix(),
                size=file_path.stat().st_size,
            )
