"""Object storage backend interface.

Every media blob lives in exactly one backend, named on its ``MediaFile``
row. Implementations wrap their client library's errors in
``StorageError`` so callers never depend on vendor exceptions.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterator


@dataclass(frozen=True)
class StoredObject:
    """One object found by a listing."""

    path: str
    size: int


class StorageBackend(ABC):
    """Minimal blob operations the archive needs."""

    name: str = ""

    @abstractmethod
    def signed_url(self, path: str, ttl_seconds: int) -> str:
        """Return a time-limited URL for reading ``path``."""
        ...

    @abstractmethod
    def download(self, path: str) -> bytes:
        ...

    @abstractmethod
    def upload(self, path: str, data: bytes, content_type: str) -> None:
        """Write ``data`` at ``path``, replacing any existing object."""
        ...

    @abstractmethod
    def delete(self, path: str) -> None:
        """Delete ``path``. Deleting a missing object is not an error."""
        ...

    @abstractmethod
    def exists(self, path: str) -> bool:
        ...

    @abstractmethod
    def list_objects(self, prefix: str) -> Iterator[StoredObject]:
        """Yield every object under ``prefix``, recursing into folders."""
        ...
