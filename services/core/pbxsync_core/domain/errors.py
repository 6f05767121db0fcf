"""Error taxonomy for the sync engine.

Services raise these; orchestration (the sync cycle, Celery tasks) catches
them per tenant and records the outcome on the sync ledger.

    SyncEngineError
    ├── ConnectivityError          (config / dns / tcp / auth / handshake / db)
    │   ├── TunnelDnsError
    │   ├── TunnelTcpError
    │   ├── TunnelAuthError
    │   └── TunnelHandshakeError
    ├── SourceQueryError
    ├── ConflictError
    │   └── AlreadyRunning
    ├── MergeError
    ├── LinkAmbiguous
    ├── CompressionNotBeneficial
    ├── TranscodeError
    ├── StorageError
    └── CycleCancelled
"""

from typing import Optional


class SyncEngineError(Exception):
    """Base class for all sync engine errors."""

    pass


class ConnectivityError(SyncEngineError):
    """The remote PBX could not be reached.

    Attributes:
        stage: Which step failed ("config", "dns", "tcp", "auth", "handshake", "db").
        host: Host that was being contacted, when known.
    """

    default_stage = "connect"

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        host: Optional[str] = None,
    ):
        super().__init__(message)
        self.stage = stage or self.default_stage
        self.host = host

    def __str__(self) -> str:
        return f"[{self.stage}] {self.args[0]}"


class TunnelDnsError(ConnectivityError):
    """SSH host name did not resolve."""

    default_stage = "dns"


class TunnelTcpError(ConnectivityError):
    """TCP connection to the SSH port timed out or was refused."""

    default_stage = "tcp"


class TunnelAuthError(ConnectivityError):
    """SSH server rejected the credentials."""

    default_stage = "auth"


class TunnelHandshakeError(ConnectivityError):
    """SSH protocol negotiation failed after the TCP connect."""

    default_stage = "handshake"


class SourceQueryError(SyncEngineError):
    """A remote table or view is missing or returned malformed data."""

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source


class ConflictError(SyncEngineError):
    """A ledger transition was refused because of concurrent state."""

    pass


class AlreadyRunning(ConflictError):
    """Another cycle already holds the ledger row for this tenant and kind."""

    def __init__(self, tenant_id: int, sync_kind: str):
        super().__init__(f"Sync {sync_kind} already running for tenant {tenant_id}")
        self.tenant_id = tenant_id
        self.sync_kind = sync_kind


class MergeError(SyncEngineError):
    """Upserting a batch into the central store violated a constraint."""

    pass


class LinkAmbiguous(SyncEngineError):
    """More than one message is an equally good owner for a media file."""

    def __init__(self, media_id: int, message_ids: list[int]):
        super().__init__(
            f"Media {media_id} matches messages {sorted(message_ids)} equally"
        )
        self.media_id = media_id
        self.message_ids = message_ids


class CompressionNotBeneficial(SyncEngineError):
    """Transcoding did not shrink the file enough to be worth replacing."""

    def __init__(self, original_size: int, new_size: int, saving_percent: float):
        super().__init__(
            f"Saving {saving_percent:.1f}% ({original_size} -> {new_size} bytes) "
            "below threshold"
        )
        self.original_size = original_size
        self.new_size = new_size
        self.saving_percent = saving_percent


class TranscodeError(SyncEngineError):
    """A media file could not be decoded or re-encoded."""

    pass


class StorageError(SyncEngineError):
    """An object storage operation failed."""

    def __init__(self, message: str, backend: Optional[str] = None, path: Optional[str] = None):
        super().__init__(message)
        self.backend = backend
        self.path = path


class CycleCancelled(SyncEngineError):
    """The sync cycle was cancelled between batches."""

    pass


__all__ = [
    "SyncEngineError",
    "ConnectivityError",
    "TunnelDnsError",
    "TunnelTcpError",
    "TunnelAuthError",
    "TunnelHandshakeError",
    "SourceQueryError",
    "ConflictError",
    "AlreadyRunning",
    "MergeError",
    "LinkAmbiguous",
    "CompressionNotBeneficial",
    "TranscodeError",
    "StorageError",
    "CycleCancelled",
]
