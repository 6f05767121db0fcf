"""Domain services for the PBX sync engine."""

from pbxsync_core.domain.services.media_linker import LinkResult, MediaLinker
from pbxsync_core.domain.services.merge import MergeResult, MergeService
from pbxsync_core.domain.services.sync_ledger import LedgerEntry, SyncLedger

__all__ = [
    "LedgerEntry",
    "LinkResult",
    "MediaLinker",
    "MergeResult",
    "MergeService",
    "SyncLedger",
]
