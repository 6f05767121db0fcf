"""Sync cycle orchestration.

One cycle for one tenant:

    1. take the ``messages`` ledger row (skip if another run holds it)
    2. open the SSH tunnel and the read-only PBX database connection
    3. refresh extensions when their snapshot digest changed
    4. merge every live conversation, so empty group chats exist early
    5. pull message batches from the ledger cursor, merging and
       checkpointing after each one
    6. copy new chat attachments off the PBX over SFTP (``media_ingest`` row)
    7. link orphaned media to the messages just merged
    8. commit the ledger with the final cursor

Every failure is recorded on the ledger and reported in the returned
``CycleResult``; one tenant's failure never affects another tenant. A
failed media ingest is recorded on its own row and does not fail the cycle.

Usage:
    service = SyncCycleService(get_sync_session_factory())

    result = service.run_cycle(tenant_id)
    results = service.run_all([1, 2, 3], max_workers=4)
"""

import hashlib
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session, sessionmaker

from pbxsync_core.config import Settings, get_settings
from pbxsync_core.domain.errors import (
    AlreadyRunning,
    ConflictError,
    CycleCancelled,
    SyncEngineError,
)
from pbxsync_core.domain.models import SyncKind, Tenant, utcnow
from pbxsync_core.domain.services.media_ingest import MediaIngestService
from pbxsync_core.domain.services.media_linker import LinkResult, MediaLinker
from pbxsync_core.domain.services.merge import MergeService
from pbxsync_core.domain.services.sync_ledger import SyncLedger
from pbxsync_core.infrastructure.crypto import CredentialCipher, DecryptionError
from pbxsync_core.observability.logging import SyncContext, get_logger
from pbxsync_core.remote.extraction import RemoteExtractionClient
from pbxsync_core.remote.records import MessageCursor, RemoteExtension
from pbxsync_core.remote.tunnel import TunnelEndpoint, TunnelManager, open_sftp
from pbxsync_core.storage import StorageRegistry

logger = get_logger(__name__)


class CycleStatus:
    SUCCESS = "success"
    SKIPPED = "skipped"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass
class CycleResult:
    tenant_id: int
    status: str
    cycle_id: str = ""
    batches: int = 0
    messages: int = 0
    conversations: int = 0
    extensions_changed: bool = False
    media_ingested: int = 0
    media_linked: int = 0
    cursor: Optional[str] = None
    error: Optional[str] = None
    started_at: Any = field(default_factory=utcnow)
    completed_at: Any = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "status": self.status,
            "cycle_id": self.cycle_id,
            "batches": self.batches,
            "messages": self.messages,
            "conversations": self.conversations,
            "extensions_changed": self.extensions_changed,
            "media_ingested": self.media_ingested,
            "media_linked": self.media_linked,
            "cursor": self.cursor,
            "error": self.error,
            "duration_seconds": self.duration_seconds,
        }


def extensions_digest(extensions: list[RemoteExtension]) -> str:
    """Order-independent fingerprint of an extension snapshot."""
    h = hashlib.sha256()
    for ext in sorted(extensions, key=lambda e: e.number):
        fields = (ext.number, ext.external_id, ext.first_name, ext.last_name, ext.email)
        h.update("\x1f".join("" if f is None else str(f) for f in fields).encode("utf-8"))
        h.update(b"\x1e")
    return h.hexdigest()


def record_failure(
    ledger: SyncLedger, tenant_id: int, sync_kind: str, error: BaseException, run_token: str
) -> None:
    """``ledger.fail`` that never masks ``error``.

    A row taken over by a newer run is left to that run.
    """
    try:
        ledger.fail(tenant_id, sync_kind, error, run_token=run_token)
    except ConflictError as e:
        logger.warning(
            "Failure not recorded",
            tenant_id=tenant_id,
            sync_kind=sync_kind,
            error=str(error),
            reason=str(e),
        )


class SyncCycleService:
    """Runs sync cycles for tenants."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: Optional[Settings] = None,
        ledger: Optional[SyncLedger] = None,
        tunnels: Optional[TunnelManager] = None,
        client_factory: Optional[Callable[..., RemoteExtractionClient]] = None,
        cipher: Optional[CredentialCipher] = None,
        storage: Optional[StorageRegistry] = None,
        sftp_factory: Optional[Callable[[TunnelEndpoint], Any]] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.ledger = ledger or SyncLedger(
            session_factory,
            stale_after=timedelta(minutes=self.settings.sync_stale_run_minutes),
            trigger_window=timedelta(seconds=self.settings.manual_trigger_window_seconds),
        )
        self.tunnels = tunnels or TunnelManager(self.settings, cipher)
        self.client_factory = client_factory or RemoteExtractionClient.connect
        self._storage = storage
        self.sftp_factory = sftp_factory or open_sftp

    @property
    def storage(self) -> StorageRegistry:
        if self._storage is None:
            self._storage = StorageRegistry(self.settings)
        return self._storage

    # -------------------------------------------------------------------------
    # Fan-out
    # -------------------------------------------------------------------------

    def run_all(self, tenant_ids: list[int], max_workers: Optional[int] = None) -> list[CycleResult]:
        """Run one cycle per tenant on a bounded thread pool.

        Each tenant's outcome is independent; an unexpected exception in one
        cycle becomes that tenant's error result.
        """
        if not tenant_ids:
            return []
        workers = max(1, min(max_workers or self.settings.sync_max_concurrent_tenants, len(tenant_ids)))

        results: list[CycleResult] = []
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sync-tenant") as pool:
            futures = {pool.submit(self.run_cycle, tenant_id): tenant_id for tenant_id in tenant_ids}
            for future in as_completed(futures):
                tenant_id = futures[future]
                try:
                    results.append(future.result())
                except Exception as e:
                    logger.error("Sync cycle crashed", tenant_id=tenant_id, error=str(e), exc_info=True)
                    results.append(
                        CycleResult(
                            tenant_id=tenant_id,
                            status=CycleStatus.ERROR,
                            error=str(e),
                            completed_at=utcnow(),
                        )
                    )

        results.sort(key=lambda r: tenant_ids.index(r.tenant_id))
        return results

    # -------------------------------------------------------------------------
    # Single tenant
    # -------------------------------------------------------------------------

    def run_cycle(self, tenant_id: int, cancel_event: Optional[threading.Event] = None) -> CycleResult:
        """Run one full cycle for ``tenant_id``.

        Args:
            tenant_id: Tenant to sync.
            cancel_event: Checked between batches; when set, the cycle stops
                with status ``cancelled`` and the cursor stays at the last
                merged batch.
        """
        result = CycleResult(tenant_id=tenant_id, status=CycleStatus.SUCCESS, cycle_id=uuid.uuid4().hex[:12])
        context = SyncContext(tenant_id=tenant_id, sync_kind=SyncKind.MESSAGES, cycle_id=result.cycle_id)

        db = self.session_factory()
        try:
            tenant = db.get(Tenant, tenant_id)
            if tenant is None or not tenant.is_active or not tenant.sync_enabled:
                result.status = CycleStatus.SKIPPED
                result.error = "tenant not found" if tenant is None else "sync disabled"
                return self._finish(result, context)

            try:
                entry = self.ledger.begin(tenant_id, SyncKind.MESSAGES)
            except AlreadyRunning as e:
                result.status = CycleStatus.SKIPPED
                result.error = str(e)
                return self._finish(result, context)

            result.cursor = entry.cursor
            token = entry.run_token
            try:
                self._sync(db, tenant, result, context, token, cancel_event)
                tenant.last_sync_at = utcnow()
                db.commit()
                self.ledger.commit(tenant_id, SyncKind.MESSAGES, result.cursor, run_token=token)
            except CycleCancelled as e:
                db.rollback()
                result.status = CycleStatus.CANCELLED
                result.error = str(e)
                record_failure(self.ledger, tenant_id, SyncKind.MESSAGES, e, token)
            except (SyncEngineError, DecryptionError) as e:
                db.rollback()
                result.status = CycleStatus.ERROR
                result.error = str(e)
                record_failure(self.ledger, tenant_id, SyncKind.MESSAGES, e, token)
            except Exception as e:
                db.rollback()
                record_failure(self.ledger, tenant_id, SyncKind.MESSAGES, e, token)
                raise
        finally:
            db.close()

        return self._finish(result, context)

    def _finish(self, result: CycleResult, context: SyncContext) -> CycleResult:
        result.completed_at = utcnow()
        if result.status == CycleStatus.ERROR:
            logger.warning("Sync cycle failed", context=context, **result.to_dict())
        else:
            logger.info("Sync cycle finished", context=context, **result.to_dict())
        return result

    def _check_cancelled(self, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise CycleCancelled("Sync cycle cancelled")

    def _sync(
        self,
        db: Session,
        tenant: Tenant,
        result: CycleResult,
        context: SyncContext,
        run_token: str,
        cancel_event: Optional[threading.Event],
    ) -> None:
        cipher = self.tunnels.cipher
        db_password = cipher.decrypt_optional(tenant.db_password_encrypted)
        params = self.tunnels.params_for(tenant)

        with self.tunnels.open(params) as endpoint:
            client = self.client_factory(
                endpoint,
                db_name=tenant.db_name,
                db_user=tenant.db_user,
                db_password=db_password,
                batch_size=self.settings.sync_batch_size,
                connect_timeout=self.settings.remote_db_connect_timeout_seconds,
                statement_timeout_ms=self.settings.remote_statement_timeout_ms,
            )
            with client:
                merge = MergeService(db)
                self._sync_extensions(db, tenant.id, client, merge, result)
                self._check_cancelled(cancel_event)
                self._sync_conversations(db, tenant.id, client, merge, result, cancel_event)
                self._sync_messages(db, tenant.id, client, merge, result, context, run_token, cancel_event)
            if self.settings.media_ingest_enabled:
                self._ingest_media(db, tenant, endpoint, result)

        self._link_media(db, tenant.id, result)

    def _sync_extensions(
        self,
        db: Session,
        tenant_id: int,
        client: RemoteExtractionClient,
        merge: MergeService,
        result: CycleResult,
    ) -> None:
        try:
            entry = self.ledger.begin(tenant_id, SyncKind.EXTENSIONS)
        except AlreadyRunning:
            logger.info("Extension refresh already running", tenant_id=tenant_id)
            return

        try:
            extensions = client.fetch_extensions()
            digest = extensions_digest(extensions)
            if digest != entry.cursor:
                merged = merge.merge_extensions(tenant_id, extensions)
                db.commit()
                result.extensions_changed = True
                logger.info("Extensions refreshed", tenant_id=tenant_id, **merged.to_dict())
            self.ledger.commit(tenant_id, SyncKind.EXTENSIONS, digest, run_token=entry.run_token)
        except Exception as e:
            db.rollback()
            record_failure(self.ledger, tenant_id, SyncKind.EXTENSIONS, e, entry.run_token)
            raise

    def _sync_conversations(
        self,
        db: Session,
        tenant_id: int,
        client: RemoteExtractionClient,
        merge: MergeService,
        result: CycleResult,
        cancel_event: Optional[threading.Event],
    ) -> None:
        after_id = 0
        while True:
            page, next_after = client.fetch_live_conversations(after_id)
            if page:
                merged = merge.merge_conversations(tenant_id, page)
                db.commit()
                result.conversations += merged.conversations_created
            if next_after is None:
                return
            after_id = next_after
            self._check_cancelled(cancel_event)

    def _sync_messages(
        self,
        db: Session,
        tenant_id: int,
        client: RemoteExtractionClient,
        merge: MergeService,
        result: CycleResult,
        context: SyncContext,
        run_token: str,
        cancel_event: Optional[threading.Event],
    ) -> None:
        cursor = MessageCursor.parse(result.cursor)
        while True:
            self._check_cancelled(cancel_event)
            batch = client.fetch_message_batch(cursor)
            if batch.is_empty:
                return

            merged = merge.merge_batch(tenant_id, batch)
            db.commit()

            if batch.next_cursor is not None:
                cursor = batch.next_cursor
                result.cursor = cursor.serialize()
            result.batches += 1
            result.messages += len(batch.messages)
            result.conversations += merged.conversations_created
            self.ledger.advance(
                tenant_id, SyncKind.MESSAGES, result.cursor, items=len(batch.messages), run_token=run_token
            )
            logger.debug("Batch checkpointed", context=context, cursor=result.cursor, **merged.to_dict())

            if not batch.has_more:
                return

    def _ingest_media(
        self, db: Session, tenant: Tenant, endpoint: TunnelEndpoint, result: CycleResult
    ) -> None:
        try:
            entry = self.ledger.begin(tenant.id, SyncKind.MEDIA_INGEST)
        except AlreadyRunning:
            logger.info("Media ingest already running", tenant_id=tenant.id)
            return

        try:
            with self.sftp_factory(endpoint) as sftp:
                ingested = MediaIngestService(db, self.storage, self.settings).ingest(tenant, sftp)
        except (SyncEngineError, OSError) as e:
            db.rollback()
            record_failure(self.ledger, tenant.id, SyncKind.MEDIA_INGEST, e, entry.run_token)
            return

        result.media_ingested = ingested.synced
        self.ledger.commit(
            tenant.id,
            SyncKind.MEDIA_INGEST,
            ingested.source_path,
            run_token=entry.run_token,
        )

    def _link_media(self, db: Session, tenant_id: int, result: CycleResult) -> None:
        linked = link_tenant_media(db, self.ledger, tenant_id, self.settings)
        if linked is not None:
            result.media_linked = linked.linked


def link_tenant_media(
    db: Session, ledger: SyncLedger, tenant_id: int, settings: Settings
) -> Optional[LinkResult]:
    """Linker pass gated by the ``media_link`` ledger row.

    Returns:
        The link result, or ``None`` when another pass holds the row.
    """
    try:
        entry = ledger.begin(tenant_id, SyncKind.MEDIA_LINK)
    except AlreadyRunning:
        logger.info("Media link pass already running", tenant_id=tenant_id)
        return None

    try:
        linker = MediaLinker(
            db,
            recent_window=settings.link_recent_window,
            min_basename_length=settings.link_min_basename_length,
        )
        linked = linker.link_orphans(tenant_id)
        linked.repaired = linker.repair_links(tenant_id)
        db.commit()
    except Exception as e:
        db.rollback()
        record_failure(ledger, tenant_id, SyncKind.MEDIA_LINK, e, entry.run_token)
        raise

    ledger.commit(tenant_id, SyncKind.MEDIA_LINK, utcnow().isoformat(), run_token=entry.run_token)
    return linked


def run_media_link(session_factory: sessionmaker[Session], tenant_id: int, settings: Optional[Settings] = None) -> dict[str, Any]:
    """Standalone linker pass, gated by the ``media_link`` ledger row."""
    settings = settings or get_settings()
    ledger = SyncLedger(session_factory, stale_after=timedelta(minutes=settings.sync_stale_run_minutes))
    db = session_factory()
    try:
        linked = link_tenant_media(db, ledger, tenant_id, settings)
    finally:
        db.close()

    if linked is None:
        return {"tenant_id": tenant_id, "status": CycleStatus.SKIPPED}
    return {"tenant_id": tenant_id, "status": CycleStatus.SUCCESS, **linked.to_dict()}


__all__ = [
    "CycleResult",
    "CycleStatus",
    "SyncCycleService",
    "extensions_digest",
    "link_tenant_media",
    "record_failure",
    "run_media_link",
]
