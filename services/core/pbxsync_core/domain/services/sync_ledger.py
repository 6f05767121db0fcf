"""Sync ledger: per-tenant cursors and the run gate.

One ``sync_state`` row exists per (tenant, sync kind). Its ``status``
column is the mutual exclusion gate: ``begin`` flips it to ``running``
with a single conditional UPDATE, so two workers (in any process) racing
for the same tenant cannot both win. Every operation runs in its own
short transaction, independent of the caller's session.

A winning ``begin`` stamps the row with a fresh ``run_token``. Checkpoints
(``advance``), ``commit`` and ``fail`` only touch the row while it still
carries that token, so a run whose row was taken over cannot overwrite
its successor's cursor. Each ``advance`` refreshes ``heartbeat_at``; a
running row is judged stale from its last heartbeat, not from when the
run started.

Usage:
    ledger = SyncLedger(session_factory)

    entry = ledger.begin(tenant_id, SyncKind.MESSAGES)   # may raise AlreadyRunning
    try:
        ...
        ledger.advance(tenant_id, SyncKind.MESSAGES, cursor, items=100,
                       run_token=entry.run_token)
        ledger.commit(tenant_id, SyncKind.MESSAGES, cursor, run_token=entry.run_token)
    except SyncEngineError as e:
        ledger.fail(tenant_id, SyncKind.MESSAGES, e, run_token=entry.run_token)
"""

import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator, Optional

from sqlalchemy import delete, func, inspect, or_, select, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from pbxsync_core.domain.errors import AlreadyRunning, ConflictError
from pbxsync_core.domain.models import SyncKind, SyncState, SyncStatus, utcnow
from pbxsync_core.observability.logging import get_logger

logger = get_logger(__name__)

UNIQUE_INDEX_NAME = "uq_sync_state_tenant_kind"
LAST_ERROR_MAX_LENGTH = 4000


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class LedgerEntry:
    """Detached snapshot of a ``sync_state`` row."""

    tenant_id: int
    sync_kind: str
    status: str
    cursor: Optional[str]
    trigger_requested_at: Optional[datetime]
    started_at: Optional[datetime]
    heartbeat_at: Optional[datetime]
    run_token: Optional[str]
    last_success_at: Optional[datetime]
    last_error: Optional[str]
    last_error_at: Optional[datetime]
    items_synced: int
    updated_at: Optional[datetime]

    @property
    def last_seen_alive(self) -> Optional[datetime]:
        return self.heartbeat_at or self.started_at

    @classmethod
    def from_row(cls, row: SyncState) -> "LedgerEntry":
        return cls(
            tenant_id=row.tenant_id,
            sync_kind=row.sync_kind,
            status=row.status,
            cursor=row.cursor,
            trigger_requested_at=row.trigger_requested_at,
            started_at=row.started_at,
            heartbeat_at=row.heartbeat_at,
            run_token=row.run_token,
            last_success_at=row.last_success_at,
            last_error=row.last_error,
            last_error_at=row.last_error_at,
            items_synced=row.items_synced or 0,
            updated_at=row.updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "tenant_id": self.tenant_id,
            "sync_kind": self.sync_kind,
            "status": self.status,
            "cursor": self.cursor,
            "trigger_requested_at": iso(self.trigger_requested_at),
            "started_at": iso(self.started_at),
            "heartbeat_at": iso(self.heartbeat_at),
            "last_success_at": iso(self.last_success_at),
            "last_error": self.last_error,
            "last_error_at": iso(self.last_error_at),
            "items_synced": self.items_synced,
        }


# =============================================================================
# SERVICE
# =============================================================================


class SyncLedger:
    """Persistent sync state with a database-level run gate."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        stale_after: timedelta = timedelta(minutes=30),
        trigger_window: timedelta = timedelta(minutes=2),
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the ledger.

        Args:
            session_factory: Factory for short-lived sessions.
            stale_after: A ``running`` row whose last heartbeat is older than
                this is presumed abandoned and may be taken over.
            trigger_window: How long a manual trigger stays valid.
            clock: Source of naive-UTC "now".
        """
        self._session_factory = session_factory
        self.stale_after = stale_after
        self.trigger_window = trigger_window
        self._clock = clock

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _row_filter(tenant_id: int, sync_kind: str) -> tuple:
        return (SyncState.tenant_id == tenant_id, SyncState.sync_kind == sync_kind)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, tenant_id: int, sync_kind: str) -> Optional[LedgerEntry]:
        with self._session() as session:
            row = session.execute(
                select(SyncState).where(*self._row_filter(tenant_id, sync_kind))
            ).scalar_one_or_none()
            return LedgerEntry.from_row(row) if row else None

    def list_for_tenant(self, tenant_id: int) -> list[LedgerEntry]:
        with self._session() as session:
            rows = session.execute(
                select(SyncState)
                .where(SyncState.tenant_id == tenant_id)
                .order_by(SyncState.sync_kind)
            ).scalars().all()
            return [LedgerEntry.from_row(row) for row in rows]

    # -------------------------------------------------------------------------
    # Run gate
    # -------------------------------------------------------------------------

    def _stale_before(self, now: datetime) -> datetime:
        return now - self.stale_after

    def _take_row(
        self, session: Session, tenant_id: int, sync_kind: str, now: datetime, token: str
    ) -> bool:
        last_seen = func.coalesce(SyncState.heartbeat_at, SyncState.started_at)
        result = session.execute(
            update(SyncState)
            .where(
                *self._row_filter(tenant_id, sync_kind),
                or_(
                    SyncState.status != SyncStatus.RUNNING,
                    last_seen.is_(None),
                    last_seen < self._stale_before(now),
                ),
            )
            .values(
                status=SyncStatus.RUNNING,
                started_at=now,
                heartbeat_at=now,
                run_token=token,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def begin(self, tenant_id: int, sync_kind: str) -> LedgerEntry:
        """Move the row to ``running``, creating it if needed.

        The returned entry carries the ``run_token`` that later
        ``advance``/``commit``/``fail`` calls must present.

        Raises:
            AlreadyRunning: If another run holds the row and its last
                heartbeat is younger than ``stale_after``.
        """
        now = self._clock()
        token = uuid.uuid4().hex

        with self._session() as session:
            if self._take_row(session, tenant_id, sync_kind, now, token):
                taken = True
            else:
                exists = session.execute(
                    select(SyncState.id).where(*self._row_filter(tenant_id, sync_kind))
                ).first()
                if exists:
                    raise AlreadyRunning(tenant_id, sync_kind)
                taken = False

        if not taken:
            try:
                with self._session() as session:
                    session.add(
                        SyncState(
                            tenant_id=tenant_id,
                            sync_kind=sync_kind,
                            status=SyncStatus.RUNNING,
                            started_at=now,
                            heartbeat_at=now,
                            run_token=token,
                            items_synced=0,
                            created_at=now,
                            updated_at=now,
                        )
                    )
            except IntegrityError:
                # Lost the insert race; the winner's row decides
                with self._session() as session:
                    if not self._take_row(session, tenant_id, sync_kind, now, token):
                        raise AlreadyRunning(tenant_id, sync_kind)

        logger.info("Sync run started", tenant_id=tenant_id, sync_kind=sync_kind)
        return self.get(tenant_id, sync_kind)

    def _update_owned(
        self, tenant_id: int, sync_kind: str, run_token: str, values: dict[str, Any]
    ) -> bool:
        with self._session() as session:
            result = session.execute(
                update(SyncState)
                .where(
                    *self._row_filter(tenant_id, sync_kind),
                    SyncState.status == SyncStatus.RUNNING,
                    SyncState.run_token == run_token,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    @staticmethod
    def _lost_ownership(tenant_id: int, sync_kind: str) -> ConflictError:
        return ConflictError(
            f"Sync {sync_kind} for tenant {tenant_id} is no longer owned by this run"
        )

    def advance(
        self,
        tenant_id: int,
        sync_kind: str,
        cursor: Optional[str],
        items: int = 0,
        *,
        run_token: str,
    ) -> None:
        """Checkpoint ``cursor`` mid-run and refresh the heartbeat.

        Raises:
            ConflictError: If the row is no longer running under
                ``run_token`` (e.g. taken over after being judged stale).
        """
        now = self._clock()
        values: dict[str, Any] = {
            "items_synced": SyncState.items_synced + items,
            "heartbeat_at": now,
            "updated_at": now,
        }
        if cursor is not None:
            values["cursor"] = cursor

        if not self._update_owned(tenant_id, sync_kind, run_token, values):
            raise self._lost_ownership(tenant_id, sync_kind)

    def commit(
        self,
        tenant_id: int,
        sync_kind: str,
        new_cursor: Optional[str] = None,
        *,
        run_token: str,
    ) -> None:
        """Finish a run: store the cursor, go ``idle``, clear the last error.

        Raises:
            ConflictError: If the row is no longer running under ``run_token``.
        """
        now = self._clock()
        values: dict[str, Any] = {
            "status": SyncStatus.IDLE,
            "run_token": None,
            "last_error": None,
            "last_success_at": now,
            "updated_at": now,
        }
        if new_cursor is not None:
            values["cursor"] = new_cursor

        if not self._update_owned(tenant_id, sync_kind, run_token, values):
            raise self._lost_ownership(tenant_id, sync_kind)

        logger.info("Sync run committed", tenant_id=tenant_id, sync_kind=sync_kind)

    def fail(
        self,
        tenant_id: int,
        sync_kind: str,
        error: BaseException | str,
        *,
        run_token: str,
    ) -> None:
        """Record a failed run. The cursor is left where the last checkpoint put it.

        Raises:
            ConflictError: If the row is no longer running under ``run_token``;
                the successor's row is left untouched.
        """
        now = self._clock()
        message = error if isinstance(error, str) else f"{type(error).__name__}: {error}"

        recorded = self._update_owned(
            tenant_id,
            sync_kind,
            run_token,
            {
                "status": SyncStatus.ERROR,
                "run_token": None,
                "last_error": message[:LAST_ERROR_MAX_LENGTH],
                "last_error_at": now,
                "updated_at": now,
            },
        )
        if not recorded:
            raise self._lost_ownership(tenant_id, sync_kind)

        logger.warning(
            "Sync run failed", tenant_id=tenant_id, sync_kind=sync_kind, error=message
        )

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def request_manual_run(self, tenant_id: int, sync_kind: str = SyncKind.MESSAGES) -> None:
        """Flag a tenant to be synced on the next scheduler tick."""
        now = self._clock()
        stmt = (
            update(SyncState)
            .where(*self._row_filter(tenant_id, sync_kind))
            .values(trigger_requested_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )

        with self._session() as session:
            updated = session.execute(stmt).rowcount == 1

        if not updated:
            try:
                with self._session() as session:
                    session.add(
                        SyncState(
                            tenant_id=tenant_id,
                            sync_kind=sync_kind,
                            status=SyncStatus.IDLE,
                            trigger_requested_at=now,
                            items_synced=0,
                            created_at=now,
                            updated_at=now,
                        )
                    )
            except IntegrityError:
                with self._session() as session:
                    session.execute(stmt)

        logger.info("Manual sync requested", tenant_id=tenant_id, sync_kind=sync_kind)

    def clear_trigger(self, tenant_id: int, sync_kind: str = SyncKind.MESSAGES) -> None:
        with self._session() as session:
            session.execute(
                update(SyncState)
                .where(*self._row_filter(tenant_id, sync_kind))
                .values(trigger_requested_at=None)
                .execution_options(synchronize_session=False)
            )

    def is_due(
        self,
        tenant_id: int,
        interval: timedelta,
        sync_kind: str = SyncKind.MESSAGES,
        now: Optional[datetime] = None,
    ) -> bool:
        """Whether the scheduler should start a run for this tenant now.

        Due when never run, when a manual trigger is fresh, or when the
        last attempt is older than ``interval``. A live (non-stale) run is
        never due.
        """
        now = now or self._clock()
        entry = self.get(tenant_id, sync_kind)
        if entry is None:
            return True

        if entry.status == SyncStatus.RUNNING:
            last_seen = entry.last_seen_alive
            if last_seen is not None and last_seen >= self._stale_before(now):
                return False

        if entry.trigger_requested_at is not None:
            if now - entry.trigger_requested_at <= self.trigger_window:
                return True

        attempts = [t for t in (entry.last_success_at, entry.last_error_at) if t is not None]
        if not attempts:
            return True
        return now - max(attempts) >= interval

    def due_tenants(
        self,
        tenant_ids: list[int],
        interval: timedelta,
        sync_kind: str = SyncKind.MESSAGES,
    ) -> list[int]:
        now = self._clock()
        return [t for t in tenant_ids if self.is_due(t, interval, sync_kind, now=now)]


# =============================================================================
# STARTUP CHECK
# =============================================================================


def _has_unique_tenant_kind(engine: Engine) -> bool:
    inspector = inspect(engine)
    wanted = {"tenant_id", "sync_kind"}
    for constraint in inspector.get_unique_constraints(SyncState.__tablename__):
        if set(constraint.get("column_names") or []) == wanted:
            return True
    for index in inspector.get_indexes(SyncState.__tablename__):
        if index.get("unique") and set(index.get("column_names") or []) == wanted:
            return True
    return False


def ensure_unique_constraint(engine: Engine) -> dict[str, Any]:
    """Make sure ``sync_state`` has its (tenant_id, sync_kind) unique index.

    Older databases may hold duplicate rows. When the index is missing,
    duplicates are removed, keeping the most recently updated row of each
    group (highest id on ties), and the index is created.

    Returns:
        Dictionary with ``created`` and ``duplicates_removed``.
    """
    if not inspect(engine).has_table(SyncState.__tablename__):
        return {"created": False, "duplicates_removed": 0, "reason": "table_missing"}

    if _has_unique_tenant_kind(engine):
        return {"created": False, "duplicates_removed": 0}

    with engine.begin() as conn:
        rows = conn.execute(
            select(SyncState.id, SyncState.tenant_id, SyncState.sync_kind)
            .order_by(
                SyncState.tenant_id,
                SyncState.sync_kind,
                SyncState.updated_at.desc(),
                SyncState.id.desc(),
            )
        ).all()

        seen: set[tuple[int, str]] = set()
        duplicates: list[int] = []
        for row_id, tenant_id, sync_kind in rows:
            key = (tenant_id, sync_kind)
            if key in seen:
                duplicates.append(row_id)
            else:
                seen.add(key)

        if duplicates:
            conn.execute(delete(SyncState).where(SyncState.id.in_(duplicates)))

        conn.execute(
            text(
                f"CREATE UNIQUE INDEX {UNIQUE_INDEX_NAME} "
                f"ON {SyncState.__tablename__} (tenant_id, sync_kind)"
            )
        )

    logger.warning(
        "Created missing sync_state unique index",
        duplicates_removed=len(duplicates),
    )
    return {"created": True, "duplicates_removed": len(duplicates)}


__all__ = ["LedgerEntry", "SyncLedger", "ensure_unique_constraint"]
