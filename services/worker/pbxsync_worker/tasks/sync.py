"""Tenant sync tasks.

The beat schedule runs ``sync.dispatch_due_tenants`` every tick; it asks the
ledger which tenants are due and enqueues one ``sync.run_tenant_cycle`` per
tenant. Worker concurrency bounds how many cycles run at once across the
fleet, and the ledger's run gate keeps a tenant from overlapping itself.
"""

from datetime import timedelta
from typing import Optional

from pbxsync_worker.celery_app import app


def _ledger(settings, session_factory):
    from pbxsync_core.domain.services.sync_ledger import SyncLedger

    return SyncLedger(
        session_factory,
        stale_after=timedelta(minutes=settings.sync_stale_run_minutes),
        trigger_window=timedelta(seconds=settings.manual_trigger_window_seconds),
    )


@app.task(name="sync.dispatch_due_tenants", bind=True)
def dispatch_due_tenants(self) -> dict:
    """Enqueue a cycle for every active tenant that is due.

    A tenant is due when it never ran, when a manual trigger is pending, or
    when its last attempt is older than the sync interval. Pending triggers
    are cleared as the cycle is enqueued.

    Returns:
        Dictionary with the tenants checked and dispatched.
    """
    from pbxsync_core.config import get_settings
    from pbxsync_core.domain.models import Tenant
    from pbxsync_core.infra.db import get_sync_session_factory

    settings = get_settings()
    session_factory = get_sync_session_factory()
    session = session_factory()

    try:
        tenant_ids = [
            row[0]
            for row in session.query(Tenant.id)
            .filter(Tenant.is_active.is_(True), Tenant.sync_enabled.is_(True))
            .order_by(Tenant.id)
        ]
    finally:
        session.close()

    ledger = _ledger(settings, session_factory)
    due = ledger.due_tenants(tenant_ids, timedelta(seconds=settings.sync_interval_seconds))

    dispatched = []
    for tenant_id in due:
        ledger.clear_trigger(tenant_id)
        run_tenant_cycle.delay(tenant_id)
        dispatched.append(tenant_id)

    return {
        "status": "success",
        "checked": len(tenant_ids),
        "dispatched": dispatched,
    }


@app.task(name="sync.run_tenant_cycle", bind=True, max_retries=0)
def run_tenant_cycle(self, tenant_id: int) -> dict:
    """Run one sync cycle for a tenant.

    Failed cycles are not retried here; the tenant becomes due again on a
    later dispatch tick.
    """
    from pbxsync_core.domain.services.sync_cycle import SyncCycleService
    from pbxsync_core.infra.db import get_sync_session_factory

    try:
        service = SyncCycleService(get_sync_session_factory())
        return service.run_cycle(tenant_id).to_dict()
    except Exception as e:
        return {
            "status": "error",
            "tenant_id": tenant_id,
            "error": str(e),
        }


@app.task(name="sync.request_manual_run", bind=True)
def request_manual_run(self, tenant_id: int, sync_kind: Optional[str] = None) -> dict:
    """Flag a tenant to run on the next dispatch tick."""
    from pbxsync_core.config import get_settings
    from pbxsync_core.domain.models import SyncKind, Tenant
    from pbxsync_core.infra.db import get_sync_session_factory

    sync_kind = sync_kind or SyncKind.MESSAGES
    if sync_kind not in SyncKind.ALL:
        return {
            "status": "error",
            "tenant_id": tenant_id,
            "error": f"Unknown sync kind: {sync_kind}",
        }

    session_factory = get_sync_session_factory()
    session = session_factory()
    try:
        if session.get(Tenant, tenant_id) is None:
            return {
                "status": "error",
                "tenant_id": tenant_id,
                "error": f"Tenant {tenant_id} not found",
            }
    finally:
        session.close()

    _ledger(get_settings(), session_factory).request_manual_run(tenant_id, sync_kind)
    return {
        "status": "queued",
        "tenant_id": tenant_id,
        "sync_kind": sync_kind,
    }


@app.task(name="sync.diagnose_tenant", bind=True, max_retries=0)
def diagnose_tenant(self, tenant_id: int) -> dict:
    """Run the dns, tcp, ssh_auth and db_query checks for a tenant."""
    from pbxsync_core.domain.models import Tenant
    from pbxsync_core.domain.services.diagnostics import ConnectionDiagnostics
    from pbxsync_core.infra.db import get_sync_session_factory

    session = get_sync_session_factory()()
    try:
        tenant = session.get(Tenant, tenant_id)
        if tenant is None:
            return {
                "status": "error",
                "tenant_id": tenant_id,
                "error": f"Tenant {tenant_id} not found",
            }
        report = ConnectionDiagnostics().run(tenant)
    finally:
        session.close()

    return {"status": "success" if report.ok else "failed", **report.to_dict()}
