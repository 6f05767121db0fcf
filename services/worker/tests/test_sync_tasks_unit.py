"""Unit tests for tenant sync tasks.

Tests cover:
- Task registration, routing and the beat schedule
- dispatch_due_tenants fan-out
- run_tenant_cycle, request_manual_run and diagnose_tenant
"""

from unittest.mock import MagicMock, patch


class TestCeleryConfiguration:
    """Tests for task names, routes and schedule."""

    def test_tasks_registered(self, mock_celery_app):
        import pbxsync_worker.tasks  # noqa: F401

        for name in (
            "sync.dispatch_due_tenants",
            "sync.run_tenant_cycle",
            "sync.request_manual_run",
            "sync.diagnose_tenant",
            "media.link_orphans",
            "media.backup",
            "media.recompress",
            "media.restore",
        ):
            assert name in mock_celery_app.tasks

    def test_queue_routing(self, mock_celery_app):
        routes = mock_celery_app.conf.task_routes

        assert routes["sync.*"] == {"queue": "sync"}
        assert routes["media.*"] == {"queue": "media"}

    def test_beat_schedule(self, mock_celery_app):
        schedule = mock_celery_app.conf.beat_schedule

        assert schedule["sync-dispatch-due-tenants"]["task"] == "sync.dispatch_due_tenants"
        assert schedule["media-link-orphans-hourly"]["task"] == "media.link_orphans"


class TestDispatchDueTenants:
    """Tests for the scheduler tick."""

    def test_dispatches_never_synced_tenants(self, patched_db, make_tenant):
        """Tenants without a ledger row are due."""
        from pbxsync_worker.tasks import sync

        first = make_tenant("acme")
        second = make_tenant("globex")

        with patch.object(sync.run_tenant_cycle, "delay") as mock_delay:
            result = sync.dispatch_due_tenants.apply().get()

        assert result["status"] == "success"
        assert result["checked"] == 2
        assert result["dispatched"] == [first, second]
        assert mock_delay.call_count == 2

    def test_skips_disabled_and_running_tenants(self, patched_db, make_tenant):
        """Inactive, sync-disabled and currently running tenants are not dispatched."""
        from pbxsync_core.domain.models import SyncKind
        from pbxsync_core.domain.services.sync_ledger import SyncLedger
        from pbxsync_worker.tasks import sync

        running = make_tenant("acme")
        make_tenant("globex", is_active=False)
        make_tenant("initech", sync_enabled=False)
        SyncLedger(patched_db).begin(running, SyncKind.MESSAGES)

        with patch.object(sync.run_tenant_cycle, "delay") as mock_delay:
            result = sync.dispatch_due_tenants.apply().get()

        assert result["checked"] == 1
        assert result["dispatched"] == []
        mock_delay.assert_not_called()

    def test_manual_trigger_is_cleared_on_dispatch(self, patched_db, make_tenant):
        """A pending trigger is consumed when the cycle is enqueued."""
        from pbxsync_core.domain.models import SyncKind
        from pbxsync_core.domain.services.sync_ledger import SyncLedger
        from pbxsync_worker.tasks import sync

        tenant_id = make_tenant("acme")
        ledger = SyncLedger(patched_db)
        token = ledger.begin(tenant_id, SyncKind.MESSAGES).run_token
        ledger.commit(tenant_id, SyncKind.MESSAGES, "c1", run_token=token)
        ledger.request_manual_run(tenant_id)

        with patch.object(sync.run_tenant_cycle, "delay"):
            result = sync.dispatch_due_tenants.apply().get()

        assert result["dispatched"] == [tenant_id]
        assert ledger.get(tenant_id, SyncKind.MESSAGES).trigger_requested_at is None


class TestRunTenantCycle:
    """Tests for the per-tenant cycle task."""

    def test_returns_cycle_result(self, patched_db):
        from pbxsync_worker.tasks import sync

        cycle_result = MagicMock()
        cycle_result.to_dict.return_value = {"tenant_id": 5, "status": "success", "messages": 12}

        with patch("pbxsync_core.domain.services.sync_cycle.SyncCycleService") as mock_service:
            mock_service.return_value.run_cycle.return_value = cycle_result
            result = sync.run_tenant_cycle.apply(args=[5]).get()

        assert result == {"tenant_id": 5, "status": "success", "messages": 12}
        mock_service.return_value.run_cycle.assert_called_once_with(5)

    def test_unexpected_error_is_reported(self, patched_db):
        """Crashes become an error result instead of a task retry."""
        from pbxsync_worker.tasks import sync

        with patch("pbxsync_core.domain.services.sync_cycle.SyncCycleService") as mock_service:
            mock_service.return_value.run_cycle.side_effect = RuntimeError("disk full")
            result = sync.run_tenant_cycle.apply(args=[5]).get()

        assert result["status"] == "error"
        assert result["error"] == "disk full"


class TestRequestManualRun:
    """Tests for manual triggers."""

    def test_queues_trigger(self, patched_db, make_tenant):
        from pbxsync_core.domain.models import SyncKind
        from pbxsync_core.domain.services.sync_ledger import SyncLedger
        from pbxsync_worker.tasks import sync

        tenant_id = make_tenant("acme")

        result = sync.request_manual_run.apply(args=[tenant_id]).get()

        assert result["status"] == "queued"
        assert result["sync_kind"] == SyncKind.MESSAGES
        entry = SyncLedger(patched_db).get(tenant_id, SyncKind.MESSAGES)
        assert entry.trigger_requested_at is not None

    def test_unknown_kind(self, patched_db, make_tenant):
        from pbxsync_worker.tasks import sync

        result = sync.request_manual_run.apply(args=[make_tenant("acme"), "contacts"]).get()

        assert result["status"] == "error"
        assert "contacts" in result["error"]

    def test_unknown_tenant(self, patched_db):
        from pbxsync_worker.tasks import sync

        result = sync.request_manual_run.apply(args=[404]).get()

        assert result["status"] == "error"
        assert "not found" in result["error"]


class TestDiagnoseTenant:
    """Tests for the diagnostics task."""

    def test_failed_report(self, patched_db, make_tenant):
        from pbxsync_worker.tasks import sync

        tenant_id = make_tenant("acme")
        report = MagicMock(ok=False)
        report.to_dict.return_value = {"tenant_id": tenant_id, "failed_check": "tcp"}

        with patch("pbxsync_core.domain.services.diagnostics.ConnectionDiagnostics") as mock_diag:
            mock_diag.return_value.run.return_value = report
            result = sync.diagnose_tenant.apply(args=[tenant_id]).get()

        assert result["status"] == "failed"
        assert result["failed_check"] == "tcp"

    def test_unknown_tenant(self, patched_db):
        from pbxsync_worker.tasks import sync

        result = sync.diagnose_tenant.apply(args=[404]).get()

        assert result["status"] == "error"
