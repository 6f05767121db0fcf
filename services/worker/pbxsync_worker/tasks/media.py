"""Media tasks: orphan linking, storage discovery, backup, recompression,
backend migration and restore.

Compression, migration and restore mutate stored objects, so they are never retried
automatically; run them again with the same backup directory instead.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pbxsync_worker.celery_app import app


def _default_backup_dir(prefix: str) -> str:
    from pbxsync_core.config import get_settings

    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d_%H%M%S")
    return str(Path(get_settings().media_backups_path) / f"{prefix}_{stamp}")


@app.task(name="media.link_orphans", bind=True)
def link_orphans(self, tenant_id: Optional[int] = None) -> dict:
    """Link orphaned media for one tenant, or for every active tenant."""
    from pbxsync_core.domain.models import Tenant
    from pbxsync_core.domain.services.sync_cycle import run_media_link
    from pbxsync_core.infra.db import get_sync_session_factory

    session_factory = get_sync_session_factory()

    if tenant_id is None:
        session = session_factory()
        try:
            tenant_ids = [
                row[0]
                for row in session.query(Tenant.id)
                .filter(Tenant.is_active.is_(True))
                .order_by(Tenant.id)
            ]
        finally:
            session.close()
    else:
        tenant_ids = [tenant_id]

    results = []
    errors = []
    for tid in tenant_ids:
        try:
            results.append(run_media_link(session_factory, tid))
        except Exception as e:
            errors.append({"tenant_id": tid, "error": str(e)})

    return {
        "status": "success" if not errors else "partial",
        "tenants": len(tenant_ids),
        "linked": sum(r.get("linked", 0) for r in results),
        "results": results,
        "errors": errors,
    }


@app.task(name="media.discover_orphans", bind=True)
def discover_orphans(self, tenant_id: int, backends: Optional[list[str]] = None) -> dict:
    """Register stored objects under the tenant's prefix that have no record."""
    from pbxsync_core.domain.models import Tenant
    from pbxsync_core.domain.services.media_ingest import MediaDiscovery
    from pbxsync_core.infra.db import get_sync_session_factory
    from pbxsync_core.storage import StorageRegistry

    session = get_sync_session_factory()()
    try:
        tenant = session.get(Tenant, tenant_id)
        if tenant is None:
            return {"status": "error", "tenant_id": tenant_id, "error": "tenant not found"}
        result = MediaDiscovery(session, StorageRegistry()).discover(tenant, backends=backends)
        status = "success" if not result.errors else "partial"
        return {"status": status, "tenant_id": tenant_id, **result.to_dict()}
    except Exception as e:
        session.rollback()
        return {"status": "error", "tenant_id": tenant_id, "error": str(e)}
    finally:
        session.close()


@app.task(name="media.backup", bind=True, max_retries=0)
def backup(
    self,
    output_dir: Optional[str] = None,
    tenant_id: Optional[int] = None,
    category: str = "all",
    limit: Optional[int] = None,
) -> dict:
    """Download media originals and a manifest into ``output_dir``."""
    from pbxsync_core.domain.services.media_pipeline import MediaBackupService
    from pbxsync_core.infra.db import get_sync_session_factory
    from pbxsync_core.storage import StorageRegistry

    output_dir = output_dir or _default_backup_dir("media_backup")
    session = get_sync_session_factory()()
    try:
        report = MediaBackupService(session, StorageRegistry()).backup(
            output_dir, tenant_id=tenant_id, category=category, limit=limit
        )
        return {"status": "success", "output_dir": output_dir, **report.to_dict()}
    except Exception as e:
        session.rollback()
        return {"status": "error", "output_dir": output_dir, "error": str(e)}
    finally:
        session.close()


@app.task(name="media.recompress", bind=True, max_retries=0, acks_late=False)
def recompress(
    self,
    tenant_id: Optional[int] = None,
    category: str = "all",
    dry_run: bool = False,
    backup_dir: Optional[str] = None,
    limit: Optional[int] = None,
) -> dict:
    """Recompress stored media.

    Originals are always backed up before replacement; when no
    ``backup_dir`` is given a dated directory under the configured backups
    path is used.
    """
    from pbxsync_core.domain.services.media_pipeline import MediaCompressionPipeline
    from pbxsync_core.infra.db import get_sync_session_factory
    from pbxsync_core.storage import StorageRegistry

    if not dry_run and backup_dir is None:
        backup_dir = _default_backup_dir("media_compress")

    session = get_sync_session_factory()()
    try:
        pipeline = MediaCompressionPipeline(session, StorageRegistry())
        report = pipeline.run(
            tenant_id=tenant_id,
            category=category,
            dry_run=dry_run,
            backup_dir=backup_dir,
            limit=limit,
        )
        return {"status": "success", "backup_dir": backup_dir, **report.to_dict()}
    except Exception as e:
        session.rollback()
        return {"status": "error", "backup_dir": backup_dir, "error": str(e)}
    finally:
        session.close()


@app.task(name="media.migrate", bind=True, max_retries=0, acks_late=False)
def migrate(
    self,
    tenant_id: int,
    source_backend: str,
    target_backend: str,
    dry_run: bool = False,
    backup_dir: Optional[str] = None,
    limit: Optional[int] = None,
) -> dict:
    """Move a tenant's media to another storage backend.

    Every moved file is recorded in ``backup_dir`` so ``media.restore`` can
    move it back.
    """
    from pbxsync_core.domain.services.media_pipeline import MediaMigrationService
    from pbxsync_core.infra.db import get_sync_session_factory
    from pbxsync_core.storage import StorageRegistry

    if not dry_run and backup_dir is None:
        backup_dir = _default_backup_dir("media_migrate")

    session = get_sync_session_factory()()
    try:
        report = MediaMigrationService(session, StorageRegistry()).migrate(
            tenant_id,
            source_backend,
            target_backend,
            backup_dir=backup_dir,
            dry_run=dry_run,
            limit=limit,
        )
        status = "success" if report.failed == 0 else "partial"
        return {"status": status, "backup_dir": backup_dir, **report.to_dict()}
    except Exception as e:
        session.rollback()
        return {"status": "error", "backup_dir": backup_dir, "error": str(e)}
    finally:
        session.close()


@app.task(name="media.restore", bind=True, max_retries=0, acks_late=False)
def restore(self, backup_dir: str) -> dict:
    """Put every file in a backup back where it came from."""
    from pbxsync_core.domain.services.media_pipeline import MediaBackupService
    from pbxsync_core.infra.db import get_sync_session_factory
    from pbxsync_core.storage import StorageRegistry

    if not Path(backup_dir, "manifest.json").exists():
        return {
            "status": "error",
            "backup_dir": backup_dir,
            "error": "manifest.json not found",
        }

    session = get_sync_session_factory()()
    try:
        report = MediaBackupService(session, StorageRegistry()).restore(backup_dir)
        status = "success" if report.failed == 0 else "partial"
        return {"status": status, "backup_dir": backup_dir, **report.to_dict()}
    except Exception as e:
        session.rollback()
        return {"status": "error", "backup_dir": backup_dir, "error": str(e)}
    finally:
        session.close()
