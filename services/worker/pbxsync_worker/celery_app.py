"""Celery application configuration for the PBX sync worker."""

import os

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_ready

# Celery configuration from environment
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/1")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/2")
DISPATCH_INTERVAL_SECONDS = float(os.getenv("SYNC_DISPATCH_INTERVAL_SECONDS", "60"))

app = Celery(
    "pbxsync_worker",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=[
        "pbxsync_worker.tasks.sync",
        "pbxsync_worker.tasks.media",
    ],
)

app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Task execution
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Time limits (seconds); a cycle is bounded by SSH and statement timeouts
    task_soft_time_limit=1500,
    task_time_limit=1800,
    # Queue routing
    task_routes={
        "sync.*": {"queue": "sync"},
        "media.*": {"queue": "media"},
    },
    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,
)

# Beat schedule for periodic tasks
app.conf.beat_schedule = {
    # Fan out one cycle per due tenant
    "sync-dispatch-due-tenants": {
        "task": "sync.dispatch_due_tenants",
        "schedule": DISPATCH_INTERVAL_SECONDS,
        "args": (),
    },
    # Catch media uploaded after its message was merged
    "media-link-orphans-hourly": {
        "task": "media.link_orphans",
        "schedule": crontab(minute=15),
        "args": (),
    },
}


@worker_ready.connect
def check_sync_state_constraint(sender=None, **kwargs) -> None:
    """Make sure ``sync_state`` has its (tenant, kind) unique index."""
    from pbxsync_core.config import get_settings
    from pbxsync_core.domain.services.sync_ledger import ensure_unique_constraint
    from pbxsync_core.infra.db import get_sync_engine
    from pbxsync_core.observability.logging import configure_logging, get_logger

    settings = get_settings()
    configure_logging(level=settings.log_level, json_format=settings.log_json, service_name="pbxsync-worker")
    outcome = ensure_unique_constraint(get_sync_engine())
    get_logger(__name__).info("Sync state constraint checked", **outcome)


if __name__ == "__main__":
    app.start()
