"""PBX sync worker tasks."""

# Import all tasks to register them with Celery
from pbxsync_worker.tasks import media  # noqa: F401
from pbxsync_worker.tasks import sync  # noqa: F401
