#!/usr/bin/env python3
"""Back up, recompress, migrate and restore stored chat media.

Run this inside the container:
    docker exec pbxsync-core python /app/scripts/media_tool.py backup --output /backups/media-2026-10-19
    docker exec pbxsync-core python /app/scripts/media_tool.py compress --dry-run --type image
    docker exec pbxsync-core python /app/scripts/media_tool.py compress --backup-dir /backups/media-2026-10-19
    docker exec pbxsync-core python /app/scripts/media_tool.py restore --backup-dir /backups/media-2026-10-19
    docker exec pbxsync-core python /app/scripts/media_tool.py discover --tenant-id 7
    docker exec pbxsync-core python /app/scripts/media_tool.py migrate --tenant-id 7 --from supabase --to s3 --backup-dir /backups/move-7
"""

import argparse
import json
import sys

from pbxsync_core.config import get_settings
from pbxsync_core.domain.models import Tenant
from pbxsync_core.domain.services.media_ingest import MediaDiscovery
from pbxsync_core.domain.services.media_pipeline import (
    MediaBackupService,
    MediaCategory,
    MediaCompressionPipeline,
    MediaMigrationService,
)
from pbxsync_core.infra.db import get_sync_session_factory
from pbxsync_core.observability.logging import configure_logging
from pbxsync_core.storage import StorageRegistry


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Chat media maintenance")
    sub = parser.add_subparsers(dest="command", required=True)

    categories = [c.value for c in MediaCategory]

    backup = sub.add_parser("backup", help="Download originals with a manifest")
    backup.add_argument("--output", required=True)
    backup.add_argument("--tenant-id", type=int, default=None)
    backup.add_argument("--type", dest="category", choices=categories, default="all")
    backup.add_argument("--limit", type=int, default=None)

    compress = sub.add_parser("compress", help="Recompress media in place")
    compress.add_argument("--tenant-id", type=int, default=None)
    compress.add_argument("--type", dest="category", choices=categories, default="all")
    compress.add_argument("--dry-run", action="store_true")
    compress.add_argument("--backup-dir", default=None)
    compress.add_argument("--limit", type=int, default=None)
    compress.add_argument(
        "--no-backup",
        action="store_true",
        help="Allow replacing files without --backup-dir",
    )

    restore = sub.add_parser("restore", help="Restore originals from a backup")
    restore.add_argument("--backup-dir", required=True)

    discover = sub.add_parser("discover", help="Register stored objects that have no record")
    discover.add_argument("--tenant-id", type=int, required=True)
    discover.add_argument("--backend", dest="backends", action="append", default=None)

    migrate = sub.add_parser("migrate", help="Move a tenant's media to another backend")
    migrate.add_argument("--tenant-id", type=int, required=True)
    migrate.add_argument("--from", dest="source", required=True)
    migrate.add_argument("--to", dest="target", required=True)
    migrate.add_argument("--backup-dir", default=None)
    migrate.add_argument("--dry-run", action="store_true")
    migrate.add_argument("--limit", type=int, default=None)

    return parser


def main() -> None:
    args = build_parser().parse_args()

    settings = get_settings()
    configure_logging(level=settings.log_level, json_format=settings.log_json)

    if args.command == "compress" and not args.dry_run and not args.backup_dir and not args.no_backup:
        print("Refusing to replace media without --backup-dir (or --no-backup)", file=sys.stderr)
        sys.exit(2)
    if args.command == "migrate" and not args.dry_run and not args.backup_dir:
        print("Refusing to migrate media without --backup-dir", file=sys.stderr)
        sys.exit(2)

    session = get_sync_session_factory()()
    storage = StorageRegistry(settings)
    try:
        if args.command == "backup":
            report = MediaBackupService(session, storage).backup(
                args.output,
                tenant_id=args.tenant_id,
                category=args.category,
                limit=args.limit,
            )
            failed = report.failed
        elif args.command == "compress":
            report = MediaCompressionPipeline(session, storage, settings).run(
                tenant_id=args.tenant_id,
                category=args.category,
                dry_run=args.dry_run,
                backup_dir=args.backup_dir,
                limit=args.limit,
            )
            failed = report.to_dict()["failed"]
        elif args.command == "discover":
            tenant = session.get(Tenant, args.tenant_id)
            if tenant is None:
                print(f"Tenant {args.tenant_id} not found", file=sys.stderr)
                sys.exit(2)
            report = MediaDiscovery(session, storage).discover(tenant, backends=args.backends)
            failed = len(report.errors)
        elif args.command == "migrate":
            report = MediaMigrationService(session, storage).migrate(
                args.tenant_id,
                args.source,
                args.target,
                backup_dir=args.backup_dir,
                dry_run=args.dry_run,
                limit=args.limit,
            )
            failed = report.failed
        else:
            report = MediaBackupService(session, storage).restore(args.backup_dir)
            failed = report.failed
    finally:
        session.close()

    print(json.dumps(report.to_dict(), indent=2))
    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
