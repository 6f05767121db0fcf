#!/usr/bin/env python3
"""Check connectivity to one tenant's PBX, stage by stage.

Run this inside the container:
    docker exec pbxsync-core python /app/scripts/diagnose_tenant.py acme
    docker exec pbxsync-core python /app/scripts/diagnose_tenant.py 12 --json
"""

import argparse
import json
import sys

from pbxsync_core.config import get_settings
from pbxsync_core.domain.models import Tenant
from pbxsync_core.domain.services.diagnostics import ConnectionDiagnostics
from pbxsync_core.infra.db import get_sync_session_factory
from pbxsync_core.observability.logging import configure_logging


def find_tenant(session, ref: str):
    """Look a tenant up by id or slug."""
    if ref.isdigit():
        tenant = session.get(Tenant, int(ref))
        if tenant is not None:
            return tenant
    return session.query(Tenant).filter(Tenant.slug == ref).first()


def main() -> None:
    parser = argparse.ArgumentParser(description="Diagnose PBX connectivity for a tenant")
    parser.add_argument("tenant", help="Tenant id or slug")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(level="WARNING", json_format=settings.log_json)

    session = get_sync_session_factory()()
    try:
        tenant = find_tenant(session, args.tenant)
        if tenant is None:
            print(f"Tenant not found: {args.tenant}", file=sys.stderr)
            sys.exit(2)
        report = ConnectionDiagnostics(settings).run(tenant)
    finally:
        session.close()

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(f"Tenant {report.tenant_slug} (id {report.tenant_id})")
        for check in report.checks:
            mark = "SKIP" if check.skipped else ("PASS" if check.passed else "FAIL")
            print(f"  [{mark}] {check.name:<9} {check.duration_ms:8.1f} ms  {check.detail}")

    if not report.ok:
        sys.exit(1)


if __name__ == "__main__":
    main()
