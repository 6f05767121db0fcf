"""Step-by-step connectivity check for one tenant's PBX.

Runs the same stages a sync cycle goes through, one at a time, so an
operator can see exactly where a tenant's connection breaks:

    dns       resolve the SSH host
    tcp       connect to the SSH port
    ssh_auth  SSH handshake and password authentication
    db_query  open the tunnel, connect to the PBX database, check its schema

A failed check marks every later check as skipped.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pbxsync_core.config import Settings, get_settings
from pbxsync_core.domain.errors import ConnectivityError, SyncEngineError
from pbxsync_core.domain.models import Tenant
from pbxsync_core.infrastructure.crypto import CredentialCipher, DecryptionError
from pbxsync_core.observability.logging import get_logger
from pbxsync_core.remote import tunnel
from pbxsync_core.remote.extraction import RemoteExtractionClient
from pbxsync_core.remote.tunnel import TunnelManager, TunnelParams

logger = get_logger(__name__)

CHECK_ORDER = ("dns", "tcp", "ssh_auth", "db_query")


@dataclass
class CheckResult:
    name: str
    passed: bool
    detail: str = ""
    duration_ms: float = 0.0
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "detail": self.detail,
            "duration_ms": round(self.duration_ms, 1),
            "skipped": self.skipped,
        }


@dataclass
class DiagnosticReport:
    tenant_id: int
    tenant_slug: str
    checks: list[CheckResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.checks) and all(c.passed for c in self.checks)

    @property
    def failed_check(self) -> Optional[str]:
        for check in self.checks:
            if not check.passed and not check.skipped:
                return check.name
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "tenant_slug": self.tenant_slug,
            "ok": self.ok,
            "failed_check": self.failed_check,
            "checks": [c.to_dict() for c in self.checks],
        }


class ConnectionDiagnostics:
    """Runs the dns, tcp, ssh_auth and db_query checks in order."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        cipher: Optional[CredentialCipher] = None,
        tunnels: Optional[TunnelManager] = None,
        client_factory: Optional[Callable[..., RemoteExtractionClient]] = None,
    ):
        self.settings = settings or get_settings()
        self.tunnels = tunnels or TunnelManager(self.settings, cipher)
        self.client_factory = client_factory or RemoteExtractionClient.connect

    def run(self, tenant: Tenant) -> DiagnosticReport:
        report = DiagnosticReport(tenant_id=tenant.id, tenant_slug=tenant.slug)
        state: dict[str, Any] = {}

        try:
            params = self.tunnels.params_for(tenant)
        except DecryptionError as e:
            return self._fail_before_dns(report, f"Cannot decrypt credentials: {e}")
        except ConnectivityError as e:
            return self._fail_before_dns(report, str(e))

        steps: list[tuple[str, Callable[[], str]]] = [
            ("dns", lambda: self._check_dns(params, state)),
            ("tcp", lambda: self._check_tcp(params, state)),
            ("ssh_auth", lambda: self._check_ssh(params, state)),
            ("db_query", lambda: self._check_db(tenant, params)),
        ]

        try:
            for name, step in steps:
                started = time.monotonic()
                try:
                    detail = step()
                except (SyncEngineError, DecryptionError) as e:
                    report.checks.append(
                        CheckResult(name, False, str(e), (time.monotonic() - started) * 1000)
                    )
                    self._skip_rest(report, name)
                    break
                report.checks.append(
                    CheckResult(name, True, detail, (time.monotonic() - started) * 1000)
                )
        finally:
            transport = state.get("transport")
            if transport is not None:
                transport.close()
            sock = state.get("sock")
            if sock is not None and transport is None:
                sock.close()

        return self._finished(report)

    def _fail_before_dns(self, report: DiagnosticReport, detail: str) -> DiagnosticReport:
        # Nothing can be contacted without usable credentials
        report.checks.append(CheckResult("dns", False, detail))
        self._skip_rest(report, "dns")
        return self._finished(report)

    @staticmethod
    def _finished(report: DiagnosticReport) -> DiagnosticReport:
        logger.info(
            "Connection diagnostics finished",
            tenant_id=report.tenant_id,
            ok=report.ok,
            failed_check=report.failed_check,
        )
        return report

    @staticmethod
    def _skip_rest(report: DiagnosticReport, failed: str) -> None:
        for name in CHECK_ORDER[CHECK_ORDER.index(failed) + 1:]:
            report.checks.append(
                CheckResult(name, False, f"skipped after {failed} failure", skipped=True)
            )

    def _check_dns(self, params: TunnelParams, state: dict) -> str:
        addrinfos = tunnel.resolve_host(params.ssh_host, params.ssh_port)
        state["addrinfos"] = addrinfos
        addresses = sorted({info[4][0] for info in addrinfos})
        return f"{params.ssh_host} -> {', '.join(addresses)}"

    def _check_tcp(self, params: TunnelParams, state: dict) -> str:
        state["sock"] = tunnel.open_socket(
            state["addrinfos"],
            self.settings.ssh_connect_timeout_seconds,
            host=params.ssh_host,
        )
        return f"connected to {params.ssh_host}:{params.ssh_port}"

    def _check_ssh(self, params: TunnelParams, state: dict) -> str:
        transport = tunnel.start_transport(
            state["sock"],
            params.ssh_username,
            params.ssh_password,
            timeout=self.settings.ssh_connect_timeout_seconds,
            host=params.ssh_host,
        )
        state["transport"] = transport
        version = transport.remote_version or "unknown server"
        return f"authenticated as {params.ssh_username} ({version})"

    def _check_db(self, tenant: Tenant, params: TunnelParams) -> str:
        db_password = self.tunnels.cipher.decrypt_optional(tenant.db_password_encrypted)
        with self.tunnels.open(params) as endpoint:
            client = self.client_factory(
                endpoint,
                db_name=tenant.db_name,
                db_user=tenant.db_user,
                db_password=db_password,
                connect_timeout=self.settings.remote_db_connect_timeout_seconds,
                statement_timeout_ms=self.settings.remote_statement_timeout_ms,
            )
            with client:
                schema = client.check_schema()
        if not schema.is_complete:
            return f"connected; missing {', '.join(schema.missing)}"
        return f"connected; {len(schema.present)} chat objects present"


__all__ = ["CheckResult", "ConnectionDiagnostics", "DiagnosticReport"]
