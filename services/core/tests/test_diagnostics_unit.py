"""Unit tests for tenant connection diagnostics."""

import socket
from contextlib import nullcontext
from unittest.mock import MagicMock, patch

import pytest

from pbxsync_core.domain.errors import TunnelAuthError, TunnelDnsError, TunnelTcpError
from pbxsync_core.domain.services.diagnostics import CHECK_ORDER, ConnectionDiagnostics
from pbxsync_core.infrastructure.crypto import CredentialCipher
from pbxsync_core.remote import tunnel
from pbxsync_core.remote.extraction import REQUIRED_OBJECTS, SchemaReport
from pbxsync_core.remote.tunnel import TunnelEndpoint, TunnelManager

ADDRINFOS = [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("203.0.113.10", 22))]


@pytest.fixture
def transport():
    mock = MagicMock()
    mock.remote_version = "SSH-2.0-OpenSSH_9.2"
    return mock


@pytest.fixture
def sock():
    return MagicMock()


@pytest.fixture
def schema_client():
    client = MagicMock()
    client.__enter__.return_value = client
    client.check_schema.return_value = SchemaReport(present=list(REQUIRED_OBJECTS))
    return client


@pytest.fixture
def diagnostics(test_settings, cipher, schema_client):
    manager = TunnelManager(test_settings, cipher=cipher)
    manager.open = MagicMock(return_value=nullcontext(TunnelEndpoint("127.0.0.1", 40001)))
    factory = MagicMock(return_value=schema_client)
    return ConnectionDiagnostics(test_settings, tunnels=manager, client_factory=factory)


def patched_stages(resolve=None, connect=None, ssh=None):
    return (
        patch.object(tunnel, "resolve_host", **(resolve or {"return_value": ADDRINFOS})),
        patch.object(tunnel, "open_socket", **(connect or {})),
        patch.object(tunnel, "start_transport", **(ssh or {})),
    )


class TestConnectionDiagnostics:
    """Tests for the ordered connectivity checks."""

    def test_all_checks_pass(self, diagnostics, tenant, sock, transport):
        dns, tcp, ssh = patched_stages(
            connect={"return_value": sock}, ssh={"return_value": transport}
        )
        with dns, tcp, ssh:
            report = diagnostics.run(tenant)

        assert report.ok is True
        assert [c.name for c in report.checks] == list(CHECK_ORDER)
        assert "203.0.113.10" in report.checks[0].detail
        assert "OpenSSH_9.2" in report.checks[2].detail
        assert "4 chat objects present" in report.checks[3].detail
        transport.close.assert_called_once()

    def test_db_check_uses_decrypted_password(self, diagnostics, tenant, sock, transport):
        dns, tcp, ssh = patched_stages(
            connect={"return_value": sock}, ssh={"return_value": transport}
        )
        with dns, tcp, ssh:
            diagnostics.run(tenant)

        kwargs = diagnostics.client_factory.call_args.kwargs
        assert kwargs["db_password"] == "db-secret"
        assert kwargs["db_name"] == tenant.db_name

    def test_dns_failure_skips_the_rest(self, diagnostics, tenant):
        dns, tcp, ssh = patched_stages(
            resolve={"side_effect": TunnelDnsError("Cannot resolve", host="acme.pbx.example.com")}
        )
        with dns, tcp as mock_tcp, ssh:
            report = diagnostics.run(tenant)

        assert report.ok is False
        assert report.failed_check == "dns"
        assert [c.skipped for c in report.checks] == [False, True, True, True]
        mock_tcp.assert_not_called()

    def test_tcp_failure(self, diagnostics, tenant):
        dns, tcp, ssh = patched_stages(connect={"side_effect": TunnelTcpError("timed out")})
        with dns, tcp, ssh as mock_ssh:
            report = diagnostics.run(tenant)

        assert report.failed_check == "tcp"
        mock_ssh.assert_not_called()

    def test_auth_failure_closes_socket(self, diagnostics, tenant, sock):
        dns, tcp, ssh = patched_stages(
            connect={"return_value": sock},
            ssh={"side_effect": TunnelAuthError("rejected for root")},
        )
        with dns, tcp, ssh:
            report = diagnostics.run(tenant)

        assert report.failed_check == "ssh_auth"
        assert report.checks[3].skipped is True
        sock.close.assert_called_once()
        diagnostics.tunnels.open.assert_not_called()

    def test_missing_schema_objects_reported(
        self, diagnostics, tenant, sock, transport, schema_client
    ):
        schema_client.check_schema.return_value = SchemaReport(present=["chat_message"])
        dns, tcp, ssh = patched_stages(
            connect={"return_value": sock}, ssh={"return_value": transport}
        )
        with dns, tcp, ssh:
            report = diagnostics.run(tenant)

        assert report.checks[3].passed is True
        assert "missing" in report.checks[3].detail

    def test_undecryptable_credentials(self, test_settings, tenant):
        wrong_cipher = CredentialCipher(CredentialCipher.generate_key())
        diagnostics = ConnectionDiagnostics(test_settings, cipher=wrong_cipher)

        report = diagnostics.run(tenant)

        assert report.failed_check == "dns"
        assert "decrypt" in report.checks[0].detail
        assert len(report.checks) == len(CHECK_ORDER)

    def test_tenant_without_ssh_host_reports_config_failure(self, diagnostics, tenant):
        tenant.ssh_host = None

        report = diagnostics.run(tenant)

        assert report.ok is False
        assert report.failed_check == "dns"
        assert report.checks[0].detail.startswith("[config]")
        assert [c.skipped for c in report.checks] == [False, True, True, True]
        diagnostics.tunnels.open.assert_not_called()

    def test_report_dict(self, diagnostics, tenant, sock, transport):
        dns, tcp, ssh = patched_stages(
            connect={"return_value": sock}, ssh={"return_value": transport}
        )
        with dns, tcp, ssh:
            data = diagnostics.run(tenant).to_dict()

        assert data["tenant_slug"] == "acme"
        assert data["ok"] is True
        assert data["failed_check"] is None
        assert len(data["checks"]) == 4
