"""SSH tunnels to tenant PBX databases.

A tunnel is opened in three separately-reported stages (DNS resolution,
TCP connect, SSH handshake + password auth) so that an unreachable host
and a rejected password surface as different errors. Once authenticated,
a local listener on ``127.0.0.1`` with an OS-assigned port forwards each
accepted connection over a ``direct-tcpip`` channel to the database port
on the PBX side.

Usage:
    params = TunnelParams.from_tenant(tenant, cipher)

    with open_tunnel(params) as endpoint:
        psycopg2.connect(host=endpoint.host, port=endpoint.port, ...)

The listener, every forwarded channel, and the SSH transport are closed
when the ``with`` block exits, whether it exits normally or not.
"""

import select
import socket
import socketserver
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional

import paramiko

from pbxsync_core.config import Settings, get_settings
from pbxsync_core.domain.errors import (
    ConnectivityError,
    TunnelAuthError,
    TunnelDnsError,
    TunnelHandshakeError,
    TunnelTcpError,
)
from pbxsync_core.domain.models import Tenant
from pbxsync_core.infrastructure.crypto import CredentialCipher
from pbxsync_core.observability.logging import get_logger

logger = get_logger(__name__)

LOCAL_BIND_HOST = "127.0.0.1"
PUMP_CHUNK_SIZE = 32 * 1024


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass(frozen=True)
class TunnelParams:
    """Where to SSH to, and where to forward to from there."""

    ssh_host: str
    ssh_port: int
    ssh_username: str
    ssh_password: str
    remote_host: str = "127.0.0.1"
    remote_port: int = 5480

    @classmethod
    def from_tenant(cls, tenant: Tenant, cipher: CredentialCipher) -> "TunnelParams":
        if not tenant.ssh_host or not tenant.ssh_username:
            raise ConnectivityError(
                f"Tenant {tenant.id} has no SSH host or username configured", stage="config"
            )
        return cls(
            ssh_host=tenant.ssh_host,
            ssh_port=tenant.ssh_port or 22,
            ssh_username=tenant.ssh_username,
            ssh_password=cipher.decrypt_optional(tenant.ssh_password_encrypted) or "",
            remote_host=tenant.db_host or "127.0.0.1",
            remote_port=tenant.db_port or 5480,
        )

    def __repr__(self) -> str:
        return (
            f"TunnelParams(ssh={self.ssh_username}@{self.ssh_host}:{self.ssh_port}, "
            f"remote={self.remote_host}:{self.remote_port})"
        )


@dataclass(frozen=True)
class TunnelEndpoint:
    """Local address that forwards to the remote database.

    ``transport`` is the authenticated SSH session behind the tunnel; it is
    valid only while the tunnel is open and also carries SFTP.
    """

    host: str
    port: int
    transport: Optional[paramiko.Transport] = field(default=None, compare=False, repr=False)


# =============================================================================
# CONNECTION STAGES
# =============================================================================


def resolve_host(host: str, port: int) -> list[tuple]:
    """Resolve ``host`` to stream socket addresses.

    Raises:
        TunnelDnsError: If the name does not resolve.
    """
    try:
        return socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except socket.gaierror as e:
        raise TunnelDnsError(f"Cannot resolve {host}: {e}", host=host) from e


def open_socket(addrinfos: list[tuple], timeout: float, host: str = "") -> socket.socket:
    """Connect to the first reachable address.

    Raises:
        TunnelTcpError: If every address timed out or refused.
    """
    last_error: Optional[OSError] = None
    for family, socktype, proto, _canonname, sockaddr in addrinfos:
        sock = socket.socket(family, socktype, proto)
        sock.settimeout(timeout)
        try:
            sock.connect(sockaddr)
            return sock
        except OSError as e:
            sock.close()
            last_error = e
    raise TunnelTcpError(f"Cannot connect to {host}: {last_error}", host=host)


def start_transport(
    sock: socket.socket,
    username: str,
    password: str,
    timeout: float,
    keepalive_seconds: int = 0,
    host: str = "",
) -> paramiko.Transport:
    """Run the SSH handshake and password authentication over ``sock``.

    The transport is closed before any error is raised.

    Raises:
        TunnelHandshakeError: If SSH negotiation fails.
        TunnelAuthError: If the server rejects the credentials.
    """
    transport = paramiko.Transport(sock)
    transport.banner_timeout = timeout
    transport.handshake_timeout = timeout
    transport.auth_timeout = timeout

    try:
        transport.start_client(timeout=timeout)
    except (paramiko.SSHException, EOFError, OSError) as e:
        transport.close()
        raise TunnelHandshakeError(f"SSH handshake failed: {e}", host=host) from e

    try:
        transport.auth_password(username, password)
    except paramiko.AuthenticationException as e:
        transport.close()
        raise TunnelAuthError(f"SSH authentication rejected for {username}: {e}", host=host) from e
    except (paramiko.SSHException, EOFError, OSError) as e:
        transport.close()
        raise TunnelHandshakeError(f"SSH authentication did not complete: {e}", host=host) from e

    if not transport.is_authenticated():
        transport.close()
        raise TunnelAuthError(f"SSH authentication rejected for {username}", host=host)

    if keepalive_seconds:
        transport.set_keepalive(keepalive_seconds)
    return transport


# =============================================================================
# LOCAL FORWARDER
# =============================================================================


class _ForwardHandler(socketserver.BaseRequestHandler):
    server: "_ForwardServer"

    def handle(self) -> None:
        try:
            channel = self.server.transport.open_channel(
                "direct-tcpip",
                self.server.remote,
                self.request.getpeername(),
                timeout=self.server.channel_timeout,
            )
        except (paramiko.SSHException, EOFError, OSError) as e:
            logger.warning(
                "Forwarded channel open failed",
                remote_host=self.server.remote[0],
                remote_port=self.server.remote[1],
                error=str(e),
            )
            return

        self.server.track(channel)
        try:
            self._pump(channel)
        except (OSError, paramiko.SSHException) as e:
            logger.debug("Forwarded connection ended", error=str(e))
        finally:
            channel.close()
            self.server.untrack(channel)

    def _pump(self, channel: paramiko.Channel) -> None:
        while True:
            readable, _, _ = select.select([self.request, channel], [], [])
            if self.request in readable:
                data = self.request.recv(PUMP_CHUNK_SIZE)
                if not data:
                    break
                channel.sendall(data)
            if channel in readable:
                data = channel.recv(PUMP_CHUNK_SIZE)
                if not data:
                    break
                self.request.sendall(data)


class _ForwardServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = False

    def __init__(
        self,
        transport: paramiko.Transport,
        remote: tuple[str, int],
        channel_timeout: float,
    ):
        self.transport = transport
        self.remote = remote
        self.channel_timeout = channel_timeout
        self._channels: set[paramiko.Channel] = set()
        self._channels_lock = threading.Lock()
        super().__init__((LOCAL_BIND_HOST, 0), _ForwardHandler)

    def track(self, channel: paramiko.Channel) -> None:
        with self._channels_lock:
            self._channels.add(channel)

    def untrack(self, channel: paramiko.Channel) -> None:
        with self._channels_lock:
            self._channels.discard(channel)

    def close_channels(self) -> None:
        with self._channels_lock:
            channels = list(self._channels)
            self._channels.clear()
        for channel in channels:
            channel.close()


# =============================================================================
# PUBLIC API
# =============================================================================


@contextmanager
def open_tunnel(
    params: TunnelParams,
    connect_timeout: float = 30.0,
    keepalive_seconds: int = 10,
    channel_timeout: float = 15.0,
) -> Iterator[TunnelEndpoint]:
    """Open an SSH tunnel and yield its local endpoint.

    Every call binds a fresh ephemeral port, so concurrent tunnels for
    different tenants never collide.

    Raises:
        TunnelDnsError, TunnelTcpError, TunnelHandshakeError, TunnelAuthError:
            Depending on which stage failed. Nothing is retried.
    """
    addrinfos = resolve_host(params.ssh_host, params.ssh_port)
    sock = open_socket(addrinfos, connect_timeout, host=params.ssh_host)

    transport: Optional[paramiko.Transport] = None
    server: Optional[_ForwardServer] = None
    try:
        transport = start_transport(
            sock,
            params.ssh_username,
            params.ssh_password,
            timeout=connect_timeout,
            keepalive_seconds=keepalive_seconds,
            host=params.ssh_host,
        )
        server = _ForwardServer(
            transport, (params.remote_host, params.remote_port), channel_timeout
        )
        thread = threading.Thread(
            target=server.serve_forever,
            kwargs={"poll_interval": 0.2},
            name=f"ssh-forward-{params.ssh_host}",
            daemon=True,
        )
        thread.start()

        local_host, local_port = server.server_address[:2]
        logger.info(
            "SSH tunnel established",
            ssh_host=params.ssh_host,
            local_port=local_port,
            remote_port=params.remote_port,
        )
        yield TunnelEndpoint(host=local_host, port=local_port, transport=transport)
    finally:
        if server is not None:
            server.shutdown()
            server.server_close()
            server.close_channels()
        if transport is not None:
            transport.close()
        else:
            sock.close()
        logger.debug("SSH tunnel closed", ssh_host=params.ssh_host)


@contextmanager
def open_sftp(endpoint: TunnelEndpoint) -> Iterator[paramiko.SFTPClient]:
    """SFTP session over an open tunnel's SSH transport.

    Raises:
        ConnectivityError: If the endpoint has no transport or the SFTP
            subsystem cannot be started.
    """
    if endpoint.transport is None:
        raise ConnectivityError("Tunnel has no SSH transport for SFTP", stage="sftp")
    try:
        sftp = paramiko.SFTPClient.from_transport(endpoint.transport)
    except (paramiko.SSHException, EOFError, OSError) as e:
        raise ConnectivityError(f"SFTP subsystem unavailable: {e}", stage="sftp") from e
    if sftp is None:
        raise ConnectivityError("SFTP channel could not be opened", stage="sftp")
    try:
        yield sftp
    finally:
        sftp.close()


class TunnelManager:
    """Opens tunnels with the configured timeouts."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        cipher: Optional[CredentialCipher] = None,
    ):
        self.settings = settings or get_settings()
        self._cipher = cipher

    @property
    def cipher(self) -> CredentialCipher:
        if self._cipher is None:
            self._cipher = CredentialCipher.from_settings(self.settings)
        return self._cipher

    def params_for(self, tenant: Tenant) -> TunnelParams:
        return TunnelParams.from_tenant(tenant, self.cipher)

    def open(self, params: TunnelParams):
        return open_tunnel(
            params,
            connect_timeout=self.settings.ssh_connect_timeout_seconds,
            keepalive_seconds=self.settings.ssh_keepalive_seconds,
            channel_timeout=self.settings.ssh_channel_timeout_seconds,
        )

    def open_for_tenant(self, tenant: Tenant):
        return self.open(self.params_for(tenant))
