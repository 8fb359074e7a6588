from __future__ import annotations

import logging
import socket
import threading
from typing import Literal

import paramiko

from . import transfer
from .auth import AuthProof, resolve
from .command import Command
from .config import ConnectionConfig
from .errors import ConfigError, ConnectionClosed, NotConnected, TransportIO
from .host_keys import join_host_port
from .policies import HostKeyPolicy, InsecureIgnoreHostKey, KnownHostsPolicy, TrustOnFirstUsePolicy
from .session import Session

logger = logging.getLogger(__name__)


ConnectionState = Literal["unconnected", "connected", "closed"]


class Connection:
    """
    One SSH connection: dial, verify the host key, authenticate, then mint
    sessions and SFTP clients over the shared transport.

    The host key policy defaults to `KnownHostsPolicy` on
    `config.known_hosts_path` (~/.ssh/known_hosts if unset), so unknown
    hosts are refused until they are recorded.

    A closed Connection cannot be dialled again.
    """

    def __init__(
        self,
        config: ConnectionConfig,
        *,
        policy: HostKeyPolicy | None = None,
        auth: AuthProof | None = None,
    ):
        self._config = config
        self._policy = policy
        self._auth = auth
        self._transport: paramiko.Transport | None = None
        self._sftp: paramiko.SFTPClient | None = None
        self._state: ConnectionState = "unconnected"

    @classmethod
    def insecure(cls, config: ConnectionConfig, *, auth: AuthProof | None = None) -> Connection:
        return cls(config, policy=InsecureIgnoreHostKey(), auth=auth)

    @classmethod
    def trust_on_first_use(cls, config: ConnectionConfig, *, auth: AuthProof | None = None) -> Connection:
        return cls(config, policy=TrustOnFirstUsePolicy(config.known_hosts_path), auth=auth)

    @property
    def config(self) -> ConnectionConfig:
        return self._config

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def policy(self) -> HostKeyPolicy | None:
        return self._policy

    @property
    def transport(self) -> paramiko.Transport:
        return self._require_connected()

    def with_host_key_policy(self, policy: HostKeyPolicy) -> Connection:
        self._policy = policy
        return self

    def dial(self) -> Connection:
        if self._state == "closed":
            raise ConnectionClosed("ssh: connection is closed")
        if not self._config.host:
            raise ConfigError("[config] host: must not be empty")

        supplied = self._auth is not None
        proof = self._auth if self._auth is not None else resolve(self._config)
        if self._policy is None:
            self._policy = KnownHostsPolicy(self._config.known_hosts_path)
        try:
            transport = self._open_transport(self._policy, proof)
        finally:
            if not supplied:
                proof.close()

        if self._transport is not None:
            self._drop_transport()
        self._transport = transport
        self._state = "connected"
        logger.info("connected to %s as %s", join_host_port(self._config.host, self._config.port), self._config.username)
        return self

    def ping(self) -> Connection:
        """Same as dial(): there is no lighter liveness check."""
        return self.dial()

    def _open_transport(self, policy: HostKeyPolicy, proof: AuthProof) -> paramiko.Transport:
        cfg = self._config
        host_alias = join_host_port(cfg.host, cfg.port)

        try:
            sock = socket.create_connection(cfg.address, timeout=cfg.timeout_sec)
        except OSError as exc:
            raise TransportIO(f"ssh: dial {host_alias}: {exc}") from exc

        try:
            transport = paramiko.Transport(sock)
        except BaseException:
            sock.close()
            raise

        try:
            transport.banner_timeout = cfg.timeout_sec
            transport.auth_timeout = cfg.timeout_sec
            try:
                transport.start_client(timeout=cfg.timeout_sec)
                server_key = transport.get_remote_server_key()
                remote_addr = transport.getpeername()
            except (paramiko.SSHException, OSError, EOFError) as exc:
                raise TransportIO(f"ssh: handshake with {host_alias} failed: {exc}") from exc

            policy.verify(host_alias, remote_addr, server_key)
            proof.authenticate(transport, cfg.username)
        except BaseException:
            try:
                transport.close()
            except (paramiko.SSHException, OSError) as exc:
                logger.debug("ignoring error while closing failed transport to %s: %s", host_alias, exc)
            raise
        return transport

    def new_session(self) -> Session:
        transport = self.transport
        try:
            channel = transport.open_session(timeout=self._config.timeout_sec)
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise TransportIO(f"ssh: open session: {exc}") from exc
        return Session(channel)

    def command(
        self,
        name: str,
        *args: str,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> Command:
        """
        Prepare `name args...` on a new session.

        The arguments are joined with single spaces and interpreted by the
        remote user's shell; quote them yourself where needed.
        """
        return Command(self.new_session(), name, *args, cancel=cancel, timeout=timeout)

    def combined_output(
        self,
        command: str,
        *,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> bytes:
        return self.command(command, cancel=cancel, timeout=timeout).combined_output()

    def open_sftp(self) -> paramiko.SFTPClient:
        transport = self.transport
        try:
            client = paramiko.SFTPClient.from_transport(transport)
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise TransportIO(f"sftp: open subsystem: {exc}") from exc
        if client is None:
            raise TransportIO("sftp: server refused the subsystem")
        return client

    def set_sftp_client(self, client: paramiko.SFTPClient | None) -> None:
        """Cache an SFTP client for file transfers. The caller keeps ownership of it."""
        self._sftp = client

    def sftp_client(self) -> paramiko.SFTPClient:
        if self._sftp is not None:
            return self._sftp
        return self.open_sftp()

    def upload(self, local_path: str, remote_path: str) -> int:
        return transfer.upload(self, local_path, remote_path, sftp=self._sftp)

    def download(self, remote_path: str, local_path: str) -> int:
        return transfer.download(self, remote_path, local_path, sftp=self._sftp)

    def read_file(self, remote_path: str) -> bytes:
        return transfer.read_file(self, remote_path, sftp=self._sftp)

    def remove(self, remote_path: str) -> None:
        transfer.remove(self, remote_path, sftp=self._sftp)

    def close(self) -> None:
        if self._state == "closed":
            return
        self._state = "closed"
        self._sftp = None
        if self._transport is not None:
            self._drop_transport()
            logger.info("closed connection to %s", join_host_port(self._config.host, self._config.port))

    def _drop_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            transport.close()

    def _require_connected(self) -> paramiko.Transport:
        if self._state == "closed":
            raise ConnectionClosed("ssh: connection is closed")
        transport = self._transport
        if self._state != "connected" or transport is None:
            raise NotConnected("ssh: not connected (call dial() first)")
        return transport

    def __enter__(self) -> Connection:
        if self._state == "unconnected":
            self.dial()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Connection({join_host_port(self._config.host, self._config.port)}, {self._state})"


def dial(
    config: ConnectionConfig,
    *,
    policy: HostKeyPolicy | None = None,
    auth: AuthProof | None = None,
) -> Connection:
    return Connection(config, policy=policy, auth=auth).dial()


def ping(
    host: str,
    username: str,
    password: str | None = None,
    key_path: str | None = None,
    port: int = 22,
    *,
    timeout_sec: float | None = None,
) -> None:
    """
    Check that `host` accepts the given credentials, then disconnect.

    The host key is not verified.
    """
    overrides = {} if timeout_sec is None else {"timeout_sec": timeout_sec}
    cfg = ConnectionConfig(
        host=host,
        port=port if port >= 1 else 22,
        username=username,
        password=password,
        private_key_path=key_path,
        **overrides,
    )
    conn = Connection.insecure(cfg)
    try:
        conn.ping()
    finally:
        conn.close()
