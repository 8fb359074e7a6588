from __future__ import annotations

import tempfile
import unittest
from pathlib import Path
from unittest import mock

import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

import paramiko

from sshexec import connection
from sshexec.command import Command
from sshexec.config import default_config
from sshexec.connection import Connection
from sshexec.errors import (
    AuthenticationRejected,
    ConfigError,
    ConnectionClosed,
    HostKeyUnknown,
    NoAuthMethod,
    NotConnected,
    TransportIO,
)
from sshexec.policies import HostKeyPolicy
from sshexec.session import Session


class RecordingPolicy(HostKeyPolicy):
    def __init__(self, error: Exception | None = None):
        self.calls: list[tuple] = []
        self.error = error

    def verify(self, host_alias, remote_addr, key) -> None:
        self.calls.append((host_alias, remote_addr, key))
        if self.error is not None:
            raise self.error


class ConnectionTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.kh_path = str(Path(self._tmp.name) / "known_hosts")
        self.server_key = paramiko.ECDSAKey.generate()
        self.cfg = default_config(host="example.com", password="pw", known_hosts_path=self.kh_path, timeout_sec=3)

        self.sock = mock.Mock()
        p = mock.patch("sshexec.connection.socket.create_connection", return_value=self.sock)
        self.create_connection = p.start()
        self.addCleanup(p.stop)

        p = mock.patch("sshexec.connection.paramiko.Transport", side_effect=self._new_transport)
        self.transport_cls = p.start()
        self.addCleanup(p.stop)
        self.transports: list[mock.Mock] = []

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _new_transport(self, sock) -> mock.Mock:
        t = mock.Mock()
        t.get_remote_server_key.return_value = self.server_key
        t.getpeername.return_value = ("10.0.0.1", 22)
        t.is_authenticated.return_value = True
        self.transports.append(t)
        return t

    def test_dial_verifies_then_authenticates(self) -> None:
        policy = RecordingPolicy()
        conn = Connection(self.cfg, policy=policy).dial()

        self.assertEqual(conn.state, "connected")
        self.create_connection.assert_called_once_with(("example.com", 22), timeout=3)
        t = self.transports[0]
        t.start_client.assert_called_once_with(timeout=3)
        self.assertEqual(policy.calls, [("example.com:22", ("10.0.0.1", 22), self.server_key)])
        t.auth_password.assert_called_once_with("root", "pw")
        self.assertIs(conn.transport, t)

    def test_rejected_host_key_closes_transport(self) -> None:
        policy = RecordingPolicy(HostKeyUnknown(host="example.com", path=None))
        conn = Connection(self.cfg, policy=policy)
        with self.assertRaises(HostKeyUnknown):
            conn.dial()
        t = self.transports[0]
        t.close.assert_called_once()
        t.auth_password.assert_not_called()
        self.assertEqual(conn.state, "unconnected")

    def test_default_policy_refuses_unknown_host(self) -> None:
        conn = Connection(self.cfg)
        with self.assertRaises(HostKeyUnknown):
            conn.dial()
        self.assertFalse(Path(self.kh_path).exists())

    def test_trust_on_first_use_records_host(self) -> None:
        with self.assertLogs("sshexec.policies", level="WARNING"):
            Connection.trust_on_first_use(self.cfg).dial()
        text = Path(self.kh_path).read_text(encoding="utf-8")
        self.assertIn("10.0.0.1,example.com ecdsa-sha2-nistp256 ", text)

        # now known: the strict default accepts it
        Connection(self.cfg).dial()

    def test_authentication_rejected(self) -> None:
        conn = Connection(self.cfg, policy=RecordingPolicy())
        self.transport_cls.side_effect = self._rejecting_transport
        with self.assertRaises(AuthenticationRejected):
            conn.dial()
        self.transports[0].close.assert_called_once()
        self.assertEqual(conn.state, "unconnected")

    def _rejecting_transport(self, sock) -> mock.Mock:
        t = self._new_transport(sock)
        t.auth_password.side_effect = paramiko.AuthenticationException("Authentication failed.")
        return t

    def test_dial_error(self) -> None:
        self.create_connection.side_effect = ConnectionRefusedError("refused")
        with self.assertRaises(TransportIO):
            Connection(self.cfg, policy=RecordingPolicy()).dial()

    def test_handshake_error(self) -> None:
        self.transport_cls.side_effect = None
        t = mock.Mock()
        t.start_client.side_effect = paramiko.SSHException("Error reading SSH protocol banner")
        self.transport_cls.return_value = t
        with self.assertRaises(TransportIO):
            Connection(self.cfg, policy=RecordingPolicy()).dial()
        t.close.assert_called_once()

    def test_empty_host(self) -> None:
        with self.assertRaises(ConfigError):
            Connection(self.cfg.replace(host=""), policy=RecordingPolicy()).dial()
        self.create_connection.assert_not_called()

    def test_no_auth_method(self) -> None:
        with mock.patch.dict("os.environ", {"SSH_AUTH_SOCK": ""}):
            with self.assertRaises(NoAuthMethod):
                Connection(self.cfg.replace(password=None), policy=RecordingPolicy()).dial()
        self.create_connection.assert_not_called()

    def test_state_machine(self) -> None:
        conn = Connection(self.cfg, policy=RecordingPolicy())
        self.assertEqual(conn.state, "unconnected")
        with self.assertRaises(NotConnected):
            conn.new_session()

        conn.dial()
        conn.close()
        conn.close()
        self.assertEqual(conn.state, "closed")
        self.transports[0].close.assert_called_once()

        with self.assertRaises(ConnectionClosed):
            conn.dial()
        with self.assertRaises(ConnectionClosed):
            conn.new_session()

    def test_transport_requires_live_connection(self) -> None:
        conn = Connection(self.cfg, policy=RecordingPolicy())
        with self.assertRaises(NotConnected):
            conn.transport
        conn.dial()
        self.assertIs(conn.transport, self.transports[0])
        conn.close()
        with self.assertRaises(ConnectionClosed):
            conn.transport

    def test_redial_replaces_transport(self) -> None:
        conn = Connection(self.cfg, policy=RecordingPolicy()).dial()
        conn.dial()
        self.transports[0].close.assert_called_once()
        self.assertIs(conn.transport, self.transports[1])

    def test_with_host_key_policy(self) -> None:
        policy = RecordingPolicy()
        conn = Connection(self.cfg).with_host_key_policy(policy)
        self.assertIs(conn.policy, policy)
        conn.dial()
        self.assertEqual(len(policy.calls), 1)

    def test_new_session_and_command(self) -> None:
        conn = Connection(self.cfg, policy=RecordingPolicy()).dial()
        channel = mock.Mock()
        self.transports[0].open_session.return_value = channel

        session = conn.new_session()
        self.assertIsInstance(session, Session)
        self.assertIs(session.channel, channel)
        self.transports[0].open_session.assert_called_with(timeout=3)

        cmd = conn.command("uname", "-a")
        self.assertIsInstance(cmd, Command)
        self.assertEqual(str(cmd), "uname -a")

    def test_open_session_failure(self) -> None:
        conn = Connection(self.cfg, policy=RecordingPolicy()).dial()
        self.transports[0].open_session.side_effect = paramiko.ChannelException(1, "Administratively prohibited")
        with self.assertRaises(TransportIO):
            conn.new_session()

    def test_open_sftp_refused(self) -> None:
        conn = Connection(self.cfg, policy=RecordingPolicy()).dial()
        with mock.patch("sshexec.connection.paramiko.SFTPClient.from_transport", return_value=None):
            with self.assertRaises(TransportIO):
                conn.open_sftp()

    def test_context_manager(self) -> None:
        with Connection(self.cfg, policy=RecordingPolicy()) as conn:
            self.assertEqual(conn.state, "connected")
        self.assertEqual(conn.state, "closed")

    def test_supplied_auth_is_not_closed(self) -> None:
        proof = mock.Mock()
        Connection(self.cfg, policy=RecordingPolicy(), auth=proof).dial()
        proof.authenticate.assert_called_once_with(self.transports[0], "root")
        proof.close.assert_not_called()

    def test_module_ping(self) -> None:
        with self.assertLogs("sshexec.policies", level="WARNING"):
            connection.ping("example.com", "admin", password="pw", port=2222)
        self.create_connection.assert_called_once_with(("example.com", 2222), timeout=20.0)
        t = self.transports[0]
        t.auth_password.assert_called_once_with("admin", "pw")
        t.close.assert_called_once()


if __name__ == "__main__":
    unittest.main()
