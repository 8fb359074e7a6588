from __future__ import annotations

import io
import unittest
from pathlib import Path
from unittest import mock

import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

import paramiko

from sshexec.errors import RemoteExecutionFailed, SessionError, TransportIO
from sshexec.session import Session


class FakeChannel:
    """Just enough of paramiko.Channel for a process that has already produced its output."""

    def __init__(self, stdout: list[bytes] | None = None, stderr: list[bytes] | None = None, exit_status: int = 0):
        self._stdout = list(stdout or [])
        self._stderr = list(stderr or [])
        self._exit_status = exit_status
        self.combine = False
        self.closed = False
        self.command: str | None = None
        self.env: dict[str, str] = {}
        self.remote_chanid = 7
        self.transport = mock.Mock()

    def set_environment_variable(self, name: str, value: str) -> None:
        self.env[name] = value

    def exec_command(self, command: str) -> None:
        self.command = command
        if self.combine:
            self._stdout.extend(self._stderr)
            self._stderr = []

    def set_combine_stderr(self, combine: bool) -> None:
        self.combine = combine

    def makefile(self, mode: str) -> io.BytesIO:
        return io.BytesIO(b"".join(self._stdout))

    def recv_ready(self) -> bool:
        return bool(self._stdout)

    def recv(self, n: int) -> bytes:
        return self._stdout.pop(0)

    def recv_stderr_ready(self) -> bool:
        return bool(self._stderr)

    def recv_stderr(self, n: int) -> bytes:
        return self._stderr.pop(0) if self._stderr else b""

    def exit_status_ready(self) -> bool:
        return True

    def recv_exit_status(self) -> int:
        return self._exit_status

    def close(self) -> None:
        self.closed = True


class SessionTests(unittest.TestCase):
    def test_output_collects_stdout_only(self) -> None:
        ch = FakeChannel(stdout=[b"hel", b"lo\n"], stderr=[b"warn\n"])
        out = Session(ch).output("echo hello")  # type: ignore[arg-type]
        self.assertEqual(out, b"hello\n")
        self.assertEqual(ch.command, "echo hello")

    def test_combined_output(self) -> None:
        ch = FakeChannel(stdout=[b"out\n"], stderr=[b"err\n"])
        out = Session(ch).combined_output("cmd")  # type: ignore[arg-type]
        self.assertTrue(ch.combine)
        self.assertEqual(out, b"out\nerr\n")

    def test_nonzero_exit_carries_output(self) -> None:
        ch = FakeChannel(stdout=[b"partial"], exit_status=3)
        with self.assertRaises(RemoteExecutionFailed) as cm:
            Session(ch).output("false")  # type: ignore[arg-type]
        self.assertEqual(cm.exception.exit_status, 3)
        self.assertEqual(cm.exception.output, b"partial")
        self.assertEqual(cm.exception.command, "false")

    def test_run_drains_and_succeeds(self) -> None:
        ch = FakeChannel(stdout=[b"x" * 10], stderr=[b"y" * 10])
        Session(ch).run("true")  # type: ignore[arg-type]
        self.assertFalse(ch.recv_ready())
        self.assertFalse(ch.recv_stderr_ready())

    def test_missing_exit_status(self) -> None:
        ch = FakeChannel(exit_status=-1)
        with self.assertRaises(TransportIO):
            Session(ch).run("sleep 100")  # type: ignore[arg-type]

    def test_start_twice(self) -> None:
        s = Session(FakeChannel())  # type: ignore[arg-type]
        s.start("true")
        with self.assertRaises(SessionError):
            s.start("true")

    def test_wait_before_start(self) -> None:
        with self.assertRaises(SessionError):
            Session(FakeChannel()).wait()  # type: ignore[arg-type]

    def test_stdout_pipe_after_start(self) -> None:
        s = Session(FakeChannel())  # type: ignore[arg-type]
        s.start("true")
        with self.assertRaises(SessionError):
            s.stdout_pipe()

    def test_exec_failure_is_transport_error(self) -> None:
        ch = FakeChannel()
        ch.exec_command = mock.Mock(side_effect=paramiko.SSHException("Channel closed."))  # type: ignore[method-assign]
        with self.assertRaises(TransportIO):
            Session(ch).run("true")  # type: ignore[arg-type]

    def test_piped_stdout_still_drains_stderr(self) -> None:
        ch = FakeChannel(stdout=[b"a\nb\n"], stderr=[b"e" * 100, b"e" * 100])
        s = Session(ch)  # type: ignore[arg-type]
        stdout = s.stdout_pipe()
        s.start("noisy")
        self.assertEqual(stdout.read(), b"a\nb\n")
        s.wait()
        self.assertFalse(ch.recv_stderr_ready())

    def test_stderr_drain_error_surfaces_on_wait(self) -> None:
        ch = FakeChannel()
        ch.recv_stderr = mock.Mock(side_effect=OSError("connection reset"))  # type: ignore[method-assign]
        s = Session(ch)  # type: ignore[arg-type]
        s.stdout_pipe()
        s.start("noisy")
        with self.assertRaises(TransportIO):
            s.wait()

    def test_setenv(self) -> None:
        ch = FakeChannel()
        Session(ch).setenv("LANG", "C")  # type: ignore[arg-type]
        self.assertEqual(ch.env, {"LANG": "C"})

    def test_signal_sends_channel_request(self) -> None:
        ch = FakeChannel()
        Session(ch).signal("INT")  # type: ignore[arg-type]
        ch.transport._send_user_message.assert_called_once()
        msg = ch.transport._send_user_message.call_args[0][0]
        self.assertIsInstance(msg, paramiko.Message)
        self.assertIn(b"signal", msg.asbytes())
        self.assertIn(b"INT", msg.asbytes())

    def test_signal_on_closed_channel(self) -> None:
        ch = FakeChannel()
        ch.closed = True
        with self.assertRaises(TransportIO):
            Session(ch).signal("INT")  # type: ignore[arg-type]

    def test_context_manager_closes(self) -> None:
        ch = FakeChannel()
        with Session(ch) as s:  # type: ignore[arg-type]
            self.assertFalse(s.closed)
        self.assertTrue(ch.closed)


if __name__ == "__main__":
    unittest.main()
