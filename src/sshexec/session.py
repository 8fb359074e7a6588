from __future__ import annotations

import logging
import socket
import threading
import time
from typing import IO, Callable

import paramiko
from paramiko.common import cMSG_CHANNEL_REQUEST

from .errors import RemoteExecutionFailed, SessionError, TransportIO

logger = logging.getLogger(__name__)

_CHUNK = 32768
_POLL_SEC = 0.01


def _transport_error(what: str, exc: BaseException) -> TransportIO:
    return TransportIO(f"ssh: {what}: {type(exc).__name__}: {exc}")


class Session:
    """
    One exec channel on an established transport.

    A session runs at most one command. Output is pumped from both stdout and
    stderr so that an unread stream never stalls the channel window.
    """

    def __init__(self, channel: paramiko.Channel):
        self._channel = channel
        self._command: str | None = None
        self._stdout: IO[bytes] | None = None
        self._drain: threading.Thread | None = None
        self._drain_error: BaseException | None = None

    @property
    def channel(self) -> paramiko.Channel:
        return self._channel

    @property
    def started(self) -> bool:
        return self._command is not None

    @property
    def closed(self) -> bool:
        return bool(self._channel.closed)

    def setenv(self, name: str, value: str) -> None:
        # Servers silently drop variables that are not allow-listed (sshd AcceptEnv).
        try:
            self._channel.set_environment_variable(name, value)
        except (paramiko.SSHException, OSError) as exc:
            raise _transport_error(f"setenv {name}", exc) from exc

    def stdout_pipe(self) -> IO[bytes]:
        if self.started:
            raise SessionError("stdout_pipe after process started")
        if self._stdout is not None:
            raise SessionError("stdout already piped")
        self._stdout = self._channel.makefile("rb")
        return self._stdout

    def start(self, command: str) -> None:
        if self.started:
            raise SessionError("session already started")
        self._command = command
        try:
            self._channel.exec_command(command)
        except (paramiko.SSHException, OSError) as exc:
            raise _transport_error(f"exec {command!r}", exc) from exc
        if self._stdout is not None:
            self._start_stderr_drain()

    def wait(self) -> None:
        if not self.started:
            raise SessionError("session not started")
        if self._stdout is None:
            self._pump(None, None)
        else:
            self._join_stderr_drain()
        self._check_exit(None)

    def run(self, command: str) -> None:
        self.start(command)
        self.wait()

    def output(self, command: str) -> bytes:
        if self._stdout is not None:
            raise SessionError("stdout already piped")
        buf = bytearray()
        self.start(command)
        self._pump(buf.extend, None)
        out = bytes(buf)
        self._check_exit(out)
        return out

    def combined_output(self, command: str) -> bytes:
        if self._stdout is not None:
            raise SessionError("stdout already piped")
        self._channel.set_combine_stderr(True)
        return self.output(command)

    def signal(self, name: str) -> None:
        """Send an SSH "signal" request (e.g. "INT", "TERM", "KILL") to the remote process."""
        if self._channel.closed:
            raise TransportIO("ssh: signal on closed channel")
        m = paramiko.Message()
        m.add_byte(cMSG_CHANNEL_REQUEST)
        m.add_int(self._channel.remote_chanid)
        m.add_string("signal")
        m.add_boolean(False)
        m.add_string(name)
        try:
            # paramiko has no public API for channel signals
            self._channel.transport._send_user_message(m)
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise _transport_error(f"signal {name}", exc) from exc

    def close(self) -> None:
        try:
            self._channel.close()
        except (paramiko.SSHException, OSError) as exc:
            raise _transport_error("close session", exc) from exc

    def __enter__(self) -> Session:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _start_stderr_drain(self) -> None:
        # Nothing reads stderr while stdout is piped; unread stderr would hold
        # the channel window shut and stall stdout.
        channel = self._channel

        def drain() -> None:
            try:
                while channel.recv_stderr(_CHUNK):
                    pass
            except (paramiko.SSHException, socket.timeout, OSError) as exc:
                self._drain_error = exc

        self._drain = threading.Thread(target=drain, name="sshexec-stderr-drain", daemon=True)
        self._drain.start()

    def _join_stderr_drain(self) -> None:
        if self._drain is None:
            return
        self._drain.join()
        if self._drain_error is not None:
            raise _transport_error(f"read stderr of {self._command!r}", self._drain_error) from self._drain_error

    def _pump(self, stdout_sink: Callable[[bytes], object] | None, stderr_sink: Callable[[bytes], object] | None) -> None:
        channel = self._channel
        try:
            while True:
                got = False
                if channel.recv_ready():
                    data = channel.recv(_CHUNK)
                    if data:
                        got = True
                        if stdout_sink is not None:
                            stdout_sink(data)

                if channel.recv_stderr_ready():
                    data = channel.recv_stderr(_CHUNK)
                    if data:
                        got = True
                        if stderr_sink is not None:
                            stderr_sink(data)

                # exit_status_ready() also turns true once the channel is closed.
                if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                    break

                if not got:
                    time.sleep(_POLL_SEC)
        except (paramiko.SSHException, socket.timeout, OSError) as exc:
            raise _transport_error(f"read {self._command!r}", exc) from exc

    def _check_exit(self, output: bytes | None) -> None:
        status = self._channel.recv_exit_status()
        if status == -1:
            raise TransportIO(f"ssh: {self._command!r} ended without an exit status (channel closed)")
        if status != 0:
            raise RemoteExecutionFailed(exit_status=status, output=output, command=self._command)
