from __future__ import annotations

from typing import Any, Sequence


class SSHExecError(RuntimeError):
    pass


class ConfigError(SSHExecError):
    pass


class NoAuthMethod(SSHExecError):
    def __init__(self, message: str = "no auth method could be resolved (agent, private key, password)"):
        super().__init__(message)


class AuthenticationRejected(SSHExecError):
    pass


class HostKeyError(SSHExecError):
    pass


class HostKeyMismatch(HostKeyError):
    """The host is known, but none of its recorded keys match the presented one."""

    def __init__(self, *, host: str, wanted: Sequence[Any] = (), presented: str | None = None, detail: str | None = None):
        msg = f"host key mismatch for {host}"
        if presented is not None:
            msg += f" (presented {presented})"
        if wanted:
            msg += f"; {len(wanted)} known key(s) on record"
        if detail:
            msg += f": {detail}"
        super().__init__(msg + " (possible MITM or host reprovisioned)")
        self.host = host
        self.wanted = tuple(wanted)
        self.presented = presented


class HostKeyUnknown(HostKeyError):
    def __init__(self, *, host: str, path: str | None, presented: str | None = None):
        where = f" in {path}" if path else ""
        msg = f"host {host} is not known{where}"
        if presented is not None:
            msg += f" (presented {presented})"
        super().__init__(msg)
        self.host = host
        self.path = path
        self.presented = presented


class NilSession(SSHExecError):
    def __init__(self, message: str = "command has no session (already consumed or never set)"):
        super().__init__(message)


class SessionError(SSHExecError):
    pass


class Cancelled(SSHExecError):
    def __init__(self, message: str = "command cancelled"):
        super().__init__(message)


class DeadlineExceeded(Cancelled):
    def __init__(self, *, timeout_sec: float):
        super().__init__(f"command deadline exceeded after {timeout_sec} sec")
        self.timeout_sec = timeout_sec


class RemoteExecutionFailed(SSHExecError):
    def __init__(self, *, exit_status: int, output: bytes | None = None, command: str | None = None):
        what = f"{command!r}" if command else "remote command"
        super().__init__(f"{what} exited with status {exit_status}")
        self.exit_status = exit_status
        self.output = output
        self.command = command


class TransportIO(SSHExecError):
    pass


class NotConnected(TransportIO):
    pass


class ConnectionClosed(TransportIO):
    pass
