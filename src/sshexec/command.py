from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Callable, Iterable, Literal, TypeVar

import paramiko

from .errors import Cancelled, DeadlineExceeded, NilSession, TransportIO
from .session import Session

logger = logging.getLogger(__name__)

T = TypeVar("T")

LineHandler = Callable[[bytes], object]
CommandState = Literal["prepared", "running", "completed", "failed"]

_POLL_SEC = 0.01


class Command:
    """
    A remote command prepared on its own session.

    The session is single use: the first of run/output/combined_output/
    start/output_pipe consumes it, and every later call raises NilSession.

    When built with `cancel` (a threading.Event) and/or `timeout` seconds,
    run/output/combined_output return as soon as the signal fires: the
    remote process is sent SIGINT (best effort, not awaited) and Cancelled
    or DeadlineExceeded is raised. The remote process may outlive the call.
    """

    def __init__(
        self,
        session: Session | None,
        path: str,
        *args: str,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ):
        if timeout is not None and timeout <= 0:
            raise ValueError("timeout must be > 0")
        self.path = path
        self.args = list(args)
        self._session = session
        self._cancel = cancel
        self._timeout = timeout
        self.state: CommandState = "prepared"

    def __str__(self) -> str:
        return " ".join([self.path, *self.args])

    def __repr__(self) -> str:
        return f"Command({str(self)!r}, {self.state})"

    def set_session(self, session: Session) -> None:
        self._session = session
        self.state = "prepared"

    def setenv(self, env: Iterable[str]) -> None:
        """Send KEY=value pairs to the session; entries without '=' are skipped."""
        if self._session is None:
            raise NilSession()
        for entry in env:
            name, sep, value = entry.partition("=")
            if not sep or not name:
                continue
            self._session.setenv(name, value)

    def run(self) -> None:
        session = self._take_session()
        with session:
            self._finish(lambda: self._execute(session, lambda: session.run(str(self))))

    def output(self) -> bytes:
        session = self._take_session()
        with session:
            return self._finish(lambda: self._execute(session, lambda: session.output(str(self))))

    def combined_output(self) -> bytes:
        session = self._take_session()
        with session:
            return self._finish(lambda: self._execute(session, lambda: session.combined_output(str(self))))

    def start(self) -> Session:
        """
        Start the command without waiting for it.

        Ownership of the session passes to the caller, who should `wait()`
        and `close()` it.
        """
        session = self._take_session()
        try:
            session.start(str(self))
        except BaseException:
            self.state = "failed"
            session.close()
            raise
        return session

    def output_pipe(self, handler: LineHandler) -> None:
        """
        Stream stdout to `handler`, one call per line, in order.

        Lines are passed as bytes without their line terminator. An exception
        from `handler` propagates immediately, without waiting for the remote
        process. On end of stream the exit status is checked as in `run()`.
        """
        session = self._take_session()
        with session:
            self._finish(lambda: self._pipe(session, handler))

    def _pipe(self, session: Session, handler: LineHandler) -> None:
        stdout = session.stdout_pipe()
        session.start(str(self))
        while True:
            try:
                line = stdout.readline()
            except (paramiko.SSHException, OSError, EOFError) as exc:
                raise TransportIO(f"ssh: read stdout of {str(self)!r}: {exc}") from exc
            if not line:
                break
            if line.endswith(b"\n"):
                line = line[:-1]
                if line.endswith(b"\r"):
                    line = line[:-1]
            handler(line)
        session.wait()

    def _take_session(self) -> Session:
        session = self._session
        if session is None:
            if self.state == "prepared":
                self.state = "failed"
            raise NilSession()
        self._session = None
        self.state = "running"
        return session

    def _finish(self, call: Callable[[], T]) -> T:
        try:
            result = call()
        except BaseException:
            self.state = "failed"
            raise
        self.state = "completed"
        return result

    def _execute(self, session: Session, call: Callable[[], T]) -> T:
        if self._cancel is None and self._timeout is None:
            return call()
        return self._execute_cancellable(session, call)

    def _execute_cancellable(self, session: Session, call: Callable[[], T]) -> T:
        done: queue.Queue[tuple[T | None, BaseException | None]] = queue.Queue(maxsize=1)

        def worker() -> None:
            try:
                done.put((call(), None))
            except Exception as exc:
                done.put((None, exc))

        threading.Thread(target=worker, name=f"sshexec-cmd-{self.path}", daemon=True).start()

        deadline = time.monotonic() + self._timeout if self._timeout is not None else None
        while True:
            try:
                result, exc = done.get(timeout=_POLL_SEC)
            except queue.Empty:
                pass
            else:
                if exc is not None:
                    raise exc
                return result  # type: ignore[return-value]

            if self._cancel is not None and self._cancel.is_set():
                self._interrupt(session)
                raise Cancelled(f"command {str(self)!r} cancelled")
            if deadline is not None and time.monotonic() >= deadline:
                self._interrupt(session)
                raise DeadlineExceeded(timeout_sec=self._timeout)  # type: ignore[arg-type]

    def _interrupt(self, session: Session) -> None:
        try:
            session.signal("INT")
        except TransportIO as exc:
            logger.debug("could not interrupt %r: %s", str(self), exc)
