"""Whole-file SFTP transfers over an established Connection."""

from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path
from typing import IO, TYPE_CHECKING, Iterator

import paramiko

from .errors import TransportIO

if TYPE_CHECKING:
    from .connection import Connection

_CHUNK = 32768


@contextmanager
def _sftp_session(conn: Connection, sftp: paramiko.SFTPClient | None) -> Iterator[paramiko.SFTPClient]:
    # A client handed in by the caller stays open; one opened here is closed here.
    if sftp is not None:
        yield sftp
        return
    client = conn.open_sftp()
    try:
        yield client
    finally:
        client.close()


def _copy(src: IO[bytes], dst: IO[bytes]) -> int:
    total = 0
    while True:
        chunk = src.read(_CHUNK)
        if not chunk:
            return total
        dst.write(chunk)
        total += len(chunk)


def upload(conn: Connection, local_path: str | Path, remote_path: str, *, sftp: paramiko.SFTPClient | None = None) -> int:
    """Copy a local file to `remote_path` (created or truncated). Returns bytes written."""
    with open(local_path, "rb") as local:
        with _sftp_session(conn, sftp) as client:
            try:
                with client.open(remote_path, "wb") as remote:
                    remote.set_pipelined(True)
                    return _copy(local, remote)
            except (paramiko.SSHException, EOFError) as exc:
                raise TransportIO(f"sftp: upload to {remote_path!r}: {exc}") from exc


def download(conn: Connection, remote_path: str, local_path: str | Path, *, sftp: paramiko.SFTPClient | None = None) -> int:
    """Copy `remote_path` to a local file and fsync it. Returns bytes written."""
    with open(local_path, "wb") as local:
        with _sftp_session(conn, sftp) as client:
            try:
                with client.open(remote_path, "rb") as remote:
                    total = _copy(remote, local)
            except (paramiko.SSHException, EOFError) as exc:
                raise TransportIO(f"sftp: download of {remote_path!r}: {exc}") from exc
        local.flush()
        os.fsync(local.fileno())
    return total


def read_file(conn: Connection, remote_path: str, *, sftp: paramiko.SFTPClient | None = None) -> bytes:
    with _sftp_session(conn, sftp) as client:
        try:
            with client.open(remote_path, "rb") as remote:
                buf = bytearray()
                while True:
                    chunk = remote.read(_CHUNK)
                    if not chunk:
                        return bytes(buf)
                    buf += chunk
        except (paramiko.SSHException, EOFError) as exc:
            raise TransportIO(f"sftp: read {remote_path!r}: {exc}") from exc


def remove(conn: Connection, remote_path: str, *, sftp: paramiko.SFTPClient | None = None) -> None:
    with _sftp_session(conn, sftp) as client:
        try:
            client.remove(remote_path)
        except (paramiko.SSHException, EOFError) as exc:
            raise TransportIO(f"sftp: remove {remote_path!r}: {exc}") from exc
