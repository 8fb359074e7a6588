"""
Host key verification policies.

A policy is consulted once per handshake, after the server has proven
possession of its host key and before any credentials are sent. `verify`
returns None to accept the key and raises a `HostKeyError` to reject it.

Pick one explicitly:

- `KnownHostsPolicy` (default): the key must already be on record.
- `TrustOnFirstUsePolicy`: unknown hosts are recorded and accepted. This is
  weaker than `KnownHostsPolicy`; the very first connection to a host is not
  authenticated at all.
- `FingerprintPolicy`: the key must match a fingerprint obtained out of band.
- `InsecureIgnoreHostKey`: every key is accepted. Only for throwaway test
  hosts; it offers no protection against a man in the middle.
"""

from __future__ import annotations

import abc
import logging
from pathlib import Path
from typing import Any

import paramiko

from . import host_keys
from .errors import HostKeyMismatch, HostKeyUnknown

logger = logging.getLogger(__name__)


class HostKeyPolicy(abc.ABC):
    @abc.abstractmethod
    def verify(self, host_alias: str, remote_addr: str | tuple[Any, ...] | None, key: paramiko.PKey) -> None:
        """Return to accept `key`; raise a HostKeyError to reject it."""


class InsecureIgnoreHostKey(HostKeyPolicy):
    def __init__(self) -> None:
        logger.warning("host key verification disabled; connections are open to man-in-the-middle attacks")

    def verify(self, host_alias: str, remote_addr: str | tuple[Any, ...] | None, key: paramiko.PKey) -> None:  # noqa: ARG002
        return None


class KnownHostsPolicy(HostKeyPolicy):
    """Accept only keys already present in the known_hosts file (read once, at construction)."""

    def __init__(self, path: str | Path | None = None):
        self._store = host_keys.KnownHosts.load(path)

    @property
    def path(self) -> str | None:
        return self._store.path

    def verify(self, host_alias: str, remote_addr: str | tuple[Any, ...] | None, key: paramiko.PKey) -> None:
        hosts = host_keys.hosts_to_check(host_alias, remote_addr)
        found, mismatch = self._store.check_all(hosts, key)
        if mismatch is not None:
            raise mismatch
        if not found:
            raise HostKeyUnknown(host=hosts[0], path=self._store.path, presented=host_keys.fingerprint_sha256(key))


class TrustOnFirstUsePolicy(HostKeyPolicy):
    """
    Record unknown hosts on first contact, then hold them to that key.

    The known_hosts file is re-read on every handshake so that records added
    by other connections are honoured.
    """

    def __init__(self, path: str | Path | None = None):
        self._path = path

    @property
    def path(self) -> Path:
        return host_keys.resolve_known_hosts_path(self._path)

    def verify(self, host_alias: str, remote_addr: str | tuple[Any, ...] | None, key: paramiko.PKey) -> None:
        found, mismatch = host_keys.verify(self._path, host_alias, remote_addr, key)
        if found and mismatch is not None:
            raise mismatch
        if found:
            return None
        written = host_keys.append(self._path, host_alias, remote_addr, key)
        logger.warning(
            "trusting new host key for %s on first use: %s %s (recorded in %s)",
            host_alias or remote_addr,
            key.get_name(),
            host_keys.fingerprint_sha256(key),
            written,
        )
        return None


class FingerprintPolicy(HostKeyPolicy):
    """Accept exactly one key, identified by its SHA256 or MD5 fingerprint."""

    def __init__(self, expected: str):
        host_keys.normalize_expected_fingerprint(expected)
        self._expected = expected

    def verify(self, host_alias: str, remote_addr: str | tuple[Any, ...] | None, key: paramiko.PKey) -> None:
        if host_keys.matches_expected_fingerprint(expected=self._expected, key=key):
            return None
        kind, val = host_keys.normalize_expected_fingerprint(self._expected)
        got = host_keys.fingerprint_sha256(key) if kind == "sha256" else host_keys.fingerprint_md5(key)
        raise HostKeyMismatch(
            host=host_alias or str(remote_addr),
            presented=got,
            detail=f"expected {kind} fingerprint {val!r}",
        )


def auto_trust_on_first_use(host_alias: str, remote_addr: str | tuple[Any, ...] | None, key: paramiko.PKey) -> None:
    """Trust-on-first-use against the default known_hosts file."""
    TrustOnFirstUsePolicy().verify(host_alias, remote_addr, key)
