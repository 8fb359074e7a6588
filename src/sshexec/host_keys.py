from __future__ import annotations

import base64
import binascii
import fnmatch
import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import paramiko
from paramiko.hostkeys import HostKeyEntry, InvalidHostKey

from .errors import HostKeyMismatch

logger = logging.getLogger(__name__)


def _expand_path(p: str) -> str:
    return os.path.expandvars(os.path.expanduser(p))


def default_known_hosts_path() -> Path:
    return Path.home() / ".ssh" / "known_hosts"


def resolve_known_hosts_path(path: str | Path | None) -> Path:
    if path is None or str(path) == "":
        return default_known_hosts_path()
    return Path(_expand_path(str(path)))


def join_host_port(host: str, port: int) -> str:
    if ":" in host and not host.startswith("["):
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _split_host_port(address: str) -> tuple[str, str] | None:
    if address.startswith("["):
        end = address.find("]")
        if end < 0 or not address[end + 1 :].startswith(":"):
            return None
        return address[1:end], address[end + 2 :]
    if address.count(":") != 1:
        return None
    host, port = address.split(":", 1)
    return host, port


def normalize_address(address: str | tuple[Any, ...]) -> str:
    """
    OpenSSH known_hosts host pattern for an address.

    Accepts "host", "host:port", "[host]:port" or a socket address tuple.

    - port 22: "host" ("[v6addr]" for bare IPv6 literals)
    - non-22: "[host]:port"
    """
    if isinstance(address, tuple):
        host, port = str(address[0]), str(address[1])
    else:
        if not isinstance(address, str) or not address:
            raise ValueError("address must be a non-empty string or a (host, port) tuple")
        parts = _split_host_port(address)
        if parts is None:
            host, port = address, "22"
        else:
            host, port = parts

    if port != "22":
        return f"[{host}]:{port}"
    if ":" in host and not host.startswith("["):
        return f"[{host}]"
    return host


def _sha256_fingerprint_from_blob(blob: bytes) -> str:
    digest = hashlib.sha256(blob).digest()
    b64 = base64.b64encode(digest).decode("ascii").rstrip("=")
    return f"SHA256:{b64}"


def fingerprint_sha256(key: paramiko.PKey) -> str:
    return _sha256_fingerprint_from_blob(key.asbytes())


def fingerprint_md5(key: paramiko.PKey) -> str:
    digest_hex = hashlib.md5(key.asbytes()).hexdigest()  # noqa: S324 (for display/interop only)
    pairs = ":".join(digest_hex[i : i + 2] for i in range(0, len(digest_hex), 2))
    return f"MD5:{pairs}"


def normalize_expected_fingerprint(fp: str) -> tuple[str, str]:
    """
    Normalize an expected fingerprint string.

    Supported forms:
      - "SHA256:<base64>"
      - "<base64>" (treated as sha256 base64)
      - "MD5:<hex-with-or-without-colons>"
      - "<hex-with-colons>" (treated as md5)
    """
    if not isinstance(fp, str):
        raise TypeError("expected fingerprint must be a string")
    s = fp.strip()
    if not s:
        raise ValueError("expected fingerprint must not be empty")

    if s.lower().startswith("sha256:"):
        v = s.split(":", 1)[1].strip().rstrip("=")
        if not v:
            raise ValueError("expected fingerprint SHA256 value must not be empty")
        return ("sha256", v)

    if s.lower().startswith("md5:"):
        v = s.split(":", 1)[1].strip().replace(":", "").lower()
        if not v:
            raise ValueError("expected fingerprint MD5 value must not be empty")
        return ("md5", v)

    # Heuristic: colon-separated hex => md5
    if ":" in s and all(c in "0123456789abcdefABCDEF:" for c in s):
        return ("md5", s.replace(":", "").lower())

    return ("sha256", s.rstrip("="))


def matches_expected_fingerprint(*, expected: str, key: paramiko.PKey) -> bool:
    kind, val = normalize_expected_fingerprint(expected)
    if kind == "sha256":
        actual = fingerprint_sha256(key).split(":", 1)[1]
        return actual == val
    actual = fingerprint_md5(key).split(":", 1)[1].replace(":", "").lower()
    return actual == val


def same_key(a: paramiko.PKey, b: paramiko.PKey) -> bool:
    return a.get_name() == b.get_name() and a.asbytes() == b.asbytes()


def _pattern_matches(pattern: str, host: str) -> bool:
    if pattern.startswith("|1|"):
        try:
            return paramiko.HostKeys.hash_host(host, pattern) == pattern
        except (binascii.Error, IndexError, ValueError):
            return False
    if "*" in pattern or "?" in pattern:
        return fnmatch.fnmatchcase(host, pattern)
    return pattern == host


@dataclass(frozen=True)
class KnownHostEntry:
    """One parsed known_hosts line."""

    hostnames: tuple[str, ...]
    key: paramiko.PKey
    path: str | None = None
    lineno: int | None = None

    def matches(self, host: str) -> bool:
        matched = False
        for pattern in self.hostnames:
            if pattern.startswith("!"):
                if _pattern_matches(pattern[1:], host):
                    return False
                continue
            if _pattern_matches(pattern, host):
                matched = True
        return matched

    def __str__(self) -> str:
        where = f"{self.path}:{self.lineno}" if self.path is not None else "<memory>"
        return f"{where} {self.key.get_name()} {fingerprint_sha256(self.key)}"


class KnownHosts:
    """In-memory view of a known_hosts file."""

    def __init__(self, entries: list[KnownHostEntry] | None = None, *, path: str | None = None):
        self.entries: list[KnownHostEntry] = list(entries or [])
        self.path = path

    @classmethod
    def load(cls, path: str | Path | None = None) -> KnownHosts:
        p = resolve_known_hosts_path(path)
        entries: list[KnownHostEntry] = []
        try:
            text = p.read_text(encoding="utf-8")
        except FileNotFoundError:
            return cls(entries, path=str(p))

        for lineno, raw in enumerate(text.splitlines(), start=1):
            line = raw.strip()
            # @cert-authority / @revoked markers are not supported
            if not line or line.startswith("#") or line.startswith("@"):
                continue
            try:
                parsed = HostKeyEntry.from_line(line, lineno)
            except InvalidHostKey as exc:
                logger.warning("skipping invalid known_hosts entry at %s:%d: %s", p, lineno, exc)
                continue
            if parsed is None or parsed.key is None:
                logger.debug("skipping unparseable known_hosts line %s:%d", p, lineno)
                continue
            entries.append(KnownHostEntry(hostnames=tuple(parsed.hostnames), key=parsed.key, path=str(p), lineno=lineno))
        return cls(entries, path=str(p))

    def lookup(self, host: str) -> list[KnownHostEntry]:
        return [e for e in self.entries if e.matches(host)]

    def check(self, host: str, key: paramiko.PKey) -> tuple[bool, HostKeyMismatch | None]:
        """
        Compare `key` against every record for `host`.

        Returns (False, None) when the host has no records, (True, None) when
        one of them carries `key`, and (True, HostKeyMismatch) otherwise. A
        host that switched to a key type we have no record of is a mismatch.
        """
        known = self.lookup(host)
        if not known:
            return False, None
        if any(same_key(e.key, key) for e in known):
            return True, None
        return True, HostKeyMismatch(host=host, wanted=known, presented=fingerprint_sha256(key))

    def check_all(self, hosts: list[str], key: paramiko.PKey) -> tuple[bool, HostKeyMismatch | None]:
        """Like check(), over several names for one server. Any mismatch wins over a match."""
        found = False
        for host in hosts:
            host_found, mismatch = self.check(host, key)
            if mismatch is not None:
                return True, mismatch
            found = found or host_found
        return found, None


def hosts_to_check(host_alias: str | None, remote_addr: str | tuple[Any, ...] | None) -> list[str]:
    """Normalized dialled name and socket address, deduplicated, name first."""
    hosts: list[str] = []
    for addr in (host_alias, remote_addr):
        if not addr:
            continue
        normalized = normalize_address(addr)
        if normalized not in hosts:
            hosts.append(normalized)
    if not hosts:
        raise ValueError("one of host_alias / remote_addr is required")
    return hosts


def verify(
    path: str | Path | None,
    host_alias: str | None,
    remote_addr: str | tuple[Any, ...] | None,
    key: paramiko.PKey,
) -> tuple[bool, HostKeyMismatch | None]:
    """
    Look both `host_alias` and `remote_addr` up in the known_hosts file at `path`.

    - either on record with a different key -> (True, HostKeyMismatch); callers must treat this as a failure
    - on record (under one name or both), key matches -> (True, None)
    - neither on record -> (False, None)
    """
    return KnownHosts.load(path).check_all(hosts_to_check(host_alias, remote_addr), key)


def known_hosts_line(hosts: list[str], key: paramiko.PKey) -> str:
    return f"{','.join(hosts)} {key.get_name()} {key.get_base64()}"


def append(
    path: str | Path | None,
    host_alias: str | None,
    remote_addr: str | tuple[Any, ...] | None,
    key: paramiko.PKey,
) -> Path:
    """Append one record covering both the socket address and the dialled name."""
    p = resolve_known_hosts_path(path)

    # socket address first, then the dialled name
    hosts = hosts_to_check(host_alias, remote_addr)[::-1]

    if not p.parent.exists():
        p.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    fd = os.open(str(p), os.O_CREAT | os.O_WRONLY | os.O_APPEND, 0o600)
    with os.fdopen(fd, "a", encoding="utf-8") as f:
        f.write(known_hosts_line(hosts, key) + "\n")
    return p
