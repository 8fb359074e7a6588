from __future__ import annotations

import dataclasses
import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigError


DEFAULT_USERNAME = "root"
DEFAULT_PORT = 22
DEFAULT_TIMEOUT_SEC = 20.0

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _err(ctx: str, msg: str) -> ConfigError:
    return ConfigError(f"[config] {ctx}: {msg}")


def _as_dict(value: Any, *, ctx: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise _err(ctx, f"expected object/dict, got {type(value).__name__}")
    return value


def _as_int(value: Any, *, ctx: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise _err(ctx, f"expected int, got {type(value).__name__}")
    return value


def _as_float(value: Any, *, ctx: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise _err(ctx, f"expected number, got {type(value).__name__}")
    return float(value)


def _as_str(value: Any, *, ctx: str) -> str:
    if not isinstance(value, str):
        raise _err(ctx, f"expected string, got {type(value).__name__}")
    if value == "":
        raise _err(ctx, "must not be empty")
    return value


def _as_opt_str(value: Any, *, ctx: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, ctx=ctx)


def _as_bool(value: Any, *, ctx: str) -> bool:
    if not isinstance(value, bool):
        raise _err(ctx, f"expected bool, got {type(value).__name__}")
    return value


def _assert_no_extra_keys(obj: dict[str, Any], *, allowed: set[str], ctx: str) -> None:
    extra = set(obj.keys()) - allowed
    if extra:
        raise _err(ctx, f"unknown keys: {sorted(extra)}")


def _expand_path(p: str) -> str:
    return os.path.expandvars(os.path.expanduser(p))


@dataclass(frozen=True)
class ConnectionConfig:
    """
    Everything needed to dial one SSH server.

    Instances are immutable; use `replace()` (or `default_config(**overrides)`)
    to derive a modified copy.
    """

    host: str = ""
    port: int = DEFAULT_PORT
    username: str = DEFAULT_USERNAME
    password: str | None = field(default=None, repr=False)
    private_key_path: str | None = None
    private_key_passphrase: str | None = field(default=None, repr=False)
    use_agent: bool = False
    timeout_sec: float = DEFAULT_TIMEOUT_SEC
    known_hosts_path: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.host, str):
            raise _err("host", f"expected string, got {type(self.host).__name__}")
        port = _as_int(self.port, ctx="port")
        if not (1 <= port <= 65535):
            raise _err("port", "must be in [1, 65535]")
        _as_str(self.username, ctx="username")
        timeout = _as_float(self.timeout_sec, ctx="timeout_sec")
        if timeout <= 0:
            raise _err("timeout_sec", "must be > 0")
        _as_bool(self.use_agent, ctx="use_agent")

    @property
    def address(self) -> tuple[str, int]:
        return (self.host, self.port)

    def replace(self, **changes: Any) -> ConnectionConfig:
        return dataclasses.replace(self, **changes)


def default_config(**overrides: Any) -> ConnectionConfig:
    """Return a fresh config with library defaults (user root, port 22, 20s timeout)."""
    return ConnectionConfig(**overrides)


def _resolve_env(name: str, *, ctx: str) -> str:
    if not _ENV_KEY_RE.match(name):
        raise _err(ctx, "invalid env var name")
    value = os.environ.get(name)
    if value is None or value == "":
        raise _err(ctx, f"'{name}' is not set (or empty) in environment")
    return value


_CONFIG_KEYS = {
    "host",
    "port",
    "username",
    "ssh_command",
    "password",
    "password_env",
    "private_key_path",
    "private_key_passphrase",
    "private_key_passphrase_env",
    "use_agent",
    "timeout_sec",
    "known_hosts_path",
}


def config_from_dict(raw: Any) -> ConnectionConfig:
    obj = _as_dict(raw, ctx="root")
    _assert_no_extra_keys(obj, allowed=_CONFIG_KEYS, ctx="root")

    ssh_command = _as_opt_str(obj.get("ssh_command"), ctx="root.ssh_command")
    if ssh_command is not None:
        for k in ("host", "port", "username"):
            if k in obj:
                raise _err("root", f"do not set '{k}' when using 'ssh_command' (use one or the other)")
        host, port, username = parse_ssh_command(ssh_command, ctx="root.ssh_command")
    else:
        if "host" not in obj:
            raise _err("root", "missing keys: ['host']")
        host = _as_str(obj["host"], ctx="root.host")
        port = _as_int(obj.get("port", DEFAULT_PORT), ctx="root.port")
        username = _as_str(obj.get("username", DEFAULT_USERNAME), ctx="root.username")

    if "password" in obj and "password_env" in obj:
        raise _err("root", "set at most one of 'password' and 'password_env'")
    password = _as_opt_str(obj.get("password"), ctx="root.password")
    password_env = _as_opt_str(obj.get("password_env"), ctx="root.password_env")
    if password_env is not None:
        password = _resolve_env(password_env, ctx="root.password_env")

    private_key_path = _as_opt_str(obj.get("private_key_path"), ctx="root.private_key_path")
    if private_key_path is not None:
        private_key_path = _expand_path(private_key_path)

    if "private_key_passphrase" in obj and "private_key_passphrase_env" in obj:
        raise _err("root", "set at most one of 'private_key_passphrase' and 'private_key_passphrase_env'")
    passphrase = _as_opt_str(obj.get("private_key_passphrase"), ctx="root.private_key_passphrase")
    passphrase_env = _as_opt_str(obj.get("private_key_passphrase_env"), ctx="root.private_key_passphrase_env")
    if passphrase_env is not None:
        passphrase = _resolve_env(passphrase_env, ctx="root.private_key_passphrase_env")
    if passphrase is not None and private_key_path is None:
        raise _err("root.private_key_passphrase", "requires 'private_key_path'")

    use_agent = _as_bool(obj.get("use_agent", False), ctx="root.use_agent")
    timeout_sec = _as_float(obj.get("timeout_sec", DEFAULT_TIMEOUT_SEC), ctx="root.timeout_sec")

    known_hosts_path = _as_opt_str(obj.get("known_hosts_path"), ctx="root.known_hosts_path")
    if known_hosts_path is not None:
        known_hosts_path = _expand_path(known_hosts_path)

    return ConnectionConfig(
        host=host,
        port=port,
        username=username,
        password=password,
        private_key_path=private_key_path,
        private_key_passphrase=passphrase,
        use_agent=use_agent,
        timeout_sec=timeout_sec,
        known_hosts_path=known_hosts_path,
    )


def load_config(path: str | Path) -> ConnectionConfig:
    p = Path(_expand_path(str(path)))
    if not p.exists():
        raise FileNotFoundError(str(p))
    try:
        raw = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise _err(str(p), f"invalid JSON: {exc}") from exc
    return config_from_dict(raw)


def parse_ssh_command(cmd: str, *, ctx: str = "ssh_command") -> tuple[str, int, str]:
    """
    Minimal parser for common SSH command patterns.

    Supported:
      - ssh -p <port> user@host
      - ssh -l <user> -p <port> host

    Unsupported options (fail fast): most flags besides -p / -l.
    """
    import shlex

    try:
        parts = shlex.split(cmd, posix=True)
    except ValueError as exc:
        raise _err(ctx, f"failed to parse ssh_command: {exc}") from exc

    if not parts:
        raise _err(ctx, "ssh_command must not be empty")
    if parts[0] != "ssh":
        raise _err(ctx, "ssh_command must start with 'ssh'")

    user: str | None = None
    host: str | None = None
    port: int = DEFAULT_PORT

    i = 1
    while i < len(parts):
        p = parts[i]
        if p == "-p":
            if i + 1 >= len(parts):
                raise _err(ctx, "ssh_command: -p requires a port")
            try:
                port = int(parts[i + 1])
            except ValueError as exc:
                raise _err(ctx, f"ssh_command: invalid port: {parts[i + 1]!r}") from exc
            i += 2
            continue
        if p == "-l":
            if i + 1 >= len(parts) or parts[i + 1] == "":
                raise _err(ctx, "ssh_command: -l requires a username")
            user = parts[i + 1]
            i += 2
            continue
        if p.startswith("-"):
            raise _err(ctx, f"ssh_command contains unsupported option {p!r}; use explicit config fields instead")

        if host is not None:
            raise _err(ctx, "ssh_command must specify exactly one host")
        if "@" in p:
            u, h = p.split("@", 1)
            if u == "" or h == "":
                raise _err(ctx, f"ssh_command: invalid host spec: {p!r}")
            user = u if user is None else user
            host = h
        else:
            host = p
        i += 1

    if host is None:
        raise _err(ctx, "ssh_command must include a host")
    if not (1 <= port <= 65535):
        raise _err(ctx, "ssh_command: port must be in [1, 65535]")

    return host, port, user if user is not None else DEFAULT_USERNAME
