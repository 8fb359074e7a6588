from __future__ import annotations

import io
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

import paramiko
from paramiko.ssh_exception import PasswordRequiredException

from .config import ConnectionConfig
from .errors import AuthenticationRejected, NoAuthMethod, TransportIO

logger = logging.getLogger(__name__)


AuthKind = Literal["agent", "key", "password"]

# DSS support was dropped from paramiko; OpenSSH no longer generates such keys either.
_KEY_CLASSES: tuple[type[paramiko.PKey], ...] = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


def _expand_path(p: str) -> str:
    return os.path.expandvars(os.path.expanduser(p))


@dataclass(frozen=True)
class AuthProof:
    """One prepared authentication method, ready to be offered to a transport."""

    kind: AuthKind
    keys: tuple[paramiko.PKey, ...] = ()
    password: str | None = field(default=None, repr=False)
    _agent: paramiko.Agent | None = field(default=None, repr=False, compare=False)

    def authenticate(self, transport: paramiko.Transport, username: str) -> None:
        try:
            if self.kind == "password":
                transport.auth_password(username, self.password or "")
            else:
                self._auth_keys(transport, username)
        except paramiko.AuthenticationException as exc:
            raise AuthenticationRejected(f"ssh: unable to authenticate as {username!r} ({self.kind}): {exc}") from exc
        except (paramiko.SSHException, OSError) as exc:
            raise TransportIO(f"ssh: authentication aborted: {exc}") from exc

        if not transport.is_authenticated():
            raise AuthenticationRejected(
                f"ssh: partial authentication for {username!r} ({self.kind}); server requires further methods"
            )

    def _auth_keys(self, transport: paramiko.Transport, username: str) -> None:
        last_exc: paramiko.AuthenticationException | None = None
        for key in self.keys:
            try:
                transport.auth_publickey(username, key)
                return
            except paramiko.AuthenticationException as exc:
                logger.debug("public key %s rejected for %s", key.get_name(), username)
                last_exc = exc
        if last_exc is not None:
            raise last_exc
        raise paramiko.AuthenticationException("no keys to offer")

    def close(self) -> None:
        if self._agent is not None:
            self._agent.close()


def has_agent() -> bool:
    return os.environ.get("SSH_AUTH_SOCK", "") != ""


def agent_proof() -> AuthProof:
    """Keys held by the running ssh-agent (Unix only)."""
    if not has_agent():
        raise NoAuthMethod("no agent: SSH_AUTH_SOCK is not set")
    agent = paramiko.Agent()
    keys = tuple(agent.get_keys())
    if not keys:
        agent.close()
        raise NoAuthMethod("ssh-agent holds no keys")
    return AuthProof(kind="agent", keys=keys, _agent=agent)


def load_private_key(path: str, passphrase: str | None = None) -> paramiko.PKey:
    p = Path(_expand_path(path))
    data = p.read_text(encoding="utf-8")

    problems: list[str] = []
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(data), password=passphrase)
        except PasswordRequiredException:
            raise
        except (paramiko.SSHException, ValueError) as exc:
            problems.append(f"{key_class.__name__}: {exc}")
    raise paramiko.SSHException(f"unable to parse private key {p}: " + "; ".join(problems))


def key_proof(path: str, passphrase: str | None = None) -> AuthProof:
    return AuthProof(kind="key", keys=(load_private_key(path, passphrase or None),))


def password_proof(password: str) -> AuthProof:
    return AuthProof(kind="password", password=password)


def resolve(config: ConnectionConfig) -> AuthProof:
    """
    Turn a config into exactly one auth proof.

    Priority: agent (if requested and reachable), then private key, then
    password. Agent and key failures fall through to the next method.
    """
    if config.use_agent and has_agent():
        try:
            proof = agent_proof()
        except (NoAuthMethod, paramiko.SSHException, OSError) as exc:
            logger.debug("ssh-agent unusable, falling through: %s", exc)
        else:
            logger.debug("using ssh-agent (%d key(s))", len(proof.keys))
            return proof

    if config.private_key_path:
        try:
            proof = key_proof(config.private_key_path, config.private_key_passphrase)
        except (paramiko.SSHException, OSError, ValueError) as exc:
            logger.debug("private key %s unusable, falling through: %s", config.private_key_path, exc)
        else:
            logger.debug("using private key %s (%s)", config.private_key_path, proof.keys[0].get_name())
            return proof

    if config.password:
        logger.debug("using password authentication")
        return password_proof(config.password)

    raise NoAuthMethod()
