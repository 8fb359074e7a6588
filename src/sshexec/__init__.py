from __future__ import annotations

__all__ = [
    "AuthProof",
    "AuthenticationRejected",
    "Cancelled",
    "Command",
    "ConfigError",
    "Connection",
    "ConnectionClosed",
    "ConnectionConfig",
    "DeadlineExceeded",
    "FingerprintPolicy",
    "HostKeyError",
    "HostKeyMismatch",
    "HostKeyPolicy",
    "HostKeyUnknown",
    "InsecureIgnoreHostKey",
    "KnownHostsPolicy",
    "NilSession",
    "NoAuthMethod",
    "NotConnected",
    "RemoteExecutionFailed",
    "SSHExecError",
    "Session",
    "SessionError",
    "TransportIO",
    "TrustOnFirstUsePolicy",
    "__version__",
    "default_config",
    "dial",
    "load_config",
    "ping",
]

__version__ = "0.1.0"

from .auth import AuthProof
from .command import Command
from .config import ConnectionConfig, default_config, load_config
from .connection import Connection, dial, ping
from .errors import (
    AuthenticationRejected,
    Cancelled,
    ConfigError,
    ConnectionClosed,
    DeadlineExceeded,
    HostKeyError,
    HostKeyMismatch,
    HostKeyUnknown,
    NilSession,
    NoAuthMethod,
    NotConnected,
    RemoteExecutionFailed,
    SessionError,
    SSHExecError,
    TransportIO,
)
from .policies import (
    FingerprintPolicy,
    HostKeyPolicy,
    InsecureIgnoreHostKey,
    KnownHostsPolicy,
    TrustOnFirstUsePolicy,
)
from .session import Session
