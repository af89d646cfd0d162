"""Uniform file operations against the restore target.

Every adapter works with paths relative to the configured installation root. Adapters
raise ``TransportError``; transient failures are left to the caller to retry.
"""
from __future__ import annotations

import enum
import posixpath
from abc import ABC, abstractmethod
from collections.abc import Set as AbstractSet
from dataclasses import dataclass, field
from typing import Any, Literal

TransportMethod = Literal["ftp", "sftp", "local"]

DEFAULT_PORTS = {"ftp": 21, "sftp": 22}


class TransportErrorKind(str, enum.Enum):
    AUTH = "auth"
    NETWORK = "network"
    CONFIG = "config"
    PERMISSION = "permission"
    OPERATION = "operation"


class TransportError(RuntimeError):
    def __init__(self, message: str, *, kind: TransportErrorKind, path: str | None = None):
        super().__init__(message)
        self.kind = kind
        self.path = path
        self.message = message

    @property
    def is_fatal(self) -> bool:
        return self.kind in {TransportErrorKind.AUTH, TransportErrorKind.CONFIG, TransportErrorKind.PERMISSION}


@dataclass(slots=True)
class ConnectionConfig:
    method: TransportMethod
    path: str
    host: str = ""
    port: int | None = None
    username: str = ""
    password: str = field(default="", repr=False)
    timeout_seconds: float = 30.0
    sftp_backend: Literal["auto", "ssh2", "paramiko"] = "auto"

    @property
    def effective_port(self) -> int:
        return self.port or DEFAULT_PORTS.get(self.method, 0)

    def validate(self) -> None:
        if not self.path:
            raise TransportError("Installation path is not configured", kind=TransportErrorKind.CONFIG)
        if self.method in {"ftp", "sftp"}:
            missing = [name for name in ("host", "username") if not getattr(self, name)]
            if missing:
                raise TransportError(
                    f"{self.method.upper()} connection is missing: {', '.join(missing)}",
                    kind=TransportErrorKind.CONFIG,
                )

    @classmethod
    def from_mapping(cls, method: str, values: dict[str, Any], *, timeout_seconds: float = 30.0) -> ConnectionConfig:
        """Build a config from a settings mapping.

        SFTP settings are accepted both with plain keys and with ``_sftp`` suffixed keys.
        """
        if method not in ("ftp", "sftp", "local"):
            raise TransportError(f"Invalid connection method: {method!r}", kind=TransportErrorKind.CONFIG)

        def pick(key: str, default: Any = "") -> Any:
            if method == "sftp" and values.get(f"{key}_sftp") not in (None, ""):
                return values[f"{key}_sftp"]
            value = values.get(key)
            return default if value in (None, "") else value

        port = pick("port", None)
        return cls(
            method=method,  # type: ignore[arg-type]
            path=str(pick("path")),
            host=str(pick("host")),
            port=int(port) if port is not None else None,
            username=str(pick("username")),
            password=str(pick("password")),
            timeout_seconds=timeout_seconds,
            sftp_backend=values.get("sftp_backend") or "auto",
        )


def normalize_relative(path: str) -> str:
    cleaned = posixpath.normpath(str(path).replace("\\", "/")).lstrip("/")
    if cleaned in ("", "."):
        return ""
    if cleaned == ".." or cleaned.startswith("../"):
        raise TransportError(f"Path escapes installation root: {path}", kind=TransportErrorKind.CONFIG, path=path)
    return cleaned


def parent_of(relative_path: str) -> str:
    parent = posixpath.dirname(relative_path.rstrip("/"))
    return "" if parent in ("", ".") else parent


def path_components(relative_path: str) -> list[str]:
    """``a/b/c`` -> ``["a", "a/b", "a/b/c"]``"""
    parts = [part for part in relative_path.split("/") if part]
    return ["/".join(parts[: idx + 1]) for idx in range(len(parts))]


class TransportAdapter(ABC):
    method: TransportMethod

    def __init__(self, config: ConnectionConfig):
        self.config = config

    @abstractmethod
    def connect(self) -> None: ...

    @abstractmethod
    def health_check(self) -> bool: ...

    @abstractmethod
    def ensure_directory(self, relative_path: str, known_directories: AbstractSet[str] = frozenset()) -> None:
        """Create ``relative_path`` and its ancestors; existing directories are success.

        ``known_directories`` lists paths the caller already materialized; they are not
        touched again.
        """

    @abstractmethod
    def put_file(self, source_path: str, relative_target: str) -> int:
        """Copy a local file to the target and return the number of bytes written."""

    @abstractmethod
    def list_entries(self, relative_path: str = "") -> list[str]: ...

    @abstractmethod
    def probe_write_access(self) -> None:
        """Create and remove a throwaway entry under the root; raise PERMISSION on failure."""

    @abstractmethod
    def close(self) -> None: ...

    def reconnect(self) -> None:
        self.close()
        self.connect()

    def __enter__(self) -> TransportAdapter:
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
