from __future__ import annotations

import importlib.util
import os
import posixpath
import socket
import stat
import uuid
from collections.abc import Callable
from collections.abc import Set as AbstractSet
from typing import Literal, Protocol

import paramiko
import structlog

from archive_restore.services.transport import (
    ConnectionConfig,
    TransportAdapter,
    TransportError,
    TransportErrorKind,
    normalize_relative,
    parent_of,
    path_components,
)

logger = structlog.get_logger(__name__)

LARGE_FILE_BYTES = 5 * 1024 * 1024
CHUNK_BYTES = 1024 * 1024
DIR_MODE = 0o755
FILE_MODE = 0o644

EntryKind = Literal["dir", "file"]


class SftpClient(Protocol):
    name: str

    def connect(self) -> None: ...

    def ping(self) -> bool: ...

    def stat_kind(self, path: str) -> EntryKind | None: ...

    def mkdir(self, path: str) -> None: ...

    def put(self, local_path: str, remote_path: str, size: int) -> None: ...

    def listdir(self, path: str) -> list[str]: ...

    def remove(self, path: str) -> None: ...

    def rmdir(self, path: str) -> None: ...

    def close(self) -> None: ...


def native_sftp_available() -> bool:
    return importlib.util.find_spec("ssh2") is not None


class Ssh2SftpClient:
    """libssh2 binding (ssh2-python), preferred when the extension is installed."""

    name = "ssh2"

    def __init__(self, config: ConnectionConfig):
        self._config = config
        self._sock: socket.socket | None = None
        self._session = None
        self._sftp = None

    def connect(self) -> None:
        from ssh2.exceptions import AuthenticationError, SSH2Error
        from ssh2.session import Session

        try:
            sock = socket.create_connection(
                (self._config.host, self._config.effective_port), timeout=self._config.timeout_seconds
            )
        except OSError as exc:
            raise TransportError(f"Cannot connect to SFTP server: {exc}", kind=TransportErrorKind.NETWORK) from exc

        session = Session()
        try:
            session.handshake(sock)
            session.userauth_password(self._config.username, self._config.password)
            sftp = session.sftp_init()
        except AuthenticationError as exc:
            sock.close()
            raise TransportError("SFTP authentication failed", kind=TransportErrorKind.AUTH) from exc
        except (SSH2Error, OSError) as exc:
            sock.close()
            raise TransportError(f"SFTP session failed: {exc}", kind=TransportErrorKind.NETWORK) from exc
        self._sock = sock
        self._session = session
        self._sftp = sftp

    def _errors(self) -> tuple[type[BaseException], ...]:
        from ssh2.exceptions import SSH2Error

        return (SSH2Error, OSError)

    def ping(self) -> bool:
        if self._sftp is None:
            return False
        try:
            self._sftp.stat("/")
        except self._errors():
            return False
        return True

    def stat_kind(self, path: str) -> EntryKind | None:
        from ssh2.exceptions import SFTPProtocolError

        try:
            attrs = self._sftp.stat(path)
        except SFTPProtocolError:
            return None
        except self._errors() as exc:
            raise TransportError(f"SFTP stat failed: {exc}", kind=TransportErrorKind.NETWORK, path=path) from exc
        return "dir" if stat.S_ISDIR(attrs.permissions) else "file"

    def mkdir(self, path: str) -> None:
        try:
            self._sftp.mkdir(path, DIR_MODE)
        except self._errors() as exc:
            raise TransportError(f"SFTP mkdir failed: {exc}", kind=TransportErrorKind.OPERATION, path=path) from exc

    def put(self, local_path: str, remote_path: str, size: int) -> None:
        from ssh2.sftp import LIBSSH2_FXF_CREAT, LIBSSH2_FXF_TRUNC, LIBSSH2_FXF_WRITE

        flags = LIBSSH2_FXF_CREAT | LIBSSH2_FXF_WRITE | LIBSSH2_FXF_TRUNC
        try:
            with open(local_path, "rb") as src, self._sftp.open(remote_path, flags, FILE_MODE) as dst:
                if size <= LARGE_FILE_BYTES:
                    dst.write(src.read())
                    return
                while True:
                    chunk = src.read(CHUNK_BYTES)
                    if not chunk:
                        break
                    dst.write(chunk)
        except self._errors() as exc:
            raise TransportError(
                f"SFTP upload failed: {exc}", kind=TransportErrorKind.OPERATION, path=remote_path
            ) from exc

    def listdir(self, path: str) -> list[str]:
        try:
            with self._sftp.opendir(path) as handle:
                names = [buf.decode("utf-8", errors="replace") for _size, buf, _attrs in handle.readdir()]
        except self._errors() as exc:
            raise TransportError(f"SFTP list failed: {exc}", kind=TransportErrorKind.OPERATION, path=path) from exc
        return sorted(name for name in names if name not in (".", ".."))

    def remove(self, path: str) -> None:
        try:
            self._sftp.unlink(path)
        except self._errors() as exc:
            raise TransportError(f"SFTP remove failed: {exc}", kind=TransportErrorKind.OPERATION, path=path) from exc

    def rmdir(self, path: str) -> None:
        try:
            self._sftp.rmdir(path)
        except self._errors() as exc:
            raise TransportError(f"SFTP rmdir failed: {exc}", kind=TransportErrorKind.OPERATION, path=path) from exc

    def close(self) -> None:
        if self._session is not None:
            try:
                self._session.disconnect()
            except self._errors() as exc:
                logger.debug("ssh2_disconnect_failed", error=str(exc))
        if self._sock is not None:
            self._sock.close()
        self._session = None
        self._sftp = None
        self._sock = None


class ParamikoSftpClient:
    """Pure-python fallback."""

    name = "paramiko"

    def __init__(self, config: ConnectionConfig):
        self._config = config
        self._ssh: paramiko.SSHClient | None = None
        self._sftp: paramiko.SFTPClient | None = None

    def connect(self) -> None:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        timeout = self._config.timeout_seconds
        try:
            client.connect(
                hostname=self._config.host,
                port=self._config.effective_port,
                username=self._config.username,
                password=self._config.password,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                look_for_keys=False,
                allow_agent=False,
            )
            sftp = client.open_sftp()
        except paramiko.AuthenticationException as exc:
            client.close()
            raise TransportError("SFTP authentication failed", kind=TransportErrorKind.AUTH) from exc
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise TransportError(f"Cannot connect to SFTP server: {exc}", kind=TransportErrorKind.NETWORK) from exc
        self._ssh = client
        self._sftp = sftp

    def ping(self) -> bool:
        if self._sftp is None:
            return False
        try:
            self._sftp.normalize(".")
        except (paramiko.SSHException, OSError, EOFError):
            return False
        return True

    def _channel_closed(self) -> bool:
        channel = getattr(self._sftp, "sock", None)
        return self._sftp is None or bool(getattr(channel, "closed", False))

    def _raise(self, exc: BaseException, action: str, path: str) -> None:
        # sftp status replies arrive as errno-less IOError; only a dead session means a lost link
        if isinstance(exc, (paramiko.SSHException, EOFError, ConnectionError, TimeoutError)) or self._channel_closed():
            kind = TransportErrorKind.NETWORK
        else:
            kind = TransportErrorKind.OPERATION
        raise TransportError(f"SFTP {action} failed: {exc}", kind=kind, path=path) from exc

    def stat_kind(self, path: str) -> EntryKind | None:
        try:
            attrs = self._sftp.stat(path)
        except FileNotFoundError:
            return None
        except (paramiko.SSHException, OSError, EOFError) as exc:
            self._raise(exc, "stat", path)
        return "dir" if stat.S_ISDIR(attrs.st_mode or 0) else "file"

    def mkdir(self, path: str) -> None:
        try:
            self._sftp.mkdir(path, mode=DIR_MODE)
        except (paramiko.SSHException, OSError, EOFError) as exc:
            self._raise(exc, "mkdir", path)

    def put(self, local_path: str, remote_path: str, size: int) -> None:
        try:
            with open(local_path, "rb") as src, self._sftp.open(remote_path, "wb") as dst:
                if size <= LARGE_FILE_BYTES:
                    dst.write(src.read())
                    return
                dst.set_pipelined(True)
                while True:
                    chunk = src.read(CHUNK_BYTES)
                    if not chunk:
                        break
                    dst.write(chunk)
        except (paramiko.SSHException, OSError, EOFError) as exc:
            self._raise(exc, "upload", remote_path)

    def listdir(self, path: str) -> list[str]:
        try:
            return sorted(self._sftp.listdir(path))
        except (paramiko.SSHException, OSError, EOFError) as exc:
            self._raise(exc, "list", path)
        return []

    def remove(self, path: str) -> None:
        try:
            self._sftp.remove(path)
        except (paramiko.SSHException, OSError, EOFError) as exc:
            self._raise(exc, "remove", path)

    def rmdir(self, path: str) -> None:
        try:
            self._sftp.rmdir(path)
        except (paramiko.SSHException, OSError, EOFError) as exc:
            self._raise(exc, "rmdir", path)

    def close(self) -> None:
        if self._sftp is not None:
            self._sftp.close()
        if self._ssh is not None:
            self._ssh.close()
        self._sftp = None
        self._ssh = None


ClientFactory = Callable[[ConnectionConfig], SftpClient]

DEFAULT_CLIENT_FACTORIES: dict[str, ClientFactory] = {
    "ssh2": Ssh2SftpClient,
    "paramiko": ParamikoSftpClient,
}


def backend_order(preference: str, *, native_available: bool) -> list[str]:
    if preference == "paramiko":
        return ["paramiko"]
    if not native_available:
        if preference == "ssh2":
            logger.warning("sftp_native_backend_unavailable", fallback="paramiko")
        return ["paramiko"]
    return ["ssh2", "paramiko"]


class SftpTransport(TransportAdapter):
    method = "sftp"

    def __init__(
        self,
        config: ConnectionConfig,
        *,
        client_factories: dict[str, ClientFactory] | None = None,
        native_available: bool | None = None,
    ):
        super().__init__(config)
        self._factories = client_factories or DEFAULT_CLIENT_FACTORIES
        self._native_available = native_sftp_available() if native_available is None else native_available
        self._client: SftpClient | None = None
        self.base_path = "/" + config.path.strip("/") if config.path.strip("/") else "/"

    @property
    def backend(self) -> str | None:
        return self._client.name if self._client else None

    @property
    def client(self) -> SftpClient:
        if self._client is None:
            raise TransportError("SFTP connection is not open", kind=TransportErrorKind.NETWORK)
        return self._client

    def _abs(self, relative_path: str) -> str:
        rel = normalize_relative(relative_path)
        return posixpath.join(self.base_path, rel) if rel else self.base_path

    def connect(self) -> None:
        self.config.validate()
        order = backend_order(self.config.sftp_backend, native_available=self._native_available)
        last_error: TransportError | None = None
        for name in order:
            client = self._factories[name](self.config)
            try:
                client.connect()
            except TransportError as exc:
                if exc.kind == TransportErrorKind.AUTH:
                    raise
                last_error = exc
                logger.warning("sftp_backend_connect_failed", backend=name, error=exc.message)
                continue
            self._client = client
            break
        if self._client is None:
            raise last_error or TransportError("No SFTP backend available", kind=TransportErrorKind.CONFIG)

        self._ensure_remote_dirs(self.base_path.strip("/"), absolute_root="/")
        logger.info("sftp_connected", host=self.config.host, backend=self._client.name, base_path=self.base_path)

    def _ensure_remote_dirs(self, relative: str, *, absolute_root: str, known: AbstractSet[str] = frozenset()) -> None:
        for component in path_components(relative):
            if component in known:
                continue
            absolute = posixpath.join(absolute_root, component)
            kind = self.client.stat_kind(absolute)
            if kind == "dir":
                continue
            if kind == "file":
                raise TransportError(
                    f"Remote path is not a directory: {absolute}", kind=TransportErrorKind.OPERATION, path=absolute
                )
            try:
                self.client.mkdir(absolute)
            except TransportError:
                if self.client.stat_kind(absolute) != "dir":
                    raise

    def health_check(self) -> bool:
        if self._client is None:
            return False
        return self._client.ping()

    def ensure_directory(self, relative_path: str, known_directories: AbstractSet[str] = frozenset()) -> None:
        rel = normalize_relative(relative_path)
        if not rel:
            return
        target = self._abs(rel)
        if self.client.stat_kind(target) == "dir":
            return
        try:
            self.client.mkdir(target)
        except TransportError as exc:
            # a concurrent creator or "already exists" reported as a failure
            if exc.kind == TransportErrorKind.NETWORK and self.client.stat_kind(target) != "dir":
                raise
            logger.debug("sftp_mkdir_direct_failed", path=rel, error=exc.message)
        if self.client.stat_kind(target) == "dir":
            return
        self._ensure_remote_dirs(rel, absolute_root=self.base_path, known=known_directories)

    def put_file(self, source_path: str, relative_target: str) -> int:
        rel = normalize_relative(relative_target)
        size = os.path.getsize(source_path)
        target = self._abs(rel)
        try:
            self.client.put(source_path, target, size)
        except TransportError as exc:
            if exc.kind == TransportErrorKind.NETWORK:
                raise
            logger.warning("sftp_upload_retry_after_parent_check", path=rel, error=exc.message)
            parent = parent_of(rel)
            if parent:
                self.ensure_directory(parent)
            self.client.put(source_path, target, size)
        return size

    def list_entries(self, relative_path: str = "") -> list[str]:
        return self.client.listdir(self._abs(relative_path))

    def probe_write_access(self) -> None:
        token = uuid.uuid4().hex[:8]
        probe_dir = self._abs(f".restore_probe_dir_{token}")
        try:
            self.client.mkdir(probe_dir)
            self.client.rmdir(probe_dir)
        except (TransportError, OSError) as exc:
            raise TransportError(
                "No write permission in installation directory",
                kind=TransportErrorKind.PERMISSION,
                path=self.base_path,
            ) from exc

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
        self._client = None
