from __future__ import annotations

import ftplib
import io
import os
import posixpath
import time
import uuid
from collections.abc import Callable
from collections.abc import Set as AbstractSet

import structlog

from archive_restore.services.transport import (
    ConnectionConfig,
    TransportAdapter,
    TransportError,
    TransportErrorKind,
    normalize_relative,
    path_components,
)

logger = structlog.get_logger(__name__)

LARGE_FILE_BYTES = 1024 * 1024
CHUNK_BYTES = 1024 * 1024
LOGIN_ATTEMPTS = 3
LOGIN_RETRY_SECONDS = 1.0

_NETWORK_ERRORS = (ftplib.error_temp, ftplib.error_reply, ftplib.error_proto, OSError, EOFError)


class FtpTransport(TransportAdapter):
    """FTP adapter working through change-directory navigation.

    Many servers only accept paths relative to the working directory, so the adapter
    tracks the current directory and whether it is still known to sit under the root.
    """

    method = "ftp"

    def __init__(
        self,
        config: ConnectionConfig,
        *,
        ftp_factory: Callable[[], ftplib.FTP] = ftplib.FTP,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(config)
        self._ftp_factory = ftp_factory
        self._sleep = sleep
        self._ftp: ftplib.FTP | None = None
        self._cwd: str | None = None
        self._root_known = False
        self.base_path = "/" + config.path.strip("/") if config.path.strip("/") else "/"

    @property
    def ftp(self) -> ftplib.FTP:
        if self._ftp is None:
            raise TransportError("FTP connection is not open", kind=TransportErrorKind.NETWORK)
        return self._ftp

    def _abs(self, relative_path: str) -> str:
        rel = normalize_relative(relative_path)
        return posixpath.join(self.base_path, rel) if rel else self.base_path

    def connect(self) -> None:
        self.config.validate()
        ftp = self._ftp_factory()
        try:
            ftp.connect(self.config.host, self.config.effective_port, timeout=self.config.timeout_seconds)
        except _NETWORK_ERRORS as exc:
            raise TransportError(
                f"Cannot connect to FTP server {self.config.host}: {exc}", kind=TransportErrorKind.NETWORK
            ) from exc

        for attempt in range(1, LOGIN_ATTEMPTS + 1):
            try:
                ftp.login(self.config.username, self.config.password)
                break
            except ftplib.error_perm as exc:
                logger.warning("ftp_login_failed", host=self.config.host, attempt=attempt, error=str(exc))
                if attempt == LOGIN_ATTEMPTS:
                    self._safe_close(ftp)
                    raise TransportError("FTP login failed", kind=TransportErrorKind.AUTH) from exc
                self._sleep(LOGIN_RETRY_SECONDS)
            except _NETWORK_ERRORS as exc:
                self._safe_close(ftp)
                raise TransportError(f"FTP connection lost during login: {exc}", kind=TransportErrorKind.NETWORK) from exc

        ftp.set_pasv(True)
        self._ftp = ftp
        self._cwd = None
        self._root_known = False
        self._ensure_base_path()
        logger.info("ftp_connected", host=self.config.host, base_path=self.base_path)

    def _ensure_base_path(self) -> None:
        try:
            self.ftp.cwd("/")
            for component in path_components(self.base_path.strip("/")):
                absolute = "/" + component
                try:
                    self.ftp.cwd(absolute)
                except ftplib.error_perm:
                    self.ftp.mkd(absolute)
                    self.ftp.cwd(absolute)
        except ftplib.error_perm as exc:
            raise TransportError(
                f"Cannot access installation path {self.base_path}: {exc}",
                kind=TransportErrorKind.PERMISSION,
                path=self.base_path,
            ) from exc
        except _NETWORK_ERRORS as exc:
            raise TransportError(f"FTP connection lost: {exc}", kind=TransportErrorKind.NETWORK) from exc
        self._cwd = self.base_path
        self._root_known = True

    def _chdir(self, absolute: str) -> None:
        if self._cwd == absolute:
            return
        try:
            self.ftp.cwd(absolute)
        except ftplib.error_perm:
            self._cwd = None
            self._root_known = False
            raise
        self._cwd = absolute

    def _go_root(self) -> None:
        if not self._root_known:
            self.ftp.cwd("/")
            self._cwd = "/"
        self._chdir(self.base_path)
        self._root_known = True

    def _dir_exists(self, absolute: str) -> bool:
        try:
            self._chdir(absolute)
        except ftplib.error_perm:
            return False
        return True

    def health_check(self) -> bool:
        if self._ftp is None:
            return False
        try:
            self._ftp.pwd()
        except ftplib.all_errors as exc:
            logger.warning("ftp_health_check_failed", error=str(exc))
            return False
        return True

    def ensure_directory(self, relative_path: str, known_directories: AbstractSet[str] = frozenset()) -> None:
        rel = normalize_relative(relative_path)
        if not rel:
            return
        target = self._abs(rel)
        try:
            if self._dir_exists(target):
                return
            # direct absolute mkdir works when the parent already exists
            try:
                self.ftp.mkd(target)
            except ftplib.error_perm as exc:
                logger.debug("ftp_mkdir_direct_failed", path=rel, error=str(exc))
            if self._dir_exists(target):
                return

            self._go_root()
            for component in path_components(rel):
                if component in known_directories:
                    continue
                absolute = self._abs(component)
                if self._dir_exists(absolute):
                    continue
                try:
                    self.ftp.mkd(absolute)
                except ftplib.error_perm as exc:
                    # a concurrent creator or a server that reports "exists" as an error
                    if not self._dir_exists(absolute):
                        raise TransportError(
                            f"Failed to create directory {component}: {exc}",
                            kind=TransportErrorKind.OPERATION,
                            path=component,
                        ) from exc
            if not self._dir_exists(target):
                raise TransportError(
                    f"Directory {rel} missing after mkdir", kind=TransportErrorKind.OPERATION, path=rel
                )
        except ftplib.error_perm as exc:
            raise TransportError(
                f"Cannot navigate to {rel}: {exc}", kind=TransportErrorKind.OPERATION, path=rel
            ) from exc
        except _NETWORK_ERRORS as exc:
            raise TransportError(f"FTP connection lost: {exc}", kind=TransportErrorKind.NETWORK, path=rel) from exc

    def put_file(self, source_path: str, relative_target: str) -> int:
        rel = normalize_relative(relative_target)
        size = os.path.getsize(source_path)
        target = self._abs(rel)
        parent, name = posixpath.split(target)

        strategies: list[tuple[str, Callable[[], None]]] = [
            ("relative", lambda: self._upload_relative(parent, name, source_path, size)),
            ("absolute", lambda: self._upload_absolute(target, source_path, size)),
            ("create_then_write", lambda: self._upload_create_then_write(target, source_path, size)),
        ]
        last_error: Exception | None = None
        for label, strategy in strategies:
            try:
                strategy()
                return size
            except ftplib.error_perm as exc:
                last_error = exc
                logger.debug("ftp_upload_strategy_failed", path=rel, strategy=label, error=str(exc))
            except _NETWORK_ERRORS as exc:
                raise TransportError(f"FTP connection lost: {exc}", kind=TransportErrorKind.NETWORK, path=rel) from exc
        raise TransportError(
            f"Failed to upload {rel}: {last_error}", kind=TransportErrorKind.OPERATION, path=rel
        ) from last_error

    def _store(self, remote_name: str, source_path: str, size: int) -> None:
        if size > LARGE_FILE_BYTES:
            self._store_chunked(remote_name, source_path, size)
            return
        with open(source_path, "rb") as fp:
            self.ftp.storbinary(f"STOR {remote_name}", fp)

    def _store_chunked(self, remote_name: str, source_path: str, size: int) -> None:
        offset = 0
        with open(source_path, "rb") as fp:
            while offset < size:
                chunk = fp.read(CHUNK_BYTES)
                if not chunk:
                    break
                # REST resumes the transfer at offset, each chunk on its own data connection
                self.ftp.storbinary(f"STOR {remote_name}", io.BytesIO(chunk), rest=offset if offset else None)
                offset += len(chunk)

    def _upload_relative(self, parent: str, name: str, source_path: str, size: int) -> None:
        self._chdir(parent)
        self._store(name, source_path, size)

    def _upload_absolute(self, target: str, source_path: str, size: int) -> None:
        self._go_root()
        self._store(target, source_path, size)

    def _upload_create_then_write(self, target: str, source_path: str, size: int) -> None:
        self._go_root()
        self.ftp.storbinary(f"STOR {target}", io.BytesIO(b""))
        self._store_chunked(target, source_path, size)

    def list_entries(self, relative_path: str = "") -> list[str]:
        absolute = self._abs(relative_path)
        try:
            names = self.ftp.nlst(absolute)
        except ftplib.error_perm as exc:
            # empty directories are reported as 550 by several servers
            if self._dir_exists(absolute):
                return []
            raise TransportError(
                f"Cannot list {relative_path or '/'}: {exc}", kind=TransportErrorKind.OPERATION, path=relative_path
            ) from exc
        except _NETWORK_ERRORS as exc:
            raise TransportError(f"FTP connection lost: {exc}", kind=TransportErrorKind.NETWORK) from exc
        return sorted(posixpath.basename(name.rstrip("/")) for name in names if name not in (".", ".."))

    def probe_write_access(self) -> None:
        token = uuid.uuid4().hex[:8]
        probe_file = self._abs(f".restore_probe_{token}")
        probe_dir = self._abs(f".restore_probe_dir_{token}")
        try:
            self._go_root()
            self.ftp.storbinary(f"STOR {probe_file}", io.BytesIO(b"restore write probe"))
            self.ftp.delete(probe_file)
            self.ftp.mkd(probe_dir)
            self.ftp.rmd(probe_dir)
        except ftplib.error_perm as exc:
            raise TransportError(
                "No write permission in installation directory",
                kind=TransportErrorKind.PERMISSION,
                path=self.base_path,
            ) from exc
        except _NETWORK_ERRORS as exc:
            raise TransportError(f"FTP connection lost: {exc}", kind=TransportErrorKind.NETWORK) from exc

    @staticmethod
    def _safe_close(ftp: ftplib.FTP) -> None:
        try:
            ftp.quit()
        except ftplib.all_errors:
            ftp.close()

    def close(self) -> None:
        if self._ftp is not None:
            self._safe_close(self._ftp)
        self._ftp = None
        self._cwd = None
        self._root_known = False
