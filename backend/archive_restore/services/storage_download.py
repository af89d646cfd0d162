from __future__ import annotations

from pathlib import Path
from typing import Protocol

import httpx
import structlog

from archive_restore.schemas.restore import BackupDescriptor
from archive_restore.services.restore_errors import RestoreError, RestoreErrorCode, RestoreErrorKind

logger = structlog.get_logger(__name__)

SOURCE_REF_KEYS = ("file_id", "s3_key", "object_name", "file")


class StorageDownloadError(RuntimeError):
    pass


class StorageDownloader(Protocol):
    def download(self, source_ref: str, dest: Path) -> Path: ...


def verify_download(dest: Path) -> Path:
    if not dest.is_file() or dest.stat().st_size == 0:
        raise StorageDownloadError("Downloaded file is empty or missing")
    return dest


def resolve_source_ref(backup: BackupDescriptor) -> str:
    for key in SOURCE_REF_KEYS:
        value = backup.storage_info.get(key)
        if value:
            return str(value)
    return backup.file


class HttpStorageDownloader:
    def __init__(self, base_url: str, *, timeout_seconds: float = 60.0, headers: dict[str, str] | None = None):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._headers = headers or {}

    def _url(self, source_ref: str) -> str:
        if source_ref.startswith(("http://", "https://")):
            return source_ref
        return f"{self._base_url}/{source_ref.lstrip('/')}"

    def download(self, source_ref: str, dest: Path) -> Path:
        return self.download_chunked(source_ref, dest)

    def download_chunked(self, source_ref: str, dest: Path) -> Path:
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            with httpx.Client(timeout=self._timeout, headers=self._headers, follow_redirects=True) as client:
                with client.stream("GET", self._url(source_ref)) as response:
                    response.raise_for_status()
                    with dest.open("wb") as fp:
                        for chunk in response.iter_bytes(chunk_size=1024 * 1024):
                            fp.write(chunk)
        except httpx.HTTPError as exc:
            dest.unlink(missing_ok=True)
            raise StorageDownloadError(f"http download failed: {exc}") from exc
        return verify_download(dest)


def stage_backup(
    backup: BackupDescriptor,
    temp_dir: Path,
    downloaders: dict[str, StorageDownloader],
    *,
    local_root: str | Path | None = None,
) -> Path:
    """Return a local path for the backup archive, downloading it into ``temp_dir`` if needed."""
    if backup.storage == "local":
        candidate = Path(backup.path or backup.file)
        if not candidate.is_absolute() and local_root is not None:
            candidate = Path(local_root) / candidate
        if not candidate.is_file():
            raise RestoreError(
                RestoreErrorCode.BACKUP_NOT_FOUND, "Backup file not found", kind=RestoreErrorKind.EXTRACTION
            )
        return candidate

    downloader = downloaders.get(backup.storage)
    if downloader is None:
        raise RestoreError(
            RestoreErrorCode.CONFIG_INVALID,
            f"Storage provider not available: {backup.storage}",
            kind=RestoreErrorKind.CONFIGURATION,
        )

    source_ref = resolve_source_ref(backup)
    dest = temp_dir / Path(backup.file).name
    logger.info("backup_download_started", storage=backup.storage, source_ref=source_ref)
    try:
        download_chunked = getattr(downloader, "download_chunked", None)
        if download_chunked is not None:
            path = download_chunked(source_ref, dest)
        else:
            path = downloader.download(source_ref, dest)
    except StorageDownloadError as exc:
        raise RestoreError(RestoreErrorCode.DOWNLOAD_FAIL, str(exc), kind=RestoreErrorKind.EXTRACTION) from exc
    logger.info("backup_download_finished", storage=backup.storage, size_bytes=path.stat().st_size)
    return path
