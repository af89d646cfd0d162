from __future__ import annotations

import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from archive_restore.schemas.restore import FsEntry
from archive_restore.services.restore_errors import RestoreError, RestoreErrorCode, RestoreErrorKind

logger = structlog.get_logger(__name__)

EXCLUDED_NAMES = frozenset({"README.txt", ".test"})
SCAN_ATTEMPTS = 3
SCAN_RETRY_SECONDS = 1.0


@dataclass(slots=True)
class ScanResult:
    directories: list[FsEntry] = field(default_factory=list)
    files: list[FsEntry] = field(default_factory=list)
    total_size: int = 0


def scan_directory(root_path: str | Path) -> ScanResult:
    """Walk ``root_path`` once; directories come back shallowest first, then by name."""
    root = Path(root_path)
    if not root.is_dir():
        raise FileNotFoundError(f"source directory not found: {root}")

    result = ScanResult()

    def _on_error(exc: OSError) -> None:
        raise exc

    for current, dirnames, filenames in os.walk(root, onerror=_on_error):
        current_path = Path(current)
        for dirname in dirnames:
            rel = (current_path / dirname).relative_to(root).as_posix()
            result.directories.append(FsEntry(relative_path=rel, depth=rel.count("/"), type="dir"))
        for filename in filenames:
            if filename in EXCLUDED_NAMES:
                continue
            full = current_path / filename
            rel = full.relative_to(root).as_posix()
            size = full.stat().st_size
            result.files.append(FsEntry(relative_path=rel, depth=rel.count("/"), size=size, type="file"))
            result.total_size += size

    result.directories.sort(key=lambda entry: (entry.depth, entry.relative_path))
    return result


def scan_with_retry(
    root_path: str | Path,
    *,
    attempts: int = SCAN_ATTEMPTS,
    delay_seconds: float = SCAN_RETRY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> ScanResult:
    last_error: OSError | None = None
    for attempt in range(1, max(1, attempts) + 1):
        try:
            return scan_directory(root_path)
        except OSError as exc:
            last_error = exc
            logger.warning("directory_scan_failed", root=str(root_path), attempt=attempt, error=str(exc))
            if attempt < attempts:
                sleep(delay_seconds)
    raise RestoreError(
        RestoreErrorCode.SCAN_FAIL,
        f"Failed to scan backup files: {last_error}",
        kind=RestoreErrorKind.EXTRACTION,
    ) from last_error
