from __future__ import annotations

import re
import shutil
import zipfile
from collections.abc import Callable
from pathlib import Path

import structlog

from archive_restore.schemas.restore import BackupManifest
from archive_restore.services.restore_errors import RestoreError, RestoreErrorCode, RestoreErrorKind

logger = structlog.get_logger(__name__)

MANIFEST_NAME = "README.txt"
BATCH_EXTRACT_THRESHOLD = 1000
EXTRACT_BATCH_SIZE = 500

_TYPE_RE = re.compile(r"Backup type: (.*)", re.IGNORECASE)
_CREATED_RE = re.compile(r"Backup created on: (.*)", re.IGNORECASE)
_TABLES_RE = re.compile(r"Tables: (\d+)", re.IGNORECASE)
_FILES_RE = re.compile(r"Files backed up: (\d+)", re.IGNORECASE)
_CRITICAL_BLOCK_RE = re.compile(r"\*\*CRITICAL ERRORS OCCURRED\*\*.*?(\d+)", re.IGNORECASE | re.DOTALL)
_CRITICAL_LINE_RE = re.compile(r"Critical errors: (\d+)", re.IGNORECASE)

ProgressCallback = Callable[[int, int], None]


def parse_manifest_text(content: str) -> BackupManifest:
    manifest = BackupManifest(present=True)
    match = _TYPE_RE.search(content)
    if match:
        manifest.type = match.group(1).strip().lower()
    match = _CREATED_RE.search(content)
    if match:
        manifest.created = match.group(1).strip()
    match = _TABLES_RE.search(content)
    if match:
        manifest.tables = int(match.group(1))
    match = _FILES_RE.search(content)
    if match:
        manifest.files = int(match.group(1))
    match = _CRITICAL_BLOCK_RE.search(content) or _CRITICAL_LINE_RE.search(content)
    if match:
        manifest.critical_errors = int(match.group(1))
    return manifest


def load_manifest(extract_dir: str | Path) -> BackupManifest:
    path = Path(extract_dir) / MANIFEST_NAME
    if not path.is_file():
        return BackupManifest()
    return parse_manifest_text(path.read_text(encoding="utf-8", errors="replace"))


def _safe_target(root: Path, member_name: str) -> Path:
    target = (root / member_name).resolve()
    if root not in target.parents and target != root:
        raise RestoreError(
            RestoreErrorCode.EXTRACT_FAIL,
            f"unsafe archive path: {member_name}",
            kind=RestoreErrorKind.EXTRACTION,
        )
    return target


def extract_archive(
    archive_path: str | Path,
    extract_dir: str | Path,
    *,
    on_progress: ProgressCallback | None = None,
    batch_threshold: int = BATCH_EXTRACT_THRESHOLD,
    batch_size: int = EXTRACT_BATCH_SIZE,
) -> int:
    """Extract a zip backup; large archives report progress every ``batch_size`` members."""
    source = Path(archive_path)
    if not source.is_file():
        raise RestoreError(RestoreErrorCode.BACKUP_NOT_FOUND, "Backup file not found", kind=RestoreErrorKind.EXTRACTION)

    root = Path(extract_dir)
    root.mkdir(parents=True, exist_ok=True)
    root = root.resolve()

    try:
        with zipfile.ZipFile(source) as archive:
            members = archive.infolist()
            for member in members:
                _safe_target(root, member.filename)

            total = len(members)
            if total <= batch_threshold:
                archive.extractall(root)
            else:
                for start in range(0, total, batch_size):
                    for member in members[start : start + batch_size]:
                        archive.extract(member, root)
                    done = min(start + batch_size, total)
                    logger.info("archive_extract_progress", extracted=done, total=total)
                    if on_progress is not None:
                        on_progress(done, total)
    except zipfile.BadZipFile as exc:
        raise RestoreError(
            RestoreErrorCode.EXTRACT_FAIL,
            f"Failed to open backup file: {exc}",
            kind=RestoreErrorKind.EXTRACTION,
        ) from exc
    except OSError as exc:
        raise RestoreError(
            RestoreErrorCode.EXTRACT_FAIL,
            f"Failed to extract backup file: {exc}",
            kind=RestoreErrorKind.EXTRACTION,
        ) from exc

    if not verify_extraction(root):
        raise RestoreError(
            RestoreErrorCode.EXTRACT_VERIFY_FAIL,
            "Extraction verification failed - incomplete or corrupt backup",
            kind=RestoreErrorKind.EXTRACTION,
        )
    return total


def verify_extraction(extract_dir: str | Path) -> bool:
    root = Path(extract_dir)
    if not (root / MANIFEST_NAME).is_file():
        return False
    return (root / "backup.sql").is_file() or (root / "database").is_dir() or (root / "files").is_dir()


def detect_contents(extract_dir: str | Path) -> tuple[bool, bool]:
    root = Path(extract_dir)
    has_db = (root / "backup.sql").is_file() or (root / "database").is_dir()
    has_files = (root / "files").is_dir()
    return has_db, has_files


def directory_size(path: str | Path) -> int:
    root = Path(path)
    if root.is_file():
        return root.stat().st_size
    if not root.is_dir():
        return 0
    return sum(entry.stat().st_size for entry in root.rglob("*") if entry.is_file())


def database_size(extract_dir: str | Path) -> int:
    root = Path(extract_dir)
    return directory_size(root / "backup.sql") + directory_size(root / "database")


def remove_tree(path: str | Path) -> None:
    target = Path(path)
    if not target.exists():
        return
    try:
        shutil.rmtree(target)
    except OSError as exc:
        logger.warning("temp_cleanup_failed", path=str(target), error=str(exc))
