import zipfile

import pytest

from archive_restore.services.archive_service import (
    detect_contents,
    extract_archive,
    load_manifest,
    parse_manifest_text,
    verify_extraction,
)
from archive_restore.services.restore_errors import RestoreError, RestoreErrorCode

MANIFEST = """Backup type: Full
Backup created on: 2026-10-01 03:00:00
Tables: 12
Files backed up: 345
"""


def _zip(path, entries: dict[str, str]) -> None:
    with zipfile.ZipFile(path, "w") as archive:
        for name, content in entries.items():
            archive.writestr(name, content)


def test_parse_manifest_fields():
    manifest = parse_manifest_text(MANIFEST)
    assert manifest.present is True
    assert manifest.type == "full"
    assert manifest.created == "2026-10-01 03:00:00"
    assert manifest.tables == 12
    assert manifest.files == 345
    assert manifest.critical_errors == 0


def test_parse_manifest_critical_errors():
    assert parse_manifest_text("**CRITICAL ERRORS OCCURRED**\nCount: 3\n").critical_errors == 3
    assert parse_manifest_text("Critical errors: 2").critical_errors == 2


def test_missing_manifest_is_unknown(tmp_path):
    manifest = load_manifest(tmp_path)
    assert manifest.present is False
    assert manifest.type == "unknown"


def test_extract_and_verify(tmp_path):
    archive = tmp_path / "backup.zip"
    _zip(archive, {"README.txt": MANIFEST, "backup.sql": "SELECT 1;", "files/a/b.txt": "x"})

    total = extract_archive(archive, tmp_path / "out")

    assert total == 3
    assert verify_extraction(tmp_path / "out") is True
    assert detect_contents(tmp_path / "out") == (True, True)


def test_large_archives_report_batched_progress(tmp_path):
    archive = tmp_path / "many.zip"
    entries = {"README.txt": MANIFEST}
    entries.update({f"files/f{idx}.txt": "x" for idx in range(24)})
    _zip(archive, entries)
    progress = []

    extract_archive(
        archive,
        tmp_path / "out",
        on_progress=lambda done, total: progress.append((done, total)),
        batch_threshold=10,
        batch_size=10,
    )

    assert progress == [(10, 25), (20, 25), (25, 25)]


def test_extraction_without_content_fails_verification(tmp_path):
    archive = tmp_path / "readme-only.zip"
    _zip(archive, {"README.txt": MANIFEST})

    with pytest.raises(RestoreError) as info:
        extract_archive(archive, tmp_path / "out")
    assert info.value.code == RestoreErrorCode.EXTRACT_VERIFY_FAIL


def test_corrupt_and_unsafe_archives(tmp_path):
    corrupt = tmp_path / "corrupt.zip"
    corrupt.write_bytes(b"not a zip")
    with pytest.raises(RestoreError) as info:
        extract_archive(corrupt, tmp_path / "out")
    assert info.value.code == RestoreErrorCode.EXTRACT_FAIL

    unsafe = tmp_path / "unsafe.zip"
    _zip(unsafe, {"../escape.txt": "x", "README.txt": MANIFEST})
    with pytest.raises(RestoreError):
        extract_archive(unsafe, tmp_path / "out2")
    assert not (tmp_path / "escape.txt").exists()

    with pytest.raises(RestoreError) as info:
        extract_archive(tmp_path / "missing.zip", tmp_path / "out3")
    assert info.value.code == RestoreErrorCode.BACKUP_NOT_FOUND
