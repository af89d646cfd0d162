import time
from datetime import datetime, timezone

from archive_restore.schemas.restore import FailedItem, RestorePhase, RestoreStatus
from archive_restore.services.restore_metrics import (
    record_batch_speed,
    update_database_progress,
    update_file_progress,
)
from archive_restore.services.status_messages import completion_message, format_duration, format_size


def _status(**kwargs) -> RestoreStatus:
    values = dict(
        id="restore-test",
        backup_id="backup-1",
        temp_dir="/tmp/r",
        extract_dir="/tmp/r/extract",
        backup_file="backup.zip",
        has_db=True,
        has_files=True,
        started=datetime.now(tz=timezone.utc),
        start_time=time.time(),
        phase=RestorePhase.FILES,
    )
    values.update(kwargs)
    return RestoreStatus(**values)


def test_format_size_and_duration():
    assert format_size(0) == "0 B"
    assert format_size(1023) == "1023 B"
    assert format_size(1536) == "1.50 KB"
    assert format_size(5 * 1024 * 1024) == "5.00 MB"
    assert format_duration(59) == "0:59"
    assert format_duration(3 * 60 + 7) == "3:07"
    assert format_duration(3600 + 61) == "1:01:01"


def test_completion_message_summarizes_and_flags_failures():
    status = _status(dirs_processed=2, actual_files_processed=10, tables_processed=3, processed_size=2048)
    message = completion_message(status, elapsed_seconds=65, average_speed=1024)
    assert message.startswith("Restore completed! (2.00 KB in 1:05, avg 1.00 KB/s)")
    assert "2 directories created, 10 files restored, 3 database tables restored" in message
    assert "failed" not in message

    status.failed_files = [FailedItem(path="a.txt", type="file", retry_count=2)]
    message = completion_message(status, elapsed_seconds=65, average_speed=1024)
    assert "1 files failed" in message
    assert message.endswith("See logs for details.")


def test_speed_is_smoothed_and_history_is_bounded():
    status = _status()
    record_batch_speed(status, batch_bytes=1000, duration=1, phase="files")
    assert status.bytes_per_second == 1000
    record_batch_speed(status, batch_bytes=2000, duration=1, phase="files")
    assert status.bytes_per_second == 1000 * 0.7 + 2000 * 0.3
    for _ in range(6):
        record_batch_speed(status, batch_bytes=500, duration=1, phase="database")
    assert len(status.speed_history) == 5
    assert status.db_speed == 500
    assert status.file_speed == 2000

    record_batch_speed(status, batch_bytes=0, duration=1, phase="files")
    assert len(status.speed_history) == 5


def test_progress_splits_between_database_and_files():
    status = _status(tables_total=4, tables_processed=2, phase=RestorePhase.DATABASE)
    update_database_progress(status)
    assert status.progress == 25

    status = _status(tables_total=4, tables_processed=4, files_total=10, files_processed=5)
    update_file_progress(status)
    assert status.progress == 75

    status = _status(has_db=False, files_total=10, files_processed=2, files_size=100, files_processed_size=90)
    update_file_progress(status)
    assert status.progress == 90
