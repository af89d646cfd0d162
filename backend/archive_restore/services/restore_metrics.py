from archive_restore.schemas.restore import RestoreStatus

SPEED_SMOOTHING_PREVIOUS = 0.7
SPEED_SMOOTHING_CURRENT = 0.3
SPEED_HISTORY_SIZE = 5


def record_batch_speed(status: RestoreStatus, *, batch_bytes: float, duration: float, phase: str) -> None:
    if duration <= 0 or batch_bytes <= 0:
        return
    current = batch_bytes / duration
    if status.bytes_per_second > 0:
        status.bytes_per_second = (
            status.bytes_per_second * SPEED_SMOOTHING_PREVIOUS + current * SPEED_SMOOTHING_CURRENT
        )
    else:
        status.bytes_per_second = current

    if phase == "database":
        status.db_speed = current
    else:
        status.file_speed = current

    status.speed_history.append(current)
    if len(status.speed_history) > SPEED_HISTORY_SIZE:
        del status.speed_history[: len(status.speed_history) - SPEED_HISTORY_SIZE]


def record_batch_metrics(
    status: RestoreStatus,
    *,
    duration: float,
    batch_bytes: float,
    batch_items: int,
    memory_usage: int,
    memory_ratio: float,
) -> None:
    metrics = status.batch_metrics
    metrics.last_batch_time = duration
    metrics.last_batch_size = batch_bytes
    metrics.last_batch_files = batch_items
    metrics.last_memory_usage = memory_usage
    metrics.last_memory_ratio = memory_ratio


def update_file_progress(status: RestoreStatus) -> None:
    if status.files_total <= 0:
        return
    count_progress = status.files_processed / status.files_total * 100
    size_progress = 0.0
    if status.files_size > 0:
        size_progress = status.files_processed_size / status.files_size * 100
    file_progress = min(100.0, max(size_progress, count_progress))
    if status.has_db:
        db_progress = status.tables_processed / max(1, status.tables_total) * 50
        status.progress = db_progress + file_progress * 0.5
    else:
        status.progress = file_progress


def update_database_progress(status: RestoreStatus) -> None:
    if status.tables_total <= 0:
        return
    share = 50 if status.has_files else 100
    status.progress = status.tables_processed / status.tables_total * share
