from archive_restore.schemas.restore import RestoreStatus

_UNITS = ("B", "KB", "MB", "GB", "TB")

PREPARING_DATABASE = "Preparing to restore database..."
PREPARING_FILES = "Preparing to restore files..."
FINALIZING = "Finalizing restore..."
CANCELED = "Restore canceled by user"


def format_size(num_bytes: float, decimals: int = 2) -> str:
    value = float(max(0.0, num_bytes))
    unit = 0
    while value >= 1024 and unit < len(_UNITS) - 1:
        value /= 1024
        unit += 1
    if unit == 0:
        return f"{int(value)} B"
    return f"{value:.{decimals}f} {_UNITS[unit]}"


def format_duration(seconds: float) -> str:
    total = max(0, int(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def _speed_suffix(status: RestoreStatus, sep: str) -> str:
    if status.bytes_per_second > 0:
        return f"{sep}{format_size(status.bytes_per_second)}/s"
    return ""


def next_phase_message(status: RestoreStatus) -> str:
    return PREPARING_FILES if status.has_files else FINALIZING


def database_started_message(table_count: int, total_bytes: int) -> str:
    return f"Restoring database... ({table_count} tables, {format_size(total_bytes)})"


def database_progress_message(status: RestoreStatus) -> str:
    label = "tables"
    if status.current_table:
        label += f" (current: {status.current_table})"
    percent = 0.0
    if status.tables_total > 0:
        percent = status.tables_processed / status.tables_total * 100
    message = (
        f"Restoring database: {status.tables_processed} of {status.tables_total} {label} "
        f"({percent:.1f}%, {format_size(status.db_processed_size)})"
    )
    return message + _speed_suffix(status, " at ")


def files_started_message(item_count: int, total_bytes: int) -> str:
    return f"Restoring files... ({item_count} files, {format_size(total_bytes)})"


def files_progress_message(status: RestoreStatus) -> str:
    message = (
        f"Restoring: {status.files_processed} of {status.files_total} total items | "
        f"{status.dirs_processed} of {status.dirs_total} dirs | "
        f"{status.actual_files_processed} of {status.files_count} files | "
        f"{status.progress:.1f}% complete"
    )
    return message + _speed_suffix(status, " | ")


def completion_message(status: RestoreStatus, *, elapsed_seconds: float, average_speed: float) -> str:
    summary: list[str] = []
    if status.dirs_processed > 0:
        summary.append(f"{status.dirs_processed} directories created")
    if status.actual_files_processed > 0:
        summary.append(f"{status.actual_files_processed} files restored")
    if status.tables_processed > 0:
        summary.append(f"{status.tables_processed} database tables restored")
    if status.failed_files:
        summary.append(f"{len(status.failed_files)} files failed")

    message = (
        f"Restore completed! ({format_size(status.processed_size)} in {format_duration(elapsed_seconds)}, "
        f"avg {format_size(average_speed)}/s)"
    )
    if summary:
        message += " - " + ", ".join(summary)
    if status.failed_files or status.errors:
        message += " - Some files or tables failed to restore. See logs for details."
    return message
