from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path

import structlog

from archive_restore.schemas.restore import FailedItem, FsEntry, RestorePhase, RestoreStatus, RetryItem
from archive_restore.services.batch_sizing import split_file_batch
from archive_restore.services.directory_scanner import ScanResult, scan_with_retry
from archive_restore.services.restore_errors import RestoreError, RestoreErrorCode, RestoreErrorKind
from archive_restore.services.restore_metrics import record_batch_metrics, record_batch_speed, update_file_progress
from archive_restore.services.resource_monitor import ResourceMonitor, StaticResourceMonitor
from archive_restore.services.retry_policy import compute_backoff_seconds, item_retry_exhausted
from archive_restore.services.status_messages import FINALIZING, files_progress_message, files_started_message
from archive_restore.services.transport import TransportAdapter, TransportError, TransportErrorKind, parent_of, path_components
from archive_restore.services.transport_factory import as_restore_error

logger = structlog.get_logger(__name__)

HEALTH_CHECK_INTERVAL = 10
MEMORY_CHECK_INTERVAL = 10

_FATAL_ITEM_KINDS = {TransportErrorKind.AUTH, TransportErrorKind.CONFIG}


class _ParentCreated(Exception):
    """The entry's parent had to be materialized first; the entry goes back on its queue."""


class FileRestoreEngine:
    def __init__(
        self,
        transport_factory: Callable[[], TransportAdapter],
        *,
        monitor: ResourceMonitor | StaticResourceMonitor | None = None,
        max_connection_attempts: int = 5,
        reconnect_base_seconds: int = 2,
        reconnect_max_seconds: int = 30,
        item_max_retries: int = 1,
        memory_watermark: float = 0.8,
        max_step_seconds: float = 30.0,
        scanner: Callable[[str], ScanResult] = scan_with_retry,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._transport_factory = transport_factory
        self._transport: TransportAdapter | None = None
        self._monitor = monitor or StaticResourceMonitor()
        self._max_connection_attempts = max_connection_attempts
        self._reconnect_base_seconds = reconnect_base_seconds
        self._reconnect_max_seconds = reconnect_max_seconds
        self._item_max_retries = item_max_retries
        self._memory_watermark = memory_watermark
        self._max_step_seconds = max_step_seconds
        self._scanner = scanner
        self._sleep = sleep
        self._clock = clock

    # connection handling

    @property
    def transport(self) -> TransportAdapter:
        if self._transport is None:
            raise RestoreError(
                RestoreErrorCode.CONNECT_FAIL, "Transport is not connected", kind=RestoreErrorKind.CONNECTIVITY
            )
        return self._transport

    def _ensure_connected(self, status: RestoreStatus) -> None:
        if self._transport is not None:
            return
        self._transport = self._transport_factory()
        try:
            self._transport.connect()
        except TransportError as exc:
            if exc.is_fatal:
                raise as_restore_error(exc) from exc
            logger.warning("transport_connect_failed", method=self._transport.method, error=exc.message)
            self._reconnect(status)

    def _reconnect(self, status: RestoreStatus) -> None:
        while True:
            status.connection_attempts += 1
            if status.connection_attempts > self._max_connection_attempts:
                logger.error("transport_reconnect_exhausted", attempts=status.connection_attempts - 1)
                raise RestoreError(
                    RestoreErrorCode.RECONNECT_EXHAUSTED,
                    "Too many connection attempts, giving up",
                    kind=RestoreErrorKind.CONNECTIVITY,
                )
            delay = compute_backoff_seconds(
                status.connection_attempts, self._reconnect_base_seconds, self._reconnect_max_seconds
            )
            logger.warning("transport_reconnecting", attempt=status.connection_attempts, delay_seconds=delay)
            self._sleep(delay)
            try:
                self.transport.reconnect()
            except TransportError as exc:
                if exc.is_fatal:
                    raise as_restore_error(exc) from exc
                logger.warning("transport_reconnect_failed", attempt=status.connection_attempts, error=exc.message)
                continue
            logger.info("transport_reconnected", attempt=status.connection_attempts)
            status.connection_attempts = 0
            return

    def _check_health(self, status: RestoreStatus) -> None:
        status.ops_since_health_check += 1
        if status.ops_since_health_check < HEALTH_CHECK_INTERVAL:
            return
        status.ops_since_health_check = 0
        if not self.transport.health_check():
            logger.warning("transport_unhealthy")
            self._reconnect(status)

    def close(self) -> None:
        if self._transport is not None:
            try:
                self._transport.close()
            except TransportError as exc:
                logger.warning("transport_close_failed", error=exc.message)
        self._transport = None

    # phase entry points

    def initialize(self, status: RestoreStatus) -> RestoreStatus:
        self._ensure_connected(status)
        scan = self._scanner(status.source_dir)

        status.dir_queue = scan.directories
        status.file_queue = scan.files
        status.retry_items = []
        status.files_size = scan.total_size
        status.dirs_total = len(scan.directories)
        status.files_count = len(scan.files)
        status.files_total = status.dirs_total + status.files_count
        status.files_processed = 0
        status.dirs_processed = 0
        status.actual_files_processed = 0
        status.files_processed_size = 0
        status.sync_processed_size()
        status.dir_batch_size, status.file_batch_size = split_file_batch(
            status.batch_size,
            dirs_remaining=status.dirs_total,
            files_remaining=status.files_count,
            dirs_total=status.dirs_total,
        )
        status.files_initialized = True
        status.message = files_started_message(status.files_total, scan.total_size)
        logger.info(
            "file_restore_initialized",
            directories=status.dirs_total,
            files=status.files_count,
            size_bytes=scan.total_size,
            dir_batch_size=status.dir_batch_size,
            file_batch_size=status.file_batch_size,
        )
        if status.files_total == 0:
            self._finish(status)
        return status

    def process(self, status: RestoreStatus) -> RestoreStatus:
        if not status.files_initialized:
            return self.initialize(status)
        return self.process_batch(status)

    def process_batch(self, status: RestoreStatus) -> RestoreStatus:
        self._ensure_connected(status)

        total = max(1, status.batch_size)
        dir_share, file_share = split_file_batch(
            total,
            dirs_remaining=len(status.dir_queue),
            files_remaining=len(status.file_queue),
            dirs_total=status.dirs_total,
        )
        status.dir_batch_size, status.file_batch_size = dir_share, file_share

        batch_start = self._clock()
        batch_bytes = 0
        ops = 0
        file_ops = 0
        stop = False

        pending = status.retry_items
        status.retry_items = []
        for item in pending:
            if ops >= total or stop:
                status.retry_items.append(item)
                continue
            if item_retry_exhausted(item.retry_count, self._item_max_retries):
                self._mark_failed(status, item)
                continue
            self._check_health(status)
            ops += 1
            try:
                batch_bytes += self._restore_entry(status, item.entry)
            except _ParentCreated:
                status.retry_items.append(item)
            except (TransportError, OSError) as exc:
                self._record_retry_failure(status, item, exc)
            stop = self._over_time_budget(batch_start)

        dir_ops = 0
        while status.dir_queue and dir_ops < dir_share and ops < total and not stop:
            entry = status.dir_queue.pop(0)
            self._check_health(status)
            ops += 1
            dir_ops += 1
            try:
                self._restore_entry(status, entry)
            except _ParentCreated:
                status.dir_queue.insert(0, entry)
            except (TransportError, OSError) as exc:
                self._record_first_failure(status, entry, exc)
            stop = self._over_time_budget(batch_start)

        while status.file_queue and file_ops < file_share and ops < total and not stop:
            entry = status.file_queue.pop(0)
            self._check_health(status)
            ops += 1
            file_ops += 1
            try:
                batch_bytes += self._restore_entry(status, entry)
            except _ParentCreated:
                status.file_queue.insert(0, entry)
            except (TransportError, OSError) as exc:
                self._record_first_failure(status, entry, exc)

            if file_ops % MEMORY_CHECK_INTERVAL == 0 and self._monitor.is_above(self._memory_watermark):
                logger.warning("file_batch_memory_high", ratio=round(self._monitor.memory_ratio(), 3), ops=ops)
                stop = True
            stop = stop or self._over_time_budget(batch_start)

        duration = self._clock() - batch_start
        update_file_progress(status)
        record_batch_speed(status, batch_bytes=batch_bytes, duration=duration, phase="files")
        record_batch_metrics(
            status,
            duration=duration,
            batch_bytes=batch_bytes,
            batch_items=ops,
            memory_usage=self._monitor.memory_usage(),
            memory_ratio=self._monitor.memory_ratio(),
        )
        status.message = files_progress_message(status)

        if not status.dir_queue and not status.file_queue and not status.retry_items:
            self._finish(status)
        return status

    def _finish(self, status: RestoreStatus) -> None:
        status.phase = RestorePhase.CLEANUP
        status.message = FINALIZING
        status.current_file = ""
        logger.info(
            "file_phase_complete",
            dirs_processed=status.dirs_processed,
            files_restored=status.actual_files_processed,
            failed=len(status.failed_files),
        )
        self.close()

    def _over_time_budget(self, batch_start: float) -> bool:
        if self._clock() - batch_start > self._max_step_seconds:
            logger.info("file_batch_time_budget_reached")
            return True
        return False

    # per-item work

    def _ensure_parent(self, status: RestoreStatus, relative_path: str) -> bool:
        """Materialize missing ancestors top-down; True when anything had to be created."""
        parent = parent_of(relative_path)
        if not parent or status.path_cache.get(parent) or status.created_directories.get(parent):
            return False
        created = False
        for ancestor in path_components(parent):
            if status.created_directories.get(ancestor):
                continue
            self.transport.ensure_directory(ancestor, known_directories=status.created_directories.keys())
            status.created_directories[ancestor] = True
            created = True
        status.path_cache[parent] = True
        return created

    def _restore_entry(self, status: RestoreStatus, entry: FsEntry) -> int:
        rel = entry.relative_path
        status.current_file = rel

        if entry.type == "dir":
            if status.created_directories.get(rel):
                logger.debug("directory_already_created", path=rel)
            else:
                if self._ensure_parent(status, rel):
                    raise _ParentCreated(rel)
                self.transport.ensure_directory(rel, known_directories=status.created_directories.keys())
                status.created_directories[rel] = True
            status.path_cache[rel] = True
            status.dirs_processed += 1
            status.files_processed += 1
            return 0

        if self._ensure_parent(status, rel):
            raise _ParentCreated(rel)
        source = Path(status.source_dir) / rel
        self.transport.put_file(str(source), rel)
        status.files_processed_size += entry.size
        status.sync_processed_size()
        status.actual_files_processed += 1
        status.files_processed += 1
        return entry.size

    def _raise_if_fatal(self, exc: Exception) -> None:
        if isinstance(exc, TransportError) and exc.kind in _FATAL_ITEM_KINDS:
            raise as_restore_error(exc) from exc

    def _after_network_failure(self, status: RestoreStatus, exc: Exception) -> None:
        if isinstance(exc, TransportError) and exc.kind == TransportErrorKind.NETWORK:
            self._reconnect(status)

    def _record_first_failure(self, status: RestoreStatus, entry: FsEntry, exc: Exception) -> None:
        self._raise_if_fatal(exc)
        item = RetryItem(path=entry.relative_path, type=entry.type, retry_count=1, entry=entry, last_error=str(exc))
        logger.warning("restore_item_failed", path=entry.relative_path, type=entry.type, error=str(exc))
        if item_retry_exhausted(item.retry_count, self._item_max_retries):
            self._mark_failed(status, item)
        else:
            status.retry_items.append(item)
        self._after_network_failure(status, exc)

    def _record_retry_failure(self, status: RestoreStatus, item: RetryItem, exc: Exception) -> None:
        self._raise_if_fatal(exc)
        item.retry_count += 1
        item.last_error = str(exc)
        logger.warning("restore_item_retry_failed", path=item.path, retry_count=item.retry_count, error=str(exc))
        if item_retry_exhausted(item.retry_count, self._item_max_retries):
            self._mark_failed(status, item)
        else:
            status.retry_items.append(item)
        self._after_network_failure(status, exc)

    def _mark_failed(self, status: RestoreStatus, item: RetryItem) -> None:
        status.failed_files.append(
            FailedItem(path=item.path, type=item.type, retry_count=item.retry_count, error=item.last_error)
        )
        status.files_processed += 1
        logger.error("restore_item_gave_up", path=item.path, type=item.type, retry_count=item.retry_count)
