"""Resumable restore driver.

A restore is advanced by repeated, bounded invocations of ``process_next_step``. Every
invocation loads the status document, runs at most ``max_steps`` engine steps and saves
the document after each one, so the next invocation may run in a different process.
"""
from __future__ import annotations

import secrets
import string
import time
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import structlog
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from archive_restore.core.config import Settings
from archive_restore.core.logging import bind_restore_context, clear_restore_context
from archive_restore.schemas.restore import (
    BackupDescriptor,
    RestoreHistoryEntry,
    RestoreIssue,
    RestorePhase,
    RestoreState,
    RestoreStatus,
)
from archive_restore.services.archive_service import (
    database_size,
    detect_contents,
    directory_size,
    extract_archive,
    load_manifest,
    remove_tree,
)
from archive_restore.services.batch_sizing import (
    db_batch_size_for_speed,
    file_batch_size_for_speed,
    max_steps_for_speed,
)
from archive_restore.services.database_restore import DatabaseRestoreEngine
from archive_restore.services.file_restore import FileRestoreEngine
from archive_restore.services.resource_monitor import ResourceMonitor, StaticResourceMonitor
from archive_restore.services.restore_errors import RestoreError, RestoreErrorCode, RestoreErrorKind
from archive_restore.services.retry_policy import is_stalled, now_utc
from archive_restore.services.status_messages import (
    CANCELED,
    PREPARING_DATABASE,
    PREPARING_FILES,
    completion_message,
)
from archive_restore.services.status_store import RestoreStatusStore
from archive_restore.services.storage_download import HttpStorageDownloader, StorageDownloader, stage_backup
from archive_restore.services.storage_minio import MinioStorageDownloader, get_minio_client
from archive_restore.services.transport import TransportAdapter, TransportError
from archive_restore.services.transport_factory import (
    as_restore_error,
    build_transport,
    connection_config_from_settings,
)

logger = structlog.get_logger(__name__)

EXTRACT_PROGRESS_START = 5.0
EXTRACT_PROGRESS_END = 10.0
_ID_ALPHABET = string.ascii_letters + string.digits


def generate_restore_id(moment: datetime | None = None) -> str:
    moment = moment or now_utc()
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(8))
    return f"restore-{moment:%Y-%m-%d-%H-%M-%S}-{suffix}"


def build_history_entry(status: RestoreStatus) -> RestoreHistoryEntry:
    completed = status.completed_at or now_utc()
    return RestoreHistoryEntry(
        id=status.id,
        backup_id=status.backup_id,
        has_db=status.has_db,
        has_files=status.has_files,
        started=status.started,
        completed=completed,
        duration=max(0.0, (completed - status.started).total_seconds()),
        total_size=status.total_size,
        speed=status.bytes_per_second_avg,
        status=status.status,
        files_processed=status.actual_files_processed,
        tables_processed=status.tables_processed,
        error_count=len(status.errors) + len(status.failed_files),
        message=status.message,
    )


class RestoreOrchestrator:
    def __init__(
        self,
        store: RestoreStatusStore,
        *,
        transport_factory: Callable[[], TransportAdapter],
        database_engine: DatabaseRestoreEngine,
        file_engine: FileRestoreEngine,
        temp_root: str | Path,
        downloaders: dict[str, StorageDownloader] | None = None,
        backup_root: str | Path | None = None,
        speed: int = 5,
        monitor: ResourceMonitor | StaticResourceMonitor | None = None,
        memory_watermark: float = 0.8,
        max_step_seconds: float = 30.0,
        stall_timeout_seconds: float = 300,
        max_recovery_attempts: int = 3,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self._transport_factory = transport_factory
        self._database_engine = database_engine
        self._file_engine = file_engine
        self._temp_root = Path(temp_root)
        self._downloaders = downloaders or {}
        self._backup_root = backup_root
        self._speed = speed
        self._monitor = monitor or StaticResourceMonitor()
        self._memory_watermark = memory_watermark
        self._max_step_seconds = max_step_seconds
        self._stall_timeout_seconds = stall_timeout_seconds
        self._max_recovery_attempts = max_recovery_attempts
        self._clock = clock

    # start

    def check_target(self) -> None:
        """Connect to the installation target and round-trip a probe entry."""
        transport = self._transport_factory()
        try:
            transport.connect()
            transport.probe_write_access()
        except TransportError as exc:
            logger.warning("restore_target_check_failed", method=transport.method, kind=exc.kind.value, error=exc.message)
            raise as_restore_error(exc) from exc
        finally:
            transport.close()

    def start_restore(self, backup: BackupDescriptor) -> RestoreStatus:
        current = self.store.get_current()
        if current is not None and not current.is_terminal:
            raise RestoreError(
                RestoreErrorCode.ALREADY_RUNNING,
                f"Restore {current.id} is already in progress",
                kind=RestoreErrorKind.STATE,
            )

        self.check_target()

        restore_id = generate_restore_id()
        temp_dir = self._temp_root / restore_id
        extract_dir = temp_dir / "extract"
        temp_dir.mkdir(parents=True, exist_ok=True)
        bind_restore_context(restore_id)

        status = RestoreStatus(
            id=restore_id,
            backup_id=backup.id,
            temp_dir=str(temp_dir),
            extract_dir=str(extract_dir),
            backup_file=backup.file,
            has_db=False,
            has_files=False,
            started=now_utc(),
            start_time=self._clock(),
            phase=RestorePhase.EXTRACTING,
            message="Extracting backup...",
            progress=EXTRACT_PROGRESS_START,
            last_processing_time=self._clock(),
        )
        self.store.save(status)
        logger.info("restore_started", backup_id=backup.id, storage=backup.storage)

        try:
            self._prepare(status, backup)
        except RestoreError as exc:
            self._fail(status, exc)
            raise
        finally:
            clear_restore_context()
        return status

    def _prepare(self, status: RestoreStatus, backup: BackupDescriptor) -> None:
        archive_path = stage_backup(backup, Path(status.temp_dir), self._downloaders, local_root=self._backup_root)

        def on_progress(done: int, total: int) -> None:
            span = EXTRACT_PROGRESS_END - EXTRACT_PROGRESS_START
            status.progress = EXTRACT_PROGRESS_START + span * done / max(1, total)
            status.message = f"Extracting backup... ({done} of {total} entries)"
            status.last_processing_time = self._clock()
            self.store.save(status)

        entries = extract_archive(archive_path, status.extract_dir, on_progress=on_progress)

        manifest = load_manifest(status.extract_dir)
        status.manifest = manifest
        if manifest.critical_errors > 0:
            raise RestoreError(
                RestoreErrorCode.BACKUP_HAS_CRITICAL_ERRORS,
                f"Backup contains {manifest.critical_errors} critical errors and cannot be restored",
                kind=RestoreErrorKind.EXTRACTION,
            )

        has_db, has_files = detect_contents(status.extract_dir)
        if not has_db and not has_files:
            raise RestoreError(
                RestoreErrorCode.BACKUP_EMPTY,
                "Backup contains neither database nor files",
                kind=RestoreErrorKind.EXTRACTION,
            )

        status.has_db = has_db
        status.has_files = has_files
        status.total_size = database_size(status.extract_dir) + directory_size(status.source_dir)
        status.batch_size = file_batch_size_for_speed(self._speed)
        status.db_batch_size = db_batch_size_for_speed(self._speed)
        status.max_steps = max_steps_for_speed(self._speed)
        status.phase = RestorePhase.DATABASE if has_db else RestorePhase.FILES
        status.message = PREPARING_DATABASE if has_db else PREPARING_FILES
        status.progress = EXTRACT_PROGRESS_END
        status.last_processing_time = self._clock()
        self.store.save(status)
        logger.info(
            "restore_prepared",
            entries=entries,
            has_db=has_db,
            has_files=has_files,
            total_size=status.total_size,
            batch_size=status.batch_size,
            db_batch_size=status.db_batch_size,
            max_steps=status.max_steps,
            manifest_type=manifest.type,
        )

    # step driver

    def process_next_step(self) -> RestoreStatus:
        status = self.store.get_current()
        if status is None:
            raise RestoreError(RestoreErrorCode.NOT_FOUND, "No restore in progress", kind=RestoreErrorKind.STATE)
        if status.is_terminal:
            return status

        bind_restore_context(status.id)
        try:
            if status.cancel_requested:
                return self.cancel_restore(status)
            try:
                self._check_stalled(status)
                self._run_steps(status)
            except RestoreError as exc:
                self._fail(status, exc)
                return status
            except TransportError as exc:
                self._fail(status, as_restore_error(exc))
                return status
            if status.cancel_requested:
                return self.cancel_restore(status)
            return status
        finally:
            self._file_engine.close()
            clear_restore_context()

    def _check_stalled(self, status: RestoreStatus) -> None:
        now = self._clock()
        if status.recovery_mode or not is_stalled(status.last_processing_time, now, self._stall_timeout_seconds):
            return
        status.recovery_mode = True
        status.recovery_attempts += 1
        logger.warning(
            "restore_stalled",
            idle_seconds=round(now - status.last_processing_time, 1),
            recovery_attempts=status.recovery_attempts,
            phase=status.phase.value,
        )
        if status.recovery_attempts > self._max_recovery_attempts:
            raise RestoreError(
                RestoreErrorCode.STALLED,
                "Restore stalled and could not be recovered",
                kind=RestoreErrorKind.STATE,
            )
        # queues are persisted, so recovery resumes from the saved position
        status.message = f"Recovering stalled restore (attempt {status.recovery_attempts})..."
        self.store.save(status)

    def _run_steps(self, status: RestoreStatus) -> None:
        for step in range(max(1, status.max_steps)):
            step_start = self._clock()
            self._run_phase(status)

            now = self._clock()
            status.last_processing_time = now
            status.recovery_mode = False
            status.time_elapsed = max(0.0, now - status.start_time)
            if status.time_elapsed > 0:
                status.bytes_per_second_avg = status.processed_size / status.time_elapsed
            self._merge_cancel_request(status)
            self.store.save(status)

            if status.is_terminal or status.cancel_requested:
                return
            if now - step_start > self._max_step_seconds:
                logger.info("restore_step_time_budget_reached", step=step + 1)
                return
            if self._monitor.is_above(self._memory_watermark):
                logger.warning("restore_memory_high", ratio=round(self._monitor.memory_ratio(), 3), step=step + 1)
                return

    def _run_phase(self, status: RestoreStatus) -> None:
        if status.phase == RestorePhase.DATABASE:
            self._database_engine.process(status)
        elif status.phase == RestorePhase.FILES:
            self._file_engine.process(status)
        elif status.phase == RestorePhase.CLEANUP:
            self.process_cleanup(status)
        elif status.phase == RestorePhase.EXTRACTING:
            raise RestoreError(
                RestoreErrorCode.EXTRACT_FAIL,
                "Extraction did not finish",
                kind=RestoreErrorKind.EXTRACTION,
            )
        else:
            raise RestoreError(
                RestoreErrorCode.UNKNOWN_PHASE,
                f"Unknown restore phase: {status.phase}",
                kind=RestoreErrorKind.STATE,
            )

    def _merge_cancel_request(self, status: RestoreStatus) -> None:
        # a cancel may have been requested by another process since this status was loaded
        stored = self.store.get_current()
        if stored is not None and stored.id == status.id and stored.cancel_requested:
            status.cancel_requested = True

    # terminal transitions

    def process_cleanup(self, status: RestoreStatus) -> RestoreStatus:
        remove_tree(status.temp_dir)
        elapsed = max(0.0, self._clock() - status.start_time)
        average_speed = status.processed_size / elapsed if elapsed > 0 else 0.0

        status.time_elapsed = elapsed
        status.bytes_per_second_avg = average_speed
        status.message = completion_message(status, elapsed_seconds=elapsed, average_speed=average_speed)
        status.status = RestoreState.PARTIAL if status.failed_files or status.errors else RestoreState.COMPLETED
        status.phase = RestorePhase.COMPLETED
        status.progress = 100
        status.current_file = ""
        status.current_table = ""
        status.completed_at = now_utc()
        self.store.add_history(build_history_entry(status))
        logger.info(
            "restore_completed",
            status=status.status.value,
            elapsed_seconds=round(elapsed, 1),
            tables_processed=status.tables_processed,
            files_restored=status.actual_files_processed,
            failed_items=len(status.failed_files),
        )
        return status

    def _fail(self, status: RestoreStatus, exc: RestoreError) -> None:
        logger.error("restore_failed", code=exc.code, kind=exc.kind.value, error=exc.message, phase=status.phase.value)
        status.errors.append(RestoreIssue(message=exc.message, type=exc.code))
        status.status = RestoreState.ERROR
        status.phase = RestorePhase.ERROR
        status.message = exc.message
        status.completed_at = now_utc()
        self._file_engine.close()
        remove_tree(status.temp_dir)
        self.store.save(status)
        self.store.add_history(build_history_entry(status))

    def request_cancel(self) -> RestoreStatus:
        status = self.store.get_current()
        if status is None or status.is_terminal:
            raise RestoreError(RestoreErrorCode.NOT_FOUND, "No restore in progress", kind=RestoreErrorKind.STATE)
        status.cancel_requested = True
        self.store.save(status)
        logger.info("restore_cancel_requested", restore_id=status.id)
        return status

    def cancel_restore(self, status: RestoreStatus | None = None) -> RestoreStatus:
        status = status or self.store.get_current()
        if status is None or status.is_terminal:
            raise RestoreError(RestoreErrorCode.NOT_FOUND, "No restore in progress", kind=RestoreErrorKind.STATE)

        self._file_engine.close()
        remove_tree(status.temp_dir)
        status.status = RestoreState.CANCELED
        status.phase = RestorePhase.CANCELED
        status.message = CANCELED
        status.completed_at = now_utc()
        self.store.add_history(build_history_entry(status))
        self.store.clear()
        logger.info("restore_canceled", restore_id=status.id, phase_progress=round(status.progress, 1))
        return status


def build_downloaders(settings: Settings) -> dict[str, StorageDownloader]:
    minio = MinioStorageDownloader(
        get_minio_client(
            endpoint=settings.minio_endpoint,
            access_key=settings.minio_access_key,
            secret_key=settings.minio_secret_key,
            secure=settings.minio_secure,
        ),
        settings.storage_bucket,
    )
    downloaders: dict[str, StorageDownloader] = {"minio": minio, "s3": minio}
    if settings.storage_http_base_url:
        downloaders["http"] = HttpStorageDownloader(
            settings.storage_http_base_url, timeout_seconds=settings.http_download_timeout_seconds
        )
    return downloaders


def build_orchestrator(settings: Settings, session_factory: Callable[[], Session]) -> RestoreOrchestrator:
    def transport_factory() -> TransportAdapter:
        # resolved per call so status and history stay readable without a configured target
        return build_transport(connection_config_from_settings(settings))

    monitor = ResourceMonitor.from_megabytes(settings.restore_memory_limit_mb)
    target_engine = create_engine(settings.target_database_url, pool_pre_ping=True)
    return RestoreOrchestrator(
        RestoreStatusStore(session_factory, history_limit=settings.restore_history_limit),
        transport_factory=transport_factory,
        database_engine=DatabaseRestoreEngine(
            target_engine,
            monitor=monitor,
            max_step_seconds=settings.max_step_seconds,
            item_max_retries=settings.item_max_retries,
        ),
        file_engine=FileRestoreEngine(
            transport_factory,
            monitor=monitor,
            max_connection_attempts=settings.max_connection_attempts,
            reconnect_base_seconds=settings.reconnect_base_seconds,
            reconnect_max_seconds=settings.reconnect_max_seconds,
            item_max_retries=settings.item_max_retries,
            memory_watermark=settings.memory_high_watermark,
            max_step_seconds=settings.max_step_seconds,
        ),
        temp_root=settings.restore_temp_root,
        downloaders=build_downloaders(settings),
        backup_root=settings.backup_root,
        speed=settings.restore_speed,
        monitor=monitor,
        memory_watermark=settings.memory_high_watermark,
        max_step_seconds=settings.max_step_seconds,
        stall_timeout_seconds=settings.stall_timeout_seconds,
        max_recovery_attempts=settings.max_recovery_attempts,
    )
