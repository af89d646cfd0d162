from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from pathlib import Path

import structlog
from sqlalchemy import inspect
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from archive_restore.schemas.restore import RestorePhase, RestoreIssue, RestoreStatus, TableItem
from archive_restore.services.batch_sizing import adapt_db_batch_size
from archive_restore.services.restore_errors import RestoreError, RestoreErrorCode, RestoreErrorKind
from archive_restore.services.restore_metrics import (
    record_batch_metrics,
    record_batch_speed,
    update_database_progress,
)
from archive_restore.services.resource_monitor import ResourceMonitor, StaticResourceMonitor
from archive_restore.services.retry_policy import should_retry
from archive_restore.services.sql_errors import SqlErrorKind, SqlExecutionError, to_sql_execution_error
from archive_restore.services.sql_splitter import index_dump_sections, iter_sql_statements
from archive_restore.services.status_messages import (
    database_progress_message,
    database_started_message,
    next_phase_message,
)

logger = structlog.get_logger(__name__)

COMBINED_DUMP_NAME = "backup.sql"
PER_TABLE_DIR = "database"


def _set_foreign_key_checks(conn: Connection, *, enabled: bool) -> None:
    dialect = conn.dialect.name
    if dialect == "mysql":
        conn.exec_driver_sql(f"SET FOREIGN_KEY_CHECKS={1 if enabled else 0}")
    elif dialect == "sqlite":
        conn.exec_driver_sql(f"PRAGMA foreign_keys={'ON' if enabled else 'OFF'}")


def _table_exists(conn: Connection, table: str) -> bool:
    if conn.dialect.name == "mysql":
        return conn.exec_driver_sql("SHOW TABLES LIKE %s", (table,)).first() is not None
    return inspect(conn).has_table(table)


def _count_rows(conn: Connection, table: str) -> int:
    quoted = conn.dialect.identifier_preparer.quote_identifier(table)
    return int(conn.exec_driver_sql(f"SELECT COUNT(*) FROM {quoted}").scalar() or 0)


def find_sql_files(extract_dir: str | Path) -> list[Path]:
    root = Path(extract_dir)
    combined = root / COMBINED_DUMP_NAME
    if combined.is_file():
        return [combined]
    per_table = root / PER_TABLE_DIR
    if per_table.is_dir():
        return sorted(per_table.glob("*.sql"))
    return []


def build_table_queue(sql_files: list[Path]) -> tuple[list[TableItem], int]:
    tables: list[TableItem] = []
    total_size = 0
    for sql_file in sql_files:
        file_size = sql_file.stat().st_size
        total_size += file_size
        if sql_file.name != COMBINED_DUMP_NAME:
            tables.append(TableItem(name=sql_file.stem, file=str(sql_file), size=file_size))
            continue

        preamble_length, sections = index_dump_sections(sql_file)
        # progress approximation: every detected table gets an equal share of the dump
        avg_size = file_size / max(1, len(sections))
        for section in sections:
            tables.append(
                TableItem(
                    name=section.table,
                    file=str(sql_file),
                    size=avg_size,
                    offset=section.offset,
                    length=section.length,
                    preamble_length=preamble_length,
                )
            )
    return tables, total_size


class DatabaseRestoreEngine:
    def __init__(
        self,
        engine: Engine,
        *,
        monitor: ResourceMonitor | StaticResourceMonitor | None = None,
        max_step_seconds: float = 30.0,
        item_max_retries: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._engine = engine
        self._monitor = monitor or StaticResourceMonitor()
        self._max_step_seconds = max_step_seconds
        self._item_max_retries = item_max_retries
        self._clock = clock

    def probe_write_access(self) -> None:
        probe_table = f"restore_probe_{int(time.time())}"
        try:
            with self._engine.begin() as conn:
                conn.exec_driver_sql(f"CREATE TABLE IF NOT EXISTS {probe_table} (id INT)")
                conn.exec_driver_sql(f"DROP TABLE IF EXISTS {probe_table}")
        except SQLAlchemyError as exc:
            kind = to_sql_execution_error(exc).kind
            if kind == SqlErrorKind.TRANSIENT:
                raise RestoreError(
                    RestoreErrorCode.DB_CONNECT_FAIL,
                    "Could not connect to database server",
                    kind=RestoreErrorKind.CONNECTIVITY,
                ) from exc
            raise RestoreError(
                RestoreErrorCode.DB_PERMISSION,
                "No write permission to database",
                kind=RestoreErrorKind.PERMISSION,
            ) from exc

    def initialize(self, status: RestoreStatus) -> RestoreStatus:
        sql_files = find_sql_files(status.extract_dir)
        if not sql_files:
            logger.info("database_restore_no_sql_files", extract_dir=status.extract_dir)
            status.db_initialized = True
            status.phase = RestorePhase.FILES if status.has_files else RestorePhase.CLEANUP
            status.message = next_phase_message(status)
            return status

        self.probe_write_access()
        tables, total_size = build_table_queue(sql_files)

        status.db_initialized = True
        status.db_queue = tables
        status.tables_total = len(tables)
        status.tables_processed = 0
        status.tables_failed = 0
        status.sql_files = [str(path) for path in sql_files]
        status.db_size = total_size
        status.message = database_started_message(len(tables), total_size)
        logger.info(
            "database_restore_initialized",
            tables=len(tables),
            size_bytes=total_size,
            batch_size=status.db_batch_size,
        )
        return status

    def process(self, status: RestoreStatus) -> RestoreStatus:
        if not status.db_initialized:
            self.initialize(status)
            if status.phase != RestorePhase.DATABASE:
                return status
        return self.process_batch(status)

    def process_batch(self, status: RestoreStatus) -> RestoreStatus:
        metrics = status.batch_metrics
        memory_ratio = self._monitor.memory_ratio()
        new_size = adapt_db_batch_size(
            status.db_batch_size,
            last_batch_time=metrics.last_batch_time,
            last_batch_items=metrics.last_batch_files,
            memory_ratio=memory_ratio,
            optimal_time_per_batch=metrics.optimal_time_per_batch,
        )
        if abs(new_size - status.db_batch_size) > 5:
            logger.info(
                "db_batch_size_adjusted",
                previous=status.db_batch_size,
                current=new_size,
                last_batch_time=metrics.last_batch_time,
                memory_ratio=round(memory_ratio, 3),
            )
        status.db_batch_size = new_size

        batch_start = self._clock()
        batch_items = 0
        batch_bytes = 0.0

        while status.db_queue and batch_items < status.db_batch_size:
            if batch_items and self._clock() - batch_start > self._max_step_seconds:
                logger.info("db_batch_time_budget_reached", tables=batch_items)
                break
            table = status.db_queue.pop(0)
            status.current_table = table.name
            batch_items += 1
            try:
                self.restore_table(table)
            except SqlExecutionError as exc:
                if exc.is_critical:
                    status.critical_errors.append(
                        RestoreIssue(table=table.name, message=exc.message, type="table_restore_failure")
                    )
                    logger.error("table_restore_critical", table=table.name, code=exc.code, error=exc.message)
                    raise RestoreError(
                        RestoreErrorCode.TABLE_CRITICAL,
                        f"Critical error restoring table {table.name}: {exc.message}",
                        kind=RestoreErrorKind.CRITICAL_DATA,
                    ) from exc
                if exc.kind == SqlErrorKind.TRANSIENT and should_retry(table.attempts, self._item_max_retries):
                    table.attempts += 1
                    status.db_queue.append(table)
                    logger.warning("table_restore_requeued", table=table.name, attempt=table.attempts, error=exc.message)
                    continue
                status.tables_failed += 1
                status.errors.append(RestoreIssue(table=table.name, message=exc.message, type=exc.kind.value))
                logger.warning("table_restore_failed", table=table.name, kind=exc.kind.value, error=exc.message)
                continue

            status.tables_processed += 1
            status.db_processed_size += table.size
            status.sync_processed_size()
            batch_bytes += table.size
            update_database_progress(status)

        duration = self._clock() - batch_start
        record_batch_speed(status, batch_bytes=batch_bytes, duration=duration, phase="database")
        record_batch_metrics(
            status,
            duration=duration,
            batch_bytes=batch_bytes,
            batch_items=batch_items,
            memory_usage=self._monitor.memory_usage(),
            memory_ratio=self._monitor.memory_ratio(),
        )
        status.message = database_progress_message(status)

        if not status.db_queue:
            status.current_table = ""
            status.phase = RestorePhase.FILES if status.has_files else RestorePhase.CLEANUP
            status.message = next_phase_message(status)
            logger.info(
                "database_phase_complete",
                tables_processed=status.tables_processed,
                tables_failed=status.tables_failed,
            )
        return status

    def _iter_table_statements(self, table: TableItem) -> Iterator[str]:
        if table.offset is None:
            yield from iter_sql_statements(table.file)
            return
        if table.preamble_length > 0:
            yield from iter_sql_statements(table.file, offset=0, length=table.preamble_length)
        yield from iter_sql_statements(table.file, offset=table.offset, length=table.length)

    def restore_table(self, table: TableItem) -> int:
        if not Path(table.file).is_file():
            raise SqlExecutionError(f"SQL file not found: {table.file}", kind=SqlErrorKind.CRITICAL)

        statement: str | None = None
        try:
            with self._engine.connect() as conn:
                try:
                    with conn.begin():
                        _set_foreign_key_checks(conn, enabled=False)
                        for statement in self._iter_table_statements(table):
                            conn.exec_driver_sql(statement, execution_options={"no_parameters": True})
                        statement = None
                        if not _table_exists(conn, table.name):
                            raise SqlExecutionError(
                                f"Table {table.name} does not exist after restore",
                                kind=SqlErrorKind.CRITICAL,
                            )
                        row_count = _count_rows(conn, table.name)
                finally:
                    self._enable_foreign_key_checks(conn)
        except SqlExecutionError:
            raise
        except (SQLAlchemyError, OSError, UnicodeError) as exc:
            raise to_sql_execution_error(exc, statement=statement) from exc

        logger.info("table_restored", table=table.name, rows=row_count)
        return row_count

    def _enable_foreign_key_checks(self, conn: Connection) -> None:
        try:
            _set_foreign_key_checks(conn, enabled=True)
            conn.commit()
        except SQLAlchemyError as exc:
            logger.warning("foreign_key_checks_restore_failed", error=str(exc))
