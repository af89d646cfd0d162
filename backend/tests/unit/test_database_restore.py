import time
from datetime import datetime, timezone

import pytest

sa = pytest.importorskip("sqlalchemy")

from archive_restore.schemas.restore import RestorePhase, RestoreStatus
from archive_restore.services.database_restore import DatabaseRestoreEngine, build_table_queue, find_sql_files
from archive_restore.services.restore_errors import RestoreError, RestoreErrorCode, RestoreErrorKind


def _status(extract_dir, *, has_files: bool = False) -> RestoreStatus:
    return RestoreStatus(
        id="restore-test",
        backup_id="backup-1",
        temp_dir=str(extract_dir.parent),
        extract_dir=str(extract_dir),
        backup_file="backup.zip",
        has_db=True,
        has_files=has_files,
        started=datetime.now(tz=timezone.utc),
        start_time=time.time(),
        phase=RestorePhase.DATABASE,
    )


def _engine(tmp_path):
    return sa.create_engine(f"sqlite:///{tmp_path / 'target.db'}")


def _table_names(engine) -> set[str]:
    return set(sa.inspect(engine).get_table_names())


def test_per_table_files_restore_and_move_to_files_phase(tmp_path):
    extract = tmp_path / "extract"
    (extract / "database").mkdir(parents=True)
    (extract / "database" / "users.sql").write_text(
        "DROP TABLE IF EXISTS users;\n"
        "CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT);\n"
        "INSERT INTO users VALUES (1, 'semi;colon'), (2, 'it''s');\n",
        encoding="utf-8",
    )
    (extract / "database" / "posts.sql").write_text(
        "CREATE TABLE posts (id INTEGER PRIMARY KEY);\nINSERT INTO posts VALUES (1);\n", encoding="utf-8"
    )
    engine = _engine(tmp_path)
    status = _status(extract, has_files=True)

    DatabaseRestoreEngine(engine).process(status)

    assert status.tables_total == 2
    assert status.tables_processed == 2
    assert status.phase == RestorePhase.FILES
    assert status.progress == 50
    assert {"users", "posts"} <= _table_names(engine)
    with engine.connect() as conn:
        assert conn.exec_driver_sql("SELECT name FROM users WHERE id = 1").scalar() == "semi;colon"


def test_critical_error_stops_the_restore(tmp_path):
    extract = tmp_path / "extract"
    (extract / "database").mkdir(parents=True)
    (extract / "database" / "t1.sql").write_text("CREATE TABLE t1 (id INTEGER);\n", encoding="utf-8")
    (extract / "database" / "t2.sql").write_text("CREATE TABLEE t2 (id INTEGER);\n", encoding="utf-8")
    (extract / "database" / "t3.sql").write_text("CREATE TABLE t3 (id INTEGER);\n", encoding="utf-8")
    engine = _engine(tmp_path)
    status = _status(extract)

    with pytest.raises(RestoreError) as info:
        DatabaseRestoreEngine(engine).process(status)

    assert info.value.code == RestoreErrorCode.TABLE_CRITICAL
    assert info.value.kind == RestoreErrorKind.CRITICAL_DATA
    assert status.tables_processed == 1
    assert status.critical_errors[0].table == "t2"
    assert [item.name for item in status.db_queue] == ["t3"]
    assert "t3" not in _table_names(engine)


def test_data_error_is_recorded_and_the_loop_continues(tmp_path):
    extract = tmp_path / "extract"
    (extract / "database").mkdir(parents=True)
    (extract / "database" / "a.sql").write_text(
        "CREATE TABLE a (id INTEGER PRIMARY KEY, name TEXT NOT NULL);\nINSERT INTO a (id) VALUES (1);\n",
        encoding="utf-8",
    )
    (extract / "database" / "b.sql").write_text("CREATE TABLE b (id INTEGER);\n", encoding="utf-8")
    engine = _engine(tmp_path)
    status = _status(extract)

    DatabaseRestoreEngine(engine).process(status)

    assert status.tables_processed == 1
    assert status.tables_failed == 1
    assert status.errors[0].table == "a"
    assert status.errors[0].type == "data"
    assert status.phase == RestorePhase.CLEANUP


def test_combined_dump_is_split_per_table(tmp_path):
    extract = tmp_path / "extract"
    extract.mkdir()
    dump = extract / "backup.sql"
    dump.write_text(
        "-- combined dump\n"
        "DROP TABLE IF EXISTS `users`;\n"
        "CREATE TABLE `users` (id INTEGER PRIMARY KEY, name TEXT);\n"
        "INSERT INTO `users` VALUES (1, 'a');\n"
        "DROP TABLE IF EXISTS `posts`;\n"
        "CREATE TABLE `posts` (id INTEGER PRIMARY KEY);\n",
        encoding="utf-8",
    )

    files = find_sql_files(extract)
    tables, total_size = build_table_queue(files)
    assert [table.name for table in tables] == ["users", "posts"]
    assert total_size == dump.stat().st_size
    assert tables[0].size == tables[1].size == total_size / 2

    engine = _engine(tmp_path)
    status = _status(extract)
    DatabaseRestoreEngine(engine).process(status)
    assert status.tables_processed == 2
    assert status.db_processed_size == pytest.approx(total_size)


def test_no_sql_files_skips_the_phase(tmp_path):
    extract = tmp_path / "extract"
    extract.mkdir()
    status = _status(extract, has_files=True)

    DatabaseRestoreEngine(_engine(tmp_path)).process(status)

    assert status.db_initialized is True
    assert status.tables_total == 0
    assert status.phase == RestorePhase.FILES


def test_time_budget_applies_after_failed_tables(tmp_path):
    extract = tmp_path / "extract"
    (extract / "database").mkdir(parents=True)
    for name in ("a", "b", "c"):
        (extract / "database" / f"{name}.sql").write_text(
            f"CREATE TABLE {name} (id INTEGER PRIMARY KEY, name TEXT NOT NULL);\nINSERT INTO {name} (id) VALUES (1);\n",
            encoding="utf-8",
        )
    ticks = iter(range(0, 1000, 20))
    status = _status(extract)

    DatabaseRestoreEngine(_engine(tmp_path), clock=lambda: float(next(ticks)), max_step_seconds=10.0).process(status)

    assert status.tables_failed == 1
    assert len(status.db_queue) == 2
    assert status.phase == RestorePhase.DATABASE
