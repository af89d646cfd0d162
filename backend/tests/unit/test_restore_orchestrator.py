import zipfile

import pytest

sa = pytest.importorskip("sqlalchemy")

from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from archive_restore.db import models  # noqa: F401
from archive_restore.db.base import Base
from archive_restore.schemas.restore import BackupDescriptor, RestorePhase, RestoreState
from archive_restore.services.database_restore import DatabaseRestoreEngine
from archive_restore.services.file_restore import FileRestoreEngine
from archive_restore.services.resource_monitor import StaticResourceMonitor
from archive_restore.services.restore_errors import RestoreError, RestoreErrorCode
from archive_restore.services.restore_orchestrator import RestoreOrchestrator, generate_restore_id
from archive_restore.services.status_store import RestoreStatusStore
from archive_restore.services.transport import ConnectionConfig
from archive_restore.services.transport_local import LocalTransport

README = "Backup type: Full\nBackup created on: 2026-10-01 03:00:00\n"


class _Clock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


def _store():
    engine = sa.create_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    return RestoreStatusStore(sessionmaker(bind=engine, autoflush=False, expire_on_commit=False))


def _backup(tmp_path, entries: dict[str, str], name: str = "backup.zip") -> BackupDescriptor:
    archive = tmp_path / "backups" / name
    archive.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(archive, "w") as zf:
        for entry, content in entries.items():
            zf.writestr(entry, content)
    return BackupDescriptor(id="backup-1", file=name)


def _orchestrator(tmp_path, store, *, target_path=None, speed: int = 5, clock=None) -> RestoreOrchestrator:
    target = ConnectionConfig(method="local", path=str(tmp_path / "site") if target_path is None else target_path)

    def transport_factory():
        return LocalTransport(target)

    db_engine = sa.create_engine(f"sqlite:///{tmp_path / 'target.db'}")
    monitor = StaticResourceMonitor()
    kwargs = {"clock": clock} if clock is not None else {}
    return RestoreOrchestrator(
        store,
        transport_factory=transport_factory,
        database_engine=DatabaseRestoreEngine(db_engine, monitor=monitor),
        file_engine=FileRestoreEngine(transport_factory, monitor=monitor, sleep=lambda _seconds: None),
        temp_root=tmp_path / "tmp",
        backup_root=tmp_path / "backups",
        speed=speed,
        monitor=monitor,
        **kwargs,
    )


def _drive(orchestrator: RestoreOrchestrator, limit: int = 30):
    for _ in range(limit):
        status = orchestrator.process_next_step()
        if status.is_terminal:
            return status
    raise AssertionError("restore did not finish")


FULL_BACKUP = {
    "README.txt": README,
    "database/users.sql": "CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT);\nINSERT INTO users VALUES (1, 'ann');\n",
    "files/a/b/f.txt": "hello",
    "files/index.html": "<html></html>",
}


def test_restore_id_format():
    restore_id = generate_restore_id()
    assert restore_id.startswith("restore-")
    assert len(restore_id.rsplit("-", 1)[1]) == 8


def test_full_restore_runs_to_completion(tmp_path):
    store = _store()
    orchestrator = _orchestrator(tmp_path, store)

    started = orchestrator.start_restore(_backup(tmp_path, FULL_BACKUP))
    assert started.phase == RestorePhase.DATABASE
    assert started.progress == 10
    assert started.has_db and started.has_files

    status = _drive(orchestrator)

    assert status.status == RestoreState.COMPLETED
    assert status.phase == RestorePhase.COMPLETED
    assert status.progress == 100
    assert status.message.startswith("Restore completed!")
    assert (tmp_path / "site" / "a" / "b" / "f.txt").read_text() == "hello"
    assert (tmp_path / "site" / "index.html").is_file()
    assert not (tmp_path / "tmp" / started.id).exists()
    with sa.create_engine(f"sqlite:///{tmp_path / 'target.db'}").connect() as conn:
        assert conn.exec_driver_sql("SELECT name FROM users").scalar() == "ann"

    assert store.get_current().status == RestoreState.COMPLETED
    history = store.list_history()
    assert [entry.id for entry in history] == [started.id]
    assert history[0].files_processed == 2
    assert history[0].tables_processed == 1
    assert history[0].error_count == 0


def test_restore_resumes_in_a_fresh_orchestrator(tmp_path):
    entries = {"README.txt": README, "database/users.sql": FULL_BACKUP["database/users.sql"]}
    entries.update({f"files/docs/file{idx:02d}.txt": f"body {idx}" for idx in range(45)})
    store = _store()
    first = _orchestrator(tmp_path, store, speed=2)
    first.start_restore(_backup(tmp_path, entries))

    status = first.process_next_step()
    assert not status.is_terminal

    second = _orchestrator(tmp_path, store, speed=2)
    status = _drive(second)

    assert status.status == RestoreState.COMPLETED
    assert status.actual_files_processed == 45
    assert len(list((tmp_path / "site" / "docs").iterdir())) == 45


def test_cancel_request_is_honored_on_next_step(tmp_path):
    store = _store()
    orchestrator = _orchestrator(tmp_path, store)
    started = orchestrator.start_restore(_backup(tmp_path, FULL_BACKUP))

    orchestrator.request_cancel()
    status = orchestrator.process_next_step()

    assert status.status == RestoreState.CANCELED
    assert store.get_current() is None
    assert not (tmp_path / "tmp" / started.id).exists()
    assert store.list_history()[0].status == RestoreState.CANCELED
    with pytest.raises(RestoreError) as info:
        orchestrator.request_cancel()
    assert info.value.code == RestoreErrorCode.NOT_FOUND


def test_second_start_is_rejected_while_running(tmp_path):
    store = _store()
    orchestrator = _orchestrator(tmp_path, store)
    orchestrator.start_restore(_backup(tmp_path, FULL_BACKUP))

    with pytest.raises(RestoreError) as info:
        orchestrator.start_restore(_backup(tmp_path, FULL_BACKUP, name="other.zip"))
    assert info.value.code == RestoreErrorCode.ALREADY_RUNNING


def test_unconfigured_target_fails_before_any_state_is_written(tmp_path):
    store = _store()
    orchestrator = _orchestrator(tmp_path, store, target_path="")

    with pytest.raises(RestoreError) as info:
        orchestrator.start_restore(_backup(tmp_path, FULL_BACKUP))

    assert info.value.code == RestoreErrorCode.CONFIG_INVALID
    assert store.get_current() is None


def test_backup_with_critical_errors_is_refused(tmp_path):
    store = _store()
    orchestrator = _orchestrator(tmp_path, store)
    backup = _backup(tmp_path, {**FULL_BACKUP, "README.txt": README + "Critical errors: 2\n"})

    with pytest.raises(RestoreError) as info:
        orchestrator.start_restore(backup)

    assert info.value.code == RestoreErrorCode.BACKUP_HAS_CRITICAL_ERRORS
    current = store.get_current()
    assert current.status == RestoreState.ERROR
    assert not (tmp_path / "tmp" / current.id).exists()
    assert store.list_history()[0].status == RestoreState.ERROR


def test_critical_table_error_fails_the_restore(tmp_path):
    store = _store()
    orchestrator = _orchestrator(tmp_path, store)
    backup = _backup(
        tmp_path,
        {
            "README.txt": README,
            "database/t1.sql": "CREATE TABLE t1 (id INTEGER);\n",
            "database/t2.sql": "CREATE TABLEE t2 (id INTEGER);\n",
            "database/t3.sql": "CREATE TABLE t3 (id INTEGER);\n",
        },
    )
    orchestrator.start_restore(backup)

    status = _drive(orchestrator)

    assert status.status == RestoreState.ERROR
    assert status.tables_processed == 1
    assert status.errors[-1].type == RestoreErrorCode.TABLE_CRITICAL
    assert "t3" not in sa.inspect(sa.create_engine(f"sqlite:///{tmp_path / 'target.db'}")).get_table_names()


def test_stalled_restore_is_resumed_from_saved_position(tmp_path):
    store = _store()
    clock = _Clock()
    orchestrator = _orchestrator(tmp_path, store, clock=clock)
    orchestrator.start_restore(_backup(tmp_path, FULL_BACKUP))

    clock.now += 301
    status = orchestrator.process_next_step()

    assert status.recovery_attempts == 1
    assert status.recovery_mode is False
    assert status.status == RestoreState.COMPLETED


def test_stalled_restore_gives_up_after_max_recoveries(tmp_path):
    store = _store()
    clock = _Clock()
    orchestrator = _orchestrator(tmp_path, store, clock=clock)
    orchestrator.start_restore(_backup(tmp_path, FULL_BACKUP))
    current = store.get_current()
    current.recovery_attempts = 3
    store.save(current)

    clock.now += 301
    status = orchestrator.process_next_step()

    assert status.status == RestoreState.ERROR
    assert status.errors[-1].type == RestoreErrorCode.STALLED
    assert store.list_history()[0].status == RestoreState.ERROR
