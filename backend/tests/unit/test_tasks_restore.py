import zipfile

import pytest

pytest.importorskip("celery")
sa = pytest.importorskip("sqlalchemy")

from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from archive_restore.db import models  # noqa: F401
from archive_restore.db.base import Base
from archive_restore.services.database_restore import DatabaseRestoreEngine
from archive_restore.services.file_restore import FileRestoreEngine
from archive_restore.services.restore_orchestrator import RestoreOrchestrator
from archive_restore.services.status_store import RestoreStatusStore
from archive_restore.services.transport import ConnectionConfig
from archive_restore.services.transport_local import LocalTransport
from archive_restore.worker import tasks_restore


@pytest.fixture()
def scheduled(tmp_path, monkeypatch):
    engine = sa.create_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    target = ConnectionConfig(method="local", path=str(tmp_path / "site"))

    def transport_factory():
        return LocalTransport(target)

    orchestrator = RestoreOrchestrator(
        RestoreStatusStore(sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)),
        transport_factory=transport_factory,
        database_engine=DatabaseRestoreEngine(sa.create_engine(f"sqlite:///{tmp_path / 'target.db'}")),
        file_engine=FileRestoreEngine(transport_factory, sleep=lambda _seconds: None),
        temp_root=tmp_path / "tmp",
        backup_root=tmp_path,
    )
    calls = []

    def fake_schedule():
        calls.append("step")
        return 0

    monkeypatch.setattr(tasks_restore, "build_orchestrator", lambda _settings, _factory: orchestrator)
    monkeypatch.setattr(tasks_restore, "_schedule_next_step", fake_schedule)
    return calls


def test_start_task_schedules_steps_until_terminal(tmp_path, scheduled):
    with zipfile.ZipFile(tmp_path / "nightly.zip", "w") as zf:
        zf.writestr("README.txt", "Backup type: Files\n")
        zf.writestr("files/index.html", "<html></html>")

    result = tasks_restore.start_restore_task.apply(args=({"id": "b1", "file": "nightly.zip"},)).get()
    assert result["status"] == "ok"
    assert scheduled == ["step"]

    result = tasks_restore.process_restore_step_task.apply().get()
    assert result["status"] == "completed"
    assert result["restore_id"].startswith("restore-")
    assert scheduled == ["step"]
    assert (tmp_path / "site" / "index.html").is_file()


def test_tasks_report_errors_without_raising(scheduled):
    result = tasks_restore.start_restore_task.apply(args=({"id": "b1", "file": "missing.zip"},)).get()
    assert result["status"] == "error"
    assert result["code"] == "BACKUP_NOT_FOUND"

    result = tasks_restore.process_restore_step_task.apply().get()
    assert result["status"] == "error"
    assert result["phase"] == "error"
    assert scheduled == []


def test_step_task_without_restore_is_skipped(scheduled):
    assert tasks_restore.process_restore_step_task.apply().get() == {"status": "skipped", "reason": "NOT_FOUND"}
