import time
from datetime import datetime, timedelta, timezone

import pytest

sa = pytest.importorskip("sqlalchemy")

from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from archive_restore.db.base import Base
from archive_restore.db import models  # noqa: F401
from archive_restore.schemas.restore import RestoreHistoryEntry, RestorePhase, RestoreState, RestoreStatus, TableItem
from archive_restore.services.status_store import RestoreStatusStore


def _session_factory():
    engine = sa.create_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def _status(restore_id: str = "restore-1") -> RestoreStatus:
    return RestoreStatus(
        id=restore_id,
        backup_id="backup-1",
        temp_dir="/tmp/restore-1",
        extract_dir="/tmp/restore-1/extract",
        backup_file="backup.zip",
        has_db=True,
        has_files=False,
        started=datetime.now(tz=timezone.utc),
        start_time=time.time(),
        phase=RestorePhase.DATABASE,
    )


def _entry(idx: int, base: datetime) -> RestoreHistoryEntry:
    return RestoreHistoryEntry(
        id=f"restore-{idx}",
        backup_id="backup-1",
        has_db=True,
        has_files=True,
        started=base + timedelta(minutes=idx),
        completed=base + timedelta(minutes=idx, seconds=30),
        duration=30,
        total_size=1024,
        speed=34.1,
        status=RestoreState.COMPLETED,
        files_processed=3,
        tables_processed=2,
        error_count=0,
    )


def test_status_round_trips_through_the_store():
    store = RestoreStatusStore(_session_factory())
    assert store.get_current() is None

    status = _status()
    status.db_queue = [TableItem(name="users", file="/tmp/restore-1/extract/database/users.sql", size=10)]
    store.save(status)

    status.tables_processed = 1
    status.db_queue = []
    store.save(status)

    loaded = store.get_current()
    assert loaded.id == "restore-1"
    assert loaded.tables_processed == 1
    assert loaded.db_queue == []
    assert loaded.phase == RestorePhase.DATABASE

    store.clear()
    assert store.get_current() is None


def test_history_is_capped_and_newest_first():
    store = RestoreStatusStore(_session_factory(), history_limit=3)
    base = datetime(2026, 10, 1, tzinfo=timezone.utc)
    for idx in range(5):
        store.add_history(_entry(idx, base))

    items = store.list_history()
    assert [item.id for item in items] == ["restore-4", "restore-3", "restore-2"]
    assert [item.id for item in store.list_history(limit=1)] == ["restore-4"]
