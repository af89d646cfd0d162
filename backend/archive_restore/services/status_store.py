from __future__ import annotations

from collections.abc import Callable

import structlog
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from archive_restore.db.models import RestoreHistoryRow, RestoreStateRow
from archive_restore.schemas.restore import RestoreHistoryEntry, RestoreStatus

logger = structlog.get_logger(__name__)

CURRENT_KEY = "current"
DEFAULT_HISTORY_LIMIT = 50


class RestoreStatusStore:
    """Persists the live status document and the capped restore history.

    The status document is always rewritten whole; callers treat a loaded status as a
    value and save it back after mutating it.
    """

    def __init__(self, session_factory: Callable[[], Session], *, history_limit: int = DEFAULT_HISTORY_LIMIT):
        self._session_factory = session_factory
        self._history_limit = max(1, history_limit)

    def get_current(self) -> RestoreStatus | None:
        db = self._session_factory()
        try:
            row = db.get(RestoreStateRow, CURRENT_KEY)
            if row is None:
                return None
            return RestoreStatus.model_validate(row.payload_json)
        finally:
            db.close()

    def save(self, status: RestoreStatus) -> None:
        payload = status.model_dump(mode="json")
        db = self._session_factory()
        try:
            row = db.get(RestoreStateRow, CURRENT_KEY)
            if row is None:
                row = RestoreStateRow(key=CURRENT_KEY, restore_id=status.id, payload_json=payload)
            else:
                row.restore_id = status.id
                row.payload_json = payload
            db.add(row)
            db.commit()
        finally:
            db.close()

    def clear(self) -> None:
        db = self._session_factory()
        try:
            db.execute(delete(RestoreStateRow).where(RestoreStateRow.key == CURRENT_KEY))
            db.commit()
        finally:
            db.close()

    def add_history(self, entry: RestoreHistoryEntry) -> None:
        db = self._session_factory()
        try:
            db.add(
                RestoreHistoryRow(
                    restore_id=entry.id,
                    backup_id=entry.backup_id,
                    status=entry.status.value,
                    completed_at=entry.completed,
                    payload_json=entry.model_dump(mode="json"),
                )
            )
            db.flush()

            keep_ids = (
                db.execute(
                    select(RestoreHistoryRow.id)
                    .order_by(RestoreHistoryRow.completed_at.desc(), RestoreHistoryRow.id.desc())
                    .limit(self._history_limit)
                )
                .scalars()
                .all()
            )
            pruned = db.execute(delete(RestoreHistoryRow).where(RestoreHistoryRow.id.not_in(keep_ids))).rowcount
            db.commit()
        finally:
            db.close()
        if pruned:
            logger.info("restore_history_pruned", removed=pruned, limit=self._history_limit)

    def list_history(self, limit: int | None = None) -> list[RestoreHistoryEntry]:
        db = self._session_factory()
        try:
            stmt = select(RestoreHistoryRow).order_by(
                RestoreHistoryRow.completed_at.desc(), RestoreHistoryRow.id.desc()
            )
            stmt = stmt.limit(limit or self._history_limit)
            rows = db.execute(stmt).scalars().all()
            return [RestoreHistoryEntry.model_validate(row.payload_json) for row in rows]
        finally:
            db.close()
