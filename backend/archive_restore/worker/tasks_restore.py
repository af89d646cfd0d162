from __future__ import annotations

import structlog

from archive_restore.core.config import get_settings
from archive_restore.db.session import SessionLocal
from archive_restore.schemas.restore import BackupDescriptor
from archive_restore.services.restore_errors import RestoreError
from archive_restore.services.restore_orchestrator import build_orchestrator
from archive_restore.worker.celery_app import celery_app

logger = structlog.get_logger(__name__)


def _schedule_next_step() -> int:
    countdown = max(0, get_settings().restore_step_interval_seconds)
    process_restore_step_task.apply_async(countdown=countdown)
    return countdown


@celery_app.task(bind=True)
def start_restore_task(self, backup: dict):  # noqa: ANN201
    descriptor = BackupDescriptor.model_validate(backup)
    orchestrator = build_orchestrator(get_settings(), SessionLocal)
    try:
        status = orchestrator.start_restore(descriptor)
    except RestoreError as exc:
        logger.warning("start_restore_task_failed", backup_id=descriptor.id, code=exc.code, error=exc.message)
        return {"status": "error", "backup_id": descriptor.id, "code": exc.code, "message": exc.message}

    countdown = _schedule_next_step()
    return {"status": "ok", "restore_id": status.id, "next_step_in": countdown}


@celery_app.task(bind=True)
def process_restore_step_task(self):  # noqa: ANN201
    orchestrator = build_orchestrator(get_settings(), SessionLocal)
    try:
        status = orchestrator.process_next_step()
    except RestoreError as exc:
        logger.warning("process_restore_step_task_skipped", code=exc.code, error=exc.message)
        return {"status": "skipped", "reason": exc.code}

    if status.is_terminal:
        return {"status": status.status.value, "restore_id": status.id, "phase": status.phase.value}

    countdown = _schedule_next_step()
    return {
        "status": "ok",
        "restore_id": status.id,
        "phase": status.phase.value,
        "progress": round(status.progress, 1),
        "next_step_in": countdown,
    }
