from celery import Celery

from archive_restore.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "archive_restore",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["archive_restore.worker.tasks_restore"],
)

celery_app.conf.update(
    task_acks_late=True,
    task_track_started=True,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    broker_connection_retry_on_startup=True,
    task_routes={
        "archive_restore.worker.tasks_restore.start_restore_task": {"queue": "restore"},
        "archive_restore.worker.tasks_restore.process_restore_step_task": {"queue": "restore"},
    },
)
