from time import perf_counter

import structlog
from fastapi import FastAPI
from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

from archive_restore.api.v1.api_router import api_router
from archive_restore.core.config import get_settings
from archive_restore.core.logging import configure_logging
from archive_restore.db.session import SessionLocal
from archive_restore.services.status_store import RestoreStatusStore

settings = get_settings()
configure_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(title=settings.app_name)
app.include_router(api_router, prefix=settings.api_prefix)

http_requests = Counter("http_requests_total", "Total HTTP requests")
http_request_duration_seconds = Histogram("http_request_duration_seconds", "HTTP request duration in seconds")
restore_progress_percent = Gauge("restore_progress_percent", "Progress of the current restore in percent")
restore_processed_bytes = Gauge("restore_processed_bytes", "Bytes restored by the current restore")
restore_failed_items = Gauge("restore_failed_items", "Failed tables and files in the current restore")
restore_active = Gauge("restore_active", "1 while a restore is in progress")


def _refresh_restore_metrics() -> None:
    status = RestoreStatusStore(SessionLocal).get_current()
    if status is None:
        restore_active.set(0)
        restore_progress_percent.set(0)
        restore_processed_bytes.set(0)
        restore_failed_items.set(0)
        return
    restore_active.set(0 if status.is_terminal else 1)
    restore_progress_percent.set(float(status.progress))
    restore_processed_bytes.set(float(status.processed_size))
    restore_failed_items.set(float(len(status.failed_files) + status.tables_failed))


@app.middleware("http")
async def metrics_middleware(request, call_next):  # noqa: ANN001, ANN201
    http_requests.inc()
    start = perf_counter()
    response = await call_next(request)
    http_request_duration_seconds.observe(perf_counter() - start)
    return response


@app.get("/metrics")
def metrics() -> Response:
    try:
        _refresh_restore_metrics()
    except Exception as exc:  # noqa: BLE001
        # metrics endpoint should stay available even when the state store is unavailable
        logger.warning("restore_metrics_refresh_failed", error=str(exc))
    return Response(generate_latest(), media_type="text/plain")
