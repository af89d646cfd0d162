from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from archive_restore.core.config import get_settings
from archive_restore.db.session import get_db
from archive_restore.schemas.common import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
def health_check(db: Session = Depends(get_db)) -> HealthResponse:
    settings = get_settings()
    db_status = "ok"
    try:
        db.execute(text("select 1"))
    except Exception:  # noqa: BLE001
        db_status = "error"

    dependencies = {"database": db_status}
    dependencies["installation_target"] = settings.installation_method or "unconfigured"
    dependencies["restore_worker"] = "enabled" if settings.restore_use_worker else "disabled"

    status = "ok"
    if any(value == "error" for value in dependencies.values()):
        status = "degraded"
    return HealthResponse(
        status=status,
        timestamp=datetime.now(tz=timezone.utc),
        dependencies=dependencies,
    )
