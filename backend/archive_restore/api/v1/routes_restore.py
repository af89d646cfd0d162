from fastapi import APIRouter, Depends, HTTPException, Query

from archive_restore.core.auth import require_restore_token
from archive_restore.core.config import get_settings
from archive_restore.db.session import SessionLocal
from archive_restore.schemas.common import ErrorDetail
from archive_restore.schemas.restore import (
    BackupDescriptor,
    RestoreCancelResponse,
    RestoreHistoryResponse,
    RestoreStatus,
)
from archive_restore.services.restore_errors import RestoreError, RestoreErrorCode, RestoreErrorKind
from archive_restore.services.restore_orchestrator import RestoreOrchestrator, build_orchestrator

router = APIRouter(prefix="/restores", dependencies=[Depends(require_restore_token)])

_KIND_STATUS = {
    RestoreErrorKind.CONFIGURATION: 400,
    RestoreErrorKind.CONNECTIVITY: 502,
    RestoreErrorKind.PERMISSION: 422,
    RestoreErrorKind.EXTRACTION: 422,
    RestoreErrorKind.CRITICAL_DATA: 422,
    RestoreErrorKind.ITEM: 422,
    RestoreErrorKind.STATE: 409,
}


def get_orchestrator() -> RestoreOrchestrator:
    return build_orchestrator(get_settings(), SessionLocal)


def _http_error(exc: RestoreError) -> HTTPException:
    status_code = 404 if exc.code == RestoreErrorCode.NOT_FOUND else _KIND_STATUS.get(exc.kind, 500)
    detail = ErrorDetail(code=exc.code, message=exc.message, kind=exc.kind.value)
    return HTTPException(status_code=status_code, detail=detail.model_dump())


def _enqueue_step() -> None:
    from archive_restore.worker.tasks_restore import process_restore_step_task

    process_restore_step_task.apply_async(countdown=get_settings().restore_step_interval_seconds)


@router.post("", response_model=RestoreStatus, status_code=201)
def start_restore(
    payload: BackupDescriptor,
    orchestrator: RestoreOrchestrator = Depends(get_orchestrator),
) -> RestoreStatus:
    try:
        status = orchestrator.start_restore(payload)
    except RestoreError as exc:
        raise _http_error(exc) from exc
    if get_settings().restore_use_worker:
        _enqueue_step()
    return status


@router.get("/current", response_model=RestoreStatus)
def get_current_restore(orchestrator: RestoreOrchestrator = Depends(get_orchestrator)) -> RestoreStatus:
    status = orchestrator.store.get_current()
    if status is None:
        raise _http_error(
            RestoreError(RestoreErrorCode.NOT_FOUND, "No restore in progress", kind=RestoreErrorKind.STATE)
        )
    return status


@router.post("/current/step", response_model=RestoreStatus)
def process_restore_step(orchestrator: RestoreOrchestrator = Depends(get_orchestrator)) -> RestoreStatus:
    try:
        return orchestrator.process_next_step()
    except RestoreError as exc:
        raise _http_error(exc) from exc


@router.post("/current/cancel", response_model=RestoreCancelResponse)
def cancel_restore(orchestrator: RestoreOrchestrator = Depends(get_orchestrator)) -> RestoreCancelResponse:
    try:
        if get_settings().restore_use_worker:
            # the worker owns the status document; it tears down on its next step
            status = orchestrator.request_cancel()
            message = "Cancel requested"
        else:
            status = orchestrator.cancel_restore()
            message = status.message
    except RestoreError as exc:
        raise _http_error(exc) from exc
    return RestoreCancelResponse(restore_id=status.id, status=status.status, message=message)


@router.get("/history", response_model=RestoreHistoryResponse)
def get_restore_history(
    limit: int = Query(20, ge=1, le=200),
    orchestrator: RestoreOrchestrator = Depends(get_orchestrator),
) -> RestoreHistoryResponse:
    return RestoreHistoryResponse(items=orchestrator.store.list_history(limit=limit))
