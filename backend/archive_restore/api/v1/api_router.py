from fastapi import APIRouter

from archive_restore.api.v1.routes_health import router as health_router
from archive_restore.api.v1.routes_restore import router as restore_router

api_router = APIRouter()
api_router.include_router(restore_router)
api_router.include_router(health_router)
