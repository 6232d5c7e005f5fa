"""API v1 module."""

from fastapi import APIRouter

from reportcast.api.v1.queue import router as queue_router
from reportcast.api.v1.schedules import router as schedules_router

router = APIRouter()

router.include_router(schedules_router, prefix="/schedules", tags=["Schedules"])
router.include_router(queue_router, prefix="/queue", tags=["Queue"])
