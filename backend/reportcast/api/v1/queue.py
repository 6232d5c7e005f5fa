"""Job queue statistics."""

from fastapi import APIRouter

from reportcast.api.v1.deps import EngineDep
from reportcast.core.security.auth import CurrentPrincipal
from reportcast.schemas.schedule import QueueStatsResponse

router = APIRouter()


@router.get("/stats", response_model=QueueStatsResponse)
async def queue_stats(principal: CurrentPrincipal, scheduling: EngineDep):
    stats = await scheduling.queue.stats()
    return QueueStatsResponse(**stats, scanner_state=scheduling.scanner.state.value)
