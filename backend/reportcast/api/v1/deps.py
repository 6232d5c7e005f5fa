"""Shared route dependencies."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from reportcast.engine import SchedulingEngine


def get_scheduling_engine(request: Request) -> SchedulingEngine:
    scheduling_engine = getattr(request.app.state, "engine", None)
    if scheduling_engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Scheduling engine is not running",
        )
    return scheduling_engine


EngineDep = Annotated[SchedulingEngine, Depends(get_scheduling_engine)]
