"""
Stats API Routes

Reads the signed-in session's aggregation engine. Nothing here computes
rollups on demand: the engine already holds the view for the latest
order snapshot.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.core import average_turnaround_hours
from app.schemas import EditorRollup, TeamSummary
from app.web.deps import require_signed_in, require_team_leader
from app.web.workspace import DeskSession


router = APIRouter(prefix="/api/stats", tags=["Stats API"])


class StatsResponse(BaseModel):
    state: str
    loading: bool
    error: Optional[str] = None
    emission_count: int
    rollups: list[EditorRollup]
    average_turnaround_hours: dict[str, float]


def _stats(session: DeskSession) -> StatsResponse:
    snapshot = session.engine.snapshot
    return StatsResponse(
        state=snapshot.state.value,
        loading=snapshot.loading,
        error=snapshot.error,
        emission_count=snapshot.emission_count,
        rollups=list(snapshot.rollups),
        average_turnaround_hours={r.email: average_turnaround_hours(r) for r in snapshot.rollups},
    )


@router.get("", response_model=StatsResponse)
async def get_stats(session: DeskSession = Depends(require_signed_in)):
    """Rollups in scope: every editor for the team leader, yourself otherwise."""
    return _stats(session)


@router.post("/refresh", response_model=StatsResponse)
async def refresh_stats(session: DeskSession = Depends(require_signed_in)):
    """Clear cached rollups and go back to loading until the next snapshot."""
    session.engine.refresh()
    return _stats(session)


@router.get("/summary", response_model=TeamSummary)
async def team_summary(session: DeskSession = Depends(require_team_leader)):
    """Dashboard totals across the team."""
    return session.engine.summary()
