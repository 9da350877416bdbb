from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query

from ..auth import get_basic_auth_dependency
from ..schemas import (
    DailyStatOut,
    OrphanFixOut,
    OrphanFixRequest,
    OrphanGroupOut,
    OrphanReportOut,
    PatternRefreshOut,
    RecurringStatOut,
    RefreshOut,
    TodoOut,
    Window,
)
from ..services import TodoService, get_service

router = APIRouter(
    prefix="/api/v1/users/{user_id}",
    tags=["maintenance"],
    dependencies=[Depends(get_basic_auth_dependency())],
)


def _window(start: str, end: str) -> Window:
    # Raises pydantic.ValidationError, rendered as 422 by the app handler.
    return Window(start=start, end=end)


# PUBLIC_INTERFACE
@router.post(
    "/refresh",
    response_model=RefreshOut,
    summary="Refresh Recurring Todos",
    description=(
        "Materialize missing occurrences of every recurrence pattern for the window. "
        "Patterns run independently; if any fails the call returns 502 after the others finish."
    ),
    responses={502: {"description": "At least one pattern failed to materialize"}},
)
async def refresh(user_id: str, window: Window, service: TodoService = Depends(get_service)) -> RefreshOut:
    outcome = await service.refresher.refresh(user_id, window.start, window.end)
    return RefreshOut(
        created=outcome.created,
        patterns=[PatternRefreshOut(pattern_id=r.pattern_id, name=r.name, created=r.created) for r in outcome.results],
    )


# PUBLIC_INTERFACE
@router.get(
    "/orphans",
    response_model=OrphanReportOut,
    summary="Find Orphaned Instances",
    description="List recurring instances whose recurrence pattern no longer exists, grouped by recurrence id.",
)
async def find_orphans(user_id: str, service: TodoService = Depends(get_service)) -> OrphanReportOut:
    report = await service.orphans.scan(user_id)
    groups = [
        OrphanGroupOut(recurrence_id=rid, count=len(items), instances=[TodoOut(**i) for i in items])
        for rid, items in report.groups.items()
    ]
    return OrphanReportOut(
        total_recurring=report.total_recurring,
        valid_pattern_count=report.valid_pattern_count,
        orphan_count=len(report.orphans),
        groups=groups,
    )


# PUBLIC_INTERFACE
@router.post(
    "/orphans/fix",
    response_model=OrphanFixOut,
    summary="Repair Orphaned Instances",
    description="Mark every orphan as a one-off todo, or delete them, in one atomic batch.",
)
async def fix_orphans(
    user_id: str, payload: OrphanFixRequest, service: TodoService = Depends(get_service)
) -> OrphanFixOut:
    affected = await service.orphans.fix_orphans(user_id, payload.action)
    return OrphanFixOut(action=payload.action, affected=affected)


# PUBLIC_INTERFACE
@router.get(
    "/stats/daily",
    response_model=List[DailyStatOut],
    summary="Daily Completion Stats",
    description="Per-day total and completed todo counts for a window (month grid).",
)
async def daily_stats(
    user_id: str,
    start: str = Query(..., description="First day (YYYY-MM-DD)"),
    end: str = Query(..., description="Last day (YYYY-MM-DD)"),
    service: TodoService = Depends(get_service),
) -> List[DailyStatOut]:
    window = _window(start, end)
    return [DailyStatOut(**s) for s in await service.daily_stats(user_id, window.start, window.end)]


# PUBLIC_INTERFACE
@router.get(
    "/stats/recurring",
    response_model=List[RecurringStatOut],
    summary="Recurring Habit Stats",
    description="Completion rate per recurring habit up to today, sorted by name.",
)
async def recurring_stats(
    user_id: str,
    start: str = Query(..., description="First day (YYYY-MM-DD)"),
    end: str = Query(..., description="Last day (YYYY-MM-DD)"),
    service: TodoService = Depends(get_service),
) -> List[RecurringStatOut]:
    window = _window(start, end)
    return [RecurringStatOut(**s) for s in await service.recurring_stats(user_id, window.start, window.end)]
