from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query, Response, status

from ..auth import get_basic_auth_dependency
from ..schemas import RecurrenceCreate, RecurrenceOut, RecurrenceUpdate
from ..services import TodoService, get_service

router = APIRouter(
    prefix="/api/v1/users/{user_id}/recurrences",
    tags=["recurrences"],
    dependencies=[Depends(get_basic_auth_dependency())],
)


# PUBLIC_INTERFACE
@router.post(
    "",
    response_model=RecurrenceOut,
    status_code=status.HTTP_201_CREATED,
    summary="Add Recurring Todo",
    description="Create a recurrence pattern and materialize its first day.",
    responses={
        201: {"description": "Recurrence created"},
        422: {"description": "Validation error (bad rule, weekly rule without weekdays, past start)"},
    },
)
async def create_recurrence(
    user_id: str, payload: RecurrenceCreate, service: TodoService = Depends(get_service)
) -> RecurrenceOut:
    pattern = await service.add_recurring_todo(
        user_id, payload.name, payload.rrule, starts_on=payload.starts_on  # type: ignore[arg-type]
    )
    return RecurrenceOut(**pattern)


# PUBLIC_INTERFACE
@router.get(
    "",
    response_model=List[RecurrenceOut],
    summary="List Recurrences",
    description="List the user's recurrence patterns, newest first.",
)
async def list_recurrences(user_id: str, service: TodoService = Depends(get_service)) -> List[RecurrenceOut]:
    return [RecurrenceOut(**p) for p in await service.list_patterns(user_id)]


# PUBLIC_INTERFACE
@router.get(
    "/{recurrence_id}",
    response_model=RecurrenceOut,
    summary="Get Recurrence",
    responses={
        200: {"description": "Recurrence found"},
        404: {"description": "Recurrence not found"},
    },
)
async def get_recurrence(
    user_id: str, recurrence_id: str, service: TodoService = Depends(get_service)
) -> RecurrenceOut:
    return RecurrenceOut(**await service.get_pattern(user_id, recurrence_id))


# PUBLIC_INTERFACE
@router.patch(
    "/{recurrence_id}",
    response_model=RecurrenceOut,
    summary="Edit Series",
    description=(
        "Edit name, rule or start of a series. Open instances dated on or after `from_date` "
        "(default today) are renamed, or re-generated when the rule or start changed."
    ),
    responses={
        200: {"description": "Series updated"},
        404: {"description": "Recurrence not found"},
    },
)
async def patch_recurrence(
    user_id: str, recurrence_id: str, payload: RecurrenceUpdate, service: TodoService = Depends(get_service)
) -> RecurrenceOut:
    updated = await service.edit_series(
        user_id,
        recurrence_id,
        name=payload.name,
        rrule=payload.rrule,
        starts_on=payload.starts_on,
        from_date=payload.from_date,
    )
    return RecurrenceOut(**updated)


# PUBLIC_INTERFACE
@router.delete(
    "/{recurrence_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete Recurrence",
    description=(
        "Delete a recurrence pattern. With `delete_instances=true` all of its instances are "
        "removed in the same atomic batch; otherwise they are kept and become orphans."
    ),
    responses={
        204: {"description": "Recurrence deleted"},
        404: {"description": "Recurrence not found"},
    },
)
async def delete_recurrence(
    user_id: str,
    recurrence_id: str,
    delete_instances: bool = Query(False, description="Also delete every instance of the series"),
    service: TodoService = Depends(get_service),
) -> Response:
    await service.delete_recurring_todo(user_id, recurrence_id, delete_instances)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
