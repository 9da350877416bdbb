from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from ..auth import get_basic_auth_dependency
from ..schemas import TodoCreate, TodoOut, TodoUpdate
from ..services import TodoService, get_service
from ..utils import format_date

router = APIRouter(
    prefix="/api/v1/users/{user_id}/todos",
    tags=["todos"],
    dependencies=[Depends(get_basic_auth_dependency())],
)


def _day_param(value: Optional[str], name: str) -> Optional[str]:
    if value is None:
        return None
    try:
        return format_date(value)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{name} must be YYYY-MM-DD") from e


# PUBLIC_INTERFACE
@router.post(
    "",
    response_model=TodoOut,
    status_code=status.HTTP_201_CREATED,
    summary="Add Todo",
    description="Create a one-off todo for a day (today or later).",
    responses={
        201: {"description": "Todo created successfully"},
        422: {"description": "Validation error"},
    },
)
async def create_todo(user_id: str, payload: TodoCreate, service: TodoService = Depends(get_service)) -> TodoOut:
    """
    Create a one-off todo.
    """
    created = await service.add_todo(user_id, payload.name, payload.date)
    return TodoOut(**created)


# PUBLIC_INTERFACE
@router.get(
    "",
    response_model=List[TodoOut],
    summary="List Todos",
    description=(
        "List todos for a day, or for an inclusive date range when `end` is given.\n\n"
        "Recurring todos are materialized for the window first unless `refresh=false`."
    ),
    responses={
        200: {"description": "List retrieved successfully"},
        400: {"description": "Invalid query parameters"},
    },
)
async def list_todos(
    user_id: str,
    start: str = Query(..., description="First day (YYYY-MM-DD)"),
    end: Optional[str] = Query(None, description="Last day (YYYY-MM-DD), inclusive"),
    refresh: bool = Query(True, description="Materialize recurring todos for the window first"),
    service: TodoService = Depends(get_service),
) -> List[TodoOut]:
    """
    List todos in a window.
    """
    start_day = _day_param(start, "start")
    end_day = _day_param(end, "end")
    if end_day is not None and end_day < start_day:  # type: ignore[operator]
        raise HTTPException(status_code=400, detail="end must not be before start")
    items = await service.list_todos(user_id, start_day, end_day, refresh=refresh)  # type: ignore[arg-type]
    return [TodoOut(**it) for it in items]


# PUBLIC_INTERFACE
@router.get(
    "/{todo_id}",
    response_model=TodoOut,
    summary="Get Todo",
    description="Get a single todo instance by ID.",
    responses={
        200: {"description": "Todo found"},
        404: {"description": "Todo not found"},
    },
)
async def get_todo(user_id: str, todo_id: str, service: TodoService = Depends(get_service)) -> TodoOut:
    """
    Retrieve a single todo instance.
    """
    return TodoOut(**await service.get_todo(user_id, todo_id))


# PUBLIC_INTERFACE
@router.patch(
    "/{todo_id}",
    response_model=TodoOut,
    summary="Update Todo",
    description="Toggle completion or edit the name/date of this instance only.",
    responses={
        200: {"description": "Todo updated"},
        404: {"description": "Todo not found"},
    },
)
async def patch_todo(
    user_id: str, todo_id: str, payload: TodoUpdate, service: TodoService = Depends(get_service)
) -> TodoOut:
    """
    Partial update of a todo instance.
    """
    if payload.model_fields_set == {"completed"} and payload.completed is not None:
        updated = await service.set_completed(user_id, todo_id, payload.completed)
    else:
        updated = await service.edit_instance(
            user_id, todo_id, name=payload.name, day=payload.date, completed=payload.completed
        )
    return TodoOut(**updated)


# PUBLIC_INTERFACE
@router.delete(
    "/{todo_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete Todo",
    description="Delete a single todo instance by ID. Its series, if any, is untouched.",
    responses={
        204: {"description": "Todo deleted"},
        404: {"description": "Todo not found"},
    },
)
async def delete_todo(user_id: str, todo_id: str, service: TodoService = Depends(get_service)) -> Response:
    """
    Delete a todo instance. Returns 204 on success, 404 if not found.
    """
    await service.delete_instance(user_id, todo_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
