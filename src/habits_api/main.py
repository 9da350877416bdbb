import logging

from dateutil.relativedelta import relativedelta
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .errors import NotFoundError, RefreshError, StoreError
from .logging_setup import configure_logging
from .routers import maintenance as maintenance_router
from .routers import recurrences as recurrences_router
from .routers import todos as todos_router
from .schemas import ClientConfigOut
from .settings import get_settings
from .utils import today

logger = logging.getLogger(__name__)

openapi_tags = [
    {"name": "health", "description": "Service health and status endpoints."},
    {"name": "todos", "description": "One-off and materialized recurring todo instances."},
    {"name": "recurrences", "description": "Recurrence patterns: create, edit series, cascading delete."},
    {
        "name": "maintenance",
        "description": "Refresh of recurring instances, orphan detection and repair, completion stats.",
    },
]

_settings = get_settings()
configure_logging(_settings.log_level)

app = FastAPI(
    title="Habits Backend",
    description="Habit and todo tracker API with recurring-todo materialization and consistency checks.",
    version="0.1.0",
    openapi_tags=openapi_tags,
)

allow_all = (_settings.cors_allow_origins == ["*"]) or (len(_settings.cors_allow_origins) == 0)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if allow_all else _settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _validation_body(errors) -> dict:
    return {
        "error": "ValidationError",
        "message": "Request validation failed",
        "detail": errors,
    }


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Return a consistent JSON structure for request validation errors.

    Response format:
        {
            "error": "ValidationError",
            "detail": [... pydantic/fastapi error details ...],
            "message": "Request validation failed"
        }
    """
    return JSONResponse(status_code=422, content=_validation_body(jsonable_encoder(exc.errors())))


@app.exception_handler(ValidationError)
async def model_validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content=_validation_body(exc.errors(include_url=False, include_context=False, include_input=False)),
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": f"{exc.kind} not found"})


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"error": "StoreError", "message": f"Failed to {exc.action} todos", "detail": str(exc)},
    )


@app.exception_handler(RefreshError)
async def refresh_error_handler(request: Request, exc: RefreshError) -> JSONResponse:
    failed = [r.pattern_id for r in exc.outcome.failures] if exc.outcome is not None else []
    return JSONResponse(
        status_code=502,
        content={
            "error": "RefreshError",
            "message": "Failed to refresh recurring todos",
            "detail": str(exc.first_error),
            "failed_patterns": failed,
        },
    )


# PUBLIC_INTERFACE
@app.get("/", summary="Health Check", tags=["health"])
def health_check():
    """
    Health check endpoint.

    Returns:
        A JSON object indicating service health.
    """
    return {"message": "Healthy", "backend": _settings.persistence_backend}


# PUBLIC_INTERFACE
@app.get("/api/v1/config", response_model=ClientConfigOut, summary="Client Config", tags=["health"])
def client_config() -> ClientConfigOut:
    """
    Presentation policy for the UI: how far ahead the calendar may navigate.
    The backend itself does not clamp windows.
    """
    current = today()
    months = get_settings().navigation_months_ahead
    last_month = current.replace(day=1) + relativedelta(months=months)
    return ClientConfigOut(
        today=current.isoformat(),
        navigation_months_ahead=months,
        last_navigable_month=last_month.isoformat(),
    )


app.include_router(todos_router.router)
app.include_router(recurrences_router.router)
app.include_router(maintenance_router.router)
