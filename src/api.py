"""
api.py

REST API layer for the Project Budget, Earned-Value & Cost-Derivation engine.

Framework : FastAPI
Auth      : Authentication is handled upstream.  The acting user's UUID is
            read from the optional `X-User-Id` header by get_current_user and
            falls back to SYSTEM_USER_ID; every mutating endpoint passes it to
            the relevant use case command.

Structure
---------
  Routers (all prefixed under /api/v1)
  ├── /projects/{project_id}/budget                  summary (baseline, actuals, variance, EV)
  │   ├── /policy                                    effective budget policy
  │   ├── /baselines                                 version history / create draft
  │   ├── /actuals                                   record actual cost
  │   └── /cost-suggestion                           derived cost vs. recorded actuals
  ├── /budget/baselines/{baseline_id}                read / update / delete draft
  │   └── /approve                                   approve draft
  └── /budget/actuals/{actual_id}                    read / update / delete actual

Error handling
--------------
  NotFoundError                → 404
  InvalidStateError            → 409
  ConcurrentModificationError  → 409  (includes ApprovalConflictError)
  ValidationError              → 422
  ApplicationError             → 422
  ValueError                   → 422
  ConfigurationError           → 503
  Unhandled                    → 500 (FastAPI default)

Response envelope
-----------------
  Success  : { "data": <payload> }
  Error    : { "detail": "<message>" }

Running
-------
  uvicorn api:app --reload
"""

from __future__ import annotations

import dataclasses
import logging
import uuid
from datetime import date
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Path, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_mcp import FastApiMCP
from pydantic import BaseModel, Field, field_validator

from application import (
    # Exceptions
    ApplicationError,
    ConcurrentModificationError,
    NotFoundError,
    # Use-case commands
    AddActualCommand,
    ApproveBaselineCommand,
    CreateBaselineCommand,
    DeleteActualCommand,
    DeleteBaselineCommand,
    GetCostSuggestionQuery,
    UpdateActualCommand,
    UpdateBaselineCommand,
    # Use-case classes
    AddActualUseCase,
    ApproveBaselineUseCase,
    CreateBaselineUseCase,
    DeleteActualUseCase,
    DeleteBaselineUseCase,
    GetActualUseCase,
    GetBaselineUseCase,
    GetBudgetSummaryUseCase,
    GetCostSuggestionUseCase,
    GetEffectivePolicyUseCase,
    ListBaselinesUseCase,
    UpdateActualUseCase,
    UpdateBaselineUseCase,
    AbstractUnitOfWork,
)
from config import ConfigurationError
from infrastructure import InMemoryUnitOfWork
from model import ActualCostSource
from service import InvalidStateError, ValidationError

logger = logging.getLogger(__name__)

# Acting user when the caller does not identify one
SYSTEM_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")


# ---------------------------------------------------------------------------
# App bootstrap
# ---------------------------------------------------------------------------

tags_metadata = [
    {
        "name": "Health",
        "description": "Liveness probe.",
    },
    {
        "name": "Budget Summary",
        "description": (
            "Current baseline, recorded actuals, baseline-vs-actual variance and "
            "earned-value metrics with forecast status, plus the effective policy."
        ),
    },
    {
        "name": "Baselines",
        "description": (
            "Versioned budget baselines.  A baseline is created as DRAFT, may be "
            "edited or deleted only while DRAFT, and on approval supersedes the "
            "project's previously approved baseline."
        ),
    },
    {
        "name": "Actuals",
        "description": "Actual cost entries per period.  Freely created, edited and deleted.",
    },
    {
        "name": "Cost Derivation",
        "description": (
            "Advisory cost estimate derived from weekly resource allocations, "
            "compared against the actuals recorded for the same period."
        ),
    },
]

app = FastAPI(
    title="Project Budget & Earned Value API",
    version="1.0.0",
    description=(
        "REST API for project budget baselines, actual costs, earned-value "
        "metrics, forecast classification and resource-derived cost suggestions."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=tags_metadata,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------

@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidStateError)
async def invalid_state_handler(request, exc: InvalidStateError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ConcurrentModificationError)
async def conflict_handler(request, exc: ConcurrentModificationError):
    logger.info("Write conflict on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_error_handler(request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ApplicationError)
async def application_error_handler(request, exc: ApplicationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request, exc: ConfigurationError):
    logger.error("Configuration error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_uow() -> AbstractUnitOfWork:
    """Returns the in-memory Unit of Work (no database required)."""
    return InMemoryUnitOfWork()


def get_current_user(x_user_id: Optional[uuid.UUID] = Header(default=None)) -> uuid.UUID:
    """Acting user's UUID from the X-User-Id header, or the system user."""
    return x_user_id or SYSTEM_USER_ID


# ---------------------------------------------------------------------------
# Envelope helper
# ---------------------------------------------------------------------------

def _ok(data: Any) -> Dict:
    """Wrap a DTO or list of DTOs in the standard success envelope."""
    if dataclasses.is_dataclass(data):
        return {"data": dataclasses.asdict(data)}
    if isinstance(data, list):
        return {
            "data": [
                dataclasses.asdict(item) if dataclasses.is_dataclass(item) else item
                for item in data
            ]
        }
    return {"data": data}


# ===========================================================================
# REQUEST BODY SCHEMAS  (Pydantic v2)
# ===========================================================================

def _non_negative_amounts(v: Optional[Dict[str, float]]) -> Optional[Dict[str, float]]:
    if v is None:
        return v
    negative = sorted(k for k, amount in v.items() if amount < 0)
    if negative:
        raise ValueError(f"category amounts must not be negative: {negative}")
    return v


# ---------------------------------------------------------------------------
# Baseline schemas
# ---------------------------------------------------------------------------

class CreateBaselineRequest(BaseModel):
    baseline_total: float = Field(..., gt=0)
    baseline_by_category: Dict[str, float] = Field(default_factory=dict)

    @field_validator("baseline_by_category")
    @classmethod
    def validate_categories(cls, v):
        return _non_negative_amounts(v)


class UpdateBaselineRequest(BaseModel):
    baseline_total: Optional[float] = Field(default=None, gt=0)
    baseline_by_category: Optional[Dict[str, float]] = None

    @field_validator("baseline_by_category")
    @classmethod
    def validate_categories(cls, v):
        return _non_negative_amounts(v)


# ---------------------------------------------------------------------------
# Actual cost schemas
# ---------------------------------------------------------------------------

class AddActualRequest(BaseModel):
    period_start: date
    period_end: date
    actual_total: float = Field(..., gt=0)
    actual_by_category: Dict[str, float] = Field(default_factory=dict)
    source: str = Field(default=ActualCostSource.MANUAL.value, description="MANUAL or DERIVED")

    @field_validator("actual_by_category")
    @classmethod
    def validate_categories(cls, v):
        return _non_negative_amounts(v)

    @field_validator("source")
    @classmethod
    def validate_source(cls, v: str) -> str:
        valid = {s.value for s in ActualCostSource}
        if v not in valid:
            raise ValueError(f"source must be one of: {sorted(valid)}")
        return v


class UpdateActualRequest(BaseModel):
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    actual_total: Optional[float] = Field(default=None, gt=0)
    actual_by_category: Optional[Dict[str, float]] = None

    @field_validator("actual_by_category")
    @classmethod
    def validate_categories(cls, v):
        return _non_negative_amounts(v)


# ===========================================================================
# ROUTERS
# ===========================================================================

api_v1 = APIRouter(prefix="/api/v1")


# ---------------------------------------------------------------------------
# Project budget
# ---------------------------------------------------------------------------

project_budget_router = APIRouter(
    prefix="/projects/{project_id}/budget",
)


@project_budget_router.get(
    "",
    tags=["Budget Summary"],
    summary="Budget summary: current baseline, actuals, variance and earned value",
)
def get_budget_summary(
    project_id: uuid.UUID = Path(...),
    as_of: Optional[date] = Query(default=None, description="Planned-value date for SPI"),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    The current baseline is the APPROVED one, or the most recent DRAFT when
    nothing has been approved yet.  `ev` is null when there is no baseline or
    percent complete is unknown.
    """
    result = GetBudgetSummaryUseCase().execute(project_id, uow, as_of=as_of)
    return _ok(result)


@project_budget_router.get(
    "/policy",
    tags=["Budget Summary"],
    summary="Effective budget policy for a project",
)
def get_effective_policy(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    result = GetEffectivePolicyUseCase().execute(project_id, uow)
    return _ok(result)


@project_budget_router.get(
    "/baselines",
    tags=["Baselines"],
    summary="List all baseline versions for a project",
)
def list_baselines(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    result = ListBaselinesUseCase().execute(project_id, uow)
    return _ok(result)


@project_budget_router.post(
    "/baselines",
    status_code=status.HTTP_201_CREATED,
    tags=["Baselines"],
    summary="Create a DRAFT baseline with the next version number",
)
def create_baseline(
    body: CreateBaselineRequest,
    project_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = CreateBaselineCommand(
        project_id=project_id,
        baseline_total=body.baseline_total,
        baseline_by_category=body.baseline_by_category,
        acting_user_id=current_user_id,
    )
    result = CreateBaselineUseCase().execute(cmd, uow)
    return _ok(result)


@project_budget_router.post(
    "/actuals",
    status_code=status.HTTP_201_CREATED,
    tags=["Actuals"],
    summary="Record an actual cost for a period",
)
def add_actual(
    body: AddActualRequest,
    project_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = AddActualCommand(
        project_id=project_id,
        period_start=body.period_start,
        period_end=body.period_end,
        actual_total=body.actual_total,
        actual_by_category=body.actual_by_category,
        source=ActualCostSource(body.source),
        acting_user_id=current_user_id,
    )
    result = AddActualUseCase().execute(cmd, uow)
    return _ok(result)


@project_budget_router.get(
    "/cost-suggestion",
    tags=["Cost Derivation"],
    summary="Derive a cost suggestion from resource allocations for a period",
)
def get_cost_suggestion(
    project_id: uuid.UUID = Path(...),
    period_start: date = Query(...),
    period_end: date = Query(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    Returns `available: false` with a reason when the project's policy is
    MANUAL_ONLY.  Otherwise returns the weekly breakdown and a comparison of
    the derived total against the actuals recorded for the same period.
    """
    query = GetCostSuggestionQuery(
        project_id=project_id,
        period_start=period_start,
        period_end=period_end,
    )
    result = GetCostSuggestionUseCase().execute(query, uow)
    return _ok(result)


# ---------------------------------------------------------------------------
# Baselines by id
# ---------------------------------------------------------------------------

baseline_router = APIRouter(prefix="/budget/baselines", tags=["Baselines"])


@baseline_router.get(
    "/{baseline_id}",
    summary="Get a baseline by ID",
)
def get_baseline(
    baseline_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    result = GetBaselineUseCase().execute(baseline_id, uow)
    return _ok(result)


@baseline_router.patch(
    "/{baseline_id}",
    summary="Update a DRAFT baseline",
)
def update_baseline(
    body: UpdateBaselineRequest,
    baseline_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = UpdateBaselineCommand(
        baseline_id=baseline_id,
        baseline_total=body.baseline_total,
        baseline_by_category=body.baseline_by_category,
        acting_user_id=current_user_id,
    )
    result = UpdateBaselineUseCase().execute(cmd, uow)
    return _ok(result)


@baseline_router.post(
    "/{baseline_id}/approve",
    summary="Approve a DRAFT baseline, superseding the current approved one",
)
def approve_baseline(
    baseline_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    Fails with 409 if the baseline is not DRAFT or if another approval for the
    same project completed first; re-read the baselines and retry.
    """
    cmd = ApproveBaselineCommand(baseline_id=baseline_id, acting_user_id=current_user_id)
    result = ApproveBaselineUseCase().execute(cmd, uow)
    return _ok(result)


@baseline_router.delete(
    "/{baseline_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a DRAFT baseline",
)
def delete_baseline(
    baseline_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = DeleteBaselineCommand(baseline_id=baseline_id, acting_user_id=current_user_id)
    DeleteBaselineUseCase().execute(cmd, uow)


# ---------------------------------------------------------------------------
# Actuals by id
# ---------------------------------------------------------------------------

actual_router = APIRouter(prefix="/budget/actuals", tags=["Actuals"])


@actual_router.get(
    "/{actual_id}",
    summary="Get an actual cost entry by ID",
)
def get_actual(
    actual_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    result = GetActualUseCase().execute(actual_id, uow)
    return _ok(result)


@actual_router.patch(
    "/{actual_id}",
    summary="Update an actual cost entry",
)
def update_actual(
    body: UpdateActualRequest,
    actual_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = UpdateActualCommand(
        actual_id=actual_id,
        period_start=body.period_start,
        period_end=body.period_end,
        actual_total=body.actual_total,
        actual_by_category=body.actual_by_category,
        acting_user_id=current_user_id,
    )
    result = UpdateActualUseCase().execute(cmd, uow)
    return _ok(result)


@actual_router.delete(
    "/{actual_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete an actual cost entry",
)
def delete_actual(
    actual_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = DeleteActualCommand(actual_id=actual_id, acting_user_id=current_user_id)
    DeleteActualUseCase().execute(cmd, uow)


# ===========================================================================
# ROUTER REGISTRATION
# ===========================================================================

api_v1.include_router(project_budget_router)
api_v1.include_router(baseline_router)
api_v1.include_router(actual_router)

app.include_router(api_v1)


# ===========================================================================
# HEALTH CHECK
# ===========================================================================

@app.get("/health", tags=["Health"], summary="Service health check")
def health():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# MCP Server: exposes all API routes as MCP tools
# Accessible at: http://localhost:8000/mcp
# ---------------------------------------------------------------------------
mcp = FastApiMCP(app)
mcp.mount()
