"""
model.py

Domain models for the Project Budget, Earned-Value & Cost-Derivation engine.

Entities
--------
- BudgetBaseline
- ActualCost

Policy (read-only input, resolved outside this engine)
------------------------------------------------------
- ForecastingRules
- ThresholdRules
- CostDerivationRules
- EffectiveBudgetPolicy

Collaborator records
--------------------
- AllocationRecord

Computed (never persisted)
--------------------------
- RateResolution
- WeekAllocationDetail
- WeeklyCostSlice
- DerivedCostSuggestion
- CostComparison
- VarianceResult
- EarnedValueMetrics
- BudgetSummary

All models use Python dataclasses for clean, framework-agnostic definitions.
UUID primary keys are used throughout for portability.
Timestamps are always stored in UTC.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class BaselineStatus(str, Enum):
    """
    Lifecycle status of a budget baseline.

    DRAFT       – Editable working copy; at most one per project.
    APPROVED    – The baseline actuals are measured against; at most one per project.
    SUPERSEDED  – A formerly approved baseline replaced by a newer approval. Read-only.
    """
    DRAFT = "DRAFT"
    APPROVED = "APPROVED"
    SUPERSEDED = "SUPERSEDED"


class ActualCostSource(str, Enum):
    """Origin of an actual cost entry."""
    MANUAL = "MANUAL"
    DERIVED = "DERIVED"


class EacFormula(str, Enum):
    AC_PLUS_REMAINING = "AC_PLUS_REMAINING"
    CPI_BASED = "CPI_BASED"


class CostDerivationMode(str, Enum):
    """
    MANUAL_ONLY – Actuals are only ever entered by hand; no suggestion is computed.
    HYBRID      – A derived suggestion is shown next to manual actuals.
    AUTO        – The derived suggestion is the expected source of actuals.
    """
    MANUAL_ONLY = "MANUAL_ONLY"
    HYBRID = "HYBRID"
    AUTO = "AUTO"


class CostFallbackBehavior(str, Enum):
    """What to do with an allocation line that has no cost rate at all."""
    SKIP = "SKIP"
    USE_ZERO = "USE_ZERO"


class RateSource(str, Enum):
    ALLOCATION_OVERRIDE = "allocation_override"
    RESOURCE_DEFAULT = "resource_default"
    FALLBACK_ZERO = "fallback_zero"


class ForecastStatus(str, Enum):
    """Forecast health, in increasing order of severity."""
    ON_TRACK = "ON_TRACK"
    WATCH = "WATCH"
    AT_RISK = "AT_RISK"
    CRITICAL = "CRITICAL"


class DeltaDirection(str, Enum):
    """Derived cost vs. recorded actuals for the same period."""
    ALIGNED = "ALIGNED"
    UNDER_REPORTED = "UNDER_REPORTED"   # recorded actuals understate derived cost
    OVER_REPORTED = "OVER_REPORTED"     # recorded actuals exceed derived cost


# ---------------------------------------------------------------------------
# Budget Entities
# ---------------------------------------------------------------------------


@dataclass
class BudgetBaseline:
    """
    A versioned budget plan for a project.

    A baseline is created as DRAFT and may be edited only while DRAFT.
    Approving it makes it the project's APPROVED baseline; whichever baseline
    was APPROVED before is marked SUPERSEDED in the same atomic step.
    SUPERSEDED baselines are never mutated again.

    `version_number`: strictly increasing per project, starting at 1.
    `row_version`:    optimistic concurrency counter, bumped on every save.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    project_id: uuid.UUID = field(default_factory=uuid.uuid4)
    baseline_total: float = 0.0
    baseline_by_category: Dict[str, float] = field(default_factory=dict)
    status: BaselineStatus = BaselineStatus.DRAFT
    version_number: int = 1

    # Approval
    approved_by_id: Optional[uuid.UUID] = None
    approved_at: Optional[datetime] = None

    # Supersession (set when a newer baseline is approved)
    superseded_at: Optional[datetime] = None
    superseded_by_user_id: Optional[uuid.UUID] = None

    # Metadata
    created_by_id: Optional[uuid.UUID] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_by_id: Optional[uuid.UUID] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    row_version: int = 0


@dataclass
class ActualCost:
    """
    A recorded actual spend for a period of a project.

    Actuals may be created, edited and deleted freely; overlapping periods
    are allowed and nothing is enforced across records.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    project_id: uuid.UUID = field(default_factory=uuid.uuid4)
    period_start: date = field(default_factory=date.today)
    period_end: date = field(default_factory=date.today)
    actual_total: float = 0.0
    actual_by_category: Dict[str, float] = field(default_factory=dict)
    source: ActualCostSource = ActualCostSource.MANUAL

    created_by_id: Optional[uuid.UUID] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_by_id: Optional[uuid.UUID] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ForecastingRules:
    eac_formula: EacFormula = EacFormula.AC_PLUS_REMAINING
    spi_enabled: bool = False
    forecast_update_frequency_days: int = 7


@dataclass(frozen=True)
class ThresholdRules:
    """All values are percentages (10.0 means 10%)."""
    cost_variance_warn_percent: float = 5.0
    cost_variance_block_percent: float = 15.0
    forecast_overrun_warn_percent: float = 10.0
    forecast_overrun_block_percent: float = 25.0


@dataclass(frozen=True)
class CostDerivationRules:
    mode: CostDerivationMode = CostDerivationMode.MANUAL_ONLY
    default_hours_per_week: float = 40.0
    cost_fallback_behavior: CostFallbackBehavior = CostFallbackBehavior.SKIP


@dataclass(frozen=True)
class EffectiveBudgetPolicy:
    """
    The budget policy in effect for one project.

    Hierarchy resolution (organization → workspace → project) happens outside
    this engine; every calculation receives the already-resolved policy.
    """
    forecasting_rules: ForecastingRules = field(default_factory=ForecastingRules)
    threshold_rules: ThresholdRules = field(default_factory=ThresholdRules)
    cost_derivation_rules: CostDerivationRules = field(default_factory=CostDerivationRules)


# ---------------------------------------------------------------------------
# Collaborator records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AllocationRecord:
    """One user's weekly allocation to a project, as supplied by the allocation provider."""
    user_id: uuid.UUID
    week_start: date
    allocation_percent: float
    availability_percent: float = 100.0
    rate_override: Optional[float] = None
    resource_default_rate: Optional[float] = None


# ---------------------------------------------------------------------------
# Computed values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RateResolution:
    """Resolved hourly rate and where it came from."""
    rate: float
    source: RateSource


@dataclass
class WeekAllocationDetail:
    user_id: uuid.UUID
    allocation_percent: float
    availability_percent: float
    effective_hours: float
    cost_per_hour: float
    line_cost: float
    rate_source: RateSource
    skipped: bool = False   # excluded from totals (no rate, SKIP policy)


@dataclass
class WeeklyCostSlice:
    week_start: date
    week_end: date
    allocations: List[WeekAllocationDetail] = field(default_factory=list)
    total_hours: float = 0.0
    total_cost: float = 0.0


@dataclass
class DerivedCostSuggestion:
    """
    Cost estimate derived from resource allocations for a period.

    When `available` is False no computation happened and `reason` says why
    (e.g. "manual-only"); every other field keeps its empty default.
    """
    project_id: uuid.UUID
    period_start: date
    period_end: date
    available: bool = True
    reason: Optional[str] = None
    derived_total: float = 0.0
    weekly_breakdown: List[WeeklyCostSlice] = field(default_factory=list)
    allocations_used: int = 0
    skipped_no_rate: int = 0
    policy: Optional[CostDerivationRules] = None


@dataclass(frozen=True)
class CostComparison:
    existing_actual_total: float
    derived_total: float
    delta: float
    delta_direction: DeltaDirection


@dataclass(frozen=True)
class VarianceResult:
    """`variance_total` is positive when the project is over budget."""
    variance_total: float
    variance_percent: Optional[float]


@dataclass(frozen=True)
class EarnedValueMetrics:
    bac: float
    ac: float
    ev: float
    eac: float
    etc: float
    cpi: Optional[float]
    spi: Optional[float]
    forecast_status: ForecastStatus


@dataclass
class BudgetSummary:
    """Read model combining the current baseline, actuals, variance and EVM."""
    project_id: uuid.UUID
    baseline: Optional[BudgetBaseline]
    actuals: List[ActualCost]
    total_actual: float
    variance_total: float
    variance_percent: Optional[float]
    ev: Optional[EarnedValueMetrics]
