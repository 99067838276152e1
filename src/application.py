"""
application.py

Application layer for the Project Budget, Earned-Value & Cost-Derivation engine.

Overview
--------
The application layer sits between the presentation layer (API) and the
domain / service layer.  It is responsible for:

  1. Defining clean output DTOs (dataclasses) that carry only the data
     the presentation layer needs; no raw domain objects are leaked upward.
  2. Declaring abstract Repository and collaborator interfaces so that the
     application layer remains persistence-agnostic (implementations live
     in infrastructure.py).
  3. Declaring the UnitOfWork abstraction so that the repository mutations
     of one use case share a single transactional boundary.
  4. Implementing Use Case handlers, one class per exposed operation,
     that load state, call the pure services and persist the results.

Structure
---------
DTOs
    BaselineDTO, ActualCostDTO, EffectiveBudgetPolicyDTO
    WeekAllocationDetailDTO, WeeklyCostSliceDTO, DerivedCostSuggestionDTO
    CostComparisonDTO, CostSuggestionResultDTO
    EarnedValueDTO, BudgetSummaryDTO

Repository interfaces
    AbstractBaselineRepository
    AbstractActualCostRepository

Collaborator interfaces
    AbstractAllocationProvider
    AbstractPolicyResolver
    AbstractProgressProvider

Unit of Work
    AbstractUnitOfWork

Read model
    BudgetSummaryAssembler

Use Cases
    --- Summary ---
    GetBudgetSummaryUseCase
    GetEffectivePolicyUseCase

    --- Baselines ---
    CreateBaselineUseCase
    UpdateBaselineUseCase
    ApproveBaselineUseCase
    DeleteBaselineUseCase
    GetBaselineUseCase
    ListBaselinesUseCase

    --- Actuals ---
    AddActualUseCase
    UpdateActualUseCase
    DeleteActualUseCase
    GetActualUseCase

    --- Cost derivation ---
    GetCostSuggestionUseCase

Design notes
------------
- Use cases return DTOs only; no domain objects cross the application boundary.
- Each use case accepts a UnitOfWork as its sole dependency.
- All timestamps flowing out are ISO-8601 strings (UTC).
- Domain rule violations surface as ValidationError / InvalidStateError
  (from service.py); missing records as NotFoundError; lost concurrent
  writes as ConcurrentModificationError / ApprovalConflictError.
"""

from __future__ import annotations

import abc
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Dict, List, Optional

from config import get_config
from model import (
    ActualCost,
    ActualCostSource,
    AllocationRecord,
    BudgetBaseline,
    BudgetSummary,
    CostComparison,
    CostDerivationMode,
    DerivedCostSuggestion,
    EarnedValueMetrics,
    EffectiveBudgetPolicy,
)
from service import (
    ActualCostService,
    BaselineLifecycleService,
    CostComparisonEngine,
    CostDerivationEngine,
    EVMCalculator,
    VarianceCalculator,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ApplicationError(Exception):
    """Raised when a use case cannot complete."""


class NotFoundError(ApplicationError):
    """Raised when a requested entity does not exist."""


class ConcurrentModificationError(ApplicationError):
    """Raised when a record changed between being read and being written."""


class ApprovalConflictError(ConcurrentModificationError):
    """
    Raised when a baseline approval lost a race with another approval for the
    same project.  The caller should re-read state and retry.
    """


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 UTC string, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _fmt_date(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d else None


def _fmt_id(value: Optional[uuid.UUID]) -> Optional[str]:
    return str(value) if value else None


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

# ---------------------------------------------------------------------------
# Baseline / actual DTOs
# ---------------------------------------------------------------------------

@dataclass
class BaselineDTO:
    id: str
    project_id: str
    baseline_total: float
    baseline_by_category: Dict[str, float]
    status: str
    version_number: int
    approved_by_id: Optional[str]
    approved_at: Optional[str]
    superseded_at: Optional[str]
    superseded_by_user_id: Optional[str]
    created_by_id: Optional[str]
    created_at: str
    updated_by_id: Optional[str]
    updated_at: str


@dataclass
class ActualCostDTO:
    id: str
    project_id: str
    period_start: str
    period_end: str
    actual_total: float
    actual_by_category: Dict[str, float]
    source: str
    created_by_id: Optional[str]
    created_at: str
    updated_by_id: Optional[str]
    updated_at: str


# ---------------------------------------------------------------------------
# Policy DTOs
# ---------------------------------------------------------------------------

@dataclass
class ForecastingRulesDTO:
    eac_formula: str
    spi_enabled: bool
    forecast_update_frequency_days: int


@dataclass
class ThresholdRulesDTO:
    cost_variance_warn_percent: float
    cost_variance_block_percent: float
    forecast_overrun_warn_percent: float
    forecast_overrun_block_percent: float


@dataclass
class CostDerivationRulesDTO:
    mode: str
    default_hours_per_week: float
    cost_fallback_behavior: str


@dataclass
class EffectiveBudgetPolicyDTO:
    forecasting_rules: ForecastingRulesDTO
    threshold_rules: ThresholdRulesDTO
    cost_derivation_rules: CostDerivationRulesDTO


# ---------------------------------------------------------------------------
# Cost derivation DTOs
# ---------------------------------------------------------------------------

@dataclass
class WeekAllocationDetailDTO:
    user_id: str
    allocation_percent: float
    availability_percent: float
    effective_hours: float
    cost_per_hour: float
    line_cost: float
    rate_source: str
    skipped: bool


@dataclass
class WeeklyCostSliceDTO:
    week_start: str
    week_end: str
    allocations: List[WeekAllocationDetailDTO]
    total_hours: float
    total_cost: float


@dataclass
class DerivedCostSuggestionDTO:
    project_id: str
    period_start: str
    period_end: str
    derived_total: float
    weekly_breakdown: List[WeeklyCostSliceDTO]
    allocations_used: int
    skipped_no_rate: int
    policy: Optional[CostDerivationRulesDTO]


@dataclass
class CostComparisonDTO:
    existing_actual_total: float
    derived_total: float
    delta: float
    delta_direction: str


@dataclass
class CostSuggestionResultDTO:
    """`suggestion` and `comparison` are present only when `available` is True."""
    available: bool
    reason: Optional[str] = None
    suggestion: Optional[DerivedCostSuggestionDTO] = None
    comparison: Optional[CostComparisonDTO] = None


# ---------------------------------------------------------------------------
# Summary DTOs
# ---------------------------------------------------------------------------

@dataclass
class EarnedValueDTO:
    bac: float
    ac: float
    ev: float
    eac: float
    etc: float
    cpi: Optional[float]
    spi: Optional[float]
    forecast_status: str


@dataclass
class BudgetSummaryDTO:
    project_id: str
    baseline: Optional[BaselineDTO]
    actuals: List[ActualCostDTO] = field(default_factory=list)
    total_actual: float = 0.0
    variance_total: float = 0.0
    variance_percent: Optional[float] = None
    ev: Optional[EarnedValueDTO] = None


# ===========================================================================
# DTO ASSEMBLERS
# ===========================================================================

class _Assembler:
    """Converts domain model instances into DTOs."""

    @staticmethod
    def baseline(b: BudgetBaseline) -> BaselineDTO:
        return BaselineDTO(
            id=str(b.id),
            project_id=str(b.project_id),
            baseline_total=b.baseline_total,
            baseline_by_category=dict(b.baseline_by_category),
            status=b.status.value,
            version_number=b.version_number,
            approved_by_id=_fmt_id(b.approved_by_id),
            approved_at=_fmt(b.approved_at),
            superseded_at=_fmt(b.superseded_at),
            superseded_by_user_id=_fmt_id(b.superseded_by_user_id),
            created_by_id=_fmt_id(b.created_by_id),
            created_at=_fmt(b.created_at),
            updated_by_id=_fmt_id(b.updated_by_id),
            updated_at=_fmt(b.updated_at),
        )

    @staticmethod
    def actual(a: ActualCost) -> ActualCostDTO:
        return ActualCostDTO(
            id=str(a.id),
            project_id=str(a.project_id),
            period_start=_fmt_date(a.period_start),
            period_end=_fmt_date(a.period_end),
            actual_total=a.actual_total,
            actual_by_category=dict(a.actual_by_category),
            source=a.source.value,
            created_by_id=_fmt_id(a.created_by_id),
            created_at=_fmt(a.created_at),
            updated_by_id=_fmt_id(a.updated_by_id),
            updated_at=_fmt(a.updated_at),
        )

    @staticmethod
    def derivation_rules(rules) -> CostDerivationRulesDTO:
        return CostDerivationRulesDTO(
            mode=rules.mode.value,
            default_hours_per_week=rules.default_hours_per_week,
            cost_fallback_behavior=rules.cost_fallback_behavior.value,
        )

    @staticmethod
    def policy(p: EffectiveBudgetPolicy) -> EffectiveBudgetPolicyDTO:
        fr = p.forecasting_rules
        tr = p.threshold_rules
        return EffectiveBudgetPolicyDTO(
            forecasting_rules=ForecastingRulesDTO(
                eac_formula=fr.eac_formula.value,
                spi_enabled=fr.spi_enabled,
                forecast_update_frequency_days=fr.forecast_update_frequency_days,
            ),
            threshold_rules=ThresholdRulesDTO(
                cost_variance_warn_percent=tr.cost_variance_warn_percent,
                cost_variance_block_percent=tr.cost_variance_block_percent,
                forecast_overrun_warn_percent=tr.forecast_overrun_warn_percent,
                forecast_overrun_block_percent=tr.forecast_overrun_block_percent,
            ),
            cost_derivation_rules=_Assembler.derivation_rules(p.cost_derivation_rules),
        )

    @staticmethod
    def suggestion(s: DerivedCostSuggestion) -> DerivedCostSuggestionDTO:
        return DerivedCostSuggestionDTO(
            project_id=str(s.project_id),
            period_start=_fmt_date(s.period_start),
            period_end=_fmt_date(s.period_end),
            derived_total=s.derived_total,
            weekly_breakdown=[
                WeeklyCostSliceDTO(
                    week_start=_fmt_date(w.week_start),
                    week_end=_fmt_date(w.week_end),
                    allocations=[
                        WeekAllocationDetailDTO(
                            user_id=str(d.user_id),
                            allocation_percent=d.allocation_percent,
                            availability_percent=d.availability_percent,
                            effective_hours=d.effective_hours,
                            cost_per_hour=d.cost_per_hour,
                            line_cost=d.line_cost,
                            rate_source=d.rate_source.value,
                            skipped=d.skipped,
                        )
                        for d in w.allocations
                    ],
                    total_hours=w.total_hours,
                    total_cost=w.total_cost,
                )
                for w in s.weekly_breakdown
            ],
            allocations_used=s.allocations_used,
            skipped_no_rate=s.skipped_no_rate,
            policy=_Assembler.derivation_rules(s.policy) if s.policy else None,
        )

    @staticmethod
    def comparison(c: CostComparison) -> CostComparisonDTO:
        return CostComparisonDTO(
            existing_actual_total=c.existing_actual_total,
            derived_total=c.derived_total,
            delta=c.delta,
            delta_direction=c.delta_direction.value,
        )

    @staticmethod
    def earned_value(m: EarnedValueMetrics) -> EarnedValueDTO:
        return EarnedValueDTO(
            bac=m.bac,
            ac=m.ac,
            ev=m.ev,
            eac=m.eac,
            etc=m.etc,
            cpi=m.cpi,
            spi=m.spi,
            forecast_status=m.forecast_status.value,
        )

    @staticmethod
    def summary(s: BudgetSummary) -> BudgetSummaryDTO:
        return BudgetSummaryDTO(
            project_id=str(s.project_id),
            baseline=_Assembler.baseline(s.baseline) if s.baseline else None,
            actuals=[_Assembler.actual(a) for a in s.actuals],
            total_actual=s.total_actual,
            variance_total=s.variance_total,
            variance_percent=s.variance_percent,
            ev=_Assembler.earned_value(s.ev) if s.ev else None,
        )


# ===========================================================================
# REPOSITORY INTERFACES
# ===========================================================================

class AbstractBaselineRepository(abc.ABC):
    """
    Storage contract for budget baselines.

    Implementations must guarantee that a project never ends up with two
    APPROVED baselines, even under concurrent approvals: `commit_approval`
    either writes both rows or raises ApprovalConflictError.  `save` and
    `delete_draft` raise ConcurrentModificationError when the stored row no
    longer matches the row_version that was read.
    """

    @abc.abstractmethod
    def get(self, baseline_id: uuid.UUID) -> Optional[BudgetBaseline]: ...
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[BudgetBaseline]:
        """All baselines of a project, ordered by version_number ascending."""
    @abc.abstractmethod
    def save(self, baseline: BudgetBaseline) -> None: ...
    @abc.abstractmethod
    def delete_draft(self, baseline: BudgetBaseline) -> None:
        """Delete a baseline only if it is still the DRAFT at the row_version that was read."""
    @abc.abstractmethod
    def commit_approval(
        self, approved: BudgetBaseline, superseded: Optional[BudgetBaseline]
    ) -> None: ...


class AbstractActualCostRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, actual_id: uuid.UUID) -> Optional[ActualCost]: ...
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[ActualCost]: ...
    @abc.abstractmethod
    def list_overlapping(
        self, project_id: uuid.UUID, period_start: date, period_end: date
    ) -> List[ActualCost]: ...
    @abc.abstractmethod
    def save(self, actual: ActualCost) -> None: ...
    @abc.abstractmethod
    def delete(self, actual_id: uuid.UUID) -> None: ...


# ===========================================================================
# COLLABORATOR INTERFACES
# ===========================================================================

class AbstractAllocationProvider(abc.ABC):
    @abc.abstractmethod
    def get_allocations(
        self, project_id: uuid.UUID, period_start: date, period_end: date
    ) -> List[AllocationRecord]: ...


class AbstractPolicyResolver(abc.ABC):
    @abc.abstractmethod
    def get_effective_policy(self, project_id: uuid.UUID) -> EffectiveBudgetPolicy: ...


class AbstractProgressProvider(abc.ABC):
    @abc.abstractmethod
    def get_percent_complete(self, project_id: uuid.UUID) -> Optional[float]:
        """Fraction complete in [0, 1], or None when progress is unknown."""
    @abc.abstractmethod
    def get_planned_value(self, project_id: uuid.UUID, as_of: date) -> Optional[float]: ...


# ===========================================================================
# UNIT OF WORK
# ===========================================================================

class AbstractUnitOfWork(abc.ABC):
    """
    Groups all repositories and collaborators under a single transactional
    boundary.  Use as a context manager:

        with uow:
            uow.baselines.save(baseline)
            uow.commit()
    """
    baselines: AbstractBaselineRepository
    actuals: AbstractActualCostRepository
    allocations: AbstractAllocationProvider
    policies: AbstractPolicyResolver
    progress: AbstractProgressProvider

    def __enter__(self) -> "AbstractUnitOfWork":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type:
            self.rollback()
        else:
            self.commit()

    @abc.abstractmethod
    def commit(self) -> None: ...

    @abc.abstractmethod
    def rollback(self) -> None: ...


# ===========================================================================
# SERVICE SINGLETONS (shared across use cases)
# ===========================================================================

_baseline_svc = BaselineLifecycleService()
_actual_svc = ActualCostService()
_derivation_engine = CostDerivationEngine()


# ===========================================================================
# READ MODEL
# ===========================================================================

class BudgetSummaryAssembler:
    """
    Combines the current baseline and all actuals of a project into one
    BudgetSummary.  EVM runs only when there is a baseline with a positive
    total and percent complete is known; otherwise `ev` is None.
    """

    def __init__(
        self,
        variance: Optional[VarianceCalculator] = None,
        evm: Optional[EVMCalculator] = None,
    ):
        self._variance = variance or VarianceCalculator()
        self._evm = evm or EVMCalculator()

    def assemble(
        self,
        project_id: uuid.UUID,
        baselines: List[BudgetBaseline],
        actuals: List[ActualCost],
        policy: EffectiveBudgetPolicy,
        percent_complete: Optional[float],
        planned_value: Optional[float] = None,
    ) -> BudgetSummary:
        baseline = _baseline_svc.current_baseline(baselines)
        total_actual = _actual_svc.total_actual(actuals)
        variance = self._variance.calculate(
            baseline.baseline_total if baseline else None, total_actual
        )

        ev = None
        if baseline is not None and baseline.baseline_total > 0 and percent_complete is not None:
            ev = self._evm.calculate(
                bac=baseline.baseline_total,
                ac=total_actual,
                percent_complete=percent_complete,
                forecasting=policy.forecasting_rules,
                thresholds=policy.threshold_rules,
                planned_value=planned_value,
                variance_percent=variance.variance_percent,
            )

        return BudgetSummary(
            project_id=project_id,
            baseline=baseline,
            actuals=sorted(actuals, key=lambda a: (a.period_start, a.period_end, a.created_at)),
            total_actual=total_actual,
            variance_total=variance.variance_total,
            variance_percent=variance.variance_percent,
            ev=ev,
        )


# ===========================================================================
# USE CASE HELPERS
# ===========================================================================

def _get_baseline_or_raise(uow: AbstractUnitOfWork, baseline_id: uuid.UUID) -> BudgetBaseline:
    baseline = uow.baselines.get(baseline_id)
    if baseline is None:
        raise NotFoundError(f"Baseline {baseline_id} not found.")
    return baseline


def _get_actual_or_raise(uow: AbstractUnitOfWork, actual_id: uuid.UUID) -> ActualCost:
    actual = uow.actuals.get(actual_id)
    if actual is None:
        raise NotFoundError(f"Actual cost {actual_id} not found.")
    return actual


# ===========================================================================
# USE CASES: SUMMARY & POLICY
# ===========================================================================

class GetBudgetSummaryUseCase:
    """Current baseline, actuals, variance and earned value for one project."""

    def __init__(self, assembler: Optional[BudgetSummaryAssembler] = None):
        self._assembler = assembler or BudgetSummaryAssembler()

    def execute(
        self,
        project_id: uuid.UUID,
        uow: AbstractUnitOfWork,
        as_of: Optional[date] = None,
    ) -> BudgetSummaryDTO:
        with uow:
            policy = uow.policies.get_effective_policy(project_id)
            baselines = uow.baselines.list_for_project(project_id)
            actuals = uow.actuals.list_for_project(project_id)
            percent_complete = uow.progress.get_percent_complete(project_id)

            planned_value = None
            if percent_complete is not None and policy.forecasting_rules.spi_enabled:
                planned_value = uow.progress.get_planned_value(
                    project_id, as_of or datetime.now(timezone.utc).date()
                )

            summary = self._assembler.assemble(
                project_id=project_id,
                baselines=baselines,
                actuals=actuals,
                policy=policy,
                percent_complete=percent_complete,
                planned_value=planned_value,
            )
            return _Assembler.summary(summary)


class GetEffectivePolicyUseCase:
    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> EffectiveBudgetPolicyDTO:
        with uow:
            return _Assembler.policy(uow.policies.get_effective_policy(project_id))


# ===========================================================================
# USE CASES: BASELINES
# ===========================================================================

@dataclass
class CreateBaselineCommand:
    project_id: uuid.UUID
    baseline_total: float
    acting_user_id: uuid.UUID
    baseline_by_category: Optional[Dict[str, float]] = None


class CreateBaselineUseCase:
    """Create a new DRAFT baseline with the next version number for the project."""

    def execute(self, cmd: CreateBaselineCommand, uow: AbstractUnitOfWork) -> BaselineDTO:
        with uow:
            existing = uow.baselines.list_for_project(cmd.project_id)
            baseline = _baseline_svc.create_baseline(
                project_id=cmd.project_id,
                baseline_total=cmd.baseline_total,
                existing_baselines=existing,
                created_by_id=cmd.acting_user_id,
                baseline_by_category=cmd.baseline_by_category,
            )
            uow.baselines.save(baseline)
            uow.commit()
            logger.info(
                "Baseline v%d created for project %s (total=%s)",
                baseline.version_number, cmd.project_id, baseline.baseline_total,
            )
            return _Assembler.baseline(baseline)


@dataclass
class UpdateBaselineCommand:
    baseline_id: uuid.UUID
    acting_user_id: uuid.UUID
    baseline_total: Optional[float] = None
    baseline_by_category: Optional[Dict[str, float]] = None


class UpdateBaselineUseCase:
    def execute(self, cmd: UpdateBaselineCommand, uow: AbstractUnitOfWork) -> BaselineDTO:
        with uow:
            baseline = _get_baseline_or_raise(uow, cmd.baseline_id)
            baseline = _baseline_svc.update_baseline(
                baseline,
                acting_user_id=cmd.acting_user_id,
                baseline_total=cmd.baseline_total,
                baseline_by_category=cmd.baseline_by_category,
            )
            uow.baselines.save(baseline)
            uow.commit()
            return _Assembler.baseline(baseline)


@dataclass
class ApproveBaselineCommand:
    baseline_id: uuid.UUID
    acting_user_id: uuid.UUID


class ApproveBaselineUseCase:
    """
    Approve a DRAFT baseline.  The project's previously APPROVED baseline,
    if any, becomes SUPERSEDED in the same atomic write.
    """

    def execute(self, cmd: ApproveBaselineCommand, uow: AbstractUnitOfWork) -> BaselineDTO:
        with uow:
            baseline = _get_baseline_or_raise(uow, cmd.baseline_id)
            project_baselines = uow.baselines.list_for_project(baseline.project_id)
            approved, superseded = _baseline_svc.approve_baseline(
                baseline,
                project_baselines=project_baselines,
                approver_id=cmd.acting_user_id,
            )
            try:
                uow.baselines.commit_approval(approved, superseded)
            except ApprovalConflictError:
                logger.warning(
                    "Approval of baseline %s lost a race for project %s",
                    approved.id, approved.project_id,
                )
                raise
            uow.commit()
            if superseded is not None:
                logger.info(
                    "Baseline v%d of project %s superseded by v%d",
                    superseded.version_number, approved.project_id, approved.version_number,
                )
            logger.info(
                "Baseline v%d approved for project %s", approved.version_number, approved.project_id
            )
            return _Assembler.baseline(approved)


@dataclass
class DeleteBaselineCommand:
    baseline_id: uuid.UUID
    acting_user_id: uuid.UUID


class DeleteBaselineUseCase:
    """Cancel a DRAFT baseline by deleting it."""

    def execute(self, cmd: DeleteBaselineCommand, uow: AbstractUnitOfWork) -> None:
        with uow:
            baseline = _get_baseline_or_raise(uow, cmd.baseline_id)
            _baseline_svc.delete_baseline(baseline)
            uow.baselines.delete_draft(baseline)
            uow.commit()
            logger.info(
                "Draft baseline v%d of project %s deleted by %s",
                baseline.version_number, baseline.project_id, cmd.acting_user_id,
            )


class GetBaselineUseCase:
    def execute(self, baseline_id: uuid.UUID, uow: AbstractUnitOfWork) -> BaselineDTO:
        with uow:
            return _Assembler.baseline(_get_baseline_or_raise(uow, baseline_id))


class ListBaselinesUseCase:
    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[BaselineDTO]:
        with uow:
            baselines = _baseline_svc.get_baseline_history(
                uow.baselines.list_for_project(project_id)
            )
            return [_Assembler.baseline(b) for b in baselines]


# ===========================================================================
# USE CASES: ACTUALS
# ===========================================================================

@dataclass
class AddActualCommand:
    project_id: uuid.UUID
    period_start: date
    period_end: date
    actual_total: float
    acting_user_id: uuid.UUID
    actual_by_category: Optional[Dict[str, float]] = None
    source: ActualCostSource = ActualCostSource.MANUAL


class AddActualUseCase:
    def execute(self, cmd: AddActualCommand, uow: AbstractUnitOfWork) -> ActualCostDTO:
        with uow:
            actual = _actual_svc.record_actual(
                project_id=cmd.project_id,
                period_start=cmd.period_start,
                period_end=cmd.period_end,
                actual_total=cmd.actual_total,
                created_by_id=cmd.acting_user_id,
                actual_by_category=cmd.actual_by_category,
                source=cmd.source,
            )
            uow.actuals.save(actual)
            uow.commit()
            logger.info(
                "Actual cost %s recorded for project %s (%s..%s, total=%s)",
                actual.id, actual.project_id, actual.period_start.isoformat(),
                actual.period_end.isoformat(), actual.actual_total,
            )
            return _Assembler.actual(actual)


@dataclass
class UpdateActualCommand:
    actual_id: uuid.UUID
    acting_user_id: uuid.UUID
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    actual_total: Optional[float] = None
    actual_by_category: Optional[Dict[str, float]] = None


class UpdateActualUseCase:
    def execute(self, cmd: UpdateActualCommand, uow: AbstractUnitOfWork) -> ActualCostDTO:
        with uow:
            actual = _get_actual_or_raise(uow, cmd.actual_id)
            actual = _actual_svc.update_actual(
                actual,
                acting_user_id=cmd.acting_user_id,
                period_start=cmd.period_start,
                period_end=cmd.period_end,
                actual_total=cmd.actual_total,
                actual_by_category=cmd.actual_by_category,
            )
            uow.actuals.save(actual)
            uow.commit()
            return _Assembler.actual(actual)


@dataclass
class DeleteActualCommand:
    actual_id: uuid.UUID
    acting_user_id: uuid.UUID


class DeleteActualUseCase:
    def execute(self, cmd: DeleteActualCommand, uow: AbstractUnitOfWork) -> None:
        with uow:
            actual = _get_actual_or_raise(uow, cmd.actual_id)
            uow.actuals.delete(actual.id)
            uow.commit()
            logger.info(
                "Actual cost %s of project %s deleted by %s",
                actual.id, actual.project_id, cmd.acting_user_id,
            )


class GetActualUseCase:
    def execute(self, actual_id: uuid.UUID, uow: AbstractUnitOfWork) -> ActualCostDTO:
        with uow:
            return _Assembler.actual(_get_actual_or_raise(uow, actual_id))


# ===========================================================================
# USE CASES: COST DERIVATION
# ===========================================================================

@dataclass
class GetCostSuggestionQuery:
    project_id: uuid.UUID
    period_start: date
    period_end: date


class GetCostSuggestionUseCase:
    """
    Derive a cost suggestion from resource allocations and reconcile it
    against the actuals recorded for the same period.

    The result is advisory: nothing is persisted.  Under MANUAL_ONLY the
    allocation provider is not consulted and `available` is False.
    """

    def __init__(
        self,
        engine: Optional[CostDerivationEngine] = None,
        comparison: Optional[CostComparisonEngine] = None,
    ):
        self._engine = engine or _derivation_engine
        if comparison is None:
            config = get_config()
            comparison = CostComparisonEngine(
                tolerance_ratio=config.aligned_tolerance_ratio,
                tolerance_floor=config.aligned_tolerance_floor,
            )
        self._comparison = comparison

    def execute(self, query: GetCostSuggestionQuery, uow: AbstractUnitOfWork) -> CostSuggestionResultDTO:
        with uow:
            rules = uow.policies.get_effective_policy(query.project_id).cost_derivation_rules
            allocations: List[AllocationRecord] = []
            if rules.mode != CostDerivationMode.MANUAL_ONLY:
                allocations = uow.allocations.get_allocations(
                    query.project_id, query.period_start, query.period_end
                )
            suggestion = self._engine.derive(
                project_id=query.project_id,
                period_start=query.period_start,
                period_end=query.period_end,
                rules=rules,
                allocations=allocations,
            )
            if not suggestion.available:
                return CostSuggestionResultDTO(available=False, reason=suggestion.reason)

            existing_total = self._comparison.overlapping_actual_total(
                uow.actuals.list_overlapping(
                    query.project_id, query.period_start, query.period_end
                ),
                query.period_start,
                query.period_end,
            )
            comparison = self._comparison.compare(suggestion.derived_total, existing_total)
            return CostSuggestionResultDTO(
                available=True,
                suggestion=_Assembler.suggestion(suggestion),
                comparison=_Assembler.comparison(comparison),
            )
