"""
service.py

Service layer for the Project Budget, Earned-Value & Cost-Derivation engine.

Responsibilities
----------------
Each service class encapsulates the business logic for one concern.
Services receive and return domain model instances (from model.py).
No persistence is handled here; callers are responsible for storing
and retrieving models via a repository layer of their choosing.

Services
--------
- RateResolver              – Ordered chain of hourly-rate sources for one allocation line
- CostDerivationEngine      – Allocations + policy → time-phased cost suggestion
- CostComparisonEngine      – Derived suggestion vs. recorded actuals
- VarianceCalculator        – Baseline-vs-actual variance
- ForecastClassifier        – EAC overrun + variance → forecast status
- EVMCalculator             – Earned-value formulas (EV, EAC, ETC, CPI, SPI)
- BaselineLifecycleService  – Baseline create / update / approve / delete state machine
- ActualCostService         – Actual cost entry validation and aggregation

Design notes
------------
- Every calculator is a pure function of its arguments. Policy is always
  passed in explicitly; nothing here reads configuration.
- Degenerate numeric input (zero budget, zero actuals, no allocations)
  yields None or 0, never an exception.
- Business rule violations raise ValidationError or InvalidStateError,
  both subclasses of ValueError.
- Methods that would normally persist data return the mutated object(s)
  so the caller can hand them to a repository.
"""

from __future__ import annotations

import abc
import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from model import (
    ActualCost,
    ActualCostSource,
    AllocationRecord,
    BaselineStatus,
    BudgetBaseline,
    CostComparison,
    CostDerivationMode,
    CostDerivationRules,
    CostFallbackBehavior,
    DeltaDirection,
    DerivedCostSuggestion,
    EacFormula,
    EarnedValueMetrics,
    ForecastingRules,
    ForecastStatus,
    RateResolution,
    RateSource,
    ThresholdRules,
    VarianceResult,
    WeekAllocationDetail,
    WeeklyCostSlice,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class BudgetRuleError(ValueError):
    """Base class for budget business rule violations."""


class ValidationError(BudgetRuleError):
    """Raised when an input value is outside its permitted range."""


class InvalidStateError(BudgetRuleError):
    """Raised when an operation is not permitted in the entity's current state."""


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

MONEY_PLACES = 2
HOURS_PLACES = 2
INDEX_PLACES = 4
PERCENT_PLACES = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _money(value: float) -> float:
    return round(value, MONEY_PLACES)


def _validate_period(period_start: date, period_end: date) -> None:
    if period_start > period_end:
        raise ValidationError(
            f"period_start ({period_start.isoformat()}) must not be after "
            f"period_end ({period_end.isoformat()})."
        )


def _validate_categories(amounts: Dict[str, float], label: str) -> Dict[str, float]:
    for category, amount in amounts.items():
        if amount < 0:
            raise ValidationError(f"{label} amount for '{category}' must not be negative.")
    return dict(amounts)


def week_start_of(day: date) -> date:
    """Monday of the calendar week containing `day`."""
    return day - timedelta(days=day.weekday())


# ---------------------------------------------------------------------------
# RateResolver
# ---------------------------------------------------------------------------

class RateSourceHandler(abc.ABC):
    """
    One link in the rate-resolution chain.

    Returns a RateResolution when this source can price the allocation,
    or None to pass the allocation on to the next link.
    """

    @abc.abstractmethod
    def resolve(
        self,
        allocation: AllocationRecord,
        fallback_behavior: CostFallbackBehavior,
    ) -> Optional[RateResolution]: ...


class AllocationOverrideRate(RateSourceHandler):
    """Rate negotiated on the allocation itself."""

    def resolve(self, allocation, fallback_behavior):
        if allocation.rate_override is None:
            return None
        return RateResolution(rate=allocation.rate_override, source=RateSource.ALLOCATION_OVERRIDE)


class ResourceDefaultRate(RateSourceHandler):
    """Standard rate of the allocated resource."""

    def resolve(self, allocation, fallback_behavior):
        if allocation.resource_default_rate is None:
            return None
        return RateResolution(
            rate=allocation.resource_default_rate, source=RateSource.RESOURCE_DEFAULT
        )


class FallbackRate(RateSourceHandler):
    """Last link: price at zero under USE_ZERO, exclude the line under SKIP."""

    def resolve(self, allocation, fallback_behavior):
        if fallback_behavior == CostFallbackBehavior.USE_ZERO:
            return RateResolution(rate=0.0, source=RateSource.FALLBACK_ZERO)
        return None


class RateResolver:
    """
    Resolves the hourly cost rate of an allocation line by walking an ordered
    chain of sources: allocation override → resource default → fallback.

    `resolve` returns None when no source produced a rate, which tells the
    caller to exclude the line from cost totals.
    """

    def __init__(self, sources: Optional[Sequence[RateSourceHandler]] = None):
        if sources is None:
            sources = (AllocationOverrideRate(), ResourceDefaultRate(), FallbackRate())
        self._sources = tuple(sources)

    def resolve(
        self,
        allocation: AllocationRecord,
        fallback_behavior: CostFallbackBehavior,
    ) -> Optional[RateResolution]:
        for source in self._sources:
            resolution = source.resolve(allocation, fallback_behavior)
            if resolution is not None:
                return resolution
        return None


# ---------------------------------------------------------------------------
# CostDerivationEngine
# ---------------------------------------------------------------------------

MANUAL_ONLY_REASON = "manual-only"


class CostDerivationEngine:
    """
    Turns weekly resource allocations into a time-phased cost suggestion.

    effective_hours = default_hours_per_week × allocation% × availability%
    line_cost       = effective_hours × resolved rate

    Percentages above 100 are clamped to 100; negative percentages are
    rejected. Lines with no resolvable rate under the SKIP policy stay
    visible in their week (zero cost, rate source fallback_zero) but do not
    count towards hours, cost or `allocations_used`.
    """

    def __init__(self, rate_resolver: Optional[RateResolver] = None):
        self._rates = rate_resolver or RateResolver()

    def derive(
        self,
        project_id: uuid.UUID,
        period_start: date,
        period_end: date,
        rules: CostDerivationRules,
        allocations: Iterable[AllocationRecord],
    ) -> DerivedCostSuggestion:
        _validate_period(period_start, period_end)
        if rules.mode == CostDerivationMode.MANUAL_ONLY:
            return DerivedCostSuggestion(
                project_id=project_id,
                period_start=period_start,
                period_end=period_end,
                available=False,
                reason=MANUAL_ONLY_REASON,
                policy=rules,
            )
        if rules.default_hours_per_week < 0:
            raise ValidationError("default_hours_per_week must not be negative.")

        slices: Dict[date, WeeklyCostSlice] = {}
        used = 0
        skipped = 0

        for allocation in allocations:
            week_start = week_start_of(allocation.week_start)
            week_end = week_start + timedelta(days=6)
            if week_end < period_start or week_start > period_end:
                continue

            detail = self._price_line(allocation, rules)
            week = slices.get(week_start)
            if week is None:
                week = WeeklyCostSlice(week_start=week_start, week_end=week_end)
                slices[week_start] = week
            week.allocations.append(detail)

            if detail.skipped:
                skipped += 1
                logger.warning(
                    "No cost rate for user %s in week %s of project %s; line skipped",
                    allocation.user_id, week_start.isoformat(), project_id,
                )
                continue
            used += 1
            week.total_hours += detail.effective_hours
            week.total_cost += detail.line_cost

        breakdown = [slices[key] for key in sorted(slices)]
        for week in breakdown:
            week.total_hours = round(week.total_hours, HOURS_PLACES)
            week.total_cost = _money(week.total_cost)

        suggestion = DerivedCostSuggestion(
            project_id=project_id,
            period_start=period_start,
            period_end=period_end,
            available=True,
            derived_total=_money(sum(w.total_cost for w in breakdown)),
            weekly_breakdown=breakdown,
            allocations_used=used,
            skipped_no_rate=skipped,
            policy=rules,
        )
        logger.debug(
            "Derived cost for project %s %s..%s: total=%s weeks=%d used=%d skipped=%d",
            project_id, period_start.isoformat(), period_end.isoformat(),
            suggestion.derived_total, len(breakdown), used, skipped,
        )
        return suggestion

    def _price_line(
        self, allocation: AllocationRecord, rules: CostDerivationRules
    ) -> WeekAllocationDetail:
        allocation_pct = self._clamp_percent(allocation.allocation_percent, "allocation_percent")
        availability_pct = self._clamp_percent(allocation.availability_percent, "availability_percent")
        hours = rules.default_hours_per_week * allocation_pct / 100.0 * availability_pct / 100.0

        resolution = self._rates.resolve(allocation, rules.cost_fallback_behavior)
        if resolution is None:
            return WeekAllocationDetail(
                user_id=allocation.user_id,
                allocation_percent=allocation_pct,
                availability_percent=availability_pct,
                effective_hours=round(hours, HOURS_PLACES),
                cost_per_hour=0.0,
                line_cost=0.0,
                rate_source=RateSource.FALLBACK_ZERO,
                skipped=True,
            )
        return WeekAllocationDetail(
            user_id=allocation.user_id,
            allocation_percent=allocation_pct,
            availability_percent=availability_pct,
            effective_hours=round(hours, HOURS_PLACES),
            cost_per_hour=resolution.rate,
            line_cost=_money(hours * resolution.rate),
            rate_source=resolution.source,
        )

    @staticmethod
    def _clamp_percent(value: float, name: str) -> float:
        if value < 0:
            raise ValidationError(f"{name} must not be negative (got {value}).")
        return min(float(value), 100.0)


# ---------------------------------------------------------------------------
# CostComparisonEngine
# ---------------------------------------------------------------------------

# Tolerance band for ALIGNED: max(ratio × derived_total, floor)
ALIGNED_TOLERANCE_RATIO = 0.01
ALIGNED_TOLERANCE_FLOOR = 1.0


class CostComparisonEngine:
    """
    Reconciles a derived cost suggestion against recorded actuals.

    delta = derived_total - existing_actual_total
      |delta| ≤ ε  → ALIGNED
      delta  > ε   → UNDER_REPORTED (actual entries are probably missing)
      delta  < -ε  → OVER_REPORTED
    """

    def __init__(
        self,
        tolerance_ratio: float = ALIGNED_TOLERANCE_RATIO,
        tolerance_floor: float = ALIGNED_TOLERANCE_FLOOR,
    ):
        self.tolerance_ratio = tolerance_ratio
        self.tolerance_floor = tolerance_floor

    def tolerance(self, derived_total: float) -> float:
        return max(self.tolerance_ratio * derived_total, self.tolerance_floor)

    def compare(self, derived_total: float, existing_actual_total: float) -> CostComparison:
        delta = _money(derived_total - existing_actual_total)
        epsilon = self.tolerance(derived_total)
        if abs(delta) <= epsilon:
            direction = DeltaDirection.ALIGNED
        elif delta > 0:
            direction = DeltaDirection.UNDER_REPORTED
        else:
            direction = DeltaDirection.OVER_REPORTED
        return CostComparison(
            existing_actual_total=_money(existing_actual_total),
            derived_total=_money(derived_total),
            delta=delta,
            delta_direction=direction,
        )

    @staticmethod
    def overlapping_actual_total(
        actuals: Iterable[ActualCost], period_start: date, period_end: date
    ) -> float:
        """Sum of actual_total over records whose period overlaps [period_start, period_end]."""
        return _money(sum(
            a.actual_total
            for a in actuals
            if a.period_start <= period_end and a.period_end >= period_start
        ))


# ---------------------------------------------------------------------------
# VarianceCalculator
# ---------------------------------------------------------------------------

class VarianceCalculator:

    def calculate(self, baseline_total: Optional[float], total_actual: float) -> VarianceResult:
        """
        variance_total = total_actual - baseline_total (positive = over budget).
        variance_percent is None when there is no baseline or it is zero.
        """
        if baseline_total is None:
            return VarianceResult(variance_total=0.0, variance_percent=None)
        variance_total = _money(total_actual - baseline_total)
        variance_percent = (
            round(variance_total / baseline_total * 100, PERCENT_PLACES)
            if baseline_total > 0
            else None
        )
        return VarianceResult(variance_total=variance_total, variance_percent=variance_percent)


# ---------------------------------------------------------------------------
# ForecastClassifier
# ---------------------------------------------------------------------------

class ForecastClassifier:
    """
    Maps an estimate-at-completion onto a forecast status.

    Precedence, first match wins:
      overrun ≥ forecast_overrun_block_percent → CRITICAL
      overrun ≥ forecast_overrun_warn_percent  → AT_RISK
      variance% ≥ cost_variance_warn_percent   → WATCH
      otherwise                                → ON_TRACK
    """

    @staticmethod
    def overrun_percent(bac: float, eac: float) -> float:
        return (eac - bac) / bac * 100 if bac > 0 else 0.0

    def classify(
        self,
        bac: float,
        eac: float,
        thresholds: ThresholdRules,
        variance_percent: Optional[float] = None,
    ) -> ForecastStatus:
        overrun = self.overrun_percent(bac, eac)
        if overrun >= thresholds.forecast_overrun_block_percent:
            return ForecastStatus.CRITICAL
        if overrun >= thresholds.forecast_overrun_warn_percent:
            return ForecastStatus.AT_RISK
        if (variance_percent or 0.0) >= thresholds.cost_variance_warn_percent:
            return ForecastStatus.WATCH
        return ForecastStatus.ON_TRACK


# ---------------------------------------------------------------------------
# EVMCalculator
# ---------------------------------------------------------------------------

class EVMCalculator:
    """
    Earned-value metrics for a project with a baseline.

    ev  = bac × percent_complete
    cpi = ev / ac                       (None when ac == 0)
    eac = ac + (bac - ev)               AC_PLUS_REMAINING
        = bac / cpi                     CPI_BASED, falls back to bac when cpi is None or 0
    etc = eac - ac
    spi = ev / pv                       (None unless SPI is enabled and pv > 0)
    """

    def __init__(self, classifier: Optional[ForecastClassifier] = None):
        self._classifier = classifier or ForecastClassifier()

    def calculate(
        self,
        bac: float,
        ac: float,
        percent_complete: float,
        forecasting: ForecastingRules,
        thresholds: ThresholdRules,
        planned_value: Optional[float] = None,
        variance_percent: Optional[float] = None,
    ) -> EarnedValueMetrics:
        percent_complete = min(max(percent_complete, 0.0), 1.0)
        ev = bac * percent_complete
        cpi = ev / ac if ac > 0 else None

        if forecasting.eac_formula == EacFormula.CPI_BASED:
            eac = bac / cpi if cpi is not None and cpi > 0 else bac
        else:
            eac = ac + (bac - ev)
        etc = eac - ac

        spi = None
        if forecasting.spi_enabled and planned_value is not None and planned_value > 0:
            spi = ev / planned_value

        status = self._classifier.classify(
            bac=bac, eac=eac, thresholds=thresholds, variance_percent=variance_percent
        )
        metrics = EarnedValueMetrics(
            bac=_money(bac),
            ac=_money(ac),
            ev=_money(ev),
            eac=_money(eac),
            etc=_money(etc),
            cpi=round(cpi, INDEX_PLACES) if cpi is not None else None,
            spi=round(spi, INDEX_PLACES) if spi is not None else None,
            forecast_status=status,
        )
        logger.debug("EVM computed: %s", metrics)
        return metrics


# ---------------------------------------------------------------------------
# BaselineLifecycleService
# ---------------------------------------------------------------------------

class BaselineLifecycleService:
    """
    Manages the budget baseline state machine.

        DRAFT ──approve──▶ APPROVED ──(next approval)──▶ SUPERSEDED

    Only a DRAFT may be edited, approved or deleted. Approval returns both the
    newly approved baseline and the one it supersedes; persisting the pair
    atomically is the repository's job (see commit_approval).
    """

    def create_baseline(
        self,
        project_id: uuid.UUID,
        baseline_total: float,
        existing_baselines: List[BudgetBaseline],
        created_by_id: Optional[uuid.UUID],
        baseline_by_category: Optional[Dict[str, float]] = None,
    ) -> BudgetBaseline:
        """Create and return a new DRAFT baseline (unsaved) with the next version number."""
        if baseline_total <= 0:
            raise ValidationError("baseline_total must be greater than zero.")
        if any(b.status == BaselineStatus.DRAFT for b in existing_baselines):
            raise InvalidStateError(
                f"Project {project_id} already has a DRAFT baseline; update or delete it instead."
            )
        next_version = max((b.version_number for b in existing_baselines), default=0) + 1
        now = _utcnow()
        return BudgetBaseline(
            project_id=project_id,
            baseline_total=float(baseline_total),
            baseline_by_category=_validate_categories(baseline_by_category or {}, "Baseline category"),
            status=BaselineStatus.DRAFT,
            version_number=next_version,
            created_by_id=created_by_id,
            created_at=now,
            updated_by_id=created_by_id,
            updated_at=now,
        )

    def update_baseline(
        self,
        baseline: BudgetBaseline,
        acting_user_id: Optional[uuid.UUID],
        baseline_total: Optional[float] = None,
        baseline_by_category: Optional[Dict[str, float]] = None,
    ) -> BudgetBaseline:
        """Apply field-level updates to a DRAFT baseline."""
        self._require_draft(baseline, "modified")
        if baseline_total is not None and baseline_total <= 0:
            raise ValidationError("baseline_total must be greater than zero.")
        if baseline_by_category is not None:
            baseline.baseline_by_category = _validate_categories(
                baseline_by_category, "Baseline category"
            )
        if baseline_total is not None:
            baseline.baseline_total = float(baseline_total)
        baseline.updated_by_id = acting_user_id
        baseline.updated_at = _utcnow()
        return baseline

    def approve_baseline(
        self,
        baseline: BudgetBaseline,
        project_baselines: List[BudgetBaseline],
        approver_id: Optional[uuid.UUID],
    ) -> Tuple[BudgetBaseline, Optional[BudgetBaseline]]:
        """
        Approve a DRAFT baseline.

        Returns the approved baseline and the previously APPROVED baseline of
        the same project (now SUPERSEDED), or None if there was none.
        """
        self._require_draft(baseline, "approved")
        now = _utcnow()

        superseded = self.approved_baseline(
            [b for b in project_baselines if b.id != baseline.id]
        )
        if superseded is not None:
            superseded.status = BaselineStatus.SUPERSEDED
            superseded.superseded_at = now
            superseded.superseded_by_user_id = approver_id
            superseded.updated_by_id = approver_id
            superseded.updated_at = now

        baseline.status = BaselineStatus.APPROVED
        baseline.approved_by_id = approver_id
        baseline.approved_at = now
        baseline.updated_by_id = approver_id
        baseline.updated_at = now
        return baseline, superseded

    def delete_baseline(self, baseline: BudgetBaseline) -> BudgetBaseline:
        """Return a DRAFT baseline marked for deletion (caller deletes from store)."""
        self._require_draft(baseline, "deleted")
        return baseline

    @staticmethod
    def approved_baseline(baselines: List[BudgetBaseline]) -> Optional[BudgetBaseline]:
        approved = [b for b in baselines if b.status == BaselineStatus.APPROVED]
        return max(approved, key=lambda b: b.version_number) if approved else None

    def current_baseline(self, baselines: List[BudgetBaseline]) -> Optional[BudgetBaseline]:
        """The APPROVED baseline if there is one, otherwise the most recent DRAFT."""
        approved = self.approved_baseline(baselines)
        if approved is not None:
            return approved
        drafts = [b for b in baselines if b.status == BaselineStatus.DRAFT]
        return max(drafts, key=lambda b: b.version_number) if drafts else None

    def get_baseline_history(self, baselines: List[BudgetBaseline]) -> List[BudgetBaseline]:
        """Return all baselines sorted by version number ascending."""
        return sorted(baselines, key=lambda b: b.version_number)

    @staticmethod
    def _require_draft(baseline: BudgetBaseline, action: str) -> None:
        if baseline.status != BaselineStatus.DRAFT:
            raise InvalidStateError(
                f"Baseline {baseline.id} is {baseline.status.value}; "
                f"only DRAFT baselines can be {action}."
            )


# ---------------------------------------------------------------------------
# ActualCostService
# ---------------------------------------------------------------------------

class ActualCostService:
    """
    Validates actual cost entries. Actuals have no lifecycle: they may be
    created, changed and deleted at any time.
    """

    def record_actual(
        self,
        project_id: uuid.UUID,
        period_start: date,
        period_end: date,
        actual_total: float,
        created_by_id: Optional[uuid.UUID],
        actual_by_category: Optional[Dict[str, float]] = None,
        source: ActualCostSource = ActualCostSource.MANUAL,
    ) -> ActualCost:
        """Create and return a new ActualCost (unsaved)."""
        _validate_period(period_start, period_end)
        self._validate_total(actual_total)
        now = _utcnow()
        return ActualCost(
            project_id=project_id,
            period_start=period_start,
            period_end=period_end,
            actual_total=float(actual_total),
            actual_by_category=_validate_categories(actual_by_category or {}, "Actual category"),
            source=source,
            created_by_id=created_by_id,
            created_at=now,
            updated_by_id=created_by_id,
            updated_at=now,
        )

    def update_actual(
        self,
        actual: ActualCost,
        acting_user_id: Optional[uuid.UUID],
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
        actual_total: Optional[float] = None,
        actual_by_category: Optional[Dict[str, float]] = None,
    ) -> ActualCost:
        """Apply field-level updates to an actual cost entry."""
        new_start = period_start if period_start is not None else actual.period_start
        new_end = period_end if period_end is not None else actual.period_end
        _validate_period(new_start, new_end)
        if actual_total is not None:
            self._validate_total(actual_total)
        if actual_by_category is not None:
            actual.actual_by_category = _validate_categories(actual_by_category, "Actual category")
        if actual_total is not None:
            actual.actual_total = float(actual_total)
        actual.period_start = new_start
        actual.period_end = new_end
        actual.updated_by_id = acting_user_id
        actual.updated_at = _utcnow()
        return actual

    @staticmethod
    def total_actual(actuals: Iterable[ActualCost]) -> float:
        return _money(sum(a.actual_total for a in actuals))

    @staticmethod
    def _validate_total(actual_total: float) -> None:
        if actual_total <= 0:
            raise ValidationError("actual_total must be greater than zero.")
