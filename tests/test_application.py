"""Tests for application use cases against the in-memory unit of work."""

import logging
import uuid
from datetime import date

import pytest

from application import (
    AddActualCommand,
    AddActualUseCase,
    ApprovalConflictError,
    ApproveBaselineCommand,
    ApproveBaselineUseCase,
    CreateBaselineCommand,
    CreateBaselineUseCase,
    DeleteActualCommand,
    DeleteActualUseCase,
    DeleteBaselineCommand,
    DeleteBaselineUseCase,
    GetActualUseCase,
    GetBaselineUseCase,
    GetBudgetSummaryUseCase,
    GetCostSuggestionQuery,
    GetCostSuggestionUseCase,
    GetEffectivePolicyUseCase,
    ListBaselinesUseCase,
    NotFoundError,
    UpdateActualCommand,
    UpdateActualUseCase,
    UpdateBaselineCommand,
    UpdateBaselineUseCase,
)
from conftest import MARCH_END, MARCH_START, WEEK_1
from model import (
    AllocationRecord,
    EacFormula,
    EffectiveBudgetPolicy,
    ForecastingRules,
)
from service import (
    BaselineLifecycleService,
    CostComparisonEngine,
    InvalidStateError,
    ValidationError,
)


def _create(uow, project_id, user_id, total=100000.0):
    return CreateBaselineUseCase().execute(
        CreateBaselineCommand(project_id=project_id, baseline_total=total, acting_user_id=user_id),
        uow,
    )


def _approve(uow, baseline_id, user_id):
    return ApproveBaselineUseCase().execute(
        ApproveBaselineCommand(baseline_id=uuid.UUID(baseline_id), acting_user_id=user_id), uow
    )


def _add_actual(uow, project_id, user_id, total, start=MARCH_START, end=MARCH_END):
    return AddActualUseCase().execute(
        AddActualCommand(
            project_id=project_id,
            period_start=start,
            period_end=end,
            actual_total=total,
            acting_user_id=user_id,
        ),
        uow,
    )


def _suggest(uow, project_id, comparison=None):
    return GetCostSuggestionUseCase(comparison=comparison or CostComparisonEngine()).execute(
        GetCostSuggestionQuery(project_id=project_id, period_start=MARCH_START, period_end=MARCH_END),
        uow,
    )


class TestBaselineUseCases:
    def test_create_returns_draft_v1(self, uow, project_id, user_id):
        dto = _create(uow, project_id, user_id)
        assert dto.version_number == 1
        assert dto.status == "DRAFT"
        assert dto.baseline_total == 100000.0
        assert dto.created_by_id == str(user_id)

    def test_approve_then_supersede(self, uow, project_id, user_id):
        a = _create(uow, project_id, user_id)
        _approve(uow, a.id, user_id)
        b = _create(uow, project_id, user_id, total=120000.0)
        approver = uuid.uuid4()
        _approve(uow, b.id, approver)

        history = ListBaselinesUseCase().execute(project_id, uow)
        assert [h.version_number for h in history] == [1, 2]
        assert history[0].status == "SUPERSEDED"
        assert history[0].superseded_at is not None
        assert history[0].superseded_by_user_id == str(approver)
        assert [h.id for h in history if h.status == "APPROVED"] == [b.id]

    def test_update_draft(self, uow, project_id, user_id):
        a = _create(uow, project_id, user_id)
        dto = UpdateBaselineUseCase().execute(
            UpdateBaselineCommand(
                baseline_id=uuid.UUID(a.id),
                acting_user_id=user_id,
                baseline_by_category={"labor": 60000, "materials": 40000},
            ),
            uow,
        )
        assert dto.baseline_by_category == {"labor": 60000, "materials": 40000}
        assert dto.baseline_total == 100000.0

    def test_update_approved_fails(self, uow, project_id, user_id):
        a = _create(uow, project_id, user_id)
        _approve(uow, a.id, user_id)
        with pytest.raises(InvalidStateError):
            UpdateBaselineUseCase().execute(
                UpdateBaselineCommand(baseline_id=uuid.UUID(a.id), acting_user_id=user_id,
                                      baseline_total=5),
                uow,
            )

    def test_delete_draft(self, uow, project_id, user_id):
        a = _create(uow, project_id, user_id)
        DeleteBaselineUseCase().execute(
            DeleteBaselineCommand(baseline_id=uuid.UUID(a.id), acting_user_id=user_id), uow
        )
        with pytest.raises(NotFoundError):
            GetBaselineUseCase().execute(uuid.UUID(a.id), uow)
        # Deleting the draft frees the slot for a new one
        assert _create(uow, project_id, user_id).version_number == 1

    def test_unknown_baseline(self, uow, user_id):
        with pytest.raises(NotFoundError):
            _approve(uow, str(uuid.uuid4()), user_id)

    def test_approval_loses_race(self, uow, project_id, user_id, monkeypatch, caplog):
        a = _create(uow, project_id, user_id)
        commit = uow.baselines.commit_approval
        rival = uuid.uuid4()

        def rival_commits_first(approved, superseded):
            commit(*BaselineLifecycleService().approve_baseline(
                uow.baselines.get(approved.id), uow.baselines.list_for_project(project_id), rival
            ))
            commit(approved, superseded)

        monkeypatch.setattr(uow.baselines, "commit_approval", rival_commits_first)
        with caplog.at_level(logging.WARNING, logger="application"):
            with pytest.raises(ApprovalConflictError):
                _approve(uow, a.id, user_id)

        assert "lost a race" in caplog.text
        winner = GetBaselineUseCase().execute(uuid.UUID(a.id), uow)
        assert winner.status == "APPROVED"
        assert winner.approved_by_id == str(rival)


class TestActualUseCases:
    def test_round_trip(self, uow, project_id, user_id):
        created = _add_actual(uow, project_id, user_id, 1234.5,
                              start=date(2025, 3, 3), end=date(2025, 3, 9))
        loaded = GetActualUseCase().execute(uuid.UUID(created.id), uow)
        assert loaded.period_start == "2025-03-03"
        assert loaded.period_end == "2025-03-09"
        assert loaded.actual_total == 1234.5
        assert loaded.source == "MANUAL"

    def test_invalid_period(self, uow, project_id, user_id):
        with pytest.raises(ValidationError):
            _add_actual(uow, project_id, user_id, 10, start=MARCH_END, end=MARCH_START)

    def test_update_and_delete(self, uow, project_id, user_id):
        created = _add_actual(uow, project_id, user_id, 100)
        editor = uuid.uuid4()
        updated = UpdateActualUseCase().execute(
            UpdateActualCommand(actual_id=uuid.UUID(created.id), acting_user_id=editor,
                                actual_total=250),
            uow,
        )
        assert updated.actual_total == 250.0
        assert updated.updated_by_id == str(editor)
        assert updated.created_by_id == str(user_id)

        DeleteActualUseCase().execute(
            DeleteActualCommand(actual_id=uuid.UUID(created.id), acting_user_id=editor), uow
        )
        with pytest.raises(NotFoundError):
            GetActualUseCase().execute(uuid.UUID(created.id), uow)

    def test_update_rejects_inverted_period(self, uow, project_id, user_id):
        created = _add_actual(uow, project_id, user_id, 100)
        with pytest.raises(ValidationError):
            UpdateActualUseCase().execute(
                UpdateActualCommand(actual_id=uuid.UUID(created.id), acting_user_id=user_id,
                                    period_start=date(2025, 4, 15)),
                uow,
            )
        assert GetActualUseCase().execute(uuid.UUID(created.id), uow).period_start == "2025-03-01"


class TestBudgetSummary:
    def test_empty_project(self, uow, project_id):
        summary = GetBudgetSummaryUseCase().execute(project_id, uow)
        assert summary.baseline is None
        assert summary.actuals == []
        assert summary.total_actual == 0.0
        assert summary.variance_total == 0.0
        assert summary.variance_percent is None
        assert summary.ev is None

    def test_full_summary(self, uow, project_id, user_id):
        a = _create(uow, project_id, user_id)
        _approve(uow, a.id, user_id)
        _add_actual(uow, project_id, user_id, 40000, start=date(2025, 4, 1), end=date(2025, 4, 30))
        _add_actual(uow, project_id, user_id, 20000)
        uow.progress.set_progress(project_id, 0.5)

        summary = GetBudgetSummaryUseCase().execute(project_id, uow)
        assert summary.baseline.id == a.id
        assert [x.period_start for x in summary.actuals] == ["2025-03-01", "2025-04-01"]
        assert summary.total_actual == 60000.0
        assert summary.variance_total == -40000.0
        assert summary.variance_percent == -40.0
        assert summary.ev.ev == 50000.0
        assert summary.ev.eac == 110000.0
        assert summary.ev.forecast_status == "AT_RISK"

    def test_no_progress_means_no_ev(self, uow, project_id, user_id):
        _create(uow, project_id, user_id)
        summary = GetBudgetSummaryUseCase().execute(project_id, uow)
        assert summary.baseline is not None
        assert summary.ev is None

    def test_approved_preferred_over_newer_draft(self, uow, project_id, user_id):
        a = _create(uow, project_id, user_id)
        _approve(uow, a.id, user_id)
        _create(uow, project_id, user_id, total=999.0)
        summary = GetBudgetSummaryUseCase().execute(project_id, uow)
        assert summary.baseline.id == a.id

    def test_draft_used_when_nothing_approved(self, uow, project_id, user_id):
        a = _create(uow, project_id, user_id)
        assert GetBudgetSummaryUseCase().execute(project_id, uow).baseline.id == a.id

    def test_spi_and_cpi_policy(self, uow, project_id, user_id):
        uow.policies.set_policy(project_id, EffectiveBudgetPolicy(
            forecasting_rules=ForecastingRules(eac_formula=EacFormula.CPI_BASED, spi_enabled=True)
        ))
        _create(uow, project_id, user_id)
        _add_actual(uow, project_id, user_id, 60000)
        uow.progress.set_progress(project_id, 0.5, planned_value=40000)

        ev = GetBudgetSummaryUseCase().execute(project_id, uow, as_of=date(2025, 3, 31)).ev
        assert ev.spi == 1.25
        assert ev.eac == pytest.approx(120000.0, abs=0.01)
        assert ev.forecast_status == "AT_RISK"


class TestCostSuggestion:
    def test_manual_only(self, uow, project_id, half_time_allocation):
        uow.allocations.set_allocations(project_id, [half_time_allocation])
        result = _suggest(uow, project_id)
        assert result.available is False
        assert result.reason == "manual-only"
        assert result.suggestion is None
        assert result.comparison is None

    def test_under_reported_without_actuals(self, uow, project_id, hybrid_policy, half_time_allocation):
        uow.policies.set_policy(project_id, hybrid_policy)
        uow.allocations.set_allocations(project_id, [half_time_allocation])
        result = _suggest(uow, project_id)
        assert result.available is True
        assert result.suggestion.derived_total == 2000.0
        assert result.suggestion.weekly_breakdown[0].week_start == WEEK_1.isoformat()
        assert result.suggestion.weekly_breakdown[0].allocations[0].rate_source == "resource_default"
        assert result.suggestion.policy.mode == "HYBRID"
        assert result.comparison.existing_actual_total == 0.0
        assert result.comparison.delta == 2000.0
        assert result.comparison.delta_direction == "UNDER_REPORTED"

    @pytest.mark.parametrize("actual,direction", [
        (2000.0, "ALIGNED"),
        (1990.0, "ALIGNED"),
        (2600.0, "OVER_REPORTED"),
    ])
    def test_comparison_against_actuals(
        self, uow, project_id, user_id, hybrid_policy, half_time_allocation, actual, direction
    ):
        uow.policies.set_policy(project_id, hybrid_policy)
        uow.allocations.set_allocations(project_id, [half_time_allocation])
        _add_actual(uow, project_id, user_id, actual, start=date(2025, 3, 3), end=date(2025, 3, 9))
        _add_actual(uow, project_id, user_id, 5000, start=date(2025, 5, 1), end=date(2025, 5, 31))
        assert _suggest(uow, project_id).comparison.delta_direction == direction

    def test_deterministic(self, uow, project_id, user_id, hybrid_policy, half_time_allocation):
        uow.policies.set_policy(project_id, hybrid_policy)
        uow.allocations.set_allocations(project_id, [
            half_time_allocation,
            AllocationRecord(user_id=uuid.uuid4(), week_start=WEEK_1, allocation_percent=100),
        ])
        _add_actual(uow, project_id, user_id, 1500)
        assert _suggest(uow, project_id) == _suggest(uow, project_id)

    def test_unpriced_line_flagged_as_skipped(self, uow, project_id, hybrid_policy, half_time_allocation):
        uow.policies.set_policy(project_id, hybrid_policy)
        uow.allocations.set_allocations(project_id, [
            half_time_allocation,
            AllocationRecord(user_id=uuid.uuid4(), week_start=WEEK_1, allocation_percent=100),
        ])
        suggestion = _suggest(uow, project_id).suggestion
        week = suggestion.weekly_breakdown[0]
        priced, unpriced = week.allocations
        assert priced.skipped is False
        assert unpriced.skipped is True
        assert unpriced.rate_source == "fallback_zero"
        assert unpriced.line_cost == 0.0
        assert week.total_hours == 20.0
        assert suggestion.skipped_no_rate == 1

    def test_comparison_engine_from_config(self, uow, project_id, hybrid_policy):
        uow.policies.set_policy(project_id, hybrid_policy)
        result = GetCostSuggestionUseCase().execute(
            GetCostSuggestionQuery(project_id=project_id, period_start=MARCH_START,
                                   period_end=MARCH_END),
            uow,
        )
        assert result.available is True
        assert result.suggestion.derived_total == 0.0
        assert result.comparison.delta_direction == "ALIGNED"


class TestEffectivePolicy:
    def test_default_policy(self, uow, project_id):
        dto = GetEffectivePolicyUseCase().execute(project_id, uow)
        assert dto.forecasting_rules.eac_formula == "AC_PLUS_REMAINING"
        assert dto.threshold_rules.forecast_overrun_block_percent == 25.0
        assert dto.cost_derivation_rules.mode == "MANUAL_ONLY"

    def test_project_policy(self, uow, project_id, hybrid_policy):
        uow.policies.set_policy(project_id, hybrid_policy)
        dto = GetEffectivePolicyUseCase().execute(project_id, uow)
        assert dto.cost_derivation_rules.mode == "HYBRID"
