"""Tests for FastAPI endpoints."""

import uuid

import pytest
from fastapi.testclient import TestClient

import application
from api import SYSTEM_USER_ID, app, get_uow
from application import ApprovalConflictError
from config import ConfigurationError
from infrastructure import InMemoryBaselineRepository, InMemoryUnitOfWork
from model import EffectiveBudgetPolicy


@pytest.fixture
def client(db):
    """Test client bound to a fresh in-memory database."""
    app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork(
        db, default_policy=EffectiveBudgetPolicy()
    )
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def pid():
    return str(uuid.uuid4())


def _create_baseline(client, pid, total=100000, headers=None):
    resp = client.post(
        f"/api/v1/projects/{pid}/budget/baselines",
        json={"baseline_total": total, "baseline_by_category": {"labor": 70000}},
        headers=headers or {},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def _add_actual(client, pid, total=2000, start="2025-03-03", end="2025-03-09"):
    return client.post(
        f"/api/v1/projects/{pid}/budget/actuals",
        json={"period_start": start, "period_end": end, "actual_total": total},
    )


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


class TestBaselineEndpoints:
    def test_create_baseline(self, client, pid):
        data = _create_baseline(client, pid)
        assert data["version_number"] == 1
        assert data["status"] == "DRAFT"
        assert data["baseline_by_category"] == {"labor": 70000}
        assert data["created_by_id"] == str(SYSTEM_USER_ID)

    def test_acting_user_header(self, client, pid):
        user = str(uuid.uuid4())
        data = _create_baseline(client, pid, headers={"X-User-Id": user})
        assert data["created_by_id"] == user

    @pytest.mark.parametrize("body", [
        {"baseline_total": 0},
        {"baseline_total": -5},
        {"baseline_total": 100, "baseline_by_category": {"labor": -1}},
    ])
    def test_create_invalid(self, client, pid, body):
        resp = client.post(f"/api/v1/projects/{pid}/budget/baselines", json=body)
        assert resp.status_code == 422

    def test_second_draft_conflicts(self, client, pid):
        _create_baseline(client, pid)
        resp = client.post(f"/api/v1/projects/{pid}/budget/baselines", json={"baseline_total": 5})
        assert resp.status_code == 409

    def test_approve_and_supersede(self, client, pid):
        a = _create_baseline(client, pid)
        resp = client.post(f"/api/v1/budget/baselines/{a['id']}/approve")
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "APPROVED"

        b = _create_baseline(client, pid, total=120000)
        assert b["version_number"] == 2
        assert client.post(f"/api/v1/budget/baselines/{b['id']}/approve").status_code == 200

        history = client.get(f"/api/v1/projects/{pid}/budget/baselines").json()["data"]
        assert [h["status"] for h in history] == ["SUPERSEDED", "APPROVED"]
        assert history[0]["superseded_at"] is not None

    def test_approve_twice_conflicts(self, client, pid):
        a = _create_baseline(client, pid)
        client.post(f"/api/v1/budget/baselines/{a['id']}/approve")
        resp = client.post(f"/api/v1/budget/baselines/{a['id']}/approve")
        assert resp.status_code == 409
        assert "DRAFT" in resp.json()["detail"]

    def test_approve_lost_race_conflicts(self, client, pid, monkeypatch):
        a = _create_baseline(client, pid)

        def approved_elsewhere(self, approved, superseded):
            raise ApprovalConflictError(
                f"Another baseline of project {approved.project_id} was approved concurrently."
            )

        monkeypatch.setattr(InMemoryBaselineRepository, "commit_approval", approved_elsewhere)
        resp = client.post(f"/api/v1/budget/baselines/{a['id']}/approve")
        assert resp.status_code == 409
        assert "approved concurrently" in resp.json()["detail"]
        assert client.get(f"/api/v1/budget/baselines/{a['id']}").json()["data"]["status"] == "DRAFT"

    def test_patch_draft_then_approved(self, client, pid):
        a = _create_baseline(client, pid)
        resp = client.patch(f"/api/v1/budget/baselines/{a['id']}", json={"baseline_total": 90000})
        assert resp.status_code == 200
        assert resp.json()["data"]["baseline_total"] == 90000

        client.post(f"/api/v1/budget/baselines/{a['id']}/approve")
        resp = client.patch(f"/api/v1/budget/baselines/{a['id']}", json={"baseline_total": 1})
        assert resp.status_code == 409

    def test_delete_draft(self, client, pid):
        a = _create_baseline(client, pid)
        assert client.delete(f"/api/v1/budget/baselines/{a['id']}").status_code == 204
        assert client.get(f"/api/v1/budget/baselines/{a['id']}").status_code == 404

    def test_unknown_baseline(self, client):
        resp = client.get(f"/api/v1/budget/baselines/{uuid.uuid4()}")
        assert resp.status_code == 404
        assert "not found" in resp.json()["detail"]


class TestActualEndpoints:
    def test_round_trip(self, client, pid):
        resp = _add_actual(client, pid, total=1234.5)
        assert resp.status_code == 201
        actual_id = resp.json()["data"]["id"]

        data = client.get(f"/api/v1/budget/actuals/{actual_id}").json()["data"]
        assert data["period_start"] == "2025-03-03"
        assert data["period_end"] == "2025-03-09"
        assert data["actual_total"] == 1234.5

    def test_inverted_period(self, client, pid):
        resp = _add_actual(client, pid, start="2025-03-09", end="2025-03-03")
        assert resp.status_code == 422

    def test_non_positive_total(self, client, pid):
        assert _add_actual(client, pid, total=0).status_code == 422

    def test_unknown_source(self, client, pid):
        resp = client.post(
            f"/api/v1/projects/{pid}/budget/actuals",
            json={"period_start": "2025-03-03", "period_end": "2025-03-09",
                  "actual_total": 10, "source": "IMPORTED"},
        )
        assert resp.status_code == 422

    def test_patch_and_delete(self, client, pid):
        actual_id = _add_actual(client, pid).json()["data"]["id"]
        resp = client.patch(f"/api/v1/budget/actuals/{actual_id}", json={"actual_total": 3000})
        assert resp.status_code == 200
        assert resp.json()["data"]["actual_total"] == 3000

        assert client.delete(f"/api/v1/budget/actuals/{actual_id}").status_code == 204
        assert client.delete(f"/api/v1/budget/actuals/{actual_id}").status_code == 404


class TestSummaryEndpoints:
    def test_summary(self, client, db, pid):
        a = _create_baseline(client, pid)
        client.post(f"/api/v1/budget/baselines/{a['id']}/approve")
        _add_actual(client, pid, total=60000)
        InMemoryUnitOfWork(db).progress.set_progress(uuid.UUID(pid), 0.5)

        data = client.get(f"/api/v1/projects/{pid}/budget").json()["data"]
        assert data["baseline"]["id"] == a["id"]
        assert data["total_actual"] == 60000
        assert data["variance_total"] == -40000
        assert data["variance_percent"] == -40.0
        assert data["ev"]["eac"] == 110000
        assert data["ev"]["forecast_status"] == "AT_RISK"

    def test_summary_empty(self, client, pid):
        data = client.get(f"/api/v1/projects/{pid}/budget").json()["data"]
        assert data["baseline"] is None
        assert data["ev"] is None

    def test_policy(self, client, pid):
        data = client.get(f"/api/v1/projects/{pid}/budget/policy").json()["data"]
        assert data["cost_derivation_rules"]["mode"] == "MANUAL_ONLY"

    def test_bad_project_id(self, client):
        assert client.get("/api/v1/projects/not-a-uuid/budget").status_code == 422


class TestCostSuggestionEndpoint:
    URL = "/api/v1/projects/{pid}/budget/cost-suggestion"

    def test_manual_only(self, client, pid):
        resp = client.get(
            self.URL.format(pid=pid),
            params={"period_start": "2025-03-01", "period_end": "2025-03-31"},
        )
        assert resp.status_code == 200
        assert resp.json()["data"] == {
            "available": False, "reason": "manual-only", "suggestion": None, "comparison": None,
        }

    def test_hybrid(self, client, db, pid, hybrid_policy, half_time_allocation):
        uow = InMemoryUnitOfWork(db)
        uow.policies.set_policy(uuid.UUID(pid), hybrid_policy)
        uow.allocations.set_allocations(uuid.UUID(pid), [half_time_allocation])
        _add_actual(client, pid, total=2000)

        data = client.get(
            self.URL.format(pid=pid),
            params={"period_start": "2025-03-01", "period_end": "2025-03-31"},
        ).json()["data"]
        assert data["available"] is True
        assert data["suggestion"]["derived_total"] == 2000
        assert data["suggestion"]["weekly_breakdown"][0]["total_hours"] == 20
        assert data["suggestion"]["weekly_breakdown"][0]["allocations"][0]["skipped"] is False
        assert data["comparison"]["delta_direction"] == "ALIGNED"

    def test_broken_config_is_unavailable(self, client, db, pid, hybrid_policy, monkeypatch):
        InMemoryUnitOfWork(db).policies.set_policy(uuid.UUID(pid), hybrid_policy)

        def broken_config():
            raise ConfigurationError("aligned_tolerance_ratio must be between 0 and 1")

        monkeypatch.setattr(application, "get_config", broken_config)
        resp = client.get(
            self.URL.format(pid=pid),
            params={"period_start": "2025-03-01", "period_end": "2025-03-31"},
        )
        assert resp.status_code == 503
        assert "aligned_tolerance_ratio" in resp.json()["detail"]

    def test_inverted_period(self, client, db, pid, hybrid_policy):
        InMemoryUnitOfWork(db).policies.set_policy(uuid.UUID(pid), hybrid_policy)
        resp = client.get(
            self.URL.format(pid=pid),
            params={"period_start": "2025-03-31", "period_end": "2025-03-01"},
        )
        assert resp.status_code == 422

    def test_missing_period(self, client, pid):
        assert client.get(self.URL.format(pid=pid)).status_code == 422
