"""
infrastructure.py

In-memory implementation of all repository / collaborator interfaces and
the Unit of Work.

This is a self-contained backend that stores everything in plain Python
dicts keyed by UUID.  It is suitable for local development, demos, and
integration testing without needing a real database.

Repositories hand out copies of stored records, so a use case that fails
half-way never leaves a partially mutated record visible to other readers.
Baselines carry an optimistic `row_version`; a save whose version no longer
matches the stored one raises ConcurrentModificationError.  Approval is
written under a lock that re-checks the project's APPROVED row, which is
the in-memory equivalent of a unique partial index on
(project_id) WHERE status = 'APPROVED'.

To swap in a real database later, implement the same Abstract* interfaces
from application.py and override get_uow() in api.py:

    app.dependency_overrides[get_uow] = lambda: SqlAlchemyUnitOfWork(session)
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from datetime import date, timedelta
from typing import Dict, List, Optional

from application import (
    AbstractActualCostRepository,
    AbstractAllocationProvider,
    AbstractBaselineRepository,
    AbstractPolicyResolver,
    AbstractProgressProvider,
    AbstractUnitOfWork,
    ApprovalConflictError,
    ConcurrentModificationError,
)
from config import get_config
from model import (
    AllocationRecord,
    BaselineStatus,
    BudgetBaseline,
    EffectiveBudgetPolicy,
)
from service import week_start_of

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Generic in-memory store
# ---------------------------------------------------------------------------

class _Store(dict):
    """A plain dict with copy-on-read get/save/delete helpers."""

    def fetch(self, key: uuid.UUID):
        obj = self.get(key)
        return copy.deepcopy(obj) if obj is not None else None

    def put(self, obj) -> None:
        self[obj.id] = copy.deepcopy(obj)

    def remove(self, key: uuid.UUID) -> None:
        self.pop(key, None)

    def all(self) -> list:
        return [copy.deepcopy(obj) for obj in self.values()]


# ---------------------------------------------------------------------------
# Shared in-memory database (module-level singleton)
# Persists for the lifetime of the process; restarting uvicorn resets it.
# ---------------------------------------------------------------------------

class InMemoryDatabase:
    def __init__(self):
        self.baselines: _Store = _Store()
        self.actuals: _Store = _Store()
        # project_id -> records / values supplied by external collaborators
        self.allocations: Dict[uuid.UUID, List[AllocationRecord]] = {}
        self.policies: Dict[uuid.UUID, EffectiveBudgetPolicy] = {}
        self.percent_complete: Dict[uuid.UUID, float] = {}
        self.planned_values: Dict[uuid.UUID, float] = {}
        self.lock = threading.RLock()


# Module-level singleton, shared across all requests
_db = InMemoryDatabase()


# ---------------------------------------------------------------------------
# Repository implementations
# ---------------------------------------------------------------------------

class InMemoryBaselineRepository(AbstractBaselineRepository):
    def __init__(self, store: _Store, lock: threading.RLock):
        self._s = store
        self._lock = lock

    def get(self, baseline_id):
        return self._s.fetch(baseline_id)

    def list_for_project(self, project_id):
        return sorted(
            (b for b in self._s.all() if b.project_id == project_id),
            key=lambda b: b.version_number,
        )

    def save(self, baseline):
        with self._lock:
            stored = self._s.get(baseline.id)
            if stored is None:
                self._check_insert(baseline)
            else:
                self._check_version(stored, baseline)
            baseline.row_version += 1
            self._s.put(baseline)

    def delete_draft(self, baseline):
        with self._lock:
            stored = self._s.get(baseline.id)
            if stored is None:
                return
            self._check_version(stored, baseline)
            if stored.status != BaselineStatus.DRAFT:
                raise ConcurrentModificationError(
                    f"Baseline {baseline.id} is {stored.status.value} and can no longer be deleted."
                )
            self._s.remove(baseline.id)

    def commit_approval(self, approved, superseded):
        with self._lock:
            stored = self._s.get(approved.id)
            if (
                stored is None
                or stored.status != BaselineStatus.DRAFT
                or stored.row_version != approved.row_version
            ):
                raise ApprovalConflictError(
                    f"Baseline {approved.id} changed before it could be approved."
                )
            current = [
                b for b in self._s.values()
                if b.project_id == approved.project_id and b.status == BaselineStatus.APPROVED
            ]
            expected_id = superseded.id if superseded is not None else None
            if [b.id for b in current] != ([expected_id] if expected_id else []):
                raise ApprovalConflictError(
                    f"Another baseline of project {approved.project_id} was approved concurrently."
                )
            if superseded is not None and current[0].row_version != superseded.row_version:
                raise ApprovalConflictError(
                    f"Baseline {superseded.id} changed before it could be superseded."
                )

            if superseded is not None:
                superseded.row_version += 1
                self._s.put(superseded)
            approved.row_version += 1
            self._s.put(approved)

    def _check_insert(self, baseline: BudgetBaseline) -> None:
        for other in self._s.values():
            if other.project_id != baseline.project_id:
                continue
            if other.version_number == baseline.version_number:
                raise ConcurrentModificationError(
                    f"Baseline version {baseline.version_number} already exists "
                    f"for project {baseline.project_id}."
                )
            if baseline.status == BaselineStatus.DRAFT and other.status == BaselineStatus.DRAFT:
                raise ConcurrentModificationError(
                    f"Project {baseline.project_id} already has a DRAFT baseline."
                )

    @staticmethod
    def _check_version(stored: BudgetBaseline, incoming: BudgetBaseline) -> None:
        if stored.row_version != incoming.row_version:
            logger.debug(
                "Stale write to baseline %s: stored row_version %d, incoming %d",
                incoming.id, stored.row_version, incoming.row_version,
            )
            raise ConcurrentModificationError(
                f"Baseline {incoming.id} was modified by another request."
            )
        if stored.status == BaselineStatus.SUPERSEDED:
            raise ConcurrentModificationError(
                f"Baseline {incoming.id} is SUPERSEDED and cannot be written."
            )


class InMemoryActualCostRepository(AbstractActualCostRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, actual_id):         return self._s.fetch(actual_id)
    def list_for_project(self, project_id):
        return [a for a in self._s.all() if a.project_id == project_id]
    def list_overlapping(self, project_id, period_start, period_end):
        return [
            a for a in self.list_for_project(project_id)
            if a.period_start <= period_end and a.period_end >= period_start
        ]
    def save(self, actual):           self._s.put(actual)
    def delete(self, actual_id):      self._s.remove(actual_id)


# ---------------------------------------------------------------------------
# Collaborator implementations
# ---------------------------------------------------------------------------

class InMemoryAllocationProvider(AbstractAllocationProvider):
    """Weekly allocations registered per project; returns those whose week overlaps the period."""

    def __init__(self, allocations: Dict[uuid.UUID, List[AllocationRecord]]):
        self._allocations = allocations

    def get_allocations(self, project_id, period_start, period_end):
        return [
            a for a in self._allocations.get(project_id, [])
            if week_start_of(a.week_start) <= period_end
            and week_start_of(a.week_start) + timedelta(days=6) >= period_start
        ]

    def set_allocations(self, project_id: uuid.UUID, allocations: List[AllocationRecord]) -> None:
        self._allocations[project_id] = list(allocations)


class InMemoryPolicyResolver(AbstractPolicyResolver):
    """Explicit per-project policy if one was set, otherwise the configured default."""

    def __init__(
        self,
        policies: Dict[uuid.UUID, EffectiveBudgetPolicy],
        default_policy: Optional[EffectiveBudgetPolicy] = None,
    ):
        self._policies = policies
        self._default = default_policy

    def get_effective_policy(self, project_id):
        policy = self._policies.get(project_id)
        if policy is not None:
            return policy
        if self._default is None:
            self._default = get_config().default_policy
        return self._default

    def set_policy(self, project_id: uuid.UUID, policy: EffectiveBudgetPolicy) -> None:
        self._policies[project_id] = policy


class InMemoryProgressProvider(AbstractProgressProvider):
    def __init__(self, percent_complete: Dict[uuid.UUID, float], planned_values: Dict[uuid.UUID, float]):
        self._percent = percent_complete
        self._planned = planned_values

    def get_percent_complete(self, project_id):
        return self._percent.get(project_id)

    def get_planned_value(self, project_id, as_of: date):
        return self._planned.get(project_id)

    def set_progress(
        self,
        project_id: uuid.UUID,
        percent_complete: float,
        planned_value: Optional[float] = None,
    ) -> None:
        self._percent[project_id] = percent_complete
        if planned_value is not None:
            self._planned[project_id] = planned_value


# ---------------------------------------------------------------------------
# Unit of Work
# ---------------------------------------------------------------------------

class InMemoryUnitOfWork(AbstractUnitOfWork):
    """
    Wraps all in-memory repositories.  commit() and rollback() are no-ops
    because saves are written straight to the store; atomic multi-row writes
    (baseline approval) are handled by the repository under its lock.
    In a real SQL implementation, commit() would call session.commit().
    """

    def __init__(
        self,
        db: InMemoryDatabase = _db,
        default_policy: Optional[EffectiveBudgetPolicy] = None,
    ):
        self.baselines = InMemoryBaselineRepository(db.baselines, db.lock)
        self.actuals = InMemoryActualCostRepository(db.actuals)
        self.allocations = InMemoryAllocationProvider(db.allocations)
        self.policies = InMemoryPolicyResolver(db.policies, default_policy)
        self.progress = InMemoryProgressProvider(db.percent_complete, db.planned_values)

    def commit(self)   -> None: pass   # no-op for in-memory
    def rollback(self) -> None: pass   # no-op for in-memory
