"""Shared test fixtures for the budget engine."""

import os
import sys
import uuid
from datetime import date

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from model import (
    AllocationRecord,
    CostDerivationMode,
    CostDerivationRules,
    EffectiveBudgetPolicy,
)
from infrastructure import InMemoryDatabase, InMemoryUnitOfWork


# Monday
WEEK_1 = date(2025, 3, 3)
WEEK_2 = date(2025, 3, 10)
WEEK_3 = date(2025, 3, 17)
MARCH_START = date(2025, 3, 1)
MARCH_END = date(2025, 3, 31)


@pytest.fixture
def db():
    """A fresh, empty in-memory database per test."""
    return InMemoryDatabase()


@pytest.fixture
def uow(db):
    """Unit of work over the test database with the built-in default policy."""
    return InMemoryUnitOfWork(db, default_policy=EffectiveBudgetPolicy())


@pytest.fixture
def project_id():
    return uuid.uuid4()


@pytest.fixture
def user_id():
    return uuid.uuid4()


@pytest.fixture
def hybrid_policy():
    return EffectiveBudgetPolicy(
        cost_derivation_rules=CostDerivationRules(mode=CostDerivationMode.HYBRID)
    )


@pytest.fixture
def half_time_allocation():
    """50% of a 40h week at 100/h from the resource default: 20h, 2000."""
    return AllocationRecord(
        user_id=uuid.uuid4(),
        week_start=WEEK_1,
        allocation_percent=50,
        availability_percent=100,
        resource_default_rate=100.0,
    )
