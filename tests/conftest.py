"""
Shared fixtures. Sets environment variables before any atlas module imports.

Every test gets a fresh in-memory SQLite database (one shared connection via
StaticPool, foreign keys ON) seeded with nothing; the ``ajuy`` fixture adds
the reference hierarchy from scripts/seed_iloilo.py:

    Ajuy (AJY, Iloilo) → Adcadarao (ADC) → Zone 1, Zone 2
"""

import os

# Must be set before atlas.config is imported anywhere
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("LOGFIRE_TOKEN", None)

from datetime import date, datetime, timezone

import pytest
from fastapi.testclient import TestClient

from atlas.access import AccessGate
from atlas.aggregation import AggregationEngine
from atlas.database import Base, SessionLocal, engine, init_db
from atlas.integrity import IntegrityGuard
from atlas.main import app, get_clock
from atlas.schemas import (
    AdminAccountCreate,
    HouseholdCreate,
    NodeType,
    ResidentCreate,
    UserRole,
)
from atlas.store import SqlAlchemyStore
from scripts.seed_iloilo import seed

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Clock that always returns the same instant."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


# ============================================
# Database
# ============================================

@pytest.fixture
def db():
    """Fresh schema per test."""
    init_db()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def store(db):
    return SqlAlchemyStore(db)


@pytest.fixture
def guard(store):
    return IntegrityGuard(store)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def aggregation(store, clock):
    return AggregationEngine(store, clock)


@pytest.fixture
def gate(store):
    return AccessGate(store)


@pytest.fixture
def ajuy(db):
    """Ids of the seeded Ajuy → Adcadarao → Zone 1/Zone 2 hierarchy."""
    return seed(db)


# ============================================
# Builders
# ============================================

def add_household(guard, zone_id, name="Dela Cruz Household"):
    return guard.create(NodeType.HOUSEHOLD, HouseholdCreate(name=name, zone_id=zone_id))


def add_resident(guard, household_id, first_name="Juan", **fields):
    data = {
        "first_name": first_name,
        "last_name": "Dela Cruz",
        "birthdate": date(1990, 1, 1),
        "gender": "Male",
        "household_id": household_id,
    }
    data.update(fields)
    return guard.create(NodeType.RESIDENT, ResidentCreate(**data))


def add_admin(guard, email, role=UserRole.MUNICIPALITY_ADMIN, **scope):
    return guard.create(
        NodeType.ADMIN,
        AdminAccountCreate(email=email, first_name="Admin", last_name="User", role=role, **scope),
    )


# ============================================
# Transport
# ============================================

@pytest.fixture
def client(db, clock):
    """TestClient sharing the test database; the clock is pinned to NOW."""
    app.dependency_overrides[get_clock] = lambda: clock
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def super_admin_headers():
    return {"X-Atlas-Role": "SuperAdmin"}


@pytest.fixture
def municipality_admin_headers(ajuy):
    return {
        "X-Atlas-Role": "MunicipalityAdmin",
        "X-Atlas-Municipality-Id": str(ajuy["municipality_id"]),
    }
