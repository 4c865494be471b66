# tests/conftest.py
"""
Pytest configuration and shared fixtures for income engine tests.

Every test gets a fresh in-memory SQLite database and deterministic
configuration (50% referral, 5/4/3/1/1/1 levels, 10% global, 1024 cycle).

Run:
    pytest tests -v
"""
import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import Config
from core.db import bind_engine
from models.base import Base
import models  # noqa: F401  registers all tables
from mlm_system.config.ranks import reset_rank_config_cache
from mlm_system.events.event_bus import eventBus
from mlm_system.store.ledger_store import LedgerStore
from mlm_system.services.income_engine import IncomeEngine
from mlm_system.utils.time_machine import timeMachine

# =============================================================================
# CONSTANTS
# =============================================================================

DEFAULT_CONFIG = {
    Config.DATABASE_URL: "sqlite://",
    Config.REFERRAL_PERCENTAGE: Decimal("50"),
    Config.LEVEL_PERCENTAGES: [Decimal(p) for p in ("5", "4", "3", "1", "1", "1")],
    Config.MAX_UPLINE_LEVELS: 6,
    Config.GLOBAL_PERCENTAGE: Decimal("10"),
    Config.GLOBAL_LEVELS: 10,
    Config.CYCLE_SIZE: 1024,
    Config.AUTO_TOPUP_ENABLED: True,
    Config.REID_ENABLED: False,
    Config.CYCLE_SWEEP_INTERVAL: 300,
    Config.RANK_CONFIG: None,
    Config.RANK_CONFIG_PATH: None,
    Config.CURRENCY: "USD",
}

# Small table for cycle tests: "starter" pays 10.00 per cycle at 10%
TEST_RANK_TABLE = {
    "starter": {
        "name": "Starter", "index": 1, "activationAmount": "100",
        "benefits": {"referralIncome": True, "levelIncome": True, "globalIncome": True, "retopupIncome": True},
    },
    "pro": {
        "name": "Pro", "index": 2, "activationAmount": "200",
        "benefits": {"referralIncome": True, "levelIncome": True, "globalIncome": True, "retopupIncome": True},
    },
    "elite": {
        "name": "Elite", "index": 3, "activationAmount": "400",
        "benefits": {"referralIncome": True, "levelIncome": True, "globalIncome": True, "retopupIncome": True},
    },
}


# =============================================================================
# CONFIG FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def test_config():
    """Deterministic configuration, clean rank cache, event bus and clock."""
    for key, value in DEFAULT_CONFIG.items():
        Config.set(key, value, source="tests")

    reset_rank_config_cache()
    eventBus.clear()
    timeMachine.resetToRealTime()

    yield Config

    for key, value in DEFAULT_CONFIG.items():
        Config.set(key, value, source="tests")

    reset_rank_config_cache()
    eventBus.clear()
    timeMachine.resetToRealTime()


@pytest.fixture
def test_ranks():
    """Switch to the 3-rank test table."""
    Config.set(Config.RANK_CONFIG, TEST_RANK_TABLE, source="tests")
    reset_rank_config_cache()
    return TEST_RANK_TABLE


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture
def engine():
    """Fresh in-memory database, shared by every session of the test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    bind_engine(engine)

    yield engine

    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session(engine):
    """Create database session for each test."""
    Session = sessionmaker(bind=engine)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def store(session):
    return LedgerStore(session)


@pytest.fixture
def income_engine(store):
    return IncomeEngine(store)


# =============================================================================
# HELPER FIXTURES
# =============================================================================

@pytest.fixture
def run():
    """Run a coroutine to completion."""
    return asyncio.run


@pytest.fixture
def make_user(store, run):
    """
    Create a user.

    Usage:
        make_user("u1", sponsor="root", rank="pearl")
    """

    def _make(userId, sponsor=None, rank="pearl", active=True, **fields):
        return run(store.createUser(
            userId=userId,
            sponsorId=sponsor,
            firstname=userId,
            currentRank=rank,
            isActive=active,
            **fields
        ))

    return _make


@pytest.fixture
def make_chain(make_user):
    """
    Create a sponsor chain U<n> <- ... <- U1 <- activator.

    Returns:
        List of ids [U1, ..., U<n>] nearest first; U<n> is the root
    """

    def _make(length=6, activator="A", inactive=(), rank="pearl"):
        ids = [f"U{i}" for i in range(1, length + 1)]

        sponsor = None
        for userId in reversed(ids):
            make_user(userId, sponsor=sponsor, rank=rank, active=userId not in inactive)
            sponsor = userId

        make_user(activator, sponsor=ids[0] if ids else None, rank=None, active=False)
        return ids

    return _make


@pytest.fixture
def captured_events():
    """Subscribe a recorder to events, returns {eventName: [data, ...]}."""
    events = {}

    def _capture(*eventNames):
        for name in eventNames:
            events[name] = []

            def _handler(data, _name=name):
                events[_name].append(data)

            _handler.__name__ = f"capture_{name}"
            eventBus.subscribe(name, _handler)
        return events

    return _capture
