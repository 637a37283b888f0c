# tests/conftest.py
"""
Pytest configuration and shared fixtures for the Matrix engine tests.

Every test gets its own in-memory SQLite database bound to core.db, so
services and event handlers (which open their own sessions) see the same data.

Run:
    pytest tests/ -v
"""
from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from config import Config
from core.db import bind_engine, drop_all_tables, get_session
from models import Base, Member, register_all_listeners
from models.member import SUBSCRIPTION_ACTIVE
from matrix_system.config.ranks import RankLadder, set_rank_ladder
from matrix_system.services.tree_service import TreeService
from matrix_system.utils.time_machine import timeMachine

# =============================================================================
# INITIALIZE CONFIG
# =============================================================================

Config.initialize_from_env()

# =============================================================================
# CONSTANTS
# =============================================================================

# Wednesday of the first aligned period (2024-01-01 → 2024-01-08)
START_TIME = datetime(2024, 1, 3, 12, 0, 0)

# Small ladder that keeps tree fixtures readable
TEST_RANK_CONFIG = [
    {"rank_key": "starter", "rank_name": "Starter",
     "weekly_cap_cents": 10000, "eligible_depth": 1},
    {"rank_key": "bronze", "rank_name": "Bronze",
     "weekly_cap_cents": 50000, "eligible_depth": 2,
     "min_active_recruits": 2, "min_team_size": 3, "min_retention_bp": 5000,
     "min_support_actions": 1},
    {"rank_key": "silver", "rank_name": "Silver",
     "weekly_cap_cents": 1000000, "eligible_depth": 3,
     "min_active_recruits": 3, "min_team_size": 5, "min_retention_bp": 6000,
     "min_support_actions": 2},
    {"rank_key": "gold", "rank_name": "Gold",
     "weekly_cap_cents": 2000000, "eligible_depth": 4,
     "min_active_recruits": 5, "min_team_size": 10, "min_retention_bp": 7000,
     "min_support_actions": 3},
]


# =============================================================================
# SESSION-WIDE SETUP
# =============================================================================

@pytest.fixture(scope="session", autouse=True)
def setup_listeners():
    """Register listeners once at test session start."""
    register_all_listeners()


@pytest.fixture(autouse=True)
def restore_config():
    """Undo Config.set() calls made by a test."""
    saved = Config.get_all()
    yield
    Config._config.clear()
    Config._config.update(saved)


@pytest.fixture(autouse=True)
def frozen_time():
    """Pin engine time to START_TIME."""
    timeMachine.setTime(START_TIME)
    yield timeMachine
    timeMachine.resetToRealTime()


@pytest.fixture(autouse=True)
def ladder():
    """Install the test rank ladder."""
    test_ladder = RankLadder.fromConfig(TEST_RANK_CONFIG)
    set_rank_ladder(test_ladder)
    yield test_ladder
    set_rank_ladder(None)


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture
def engine():
    """Fresh in-memory database for each test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    bind_engine(engine)
    yield engine
    drop_all_tables()
    engine.dispose()


@pytest.fixture
def session(engine):
    """Create database session for each test."""
    session = get_session()
    yield session
    session.rollback()
    session.close()


# =============================================================================
# TREE FIXTURES
# =============================================================================

@pytest.fixture
def add_member(session):
    """
    Async factory: await add_member(parent=None, status='active').
    parent may be a Member or a memberID.
    """
    service = TreeService(session)

    async def _add(parent=None, status=SUBSCRIPTION_ACTIVE, eventKey=None):
        parentId = parent.memberID if isinstance(parent, Member) else parent
        return await service.addMember(parentId, subscriptionStatus=status, eventKey=eventKey)

    return _add


@pytest.fixture
def set_rank(session):
    """Put a member directly on a rank."""
    def _set(member, rankKey):
        member.rankKey = rankKey
        session.commit()
        return member

    return _set
