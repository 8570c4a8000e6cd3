# tests/conftest.py
"""
Pytest configuration and shared fixtures for commission engine tests.

Every test gets a fresh in-memory SQLite database; the clock is frozen
through timeMachine so run timestamps and "as of" dates are stable.

Run:
    pytest tests -v
"""
from datetime import date, datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import core.db
from config import Config
from models import Base, Distributor, RankPromotion
from models.listeners import register_all_listeners
from mlm_system.config.ranks import Rank
from mlm_system.config.rule_tables import RuleTableProvider, build_default_version
from mlm_system.events.event_bus import eventBus
from mlm_system.network.snapshot import DistributorNode, NetworkSnapshot
from mlm_system.utils.time_machine import timeMachine

# =============================================================================
# INITIALIZE CONFIG
# =============================================================================

Config.initialize_from_env()

# =============================================================================
# CONSTANTS
# =============================================================================

FROZEN_NOW = datetime(2027, 2, 1, 9, 0, tzinfo=timezone.utc)
DEFAULT_JOIN_DATE = date(2024, 1, 1)


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture(scope="session", autouse=True)
def setup_listeners():
    """Register ledger listeners once at test session start."""
    register_all_listeners()


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine, monkeypatch):
    """Session factory, also installed as the global one used by core.db."""
    factory = sessionmaker(bind=engine)
    monkeypatch.setattr(core.db, "_engine", engine)
    monkeypatch.setattr(core.db, "_SessionFactory", factory)
    return factory


@pytest.fixture
def session(session_factory):
    """Create database session for each test."""
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# CLOCK AND EVENT BUS
# =============================================================================

@pytest.fixture(autouse=True)
def frozen_time():
    """Freeze virtual time for the duration of a test."""
    timeMachine.setTime(FROZEN_NOW, "tests")
    yield FROZEN_NOW
    timeMachine.resetToRealTime()


@pytest.fixture(autouse=True)
def clean_event_bus():
    """Drop subscribers registered by a test."""
    yield
    eventBus.clear()


# =============================================================================
# NETWORK FIXTURES
# =============================================================================

@pytest.fixture
def add_distributor(session):
    """
    Insert a distributor row (and its promotions) into the CRM mirror tables.

    Usage:
        add_distributor(4, sponsor=3, rank="ETT", promotions=[("ETT", date(2025, 3, 1))])
    """

    def _add(
            distributor_id,
            sponsor=None,
            rank="Conseiller",
            join_date=DEFAULT_JOIN_DATE,
            active=True,
            monthly_points=0,
            promotions=()
    ):
        distributor = Distributor(
            distributorID=distributor_id,
            sponsorID=sponsor,
            firstname=f"Vendor{distributor_id}",
            surname="Test",
            rank=rank,
            joinDate=join_date,
            isActive=active,
            monthlyPoints=monthly_points
        )
        session.add(distributor)
        for new_rank, effective_date in promotions:
            session.add(RankPromotion(
                distributorID=distributor_id,
                newRank=new_rank,
                effectiveDate=effective_date
            ))
        session.commit()
        return distributor

    return _add


@pytest.fixture
def build_network():
    """
    Build an in-memory snapshot from tuples.

    Usage:
        build_network([(1, None, "Manager"), (2, 1, "ETT"), (3, 2, "Conseiller")])

    Tuple: (id, sponsorId, rank[, options dict]) where options may hold
    joinDate, isActive, monthlyPoints, promotions=[(date, "ETT"), ...]
    """

    def _build(rows):
        nodes = []
        for row in rows:
            node_id, sponsor_id, rank = row[:3]
            options = row[3] if len(row) > 3 else {}
            nodes.append(DistributorNode(
                distributorId=node_id,
                rank=Rank.parse(rank),
                sponsorId=sponsor_id,
                joinDate=options.get("joinDate", DEFAULT_JOIN_DATE),
                isActive=options.get("isActive", True),
                monthlyPoints=options.get("monthlyPoints", 0),
                promotions=tuple(
                    (effective_date, Rank.parse(new_rank))
                    for effective_date, new_rank in options.get("promotions", ())
                ),
            ))
        return NetworkSnapshot(nodes)

    return _build


@pytest.fixture
def rules():
    """Provider with the built-in rule tables."""
    return RuleTableProvider([build_default_version()])
