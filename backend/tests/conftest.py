"""
Pytest configuration and fixtures for the inventory truth test suite

Markers:
    - unit: Fast unit tests
    - property: Property-based tests (Hypothesis)
    - integration: Tests going through the HTTP layer
"""

import pytest
import sys
import os
from datetime import datetime, timedelta
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import models
from discrepancy_registry import DiscrepancyRegistry
from inventory_store import TimeWindow, OperatorProfile, StaticOperatorDirectory
from truth_config import TruthEngineConfig


BASE_TIME = datetime(2024, 3, 1, 12, 0, 0)


# ═══════════════════════════════════════════════════════════════════════════════
# PYTEST CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "property: Property-based tests (Hypothesis)")
    config.addinivalue_line("markers", "integration: Tests going through the HTTP layer")


# ═══════════════════════════════════════════════════════════════════════════════
# DATABASE
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.fixture(scope="function")
def db_engine():
    """In-memory SQLite shared across threads (the API tests need that)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    models.Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine):
    """Create a fresh database session for each test"""
    Session = sessionmaker(bind=db_engine, autocommit=False, autoflush=False)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def registry(db_session):
    return DiscrepancyRegistry(db_session)


# ═══════════════════════════════════════════════════════════════════════════════
# TIME & CONFIG
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.fixture
def base_time():
    return BASE_TIME


@pytest.fixture
def window():
    """30 days up to (and a day past) BASE_TIME."""
    return TimeWindow(start=BASE_TIME - timedelta(days=30), end=BASE_TIME + timedelta(days=1))


@pytest.fixture
def config():
    return TruthEngineConfig()


@pytest.fixture
def operator_directory():
    return StaticOperatorDirectory([
        OperatorProfile(id="U1", display_name="Alice Picker", role="operator"),
        OperatorProfile(id="U2", display_name="Bob Counter", role="operator"),
        OperatorProfile(id="U3", display_name="Carol Lead", role="supervisor"),
    ])


# ═══════════════════════════════════════════════════════════════════════════════
# SAMPLE DATA
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.fixture
def make_discrepancy(db_session):
    """Insert a discrepancy row directly, bypassing the registry."""
    def _make(**overrides):
        values = {
            "type": models.DiscrepancyType.CYCLE_COUNT_VARIANCE.value,
            "severity": models.Severity.MEDIUM.value,
            "sku": "SKU-A",
            "location_code": "LOC-01",
            "expected_qty": 100.0,
            "actual_qty": 80.0,
            "variance": -20.0,
            "variance_percent": -20.0,
            "variance_value": 0.0,
            "status": models.DiscrepancyStatus.OPEN.value,
            "description": "test discrepancy",
            "evidence_json": {},
            "detected_at": BASE_TIME,
            "created_at": BASE_TIME,
        }
        values.update(overrides)
        if values["status"] == models.DiscrepancyStatus.OPEN.value and "open_key" not in overrides:
            values["open_key"] = models.Discrepancy.build_open_key(
                values["sku"], values["location_code"], values["type"]
            )
        discrepancy = models.Discrepancy(**values)
        db_session.add(discrepancy)
        db_session.commit()
        db_session.refresh(discrepancy)
        return discrepancy
    return _make
