"""
Pytest configuration and shared fixtures.
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from activation_engine import ActivationEngine
from database import init_db, make_engine, make_session_factory, utcnow
from license_store import LicenseStore
from main import create_app

SCENARIO_KEY = "PS-A4B3-C8D9-E2F1"
MACHINE_A = "a1b2c3d4e5f60718293a4b5c6d7e8f90"
MACHINE_B = "0f1e2d3c4b5a69788796a5b4c3d2e1f0"
MACHINE_C = "c0ffee00c0ffee00c0ffee00c0ffee00"


@pytest.fixture
def db_engine(tmp_path):
    """File-backed SQLite engine so threads get their own connections."""
    engine = make_engine(f"sqlite:///{tmp_path / 'licenses.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def store(session_factory):
    return LicenseStore(session_factory)


@pytest.fixture
def activation_engine(store):
    return ActivationEngine(store)


@pytest.fixture
def scenario_license(store):
    """Perpetual license with two seats."""
    return store.create_license(SCENARIO_KEY, max_activations=2)


@pytest.fixture
def expired_license(store):
    return store.create_license(
        "PS-0000-1111-2222", max_activations=2, expires_at=utcnow() - timedelta(days=1)
    )


@pytest.fixture
def api_client(activation_engine):
    return TestClient(create_app(activation_engine))
