"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from tempshare.config import AppConfig, StorageSettings, set_config
from tempshare.files.service import build_services, set_services
from tempshare.main import app
from tempshare.storage import build_stores

START_TIME = 1_700_000_000.0


class FakeClock:
    """Controllable stand-in for time.time()."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    cfg = AppConfig()
    set_config(cfg)
    yield cfg
    set_config(None)


@pytest.fixture
def stores(config, clock):
    built = build_stores(StorageSettings(), clock=clock)
    yield built
    built.close()


@pytest.fixture
def services(config, stores, clock):
    """File share services on in-memory stores, installed as the global."""
    svc = build_services(config, stores=stores, clock=clock)
    set_services(svc)
    yield svc
    set_services(None)


@pytest.fixture
def api_client(services):
    """Provide a TestClient for the main FastAPI app.

    The app lifespan is not entered (no ``with`` block), so the services
    installed by the ``services`` fixture stay in place.
    """
    return TestClient(app)
