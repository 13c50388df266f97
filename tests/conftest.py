import asyncio
import sys
from pathlib import Path
from typing import Any, Callable, Dict

ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

import pytest
from fastapi.testclient import TestClient

from config import settings
from main import create_app
from services.accuracy import accuracy_evaluator
from services.database import database
from services.event_bus import live_hub
from services.forecast import forecast_engine
from services.jobs import job_registry
from services.notifications import notification_gate
from services.stations import station_aggregator


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _forget_clients() -> None:
    # Clients and locks are bound to the event loop that created them
    station_aggregator._client = None  # type: ignore[attr-defined]
    forecast_engine._client = None  # type: ignore[attr-defined]
    forecast_engine._lock = None  # type: ignore[attr-defined]
    forecast_engine.clear_cache()
    notification_gate.sender._client = None  # type: ignore[attr-defined]
    notification_gate._lock = None  # type: ignore[attr-defined]
    accuracy_evaluator._last_result = None  # type: ignore[attr-defined]
    job_registry._lock = asyncio.Lock()  # type: ignore[attr-defined]
    live_hub._lock = asyncio.Lock()  # type: ignore[attr-defined]
    live_hub._subscribers.clear()  # type: ignore[attr-defined]


@pytest.fixture(autouse=True)
def _isolated_database(tmp_path: Path) -> None:
    original_path = database.path
    database.configure(tmp_path / "jollykite.sqlite")
    _forget_clients()
    job_registry._runs.clear()  # type: ignore[attr-defined]
    yield
    _forget_clients()
    database.configure(original_path)


@pytest.fixture
def settings_override() -> Callable[..., None]:
    original: Dict[str, Any] = {}

    def _apply(**overrides: Any) -> None:
        for key, value in overrides.items():
            if key not in original:
                original[key] = getattr(settings, key)
            setattr(settings, key, value)

    yield _apply

    for key, value in original.items():
        setattr(settings, key, value)


@pytest.fixture
def disable_scheduler(settings_override: Callable[..., None]) -> None:
    settings_override(scheduler_enabled=False)
    yield


@pytest.fixture
def client(disable_scheduler: None) -> TestClient:
    app = create_app()
    with TestClient(app) as test_client:
        yield test_client
