from __future__ import annotations

import pytest

from pulsemeter.core.config import Settings, get_settings
from pulsemeter.persistence.db import build_engine, build_sessionmaker, create_schema
from pulsemeter.services.pulse.ledger import PulseService
from pulsemeter.tests.utils.pulse import FrozenClock, RecordingNotifier


@pytest.fixture(autouse=True)
def _reset_settings_cache() -> None:
    # Clear settings caches between tests to avoid env leakage.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    # Ignore any local .env so tests see the documented defaults.
    return Settings(_env_file=None, billing_webhook_enabled=False)


@pytest.fixture
async def engine(tmp_path):
    # Use a file database per test so concurrent sessions get separate connections.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'pulsemeter.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_sessionmaker(engine)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(session_factory, settings, clock, notifier) -> PulseService:
    return PulseService(session_factory, settings=settings, time_provider=clock, notifier=notifier)
