"""Shared fixtures: a controllable clock and an in-memory service graph."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from config.settings import Settings
from src.services.container import TrustLedgerServices, build_services
from src.services.ledger import InMemoryLedger
from src.services.risk import StaticListScreening
from src.services.storage import InMemoryEntityStore


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        env="development",
        ledger_backend="memory",
        screening_service_url="",
        enable_auto_jobs=False,
    )


@pytest.fixture
def ledger(clock: FrozenClock) -> InMemoryLedger:
    return InMemoryLedger(clock=clock)


@pytest.fixture
def entities() -> InMemoryEntityStore:
    return InMemoryEntityStore()


@pytest.fixture
def services(
    test_settings: Settings,
    ledger: InMemoryLedger,
    entities: InMemoryEntityStore,
    clock: FrozenClock,
) -> TrustLedgerServices:
    return build_services(
        test_settings,
        ledger=ledger,
        entities=entities,
        screening=StaticListScreening(),
        clock=clock,
    )
