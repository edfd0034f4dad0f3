from __future__ import annotations

from collections.abc import Iterator

import pytest

from fxflow.engine import set_default_engine
from fxflow.ledger import Ledger, MemorySink

FX_ENV_VARS = (
    "FX_CACHE_TTL_SECONDS",
    "FX_CACHE_MAX_ENTRIES",
    "FX_RATE_LIMIT_QPS",
    "FX_RETRY_ATTEMPTS",
    "FX_RETRY_DELAY_SECONDS",
    "FX_RETRY_BACKOFF",
    "FX_LEDGER_PATH",
    "FX_DEV_MODE",
    "FX_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Start every test from default settings and a fresh default engine."""
    for name in FX_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    set_default_engine(None)
    yield
    set_default_engine(None)


@pytest.fixture
def sink() -> MemorySink:
    return MemorySink()


@pytest.fixture
def ledger(sink: MemorySink) -> Ledger:
    return Ledger(sink)

