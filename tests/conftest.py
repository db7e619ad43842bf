# tests/conftest.py
"""Shared test fixtures.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/unit/engine/

Fakes for the local engine and the browser sampler live in tests/fixtures
so property tests and unit tests build runs the same way.
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest
from hypothesis import Phase, Verbosity, settings

from railflow.core.ledger import LedgerDB, RunLedger
from railflow.engine.clock import MockClock
from tests.fixtures.engine import FakeTurnExecutor

# =============================================================================
# Hypothesis Configuration
# =============================================================================

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Environment isolation
# =============================================================================


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep RAILFLOW_* overrides from the developer shell out of tests."""
    for key in list(os.environ):
        if key.startswith("RAILFLOW_") or key.startswith("RAIL_WEB_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("RAIL_WEB_PROFILE_ROOT", str(tmp_path / "profiles"))
    monkeypatch.setenv("RAIL_WEB_LOG_PATH", str(tmp_path / "worker.log"))


# =============================================================================
# Shared fixtures
# =============================================================================


@pytest.fixture
def mock_clock() -> MockClock:
    return MockClock(start=1000.0)


@pytest.fixture
def ledger_db() -> Iterator[LedgerDB]:
    db = LedgerDB.in_memory()
    yield db
    db.close()


@pytest.fixture
def ledger(ledger_db: LedgerDB) -> RunLedger:
    return RunLedger(ledger_db)


@pytest.fixture
def fake_engine() -> FakeTurnExecutor:
    return FakeTurnExecutor()
