"""Shared test fixtures for ghcworker tests.

Provides a fresh EventBus, a mock negotiator and fast settings so tests
never spawn stack or open real sockets.
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Ensure the repository root is on sys.path so that ``import ghcworker``
# resolves when running pytest without installing the package.
_repo_root = str(Path(__file__).resolve().parent.parent)
if _repo_root not in sys.path:
    sys.path.insert(0, _repo_root)

from fakes import make_negotiator  # noqa: E402

from ghcworker.config import settings  # noqa: E402
from ghcworker.events import EventBus, reset_event_bus  # noqa: E402

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    return EventBus()


# ---------------------------------------------------------------------------
# Worker doubles
# ---------------------------------------------------------------------------


@pytest.fixture()
def negotiator() -> MagicMock:
    return make_negotiator()


# ---------------------------------------------------------------------------
# Settings overrides
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    """Short timeouts and no project restrictions for every test."""
    monkeypatch.setattr(settings, "startup_timeout_seconds", 5.0)
    monkeypatch.setattr(settings, "blocking_call_timeout_seconds", None)
    monkeypatch.setattr(settings, "secondary_connect_timeout_seconds", 1.0)
    monkeypatch.setattr(settings, "allow_secondary_channel", True)
    monkeypatch.setattr(settings, "auto_install", True)
    monkeypatch.setattr(settings, "project_whitelist", [])
    monkeypatch.setattr(settings, "project_blacklist", [])
    monkeypatch.setattr(settings, "ghci_options", [])
    monkeypatch.setattr(settings, "stack_yaml", None)
