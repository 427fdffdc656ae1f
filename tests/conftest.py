"""Shared test fixtures and configuration.

Sets up fake environment variables so gatekeeper.config doesn't sys.exit(),
and provides SQLite stores backed by a temp file.
"""

import os

# Patch env vars BEFORE any gatekeeper imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("LLM_API_KEY", "fake-llm-key-for-tests")
os.environ.setdefault("LLM_PROVIDER", "openai")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("LLM_TIMEOUT_SECONDS", "5")

from datetime import datetime, timedelta

import pytest

NOW = datetime(2025, 3, 10, 12, 0, 0)


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_gatekeeper.db")


@pytest.fixture
def stores(tmp_db_path):
    """Every store, sharing one temp-file DB."""
    from gatekeeper.data.db import Stores
    return Stores.open(tmp_db_path)


@pytest.fixture
def now():
    return NOW


def make_goal(**overrides):
    """Build a Goal with sensible defaults for tests."""
    from gatekeeper.data.models import Goal

    fields = dict(
        id="g1",
        title="Ship v1",
        desired_goal="Release the first version of the app",
        start_state="Prototype",
        current_state="Prototype",
        end_state="v1 live in the store",
        frequency="daily",
        start_date=(NOW - timedelta(days=10)).isoformat(),
        end_date=(NOW + timedelta(days=2)).isoformat(),
        is_completed=False,
        last_checked=(NOW - timedelta(hours=25)).isoformat(),
        project_id="work",
    )
    fields.update(overrides)
    return Goal(**fields)


@pytest.fixture
def goal(stores):
    """The 'Ship v1' goal, stored and due."""
    return stores.goals.add_goal(make_goal())
