"""Tests for gatekeeper.config — settings validation."""

import pytest
from pydantic import ValidationError

from gatekeeper.config import Settings


def _settings(**overrides):
    return Settings(TELEGRAM_BOT_TOKEN="t", LLM_API_KEY="k", **overrides)


class TestSettings:
    def test_defaults(self):
        s = _settings()
        assert s.TIMEZONE == "UTC"
        assert s.owner_id is None

    def test_user_ids_from_csv(self):
        s = _settings(ALLOWED_USER_IDS="12345, 678")
        assert s.ALLOWED_USER_IDS == [12345, 678]
        assert s.owner_id == 12345

    def test_known_timezone(self):
        assert _settings(TIMEZONE="Asia/Jerusalem").TIMEZONE == "Asia/Jerusalem"

    def test_unknown_timezone_rejected(self):
        with pytest.raises(ValidationError, match="Unknown TIMEZONE"):
            _settings(TIMEZONE="Mars/Olympus_Mons")
