"""Tests for configuration checks."""

import pytest

from moltbot_fleet.config import Config
from moltbot_fleet.core.errors import ConfigurationError


@pytest.mark.parametrize("setting", ["abc", "1.5", "-3", ""])
def test_malformed_compose_timeout_rejected(monkeypatch, setting):
    monkeypatch.setattr(Config, "COMPOSE_TIMEOUT_SETTING", setting)
    with pytest.raises(ConfigurationError, match="MOLTBOT_COMPOSE_TIMEOUT"):
        Config.validate()
