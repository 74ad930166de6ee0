from __future__ import annotations

from datetime import date

import pytest
from pydantic import ValidationError

from portfolio_replay.config import EngineSettings


def test_env_prefix_is_applied(monkeypatch):
    monkeypatch.setenv("PORTFOLIO_REPLAY_TARGET_ACCOUNT_ID", "acct-9")
    monkeypatch.setenv("PORTFOLIO_REPLAY_HISTORY_MAX_CONCURRENCY", "4")

    settings = EngineSettings(_env_file=None)

    assert settings.target_account_id == "acct-9"
    assert settings.history_max_concurrency == 4


def test_defaults_match_accounting_constants():
    settings = EngineSettings(_env_file=None)

    assert settings.position_epsilon == pytest.approx(0.0001)
    assert settings.pnl_noise_threshold == pytest.approx(0.01)


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        EngineSettings(_env_file=None, timezone="Mars/Olympus")
    with pytest.raises(ValidationError):
        EngineSettings(_env_file=None, position_epsilon=0)


def test_as_of_override_and_masked_token(settings):
    settings = settings.model_copy(update={"price_service_token": "secret"})

    assert settings.resolved_as_of() == date(2024, 4, 15)
    assert settings.dict_for_logging()["price_service_token"] == "***"
