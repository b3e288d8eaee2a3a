from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from vault_agent import config
from vault_agent.config import RiskTolerance, Settings


def test_defaults() -> None:
    settings = Settings(journal_dir="data/journal")
    assert settings.simulation_only
    assert settings.risk_tolerance is RiskTolerance.BALANCED
    assert settings.reserve_min == 0.05
    assert settings.max_leverage == 3.0
    assert settings.max_break_even_days == 7.0
    assert settings.cycle_interval_sec == 120 * 60
    assert settings.retry_cooldown_sec == 5 * 60
    assert settings.journal_dir == Path("data/journal")
    profile = settings.risk_profile
    assert (profile.max_risk_score, profile.min_risk_adjusted_score, profile.preferred_leverage) == (50.0, 0.3, 2.0)


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RISK_TOLERANCE", "aggressive")
    monkeypatch.setenv("SIMULATION_ONLY", "false")
    monkeypatch.setenv("MAX_LEVERAGE", "2.5")
    settings = Settings()
    assert settings.risk_tolerance is RiskTolerance.AGGRESSIVE
    assert not settings.simulation_only
    assert settings.max_leverage == 2.5
    assert settings.risk_profile.preferred_leverage == 3.0


def test_invalid_values_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(max_ltv=1.2)
    with pytest.raises(ValidationError):
        Settings(default_slippage_bps=150.0, max_slippage_bps=100.0)


def test_reload_settings_replaces_global(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "_settings", None)
    first = config.get_settings()
    assert config.get_settings() is first
    monkeypatch.setenv("CYCLE_INTERVAL_MIN", "30")
    reloaded = config.reload_settings()
    assert reloaded is not first
    assert reloaded.cycle_interval_min == 30.0
