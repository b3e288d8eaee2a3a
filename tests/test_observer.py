from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from vault_agent.data.observer import (
    JsonFileSource,
    MarketObserver,
    ObservationError,
    dedupe_leveraged,
    dedupe_opportunities,
)
from vault_agent.types import LeveragedOpportunity, LeveragedPosition, YieldOpportunity


def _write_observation(path: Path, **overrides: Any) -> Path:
    payload: dict[str, Any] = {
        "portfolio": {
            "reserve": 0.5,
            "base_price": 100.0,
            "positions": [
                {"type": "simple", "token": "USDC", "amount": 500.0, "value": 500.0, "yield_pct": 4.0},
                {
                    "type": "leveraged",
                    "position_id": "loop-1",
                    "venue": "main",
                    "collateral_token": "JITOSOL",
                    "collateral_amount": 10.0,
                    "debt_token": "SOL",
                    "debt_amount": 5.0,
                    "net_value": 500.0,
                    "leverage": 2.0,
                    "ltv": 0.5,
                    "max_ltv": 0.85,
                    "collateral_yield_pct": 8.0,
                    "debt_cost_pct": 6.0,
                },
            ],
        },
        "opportunities": [
            {"protocol": "kamino-lending", "pool": "USDC", "asset": "USDC", "yield_pct": 8.0, "risk_tier": "low"},
        ],
        "leveraged_opportunities": [
            {
                "collateral": "JITOSOL",
                "debt": "SOL",
                "venue": "main",
                "staking_yield_pct": 8.0,
                "borrow_cost_pct": 6.0,
                "max_ltv": 0.85,
            },
        ],
    }
    payload.update(overrides)
    file_path = path / "observation.json"
    file_path.write_text(json.dumps(payload), encoding="utf-8")
    return file_path


def test_snapshot_derives_total_and_blended_yield(tmp_path: Path) -> None:
    snapshot = JsonFileSource(_write_observation(tmp_path)).fetch_snapshot()
    assert snapshot.total_value == 0.5 * 100.0 + 1000.0
    assert snapshot.value_in_base == 10.5
    # simple 4% and loop 8*2 - 6 = 10%, equal weights
    assert snapshot.blended_yield_pct == pytest.approx(7.0)
    assert isinstance(snapshot.leveraged_positions[0], LeveragedPosition)


def test_invalid_positions_are_skipped(tmp_path: Path) -> None:
    path = _write_observation(
        tmp_path,
        portfolio={
            "reserve": 1.0,
            "positions": [
                {"type": "simple", "token": "USDC", "amount": 10.0, "value": 10.0, "yield_pct": 5.0},
                {"type": "simple", "token": "USDT"},
                {
                    "type": "leveraged",
                    "position_id": "bad",
                    "venue": "main",
                    "collateral_token": "JITOSOL",
                    "collateral_amount": 1.0,
                    "debt_token": "SOL",
                    "debt_amount": 1.0,
                    "net_value": 1.0,
                    "leverage": 0.5,
                    "ltv": 0.5,
                    "max_ltv": 0.85,
                    "collateral_yield_pct": 8.0,
                    "debt_cost_pct": 6.0,
                },
            ],
        },
    )
    snapshot = JsonFileSource(path).fetch_snapshot()
    assert [p.token for p in snapshot.simple_positions] == ["USDC"]
    assert snapshot.leveraged_positions == []


def test_missing_staking_yield_uses_fallback_and_marks_stale(tmp_path: Path) -> None:
    path = _write_observation(
        tmp_path,
        leveraged_opportunities=[
            {"collateral": "MSOL", "debt": "SOL", "venue": "main", "staking_yield_pct": None, "borrow_cost_pct": 5.0, "max_ltv": 0.8},
        ],
    )
    (opp,) = JsonFileSource(path, fallback_staking_yield_pct=7.5).fetch_leveraged_opportunities()
    assert opp.staking_yield_pct == 7.5
    assert opp.stale_data
    assert opp.spread_pct == 2.5


def test_malformed_section_degrades_to_empty(tmp_path: Path) -> None:
    path = _write_observation(tmp_path, opportunities={"not": "a list"})
    assert JsonFileSource(path).fetch_opportunities() == []


def test_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(ObservationError):
        JsonFileSource(tmp_path / "missing.json").fetch_snapshot()


def test_missing_portfolio_section_raises(tmp_path: Path) -> None:
    path = _write_observation(tmp_path, portfolio=None)
    with pytest.raises(ObservationError):
        JsonFileSource(path).fetch_snapshot()


class _FailingSource:
    def fetch_opportunities(self) -> list[YieldOpportunity]:
        raise RuntimeError("upstream 503")

    def fetch_leveraged_opportunities(self) -> list[LeveragedOpportunity]:
        return []


def test_market_observer_degrades_failed_source(tmp_path: Path) -> None:
    source = JsonFileSource(_write_observation(tmp_path))
    observation = MarketObserver(source, [source, _FailingSource()]).observe()

    assert len(observation.opportunities) == 1
    assert len(observation.leveraged_opportunities) == 1
    assert any("upstream 503" in w for w in observation.warnings)


def test_dedupe_keeps_best_entry() -> None:
    simple = [
        YieldOpportunity("kamino-lending", "a", "USDC", 6.0, "low", 1.0),
        YieldOpportunity("Kamino-Lending", "b", "usdc", 7.0, "low", 1.0),
        YieldOpportunity("marginfi", "c", "USDC", 5.0, "medium", 1.0),
    ]
    assert [o.pool for o in dedupe_opportunities(simple)] == ["b", "c"]

    fresh = LeveragedOpportunity("JITOSOL", "SOL", "main", 8.0, 6.0, 0.85)
    stale = LeveragedOpportunity("JITOSOL", "SOL", "main", 8.0, 6.0, 0.85, stale_data=True)
    assert dedupe_leveraged([stale, fresh]) == [fresh]
