from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from vault_agent.config import Settings
from vault_agent.risk.breaker import CircuitBreaker
from vault_agent.risk.gate import RiskGate
from vault_agent.types import EnterSimpleParams, PortfolioSnapshot, SimplePosition


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _snapshot(total_value: float) -> PortfolioSnapshot:
    position = SimplePosition(token="USDC", amount=total_value - 1.0, value=total_value - 1.0, yield_pct=5.0)
    return PortfolioSnapshot.from_positions(reserve=1.0, positions=[position])


def _params() -> EnterSimpleParams:
    return EnterSimpleParams(
        protocol="kamino-lending",
        pool="USDC Supply",
        asset="USDC",
        target_yield_pct=10.0,
        break_even_days=3.0,
    )


def _build_gate(clock: _Clock) -> RiskGate:
    return RiskGate(Settings(journal_dir="data/journal", daily_loss_breaker_pct=5.0), clock=clock)


def test_breaker_trips_on_daily_loss_and_blocks_rest_of_day() -> None:
    clock = _Clock(datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc))
    gate = _build_gate(clock)

    assert gate.assess("enter_simple", _snapshot(1000.0), _params()).approved

    clock.now += timedelta(hours=2)
    tripped = gate.assess("enter_simple", _snapshot(900.0), _params())
    assert not tripped.approved
    assert tripped.risk_score == 100
    assert "Daily loss 10.00%" in tripped.message
    assert gate.is_breaker_active()

    # Recovered value, same day: still blocked by the latch.
    clock.now += timedelta(hours=5)
    later = gate.assess("enter_simple", _snapshot(990.0), _params())
    assert not later.approved
    assert later.blocks[0].startswith("Circuit breaker active")

    # Hold is never blocked by the breaker itself.
    assert gate.assess("hold", _snapshot(990.0)).approved


def test_breaker_auto_clears_on_next_utc_day() -> None:
    clock = _Clock(datetime(2024, 5, 1, 22, 0, tzinfo=timezone.utc))
    gate = _build_gate(clock)
    gate.assess("enter_simple", _snapshot(1000.0), _params())
    gate.assess("enter_simple", _snapshot(900.0), _params())
    assert gate.is_breaker_active()

    clock.now = datetime(2024, 5, 2, 0, 5, tzinfo=timezone.utc)
    verdict = gate.assess("enter_simple", _snapshot(900.0), _params())
    assert verdict.approved
    assert not gate.is_breaker_active()
    state = gate.breaker_state
    assert state is not None
    assert state.day_key == "2024-05-02"
    assert state.start_value == 900.0


def test_manual_reset_clears_breaker() -> None:
    clock = _Clock(datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc))
    gate = _build_gate(clock)
    gate.assess("enter_simple", _snapshot(1000.0), _params())
    gate.assess("enter_simple", _snapshot(900.0), _params())
    assert gate.is_breaker_active()

    gate.reset_circuit_breaker()
    assert not gate.is_breaker_active()
    assert gate.assess("enter_simple", _snapshot(980.0), _params()).approved


def test_health_reports_breaker_and_daily_loss() -> None:
    clock = _Clock(datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc))
    gate = _build_gate(clock)
    gate.assess("enter_simple", _snapshot(1000.0), _params())
    gate.assess("enter_simple", _snapshot(900.0), _params())

    report = gate.get_health(_snapshot(900.0))
    assert report.status == "red"
    assert report.breaker_active
    daily = next(c for c in report.checks if c.name == "Daily P&L")
    assert not daily.passed
    assert daily.value == "-10.00%"


def test_trip_is_idempotent_and_state_replaced_whole() -> None:
    breaker = CircuitBreaker()
    now = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
    first = breaker.observe(1000.0, now)
    second = breaker.observe(950.0, now)
    assert first is not second
    assert first.current_value == 1000.0
    assert second.loss_pct == pytest.approx(5.0)

    breaker.trip("first reason")
    breaker.trip("second reason")
    assert breaker.active
    assert breaker.reason == "first reason"


def test_day_key_is_utc_for_non_utc_clocks() -> None:
    tokyo = timezone(timedelta(hours=9))
    breaker = CircuitBreaker()

    # 02:00 in Tokyo on May 2nd is still May 1st in UTC.
    state = breaker.observe(1000.0, datetime(2024, 5, 2, 2, 0, tzinfo=tokyo))
    assert state.day_key == "2024-05-01"

    same_day = breaker.observe(940.0, datetime(2024, 5, 1, 20, 0, tzinfo=timezone.utc))
    assert same_day.day_key == "2024-05-01"
    assert same_day.loss_pct == pytest.approx(6.0)

    next_day = breaker.observe(940.0, datetime(2024, 5, 2, 9, 30, tzinfo=tokyo))
    assert next_day.day_key == "2024-05-02"
    assert next_day.start_value == 940.0
