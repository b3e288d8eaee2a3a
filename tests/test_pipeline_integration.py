from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from vault_agent.config import Settings
from vault_agent.journal.store import JournalStore
from vault_agent.pipeline import VaultLoop
from vault_agent.risk.gate import RiskGate
from vault_agent.strategy.evaluator import StrategyEvaluator
from vault_agent.types import (
    Candidate,
    Decision,
    EnterSimpleParams,
    ExecutionResult,
    Observation,
    PortfolioSnapshot,
    Recommendation,
    RiskVerdict,
    SimplePosition,
    YieldOpportunity,
)

_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _build_observation(value: float = 1000.0, reserve: float = 1.0) -> Observation:
    position = SimplePosition(token="USDC", amount=value, value=value, yield_pct=3.0)
    snapshot = PortfolioSnapshot.from_positions(reserve=reserve, positions=[position])
    opportunity = YieldOpportunity(
        protocol="kamino-lending",
        pool="USDC Supply",
        asset="USDC",
        yield_pct=12.0,
        risk_tier="low",
        liquidity=5_000_000.0,
    )
    return Observation(snapshot=snapshot, opportunities=[opportunity])


class _FakeObserver:
    def __init__(self, *observations: Observation | Exception) -> None:
        self._queue = list(observations)
        self.calls = 0

    def observe(self) -> Observation:
        self.calls += 1
        item = self._queue.pop(0) if len(self._queue) > 1 else self._queue[0]
        if isinstance(item, Exception):
            raise item
        return item


class _FakeExecutor:
    def __init__(self, error: Exception | None = None) -> None:
        self._error = error
        self.executed: list[Decision] = []

    def execute(self, decision: Decision) -> ExecutionResult:
        self.executed.append(decision)
        if self._error is not None:
            raise self._error
        return ExecutionResult(signature=f"sig-{len(self.executed)}")


class _MemoryLog:
    def __init__(self) -> None:
        self.records: list[dict[str, Any]] = []

    def log(self, decision: Decision) -> None:
        self.records.append(decision.to_dict())


def _build_loop(
    observer: _FakeObserver,
    executor: _FakeExecutor | None = None,
    *,
    waits: list[float] | None = None,
    journal: JournalStore | None = None,
    **overrides: Any,
) -> tuple[VaultLoop, _MemoryLog]:
    settings = Settings(journal_dir="data/journal", max_break_even_days=30.0, **overrides)
    log = _MemoryLog()
    recorded = waits if waits is not None else []
    loop = VaultLoop(
        settings,
        observer=observer,
        executor=executor or _FakeExecutor(),
        decision_log=log,
        journal=journal,
        risk_gate=RiskGate(settings, clock=lambda: _NOW),
        wait=recorded.append,
    )
    return loop, log


def test_simulation_only_logs_would_execute_without_acting() -> None:
    executor = _FakeExecutor()
    loop, log = _build_loop(_FakeObserver(_build_observation()), executor)

    result = loop.run_cycle()

    assert result.decision.action == "enter_simple"
    assert result.decision.disposition == "would_execute"
    assert not result.should_act
    assert result.outcome is None
    assert "would execute enter_simple" in result.reason
    assert executor.executed == []
    assert len(log.records) == 1
    assert loop.last_decision is result.decision
    assert loop.last_recommendation is result.recommendation


def test_act_path_records_outcome_and_relogs() -> None:
    executor = _FakeExecutor()
    loop, log = _build_loop(_FakeObserver(_build_observation()), executor, simulation_only=False)

    result = loop.run_cycle()

    assert result.should_act
    assert result.decision.disposition == "execute"
    assert len(executor.executed) == 1
    assert result.outcome is not None and result.outcome.success
    assert result.outcome.signature == "sig-1"
    assert result.outcome.value_before == 1001.0
    assert result.outcome.value_after is None
    assert [r["decision_id"] for r in log.records] == [result.decision.decision_id] * 2
    assert log.records[0]["outcome"] is None
    assert log.records[1]["outcome"]["success"] is True
    assert loop.outcome_tracker.report()["total_outcomes"] == 1


def test_outcome_settles_on_next_observation() -> None:
    observer = _FakeObserver(_build_observation(1000.0), _build_observation(1010.0))
    loop, log = _build_loop(observer, simulation_only=False)

    first = loop.run_cycle()
    loop.run_cycle()

    assert first.outcome is not None
    assert first.outcome.value_after == 1011.0
    assert first.outcome.yield_after_pct == 3.0
    settled = log.records[2]
    assert settled["decision_id"] == first.decision.decision_id
    assert settled["outcome"]["value_after"] == 1011.0
    report = loop.outcome_tracker.report()
    assert report["total_pnl"] == pytest.approx(10.0)


def test_daily_loss_breaker_forces_hold() -> None:
    observer = _FakeObserver(_build_observation(1000.0), _build_observation(900.0))
    executor = _FakeExecutor()
    loop, _ = _build_loop(observer, executor, simulation_only=False)

    loop.run_cycle()
    result = loop.run_cycle()

    assert loop.risk_gate.is_breaker_active()
    assert result.decision.action == "hold"
    assert [c.action for c in result.recommendation.rejected] == ["enter_simple"]
    assert result.reason.startswith("Circuit breaker active")
    assert len(executor.executed) == 1


def test_red_health_forces_hold() -> None:
    loop, log = _build_loop(_FakeObserver(_build_observation(reserve=0.01)), simulation_only=False)
    result = loop.run_cycle()
    assert result.health.status == "red"
    assert result.decision.action == "hold"
    assert "RED" in result.reason
    assert log.records[0]["action"] == "hold"


def test_executor_exception_becomes_failed_outcome() -> None:
    executor = _FakeExecutor(error=RuntimeError("rpc timeout"))
    loop, log = _build_loop(_FakeObserver(_build_observation()), executor, simulation_only=False)

    result = loop.run_cycle()

    assert result.outcome is not None
    assert not result.outcome.success
    assert result.outcome.error == "rpc timeout"
    assert log.records[-1]["outcome"]["error"] == "rpc timeout"
    assert loop.outcome_tracker.report()["win_rate_pct"] == 0.0


def test_snapshot_cached_even_when_orient_fails() -> None:
    class _BrokenEvaluator:
        def evaluate(self, *args: object, **kwargs: object) -> None:
            raise RuntimeError("evaluator down")

    observation = _build_observation()
    settings = Settings(journal_dir="data/journal")
    loop = VaultLoop(
        settings,
        observer=_FakeObserver(observation),
        executor=_FakeExecutor(),
        decision_log=_MemoryLog(),
        evaluator=_BrokenEvaluator(),  # type: ignore[arg-type]
    )
    with pytest.raises(RuntimeError):
        loop.run_cycle()
    assert loop.last_snapshot is observation.snapshot
    assert loop.last_recommendation is None


def test_run_forever_cools_down_after_failed_cycle() -> None:
    waits: list[float] = []
    observer = _FakeObserver(RuntimeError("rpc down"), _build_observation())
    loop, log = _build_loop(observer, waits=waits)

    loop.run_forever(max_cycles=2)

    assert loop.cycle_count == 2
    assert waits == [5 * 60.0]
    assert len(log.records) == 1
    assert not loop.is_running


def test_stop_is_honored_between_cycles() -> None:
    observer = _FakeObserver(_build_observation())
    settings = Settings(journal_dir="data/journal")
    waits: list[float] = []

    def _wait(seconds: float) -> None:
        waits.append(seconds)
        loop.stop()

    loop = VaultLoop(
        settings,
        observer=observer,
        executor=_FakeExecutor(),
        decision_log=_MemoryLog(),
        wait=_wait,
    )
    loop.run_forever()

    assert loop.cycle_count == 1
    assert waits == [settings.cycle_interval_sec]


def test_stop_before_start_runs_no_cycle() -> None:
    observer = _FakeObserver(_build_observation())
    loop, log = _build_loop(observer)

    loop.stop()
    loop.run_forever()

    assert loop.cycle_count == 0
    assert observer.calls == 0
    assert log.records == []
    assert not loop.is_running


def test_cycle_events_are_journaled(tmp_path: Path) -> None:
    journal = JournalStore(tmp_path)
    loop, _ = _build_loop(_FakeObserver(_build_observation()), journal=journal)
    loop.run_cycle()

    events = [row["event_type"] for row in journal.load_recent(10)]
    assert events == ["cycle_start", "observation", "health", "cycle_end"]


def test_unapproved_best_candidate_is_held() -> None:
    class _UnapprovedEvaluator:
        def evaluate(self, snapshot: PortfolioSnapshot, *args: object, **kwargs: object) -> Recommendation:
            params = EnterSimpleParams(
                protocol="kamino-lending",
                pool="USDC Supply",
                asset="USDC",
                target_yield_pct=12.0,
                break_even_days=4.0,
            )
            best = Candidate(
                candidate_id="simple_kamino_lending_usdc_usdc_supply",
                action="enter_simple",
                net_yield_pct=12.0,
                risk_score=10.0,
                risk_adjusted_score=90.0,
                break_even_days=4.0,
                params=params,
                justification="Deposit to USDC Supply",
                category=1,
                verdict=RiskVerdict(approved=False, risk_score=10.0, blocks=["reserve below minimum"]),
            )
            return Recommendation(
                best=best,
                alternatives=[],
                current_yield_pct=snapshot.blended_yield_pct,
                market_condition="calm",
                justification="Deposit to USDC Supply",
            )

    settings = Settings(journal_dir="data/journal", simulation_only=False)
    executor = _FakeExecutor()
    log = _MemoryLog()
    loop = VaultLoop(
        settings,
        observer=_FakeObserver(_build_observation()),
        executor=executor,
        decision_log=log,
        risk_gate=RiskGate(settings, clock=lambda: _NOW),
        evaluator=_UnapprovedEvaluator(),  # type: ignore[arg-type]
    )

    result = loop.run_cycle()

    assert result.decision.action == "hold"
    assert result.decision.proposed_action == "enter_simple"
    assert result.reason.startswith("Risk gate blocked")
    assert "reserve below minimum" in result.reason
    assert not result.should_act
    assert executor.executed == []
    assert log.records[0]["action"] == "hold"


def test_final_assessment_in_decide_can_veto() -> None:
    class _FlippingGate(RiskGate):
        blocking = False

        def assess(self, *args: Any, **kwargs: Any) -> RiskVerdict:
            if self.blocking:
                return RiskVerdict(approved=False, risk_score=100.0, blocks=["state changed"])
            return super().assess(*args, **kwargs)

    settings = Settings(journal_dir="data/journal", max_break_even_days=30.0, simulation_only=False)
    gate = _FlippingGate(settings, clock=lambda: _NOW)
    evaluator = StrategyEvaluator(settings, gate)

    class _OrientThenBlock:
        def evaluate(self, *args: Any, **kwargs: Any) -> Recommendation:
            recommendation = evaluator.evaluate(*args, **kwargs)
            gate.blocking = True
            return recommendation

    executor = _FakeExecutor()
    loop = VaultLoop(
        settings,
        observer=_FakeObserver(_build_observation()),
        executor=executor,
        decision_log=_MemoryLog(),
        risk_gate=gate,
        evaluator=_OrientThenBlock(),  # type: ignore[arg-type]
    )

    result = loop.run_cycle()

    assert result.recommendation.best.action == "enter_simple"
    assert result.recommendation.best.verdict is not None
    assert result.recommendation.best.verdict.approved
    assert result.decision.action == "hold"
    assert result.reason == "Risk gate blocked: BLOCKED: state changed"
    assert executor.executed == []
