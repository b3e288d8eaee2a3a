"""Observe -> Orient -> Decide -> Act control loop."""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, Callable, Protocol
from uuid import uuid4

from vault_agent.config import Settings
from vault_agent.data.defillama import DefiLlamaClient
from vault_agent.data.observer import JsonFileSource, MarketObserver, OpportunitySource
from vault_agent.exec.paper import PaperExecutor
from vault_agent.journal.outcomes import OutcomeTracker
from vault_agent.journal.store import JournalStore
from vault_agent.risk.gate import RiskGate
from vault_agent.strategy.evaluator import StrategyEvaluator
from vault_agent.types import (
    CycleResult,
    Decision,
    DecisionInputs,
    DecisionOutcome,
    Disposition,
    ExecutionResult,
    HealthReport,
    HoldParams,
    Observation,
    PortfolioSnapshot,
    Recommendation,
)
from vault_agent.utils.logging import get_logger, log_decision, log_execution

_LOGGED_ALTERNATIVES = 3


class Observer(Protocol):
    def observe(self) -> Observation: ...


class Executor(Protocol):
    def execute(self, decision: Decision) -> ExecutionResult: ...


class DecisionLogger(Protocol):
    def log(self, decision: Decision) -> None: ...


class VaultLoop:
    """Drives one cycle at a time; the loop itself is the only writer of its state."""

    def __init__(
        self,
        settings: Settings,
        *,
        observer: Observer,
        executor: Executor,
        decision_log: DecisionLogger,
        journal: JournalStore | None = None,
        risk_gate: RiskGate | None = None,
        evaluator: StrategyEvaluator | None = None,
        outcome_tracker: OutcomeTracker | None = None,
        wait: Callable[[float], object] | None = None,
    ) -> None:
        self._settings = settings
        self._observer = observer
        self._executor = executor
        self._decision_log = decision_log
        self._journal = journal
        self._gate = risk_gate or RiskGate(settings)
        self._evaluator = evaluator or StrategyEvaluator(settings, self._gate)
        self._outcomes = outcome_tracker or OutcomeTracker()
        self._stop_event = threading.Event()
        self._wait = wait or self._stop_event.wait
        self._logger = get_logger("vault_agent.pipeline")

        self._cycle_count = 0
        self._running = False
        self._last_snapshot: PortfolioSnapshot | None = None
        self._last_health: HealthReport | None = None
        self._last_recommendation: Recommendation | None = None
        self._last_decision: Decision | None = None
        self._pending_settlement: Decision | None = None

    # ==================== Status ====================

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_snapshot(self) -> PortfolioSnapshot | None:
        return self._last_snapshot

    @property
    def last_health(self) -> HealthReport | None:
        return self._last_health

    @property
    def last_recommendation(self) -> Recommendation | None:
        return self._last_recommendation

    @property
    def last_decision(self) -> Decision | None:
        return self._last_decision

    @property
    def risk_gate(self) -> RiskGate:
        return self._gate

    @property
    def outcome_tracker(self) -> OutcomeTracker:
        return self._outcomes

    # ==================== Loop ====================

    def run_forever(self, max_cycles: int | None = None) -> None:
        """Repeat cycles until stopped. A failed cycle waits the cooldown and retries."""
        self._running = True
        self._logger.info(
            "loop_started",
            interval_sec=self._settings.cycle_interval_sec,
            simulation_only=self._settings.simulation_only,
            risk_tolerance=self._settings.risk_tolerance.value,
        )
        try:
            while not self._stop_event.is_set():
                try:
                    self.run_cycle()
                    delay = self._settings.cycle_interval_sec
                except Exception as exc:  # noqa: BLE001 - a failed cycle never ends the loop.
                    self._logger.exception("cycle_failed", cycle=self._cycle_count, error=str(exc))
                    self._journal_event("error", {"cycle": self._cycle_count, "error": str(exc)})
                    delay = self._settings.retry_cooldown_sec

                if max_cycles is not None and self._cycle_count >= max_cycles:
                    break
                if self._stop_event.is_set():
                    break
                self._logger.debug("waiting_next_cycle", wait_seconds=delay)
                self._wait(delay)
        finally:
            self._running = False
            self._logger.info("loop_stopped", total_cycles=self._cycle_count)

    def stop(self) -> None:
        """Cooperative stop, honored between cycles. A stop before the loop starts skips it entirely."""
        self._stop_event.set()

    def run_cycle(self) -> CycleResult:
        self._cycle_count += 1
        cycle = self._cycle_count
        started = perf_counter()
        self._journal_event(
            "cycle_start",
            {
                "cycle": cycle,
                "simulation_only": self._settings.simulation_only,
                "started_at": datetime.now(timezone.utc).isoformat(),
            },
        )

        observation = self._observe()
        health, recommendation = self._orient(observation)
        decision, should_act, reason = self._decide(observation, health, recommendation)
        outcome = self._act(decision, observation.snapshot) if should_act else None

        elapsed_ms = (perf_counter() - started) * 1000
        self._journal_event(
            "cycle_end",
            {
                "cycle": cycle,
                "action": decision.action,
                "disposition": decision.disposition,
                "elapsed_ms": elapsed_ms,
            },
        )
        self._logger.info(
            "cycle_completed",
            cycle=cycle,
            action=decision.action,
            disposition=decision.disposition,
            elapsed_ms=round(elapsed_ms, 2),
        )
        return CycleResult(
            cycle_number=cycle,
            observation=observation,
            health=health,
            recommendation=recommendation,
            decision=decision,
            should_act=should_act,
            reason=reason,
            outcome=outcome,
            elapsed_ms=elapsed_ms,
        )

    # ==================== Phases ====================

    def _observe(self) -> Observation:
        observation = self._observer.observe()
        snapshot = observation.snapshot
        self._last_snapshot = snapshot
        self._settle_pending(snapshot)
        self._journal_event(
            "observation",
            {
                "total_value": snapshot.total_value,
                "reserve": snapshot.reserve,
                "blended_yield_pct": snapshot.blended_yield_pct,
                "positions": len(snapshot.positions),
                "opportunities": len(observation.opportunities),
                "leveraged_opportunities": len(observation.leveraged_opportunities),
                "warnings": observation.warnings,
            },
        )
        return observation

    def _orient(self, observation: Observation) -> tuple[HealthReport, Recommendation]:
        snapshot = observation.snapshot
        health = self._gate.get_health(snapshot)
        recommendation = self._evaluator.evaluate(
            snapshot,
            observation.opportunities,
            observation.leveraged_opportunities,
        )
        for rank, candidate in enumerate(recommendation.alternatives[:_LOGGED_ALTERNATIVES], start=2):
            self._logger.info(
                "alternative",
                rank=rank,
                candidate_id=candidate.candidate_id,
                action=candidate.action,
                net_yield_pct=round(candidate.net_yield_pct, 4),
                risk_adjusted_score=round(candidate.risk_adjusted_score, 4),
            )
        self._journal_event(
            "health",
            {
                "status": health.status,
                "breaker_active": health.breaker_active,
                "summary": health.summary,
                "market_condition": recommendation.market_condition,
            },
        )
        self._last_health = health
        self._last_recommendation = recommendation
        return health, recommendation

    def _decide(
        self,
        observation: Observation,
        health: HealthReport,
        recommendation: Recommendation,
    ) -> tuple[Decision, bool, str]:
        snapshot = observation.snapshot
        best = recommendation.best
        disposition: Disposition = "hold"

        if self._gate.is_breaker_active():
            state = self._gate.breaker_state
            reason = f"Circuit breaker active: {state.reason if state else 'tripped'}"
        elif health.status == "red":
            reason = "Vault health is RED: only emergency actions allowed"
        elif best.action == "hold":
            reason = recommendation.justification
        elif best.verdict is not None and not best.verdict.approved:
            reason = f"Risk gate blocked: {best.verdict.message}"
        else:
            final = self._gate.assess(best.action, snapshot, best.params)
            if not final.approved:
                reason = f"Risk gate blocked: {final.message}"
            elif self._settings.simulation_only:
                disposition = "would_execute"
                reason = f"SIMULATION: would execute {best.action}"
            else:
                disposition = "execute"
                reason = best.justification

        acting = disposition != "hold"
        if best.action == "hold":
            justification = recommendation.justification
        elif not acting:
            justification = f"{reason} (proposed {best.action}: {best.justification})"
        elif disposition == "would_execute":
            justification = f"{reason}. {recommendation.justification}"
        else:
            justification = recommendation.justification

        decision = Decision(
            decision_id=uuid4().hex,
            timestamp=datetime.now(timezone.utc),
            action=best.action if acting else "hold",
            justification=justification,
            inputs=DecisionInputs(
                current_yield_pct=snapshot.blended_yield_pct,
                target_yield_pct=best.net_yield_pct,
                risk_score=best.verdict.risk_score if best.verdict else best.risk_score,
                market_condition=recommendation.market_condition,
            ),
            params=best.params if acting else HoldParams(),
            disposition=disposition,
            proposed_action=best.action,
        )
        log_decision(
            self._logger,
            decision_id=decision.decision_id,
            action=decision.action,
            disposition=disposition,
            reason=reason,
            proposed_action=best.action,
        )
        self._decision_log.log(decision)
        self._last_decision = decision
        return decision, disposition == "execute", reason

    def _act(self, decision: Decision, snapshot: PortfolioSnapshot) -> DecisionOutcome:
        try:
            result = self._executor.execute(decision)
        except Exception as exc:  # noqa: BLE001 - executor failures become failed outcomes.
            self._logger.exception("executor_raised", decision_id=decision.decision_id)
            result = ExecutionResult(error=str(exc))

        outcome = DecisionOutcome(
            success=result.success,
            signature=result.signature,
            value_before=snapshot.total_value,
            yield_before_pct=snapshot.blended_yield_pct,
            timestamp=datetime.now(timezone.utc),
            error=result.error,
        )
        decision.outcome = outcome
        log_execution(
            self._logger,
            decision_id=decision.decision_id,
            action=decision.action,
            success=outcome.success,
            signature=outcome.signature,
            error=outcome.error,
        )
        self._decision_log.log(decision)
        self._outcomes.record(decision.decision_id, decision.action, outcome)
        self._pending_settlement = decision
        return outcome

    def _settle_pending(self, snapshot: PortfolioSnapshot) -> None:
        """Fill in the previous action's "after" figures from this cycle's snapshot."""
        decision = self._pending_settlement
        if decision is None or decision.outcome is None:
            return
        decision.outcome.value_after = snapshot.total_value
        decision.outcome.yield_after_pct = snapshot.blended_yield_pct
        self._outcomes.settle(
            decision.decision_id,
            value_after=snapshot.total_value,
            yield_after_pct=snapshot.blended_yield_pct,
        )
        self._decision_log.log(decision)
        self._pending_settlement = None
        self._logger.info(
            "outcome_settled",
            decision_id=decision.decision_id,
            value_before=decision.outcome.value_before,
            value_after=snapshot.total_value,
        )

    def _journal_event(self, event_type: str, payload: dict[str, Any]) -> None:
        if self._journal is not None:
            self._journal.append(event_type, payload)


def build_loop(settings: Settings, *, wait: Callable[[float], object] | None = None) -> VaultLoop:
    """Wire the loop with the JSON observation file, the paper executor and the journal."""
    settings.ensure_directories()
    json_source = JsonFileSource(
        settings.observation_file,
        fallback_staking_yield_pct=settings.fallback_staking_yield_pct,
    )
    sources: list[OpportunitySource] = [json_source]
    if settings.defillama_enabled:
        sources.append(DefiLlamaClient(settings))
    journal = JournalStore(settings.journal_dir)
    return VaultLoop(
        settings,
        observer=MarketObserver(json_source, sources),
        executor=PaperExecutor(settings.journal_dir, fill_tolerance_bps=settings.max_slippage_bps),
        decision_log=journal,
        journal=journal,
        wait=wait,
    )
