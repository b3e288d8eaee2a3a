"""Strategy evaluator: ranks candidate actions by risk-adjusted net yield."""

from __future__ import annotations

from statistics import fmean, pstdev

from vault_agent.config import RISK_PROFILES, RiskTolerance, Settings
from vault_agent.risk.gate import RiskGate
from vault_agent.strategy.candidates import (
    build_hold,
    build_leveraged_entry_candidates,
    build_leveraged_exit_candidates,
    build_simple_candidates,
)
from vault_agent.types import (
    Candidate,
    LeveragedOpportunity,
    MarketCondition,
    PortfolioSnapshot,
    Recommendation,
    YieldOpportunity,
)
from vault_agent.utils.logging import get_logger

_CONDITION_SAMPLE = 10
_MIN_CONDITION_SAMPLE = 3
_COMPRESSED_SPREAD_PCT = 1.0


class StrategyEvaluator:
    """Stateless per call; delegates every risk judgement to the gate."""

    def __init__(self, settings: Settings, gate: RiskGate) -> None:
        self._settings = settings
        self._gate = gate
        self._logger = get_logger("vault_agent.strategy.evaluator")

    def evaluate(
        self,
        snapshot: PortfolioSnapshot,
        opportunities: list[YieldOpportunity],
        leveraged_opportunities: list[LeveragedOpportunity],
        risk_tolerance: RiskTolerance | None = None,
    ) -> Recommendation:
        """Generate, gate and rank candidates. Always returns a recommendation."""
        profile = RISK_PROFILES[risk_tolerance or self._settings.risk_tolerance]
        current = snapshot.blended_yield_pct

        hold = build_hold(snapshot)
        generated = [
            *build_simple_candidates(snapshot, opportunities, self._gate),
            *build_leveraged_entry_candidates(
                snapshot,
                leveraged_opportunities,
                self._gate,
                self._settings,
                profile.preferred_leverage,
            ),
            *build_leveraged_exit_candidates(snapshot),
        ]

        surviving: list[Candidate] = [hold]
        rejected: list[Candidate] = []
        for candidate in generated:
            candidate.verdict = self._gate.assess(candidate.action, snapshot, candidate.params)
            if candidate.risk_score > profile.max_risk_score or not candidate.verdict.approved:
                rejected.append(candidate)
                self._logger.debug(
                    "candidate_rejected",
                    candidate_id=candidate.candidate_id,
                    risk_score=candidate.risk_score,
                    verdict=candidate.verdict.message,
                )
                continue
            surviving.append(candidate)

        ranked = sorted(surviving, key=lambda c: c.rank_key())
        best = ranked[0]
        condition = assess_market_condition(opportunities, leveraged_opportunities)
        return Recommendation(
            best=best,
            alternatives=ranked[1:],
            current_yield_pct=current,
            market_condition=condition,
            justification=_recommendation_text(best, current, condition),
            rejected=rejected,
        )


def assess_market_condition(
    opportunities: list[YieldOpportunity],
    leveraged_opportunities: list[LeveragedOpportunity],
) -> MarketCondition:
    """Advisory label from the dispersion of simple yields and leveraged spreads."""
    if len(opportunities) < _MIN_CONDITION_SAMPLE:
        return "uncertain"

    top = sorted((o.yield_pct for o in opportunities), reverse=True)[:_CONDITION_SAMPLE]
    mean = fmean(top)
    stddev = pstdev(top)
    mean_spread = (
        fmean(o.spread_pct for o in leveraged_opportunities) if leveraged_opportunities else 0.0
    )

    if stddev > 0.5 * mean or mean_spread < _COMPRESSED_SPREAD_PCT:
        return "volatile"
    if stddev > 0.3 * mean:
        return "uncertain"
    return "calm"


def _recommendation_text(best: Candidate, current: float, condition: MarketCondition) -> str:
    parts = [f"Market condition: {condition}."]
    if best.action == "hold":
        parts.append(f"Recommendation: HOLD at {current:.2f}% yield.")
        parts.append("No alternative offers sufficient improvement after costs.")
    else:
        improvement = best.net_yield_pct - current
        parts.append(f"Recommendation: {best.action} for {improvement:+.2f}% yield change.")
        parts.append(best.justification)
    return " ".join(parts)
