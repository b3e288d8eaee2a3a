"""Deterministic candidate generation.

Candidates are produced in a fixed category order (hold, simple deposits,
leveraged entries, leveraged exits). The category number and the index inside
it form the tie-break for ranking.
"""

from __future__ import annotations

import math
import re

from vault_agent.config import Settings
from vault_agent.risk.gate import RiskGate
from vault_agent.types import (
    Candidate,
    EnterLeveragedParams,
    EnterSimpleParams,
    ExitLeveragedParams,
    HoldParams,
    LeveragedOpportunity,
    PortfolioSnapshot,
    RiskTier,
    YieldOpportunity,
)

CATEGORY_HOLD = 0
CATEGORY_SIMPLE = 1
CATEGORY_LEVERAGED_ENTRY = 2
CATEGORY_LEVERAGED_EXIT = 3

MAX_SIMPLE_CANDIDATES = 3
MAX_LEVERAGED_CANDIDATES = 5
SIMPLE_SWITCH_TX_COUNT = 2
LEVERAGED_SWITCH_TX_COUNT = 4

EXIT_YIELD_FLOOR_PCT = 1.0
EXIT_RISK_SCORE = 5.0
EXIT_PRIORITY_SCORE = 50.0

_TIER_RISK: dict[RiskTier, float] = {"low": 10.0, "medium": 30.0, "high": 60.0}


def risk_adjusted_score(net_yield_pct: float, current_yield_pct: float, risk_score: float) -> float:
    """Yield improvement per unit of risk; zero-risk candidates score zero."""
    if risk_score <= 0:
        return 0.0
    return (net_yield_pct - current_yield_pct) / (risk_score / 100.0)


def leveraged_risk_score(leverage: float) -> float:
    return 25.0 + 15.0 * (leverage - 1.0)


def build_hold(snapshot: PortfolioSnapshot) -> Candidate:
    current = snapshot.blended_yield_pct
    return Candidate(
        candidate_id="hold",
        action="hold",
        net_yield_pct=current,
        risk_score=0.0,
        risk_adjusted_score=0.0,
        break_even_days=0.0,
        params=HoldParams(),
        justification=f"Continue current allocation at {current:.2f}% yield. No transaction costs.",
        category=CATEGORY_HOLD,
    )


def build_simple_candidates(
    snapshot: PortfolioSnapshot,
    opportunities: list[YieldOpportunity],
    gate: RiskGate,
) -> list[Candidate]:
    """Top simple deposits by advertised yield, excluding the high-risk tier."""
    current = snapshot.blended_yield_pct
    portfolio_value = snapshot.value_in_base
    eligible = [
        opp
        for opp in opportunities
        if opp.risk_tier != "high" and gate.validate_rate(opp.yield_pct, "simple")
    ]
    eligible.sort(key=lambda opp: opp.yield_pct, reverse=True)

    candidates: list[Candidate] = []
    for index, opp in enumerate(eligible[:MAX_SIMPLE_CANDIDATES]):
        cost = gate.switch_cost(current, opp.yield_pct, portfolio_value, SIMPLE_SWITCH_TX_COUNT)
        net_yield = opp.yield_pct if cost.profitable else current
        risk_score = _TIER_RISK[opp.risk_tier]
        verdict_text = "Profitable switch" if cost.profitable else "Not worth switching"
        justification = (
            f"Deposit to {opp.pool} ({opp.protocol}) at {opp.yield_pct:.2f}% yield. "
            f"Break-even: {_days(cost.break_even_days)}. {verdict_text}."
        )
        if opp.notes:
            justification = f"{justification} {opp.notes}"
        candidates.append(
            Candidate(
                candidate_id=f"simple_{_slug(opp.protocol)}_{_slug(opp.asset)}_{_slug(opp.pool)}",
                action="enter_simple",
                net_yield_pct=net_yield,
                risk_score=risk_score,
                risk_adjusted_score=risk_adjusted_score(net_yield, current, risk_score),
                break_even_days=cost.break_even_days,
                params=EnterSimpleParams(
                    protocol=opp.protocol,
                    pool=opp.pool,
                    asset=opp.asset,
                    target_yield_pct=opp.yield_pct,
                    break_even_days=cost.break_even_days,
                ),
                justification=justification,
                category=CATEGORY_SIMPLE,
                order=index,
            )
        )
    return candidates


def build_leveraged_entry_candidates(
    snapshot: PortfolioSnapshot,
    opportunities: list[LeveragedOpportunity],
    gate: RiskGate,
    settings: Settings,
    preferred_leverage: float,
) -> list[Candidate]:
    """Leveraged loops with enough spread, sized at the tolerance's preferred leverage."""
    current = snapshot.blended_yield_pct
    portfolio_value = snapshot.value_in_base
    leverage = min(preferred_leverage, settings.max_leverage)
    ranked = sorted(opportunities, key=lambda opp: opp.spread_pct, reverse=True)

    candidates: list[Candidate] = []
    for opp in ranked[:MAX_LEVERAGED_CANDIDATES]:
        if opp.spread_pct < settings.min_spread_pct:
            continue
        projected = opp.net_yield_at(leverage)
        if not gate.validate_rate(projected, "leveraged"):
            continue

        cost = gate.switch_cost(current, projected, portfolio_value, LEVERAGED_SWITCH_TX_COUNT)
        net_yield = projected if cost.profitable else current
        risk_score = leveraged_risk_score(leverage)
        justification = (
            f"Open {opp.collateral}/{opp.debt} loop at {leverage:.1f}x on {opp.venue}. "
            f"Staking: {opp.staking_yield_pct:.2f}%, borrow: {opp.borrow_cost_pct:.2f}%, "
            f"spread: {opp.spread_pct:.2f}%, net yield: {projected:.2f}%. "
            f"Break-even: {_days(cost.break_even_days)}."
        )
        if opp.stale_data:
            justification = f"{justification} Staking yield is a fallback estimate (stale data)."
        candidates.append(
            Candidate(
                candidate_id=f"leveraged_{_slug(opp.collateral)}_{_slug(opp.debt)}_{_slug(opp.venue)}",
                action="enter_leveraged",
                net_yield_pct=net_yield,
                risk_score=risk_score,
                risk_adjusted_score=risk_adjusted_score(net_yield, current, risk_score),
                break_even_days=cost.break_even_days,
                params=EnterLeveragedParams(
                    collateral=opp.collateral,
                    debt=opp.debt,
                    venue=opp.venue,
                    leverage=leverage,
                    staking_yield_pct=opp.staking_yield_pct,
                    borrow_cost_pct=opp.borrow_cost_pct,
                    spread_pct=opp.spread_pct,
                    target_yield_pct=projected,
                    break_even_days=cost.break_even_days,
                    slippage_bps=settings.default_slippage_bps,
                    stale_data=opp.stale_data,
                ),
                justification=justification,
                category=CATEGORY_LEVERAGED_ENTRY,
                order=len(candidates),
            )
        )
    return candidates


def build_leveraged_exit_candidates(snapshot: PortfolioSnapshot) -> list[Candidate]:
    """Exit every leveraged position whose net yield fell under the floor.

    The fixed score outranks marginal alternatives on purpose.
    """
    current = snapshot.blended_yield_pct
    candidates: list[Candidate] = []
    for position in snapshot.leveraged_positions:
        if position.net_yield_pct >= EXIT_YIELD_FLOOR_PCT:
            continue
        candidates.append(
            Candidate(
                candidate_id=f"exit_{position.position_id}",
                action="exit_leveraged",
                net_yield_pct=current,
                risk_score=EXIT_RISK_SCORE,
                risk_adjusted_score=EXIT_PRIORITY_SCORE,
                break_even_days=0.0,
                params=ExitLeveragedParams(position_id=position.position_id),
                justification=(
                    f"Close {position.collateral_token} loop {position.position_id}: net yield "
                    f"dropped to {position.net_yield_pct:.2f}%. Leverage {position.leverage:.2f}x, "
                    f"LTV {position.ltv * 100:.1f}%. Spread no longer justifies liquidation risk."
                ),
                category=CATEGORY_LEVERAGED_EXIT,
                order=len(candidates),
            )
        )
    return candidates


def _days(days: float) -> str:
    return "never" if math.isinf(days) else f"{days:.1f} days"


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_")
