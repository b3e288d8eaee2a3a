"""Risk gate: hard limits, health checks and the daily-loss circuit breaker.

Every proposed action passes through ``RiskGate.assess`` before it can be
ranked or executed. Each rule adds a penalty to the risk score and may add a
hard block; the verdict is approved only when nothing blocked.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Callable

from vault_agent.config import Settings
from vault_agent.risk.breaker import CircuitBreaker
from vault_agent.types import (
    ActionParams,
    ActionTag,
    AdjustLeverageParams,
    CircuitBreakerState,
    EnterLeveragedParams,
    EnterSimpleParams,
    HealthCheck,
    HealthReport,
    HoldParams,
    PortfolioSnapshot,
    RateKind,
    RiskVerdict,
    Severity,
    SwapParams,
    SwitchCost,
)
from vault_agent.utils.logging import get_logger, log_risk_event

SWITCH_SLIPPAGE_FRACTION = 0.003
MIN_PLAUSIBLE_YIELD_PCT = -5.0
MAX_PLAUSIBLE_YIELD_PCT = 200.0
MAX_PLAUSIBLE_LEVERAGED_YIELD_PCT = 50.0
SUSPICIOUS_TARGET_YIELD_PCT = 100.0

_LEVERAGE_ACTIONS: frozenset[ActionTag] = frozenset({"enter_leveraged", "adjust_leverage"})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RiskGate:
    """Stateful safety authority. Owns the circuit breaker; single writer."""

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings
        self._clock = clock or _utc_now
        self._breaker = CircuitBreaker()
        self._logger = get_logger("vault_agent.risk.gate")

    @property
    def breaker_state(self) -> CircuitBreakerState | None:
        return self._breaker.state

    def is_breaker_active(self) -> bool:
        return self._breaker.active

    def reset_circuit_breaker(self) -> None:
        """Manual operator override."""
        self._breaker.reset()

    def assess(
        self,
        action: ActionTag,
        snapshot: PortfolioSnapshot,
        params: ActionParams | None = None,
    ) -> RiskVerdict:
        """Gate one proposed action against all configured limits."""
        params = params if params is not None else HoldParams()
        s = self._settings
        daily = self._breaker.observe(snapshot.total_value, self._clock())

        if self._breaker.active and action != "hold":
            return RiskVerdict(
                approved=False,
                risk_score=100.0,
                blocks=[f"Circuit breaker active: {self._breaker.reason}"],
            )

        warnings: list[str] = []
        blocks: list[str] = []
        score = 0.0

        if snapshot.reserve < s.reserve_min:
            blocks.append(
                f"Liquid reserve {snapshot.reserve:.4f} below minimum {s.reserve_min:.4f} "
                f"(short {s.reserve_min - snapshot.reserve:.4f})"
            )
            score += 30

        amount = _requested_amount(params)
        if amount is not None and snapshot.total_value > 0:
            fraction = amount / snapshot.total_value
            if fraction > s.max_position_pct:
                blocks.append(
                    f"Position size {fraction * 100:.1f}% exceeds max {s.max_position_pct * 100:.1f}%"
                )
                score += 25
            elif fraction > s.max_position_pct * 0.8:
                warnings.append(f"Position size {fraction * 100:.1f}% approaching limit")
                score += 10

        if action in _LEVERAGE_ACTIONS:
            leverage = _requested_leverage(params)
            if leverage > s.max_leverage:
                blocks.append(f"Leverage {leverage:.2f}x exceeds max {s.max_leverage:.2f}x")
                score += 30
            elif leverage > s.max_leverage * 0.8:
                warnings.append(f"Leverage {leverage:.2f}x approaching max {s.max_leverage:.2f}x")
                score += 15

        for position in snapshot.leveraged_positions:
            if position.ltv > s.max_ltv:
                blocks.append(
                    f"Position {position.position_id} ({position.collateral_token}) LTV "
                    f"{position.ltv * 100:.1f}% exceeds max {s.max_ltv * 100:.1f}%"
                )
                score += 40
            elif position.ltv > s.max_ltv * 0.9:
                warnings.append(
                    f"Position {position.position_id} ({position.collateral_token}) LTV "
                    f"{position.ltv * 100:.1f}% near liquidation threshold"
                )
                score += 20

        slippage_bps = _requested_slippage(params)
        if slippage_bps is not None and slippage_bps > s.max_slippage_bps:
            blocks.append(f"Slippage {slippage_bps:.0f}bps exceeds max {s.max_slippage_bps:.0f}bps")
            score += 20

        target_yield = _target_yield(params)
        if target_yield is not None and target_yield > SUSPICIOUS_TARGET_YIELD_PCT:
            warnings.append(f"Target yield {target_yield:.1f}% seems unrealistically high")
            score += 15

        break_even = _break_even_days(params)
        if break_even is not None and break_even > s.max_break_even_days:
            warnings.append(
                f"Break-even {_fmt_days(break_even)} days exceeds {s.max_break_even_days:g} days"
            )
            score += 10

        if daily.loss_pct > s.daily_loss_breaker_pct:
            reason = (
                f"Daily loss {daily.loss_pct:.2f}% exceeds "
                f"{s.daily_loss_breaker_pct:g}% threshold"
            )
            self._breaker.trip(reason)
            blocks.append(self._breaker.reason)
            score = 100.0

        verdict = RiskVerdict(
            approved=not blocks,
            risk_score=min(100.0, score),
            warnings=warnings,
            blocks=blocks,
        )
        if blocks:
            self._logger.debug("action_blocked", action=action, blocks=blocks)
        return verdict

    def get_health(self, snapshot: PortfolioSnapshot) -> HealthReport:
        """Aggregate reserve, LTV and daily-loss checks into green/yellow/red."""
        s = self._settings
        checks: list[HealthCheck] = []

        reserve_ok = snapshot.reserve >= s.reserve_min
        checks.append(
            HealthCheck(
                name="Liquid Reserve",
                passed=reserve_ok,
                value=f"{snapshot.reserve:.4f}",
                threshold=f">= {s.reserve_min:.4f}",
                severity="info" if reserve_ok else "critical",
            )
        )

        max_ltv_pct = s.max_ltv * 100
        for position in snapshot.leveraged_positions:
            ltv_pct = position.ltv * 100
            severity: Severity = "info"
            if ltv_pct > max_ltv_pct:
                severity = "critical"
            elif ltv_pct > max_ltv_pct * 0.9:
                severity = "warning"
            checks.append(
                HealthCheck(
                    name=f"{position.collateral_token} LTV",
                    passed=ltv_pct < max_ltv_pct,
                    value=f"{ltv_pct:.1f}%",
                    threshold=f"< {max_ltv_pct:.0f}%",
                    severity=severity,
                )
            )

        daily = self._breaker.observe(snapshot.total_value, self._clock())
        loss_ok = daily.loss_pct < s.daily_loss_breaker_pct
        sign = "-" if daily.loss_pct > 0 else "+"
        checks.append(
            HealthCheck(
                name="Daily P&L",
                passed=loss_ok,
                value=f"{sign}{abs(daily.loss_pct):.2f}%",
                threshold=f"< -{s.daily_loss_breaker_pct:g}%",
                severity="info" if loss_ok else "critical",
            )
        )

        checks.append(
            HealthCheck(
                name="Portfolio Value",
                passed=True,
                value=f"{snapshot.total_value:.2f}",
                threshold="n/a",
                severity="info",
            )
        )

        severities = {check.severity for check in checks}
        if "critical" in severities:
            status = "red"
        elif "warning" in severities:
            status = "yellow"
        else:
            status = "green"
        passed = sum(1 for check in checks if check.passed)
        report = HealthReport(
            status=status,
            checks=checks,
            breaker_active=self._breaker.active,
            summary=f"Vault health {status.upper()}: {passed}/{len(checks)} checks passed",
        )
        if status != "green":
            log_risk_event(
                self._logger,
                event_type="health",
                action=status,
                failed=[check.name for check in checks if not check.passed],
            )
        return report

    def switch_cost(
        self,
        current_yield_pct: float,
        target_yield_pct: float,
        portfolio_value: float,
        tx_count: int = 2,
    ) -> SwitchCost:
        """One-off cost of moving capital and the days needed to earn it back."""
        s = self._settings
        cost = tx_count * s.tx_cost + portfolio_value * SWITCH_SLIPPAGE_FRACTION
        delta = target_yield_pct - current_yield_pct
        daily_improvement = delta / 100.0 * portfolio_value / 365.0
        break_even = cost / daily_improvement if daily_improvement > 0 else math.inf
        return SwitchCost(
            cost=cost,
            break_even_days=break_even,
            profitable=break_even < s.max_break_even_days and delta > s.min_yield_improvement_pct,
        )

    def validate_rate(self, yield_pct: float, kind: RateKind = "simple") -> bool:
        """Reject implausible yields before they turn into candidates."""
        if not math.isfinite(yield_pct):
            return False
        if yield_pct < MIN_PLAUSIBLE_YIELD_PCT or yield_pct > MAX_PLAUSIBLE_YIELD_PCT:
            return False
        if kind == "leveraged" and yield_pct > MAX_PLAUSIBLE_LEVERAGED_YIELD_PCT:
            return False
        return True


def _requested_amount(params: ActionParams) -> float | None:
    if isinstance(params, (EnterSimpleParams, EnterLeveragedParams, SwapParams)):
        return params.amount
    return None


def _requested_leverage(params: ActionParams) -> float:
    if isinstance(params, (EnterLeveragedParams, AdjustLeverageParams)):
        return params.leverage
    return 1.0


def _requested_slippage(params: ActionParams) -> float | None:
    if isinstance(params, (EnterLeveragedParams, AdjustLeverageParams, SwapParams)):
        return params.slippage_bps
    return None


def _target_yield(params: ActionParams) -> float | None:
    if isinstance(params, (EnterSimpleParams, EnterLeveragedParams)):
        return params.target_yield_pct
    return None


def _break_even_days(params: ActionParams) -> float | None:
    if isinstance(params, (EnterSimpleParams, EnterLeveragedParams)):
        return params.break_even_days
    return None


def _fmt_days(days: float) -> str:
    return "inf" if math.isinf(days) else f"{days:.1f}"
