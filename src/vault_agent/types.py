"""Shared domain types for the vault control loop."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Literal, Union

RiskTier = Literal["low", "medium", "high"]
ActionTag = Literal[
    "hold",
    "enter_simple",
    "exit_leveraged",
    "enter_leveraged",
    "adjust_leverage",
    "swap",
]
MarketCondition = Literal["calm", "volatile", "uncertain"]
HealthLevel = Literal["green", "yellow", "red"]
Severity = Literal["info", "warning", "critical"]
RateKind = Literal["simple", "leveraged"]
Disposition = Literal["hold", "would_execute", "execute"]


# ==================== Portfolio ====================


@dataclass(frozen=True, slots=True)
class SimplePosition:
    """A plain lending deposit."""

    token: str
    amount: float
    value: float
    yield_pct: float
    position_id: str = ""


@dataclass(frozen=True, slots=True)
class LeveragedPosition:
    """A leveraged (multiply) position: collateral financed partly by debt."""

    position_id: str
    venue: str
    collateral_token: str
    collateral_amount: float
    debt_token: str
    debt_amount: float
    net_value: float
    leverage: float
    ltv: float
    max_ltv: float
    collateral_yield_pct: float
    debt_cost_pct: float

    def __post_init__(self) -> None:
        if self.leverage < 1.0:
            raise ValueError(f"leverage_below_one: {self.leverage}")
        if not 0.0 <= self.ltv < 1.0:
            raise ValueError(f"ltv_out_of_range: {self.ltv}")

    @property
    def net_yield_pct(self) -> float:
        return leveraged_net_yield(self.collateral_yield_pct, self.debt_cost_pct, self.leverage)

    @property
    def value(self) -> float:
        return self.net_value


Position = Union[SimplePosition, LeveragedPosition]


def leveraged_net_yield(collateral_yield_pct: float, debt_cost_pct: float, leverage: float) -> float:
    """Net yield of a leveraged loop; negative when borrowing costs dominate."""
    return collateral_yield_pct * leverage - debt_cost_pct * (leverage - 1.0)


@dataclass(frozen=True, slots=True)
class PortfolioSnapshot:
    """Point-in-time view of the vault. Replaced whole each cycle, never mutated."""

    timestamp: datetime
    total_value: float
    reserve: float
    positions: tuple[Position, ...] = ()
    blended_yield_pct: float = 0.0
    base_price: float = 1.0

    def __post_init__(self) -> None:
        positions_value = sum(p.value for p in self.positions)
        if self.total_value + 1e-9 < positions_value:
            raise ValueError("total_value_below_positions_value")
        if self.base_price <= 0:
            raise ValueError("base_price_must_be_positive")

    @classmethod
    def from_positions(
        cls,
        *,
        reserve: float,
        positions: list[Position] | tuple[Position, ...] = (),
        base_price: float = 1.0,
        timestamp: datetime | None = None,
    ) -> PortfolioSnapshot:
        """Build a snapshot, deriving total value and value-weighted blended yield."""
        positions = tuple(positions)
        positions_value = sum(p.value for p in positions)
        weighted = sum(p.value * _position_yield(p) for p in positions)
        blended = weighted / positions_value if positions_value > 0 else 0.0
        return cls(
            timestamp=timestamp or datetime.now(timezone.utc),
            total_value=reserve * base_price + positions_value,
            reserve=reserve,
            positions=positions,
            blended_yield_pct=blended,
            base_price=base_price,
        )

    @property
    def simple_positions(self) -> list[SimplePosition]:
        return [p for p in self.positions if isinstance(p, SimplePosition)]

    @property
    def leveraged_positions(self) -> list[LeveragedPosition]:
        return [p for p in self.positions if isinstance(p, LeveragedPosition)]

    @property
    def value_in_base(self) -> float:
        """Portfolio value expressed in base-asset units."""
        return self.total_value / self.base_price


def _position_yield(position: Position) -> float:
    if isinstance(position, LeveragedPosition):
        return position.net_yield_pct
    return position.yield_pct


# ==================== Opportunities ====================


@dataclass(frozen=True, slots=True)
class YieldOpportunity:
    """A simple deposit opportunity, valid for one cycle only."""

    protocol: str
    pool: str
    asset: str
    yield_pct: float
    risk_tier: RiskTier
    liquidity: float
    notes: str = ""


@dataclass(frozen=True, slots=True)
class LeveragedOpportunity:
    """A leveraged staking loop: stake the collateral, borrow the debt asset."""

    collateral: str
    debt: str
    venue: str
    staking_yield_pct: float
    borrow_cost_pct: float
    max_ltv: float
    stale_data: bool = False

    @property
    def spread_pct(self) -> float:
        return self.staking_yield_pct - self.borrow_cost_pct

    def net_yield_at(self, leverage: float) -> float:
        return leveraged_net_yield(self.staking_yield_pct, self.borrow_cost_pct, leverage)

    @property
    def net_yield_2x(self) -> float:
        return self.net_yield_at(2.0)

    @property
    def net_yield_3x(self) -> float:
        return self.net_yield_at(3.0)


# ==================== Action parameters ====================


@dataclass(frozen=True, slots=True)
class HoldParams:
    action: ClassVar[ActionTag] = "hold"


@dataclass(frozen=True, slots=True)
class EnterSimpleParams:
    action: ClassVar[ActionTag] = "enter_simple"

    protocol: str
    pool: str
    asset: str
    target_yield_pct: float
    break_even_days: float
    amount: float | None = None


@dataclass(frozen=True, slots=True)
class EnterLeveragedParams:
    action: ClassVar[ActionTag] = "enter_leveraged"

    collateral: str
    debt: str
    venue: str
    leverage: float
    staking_yield_pct: float
    borrow_cost_pct: float
    spread_pct: float
    target_yield_pct: float
    break_even_days: float
    slippage_bps: float | None = None
    amount: float | None = None
    stale_data: bool = False


@dataclass(frozen=True, slots=True)
class ExitLeveragedParams:
    action: ClassVar[ActionTag] = "exit_leveraged"

    position_id: str


@dataclass(frozen=True, slots=True)
class AdjustLeverageParams:
    action: ClassVar[ActionTag] = "adjust_leverage"

    position_id: str
    leverage: float
    slippage_bps: float | None = None


@dataclass(frozen=True, slots=True)
class SwapParams:
    action: ClassVar[ActionTag] = "swap"

    input_token: str
    output_token: str
    amount: float
    slippage_bps: float | None = None


ActionParams = Union[
    HoldParams,
    EnterSimpleParams,
    EnterLeveragedParams,
    ExitLeveragedParams,
    AdjustLeverageParams,
    SwapParams,
]


# ==================== Risk ====================


@dataclass(slots=True)
class RiskVerdict:
    """Result of gating one proposed action."""

    approved: bool
    risk_score: float
    warnings: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.blocks:
            return "BLOCKED: " + "; ".join(self.blocks)
        if self.warnings:
            return "Approved with warnings: " + "; ".join(self.warnings)
        return "Approved: all risk checks passed"


@dataclass(frozen=True, slots=True)
class CircuitBreakerState:
    """Day-scoped breaker and daily P&L tracker."""

    day_key: str
    start_value: float
    current_value: float
    loss_pct: float = 0.0
    tripped: bool = False
    reason: str = ""


@dataclass(frozen=True, slots=True)
class SwitchCost:
    cost: float
    break_even_days: float
    profitable: bool


@dataclass(frozen=True, slots=True)
class HealthCheck:
    name: str
    passed: bool
    value: str
    threshold: str
    severity: Severity


@dataclass(slots=True)
class HealthReport:
    status: HealthLevel
    checks: list[HealthCheck]
    breaker_active: bool
    summary: str


# ==================== Strategy ====================


@dataclass(slots=True)
class Candidate:
    """A ranked unit of decision, created fresh each cycle."""

    candidate_id: str
    action: ActionTag
    net_yield_pct: float
    risk_score: float
    risk_adjusted_score: float
    break_even_days: float
    params: ActionParams
    justification: str
    category: int
    order: int = 0
    verdict: RiskVerdict | None = None

    def rank_key(self) -> tuple[float, int, int]:
        """Descending score, then category priority, then generation index."""
        return (-self.risk_adjusted_score, self.category, self.order)


@dataclass(slots=True)
class Recommendation:
    best: Candidate
    alternatives: list[Candidate]
    current_yield_pct: float
    market_condition: MarketCondition
    justification: str
    rejected: list[Candidate] = field(default_factory=list)

    @property
    def ranked(self) -> list[Candidate]:
        return [self.best, *self.alternatives]


# ==================== Decisions ====================


@dataclass(slots=True)
class DecisionInputs:
    current_yield_pct: float
    target_yield_pct: float
    risk_score: float
    market_condition: str


@dataclass(slots=True)
class DecisionOutcome:
    """Result of the Act phase. The "after" figures settle on the next snapshot."""

    success: bool
    signature: str | None
    value_before: float
    yield_before_pct: float
    timestamp: datetime
    error: str | None = None
    value_after: float | None = None
    yield_after_pct: float | None = None

    @property
    def settled(self) -> bool:
        return self.value_after is not None


@dataclass(slots=True)
class Decision:
    decision_id: str
    timestamp: datetime
    action: ActionTag
    justification: str
    inputs: DecisionInputs
    params: ActionParams
    disposition: Disposition = "hold"
    proposed_action: ActionTag = "hold"
    outcome: DecisionOutcome | None = None

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation used by the journal."""
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        payload["params"] = {"action": self.params.action, **asdict(self.params)}
        if self.outcome is not None:
            payload["outcome"]["timestamp"] = self.outcome.timestamp.isoformat()
        return _finite(payload)


def _finite(value: Any) -> Any:
    """Replace inf/nan with None so records stay strict JSON."""
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {k: _finite(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_finite(v) for v in value]
    return value


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    signature: str | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None


# ==================== Cycle ====================


@dataclass(slots=True)
class Observation:
    snapshot: PortfolioSnapshot
    opportunities: list[YieldOpportunity] = field(default_factory=list)
    leveraged_opportunities: list[LeveragedOpportunity] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CycleResult:
    """Outcome of one OODA cycle."""

    cycle_number: int
    observation: Observation
    health: HealthReport
    recommendation: Recommendation
    decision: Decision
    should_act: bool
    reason: str
    outcome: DecisionOutcome | None = None
    elapsed_ms: float = 0.0
