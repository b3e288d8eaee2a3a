"""Paper executor with a persistent local ledger."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable
from uuid import uuid4

from vault_agent.types import (
    AdjustLeverageParams,
    Decision,
    EnterLeveragedParams,
    EnterSimpleParams,
    ExecutionResult,
    ExitLeveragedParams,
    SwapParams,
)
from vault_agent.utils.logging import get_logger


@dataclass(slots=True)
class PaperLeveragedPosition:
    position_id: str
    collateral: str
    debt: str
    venue: str
    leverage: float
    opened_at: str
    stale_data: bool = False


@dataclass(slots=True)
class _PaperState:
    executions: list[dict[str, Any]] = field(default_factory=list)
    deposits: list[dict[str, Any]] = field(default_factory=list)
    positions: dict[str, PaperLeveragedPosition] = field(default_factory=dict)
    next_position: int = 1


class PaperExecutor:
    """Simulated execution keyed by action tag.

    Business failures come back as ``ExecutionResult.error``; nothing is raised
    for an order that simply cannot be filled.
    """

    def __init__(self, journal_dir: Path, *, fill_tolerance_bps: float = 100.0) -> None:
        self._fill_tolerance_bps = fill_tolerance_bps
        self._state_file = journal_dir / "paper_state.json"
        self._state = self._load_state()
        self._logger = get_logger("vault_agent.exec.paper")
        self._handlers: dict[str, Callable[[Any], str | None]] = {
            "enter_simple": self._enter_simple,
            "enter_leveraged": self._enter_leveraged,
            "exit_leveraged": self._exit_leveraged,
            "adjust_leverage": self._adjust_leverage,
            "swap": self._swap,
        }

    @property
    def positions(self) -> dict[str, PaperLeveragedPosition]:
        return dict(self._state.positions)

    @property
    def executions(self) -> list[dict[str, Any]]:
        return list(self._state.executions)

    def execute(self, decision: Decision) -> ExecutionResult:
        handler = self._handlers.get(decision.action)
        if handler is None:
            return ExecutionResult(error=f"no_executor_for_action: {decision.action}")

        error = handler(decision.params)
        if error is not None:
            self._logger.warning("paper_execution_rejected", action=decision.action, error=error)
            return ExecutionResult(error=error)

        signature = f"paper-{uuid4().hex[:16]}"
        self._state.executions.append(
            {
                "signature": signature,
                "decision_id": decision.decision_id,
                "action": decision.action,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )
        self._persist()
        return ExecutionResult(signature=signature)

    def _enter_simple(self, params: EnterSimpleParams) -> str | None:
        if params.amount is not None and params.amount <= 0:
            return "amount_must_be_positive"
        self._state.deposits.append(
            {
                "protocol": params.protocol,
                "pool": params.pool,
                "asset": params.asset,
                "yield_pct": params.target_yield_pct,
                "amount": params.amount,
            }
        )
        return None

    def _enter_leveraged(self, params: EnterLeveragedParams) -> str | None:
        if params.leverage < 1.0:
            return f"invalid_leverage: {params.leverage}"
        error = self._check_slippage(params.slippage_bps)
        if error is not None:
            return error
        position_id = f"paper-loop-{self._state.next_position}"
        self._state.next_position += 1
        self._state.positions[position_id] = PaperLeveragedPosition(
            position_id=position_id,
            collateral=params.collateral,
            debt=params.debt,
            venue=params.venue,
            leverage=params.leverage,
            opened_at=datetime.now(timezone.utc).isoformat(),
            stale_data=params.stale_data,
        )
        return None

    def _exit_leveraged(self, params: ExitLeveragedParams) -> str | None:
        if params.position_id not in self._state.positions:
            return f"unknown_position: {params.position_id}"
        del self._state.positions[params.position_id]
        return None

    def _adjust_leverage(self, params: AdjustLeverageParams) -> str | None:
        position = self._state.positions.get(params.position_id)
        if position is None:
            return f"unknown_position: {params.position_id}"
        if params.leverage < 1.0:
            return f"invalid_leverage: {params.leverage}"
        error = self._check_slippage(params.slippage_bps)
        if error is not None:
            return error
        position.leverage = params.leverage
        return None

    def _swap(self, params: SwapParams) -> str | None:
        if params.amount <= 0:
            return "amount_must_be_positive"
        if params.input_token == params.output_token:
            return "swap_tokens_must_differ"
        return self._check_slippage(params.slippage_bps)

    def _check_slippage(self, slippage_bps: float | None) -> str | None:
        if slippage_bps is not None and slippage_bps > self._fill_tolerance_bps:
            return (
                f"slippage_exceeded: requested {slippage_bps:.0f}bps, "
                f"tolerance {self._fill_tolerance_bps:.0f}bps"
            )
        return None

    def _load_state(self) -> _PaperState:
        if not self._state_file.exists():
            return _PaperState()

        raw = json.loads(self._state_file.read_text(encoding="utf-8"))
        positions = {
            key: PaperLeveragedPosition(**value)
            for key, value in raw.get("positions", {}).items()
            if isinstance(value, dict)
        }
        return _PaperState(
            executions=list(raw.get("executions", [])),
            deposits=list(raw.get("deposits", [])),
            positions=positions,
            next_position=int(raw.get("next_position", len(positions) + 1)),
        )

    def _persist(self) -> None:
        payload: dict[str, Any] = {
            "executions": self._state.executions,
            "deposits": self._state.deposits,
            "positions": {key: asdict(value) for key, value in self._state.positions.items()},
            "next_position": self._state.next_position,
        }
        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        serialized = json.dumps(payload, ensure_ascii=True, indent=2)
        self._state_file.write_text(serialized, encoding="utf-8")
