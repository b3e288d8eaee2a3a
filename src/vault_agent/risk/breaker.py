"""Daily-loss circuit breaker."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone

from vault_agent.types import CircuitBreakerState
from vault_agent.utils.logging import get_logger, log_risk_event


class CircuitBreaker:
    """Single-writer owner of the day-scoped breaker state.

    Every update swaps in a new ``CircuitBreakerState`` so a reader holding the
    previous reference never sees a half-applied change.
    """

    def __init__(self) -> None:
        self._state: CircuitBreakerState | None = None
        self._logger = get_logger("vault_agent.risk.breaker")

    @property
    def state(self) -> CircuitBreakerState | None:
        return self._state

    @property
    def active(self) -> bool:
        return self._state is not None and self._state.tripped

    @property
    def reason(self) -> str:
        return self._state.reason if self._state is not None else ""

    def observe(self, value: float, now: datetime) -> CircuitBreakerState:
        """Track today's value, rolling over lazily on the first call of a new UTC day."""
        day_key = now.astimezone(timezone.utc).date().isoformat()
        state = self._state
        if state is None or state.day_key != day_key:
            if state is not None and state.tripped:
                log_risk_event(
                    self._logger,
                    event_type="circuit_breaker",
                    action="reset_new_day",
                    previous_day=state.day_key,
                    day=day_key,
                )
            self._state = CircuitBreakerState(
                day_key=day_key,
                start_value=value,
                current_value=value,
            )
            return self._state

        loss_pct = 0.0
        if state.start_value > 0:
            loss_pct = -(value - state.start_value) / state.start_value * 100.0
        self._state = replace(state, current_value=value, loss_pct=loss_pct)
        return self._state

    def trip(self, reason: str) -> None:
        """Latch the breaker. Tripping an already tripped breaker is a no-op."""
        state = self._state
        if state is None or state.tripped:
            return
        log_risk_event(
            self._logger,
            event_type="circuit_breaker",
            action="tripped",
            reason=reason,
            loss_pct=round(state.loss_pct, 4),
        )
        self._state = replace(state, tripped=True, reason=reason)

    def reset(self) -> None:
        """Operator override, independent of the daily rollover."""
        state = self._state
        if state is None:
            return
        self._state = replace(state, tripped=False, reason="")
        log_risk_event(self._logger, event_type="circuit_breaker", action="manual_reset")
