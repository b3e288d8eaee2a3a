"""Outcome tracking and performance reporting for executed decisions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import pandas as pd  # type: ignore[import-untyped]

from vault_agent.types import ActionTag, DecisionOutcome

_RECENT_WINDOW = 10


@dataclass(slots=True)
class TrackedOutcome:
    decision_id: str
    action: ActionTag
    outcome: DecisionOutcome

    @property
    def yield_change_pct(self) -> float:
        if self.outcome.yield_after_pct is None:
            return 0.0
        return self.outcome.yield_after_pct - self.outcome.yield_before_pct

    @property
    def value_change(self) -> float:
        if self.outcome.value_after is None:
            return 0.0
        return self.outcome.value_after - self.outcome.value_before

    @property
    def value_change_pct(self) -> float:
        if self.outcome.value_before <= 0:
            return 0.0
        return self.value_change / self.outcome.value_before * 100


class OutcomeTracker:
    """In-memory record of outcomes, settled as later snapshots arrive."""

    def __init__(self) -> None:
        self._outcomes: list[TrackedOutcome] = []

    def record(self, decision_id: str, action: ActionTag, outcome: DecisionOutcome) -> None:
        self._outcomes.append(TrackedOutcome(decision_id, action, outcome))

    def settle(self, decision_id: str, *, value_after: float, yield_after_pct: float) -> bool:
        """Fill in the "after" figures once the next snapshot is observed."""
        for tracked in self._outcomes:
            if tracked.decision_id == decision_id:
                tracked.outcome.value_after = value_after
                tracked.outcome.yield_after_pct = yield_after_pct
                return True
        return False

    def recent(self, limit: int = 10) -> list[TrackedOutcome]:
        return list(reversed(self._outcomes[-limit:]))

    def report(self) -> dict[str, Any]:
        """Win rate, yield/value changes and per-action breakdown."""
        if not self._outcomes:
            return {
                "total_outcomes": 0,
                "win_rate_pct": 0.0,
                "avg_yield_change_pct": 0.0,
                "avg_value_change_pct": 0.0,
                "total_pnl": 0.0,
                "best_action": None,
                "worst_action": None,
                "by_action": {},
                "recent_trend": "stable",
            }

        df = pd.DataFrame(
            {
                "action": [t.action for t in self._outcomes],
                "win": [t.outcome.success and t.value_change >= 0 for t in self._outcomes],
                "yield_change": [t.yield_change_pct for t in self._outcomes],
                "value_change": [t.value_change for t in self._outcomes],
                "value_change_pct": [t.value_change_pct for t in self._outcomes],
            }
        )

        grouped = df.groupby("action", sort=False).agg(
            count=("win", "size"),
            wins=("win", "sum"),
            avg_yield_change=("yield_change", "mean"),
            total_pnl=("value_change", "sum"),
            avg_pnl=("value_change", "mean"),
        )
        by_action = {
            str(action): {
                "count": int(row["count"]),
                "win_rate_pct": float(row["wins"]) / float(row["count"]) * 100,
                "avg_yield_change_pct": float(row["avg_yield_change"]),
                "total_pnl": float(row["total_pnl"]),
            }
            for action, row in grouped.iterrows()
        }
        by_pnl = grouped["avg_pnl"].sort_values(ascending=False, kind="stable")

        return {
            "total_outcomes": len(df),
            "win_rate_pct": float(df["win"].mean() * 100),
            "avg_yield_change_pct": float(df["yield_change"].mean()),
            "avg_value_change_pct": float(df["value_change_pct"].mean()),
            "total_pnl": float(df["value_change"].sum()),
            "best_action": str(by_pnl.index[0]),
            "worst_action": str(by_pnl.index[-1]),
            "by_action": by_action,
            "recent_trend": _recent_trend(df["value_change"]),
        }


def _recent_trend(value_changes: pd.Series) -> str:
    recent = float(value_changes.iloc[-_RECENT_WINDOW:].sum())
    older = 0.0
    if len(value_changes) > _RECENT_WINDOW:
        older = float(value_changes.iloc[-2 * _RECENT_WINDOW : -_RECENT_WINDOW].sum())
    if recent > older * 1.1:
        return "improving"
    if recent < older * 0.9:
        return "declining"
    return "stable"
