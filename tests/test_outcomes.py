from __future__ import annotations

from datetime import datetime, timezone

import pytest

from vault_agent.journal.outcomes import OutcomeTracker
from vault_agent.types import DecisionOutcome


def _outcome(success: bool = True, value_before: float = 1000.0) -> DecisionOutcome:
    return DecisionOutcome(
        success=success,
        signature="sig" if success else None,
        value_before=value_before,
        yield_before_pct=3.0,
        timestamp=datetime.now(timezone.utc),
        error=None if success else "failed",
    )


def test_empty_report() -> None:
    report = OutcomeTracker().report()
    assert report["total_outcomes"] == 0
    assert report["best_action"] is None
    assert report["recent_trend"] == "stable"


def test_settle_fills_after_figures() -> None:
    tracker = OutcomeTracker()
    tracker.record("d1", "enter_simple", _outcome())
    assert tracker.settle("d1", value_after=1010.0, yield_after_pct=12.0)
    assert not tracker.settle("missing", value_after=1.0, yield_after_pct=1.0)

    tracked = tracker.recent(1)[0]
    assert tracked.outcome.settled
    assert tracked.yield_change_pct == 9.0
    assert tracked.value_change_pct == pytest.approx(1.0)


def test_report_breaks_down_by_action() -> None:
    tracker = OutcomeTracker()
    tracker.record("d1", "enter_simple", _outcome())
    tracker.settle("d1", value_after=1020.0, yield_after_pct=8.0)
    tracker.record("d2", "enter_leveraged", _outcome())
    tracker.settle("d2", value_after=990.0, yield_after_pct=2.0)
    tracker.record("d3", "enter_simple", _outcome(success=False))

    report = tracker.report()
    assert report["total_outcomes"] == 3
    assert report["win_rate_pct"] == pytest.approx(100 / 3)
    assert report["total_pnl"] == pytest.approx(10.0)
    assert report["best_action"] == "enter_simple"
    assert report["worst_action"] == "enter_leveraged"
    assert report["by_action"]["enter_simple"]["count"] == 2
    assert report["by_action"]["enter_simple"]["win_rate_pct"] == pytest.approx(50.0)
    assert report["by_action"]["enter_leveraged"]["avg_yield_change_pct"] == pytest.approx(-1.0)
    assert report["recent_trend"] == "improving"


def test_recent_trend_compares_last_window_with_previous() -> None:
    tracker = OutcomeTracker()
    for i in range(20):
        decision_id = f"d{i}"
        tracker.record(decision_id, "enter_simple", _outcome())
        # First ten gain, last ten lose.
        tracker.settle(decision_id, value_after=1010.0 if i < 10 else 995.0, yield_after_pct=3.0)

    assert tracker.report()["recent_trend"] == "declining"
    assert [t.decision_id for t in tracker.recent(2)] == ["d19", "d18"]
