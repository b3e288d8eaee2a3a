"""JSONL journal store for cycle events and decisions."""

from __future__ import annotations

import json
from collections import Counter
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from vault_agent.types import Decision

_ALLOWED_EVENT_TYPES = {
    "cycle_start",
    "observation",
    "health",
    "decision",
    "cycle_end",
    "error",
}


class JournalStore:
    """Append-only JSONL event store, one file per UTC day.

    Doubles as the decision logger: a decision is appended every time it is
    logged, and readers keep the latest record per decision id.
    """

    def __init__(self, journal_dir: Path) -> None:
        self._journal_dir = journal_dir
        self._journal_dir.mkdir(parents=True, exist_ok=True)

    def append(self, event_type: str, payload: dict[str, Any]) -> None:
        """Append one event line to daily JSONL file."""
        if event_type not in _ALLOWED_EVENT_TYPES:
            raise ValueError(f"unsupported_event_type: {event_type}")
        now = datetime.now(timezone.utc)
        record = {
            "timestamp": now.isoformat(),
            "event_type": event_type,
            "payload": payload,
        }
        file_path = self._file_path_for_day(now.date())
        with file_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=True, default=str) + "\n")

    def log(self, decision: Decision) -> None:
        self.append("decision", decision.to_dict())

    def load_recent(self, limit: int) -> list[dict[str, Any]]:
        """Load recent events from the most recent journal files."""
        if limit <= 0:
            return []

        rows: list[dict[str, Any]] = []
        files = sorted(self._journal_dir.glob("*.jsonl"), reverse=True)
        for file in files:
            lines = file.read_text(encoding="utf-8").splitlines()
            for line in reversed(lines):
                if not line.strip():
                    continue
                rows.append(json.loads(line))
                if len(rows) >= limit:
                    return list(reversed(rows))
        return list(reversed(rows))

    def load_decisions(
        self,
        *,
        action: str | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Latest record of each decision, newest first."""
        latest: dict[str, dict[str, Any]] = {}
        for file in sorted(self._journal_dir.glob("*.jsonl")):
            for line in file.read_text(encoding="utf-8").splitlines():
                if not line.strip():
                    continue
                row = json.loads(line)
                if row.get("event_type") != "decision":
                    continue
                payload = row["payload"]
                latest[payload["decision_id"]] = payload

        decisions = list(latest.values())
        if action is not None:
            decisions = [d for d in decisions if d["action"] == action]
        if since is not None:
            decisions = [d for d in decisions if datetime.fromisoformat(d["timestamp"]) >= since]
        decisions.sort(key=lambda d: d["timestamp"], reverse=True)
        if limit is not None:
            decisions = decisions[:limit]
        return decisions

    def stats(self) -> dict[str, Any]:
        """Summary of the decision history."""
        decisions = self.load_decisions()
        today = datetime.now(timezone.utc).date().isoformat()
        breakdown = Counter(d["action"] for d in decisions)
        with_outcome = [d for d in decisions if d.get("outcome")]
        successful = sum(1 for d in with_outcome if d["outcome"]["success"])
        total_risk = sum(float(d["inputs"]["risk_score"]) for d in decisions)
        return {
            "total_decisions": len(decisions),
            "action_breakdown": dict(breakdown),
            "avg_risk_score": total_risk / len(decisions) if decisions else 0.0,
            "success_rate_pct": successful / len(with_outcome) * 100 if with_outcome else 0.0,
            "decisions_today": sum(1 for d in decisions if d["timestamp"].startswith(today)),
        }

    def _file_path_for_day(self, day: date) -> Path:
        return self._journal_dir / f"{day.isoformat()}.jsonl"
