"""Observe-phase data sources.

``JsonFileSource`` reads the portfolio and opportunity sets from a JSON
document. ``MarketObserver`` combines one portfolio source with any number of
opportunity sources; a failing opportunity source degrades to an empty
collection instead of aborting the cycle.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Protocol, TypeVar

from pydantic import TypeAdapter, ValidationError

from vault_agent.data.schemas import (
    LeveragedOpportunityModel,
    PortfolioModel,
    PositionModel,
    YieldOpportunityModel,
)
from vault_agent.types import (
    LeveragedOpportunity,
    Observation,
    PortfolioSnapshot,
    Position,
    YieldOpportunity,
)
from vault_agent.utils.logging import get_logger

T = TypeVar("T")

_POSITION_ADAPTER: TypeAdapter[Any] = TypeAdapter(PositionModel)


class ObservationError(Exception):
    """Raised when the portfolio itself cannot be observed."""


class PortfolioSource(Protocol):
    def fetch_snapshot(self) -> PortfolioSnapshot: ...


class OpportunitySource(Protocol):
    def fetch_opportunities(self) -> list[YieldOpportunity]: ...

    def fetch_leveraged_opportunities(self) -> list[LeveragedOpportunity]: ...


class JsonFileSource:
    """Portfolio and opportunity source backed by a JSON document.

    The document is re-read on every fetch so an external process can keep it
    current. Entries that fail validation are skipped with a warning.
    """

    def __init__(self, path: Path, *, fallback_staking_yield_pct: float = 7.5) -> None:
        self._path = path
        self._fallback_staking_yield_pct = fallback_staking_yield_pct
        self._logger = get_logger("vault_agent.data.observer")

    def fetch_snapshot(self) -> PortfolioSnapshot:
        raw = self._load()
        section = raw.get("portfolio")
        if not isinstance(section, dict):
            raise ObservationError("missing_portfolio_section")
        try:
            portfolio = PortfolioModel.model_validate(section)
        except ValidationError as exc:
            raise ObservationError(f"invalid_portfolio: {exc.errors()[0]['msg']}") from exc

        positions: list[Position] = []
        for index, item in enumerate(section.get("positions") or []):
            try:
                positions.append(_POSITION_ADAPTER.validate_python(item).to_domain())
            except (ValidationError, ValueError) as exc:
                self._logger.warning("position_skipped", index=index, error=str(exc))
        return PortfolioSnapshot.from_positions(
            reserve=portfolio.reserve,
            positions=positions,
            base_price=portfolio.base_price,
        )

    def fetch_opportunities(self) -> list[YieldOpportunity]:
        return self._parse_section(
            "opportunities",
            lambda item: YieldOpportunityModel.model_validate(item).to_domain(),
        )

    def fetch_leveraged_opportunities(self) -> list[LeveragedOpportunity]:
        return self._parse_section(
            "leveraged_opportunities",
            lambda item: LeveragedOpportunityModel.model_validate(item).to_domain(
                self._fallback_staking_yield_pct
            ),
        )

    def _parse_section(self, name: str, parse: Callable[[Any], T]) -> list[T]:
        items = self._load().get(name) or []
        if not isinstance(items, list):
            self._logger.warning("section_invalid", section=name)
            return []
        parsed: list[T] = []
        for index, item in enumerate(items):
            try:
                parsed.append(parse(item))
            except ValidationError as exc:
                self._logger.warning(
                    "entry_skipped",
                    section=name,
                    index=index,
                    error=exc.errors()[0]["msg"],
                )
        return parsed

    def _load(self) -> dict[str, Any]:
        if not self._path.exists():
            raise ObservationError(f"observation_file_not_found: {self._path}")
        try:
            decoded = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ObservationError(f"observation_file_invalid_json: {exc}") from exc
        if not isinstance(decoded, dict):
            raise ObservationError("observation_file_not_object")
        return decoded


class MarketObserver:
    """Composite observer used by the control loop."""

    def __init__(
        self,
        portfolio_source: PortfolioSource,
        opportunity_sources: list[OpportunitySource],
    ) -> None:
        self._portfolio_source = portfolio_source
        self._opportunity_sources = opportunity_sources
        self._logger = get_logger("vault_agent.data.observer")

    def observe(self) -> Observation:
        """Snapshot failures propagate; opportunity failures degrade to empty."""
        snapshot = self._portfolio_source.fetch_snapshot()
        warnings: list[str] = []

        opportunities: list[YieldOpportunity] = []
        leveraged: list[LeveragedOpportunity] = []
        for source in self._opportunity_sources:
            opportunities.extend(
                self._safe_fetch(source, "opportunities", source.fetch_opportunities, warnings)
            )
            leveraged.extend(
                self._safe_fetch(
                    source,
                    "leveraged_opportunities",
                    source.fetch_leveraged_opportunities,
                    warnings,
                )
            )

        stale = [o for o in leveraged if o.stale_data]
        if stale:
            warnings.append(
                "stale staking yield for " + ", ".join(f"{o.collateral}@{o.venue}" for o in stale)
            )

        observation = Observation(
            snapshot=snapshot,
            opportunities=dedupe_opportunities(opportunities),
            leveraged_opportunities=dedupe_leveraged(leveraged),
            warnings=warnings,
        )
        self._logger.info(
            "observation_complete",
            total_value=round(snapshot.total_value, 4),
            blended_yield_pct=round(snapshot.blended_yield_pct, 4),
            opportunities=len(observation.opportunities),
            leveraged_opportunities=len(observation.leveraged_opportunities),
            warnings=len(warnings),
        )
        return observation

    def _safe_fetch(
        self,
        source: OpportunitySource,
        section: str,
        fetch: Callable[[], list[T]],
        warnings: list[str],
    ) -> list[T]:
        try:
            return fetch()
        except Exception as exc:  # noqa: BLE001 - one source must not abort the cycle.
            name = type(source).__name__
            self._logger.warning("source_fetch_failed", source=name, section=section, error=str(exc))
            warnings.append(f"{name} {section} unavailable: {exc}")
            return []


def dedupe_opportunities(opportunities: list[YieldOpportunity]) -> list[YieldOpportunity]:
    """Keep the highest-yield entry per protocol/asset, sorted by yield."""
    ordered = sorted(opportunities, key=lambda o: o.yield_pct, reverse=True)
    seen: set[tuple[str, str]] = set()
    unique: list[YieldOpportunity] = []
    for opp in ordered:
        key = (opp.protocol.lower(), opp.asset.upper())
        if key in seen:
            continue
        seen.add(key)
        unique.append(opp)
    return unique


def dedupe_leveraged(opportunities: list[LeveragedOpportunity]) -> list[LeveragedOpportunity]:
    """Keep the widest-spread entry per venue/pair; fresh data wins ties."""
    ordered = sorted(opportunities, key=lambda o: (-o.spread_pct, o.stale_data))
    seen: set[tuple[str, str, str]] = set()
    unique: list[LeveragedOpportunity] = []
    for opp in ordered:
        key = (opp.venue.lower(), opp.collateral.upper(), opp.debt.upper())
        if key in seen:
            continue
        seen.add(key)
        unique.append(opp)
    return unique
