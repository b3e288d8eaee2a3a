"""DeFi Llama yield pool scanner."""

from __future__ import annotations

from typing import Any

import httpx
import pandas as pd  # type: ignore[import-untyped]
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from vault_agent.config import Settings
from vault_agent.types import LeveragedOpportunity, RiskTier, YieldOpportunity
from vault_agent.utils.logging import get_logger

DEFILLAMA_POOLS_URL = "https://yields.llama.fi/pools"

# Protocol track record and audit status.
PROTOCOL_RISK: dict[str, RiskTier] = {
    "kamino-lending": "low",
    "kamino-clmm": "low",
    "solend": "low",
    "marginfi": "medium",
    "drift": "medium",
    "meteora": "medium",
    "raydium": "low",
    "orca": "low",
    "marinade-finance": "low",
    "jito": "low",
}

TARGET_TOKENS = frozenset(
    {"SOL", "USDC", "USDT", "JITOSOL", "MSOL", "BSOL", "JUPSOL", "JITOSOL-SOL", "SOL-USDC", "PSOL"}
)

_NUMERIC_COLUMNS = ["apy", "tvlUsd", "il7d"]


class YieldSourceError(Exception):
    """Raised when the pool listing cannot be fetched or decoded."""


class DefiLlamaClient:
    """Read-only client for the public DeFi Llama pools endpoint."""

    def __init__(self, settings: Settings, *, transport: httpx.BaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport
        self._logger = get_logger("vault_agent.data.defillama")

    def fetch_opportunities(self) -> list[YieldOpportunity]:
        """Normalized pools on the configured chain, highest yield first."""
        frame = self.fetch_pools()
        opportunities = [
            YieldOpportunity(
                protocol=str(row.project),
                pool=f"{row.symbol} ({row.project})",
                asset=str(row.symbol).split("-")[0],
                yield_pct=float(row.apy),
                risk_tier=PROTOCOL_RISK.get(str(row.project), "medium"),
                liquidity=float(row.tvlUsd),
                notes=f"IL 7d: {row.il7d:.2f}%" if row.il7d else "",
            )
            for row in frame.itertuples(index=False)
        ]
        self._logger.info("defillama_scan_complete", pools=len(opportunities))
        return opportunities

    def fetch_leveraged_opportunities(self) -> list[LeveragedOpportunity]:
        # The pools endpoint carries no borrow-side data.
        return []

    def fetch_pools(self) -> pd.DataFrame:
        """Filtered pool table with columns project, symbol, apy, tvlUsd, il7d."""
        rows = self._request_pools()
        columns = ["chain", "project", "symbol", "apy", "tvlUsd", "il7d"]
        df = pd.DataFrame(rows)
        if df.empty:
            return pd.DataFrame(columns=columns[1:])
        for col in columns:
            if col not in df.columns:
                df[col] = None
        for col in _NUMERIC_COLUMNS:
            df[col] = pd.to_numeric(df[col], errors="coerce")
        df["apy"] = df["apy"].fillna(0.0)
        df["il7d"] = df["il7d"].fillna(0.0)
        df = df.dropna(subset=["project", "symbol", "tvlUsd"])

        symbols = df["symbol"].astype(str).str.upper()
        wanted = (
            symbols.isin(TARGET_TOKENS)
            | symbols.str.contains("SOL", regex=False)
            | symbols.str.contains("USDC", regex=False)
        )
        mask = (
            (df["chain"] == self._settings.defillama_chain)
            & (df["tvlUsd"] >= self._settings.defillama_min_tvl_usd)
            & wanted
        )
        df = df.loc[mask, columns[1:]]
        return df.sort_values("apy", ascending=False, kind="stable").reset_index(drop=True)

    @retry(
        retry=retry_if_exception_type(YieldSourceError),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _request_pools(self) -> list[dict[str, Any]]:
        try:
            with httpx.Client(
                timeout=self._settings.http_timeout,
                transport=self._transport,
            ) as client:
                response = client.get(DEFILLAMA_POOLS_URL)
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise YieldSourceError(str(exc)) from exc

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise YieldSourceError("unexpected_pools_payload")
        return [row for row in data if isinstance(row, dict)]
