"""Observation payload schemas and conversion to domain types."""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from vault_agent.types import (
    LeveragedOpportunity,
    LeveragedPosition,
    SimplePosition,
    YieldOpportunity,
)


class SimplePositionModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["simple"] = "simple"
    token: str
    amount: float = Field(ge=0.0)
    value: float = Field(ge=0.0)
    yield_pct: float
    position_id: str = ""

    def to_domain(self) -> SimplePosition:
        return SimplePosition(
            token=self.token,
            amount=self.amount,
            value=self.value,
            yield_pct=self.yield_pct,
            position_id=self.position_id,
        )


class LeveragedPositionModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["leveraged"]
    position_id: str
    venue: str
    collateral_token: str
    collateral_amount: float = Field(ge=0.0)
    debt_token: str
    debt_amount: float = Field(ge=0.0)
    net_value: float
    leverage: float
    ltv: float
    max_ltv: float = Field(gt=0.0, le=1.0)
    collateral_yield_pct: float
    debt_cost_pct: float

    def to_domain(self) -> LeveragedPosition:
        """Raises ValueError when leverage or LTV are out of range."""
        return LeveragedPosition(
            position_id=self.position_id,
            venue=self.venue,
            collateral_token=self.collateral_token,
            collateral_amount=self.collateral_amount,
            debt_token=self.debt_token,
            debt_amount=self.debt_amount,
            net_value=self.net_value,
            leverage=self.leverage,
            ltv=self.ltv,
            max_ltv=self.max_ltv,
            collateral_yield_pct=self.collateral_yield_pct,
            debt_cost_pct=self.debt_cost_pct,
        )


PositionModel = Annotated[
    Union[SimplePositionModel, LeveragedPositionModel],
    Field(discriminator="type"),
]


class PortfolioModel(BaseModel):
    """Balance-level fields of the portfolio section; positions are parsed one by one."""

    model_config = ConfigDict(extra="ignore")

    reserve: float = Field(ge=0.0)
    base_price: float = Field(default=1.0, gt=0.0)


class YieldOpportunityModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    protocol: str
    pool: str
    asset: str
    yield_pct: float
    risk_tier: Literal["low", "medium", "high"] = "medium"
    liquidity: float = Field(default=0.0, ge=0.0)
    notes: str = ""

    def to_domain(self) -> YieldOpportunity:
        return YieldOpportunity(
            protocol=self.protocol,
            pool=self.pool,
            asset=self.asset,
            yield_pct=self.yield_pct,
            risk_tier=self.risk_tier,
            liquidity=self.liquidity,
            notes=self.notes,
        )


class LeveragedOpportunityModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    collateral: str
    debt: str
    venue: str
    staking_yield_pct: float | None = None
    borrow_cost_pct: float
    max_ltv: float = Field(gt=0.0, le=1.0)

    def to_domain(self, fallback_staking_yield_pct: float) -> LeveragedOpportunity:
        """Substitute the fallback staking yield when missing and flag the result stale."""
        stale = self.staking_yield_pct is None
        return LeveragedOpportunity(
            collateral=self.collateral,
            debt=self.debt,
            venue=self.venue,
            staking_yield_pct=(
                fallback_staking_yield_pct if self.staking_yield_pct is None else self.staking_yield_pct
            ),
            borrow_cost_pct=self.borrow_cost_pct,
            max_ltv=self.max_ltv,
            stale_data=stale,
        )
