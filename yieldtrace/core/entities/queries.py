"""
Typed request/response shapes for yield queries.

Live on-chain state (prices, balances, debts) arrives with the query, the
way the dashboard forwards SDK state. Everything is validated here so no
NaN or negative amount can reach the core.
"""
from datetime import date
from enum import Enum
from typing import Annotated, Dict, List, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator

from yieldtrace.core.entities.base import CamelModel
from yieldtrace.core.entities.breakdown import (
    BorrowTotals,
    CostBasisEntry,
    Diagnostics,
    ExcludedPosition,
    PortfolioTotals,
    PositionBreakdown,
    RealizedSummary,
    RealizedTransaction,
)

Amount = Annotated[float, Field(ge=0, allow_inf_nan=False)]


class PeriodType(str, Enum):
    ONE_WEEK = "1W"
    ONE_MONTH = "1M"
    ONE_YEAR = "1Y"
    ALL = "All"


def _check_composite_keys(value: Dict[str, float]) -> Dict[str, float]:
    for key in value:
        pool_id, _, asset_address = key.partition("-")
        if not pool_id or not asset_address:
            raise ValueError(f"'{key}' is not a poolId-assetAddress key")
    return value


class LiveStateQuery(CamelModel):
    user_address: str = Field(min_length=1)
    timezone: str = "UTC"
    # asset address -> current USD price from the SDK
    sdk_prices: Dict[str, Amount] = Field(default_factory=dict)

    @field_validator("user_address")
    @classmethod
    def strip_address(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("userAddress must not be blank")
        return v

    @field_validator("timezone")
    @classmethod
    def known_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone '{v}'")
        return v

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class PeriodYieldQuery(LiveStateQuery):
    kind: Literal["period_yield"] = "period_yield"
    period: PeriodType = PeriodType.ONE_MONTH
    # poolId-assetAddress -> current supplied + collateral tokens
    current_balances: Dict[str, Amount] = Field(default_factory=dict)
    # poolId-assetAddress -> current debt tokens
    current_debts: Dict[str, Amount] = Field(default_factory=dict)
    # backstop pool address -> current LP tokens (including queued withdrawals)
    backstop_positions: Dict[str, Amount] = Field(default_factory=dict)
    lp_token_price: Amount = 0.0

    @field_validator("current_balances", "current_debts")
    @classmethod
    def composite_keys(cls, v: Dict[str, float]) -> Dict[str, float]:
        return _check_composite_keys(v)


class BorrowCostQuery(LiveStateQuery):
    kind: Literal["borrow_cost"] = "borrow_cost"
    period: PeriodType = PeriodType.ONE_MONTH
    current_debts: Dict[str, Amount] = Field(default_factory=dict)

    @field_validator("current_debts")
    @classmethod
    def composite_keys(cls, v: Dict[str, float]) -> Dict[str, float]:
        return _check_composite_keys(v)


class MultiWalletQuery(LiveStateQuery):
    """All-history queries can merge several wallets into one portfolio."""
    # Wallets aggregated together with user_address
    user_addresses: List[str] = Field(default_factory=list)

    @field_validator("user_addresses")
    @classmethod
    def strip_addresses(cls, v: List[str]) -> List[str]:
        return [a.strip() for a in v if a.strip()]

    @property
    def wallets(self) -> List[str]:
        return list(dict.fromkeys([self.user_address] + self.user_addresses))


class CostBasisQuery(MultiWalletQuery):
    kind: Literal["cost_basis"] = "cost_basis"
    current_balances: Dict[str, Amount] = Field(default_factory=dict)
    current_debts: Dict[str, Amount] = Field(default_factory=dict)
    backstop_positions: Dict[str, Amount] = Field(default_factory=dict)
    lp_token_price: Amount = 0.0

    @field_validator("current_balances", "current_debts")
    @classmethod
    def composite_keys(cls, v: Dict[str, float]) -> Dict[str, float]:
        return _check_composite_keys(v)


class RealizedYieldQuery(MultiWalletQuery):
    kind: Literal["realized_yield"] = "realized_yield"
    lp_token_price: Amount = 0.0


class PeriodYieldResponse(CamelModel):
    kind: Literal["period_yield"] = "period_yield"
    by_asset: Dict[str, PositionBreakdown]
    by_backstop: Dict[str, PositionBreakdown]
    by_borrow: Dict[str, PositionBreakdown]
    totals: PortfolioTotals
    borrow_totals: BorrowTotals
    period_start_date: date
    period_days: int
    diagnostics: Diagnostics


class BorrowCostResponse(CamelModel):
    kind: Literal["borrow_cost"] = "borrow_cost"
    by_borrow: Dict[str, PositionBreakdown]
    borrow_totals: BorrowTotals
    period_start_date: date
    period_days: int
    diagnostics: Diagnostics


class CostBasisResponse(CamelModel):
    kind: Literal["cost_basis"] = "cost_basis"
    user_address: str
    wallets: List[str] = Field(default_factory=list)
    by_asset: Dict[str, CostBasisEntry]
    by_borrow: Dict[str, CostBasisEntry]
    by_backstop: Dict[str, CostBasisEntry]
    total_cost_basis_usd: float
    total_borrow_cost_basis_usd: float
    total_backstop_cost_basis_usd: float
    # Supply and backstop together, then borrows, measured from cost basis
    all_time_totals: PortfolioTotals = Field(default_factory=PortfolioTotals)
    borrow_all_time_totals: BorrowTotals = Field(default_factory=BorrowTotals)
    excluded: List[ExcludedPosition] = Field(default_factory=list)


class RealizedYieldResponse(RealizedSummary):
    kind: Literal["realized_yield"] = "realized_yield"
    user_address: str
    wallets: List[str] = Field(default_factory=list)
    transactions: List[RealizedTransaction] = Field(default_factory=list)
    excluded: List[ExcludedPosition] = Field(default_factory=list)
