"""
Computed, per-request entities: windows, breakdowns and portfolio rollups.
None of these are persisted.
"""
from datetime import date
from enum import Enum
from typing import Dict, List, Optional

from pydantic import ConfigDict, Field

from yieldtrace.core.entities.base import CamelModel
from yieldtrace.core.entities.pricing import PriceSource


class PositionKind(str, Enum):
    SUPPLY = "supply"
    BACKSTOP = "backstop"
    BORROW = "borrow"


class PositionKey(CamelModel):
    model_config = ConfigDict(frozen=True)

    kind: PositionKind
    pool_id: str
    asset_address: str

    @property
    def composite_key(self) -> str:
        # Backstop positions are keyed by pool alone (one LP token per pool)
        if self.kind == PositionKind.BACKSTOP:
            return self.pool_id
        return f"{self.pool_id}-{self.asset_address}"


class EventFlow(CamelModel):
    """A deposit or withdrawal priced at its own date."""
    tokens: float
    event_date: date
    price_at_event: float
    price_source: PriceSource


class NettedEvents(CamelModel):
    deposits: List[EventFlow] = Field(default_factory=list)
    withdrawals: List[EventFlow] = Field(default_factory=list)

    @property
    def deposited_tokens(self) -> float:
        return sum(d.tokens for d in self.deposits)

    @property
    def withdrawn_tokens(self) -> float:
        return sum(w.tokens for w in self.withdrawals)

    @property
    def net_deposited(self) -> float:
        return self.deposited_tokens - self.withdrawn_tokens


class PositionWindow(CamelModel):
    asset_address: str
    pool_id: str
    period_start_date: date
    tokens_at_start: float
    tokens_now: float
    net_deposited_in_period: float
    price_at_start: float
    price_now: float
    price_source: PriceSource
    # True when price_now is a historical substitute (closed / unpriced position)
    price_now_is_historical: bool = False


class YieldBreakdown(CamelModel):
    interest_earned_tokens: float
    protocol_yield_usd: float
    price_change_usd: float
    total_earned_usd: float
    value_at_start: float
    value_now: float


class PositionBreakdown(CamelModel):
    """Window and breakdown flattened into one record, as returned to callers."""
    kind: PositionKind
    composite_key: str
    pool_id: str
    asset_address: str
    period_start_date: date
    tokens_at_start: float
    tokens_now: float
    net_deposited_in_period: float
    interest_earned_tokens: float
    price_at_start: float
    price_now: float
    price_source: PriceSource
    price_now_is_historical: bool = False
    value_at_start: float
    value_now: float
    protocol_yield_usd: float
    price_change_usd: float
    total_earned_usd: float

    @classmethod
    def from_parts(cls, key: PositionKey, window: PositionWindow, breakdown: YieldBreakdown) -> "PositionBreakdown":
        return cls(
            kind=key.kind,
            composite_key=key.composite_key,
            pool_id=key.pool_id,
            asset_address=key.asset_address,
            period_start_date=window.period_start_date,
            tokens_at_start=window.tokens_at_start,
            tokens_now=window.tokens_now,
            net_deposited_in_period=window.net_deposited_in_period,
            interest_earned_tokens=breakdown.interest_earned_tokens,
            price_at_start=window.price_at_start,
            price_now=window.price_now,
            price_source=window.price_source,
            price_now_is_historical=window.price_now_is_historical,
            value_at_start=breakdown.value_at_start,
            value_now=breakdown.value_now,
            protocol_yield_usd=breakdown.protocol_yield_usd,
            price_change_usd=breakdown.price_change_usd,
            total_earned_usd=breakdown.total_earned_usd,
        )


class PortfolioTotals(CamelModel):
    value_at_start: float = 0.0
    value_now: float = 0.0
    protocol_yield_usd: float = 0.0
    price_change_usd: float = 0.0
    total_earned_usd: float = 0.0
    total_earned_percent: float = 0.0


class BorrowTotals(CamelModel):
    """
    Debt-side totals. Positive numbers are costs to the borrower:
    interest accrued and the revaluation of the debt by price moves.
    """
    value_at_start: float = 0.0
    value_now: float = 0.0
    interest_accrued_usd: float = 0.0
    price_change_on_debt_usd: float = 0.0
    total_cost_usd: float = 0.0
    total_cost_percent: float = 0.0


class PriceSourceCounts(CamelModel):
    exact: int = 0
    forward_fill: int = 0
    live_fallback: int = 0


class ExclusionReason(str, Enum):
    NO_PRICE = "no_price"
    READ_FAILED = "read_failed"


class ExcludedPosition(CamelModel):
    kind: PositionKind
    composite_key: str
    reason: ExclusionReason
    detail: Optional[str] = None


class PortfolioBreakdown(CamelModel):
    by_asset: Dict[str, PositionBreakdown] = Field(default_factory=dict)
    by_backstop: Dict[str, PositionBreakdown] = Field(default_factory=dict)
    by_borrow: Dict[str, PositionBreakdown] = Field(default_factory=dict)
    totals: PortfolioTotals = Field(default_factory=PortfolioTotals)
    borrow_totals: BorrowTotals = Field(default_factory=BorrowTotals)
    price_source_counts: PriceSourceCounts = Field(default_factory=PriceSourceCounts)


class Diagnostics(CamelModel):
    asset_count: int = 0
    backstop_count: int = 0
    borrow_count: int = 0
    price_source_counts: PriceSourceCounts = Field(default_factory=PriceSourceCounts)
    earliest_deposit_date: Optional[date] = None
    excluded: List[ExcludedPosition] = Field(default_factory=list)


class CostBasisEntry(CamelModel):
    """All-time average-cost basis for one position."""
    kind: PositionKind
    composite_key: str
    pool_id: str
    asset_address: str
    net_deposited_tokens: float
    weighted_avg_price: float
    cost_basis_usd: float
    # Backstop only: token cost basis was capped at the current LP balance
    clamped: bool = False
    # All-time breakdown against the current balance; None without a live price
    tokens_now: Optional[float] = None
    price_now: Optional[float] = None
    value_now: Optional[float] = None
    protocol_yield_usd: Optional[float] = None
    price_change_usd: Optional[float] = None
    total_earned_usd: Optional[float] = None
    total_earned_percent: Optional[float] = None


# --- Realized yield ---

class RealizedFlowType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    CLAIM = "claim"


class RealizedTransaction(CamelModel):
    """One ledger flow valued at the price of its own day."""
    event_date: date
    type: RealizedFlowType
    # SUPPLY for lending pools, BACKSTOP for backstop deposits and LP claims
    source: PositionKind
    pool_id: str
    asset_address: str
    tokens: float
    price_usd: float
    value_usd: float
    price_source: PriceSource


class RealizedBucket(CamelModel):
    deposited_usd: float = 0.0
    withdrawn_usd: float = 0.0
    claimed_usd: float = 0.0
    realized_pnl_usd: float = 0.0


class EmissionTotals(CamelModel):
    emission_tokens_claimed: float = 0.0
    lp_tokens_claimed: float = 0.0
    usd_value: float = 0.0


class RealizedSummary(CamelModel):
    total_deposited_usd: float = 0.0
    total_withdrawn_usd: float = 0.0
    total_claimed_usd: float = 0.0
    realized_pnl_usd: float = 0.0
    pools: RealizedBucket = Field(default_factory=RealizedBucket)
    backstop: RealizedBucket = Field(default_factory=RealizedBucket)
    emissions: EmissionTotals = Field(default_factory=EmissionTotals)
    # None when nothing was deposited
    roi_percent: Optional[float] = None
    annualized_roi_percent: Optional[float] = None
    days_active: int = 0
    first_activity_date: Optional[date] = None
    last_activity_date: Optional[date] = None
