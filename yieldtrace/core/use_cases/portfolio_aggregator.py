from collections import Counter
from typing import Iterable, Tuple

from yieldtrace.core.entities.breakdown import (
    BorrowTotals,
    CostBasisEntry,
    PortfolioBreakdown,
    PortfolioTotals,
    PositionBreakdown,
    PositionKind,
    PriceSourceCounts,
)


def _percent(numerator: float, value_at_start: float) -> float:
    if value_at_start > 0:
        return numerator / value_at_start * 100
    return 0.0


def count_price_sources(breakdowns: Iterable[PositionBreakdown]) -> PriceSourceCounts:
    tally = Counter(b.price_source.value for b in breakdowns)
    return PriceSourceCounts(**tally)


def aggregate(breakdowns: Iterable[PositionBreakdown]) -> PortfolioBreakdown:
    """
    Roll per-position breakdowns up into portfolio totals.

    Supply and backstop positions make up `totals`; borrow positions are
    summed separately into `borrow_totals` as costs. Plain sums, so the
    result does not depend on input order.
    """
    breakdowns = list(breakdowns)
    result = PortfolioBreakdown()
    totals = PortfolioTotals()
    borrow = BorrowTotals()

    for b in breakdowns:
        if b.kind == PositionKind.BORROW:
            result.by_borrow[b.composite_key] = b
            borrow.value_at_start += b.value_at_start
            borrow.value_now += b.value_now
            borrow.interest_accrued_usd += b.protocol_yield_usd
            borrow.price_change_on_debt_usd += b.price_change_usd
            borrow.total_cost_usd += b.total_earned_usd
            continue

        if b.kind == PositionKind.BACKSTOP:
            result.by_backstop[b.composite_key] = b
        else:
            result.by_asset[b.composite_key] = b
        totals.value_at_start += b.value_at_start
        totals.value_now += b.value_now
        totals.protocol_yield_usd += b.protocol_yield_usd
        totals.price_change_usd += b.price_change_usd
        totals.total_earned_usd += b.total_earned_usd

    totals.total_earned_percent = _percent(totals.total_earned_usd, totals.value_at_start)
    borrow.total_cost_percent = _percent(borrow.total_cost_usd, borrow.value_at_start)

    result.totals = totals
    result.borrow_totals = borrow
    result.price_source_counts = count_price_sources(breakdowns)
    return result


def aggregate_all_time(entries: Iterable[CostBasisEntry]) -> Tuple[PortfolioTotals, BorrowTotals]:
    """
    Totals of the all-time breakdowns, measured against cost basis. Entries
    without a breakdown (no live price or no current balance) are left out.
    """
    totals = PortfolioTotals()
    borrow = BorrowTotals()

    for e in entries:
        if e.total_earned_usd is None:
            continue
        if e.kind == PositionKind.BORROW:
            borrow.value_at_start += max(e.cost_basis_usd, 0.0)
            borrow.value_now += e.value_now
            borrow.interest_accrued_usd += e.protocol_yield_usd
            borrow.price_change_on_debt_usd += e.price_change_usd
            borrow.total_cost_usd += e.total_earned_usd
        else:
            totals.value_at_start += max(e.cost_basis_usd, 0.0)
            totals.value_now += e.value_now
            totals.protocol_yield_usd += e.protocol_yield_usd
            totals.price_change_usd += e.price_change_usd
            totals.total_earned_usd += e.total_earned_usd

    totals.total_earned_percent = _percent(totals.total_earned_usd, totals.value_at_start)
    borrow.total_cost_percent = _percent(borrow.total_cost_usd, borrow.value_at_start)
    return totals, borrow
