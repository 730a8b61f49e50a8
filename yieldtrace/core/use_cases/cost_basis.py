"""
All-time cost basis by the average-cost method.

Every deposit is valued at the price of its own day; withdrawals remove
tokens at the running weighted average price, not at their own price.
"""
import logging
import math
from datetime import tzinfo
from typing import Iterable, Optional, Tuple

from yieldtrace.core.entities.breakdown import CostBasisEntry, NettedEvents, PositionKey, PositionKind
from yieldtrace.core.entities.events import PositionEvent
from yieldtrace.core.use_cases.event_netter import FlowSide, net_events_in_window
from yieldtrace.core.use_cases.price_resolver import PriceResolver
from yieldtrace.core.use_cases.yield_decomposer import decompose

logger = logging.getLogger(__name__)


def average_cost(netted: NettedEvents, live_price: float) -> Tuple[float, float]:
    """Returns (weighted_avg_price, cost_basis_usd)."""
    deposited_tokens = netted.deposited_tokens
    deposited_usd = sum(d.tokens * d.price_at_event for d in netted.deposits)
    if deposited_tokens > 0:
        weighted_avg = deposited_usd / deposited_tokens
    else:
        weighted_avg = live_price
    return weighted_avg, deposited_usd - netted.withdrawn_tokens * weighted_avg


async def cost_basis_entry(
    key: PositionKey,
    events: Iterable[PositionEvent],
    *,
    resolver: PriceResolver,
    live_price: Optional[float],
    tz: tzinfo,
    current_balance: Optional[float] = None
) -> Optional[CostBasisEntry]:
    """
    Cost basis of one position over its whole history, or None when it has
    no flows. Deposits made today resolve to the live price, so intraday
    moves never show up as profit or loss.

    For backstop positions `current_balance` is the current LP balance;
    the token cost basis is capped at it. A pool the user no longer holds
    has a balance of 0.
    """
    side = FlowSide.DEBT if key.kind == PositionKind.BORROW else FlowSide.SUPPLY
    netted = await net_events_in_window(
        events,
        key.pool_id,
        key.asset_address,
        None,
        resolver=resolver,
        fallback_price=live_price,
        tz=tz,
        side=side,
    )
    if not netted.deposits and not netted.withdrawals:
        return None

    weighted_avg, cost_basis_usd = average_cost(netted, live_price or 0.0)
    net_tokens = netted.net_deposited
    clamped = False

    if key.kind == PositionKind.BACKSTOP and current_balance is not None and net_tokens > current_balance:
        logger.warning(
            f"Backstop {key.pool_id}: net deposited {net_tokens} LP exceeds current balance "
            f"{current_balance}; capping cost basis"
        )
        net_tokens = current_balance
        cost_basis_usd = current_balance * weighted_avg
        clamped = True

    return CostBasisEntry(
        kind=key.kind,
        composite_key=key.composite_key,
        pool_id=key.pool_id,
        asset_address=key.asset_address,
        net_deposited_tokens=net_tokens,
        weighted_avg_price=weighted_avg,
        cost_basis_usd=cost_basis_usd,
        clamped=clamped,
    )


def with_all_time_breakdown(
    entry: CostBasisEntry,
    tokens_now: float,
    live_price: Optional[float],
    strict: bool = False
) -> CostBasisEntry:
    """
    Split everything earned since the first deposit into protocol yield and
    price change: the net tokens are treated as one deposit made at the
    weighted average price, measured against today's balance and price.

    Positions with no current balance or no live price keep only their basis.
    """
    price_ok = live_price is not None and math.isfinite(live_price) and live_price > 0
    if tokens_now <= 0 or not price_ok or entry.weighted_avg_price <= 0:
        return entry

    # Incomplete history can net below zero; there is no basis to measure from
    basis_tokens = max(entry.net_deposited_tokens, 0.0)
    breakdown = decompose(
        basis_tokens,
        tokens_now,
        [],
        [],
        entry.weighted_avg_price,
        live_price,
        strict=strict,
        asset_address=entry.asset_address,
    )
    percent = 0.0
    if breakdown.value_at_start > 0:
        percent = breakdown.total_earned_usd / breakdown.value_at_start * 100
    return entry.model_copy(update={
        "tokens_now": tokens_now,
        "price_now": live_price,
        "value_now": breakdown.value_now,
        "protocol_yield_usd": breakdown.protocol_yield_usd,
        "price_change_usd": breakdown.price_change_usd,
        "total_earned_usd": breakdown.total_earned_usd,
        "total_earned_percent": percent,
    })
