"""
Realized yield: what actually left the protocol against what went in.

    realized_pnl_usd = withdrawn_usd - deposited_usd + claimed_usd

Every deposit, withdrawal and claim is valued at the price of its own day,
so unrealized price moves on open positions never show up here.
"""
import logging
from datetime import tzinfo
from typing import Iterable, List, Optional

from yieldtrace.core.entities.breakdown import (
    EmissionTotals,
    EventFlow,
    PositionKey,
    PositionKind,
    RealizedBucket,
    RealizedFlowType,
    RealizedSummary,
    RealizedTransaction,
)
from yieldtrace.core.entities.events import PositionEvent
from yieldtrace.core.use_cases.event_netter import FlowSide, net_events_in_window
from yieldtrace.core.use_cases.price_resolver import PriceResolver

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365


def _transaction(key: PositionKey, flow: EventFlow, flow_type: RealizedFlowType) -> RealizedTransaction:
    return RealizedTransaction(
        event_date=flow.event_date,
        type=flow_type,
        source=key.kind,
        pool_id=key.pool_id,
        asset_address=key.asset_address,
        tokens=flow.tokens,
        price_usd=flow.price_at_event,
        value_usd=flow.tokens * flow.price_at_event,
        price_source=flow.price_source,
    )


async def realized_transactions(
    key: PositionKey,
    events: Iterable[PositionEvent],
    *,
    resolver: PriceResolver,
    live_price: Optional[float],
    tz: tzinfo,
    claims: bool = False
) -> List[RealizedTransaction]:
    """
    Price every flow of one position over its whole history.

    With claims=True the key names a reward stream instead: the pool the
    claim came from and the token it paid out.
    """
    netted = await net_events_in_window(
        events,
        key.pool_id,
        key.asset_address,
        None,
        resolver=resolver,
        fallback_price=live_price,
        tz=tz,
        side=FlowSide.CLAIM if claims else FlowSide.SUPPLY,
    )
    if claims:
        return [_transaction(key, f, RealizedFlowType.CLAIM) for f in netted.deposits]
    return (
        [_transaction(key, f, RealizedFlowType.DEPOSIT) for f in netted.deposits]
        + [_transaction(key, f, RealizedFlowType.WITHDRAW) for f in netted.withdrawals]
    )


def annualize(roi_percent: Optional[float], days_active: int) -> Optional[float]:
    """(1 + roi) ** (365 / days) - 1, or None when it is undefined."""
    if roi_percent is None or days_active <= 0:
        return None
    growth = 1 + roi_percent / 100
    if growth <= 0:
        return None
    try:
        return (growth ** (DAYS_PER_YEAR / days_active) - 1) * 100
    except OverflowError:
        logger.warning(f"Annualized ROI overflows for roi={roi_percent}% over {days_active} days")
        return None


def summarize(transactions: Iterable[RealizedTransaction]) -> RealizedSummary:
    transactions = list(transactions)
    buckets = {
        PositionKind.SUPPLY: RealizedBucket(),
        PositionKind.BACKSTOP: RealizedBucket(),
    }
    emissions = EmissionTotals()

    for tx in transactions:
        bucket = buckets[tx.source]
        if tx.type == RealizedFlowType.DEPOSIT:
            bucket.deposited_usd += tx.value_usd
        elif tx.type == RealizedFlowType.WITHDRAW:
            bucket.withdrawn_usd += tx.value_usd
        else:
            bucket.claimed_usd += tx.value_usd
            emissions.usd_value += tx.value_usd
            if tx.source == PositionKind.BACKSTOP:
                emissions.lp_tokens_claimed += tx.tokens
            else:
                emissions.emission_tokens_claimed += tx.tokens

    for bucket in buckets.values():
        bucket.realized_pnl_usd = bucket.withdrawn_usd - bucket.deposited_usd + bucket.claimed_usd

    pools, backstop = buckets[PositionKind.SUPPLY], buckets[PositionKind.BACKSTOP]
    summary = RealizedSummary(
        total_deposited_usd=pools.deposited_usd + backstop.deposited_usd,
        total_withdrawn_usd=pools.withdrawn_usd + backstop.withdrawn_usd,
        total_claimed_usd=pools.claimed_usd + backstop.claimed_usd,
        realized_pnl_usd=pools.realized_pnl_usd + backstop.realized_pnl_usd,
        pools=pools,
        backstop=backstop,
        emissions=emissions,
    )

    days = sorted(tx.event_date for tx in transactions)
    if days:
        summary.first_activity_date = days[0]
        summary.last_activity_date = days[-1]
        summary.days_active = max(1, (days[-1] - days[0]).days)

    if summary.total_deposited_usd > 0:
        summary.roi_percent = summary.realized_pnl_usd / summary.total_deposited_usd * 100
    summary.annualized_roi_percent = annualize(summary.roi_percent, summary.days_active)
    return summary
