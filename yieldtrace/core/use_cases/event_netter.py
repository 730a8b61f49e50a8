from datetime import date, timezone, tzinfo
from enum import Enum
from typing import Iterable, Optional

from yieldtrace.core.entities.breakdown import EventFlow, NettedEvents
from yieldtrace.core.entities.events import EventKind, PositionEvent
from yieldtrace.core.use_cases.price_resolver import PriceResolver


class FlowSide(str, Enum):
    SUPPLY = "supply"
    DEBT = "debt"
    CLAIM = "claim"


# side -> (kinds that add tokens, kinds that remove tokens)
_FLOW_KINDS = {
    FlowSide.SUPPLY: (
        frozenset({EventKind.SUPPLY, EventKind.BACKSTOP_DEPOSIT}),
        frozenset({EventKind.WITHDRAW, EventKind.BACKSTOP_WITHDRAW}),
    ),
    FlowSide.DEBT: (
        frozenset({EventKind.BORROW}),
        frozenset({EventKind.REPAY}),
    ),
    FlowSide.CLAIM: (
        frozenset({EventKind.CLAIM}),
        frozenset(),
    ),
}


async def net_events_in_window(
    events: Iterable[PositionEvent],
    pool_id: str,
    asset_address: str,
    window_start: Optional[date],
    window_end: Optional[date] = None,
    *,
    resolver: PriceResolver,
    fallback_price: Optional[float],
    tz: tzinfo = timezone.utc,
    side: FlowSide = FlowSide.SUPPLY
) -> NettedEvents:
    """
    Deposits and withdrawals for one (pool, asset) inside a date window.

    window_start is inclusive: the opening balance is taken strictly before
    it, so an event on the start date counts here and nowhere else.
    window_start=None means all history. Each flow is priced at its own
    date; fallback_price is the live step of the resolver chain.

    On the debt side borrows play the role of deposits and repays the role
    of withdrawals. Claims never move a position's token balance; they
    are only netted on the claim side, where every claim is an inflow of
    the reward token.
    """
    adds, removes = _FLOW_KINDS[side]
    netted = NettedEvents()

    for event in sorted(events, key=lambda e: e.timestamp):
        if event.pool_id != pool_id or event.asset_address != asset_address:
            continue
        if event.kind not in adds and event.kind not in removes:
            continue

        event_day = event.event_date(tz)
        if window_start is not None and event_day < window_start:
            continue
        if window_end is not None and event_day > window_end:
            continue

        resolved = await resolver.resolve_price(asset_address, event_day, fallback_price)
        flow = EventFlow(
            tokens=event.token_amount,
            event_date=event_day,
            price_at_event=resolved.price,
            price_source=resolved.source,
        )
        if event.kind in adds:
            netted.deposits.append(flow)
        else:
            netted.withdrawals.append(flow)

    return netted
