"""
Splits a position's value change over a window into protocol yield and
price change.

    net_deposited        = sum(deposits) - sum(withdrawals)
    interest_tokens      = tokens_now - tokens_at_start - net_deposited
    protocol_yield_usd   = interest_tokens * price_now
    price_change_usd     = tokens_at_start * (price_now - price_at_start)
                         + sum(d.tokens * (price_now - d.price_at_event))
                         - sum(w.tokens * (price_now - w.price_at_event))
    total_earned_usd     = protocol_yield_usd + price_change_usd

Yield holds price fixed at price_now; price change holds every token flow
at the price of its own date. The two add up to the total by definition.

The same formulas serve the debt side (borrows as deposits, repays as
withdrawals), where "yield" is interest owed and price change is the
revaluation of the debt.
"""
import logging
import math
from datetime import date, tzinfo
from typing import Iterable, Optional, Sequence

from yieldtrace.core.entities.breakdown import (
    EventFlow,
    PositionBreakdown,
    PositionKey,
    PositionKind,
    PositionWindow,
    YieldBreakdown,
)
from yieldtrace.core.entities.events import PositionEvent
from yieldtrace.core.entities.snapshots import BalanceSnapshot
from yieldtrace.core.errors import InvariantViolationError, PriceUnavailableError
from yieldtrace.core.use_cases.balance_reconstructor import balance_before_date, debt_before_date
from yieldtrace.core.use_cases.event_netter import FlowSide, net_events_in_window
from yieldtrace.core.use_cases.price_resolver import PriceResolver

logger = logging.getLogger(__name__)


def _token_amount(value: float, name: str, strict: bool) -> float:
    if math.isfinite(value) and value >= 0:
        return value
    if strict:
        raise InvariantViolationError(f"{name} must be a finite non-negative amount, got {value}")
    logger.error(f"Invariant violation: {name}={value}; clamping to 0")
    return 0.0


def _price(value: float, name: str, strict: bool, asset_address: Optional[str] = None) -> float:
    if math.isfinite(value) and value > 0:
        return value
    if strict:
        raise InvariantViolationError(f"{name} must be a finite positive price, got {value}")
    # A price cannot be clamped into existence; drop the position instead
    logger.error(f"Invariant violation: {name}={value} for {asset_address}; skipping position")
    raise PriceUnavailableError(asset_address or "unknown asset")


def decompose(
    tokens_at_start: float,
    tokens_now: float,
    deposits: Sequence[EventFlow],
    withdrawals: Sequence[EventFlow],
    price_at_start: float,
    price_now: float,
    strict: bool = False,
    asset_address: Optional[str] = None
) -> YieldBreakdown:
    tokens_at_start = _token_amount(tokens_at_start, "tokens_at_start", strict)
    tokens_now = _token_amount(tokens_now, "tokens_now", strict)
    price_at_start = _price(price_at_start, "price_at_start", strict, asset_address)
    price_now = _price(price_now, "price_now", strict, asset_address)
    for flow in list(deposits) + list(withdrawals):
        _price(flow.price_at_event, "price_at_event", strict, asset_address)

    net_deposited = sum(d.tokens for d in deposits) - sum(w.tokens for w in withdrawals)
    interest_earned_tokens = tokens_now - tokens_at_start - net_deposited
    protocol_yield_usd = interest_earned_tokens * price_now

    price_change_on_start = tokens_at_start * (price_now - price_at_start)
    price_change_on_deposits = sum(d.tokens * (price_now - d.price_at_event) for d in deposits)
    price_change_lost_on_withdrawals = sum(w.tokens * (price_now - w.price_at_event) for w in withdrawals)
    price_change_usd = price_change_on_start + price_change_on_deposits - price_change_lost_on_withdrawals

    return YieldBreakdown(
        interest_earned_tokens=interest_earned_tokens,
        protocol_yield_usd=protocol_yield_usd,
        price_change_usd=price_change_usd,
        total_earned_usd=protocol_yield_usd + price_change_usd,
        value_at_start=tokens_at_start * price_at_start,
        value_now=tokens_now * price_now,
    )


async def decompose_position(
    key: PositionKey,
    snapshots: Iterable[BalanceSnapshot],
    events: Iterable[PositionEvent],
    *,
    tokens_now: float,
    live_price: Optional[float],
    period_start: date,
    resolver: PriceResolver,
    tz: tzinfo,
    strict: bool = False
) -> Optional[PositionBreakdown]:
    """
    Build the window for one position and decompose it.

    Returns None when the position did not exist in or around the window.
    Raises PriceUnavailableError when it cannot be priced; the caller
    excludes it rather than reporting zero-priced numbers.
    """
    snapshots = list(snapshots)
    if key.kind == PositionKind.BORROW:
        side = FlowSide.DEBT
        tokens_at_start = debt_before_date(snapshots, period_start, key.pool_id)
    else:
        side = FlowSide.SUPPLY
        tokens_at_start = balance_before_date(snapshots, period_start, key.pool_id)

    if tokens_now <= 0 and tokens_at_start <= 0:
        return None

    price_now = live_price if live_price is not None else 0.0
    price_now_is_historical = False
    if not (math.isfinite(price_now) and price_now > 0):
        if tokens_at_start <= 0:
            raise PriceUnavailableError(key.asset_address)
        # No live price (closed position): the period-start price stands in for "now"
        substitute = await resolver.resolve_historical(key.asset_address, period_start)
        price_now = substitute.price
        price_now_is_historical = True
        logger.info(
            f"{key.composite_key}: no live price, using {substitute.source.value} "
            f"price {price_now} from {substitute.price_date}"
        )

    start_price = await resolver.resolve_price(key.asset_address, period_start, price_now)
    netted = await net_events_in_window(
        events,
        key.pool_id,
        key.asset_address,
        period_start,
        resolver=resolver,
        fallback_price=price_now,
        tz=tz,
        side=side,
    )

    breakdown = decompose(
        tokens_at_start,
        tokens_now,
        netted.deposits,
        netted.withdrawals,
        start_price.price,
        price_now,
        strict=strict,
        asset_address=key.asset_address,
    )
    window = PositionWindow(
        asset_address=key.asset_address,
        pool_id=key.pool_id,
        period_start_date=period_start,
        tokens_at_start=tokens_at_start,
        tokens_now=tokens_now,
        net_deposited_in_period=netted.net_deposited,
        price_at_start=start_price.price,
        price_now=price_now,
        price_source=start_price.source,
        price_now_is_historical=price_now_is_historical,
    )
    return PositionBreakdown.from_parts(key, window, breakdown)
