import asyncio
import logging
from datetime import date, tzinfo
from typing import Awaitable, Dict, Iterable, List, Optional, Set, Tuple, TypeVar

from yieldtrace.config import Settings
from yieldtrace.core.entities.breakdown import (
    CostBasisEntry,
    Diagnostics,
    ExcludedPosition,
    ExclusionReason,
    PositionBreakdown,
    PositionKey,
    PositionKind,
)
from yieldtrace.core.entities.events import (
    BACKSTOP_KINDS,
    DEBT_KINDS,
    SUPPLY_KINDS,
    EventKind,
    EventQuery,
    PositionEvent,
)
from yieldtrace.core.entities.queries import (
    BorrowCostQuery,
    BorrowCostResponse,
    CostBasisQuery,
    CostBasisResponse,
    PeriodYieldQuery,
    PeriodYieldResponse,
    RealizedYieldQuery,
    RealizedYieldResponse,
)
from yieldtrace.core.entities.snapshots import BalanceSnapshot
from yieldtrace.core.errors import (
    DataSourceError,
    InvalidQueryError,
    PriceUnavailableError,
    QueryTimeoutError,
)
from yieldtrace.core.interfaces.datasource import IDataSource
from yieldtrace.core.use_cases.cost_basis import cost_basis_entry, with_all_time_breakdown
from yieldtrace.core.use_cases.period import effective_start_date, period_days, period_start_date, today_in
from yieldtrace.core.use_cases.portfolio_aggregator import aggregate, aggregate_all_time
from yieldtrace.core.use_cases.price_resolver import PriceResolver
from yieldtrace.core.use_cases.realized_yield import realized_transactions, summarize
from yieldtrace.core.use_cases.yield_decomposer import decompose_position
from yieldtrace.infrastructure.gateways.live_state import RequestLiveState

logger = logging.getLogger(__name__)

T = TypeVar("T")

_KIND_EVENTS = {
    PositionKind.SUPPLY: SUPPLY_KINDS,
    PositionKind.BACKSTOP: BACKSTOP_KINDS,
    PositionKind.BORROW: DEBT_KINDS,
}


class YieldService:
    """
    Answers yield queries for one user. Every call builds its own resolver
    and live-state view; nothing is shared between requests.
    """

    def __init__(self, datasource: IDataSource, settings: Settings):
        self.db = datasource
        self.settings = settings

    async def run(self, query):
        if isinstance(query, PeriodYieldQuery):
            return await self.period_yield(query)
        if isinstance(query, BorrowCostQuery):
            return await self.borrow_cost(query)
        if isinstance(query, CostBasisQuery):
            return await self.cost_basis(query)
        if isinstance(query, RealizedYieldQuery):
            return await self.realized_yield(query)
        raise InvalidQueryError(f"Unsupported query type: {type(query).__name__}")

    async def period_yield(self, query: PeriodYieldQuery) -> PeriodYieldResponse:
        kinds = (PositionKind.SUPPLY, PositionKind.BACKSTOP, PositionKind.BORROW)
        portfolio, diagnostics, start, days = await self._with_timeout(self._period_breakdown(query, kinds))
        return PeriodYieldResponse(
            by_asset=portfolio.by_asset,
            by_backstop=portfolio.by_backstop,
            by_borrow=portfolio.by_borrow,
            totals=portfolio.totals,
            borrow_totals=portfolio.borrow_totals,
            period_start_date=start,
            period_days=days,
            diagnostics=diagnostics,
        )

    async def borrow_cost(self, query: BorrowCostQuery) -> BorrowCostResponse:
        portfolio, diagnostics, start, days = await self._with_timeout(
            self._period_breakdown(query, (PositionKind.BORROW,))
        )
        return BorrowCostResponse(
            by_borrow=portfolio.by_borrow,
            borrow_totals=portfolio.borrow_totals,
            period_start_date=start,
            period_days=days,
            diagnostics=diagnostics,
        )

    async def cost_basis(self, query: CostBasisQuery) -> CostBasisResponse:
        return await self._with_timeout(self._cost_basis(query))

    async def realized_yield(self, query: RealizedYieldQuery) -> RealizedYieldResponse:
        return await self._with_timeout(self._realized_yield(query))

    # --- Internals ---

    async def _with_timeout(self, coro: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(coro, timeout=self.settings.query_timeout_seconds)
        except asyncio.TimeoutError:
            logger.error(f"Query timed out after {self.settings.query_timeout_seconds}s")
            raise QueryTimeoutError(f"Query exceeded {self.settings.query_timeout_seconds}s")

    async def _bounded_gather(self, coros: Iterable[Awaitable[T]]) -> List[object]:
        """Run coroutines concurrently, at most max_concurrent_reads at a time."""
        sem = asyncio.Semaphore(self.settings.max_concurrent_reads)

        async def bounded(coro):
            async with sem:
                return await coro

        return await asyncio.gather(*(bounded(c) for c in coros), return_exceptions=True)

    async def _read_events(self, user_id: str, query: Optional[EventQuery] = None) -> List[PositionEvent]:
        # The ledger is required: a failure here aborts the whole query
        try:
            return await self.db.get_events(user_id, query)
        except DataSourceError:
            raise
        except OSError as e:
            raise DataSourceError(f"Event ledger unavailable: {e}") from e

    async def _read_wallet_events(self, wallets: List[str]) -> List[PositionEvent]:
        """Ledgers of several wallets merged into one; any failed read aborts."""
        results = await self._bounded_gather(self._read_events(w) for w in wallets)
        events: List[PositionEvent] = []
        for result in results:
            if isinstance(result, BaseException):
                raise result
            events.extend(result)
        return events

    def _position_keys(
        self,
        events: Iterable[PositionEvent],
        live: RequestLiveState,
        kinds: Iterable[PositionKind]
    ) -> List[PositionKey]:
        """Every position the user has touched or currently holds, in a stable order."""
        lp_token = self.settings.lp_token_address
        wanted = set(kinds)
        seen: Dict[PositionKey, None] = {}

        def add(kind: PositionKind, pool_id: str, asset_address: str):
            if kind in wanted and pool_id and asset_address:
                seen.setdefault(PositionKey(kind=kind, pool_id=pool_id, asset_address=asset_address), None)

        for e in events:
            for kind, event_kinds in _KIND_EVENTS.items():
                if e.kind in event_kinds:
                    add(kind, e.pool_id, lp_token if kind == PositionKind.BACKSTOP else e.asset_address)

        for pool_id, asset_address in live.supply_keys():
            add(PositionKind.SUPPLY, pool_id, asset_address)
        for pool_id in live.backstop_pools():
            add(PositionKind.BACKSTOP, pool_id, lp_token)
        for pool_id, asset_address in live.debt_keys():
            add(PositionKind.BORROW, pool_id, asset_address)

        return list(seen)

    def _claim_keys(self, events: Iterable[PositionEvent]) -> List[PositionKey]:
        """One reward stream per (pool, paid-out token). LP payouts come from the backstop."""
        seen: Dict[PositionKey, None] = {}
        for e in events:
            if e.kind != EventKind.CLAIM or not e.asset_address:
                continue
            kind = PositionKind.BACKSTOP if e.asset_address == self.settings.lp_token_address else PositionKind.SUPPLY
            seen.setdefault(PositionKey(kind=kind, pool_id=e.pool_id, asset_address=e.asset_address), None)
        return list(seen)

    def _live_inputs(self, key: PositionKey, live: RequestLiveState) -> Tuple[float, float]:
        """(tokens_now, live_price) for a position."""
        if key.kind == PositionKind.BACKSTOP:
            return live.get_backstop_balance(key.pool_id), live.get_lp_token_price()
        if key.kind == PositionKind.BORROW:
            return live.get_debt_balance(key.pool_id, key.asset_address), live.get_live_price(key.asset_address)
        return live.get_supply_balance(key.pool_id, key.asset_address), live.get_live_price(key.asset_address)

    @staticmethod
    def _exclude(key: PositionKey, error: BaseException, excluded: List[ExcludedPosition]):
        """Record a per-position failure, or re-raise it if it is not one."""
        if isinstance(error, PriceUnavailableError):
            reason = ExclusionReason.NO_PRICE
        elif isinstance(error, (DataSourceError, OSError)):
            reason = ExclusionReason.READ_FAILED
        else:
            raise error
        logger.warning(f"Excluding {key.kind.value} position {key.composite_key}: {error}")
        excluded.append(ExcludedPosition(
            kind=key.kind,
            composite_key=key.composite_key,
            reason=reason,
            detail=str(error),
        ))

    @staticmethod
    def _earliest_deposit(events: Iterable[PositionEvent], tz: tzinfo) -> Optional[date]:
        days = [
            e.event_date(tz) for e in events
            if e.kind in (EventKind.SUPPLY, EventKind.BACKSTOP_DEPOSIT)
        ]
        return min(days) if days else None

    async def _read_snapshots(
        self,
        user_id: str,
        assets: Set[str],
        lookback_days: int,
        as_of: date
    ) -> Tuple[Dict[str, List[BalanceSnapshot]], Dict[str, BaseException]]:
        ordered = sorted(assets)
        results = await self._bounded_gather(
            self.db.get_snapshots(user_id, asset, lookback_days, as_of) for asset in ordered
        )
        snapshots, failures = {}, {}
        for asset, result in zip(ordered, results):
            if isinstance(result, BaseException):
                failures[asset] = result
            else:
                snapshots[asset] = result
        return snapshots, failures

    async def _period_breakdown(self, query, kinds: Tuple[PositionKind, ...]):
        tz = query.tz
        today = today_in(tz)
        start = period_start_date(query.period, today)
        live = RequestLiveState.from_query(query)
        resolver = PriceResolver(self.db, today, self.settings.price_lookback_days)

        # 1. Ledger (required)
        event_kinds = None
        if kinds == (PositionKind.BORROW,):
            event_kinds = sorted(DEBT_KINDS, key=lambda k: k.value)
        events = await self._read_events(query.user_address, EventQuery(kinds=event_kinds) if event_kinds else None)
        keys = self._position_keys(events, live, kinds)
        logger.info(f"{query.user_address}: {len(keys)} positions, {len(events)} events, period start {start}")

        # 2. Snapshots per asset, fanned out
        lookback = (today - start).days + self.settings.snapshot_lookback_days
        snapshots, failures = await self._read_snapshots(
            query.user_address, {k.asset_address for k in keys}, lookback, today
        )

        # 3. Decompose each readable position
        excluded: List[ExcludedPosition] = []
        readable = []
        for key in keys:
            if key.asset_address in failures:
                self._exclude(key, failures[key.asset_address], excluded)
            else:
                readable.append(key)

        async def decompose_key(key: PositionKey) -> Optional[PositionBreakdown]:
            tokens_now, live_price = self._live_inputs(key, live)
            return await decompose_position(
                key,
                snapshots[key.asset_address],
                events,
                tokens_now=tokens_now,
                live_price=live_price,
                period_start=start,
                resolver=resolver,
                tz=tz,
                strict=self.settings.strict_invariants,
            )

        results = await self._bounded_gather(decompose_key(k) for k in readable)
        breakdowns = []
        for key, result in zip(readable, results):
            if isinstance(result, BaseException):
                self._exclude(key, result, excluded)
            elif result is not None:
                breakdowns.append(result)

        # 4. Roll up
        portfolio = aggregate(breakdowns)
        earliest = self._earliest_deposit(events, tz)
        diagnostics = Diagnostics(
            asset_count=len(portfolio.by_asset),
            backstop_count=len(portfolio.by_backstop),
            borrow_count=len(portfolio.by_borrow),
            price_source_counts=portfolio.price_source_counts,
            earliest_deposit_date=earliest,
            excluded=excluded,
        )
        return portfolio, diagnostics, effective_start_date(start, earliest), period_days(start, today, earliest)

    async def _cost_basis(self, query: CostBasisQuery) -> CostBasisResponse:
        tz = query.tz
        today = today_in(tz)
        live = RequestLiveState.from_query(query)
        resolver = PriceResolver(self.db, today, self.settings.price_lookback_days)
        strict = self.settings.strict_invariants

        events = await self._read_wallet_events(query.wallets)
        keys = self._position_keys(events, live, tuple(PositionKind))

        async def entry_for(key: PositionKey) -> Optional[CostBasisEntry]:
            tokens_now, live_price = self._live_inputs(key, live)
            entry = await cost_basis_entry(
                key,
                events,
                resolver=resolver,
                live_price=live_price,
                tz=tz,
                # A pool missing from backstopPositions is no longer held
                current_balance=tokens_now if key.kind == PositionKind.BACKSTOP else None,
            )
            if entry is None:
                return None
            return with_all_time_breakdown(entry, tokens_now, live_price, strict=strict)

        results = await self._bounded_gather(entry_for(k) for k in keys)

        groups: Dict[PositionKind, Dict[str, CostBasisEntry]] = {kind: {} for kind in PositionKind}
        excluded: List[ExcludedPosition] = []
        for key, result in zip(keys, results):
            if isinstance(result, BaseException):
                self._exclude(key, result, excluded)
            elif result is not None:
                groups[key.kind][key.composite_key] = result

        def total(kind: PositionKind) -> float:
            return sum(e.cost_basis_usd for e in groups[kind].values())

        all_time, borrow_all_time = aggregate_all_time(
            entry for group in groups.values() for entry in group.values()
        )
        return CostBasisResponse(
            user_address=query.user_address,
            wallets=query.wallets,
            by_asset=groups[PositionKind.SUPPLY],
            by_borrow=groups[PositionKind.BORROW],
            by_backstop=groups[PositionKind.BACKSTOP],
            total_cost_basis_usd=total(PositionKind.SUPPLY),
            total_borrow_cost_basis_usd=total(PositionKind.BORROW),
            total_backstop_cost_basis_usd=total(PositionKind.BACKSTOP),
            all_time_totals=all_time,
            borrow_all_time_totals=borrow_all_time,
            excluded=excluded,
        )

    async def _realized_yield(self, query: RealizedYieldQuery) -> RealizedYieldResponse:
        tz = query.tz
        live = RequestLiveState.from_query(query)
        resolver = PriceResolver(self.db, today_in(tz), self.settings.price_lookback_days)

        events = await self._read_wallet_events(query.wallets)
        streams = [
            (key, False) for key in self._position_keys(events, live, (PositionKind.SUPPLY, PositionKind.BACKSTOP))
        ] + [(key, True) for key in self._claim_keys(events)]

        async def flows_for(key: PositionKey, claims: bool):
            _, live_price = self._live_inputs(key, live)
            return await realized_transactions(
                key,
                events,
                resolver=resolver,
                live_price=live_price,
                tz=tz,
                claims=claims,
            )

        results = await self._bounded_gather(flows_for(k, c) for k, c in streams)
        transactions = []
        excluded: List[ExcludedPosition] = []
        for (key, _), result in zip(streams, results):
            if isinstance(result, BaseException):
                self._exclude(key, result, excluded)
            else:
                transactions.extend(result)
        transactions.sort(key=lambda t: t.event_date)

        summary = summarize(transactions)
        logger.info(
            f"{', '.join(query.wallets)}: realized {summary.realized_pnl_usd:.2f} USD "
            f"over {len(transactions)} flows"
        )
        return RealizedYieldResponse(
            **dict(summary),
            user_address=query.user_address,
            wallets=query.wallets,
            transactions=transactions,
            excluded=excluded,
        )
