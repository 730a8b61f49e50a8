from collections import defaultdict
from datetime import date, timedelta
from typing import Dict, List, Optional, Tuple

from yieldtrace.core.entities.events import EventQuery, PositionEvent
from yieldtrace.core.entities.snapshots import BalanceSnapshot, PriceSnapshot
from yieldtrace.core.interfaces.datasource import IDataSource


class LocalMockDataSource(IDataSource):
    """
    In-memory stores for tests and local runs without Postgres.
    """

    def __init__(self):
        self.events: Dict[str, List[PositionEvent]] = defaultdict(list)
        self.snapshots: Dict[Tuple[str, str], List[BalanceSnapshot]] = defaultdict(list)
        self.prices: Dict[Tuple[str, date], PriceSnapshot] = {}

    def add_event(self, event: PositionEvent) -> "LocalMockDataSource":
        self.events[event.user_id].append(event)
        return self

    def add_snapshot(self, snapshot: BalanceSnapshot) -> "LocalMockDataSource":
        self.snapshots[(snapshot.user_id, snapshot.asset_address)].append(snapshot)
        return self

    def add_price(self, asset_address: str, price_date: date, usd_price: float) -> "LocalMockDataSource":
        self.prices[(asset_address, price_date)] = PriceSnapshot(
            asset_address=asset_address,
            price_date=price_date,
            usd_price=usd_price
        )
        return self

    async def get_events(self, user_id: str, query: Optional[EventQuery] = None) -> List[PositionEvent]:
        events = self.events.get(user_id, [])
        if query is not None:
            events = [e for e in events if query.matches(e)]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_snapshots(
        self,
        user_id: str,
        asset_address: str,
        lookback_days: int,
        as_of: Optional[date] = None
    ) -> List[BalanceSnapshot]:
        cutoff = (as_of or date.today()) - timedelta(days=lookback_days)
        snapshots = [s for s in self.snapshots.get((user_id, asset_address), []) if s.snapshot_date >= cutoff]
        return sorted(snapshots, key=lambda s: s.snapshot_date)

    async def get_price(self, asset_address: str, price_date: date) -> Optional[PriceSnapshot]:
        return self.prices.get((asset_address, price_date))

    async def get_latest_price_before(
        self,
        asset_address: str,
        before: date,
        max_lookback_days: int
    ) -> Optional[PriceSnapshot]:
        floor = before - timedelta(days=max_lookback_days)
        candidates = [
            p for (asset, day), p in self.prices.items()
            if asset == asset_address and floor <= day < before
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda p: p.price_date)
