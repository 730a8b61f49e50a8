from abc import ABC, abstractmethod
from datetime import date, timedelta
from typing import List, Optional

from yieldtrace.core.entities.events import EventQuery, PositionEvent
from yieldtrace.core.entities.snapshots import BalanceSnapshot, PriceSnapshot


class IEventLedger(ABC):
    @abstractmethod
    async def get_events(
        self,
        user_id: str,
        query: Optional[EventQuery] = None
    ) -> List[PositionEvent]:
        """
        Returns the user's position events ordered by timestamp ascending.
        """
        pass


class IBalanceSnapshotStore(ABC):
    @abstractmethod
    async def get_snapshots(
        self,
        user_id: str,
        asset_address: str,
        lookback_days: int,
        as_of: Optional[date] = None
    ) -> List[BalanceSnapshot]:
        """
        Returns end-of-day snapshots for the user/asset across all pools,
        going back `lookback_days` from `as_of` (the store's today if None).
        """
        pass


class IPriceHistoryStore(ABC):
    @abstractmethod
    async def get_price(self, asset_address: str, price_date: date) -> Optional[PriceSnapshot]:
        pass

    async def get_latest_price_before(
        self,
        asset_address: str,
        before: date,
        max_lookback_days: int
    ) -> Optional[PriceSnapshot]:
        """
        Most recent snapshot strictly before `before`, scanning back at most
        `max_lookback_days`. Stores with an index should override this.
        """
        for offset in range(1, max_lookback_days + 1):
            snapshot = await self.get_price(asset_address, before - timedelta(days=offset))
            if snapshot is not None:
                return snapshot
        return None


class IDataSource(IEventLedger, IBalanceSnapshotStore, IPriceHistoryStore):
    """A backend that serves all three read-only stores."""
    pass


class ILiveStateReader(ABC):
    """
    Current on-chain state. Treated as an opaque, possibly stale oracle.
    Missing values are reported as 0.
    """

    @abstractmethod
    def get_live_price(self, asset_address: str) -> float:
        pass

    @abstractmethod
    def get_supply_balance(self, pool_id: str, asset_address: str) -> float:
        pass

    @abstractmethod
    def get_debt_balance(self, pool_id: str, asset_address: str) -> float:
        pass

    @abstractmethod
    def get_backstop_balance(self, pool_id: str) -> float:
        pass

    @abstractmethod
    def get_lp_token_price(self) -> float:
        pass
