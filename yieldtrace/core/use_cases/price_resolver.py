import logging
import math
from datetime import date
from typing import Dict, Optional, Tuple

from yieldtrace.core.entities.pricing import PriceSource, ResolvedPrice
from yieldtrace.core.errors import PriceUnavailableError
from yieldtrace.core.interfaces.datasource import IPriceHistoryStore

logger = logging.getLogger(__name__)


class PriceResolver:
    """
    Resolves the USD price of an asset on a calendar date.

    Fallback chain: exact daily price -> most recent earlier price (bounded
    scan) -> live price. Dates on or after `today` always use the live price,
    because today's daily price may not be written yet.

    One resolver lives for one request; historical lookups are memoised
    for that request only.
    """

    def __init__(self, store: IPriceHistoryStore, today: date, max_lookback_days: int = 365):
        self.store = store
        self.today = today
        self.max_lookback_days = max_lookback_days
        self._memo: Dict[Tuple[str, date], Optional[ResolvedPrice]] = {}

    async def resolve_price(self, asset_address: str, on_date: date, live_price: Optional[float]) -> ResolvedPrice:
        if on_date >= self.today:
            return self._live(asset_address, on_date, live_price)

        historical = await self._historical(asset_address, on_date)
        if historical is not None:
            return historical

        return self._live(asset_address, on_date, live_price)

    async def resolve_historical(self, asset_address: str, on_date: date) -> ResolvedPrice:
        """
        Same chain without the live step. Used as the "current" price of
        positions that no longer have a live price (closed positions).
        """
        historical = None
        if on_date < self.today:
            historical = await self._historical(asset_address, on_date)
        if historical is None:
            raise PriceUnavailableError(asset_address, on_date)
        return historical

    async def _historical(self, asset_address: str, on_date: date) -> Optional[ResolvedPrice]:
        key = (asset_address, on_date)
        if key in self._memo:
            return self._memo[key]

        resolved = None
        snapshot = await self.store.get_price(asset_address, on_date)
        if snapshot is not None and snapshot.usd_price > 0:
            resolved = ResolvedPrice(price=snapshot.usd_price, source=PriceSource.EXACT, price_date=snapshot.price_date)
        else:
            prior = await self.store.get_latest_price_before(asset_address, on_date, self.max_lookback_days)
            if prior is not None and prior.usd_price > 0 and prior.price_date < on_date:
                resolved = ResolvedPrice(
                    price=prior.usd_price,
                    source=PriceSource.FORWARD_FILL,
                    price_date=prior.price_date
                )

        self._memo[key] = resolved
        return resolved

    @staticmethod
    def _live(asset_address: str, on_date: date, live_price: Optional[float]) -> ResolvedPrice:
        if live_price is None or not math.isfinite(live_price) or live_price <= 0:
            logger.debug(f"No live price for {asset_address} (needed for {on_date})")
            raise PriceUnavailableError(asset_address, on_date)
        return ResolvedPrice(price=live_price, source=PriceSource.LIVE_FALLBACK)
