from typing import Dict, Optional

from yieldtrace.core.interfaces.datasource import ILiveStateReader


class RequestLiveState(ILiveStateReader):
    """
    Live on-chain state as forwarded by the dashboard with each query.

    The SDK has already read prices and balances from chain; we treat the
    payload as a possibly stale oracle. Anything missing reads as 0.
    """

    def __init__(
        self,
        prices: Optional[Dict[str, float]] = None,
        balances: Optional[Dict[str, float]] = None,
        debts: Optional[Dict[str, float]] = None,
        backstop_balances: Optional[Dict[str, float]] = None,
        lp_token_price: float = 0.0
    ):
        self.prices = prices or {}
        self.balances = balances or {}
        self.debts = debts or {}
        self.backstop_balances = backstop_balances or {}
        self.lp_token_price = lp_token_price

    @classmethod
    def from_query(cls, query) -> "RequestLiveState":
        return cls(
            prices=query.sdk_prices,
            balances=getattr(query, "current_balances", None),
            debts=getattr(query, "current_debts", None),
            backstop_balances=getattr(query, "backstop_positions", None),
            lp_token_price=getattr(query, "lp_token_price", 0.0),
        )

    def get_live_price(self, asset_address: str) -> float:
        return self.prices.get(asset_address, 0.0)

    def get_supply_balance(self, pool_id: str, asset_address: str) -> float:
        return self.balances.get(f"{pool_id}-{asset_address}", 0.0)

    def get_debt_balance(self, pool_id: str, asset_address: str) -> float:
        return self.debts.get(f"{pool_id}-{asset_address}", 0.0)

    def get_backstop_balance(self, pool_id: str) -> float:
        return self.backstop_balances.get(pool_id, 0.0)

    def get_lp_token_price(self) -> float:
        return self.lp_token_price

    def supply_keys(self):
        return [tuple(k.split("-", 1)) for k in self.balances]

    def debt_keys(self):
        return [tuple(k.split("-", 1)) for k in self.debts]

    def backstop_pools(self):
        return list(self.backstop_balances)
