from datetime import date

from pydantic import ConfigDict, Field

from yieldtrace.core.entities.base import CamelModel


class BalanceSnapshot(CamelModel):
    """
    End-of-day balances for one (user, pool, asset).
    The snapshot for day D reflects state after all of D's events.

    Backstop positions use the same shape: the pool is the backstop pool,
    the asset is the LP token and supply_balance holds the LP tokens.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    pool_id: str
    asset_address: str
    snapshot_date: date
    supply_balance: float = 0.0
    collateral_balance: float = 0.0
    liability_balance: float = 0.0


class PriceSnapshot(CamelModel):
    """End-of-day USD price for an asset."""
    model_config = ConfigDict(frozen=True)

    asset_address: str
    price_date: date
    usd_price: float = Field(gt=0, allow_inf_nan=False)
