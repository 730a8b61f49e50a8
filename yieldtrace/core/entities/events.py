"""
Position events recorded by the upstream indexer.

Amounts are always positive; the kind decides the direction of the flow.
"""
from datetime import date, datetime, timezone, tzinfo
from enum import Enum
from typing import List, Optional

from pydantic import ConfigDict, Field, field_validator

from yieldtrace.core.entities.base import CamelModel


class EventKind(str, Enum):
    SUPPLY = "supply"
    WITHDRAW = "withdraw"
    BORROW = "borrow"
    REPAY = "repay"
    BACKSTOP_DEPOSIT = "backstop_deposit"
    BACKSTOP_WITHDRAW = "backstop_withdraw"
    CLAIM = "claim"

    @classmethod
    def from_action_type(cls, action_type: str) -> Optional["EventKind"]:
        """
        Map an indexer action type onto an event kind.
        Collateral actions are supply-side flows; auctions and liquidations
        have no kind and are skipped by the caller.
        """
        return _ACTION_TYPES.get(action_type)


_ACTION_TYPES = {
    "supply": EventKind.SUPPLY,
    "supply_collateral": EventKind.SUPPLY,
    "withdraw": EventKind.WITHDRAW,
    "withdraw_collateral": EventKind.WITHDRAW,
    "borrow": EventKind.BORROW,
    "repay": EventKind.REPAY,
    "backstop_deposit": EventKind.BACKSTOP_DEPOSIT,
    "backstop_withdraw": EventKind.BACKSTOP_WITHDRAW,
    "claim": EventKind.CLAIM,
    "backstop_claim": EventKind.CLAIM,
}

SUPPLY_KINDS = frozenset({EventKind.SUPPLY, EventKind.WITHDRAW})
BACKSTOP_KINDS = frozenset({EventKind.BACKSTOP_DEPOSIT, EventKind.BACKSTOP_WITHDRAW})
DEBT_KINDS = frozenset({EventKind.BORROW, EventKind.REPAY})


class PositionEvent(CamelModel):
    """
    One immutable ledger entry for a (user, pool, asset) position.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    pool_id: str
    asset_address: str
    kind: EventKind
    token_amount: float = Field(ge=0, allow_inf_nan=False)
    timestamp: datetime
    transaction_id: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        # The indexer records ledger close times in UTC
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def event_date(self, tz: tzinfo = timezone.utc) -> date:
        """Calendar date of the event in the given time zone."""
        return self.timestamp.astimezone(tz).date()


class EventQuery(CamelModel):
    """Filters accepted by the event ledger. Dates are UTC calendar dates."""
    pool_id: Optional[str] = None
    asset_address: Optional[str] = None
    kinds: Optional[List[EventKind]] = None
    from_date: Optional[date] = None
    to_date: Optional[date] = None

    def matches(self, event: PositionEvent) -> bool:
        if self.pool_id and event.pool_id != self.pool_id:
            return False
        if self.asset_address and event.asset_address != self.asset_address:
            return False
        if self.kinds is not None and event.kind not in self.kinds:
            return False
        event_day = event.event_date()
        if self.from_date and event_day < self.from_date:
            return False
        if self.to_date and event_day > self.to_date:
            return False
        return True


def to_display_units(raw_amount, decimals: int) -> float:
    """
    Convert a raw fixed-point on-chain amount into display units.
    e.g. 12_500_000 with 7 decimals -> 1.25
    """
    if decimals < 0:
        raise ValueError(f"decimals must be >= 0, got {decimals}")
    return float(raw_amount) / (10 ** decimals)
