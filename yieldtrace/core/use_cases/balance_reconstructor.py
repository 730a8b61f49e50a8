"""
Balance at the start of a day, from end-of-day snapshots.

The snapshot for day D is taken after D's events, so the balance at the
start of `target_date` is the latest snapshot strictly before it. Events
on `target_date` itself belong to the window (see event_netter).
"""
import logging
from datetime import date
from typing import Iterable, Optional

from yieldtrace.core.entities.snapshots import BalanceSnapshot

logger = logging.getLogger(__name__)


def _latest_before(snapshots: Iterable[BalanceSnapshot], target_date: date, pool_id: str) -> Optional[BalanceSnapshot]:
    latest = None
    for snap in snapshots:
        if snap.pool_id != pool_id or snap.snapshot_date >= target_date:
            continue
        if latest is None or snap.snapshot_date > latest.snapshot_date:
            latest = snap
    return latest


def _non_negative(value: float, snap: BalanceSnapshot, what: str) -> float:
    if value < 0:
        logger.warning(
            f"Negative {what} {value} in snapshot {snap.pool_id}/{snap.asset_address} "
            f"on {snap.snapshot_date}; using 0"
        )
        return 0.0
    return value


def balance_before_date(snapshots: Iterable[BalanceSnapshot], target_date: date, pool_id: str) -> float:
    """Supplied + collateral tokens held at the start of target_date (0 if none)."""
    snap = _latest_before(snapshots, target_date, pool_id)
    if snap is None:
        return 0.0
    return _non_negative((snap.supply_balance or 0.0) + (snap.collateral_balance or 0.0), snap, "supply balance")


def debt_before_date(snapshots: Iterable[BalanceSnapshot], target_date: date, pool_id: str) -> float:
    """Debt tokens owed at the start of target_date (0 if none)."""
    snap = _latest_before(snapshots, target_date, pool_id)
    if snap is None:
        return 0.0
    return _non_negative(snap.liability_balance or 0.0, snap, "liability balance")
