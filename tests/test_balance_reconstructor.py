from datetime import date

from tests.factories import POOL, POOL_2, snapshot
from yieldtrace.core.use_cases.balance_reconstructor import balance_before_date, debt_before_date


def test_latest_snapshot_strictly_before_target():
    snaps = [
        snapshot(date(2024, 5, 1), supply=10.0),
        snapshot(date(2024, 5, 20), supply=30.0, collateral=5.0),
        snapshot(date(2024, 6, 1), supply=99.0),
    ]
    assert balance_before_date(snaps, date(2024, 6, 1), POOL) == 35.0
    assert balance_before_date(snaps, date(2024, 6, 2), POOL) == 99.0


def test_no_prior_snapshot_means_zero():
    assert balance_before_date([snapshot(date(2024, 6, 1), supply=5.0)], date(2024, 6, 1), POOL) == 0.0
    assert balance_before_date([], date(2024, 6, 1), POOL) == 0.0


def test_other_pools_are_ignored():
    snaps = [
        snapshot(date(2024, 5, 30), supply=10.0, pool=POOL),
        snapshot(date(2024, 5, 31), supply=70.0, pool=POOL_2),
    ]
    assert balance_before_date(snaps, date(2024, 6, 1), POOL) == 10.0
    assert balance_before_date(snaps, date(2024, 6, 1), POOL_2) == 70.0


def test_debt_reads_liability_only():
    snaps = [snapshot(date(2024, 5, 30), supply=10.0, collateral=3.0, liability=4.5)]
    assert debt_before_date(snaps, date(2024, 6, 1), POOL) == 4.5


def test_negative_stored_balance_is_clamped(caplog):
    snaps = [snapshot(date(2024, 5, 30), supply=-1.0)]
    assert balance_before_date(snaps, date(2024, 6, 1), POOL) == 0.0
    assert "Negative supply balance" in caplog.text
