"""
End-to-end service tests over the in-memory stores.
"""
import asyncio
from datetime import date
from typing import List

import pytest

from tests.factories import BLND, LP_TOKEN, POOL, POOL_2, USDC, USER, XLM, days_ago, event, snapshot
from yieldtrace.config import Settings
from yieldtrace.core.entities.breakdown import ExclusionReason, PositionKind
from yieldtrace.core.entities.events import EventKind
from yieldtrace.core.entities.queries import BorrowCostQuery, CostBasisQuery, PeriodYieldQuery, RealizedYieldQuery
from yieldtrace.core.errors import DataSourceError, InvalidQueryError, QueryTimeoutError
from yieldtrace.core.services import YieldService
from yieldtrace.core.use_cases.period import today_in
from yieldtrace.infrastructure.gateways.local_mock import LocalMockDataSource


def seeded() -> LocalMockDataSource:
    """
    USDC supplied for months and still open, XLM opened inside the window,
    a backstop deposit, and a borrow.
    """
    store = LocalMockDataSource()
    store.add_event(event(EventKind.SUPPLY, 1000.0, days_ago(90)))
    store.add_snapshot(snapshot(days_ago(31), supply=1005.0))
    store.add_price(USDC, days_ago(30), 1.0)

    store.add_event(event(EventKind.SUPPLY, 5000.0, days_ago(10), asset=XLM))
    store.add_price(XLM, days_ago(10), 0.10)
    store.add_price(XLM, days_ago(30), 0.09)

    store.add_event(event(EventKind.BACKSTOP_DEPOSIT, 100.0, days_ago(60), asset=LP_TOKEN))
    store.add_snapshot(snapshot(days_ago(31), supply=100.0, asset=LP_TOKEN))
    store.add_price(LP_TOKEN, days_ago(30), 0.40)

    store.add_event(event(EventKind.BORROW, 200.0, days_ago(5), pool=POOL_2))
    return store


def period_query(**overrides) -> PeriodYieldQuery:
    fields = dict(
        user_address=USER,
        period="1M",
        sdk_prices={USDC: 1.0, XLM: 0.12},
        current_balances={f"{POOL}-{USDC}": 1010.0, f"{POOL}-{XLM}": 5001.0},
        backstop_positions={POOL: 101.0},
        current_debts={f"{POOL_2}-{USDC}": 201.0},
        lp_token_price=0.42,
    )
    fields.update(overrides)
    return PeriodYieldQuery(**fields)


@pytest.fixture
def settings():
    return Settings(max_concurrent_reads=2, query_timeout_seconds=2.0)


async def test_period_yield_end_to_end(settings):
    result = await YieldService(seeded(), settings).period_yield(period_query())

    usdc = result.by_asset[f"{POOL}-{USDC}"]
    assert usdc.tokens_at_start == 1005.0
    assert usdc.interest_earned_tokens == pytest.approx(5.0)
    assert usdc.protocol_yield_usd == pytest.approx(5.0)

    xlm = result.by_asset[f"{POOL}-{XLM}"]
    assert xlm.tokens_at_start == 0.0
    assert xlm.net_deposited_in_period == 5000.0
    assert xlm.interest_earned_tokens == pytest.approx(1.0)
    # 5000 tokens bought at 0.10, now 0.12
    assert xlm.price_change_usd == pytest.approx(100.0)

    backstop = result.by_backstop[POOL]
    assert backstop.price_at_start == 0.40
    assert backstop.price_change_usd == pytest.approx(100.0 * 0.02)

    borrow = result.by_borrow[f"{POOL_2}-{USDC}"]
    assert borrow.kind == PositionKind.BORROW
    assert borrow.interest_earned_tokens == pytest.approx(1.0)
    assert result.borrow_totals.interest_accrued_usd == pytest.approx(1.0)

    expected = usdc.total_earned_usd + xlm.total_earned_usd + backstop.total_earned_usd
    assert result.totals.total_earned_usd == pytest.approx(expected)
    assert result.diagnostics.asset_count == 2
    assert result.diagnostics.backstop_count == 1
    assert result.diagnostics.borrow_count == 1
    assert result.diagnostics.earliest_deposit_date == days_ago(90)
    assert result.period_days == 30
    assert result.diagnostics.excluded == []


async def test_empty_positions_never_reported(settings):
    store = seeded()
    # Fully withdrawn long before the window
    store.add_event(event(EventKind.SUPPLY, 10.0, days_ago(200), pool=POOL_2, asset=XLM))
    store.add_event(event(EventKind.WITHDRAW, 10.0, days_ago(150), pool=POOL_2, asset=XLM))
    result = await YieldService(store, settings).period_yield(period_query())
    assert f"{POOL_2}-{XLM}" not in result.by_asset


async def test_short_lived_position_reports_real_age(settings):
    store = LocalMockDataSource()
    store.add_event(event(EventKind.SUPPLY, 50.0, days_ago(3)))
    query = period_query(current_balances={f"{POOL}-{USDC}": 50.0}, backstop_positions={}, current_debts={})
    result = await YieldService(store, settings).period_yield(query)
    assert result.period_days == 3
    assert result.period_start_date == days_ago(3)


async def test_unpriceable_position_is_excluded_not_fatal(settings):
    query = period_query(sdk_prices={USDC: 1.0})
    result = await YieldService(seeded(), settings).period_yield(query)
    assert f"{POOL}-{XLM}" not in result.by_asset
    assert f"{POOL}-{USDC}" in result.by_asset
    reasons = {(e.composite_key, e.reason) for e in result.diagnostics.excluded}
    assert (f"{POOL}-{XLM}", ExclusionReason.NO_PRICE) in reasons


class FlakySnapshots(LocalMockDataSource):
    def __init__(self, failing: List[str]):
        super().__init__()
        self.failing = failing

    async def get_snapshots(self, user_id, asset_address, lookback_days, as_of=None):
        if asset_address in self.failing:
            raise DataSourceError(f"snapshot read failed for {asset_address}")
        return await super().get_snapshots(user_id, asset_address, lookback_days, as_of)


async def test_failed_snapshot_read_excludes_only_that_asset(settings):
    store = FlakySnapshots([XLM])
    source = seeded()
    store.events, store.snapshots, store.prices = source.events, source.snapshots, source.prices

    result = await YieldService(store, settings).period_yield(period_query())
    assert f"{POOL}-{USDC}" in result.by_asset
    assert f"{POOL}-{XLM}" not in result.by_asset
    excluded = result.diagnostics.excluded
    assert [(e.composite_key, e.reason) for e in excluded] == [(f"{POOL}-{XLM}", ExclusionReason.READ_FAILED)]


class BrokenLedger(LocalMockDataSource):
    async def get_events(self, user_id, query=None):
        raise DataSourceError("ledger down")


async def test_ledger_failure_aborts_query(settings):
    with pytest.raises(DataSourceError):
        await YieldService(BrokenLedger(), settings).period_yield(period_query())


class SlowSnapshots(LocalMockDataSource):
    async def get_snapshots(self, user_id, asset_address, lookback_days, as_of=None):
        await asyncio.sleep(10)
        return []


async def test_timeout_raises_query_timeout():
    settings = Settings(query_timeout_seconds=0.05)
    with pytest.raises(QueryTimeoutError):
        await YieldService(SlowSnapshots(), settings).period_yield(period_query())


async def test_negative_stored_debt_is_clamped_not_fatal(settings):
    store = seeded()
    store.add_snapshot(snapshot(days_ago(31), liability=-3.0, pool=POOL_2))
    result = await YieldService(store, settings).period_yield(period_query())
    borrow = result.by_borrow[f"{POOL_2}-{USDC}"]
    assert borrow.tokens_at_start == 0.0
    assert result.by_asset[f"{POOL}-{USDC}"].tokens_at_start == 1005.0


async def test_borrow_cost_only_reports_debt(settings):
    query = BorrowCostQuery(
        user_address=USER,
        period="1W",
        sdk_prices={USDC: 1.0},
        current_debts={f"{POOL_2}-{USDC}": 201.0},
    )
    result = await YieldService(seeded(), settings).run(query)
    assert result.kind == "borrow_cost"
    assert list(result.by_borrow) == [f"{POOL_2}-{USDC}"]
    assert result.borrow_totals.total_cost_usd == pytest.approx(1.0)


async def test_cost_basis_all_positions(settings):
    store = seeded()
    store.add_price(USDC, days_ago(90), 0.99)
    query = CostBasisQuery(
        user_address=USER,
        sdk_prices={USDC: 1.0, XLM: 0.12},
        backstop_positions={POOL: 101.0},
        lp_token_price=0.42,
    )
    result = await YieldService(store, settings).run(query)
    assert result.by_asset[f"{POOL}-{USDC}"].cost_basis_usd == pytest.approx(990.0)
    assert result.by_asset[f"{POOL}-{XLM}"].cost_basis_usd == pytest.approx(500.0)
    assert result.total_cost_basis_usd == pytest.approx(1490.0)
    assert result.by_backstop[POOL].net_deposited_tokens == 100.0
    assert result.by_borrow[f"{POOL_2}-{USDC}"].cost_basis_usd == pytest.approx(200.0)


async def test_run_rejects_unknown_query(settings):
    with pytest.raises(InvalidQueryError):
        await YieldService(seeded(), settings).run(object())


async def test_cost_basis_all_time_breakdown(settings):
    store = seeded()
    store.add_price(USDC, days_ago(90), 0.99)
    query = CostBasisQuery(
        user_address=USER,
        sdk_prices={USDC: 1.0, XLM: 0.12},
        current_balances={f"{POOL}-{USDC}": 1010.0},
        backstop_positions={POOL: 101.0},
        lp_token_price=0.42,
    )
    result = await YieldService(store, settings).cost_basis(query)

    usdc = result.by_asset[f"{POOL}-{USDC}"]
    assert usdc.protocol_yield_usd == pytest.approx(10.0)
    assert usdc.price_change_usd == pytest.approx(1000.0 * (1.0 - 0.99))
    # no current balance sent for XLM: basis only
    assert result.by_asset[f"{POOL}-{XLM}"].total_earned_usd is None

    totals = result.all_time_totals
    assert totals.total_earned_usd == pytest.approx(totals.protocol_yield_usd + totals.price_change_usd)
    assert totals.total_earned_usd == pytest.approx(
        usdc.total_earned_usd + result.by_backstop[POOL].total_earned_usd
    )


async def test_cost_basis_caps_backstop_pool_no_longer_held(settings):
    query = CostBasisQuery(user_address=USER, sdk_prices={USDC: 1.0}, lp_token_price=0.42)
    result = await YieldService(seeded(), settings).cost_basis(query)
    backstop = result.by_backstop[POOL]
    assert backstop.clamped is True
    assert backstop.cost_basis_usd == 0.0
    assert result.total_backstop_cost_basis_usd == 0.0


async def test_cost_basis_merges_wallets_before_averaging(settings):
    other = "GOTHERWALLETAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"
    store = LocalMockDataSource()
    store.add_event(event(EventKind.SUPPLY, 100.0, days_ago(20)))
    store.add_event(event(EventKind.SUPPLY, 300.0, days_ago(10), user=other))
    store.add_price(USDC, days_ago(20), 1.0)
    store.add_price(USDC, days_ago(10), 2.0)

    query = CostBasisQuery(user_address=USER, user_addresses=[other, USER], sdk_prices={USDC: 2.0})
    result = await YieldService(store, settings).cost_basis(query)
    entry = result.by_asset[f"{POOL}-{USDC}"]
    assert result.wallets == [USER, other]
    assert entry.net_deposited_tokens == 400.0
    assert entry.weighted_avg_price == pytest.approx(700.0 / 400.0)


async def test_realized_yield_end_to_end(settings):
    store = LocalMockDataSource()
    store.add_event(event(EventKind.SUPPLY, 100.0, days_ago(40)))
    store.add_event(event(EventKind.WITHDRAW, 100.0, days_ago(20)))
    store.add_event(event(EventKind.CLAIM, 50.0, days_ago(20), asset=BLND))
    store.add_event(event(EventKind.BACKSTOP_DEPOSIT, 10.0, days_ago(30), asset=LP_TOKEN))
    store.add_event(event(EventKind.CLAIM, 2.0, days_ago(15), asset=LP_TOKEN))
    store.add_price(USDC, days_ago(40), 1.0)
    store.add_price(USDC, days_ago(20), 1.05)
    store.add_price(BLND, days_ago(20), 0.1)
    store.add_price(LP_TOKEN, days_ago(30), 0.4)

    query = RealizedYieldQuery(user_address=USER, sdk_prices={USDC: 1.0}, lp_token_price=0.5)
    result = await YieldService(store, settings).run(query)

    assert result.kind == "realized_yield"
    assert result.pools.realized_pnl_usd == pytest.approx(105.0 - 100.0 + 5.0)
    # LP claim is forward-filled from the deposit-day price
    assert result.backstop.claimed_usd == pytest.approx(2.0 * 0.4)
    assert result.backstop.realized_pnl_usd == pytest.approx(-4.0 + 0.8)
    assert result.emissions.emission_tokens_claimed == 50.0
    assert result.emissions.lp_tokens_claimed == 2.0
    assert result.roi_percent == pytest.approx(result.realized_pnl_usd / 104.0 * 100)
    assert result.first_activity_date == days_ago(40)
    assert len(result.transactions) == 5
    assert result.excluded == []


async def test_realized_yield_excludes_unpriceable_claims(settings):
    store = LocalMockDataSource()
    store.add_event(event(EventKind.CLAIM, 50.0, days_ago(20), asset=BLND))
    result = await YieldService(store, settings).realized_yield(RealizedYieldQuery(user_address=USER))
    assert result.transactions == []
    assert [e.reason for e in result.excluded] == [ExclusionReason.NO_PRICE]
    assert BLND in result.excluded[0].detail


class RecordingSnapshots(LocalMockDataSource):
    def __init__(self):
        super().__init__()
        self.as_of = []

    async def get_snapshots(self, user_id, asset_address, lookback_days, as_of=None):
        self.as_of.append(as_of)
        return await super().get_snapshots(user_id, asset_address, lookback_days, as_of)


async def test_snapshot_cutoff_uses_query_timezone(settings):
    store = RecordingSnapshots()
    source = seeded()
    store.events, store.snapshots, store.prices = source.events, source.snapshots, source.prices

    query = period_query(timezone="Pacific/Kiritimati")
    await YieldService(store, settings).period_yield(query)
    assert store.as_of
    assert set(store.as_of) == {today_in(query.tz)}


async def test_local_snapshot_cutoff_counts_back_from_as_of():
    store = LocalMockDataSource()
    store.add_snapshot(snapshot(date(2024, 6, 9), supply=1.0))
    store.add_snapshot(snapshot(date(2024, 6, 10), supply=2.0))
    snaps = await store.get_snapshots(USER, USDC, 20, as_of=date(2024, 6, 30))
    assert [s.snapshot_date for s in snaps] == [date(2024, 6, 10)]
