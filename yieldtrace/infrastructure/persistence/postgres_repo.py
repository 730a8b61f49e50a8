import asyncio
import logging
from contextlib import contextmanager
from datetime import date, timedelta
from typing import List, Optional

import psycopg2
from psycopg2.pool import ThreadedConnectionPool

from yieldtrace.config import DEFAULT_EMISSION_TOKEN_ADDRESS
from yieldtrace.core.entities.events import EventKind, EventQuery, PositionEvent, to_display_units
from yieldtrace.core.entities.snapshots import BalanceSnapshot, PriceSnapshot
from yieldtrace.core.errors import DataSourceError
from yieldtrace.core.interfaces.datasource import IDataSource

logger = logging.getLogger(__name__)


class PostgresRepo(IDataSource):
    """
    Read side of the indexer database.

    psycopg2 is blocking, so every read runs in a worker thread against a
    pooled connection.
    """

    def __init__(
        self,
        dsn: str,
        lp_token_address: str,
        emission_token_address: str = DEFAULT_EMISSION_TOKEN_ADDRESS,
        min_conn: int = 1,
        max_conn: int = 10
    ):
        self.lp_token_address = lp_token_address
        self.emission_token_address = emission_token_address
        try:
            self.pool = ThreadedConnectionPool(min_conn, max_conn, dsn)
            self._init_db()
        except psycopg2.Error as e:
            raise DataSourceError(f"Cannot connect to Postgres: {e}") from e

    def _default_asset(self, action_type: str) -> Optional[str]:
        # The indexer leaves asset_address empty where the pool implies it
        if action_type.startswith("backstop_"):
            return self.lp_token_address
        if action_type == "claim":
            return self.emission_token_address
        return None

    @contextmanager
    def _connection(self):
        conn = self.pool.getconn()
        try:
            yield conn
        finally:
            self.pool.putconn(conn)

    def _init_db(self):
        with self._connection() as conn:
            cur = conn.cursor()

            # Ledger rows as written by the indexer; amounts are raw fixed-point
            cur.execute("""
                CREATE TABLE IF NOT EXISTS position_events (
                    user_address VARCHAR NOT NULL,
                    pool_id VARCHAR NOT NULL,
                    asset_address VARCHAR,
                    action_type VARCHAR NOT NULL,
                    amount_raw NUMERIC NOT NULL,
                    decimals INTEGER NOT NULL DEFAULT 7,
                    ledger_closed_at TIMESTAMPTZ NOT NULL,
                    transaction_hash VARCHAR
                );
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS position_events_user_time
                ON position_events (user_address, ledger_closed_at);
            """)

            # End-of-day balances, display units
            cur.execute("""
                CREATE TABLE IF NOT EXISTS balance_snapshots (
                    user_address VARCHAR NOT NULL,
                    pool_id VARCHAR NOT NULL,
                    asset_address VARCHAR NOT NULL,
                    snapshot_date DATE NOT NULL,
                    supply_balance NUMERIC NOT NULL DEFAULT 0,
                    collateral_balance NUMERIC NOT NULL DEFAULT 0,
                    debt_balance NUMERIC NOT NULL DEFAULT 0,
                    PRIMARY KEY (user_address, pool_id, asset_address, snapshot_date)
                );
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS daily_token_prices (
                    token_address VARCHAR NOT NULL,
                    price_date DATE NOT NULL,
                    usd_price NUMERIC NOT NULL,
                    PRIMARY KEY (token_address, price_date)
                );
            """)

            conn.commit()
            cur.close()

    def _fetch(self, query: str, params: list) -> list:
        try:
            with self._connection() as conn:
                cur = conn.cursor()
                cur.execute(query, params)
                rows = cur.fetchall()
                cur.close()
                return rows
        except psycopg2.Error as e:
            logger.error(f"Postgres read failed: {e}")
            raise DataSourceError(f"Postgres read failed: {e}") from e

    async def _read(self, query: str, params: list) -> list:
        return await asyncio.to_thread(self._fetch, query, params)

    # IDataSource Implementation
    async def get_events(self, user_id: str, query: Optional[EventQuery] = None) -> List[PositionEvent]:
        sql = """
            SELECT pool_id, asset_address, action_type, amount_raw, decimals,
                   ledger_closed_at, transaction_hash
            FROM position_events
            WHERE user_address = %s
        """
        params = [user_id]

        if query:
            if query.pool_id:
                sql += " AND pool_id = %s"
                params.append(query.pool_id)
            if query.asset_address:
                sql += " AND asset_address = %s"
                params.append(query.asset_address)
            if query.from_date:
                sql += " AND ledger_closed_at >= %s"
                params.append(query.from_date)
            if query.to_date:
                sql += " AND ledger_closed_at < %s"
                params.append(query.to_date + timedelta(days=1))
        sql += " ORDER BY ledger_closed_at ASC"

        rows = await self._read(sql, params)

        events = []
        for row in rows:
            kind = EventKind.from_action_type(row[2])
            if kind is None:
                # Liquidations, auctions and the like don't move the user's own balance
                continue
            if query and query.kinds is not None and kind not in query.kinds:
                continue
            asset_address = row[1] or self._default_asset(row[2])
            events.append(PositionEvent(
                user_id=user_id,
                pool_id=row[0],
                asset_address=asset_address or "",
                kind=kind,
                token_amount=abs(to_display_units(row[3], row[4])),
                timestamp=row[5],
                transaction_id=row[6]
            ))
        return events

    async def get_snapshots(
        self,
        user_id: str,
        asset_address: str,
        lookback_days: int,
        as_of: Optional[date] = None
    ) -> List[BalanceSnapshot]:
        rows = await self._read(
            """
            SELECT pool_id, snapshot_date, supply_balance, collateral_balance, debt_balance
            FROM balance_snapshots
            WHERE user_address = %s AND asset_address = %s AND snapshot_date >= %s
            ORDER BY snapshot_date ASC
            """,
            [user_id, asset_address, (as_of or date.today()) - timedelta(days=lookback_days)]
        )
        return [
            BalanceSnapshot(
                user_id=user_id,
                pool_id=row[0],
                asset_address=asset_address,
                snapshot_date=row[1],
                supply_balance=float(row[2]),
                collateral_balance=float(row[3]),
                liability_balance=float(row[4])
            )
            for row in rows
        ]

    async def get_price(self, asset_address: str, price_date: date) -> Optional[PriceSnapshot]:
        rows = await self._read(
            """
            SELECT price_date, usd_price
            FROM daily_token_prices
            WHERE token_address = %s AND price_date = %s AND usd_price > 0
            """,
            [asset_address, price_date]
        )
        if not rows:
            return None
        return PriceSnapshot(asset_address=asset_address, price_date=rows[0][0], usd_price=float(rows[0][1]))

    async def get_latest_price_before(
        self,
        asset_address: str,
        before: date,
        max_lookback_days: int
    ) -> Optional[PriceSnapshot]:
        rows = await self._read(
            """
            SELECT price_date, usd_price
            FROM daily_token_prices
            WHERE token_address = %s AND price_date < %s AND price_date >= %s AND usd_price > 0
            ORDER BY price_date DESC
            LIMIT 1
            """,
            [asset_address, before, before - timedelta(days=max_lookback_days)]
        )
        if not rows:
            return None
        return PriceSnapshot(asset_address=asset_address, price_date=rows[0][0], usd_price=float(rows[0][1]))

    def close(self):
        self.pool.closeall()
