"""Tests for the TimescaleDB store, against an in-memory fake pool."""

import asyncio

import asyncpg
import pytest

from dataflow.errors import SinkError
from dataflow.persistence.store import TimescaleDBStore
from schemas.market_data import Bar


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    async def execute(self, query, *args):
        if self.pool.error:
            raise self.pool.error
        self.pool.executed.append((query, args))

    async def executemany(self, query, rows):
        if self.pool.stall is not None:
            self.pool.stalled.set()
            await self.pool.stall.wait()
        if self.pool.error:
            raise self.pool.error
        self.pool.batches.append(list(rows))

    async def fetch(self, query, *args):
        self.pool.fetched.append((query, args))
        return self.pool.rows


class FakeAcquire:
    def __init__(self, pool):
        self.pool = pool

    async def __aenter__(self):
        return FakeConnection(self.pool)

    async def __aexit__(self, *exc):
        return False


class FakePool:
    def __init__(self, rows=None):
        self.rows = rows or []
        self.error = None
        self.stall = None
        self.stalled = asyncio.Event()
        self.executed = []
        self.batches = []
        self.fetched = []
        self.closed = False

    def acquire(self):
        return FakeAcquire(self)

    async def close(self):
        self.closed = True


def connected_store(pool, **kwargs) -> TimescaleDBStore:
    store = TimescaleDBStore("postgresql://test", **kwargs)
    store._pool = pool
    return store


class TestWriteBar:
    def test_inserts_bar(self):
        pool = FakePool()
        store = connected_store(pool)

        asyncio.run(store.write_bar(Bar(timestamp=42, dollar_imbalance=150.0)))

        query, args = pool.executed[0]
        assert "INSERT INTO imbalance_bars" in query
        assert args == (42, 150.0, True)
        assert store.bars_written == 1

    def test_not_connected(self):
        store = TimescaleDBStore("postgresql://test")
        with pytest.raises(SinkError, match="not connected"):
            asyncio.run(store.write_bar(Bar(timestamp=1, dollar_imbalance=1.0)))

    @pytest.mark.parametrize(
        "error",
        [
            OSError("connection reset"),
            asyncpg.PostgresError("boom"),
            asyncpg.InterfaceError("connection is closed"),
            asyncio.TimeoutError(),
        ],
    )
    def test_database_errors_become_sink_errors(self, error):
        pool = FakePool()
        pool.error = error
        store = connected_store(pool)

        with pytest.raises(SinkError):
            asyncio.run(store.write_bar(Bar(timestamp=1, dollar_imbalance=1.0)))
        assert store.bars_written == 0


class TestRecentBars:
    def test_maps_rows_most_recent_first(self):
        pool = FakePool(rows=[
            {"timestamp": 3, "dollar_imbalance": 300.0, "threshold_reached": True},
            {"timestamp": 2, "dollar_imbalance": 200, "threshold_reached": True},
        ])
        store = connected_store(pool)

        bars = asyncio.run(store.recent_bars(limit=2))

        assert bars == [
            Bar(timestamp=3, dollar_imbalance=300.0),
            Bar(timestamp=2, dollar_imbalance=200.0),
        ]
        query, args = pool.fetched[0]
        assert "ORDER BY timestamp DESC" in query
        assert args == (2,)

    def test_not_connected(self):
        with pytest.raises(RuntimeError):
            asyncio.run(TimescaleDBStore("postgresql://test").recent_bars())


class TestTradeBatching:
    def test_full_batch_requests_flush(self, make_trade):
        store = connected_store(FakePool(), batch_size=3)

        store.record_trade(make_trade(timestamp=1))
        store.record_trade(make_trade(timestamp=2))
        assert not store._flush_requested.is_set()

        store.record_trade(make_trade(timestamp=3))
        assert store._flush_requested.is_set()

    def test_flush_writes_batch_in_order(self, make_trade):
        pool = FakePool()
        store = connected_store(pool)
        store.record_trade(make_trade(price=10.0, quantity=2.0, timestamp=1, buy=True))
        store.record_trade(make_trade(price=11.0, quantity=1.0, timestamp=2, buy=False))

        asyncio.run(store.flush_trades())

        assert pool.batches == [[(10.0, 2.0, 1, False), (11.0, 1.0, 2, True)]]
        assert store.trades_written == 2
        assert store.get_metrics()["trades_pending"] == 0

    def test_failed_flush_keeps_trades_for_retry(self, make_trade):
        pool = FakePool()
        pool.error = OSError("connection reset")
        store = connected_store(pool)
        store.record_trade(make_trade(timestamp=1))

        asyncio.run(store.flush_trades())
        assert store.get_metrics()["trades_pending"] == 1

        pool.error = None
        store.record_trade(make_trade(timestamp=2))
        asyncio.run(store.flush_trades())

        assert [row[2] for row in pool.batches[0]] == [1, 2]
        assert store.trades_written == 2

    def test_backlog_drops_oldest(self, make_trade):
        store = connected_store(FakePool(), max_pending=3, batch_size=100)

        for ts in range(5):
            store.record_trade(make_trade(timestamp=ts))

        assert [t.timestamp for t in store._trade_buffer] == [2, 3, 4]
        assert store.get_metrics()["trades_dropped"] == 2

    def test_stop_flushes_and_closes(self, make_trade):
        pool = FakePool()
        store = connected_store(pool)
        store.record_trade(make_trade(timestamp=7))

        asyncio.run(store.stop())

        assert [row[2] for row in pool.batches[0]] == [7]
        assert pool.closed
        assert not store.is_connected


class TestFlushFailures:
    @pytest.mark.parametrize(
        "error",
        [
            asyncpg.InterfaceError("connection is closed"),
            asyncpg.exceptions.ConnectionDoesNotExistError("connection was closed"),
            asyncio.TimeoutError(),
        ],
    )
    def test_client_side_errors_keep_batch(self, make_trade, error):
        pool = FakePool()
        pool.error = error
        store = connected_store(pool)
        store.record_trade(make_trade(timestamp=1))
        store.record_trade(make_trade(timestamp=2))

        asyncio.run(store.flush_trades())

        assert [t.timestamp for t in store._trade_buffer] == [1, 2]
        assert store.trades_written == 0
        assert store.get_metrics()["trades_dropped"] == 0

    def test_requeue_respects_backlog_limit(self, make_trade):
        pool = FakePool()
        pool.stall = asyncio.Event()
        pool.error = asyncpg.InterfaceError("connection is closed")
        store = connected_store(pool, max_pending=3, batch_size=100)
        for ts in range(3):
            store.record_trade(make_trade(timestamp=ts))

        async def scenario():
            task = asyncio.create_task(store.flush_trades())
            await pool.stalled.wait()
            store.record_trade(make_trade(timestamp=3))
            pool.stall.set()
            await task

        asyncio.run(scenario())

        assert [t.timestamp for t in store._trade_buffer] == [1, 2, 3]
        assert store.get_metrics()["trades_dropped"] == 1

    def test_periodic_flush_survives_failures(self, make_trade, until):
        pool = FakePool()
        pool.error = asyncpg.InterfaceError("connection is closed")
        store = connected_store(pool, flush_interval=0.01)
        store.record_trade(make_trade(timestamp=1))

        async def scenario():
            task = asyncio.create_task(store._periodic_flush())
            await asyncio.sleep(0.05)
            assert not task.done()

            pool.error = None
            await until(lambda: store.trades_written == 1)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        asyncio.run(scenario())

        assert [row[2] for row in pool.batches[0]] == [1]

    def test_cancelled_flush_keeps_batch(self, make_trade):
        pool = FakePool()
        pool.stall = asyncio.Event()
        store = connected_store(pool)
        store.record_trade(make_trade(timestamp=1))

        async def scenario():
            task = asyncio.create_task(store.flush_trades())
            await pool.stalled.wait()
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        asyncio.run(scenario())

        assert [t.timestamp for t in store._trade_buffer] == [1]
