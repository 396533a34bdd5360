"""
Tests for the expired state sweeper.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import ManualClock

from toolgate.services.cleanup import ExpiredStateSweeper
from toolgate.stores.kv import InMemoryKeyValueStore


class TestRunOnce:
    """Tests for a single sweep."""

    @pytest.mark.asyncio
    async def test_purges_only_expired_entries(self):
        clock = ManualClock()
        store = InMemoryKeyValueStore(clock=clock.timestamp)
        await store.set("code:a", "1", ttl_seconds=60)
        await store.set("refresh:b", "2", ttl_seconds=3600)
        await store.set("client:c", "3")

        clock.advance(seconds=120)
        purged = await ExpiredStateSweeper(store).run_once()

        assert purged == 1
        assert [key for key, _ in await store.scan("")] == ["client:c", "refresh:b"]

    @pytest.mark.asyncio
    async def test_nothing_to_purge(self):
        assert await ExpiredStateSweeper(InMemoryKeyValueStore()).run_once() == 0

    @pytest.mark.asyncio
    async def test_reconciles_processing_payments(self):
        store = MagicMock()
        store.purge_expired = AsyncMock(return_value=0)
        payments = MagicMock()
        payments.reconcile_stale = AsyncMock(return_value=1)

        assert await ExpiredStateSweeper(store, payments).run_once() == 0

        payments.reconcile_stale.assert_awaited_once()


class TestRunForever:
    """Tests for the background loop."""

    @pytest.mark.asyncio
    async def test_keeps_sweeping_after_a_failure(self):
        """A failing pass is logged and the loop carries on."""
        passes = asyncio.Event()
        calls = []

        async def purge_expired() -> int:
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("database unavailable")
            if len(calls) >= 3:
                passes.set()
            return 0

        store = MagicMock()
        store.purge_expired = AsyncMock(side_effect=purge_expired)
        task = asyncio.create_task(ExpiredStateSweeper(store).run_forever(0))

        await asyncio.wait_for(passes.wait(), timeout=timedelta(seconds=5).total_seconds())
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(calls) >= 3
