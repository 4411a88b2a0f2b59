"""Tests for PricePoller."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from tickersync.market_data.price_poller import PricePoller


@pytest.mark.asyncio
async def test_first_round_runs_immediately() -> None:
    poll = AsyncMock()
    poller = PricePoller("005930", poll, interval=60, source="primary_rest")

    poller.start()
    await asyncio.sleep(0.01)

    assert poll.await_count == 1
    assert poller.is_running
    await poller.stop()
    assert not poller.is_running


@pytest.mark.asyncio
async def test_polls_repeatedly_at_interval() -> None:
    poll = AsyncMock()
    poller = PricePoller("005930", poll, interval=0.01, source="secondary")

    poller.start()
    await asyncio.sleep(0.1)
    await poller.stop()

    assert poll.await_count >= 3


@pytest.mark.asyncio
async def test_errors_do_not_stop_polling() -> None:
    poll = AsyncMock(side_effect=[RuntimeError("boom"), None, None, None, None, None, None, None, None, None])
    poller = PricePoller("005930", poll, interval=0.01, source="primary_rest")

    poller.start()
    await asyncio.sleep(0.05)
    await poller.stop()

    assert poll.await_count >= 2


@pytest.mark.asyncio
async def test_cancel_prevents_further_rounds() -> None:
    poll = AsyncMock()
    poller = PricePoller("005930", poll, interval=0.01, source="primary_rest")

    poller.start()
    await asyncio.sleep(0)
    poller.cancel()
    await asyncio.sleep(0.05)

    assert poll.await_count <= 1
    assert not poller.is_running


@pytest.mark.asyncio
async def test_start_twice_keeps_one_task() -> None:
    poll = AsyncMock()
    poller = PricePoller("005930", poll, interval=60, source="primary_rest")

    poller.start()
    poller.start()
    await asyncio.sleep(0.01)

    assert poll.await_count == 1
    await poller.stop()
