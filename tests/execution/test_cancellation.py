"""Tests for CancellationToken."""

import asyncio

import pytest

from metis_core.execution.cancellation import CancellationToken


class TestCancellationToken:
    @pytest.mark.asyncio
    async def test_sleep_runs_full_interval_when_not_cancelled(self):
        token = CancellationToken()

        assert await token.sleep(0.01) is False
        assert token.cancelled is False

    @pytest.mark.asyncio
    async def test_cancel_wakes_sleeper(self):
        token = CancellationToken()

        async def cancel_soon():
            await asyncio.sleep(0.01)
            token.cancel("user-1")

        waker = asyncio.create_task(cancel_soon())
        assert await token.sleep(30) is True
        await waker
        assert token.reason == "user-1"

    @pytest.mark.asyncio
    async def test_already_cancelled_returns_immediately(self):
        token = CancellationToken()
        token.cancel()

        assert await token.sleep(30) is True

    @pytest.mark.asyncio
    async def test_zero_interval_yields(self):
        token = CancellationToken()

        assert await token.sleep(0) is False

    @pytest.mark.asyncio
    async def test_first_reason_is_kept(self):
        token = CancellationToken()
        token.cancel("curator")
        token.cancel("scheduler")

        assert token.reason == "curator"
