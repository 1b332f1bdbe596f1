"""
Unit tests for the connection lifecycle controller.

Tests verify:
- Retry delays stay within [0.8, 1.2] * min(base * 1.5**(n-1), max_backoff).
- Exhaustion is reported exactly once per outage, followed by a cooldown of
  2 * max_backoff and a fresh retry sequence.
- disconnect() cancels a pending retry; no further open() calls happen.
- disconnect() is idempotent.
- link_lost() closes, notifies and reconnects immediately.
- open() raising or timing out counts as a failed attempt.
- Callback failures are logged and do not break the state machine.

CHANGELOG:
- 2026-03-03: Cover exhaustion reporting once per outage
- 2026-02-24: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
import random
from unittest.mock import AsyncMock

import pytest
from gateway.src.errors import ReconnectExhaustedError
from gateway.src.lifecycle import ConnectionLifecycle, LinkState, ReconnectPolicy

from .conftest import drain

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FlakyStrategy:
    """Strategy whose first *failures* opens fail."""

    def __init__(self, failures: int = 0, *, raise_on_fail: bool = False) -> None:
        self.failures = failures
        self.raise_on_fail = raise_on_fail
        self.open_calls = 0
        self.close_calls = 0

    async def open(self) -> bool:
        self.open_calls += 1
        if self.open_calls <= self.failures:
            if self.raise_on_fail:
                raise OSError("connection refused")
            return False
        return True

    async def close(self) -> None:
        self.close_calls += 1


class RecordingSleep:
    """Sleep replacement that records delays and returns immediately."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


async def _block_forever(delay: float) -> None:
    await asyncio.Event().wait()


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


class TestBackoff:
    """Retry delay computation."""

    def test_policy_backoff_grows_and_caps(self) -> None:
        policy = ReconnectPolicy(base_backoff_s=5.0, max_backoff_s=20.0)
        assert policy.backoff_for(1) == 5.0
        assert policy.backoff_for(2) == 7.5
        assert policy.backoff_for(3) == pytest.approx(11.25)
        assert policy.backoff_for(10) == 20.0

    def test_cooldown_is_twice_max_backoff(self) -> None:
        assert ReconnectPolicy(max_backoff_s=300.0).cooldown_s == 600.0

    @pytest.mark.asyncio
    async def test_delays_within_jitter_bounds(self) -> None:
        """Every scheduled delay is within [0.8, 1.2] of the un-jittered backoff."""
        policy = ReconnectPolicy(max_attempts=20, base_backoff_s=5.0, max_backoff_s=300.0)
        sleep = RecordingSleep()
        strategy = FlakyStrategy(failures=12)
        lifecycle = ConnectionLifecycle(
            strategy,
            policy,
            device_id=1,
            sleep=sleep,
            uniform=random.Random(7).uniform,
        )

        await lifecycle.connect()
        await drain(lambda: lifecycle.is_connected)

        assert lifecycle.is_connected
        assert len(sleep.delays) == 12
        for n, delay in enumerate(sleep.delays, start=1):
            expected = min(5.0 * 1.5 ** (n - 1), 300.0)
            assert 0.8 * expected <= delay <= 1.2 * expected

    @pytest.mark.asyncio
    @pytest.mark.parametrize("jitter", [0.8, 1.2])
    async def test_jitter_extremes(self, jitter: float) -> None:
        lifecycle = ConnectionLifecycle(
            FlakyStrategy(failures=1),
            ReconnectPolicy(base_backoff_s=10.0),
            device_id=1,
            sleep=_block_forever,
            uniform=lambda low, high: jitter,
        )
        assert await lifecycle.connect() is False
        assert lifecycle.last_delay_s == pytest.approx(10.0 * jitter)
        assert lifecycle.pending_retry
        await lifecycle.disconnect()


# ---------------------------------------------------------------------------
# Exhaustion
# ---------------------------------------------------------------------------


class TestExhaustion:
    """Reconnect exhaustion and cooldown."""

    @pytest.mark.asyncio
    async def test_ten_failures_report_exhaustion_once(self) -> None:
        """10 failures with max_attempts=5: one report, cooldown, fresh sequence."""
        policy = ReconnectPolicy(max_attempts=5, base_backoff_s=5.0, max_backoff_s=300.0)
        sleep = RecordingSleep()
        on_exhausted = AsyncMock()
        on_connected = AsyncMock()
        strategy = FlakyStrategy(failures=10)
        lifecycle = ConnectionLifecycle(
            strategy,
            policy,
            device_id=3,
            on_connected=on_connected,
            on_exhausted=on_exhausted,
            sleep=sleep,
            uniform=lambda low, high: 1.0,
        )

        await lifecycle.connect()
        await drain(lambda: lifecycle.is_connected)

        assert lifecycle.is_connected
        assert strategy.open_calls == 11
        on_exhausted.assert_awaited_once()
        error = on_exhausted.await_args.args[0]
        assert isinstance(error, ReconnectExhaustedError)
        assert error.attempts == 5
        assert error.device_id == 3
        on_connected.assert_awaited_once()
        assert sleep.delays == [5.0, 7.5, 11.25, 16.875, 600.0, 5.0, 7.5, 11.25, 16.875, 600.0]
        assert lifecycle.attempts == 0

    @pytest.mark.asyncio
    async def test_new_outage_reports_again(self) -> None:
        policy = ReconnectPolicy(max_attempts=2, base_backoff_s=1.0)
        sleep = RecordingSleep()
        on_exhausted = AsyncMock()
        strategy = FlakyStrategy(failures=2)
        lifecycle = ConnectionLifecycle(
            strategy,
            policy,
            device_id=1,
            on_exhausted=on_exhausted,
            sleep=sleep,
            uniform=lambda low, high: 1.0,
        )
        await lifecycle.connect()
        await drain(lambda: lifecycle.is_connected)
        assert on_exhausted.await_count == 1

        strategy.failures = strategy.open_calls + 2
        await lifecycle.link_lost("peer reset")
        await drain(lambda: lifecycle.is_connected)

        assert lifecycle.is_connected
        assert on_exhausted.await_count == 2


# ---------------------------------------------------------------------------
# Disconnect
# ---------------------------------------------------------------------------


class TestDisconnect:
    """Explicit disconnect semantics."""

    @pytest.mark.asyncio
    async def test_disconnect_cancels_pending_retry(self) -> None:
        strategy = FlakyStrategy(failures=100)
        lifecycle = ConnectionLifecycle(
            strategy,
            ReconnectPolicy(),
            device_id=1,
            sleep=_block_forever,
        )
        await lifecycle.connect()
        assert lifecycle.pending_retry

        await lifecycle.disconnect()
        await drain(rounds=50)

        assert not lifecycle.is_connected
        assert not lifecycle.pending_retry
        assert strategy.open_calls == 1
        assert lifecycle.state is LinkState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_closes_link(self) -> None:
        strategy = FlakyStrategy()
        lifecycle = ConnectionLifecycle(strategy, device_id=1)
        assert await lifecycle.connect() is True

        await lifecycle.disconnect()

        assert not lifecycle.is_connected
        assert strategy.close_calls == 1

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self) -> None:
        strategy = FlakyStrategy()
        lifecycle = ConnectionLifecycle(strategy, device_id=1)
        await lifecycle.connect()

        await lifecycle.disconnect()
        await lifecycle.disconnect()

        assert strategy.close_calls == 1

    @pytest.mark.asyncio
    async def test_connect_when_connected_is_noop(self) -> None:
        strategy = FlakyStrategy()
        lifecycle = ConnectionLifecycle(strategy, device_id=1)
        await lifecycle.connect()
        assert await lifecycle.connect() is True
        assert strategy.open_calls == 1


# ---------------------------------------------------------------------------
# Link loss and failures
# ---------------------------------------------------------------------------


class TestLinkLost:
    """Adapter-reported link failures."""

    @pytest.mark.asyncio
    async def test_link_lost_reconnects(self) -> None:
        strategy = FlakyStrategy()
        on_link_lost = AsyncMock()
        sleep = RecordingSleep()
        lifecycle = ConnectionLifecycle(
            strategy,
            device_id=1,
            on_link_lost=on_link_lost,
            sleep=sleep,
        )
        await lifecycle.connect()

        await lifecycle.link_lost("socket closed")
        assert not lifecycle.is_connected
        await drain(lambda: lifecycle.is_connected)

        on_link_lost.assert_awaited_once_with("socket closed")
        assert strategy.close_calls == 1
        assert strategy.open_calls == 2
        assert sleep.delays == [0.0]

    @pytest.mark.asyncio
    async def test_link_lost_ignored_when_disconnected(self) -> None:
        strategy = FlakyStrategy()
        on_link_lost = AsyncMock()
        lifecycle = ConnectionLifecycle(strategy, device_id=1, on_link_lost=on_link_lost)

        await lifecycle.link_lost("late report")

        on_link_lost.assert_not_awaited()
        assert strategy.open_calls == 0

    @pytest.mark.asyncio
    async def test_open_exception_counts_as_failure(self) -> None:
        strategy = FlakyStrategy(failures=1, raise_on_fail=True)
        lifecycle = ConnectionLifecycle(strategy, device_id=1, sleep=_block_forever)

        assert await lifecycle.connect() is False
        assert lifecycle.attempts == 1
        assert lifecycle.pending_retry
        await lifecycle.disconnect()

    @pytest.mark.asyncio
    async def test_open_timeout_counts_as_failure(self) -> None:
        class HangingStrategy:
            async def open(self) -> bool:
                await asyncio.Event().wait()
                return True

            async def close(self) -> None:
                return None

        lifecycle = ConnectionLifecycle(
            HangingStrategy(),
            ReconnectPolicy(connect_timeout_s=0.01),
            device_id=1,
            sleep=_block_forever,
        )
        assert await lifecycle.connect() is False
        assert lifecycle.pending_retry
        await lifecycle.disconnect()

    @pytest.mark.asyncio
    async def test_callback_error_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        on_connected = AsyncMock(side_effect=RuntimeError("boom"))
        lifecycle = ConnectionLifecycle(FlakyStrategy(), device_id=4, on_connected=on_connected)

        with caplog.at_level(logging.ERROR):
            assert await lifecycle.connect() is True

        assert lifecycle.is_connected
        assert "callback" in caplog.text
