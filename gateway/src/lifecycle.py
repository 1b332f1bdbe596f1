"""
Connection lifecycle controller shared by every protocol adapter.

Owns the per-device link state machine
(``DISCONNECTED -> CONNECTING -> CONNECTED``) and all retry bookkeeping.
Protocol code supplies only a :class:`ConnectionStrategy` with the literal
``open()`` / ``close()`` actions; this module decides when to call them.

Retry behaviour:

- Every failed attempt (``open()`` returning False, raising, or exceeding
  ``connect_timeout_s``) schedules a retry after
  ``min(base * 1.5**(attempts-1), max_backoff) * uniform(0.8, 1.2)``.
- Once ``attempts`` reaches ``max_attempts`` the controller reports
  exhaustion (once per outage), waits ``2 * max_backoff``, resets the attempt
  counter and starts a fresh retry sequence. It never gives up permanently.
- ``disconnect()`` cancels any pending retry before returning, so a
  disconnected device never reconnects on its own.

CHANGELOG:
- 2026-03-03: Report exhaustion once per outage instead of once per cooldown
- 2026-02-27: Add link_lost() for adapter-detected transport failures
- 2026-02-24: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from gateway.src.errors import ReconnectExhaustedError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ReconnectPolicy:
    """Reconnect tuning for one device.

    Attributes:
        max_attempts: Consecutive failures before entering cooldown.
        base_backoff_s: Delay after the first failure (before jitter).
        max_backoff_s: Cap on the un-jittered delay.
        multiplier: Exponential growth factor per failed attempt.
        jitter: ``(low, high)`` bounds of the uniform jitter multiplier.
        connect_timeout_s: Timeout applied to each ``open()`` call.
    """

    max_attempts: int = 5
    base_backoff_s: float = 5.0
    max_backoff_s: float = 300.0
    multiplier: float = 1.5
    jitter: tuple[float, float] = (0.8, 1.2)
    connect_timeout_s: float = 10.0

    def backoff_for(self, attempts: int) -> float:
        """Un-jittered delay after *attempts* consecutive failures."""
        return min(
            self.base_backoff_s * self.multiplier ** max(attempts - 1, 0),
            self.max_backoff_s,
        )

    @property
    def cooldown_s(self) -> float:
        """Pause after exhaustion before the attempt counter resets."""
        return 2 * self.max_backoff_s


MODBUS_POLICY = ReconnectPolicy(max_attempts=10, base_backoff_s=10.0)
"""Register-polled devices: patient, slow retries."""

OCPP_POLICY = ReconnectPolicy(max_attempts=5, base_backoff_s=5.0)
"""Charge points: fewer attempts, faster cooldown cycle."""

DEFAULT_POLICY = ReconnectPolicy()
"""EEBus, TCP/IP and anything else."""


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------


class LinkState(str, Enum):
    """Link state of one device."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ConnectionStrategy(Protocol):
    """The two primitive actions a protocol must provide."""

    async def open(self) -> bool:
        """Open the link. Return True on success."""
        ...

    async def close(self) -> None:
        """Release the link. Must tolerate being called when already closed."""
        ...


AsyncCallback = Callable[..., Awaitable[Any]]


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class ConnectionLifecycle:
    """Protocol-agnostic connect/retry/disconnect state machine.

    Lifecycle state is mutated only from the device's own control flow:
    the caller of :meth:`connect`/:meth:`disconnect`, the retry task this
    controller owns, or the adapter task reporting :meth:`link_lost`.

    Args:
        strategy: Protocol-specific open/close implementation.
        policy: Retry tuning.
        device_id: Device identifier used in logs and errors.
        on_connected: Awaited after each successful connect (post-connect
            setup such as bridge registration).
        on_link_lost: Awaited with the reason after a detected link failure.
        on_exhausted: Awaited with a :class:`ReconnectExhaustedError` once
            per outage when ``max_attempts`` is reached.
        sleep: Coroutine used for retry and cooldown waits.
        uniform: Random source for jitter, ``uniform(low, high)``.
    """

    def __init__(
        self,
        strategy: ConnectionStrategy,
        policy: ReconnectPolicy = DEFAULT_POLICY,
        *,
        device_id: int,
        on_connected: AsyncCallback | None = None,
        on_link_lost: AsyncCallback | None = None,
        on_exhausted: AsyncCallback | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        uniform: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self._strategy = strategy
        self._policy = policy
        self._device_id = device_id
        self._on_connected = on_connected
        self._on_link_lost = on_link_lost
        self._on_exhausted = on_exhausted
        self._sleep = sleep
        self._uniform = uniform

        self._state = LinkState.DISCONNECTED
        self._attempts = 0
        self._backoff_s = policy.base_backoff_s
        self._retry_task: asyncio.Task[None] | None = None
        self._waiting = False
        self._stopped = True
        self._exhaustion_reported = False
        self._last_delay_s: float | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> LinkState:
        """Current link state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """True while the link is up."""
        return self._state is LinkState.CONNECTED

    @property
    def attempts(self) -> int:
        """Consecutive failed or in-flight attempts since the last reset."""
        return self._attempts

    @property
    def backoff_s(self) -> float:
        """Current un-jittered backoff interval."""
        return self._backoff_s

    @property
    def pending_retry(self) -> bool:
        """True while a retry or cooldown wait is scheduled."""
        return self._waiting

    @property
    def last_delay_s(self) -> float | None:
        """Most recently scheduled wait (retry delay or cooldown)."""
        return self._last_delay_s

    @property
    def policy(self) -> ReconnectPolicy:
        """Retry tuning in effect."""
        return self._policy

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """Connect, or schedule retries on failure.

        No-op returning True when already connected. An explicit call
        supersedes any scheduled retry.

        Returns:
            True if the link is up when the call returns.
        """
        if self._state is LinkState.CONNECTED:
            return True
        self._stopped = False
        await self._cancel_retry()
        return await self._attempt()

    async def disconnect(self) -> None:
        """Cancel pending retries, close the link, mark disconnected.

        Idempotent: a second call on a disconnected device with nothing
        scheduled does nothing.
        """
        idle = (
            self._state is LinkState.DISCONNECTED
            and self._retry_task is None
            and self._stopped
        )
        self._stopped = True
        if idle:
            return
        await self._cancel_retry()
        self._state = LinkState.DISCONNECTED
        self._attempts = 0
        self._backoff_s = self._policy.base_backoff_s
        self._exhaustion_reported = False
        await self._safe_close()
        logger.info("Device %d disconnected", self._device_id)

    async def link_lost(self, reason: str) -> None:
        """Report a transport failure detected by the adapter.

        Closes the link, notifies ``on_link_lost`` and schedules an
        immediate reconnect through the normal retry path. Ignored when the
        device is not connected or has been explicitly disconnected.

        Args:
            reason: Short description for logs and status details.
        """
        if self._stopped or self._state is not LinkState.CONNECTED:
            return
        logger.warning("Device %d link lost: %s", self._device_id, reason)
        self._state = LinkState.DISCONNECTED
        await self._safe_close()
        await self._fire(self._on_link_lost, reason)
        if not self._stopped:
            self._schedule(0.0, cooldown=False)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _attempt(self) -> bool:
        self._attempts += 1
        self._state = LinkState.CONNECTING
        logger.debug("Device %d connect attempt %d", self._device_id, self._attempts)

        try:
            ok = bool(
                await asyncio.wait_for(
                    self._strategy.open(),
                    timeout=self._policy.connect_timeout_s,
                )
            )
        except TimeoutError:
            logger.warning(
                "Device %d connect timed out after %.1fs",
                self._device_id,
                self._policy.connect_timeout_s,
            )
            ok = False
        except Exception:
            logger.warning("Device %d connect failed", self._device_id, exc_info=True)
            ok = False

        if self._stopped:
            # disconnect() ran while open() was in flight
            if ok:
                await self._safe_close()
            self._state = LinkState.DISCONNECTED
            return False

        if ok:
            self._state = LinkState.CONNECTED
            self._attempts = 0
            self._backoff_s = self._policy.base_backoff_s
            self._exhaustion_reported = False
            logger.info("Device %d connected", self._device_id)
            await self._fire(self._on_connected)
            return True

        self._state = LinkState.DISCONNECTED
        if self._attempts >= self._policy.max_attempts:
            self._schedule(self._policy.cooldown_s, cooldown=True)
        else:
            self._backoff_s = self._policy.backoff_for(self._attempts)
            delay = self._backoff_s * self._uniform(*self._policy.jitter)
            logger.warning(
                "Device %d attempt %d/%d failed, retrying in %.1fs",
                self._device_id,
                self._attempts,
                self._policy.max_attempts,
                delay,
            )
            self._schedule(delay, cooldown=False)
        return False

    def _schedule(self, delay: float, *, cooldown: bool) -> None:
        self._last_delay_s = delay
        self._waiting = True
        self._retry_task = asyncio.create_task(self._wait_then_retry(delay, cooldown))

    async def _wait_then_retry(self, delay: float, cooldown: bool) -> None:
        if cooldown:
            if not self._exhaustion_reported:
                self._exhaustion_reported = True
                error = ReconnectExhaustedError(
                    device_id=self._device_id,
                    attempts=self._attempts,
                )
                logger.error(
                    "Device %d: %s, cooling down for %.1fs",
                    self._device_id,
                    error.message,
                    delay,
                )
                await self._fire(self._on_exhausted, error)
            else:
                logger.warning(
                    "Device %d still unreachable, cooling down for %.1fs",
                    self._device_id,
                    delay,
                )
        try:
            await self._sleep(delay)
        finally:
            self._waiting = False
        if self._stopped:
            return
        if cooldown:
            self._attempts = 0
            self._backoff_s = self._policy.base_backoff_s
        await self._attempt()

    async def _cancel_retry(self) -> None:
        task, self._retry_task = self._retry_task, None
        self._waiting = False
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _safe_close(self) -> None:
        try:
            await self._strategy.close()
        except Exception:
            logger.warning("Device %d close failed", self._device_id, exc_info=True)

    async def _fire(self, callback: AsyncCallback | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            await callback(*args)
        except Exception:
            logger.error(
                "Device %d lifecycle callback %s failed",
                self._device_id,
                getattr(callback, "__name__", callback),
                exc_info=True,
            )
