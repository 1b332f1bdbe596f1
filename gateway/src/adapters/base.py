"""
Adapter contract shared by every protocol variant.

A :class:`DeviceAdapter` owns one device: a
:class:`~gateway.src.lifecycle.ConnectionLifecycle` driving its transport,
a :class:`~gateway.src.bridge.ProtocolBridge` publishing its data, and
optionally a :class:`~gateway.src.store.ReadingStore`. Subclasses implement
the protocol-specific parts (``read_data``, ``write_data``, commands and the
background tasks started when the link comes up).

Status publishing is uniform across protocols:

- ``online`` after each successful connect;
- ``offline`` on explicit disconnect or detected link loss;
- ``error`` once per outage when reconnect attempts are exhausted.

Background tasks are started on connect and cancelled before
:meth:`DeviceAdapter.disconnect` returns.

CHANGELOG:
- 2026-03-04: Route command requests through execute_command
- 2026-02-27: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from gateway.src.errors import (
    CommandValidationError,
    DeviceConnectionError,
    DeviceProtocolError,
    ReconnectExhaustedError,
)
from gateway.src.lifecycle import (
    DEFAULT_POLICY,
    ConnectionLifecycle,
    ConnectionStrategy,
    ReconnectPolicy,
)
from gateway.src.models import DeviceIdentity, DeviceStatus, Reading

if TYPE_CHECKING:
    from gateway.src.bridge import ProtocolBridge
    from gateway.src.store import ReadingStore

logger = logging.getLogger(__name__)

CommandFn = Callable[[dict[str, Any]], Awaitable[Any]]


class DeviceAdapter:
    """Common behaviour of all protocol adapters.

    Args:
        identity: Device identity.
        bridge: Bridge for this device.
        strategy: Transport providing ``open()``/``close()``.
        policy: Reconnect policy. Defaults to the class's ``default_policy``.
        store: Optional persistence collaborator.
        sleep: Wait function handed to the lifecycle controller.
        uniform: Jitter source handed to the lifecycle controller.
    """

    default_policy: ReconnectPolicy = DEFAULT_POLICY

    def __init__(
        self,
        identity: DeviceIdentity,
        bridge: ProtocolBridge,
        strategy: ConnectionStrategy,
        *,
        policy: ReconnectPolicy | None = None,
        store: ReadingStore | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        uniform: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.identity = identity
        self.bridge = bridge
        self.store = store
        self.lifecycle = ConnectionLifecycle(
            strategy,
            policy or self.default_policy,
            device_id=identity.device_id,
            on_connected=self._handle_connected,
            on_link_lost=self._handle_link_lost,
            on_exhausted=self._handle_exhausted,
            sleep=sleep,
            uniform=uniform,
        )
        self._tasks: list[asyncio.Task[None]] = []
        self._status: DeviceStatus | None = None
        self._last_reading: Reading | None = None

    @property
    def device_id(self) -> int:
        return self.identity.device_id

    @property
    def status(self) -> DeviceStatus | None:
        """Last status published for this device."""
        return self._status

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """Connect through the lifecycle controller (retries on failure)."""
        return await self.lifecycle.connect()

    async def disconnect(self) -> None:
        """Stop background tasks, close the link and publish ``offline``.

        Idempotent.
        """
        await self.lifecycle.disconnect()
        await self._cancel_tasks()
        await self.bridge.detach_commands()
        if self._status not in (None, DeviceStatus.OFFLINE):
            await self._set_status(DeviceStatus.OFFLINE, {"reason": "disconnected"})

    def is_connected(self) -> bool:
        return self.lifecycle.is_connected

    async def read_data(self) -> Reading:
        """Read one native reading from the device."""
        raise NotImplementedError

    async def write_data(self, params: dict[str, Any]) -> bool:
        """Apply a device-native write. Returns True on success."""
        raise NotImplementedError

    async def execute_command(self, command: str, params: dict[str, Any]) -> Any:
        """Dispatch a named command to the adapter.

        Raises:
            CommandValidationError: If the command is unknown or its
                parameters are invalid.
        """
        handler = self.commands().get(command)
        if handler is None:
            raise CommandValidationError(
                f"Unknown command '{command}' for {self.identity.protocol.value} device"
            )
        return await handler(params)

    def commands(self) -> dict[str, CommandFn]:
        """Command name to handler. Subclasses extend this table."""
        return {
            "read": self._command_read,
            "write": self._command_write,
        }

    def get_device_info(self) -> dict[str, Any]:
        """Identity, link state and last reading of the device."""
        return {
            "deviceId": self.identity.device_id,
            "deviceType": self.identity.device_type.value,
            "protocol": self.identity.protocol.value,
            "connected": self.is_connected(),
            "state": self.lifecycle.state.value,
            "attempts": self.lifecycle.attempts,
            "status": self._status.value if self._status else None,
            "lastReading": self._last_reading.values if self._last_reading else None,
        }

    # ------------------------------------------------------------------
    # Hooks for subclasses
    # ------------------------------------------------------------------

    async def _on_link_up(self) -> None:
        """Start protocol background tasks after a successful connect."""

    # ------------------------------------------------------------------
    # Lifecycle callbacks
    # ------------------------------------------------------------------

    async def _handle_connected(self) -> None:
        await self.bridge.attach_commands(self.execute_command)
        await self._set_status(DeviceStatus.ONLINE)
        await self._on_link_up()

    async def _handle_link_lost(self, reason: str) -> None:
        await self._cancel_tasks()
        await self._set_status(DeviceStatus.OFFLINE, {"reason": reason})

    async def _handle_exhausted(self, error: ReconnectExhaustedError) -> None:
        await self._set_status(
            DeviceStatus.ERROR,
            {"error": error.message, "attempts": error.attempts},
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_connected(self) -> None:
        if not self.lifecycle.is_connected:
            raise DeviceConnectionError("not connected", device_id=self.device_id)

    async def _set_status(self, status: DeviceStatus, details: dict[str, Any] | None = None) -> None:
        self._status = status
        await self.bridge.bridge_status(status, details)
        if self.store is not None:
            try:
                await self.store.save_status(self.identity, status, details)
            except Exception:
                logger.warning("Device %d: status persistence failed", self.device_id, exc_info=True)

    async def _publish_reading(self, reading: Reading) -> dict[str, Any]:
        self._last_reading = reading
        mapped = await self.bridge.bridge_telemetry(reading)
        if self.store is not None:
            try:
                await self.store.save_reading(self.identity, reading)
            except Exception:
                logger.warning("Device %d: reading persistence failed", self.device_id, exc_info=True)
        return mapped

    def _spawn(self, coro: Awaitable[None], name: str) -> None:
        task = asyncio.create_task(coro, name=f"device-{self.device_id}-{name}")
        self._tasks.append(task)

    async def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            if task is not current and not task.done():
                task.cancel()
        for task in tasks:
            if task is current:
                continue
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _every(
        self,
        interval_s: float,
        action: Callable[[], Awaitable[Any]],
        label: str,
    ) -> None:
        """Run *action* every *interval_s* while the link is up.

        A connection error hands the failure to the lifecycle controller and
        ends the loop; a protocol error skips the cycle; anything else is
        logged and the loop continues.
        """
        while self.lifecycle.is_connected:
            try:
                await action()
            except DeviceConnectionError as exc:
                await self.lifecycle.link_lost(exc.message)
                return
            except DeviceProtocolError as exc:
                logger.warning("Device %d %s cycle skipped: %s", self.device_id, label, exc.message)
            except Exception:
                logger.error("Device %d %s cycle error", self.device_id, label, exc_info=True)
            await asyncio.sleep(interval_s)

    async def _command_read(self, params: dict[str, Any]) -> dict[str, Any]:
        reading = await self.read_data()
        return dict(reading.values)

    async def _command_write(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"written": await self.write_data(params)}
