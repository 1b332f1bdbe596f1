"""
Adapter registry: the set of live adapters for one protocol family.

The registry maps device ids to adapters. Membership changes happen under
an ``asyncio.Lock`` so concurrent add/remove calls for the same id never
create two adapters. Connecting runs in a task per device, so a device that
hangs in its connect timeout does not hold up the others.

Operations:
- add_device(adapter): register and start connecting. A duplicate id is a
  no-op; adds after shutdown are rejected.
- remove_device(device_id): cancel a pending connect, disconnect, evict.
- get(device_id) / device_ids() / len().
- wait_connecting(): await every connect still in flight.
- shutdown(): refuse further adds, cancel pending connects, disconnect every
  adapter concurrently, then clear.

CHANGELOG:
- 2026-03-05: Connect in per-device tasks; reject adds after shutdown
- 2026-03-03: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from gateway.src.adapters.base import DeviceAdapter
    from gateway.src.models import Protocol

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Live adapters of one protocol family, keyed by device id.

    Args:
        protocol: Protocol family served by this registry.
    """

    def __init__(self, protocol: Protocol) -> None:
        self._protocol = protocol
        self._adapters: dict[int, DeviceAdapter] = {}
        self._connecting: dict[int, asyncio.Task[bool]] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def protocol(self) -> Protocol:
        return self._protocol

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._adapters)

    def get(self, device_id: int) -> DeviceAdapter | None:
        return self._adapters.get(device_id)

    def device_ids(self) -> list[int]:
        return sorted(self._adapters)

    def adapters(self) -> list[DeviceAdapter]:
        return [self._adapters[i] for i in sorted(self._adapters)]

    async def add_device(self, adapter: DeviceAdapter) -> bool:
        """Register *adapter* and start connecting it in the background.

        Returns:
            True if the adapter was added; False if its device id is already
            registered (the existing adapter is kept untouched) or the
            registry has been shut down.
        """
        device_id = adapter.device_id
        async with self._lock:
            if self._closed:
                logger.warning("Device %d rejected: %s registry shut down", device_id, self._protocol.value)
                return False
            if device_id in self._adapters:
                logger.info("Device %d already registered (%s)", device_id, self._protocol.value)
                return False
            self._adapters[device_id] = adapter
            task = asyncio.create_task(self._connect(adapter), name=f"connect-{device_id}")
            self._connecting[device_id] = task
        task.add_done_callback(lambda t: self._connect_done(device_id, t))
        logger.info("Device %d registered (%s)", device_id, self._protocol.value)
        return True

    async def _connect(self, adapter: DeviceAdapter) -> bool:
        try:
            return await adapter.connect()
        except Exception:
            logger.error("Device %d connect failed", adapter.device_id, exc_info=True)
            return False

    def _connect_done(self, device_id: int, task: asyncio.Task[bool]) -> None:
        if self._connecting.get(device_id) is task:
            del self._connecting[device_id]

    async def wait_connecting(self) -> None:
        """Wait until every connect started by :meth:`add_device` has finished."""
        tasks = list(self._connecting.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _cancel_connect(self, device_id: int) -> None:
        task = self._connecting.pop(device_id, None)
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def remove_device(self, device_id: int) -> bool:
        """Cancel a pending connect, then disconnect and evict a device.

        Returns:
            True if the device was registered.
        """
        adapter = self._adapters.get(device_id)
        if adapter is None:
            return False
        await self._cancel_connect(device_id)
        await adapter.disconnect()
        async with self._lock:
            if self._adapters.get(device_id) is adapter:
                del self._adapters[device_id]
        logger.info("Device %d removed (%s)", device_id, self._protocol.value)
        return True

    async def shutdown(self) -> None:
        """Refuse further adds, then disconnect all adapters concurrently."""
        async with self._lock:
            self._closed = True
            adapters, self._adapters = list(self._adapters.values()), {}
        for device_id in list(self._connecting):
            await self._cancel_connect(device_id)
        if not adapters:
            return
        results = await asyncio.gather(
            *(adapter.disconnect() for adapter in adapters),
            return_exceptions=True,
        )
        for adapter, result in zip(adapters, results):
            if isinstance(result, Exception):
                logger.error(
                    "Device %d disconnect failed during shutdown",
                    adapter.device_id,
                    exc_info=result,
                )
        logger.info("%s registry shut down (%d devices)", self._protocol.value, len(adapters))
