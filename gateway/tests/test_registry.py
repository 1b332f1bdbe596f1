"""
Unit tests for the adapter registry.

Tests verify:
- add_device() registers and connects in the background; a duplicate id is
  a no-op.
- A device hanging in connect does not delay the others.
- Concurrent adds of the same id create exactly one entry.
- remove_device() cancels a pending connect and disconnects before evicting.
- shutdown() disconnects every adapter, survives individual failures and
  rejects later adds.

CHANGELOG:
- 2026-03-05: Cover background connects and adds after shutdown
- 2026-03-03: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging

import pytest
from gateway.src.models import Protocol
from gateway.src.registry import AdapterRegistry

from .conftest import drain

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class StubAdapter:
    """Adapter double recording connect/disconnect calls."""

    def __init__(self, device_id: int, *, fail_disconnect: bool = False, hang: bool = False) -> None:
        self.device_id = device_id
        self.fail_disconnect = fail_disconnect
        self.hang = hang
        self.connect_calls = 0
        self.connected = False
        self.disconnect_calls = 0

    async def connect(self) -> bool:
        self.connect_calls += 1
        await asyncio.sleep(0)
        if self.hang:
            await asyncio.Event().wait()
        self.connected = True
        return True

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        if self.fail_disconnect:
            raise RuntimeError("socket already gone")


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestAdapterRegistry:
    """Registry membership and lifecycle calls."""

    @pytest.mark.asyncio
    async def test_add_connects(self) -> None:
        registry = AdapterRegistry(Protocol.MODBUS)
        adapter = StubAdapter(7)

        assert await registry.add_device(adapter) is True
        await registry.wait_connecting()

        assert adapter.connect_calls == 1
        assert adapter.connected is True
        assert registry.get(7) is adapter
        assert registry.device_ids() == [7]
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_hanging_device_does_not_block_others(self) -> None:
        registry = AdapterRegistry(Protocol.MODBUS)
        stuck = StubAdapter(1, hang=True)
        healthy = StubAdapter(2)

        await asyncio.wait_for(registry.add_device(stuck), timeout=1.0)
        await asyncio.wait_for(registry.add_device(healthy), timeout=1.0)
        await drain(lambda: healthy.connected)

        assert healthy.connected is True
        assert stuck.connect_calls == 1
        assert stuck.connected is False
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_connect_error_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        class Exploding(StubAdapter):
            async def connect(self) -> bool:
                raise RuntimeError("bad driver")

        registry = AdapterRegistry(Protocol.TCPIP)

        with caplog.at_level(logging.ERROR):
            await registry.add_device(Exploding(4))
            await registry.wait_connecting()

        assert "Device 4 connect failed" in caplog.text
        assert registry.get(4) is not None

    @pytest.mark.asyncio
    async def test_duplicate_id_is_noop(self) -> None:
        registry = AdapterRegistry(Protocol.MODBUS)
        first, second = StubAdapter(7), StubAdapter(7)
        await registry.add_device(first)

        assert await registry.add_device(second) is False
        await registry.wait_connecting()

        assert registry.get(7) is first
        assert second.connect_calls == 0

    @pytest.mark.asyncio
    async def test_concurrent_adds_create_one_entry(self) -> None:
        registry = AdapterRegistry(Protocol.OCPP)
        candidates = [StubAdapter(3) for _ in range(5)]

        results = await asyncio.gather(*(registry.add_device(a) for a in candidates))
        await registry.wait_connecting()

        assert results.count(True) == 1
        assert len(registry) == 1
        assert sum(a.connect_calls for a in candidates) == 1

    @pytest.mark.asyncio
    async def test_remove_disconnects_and_evicts(self) -> None:
        registry = AdapterRegistry(Protocol.EEBUS)
        adapter = StubAdapter(5)
        await registry.add_device(adapter)
        await registry.wait_connecting()

        assert await registry.remove_device(5) is True

        assert adapter.disconnect_calls == 1
        assert registry.get(5) is None
        assert await registry.remove_device(5) is False

    @pytest.mark.asyncio
    async def test_remove_cancels_pending_connect(self) -> None:
        registry = AdapterRegistry(Protocol.MODBUS)
        adapter = StubAdapter(6, hang=True)
        await registry.add_device(adapter)
        await drain(lambda: adapter.connect_calls)

        await asyncio.wait_for(registry.remove_device(6), timeout=1.0)

        assert adapter.disconnect_calls == 1
        assert adapter.connected is False
        assert registry.get(6) is None

    @pytest.mark.asyncio
    async def test_adapters_sorted_by_id(self) -> None:
        registry = AdapterRegistry(Protocol.TCPIP)
        for device_id in (9, 2, 5):
            await registry.add_device(StubAdapter(device_id))

        assert [a.device_id for a in registry.adapters()] == [2, 5, 9]
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_disconnects_all(self, caplog: pytest.LogCaptureFixture) -> None:
        registry = AdapterRegistry(Protocol.MODBUS)
        healthy = StubAdapter(1)
        broken = StubAdapter(2, fail_disconnect=True)
        stuck = StubAdapter(3, hang=True)
        for adapter in (healthy, broken, stuck):
            await registry.add_device(adapter)

        with caplog.at_level(logging.ERROR):
            await asyncio.wait_for(registry.shutdown(), timeout=1.0)

        assert healthy.disconnect_calls == 1
        assert broken.disconnect_calls == 1
        assert stuck.disconnect_calls == 1
        assert len(registry) == 0
        assert "Device 2 disconnect failed" in caplog.text

    @pytest.mark.asyncio
    async def test_add_after_shutdown_rejected(self) -> None:
        registry = AdapterRegistry(Protocol.OCPP)
        await registry.shutdown()
        late = StubAdapter(8)

        assert await registry.add_device(late) is False
        await drain()

        assert registry.closed is True
        assert len(registry) == 0
        assert late.connect_calls == 0

    @pytest.mark.asyncio
    async def test_shutdown_empty(self) -> None:
        await AdapterRegistry(Protocol.SUNSPEC).shutdown()
