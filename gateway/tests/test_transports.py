"""
Unit tests for the network transports behind the adapters.

Tests verify:
- PymodbusTransport maps exception responses and short replies to
  DeviceProtocolError, and I/O failures and timeouts to
  DeviceConnectionError.
- WebSocketOcppTransport correlates CALLRESULT and CALLERROR frames by
  message id, times out unanswered calls, answers remote CALLs and reports
  an unexpected close.
- TcpStreamTransport reports a peer close and write failures as
  DeviceConnectionError.

CHANGELOG:
- 2026-03-05: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from gateway.src.adapters.modbus import ModbusConnection, PymodbusTransport
from gateway.src.adapters.ocpp import OcppConnection, WebSocketOcppTransport
from gateway.src.adapters.tcpip import TcpConnection, TcpStreamTransport
from gateway.src.errors import CommandValidationError, DeviceConnectionError, DeviceProtocolError
from gateway.src.registers import RegisterTable
from pymodbus.exceptions import ConnectionException, ModbusIOException

from .conftest import drain

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_response(registers: list[int], is_error: bool = False) -> MagicMock:
    """Create a mock Modbus response."""
    response = MagicMock()
    response.isError.return_value = is_error
    response.registers = registers
    return response


def _make_mock_client(response: Any = None) -> MagicMock:
    """Create a connected mock AsyncModbusTcpClient."""
    client = MagicMock()
    client.connect = AsyncMock(return_value=True)
    client.close = MagicMock()
    client.connected = True
    client.read_holding_registers = AsyncMock(return_value=response)
    client.read_input_registers = AsyncMock(return_value=response)
    client.write_register = AsyncMock(return_value=_make_response([]))
    return client


def _modbus(**overrides: Any) -> PymodbusTransport:
    connection = ModbusConnection(host="10.0.0.7", **overrides)
    return PymodbusTransport(connection, device_id=7)


async def _hang(*args: Any, **kwargs: Any) -> None:
    await asyncio.Event().wait()


class FakeWebSocket:
    """WebSocket double fed frame by frame; None ends the stream."""

    def __init__(self) -> None:
        self.sent: list[Any] = []
        self.closed = False
        self._frames: asyncio.Queue[str | None] = asyncio.Queue()

    def feed(self, frame: list[Any] | None) -> None:
        self._frames.put_nowait(None if frame is None else json.dumps(frame))

    async def send(self, raw: str) -> None:
        self.sent.append(json.loads(raw))

    async def close(self) -> None:
        self.closed = True

    def __aiter__(self) -> FakeWebSocket:
        return self

    async def __anext__(self) -> str:
        raw = await self._frames.get()
        if raw is None:
            raise StopAsyncIteration
        return raw


async def _open_ocpp(ws: FakeWebSocket, **kwargs: Any) -> WebSocketOcppTransport:
    connection = OcppConnection(url="ws://csms.local/ocpp/", charge_point_id="CP-1", timeout_s=0.05)
    transport = WebSocketOcppTransport(connection, device_id=3, **kwargs)
    with patch("gateway.src.adapters.ocpp.websockets.connect", AsyncMock(return_value=ws)) as connect:
        assert await transport.open() is True
    assert connect.call_args.args[0] == "ws://csms.local/ocpp/CP-1"
    assert connect.call_args.kwargs["subprotocols"] == ["ocpp1.6"]
    return transport


# ---------------------------------------------------------------------------
# Modbus
# ---------------------------------------------------------------------------


class TestPymodbusTransport:
    """PymodbusTransport error mapping."""

    @pytest.mark.asyncio
    async def test_read_holding_registers(self) -> None:
        client = _make_mock_client(_make_response([100, 200]))

        with patch("gateway.src.adapters.modbus.AsyncModbusTcpClient", return_value=client) as client_cls:
            transport = _modbus(port=1502, unit_id=3)
            assert await transport.open() is True
            words = await transport.read_words(40000, 2, RegisterTable.HOLDING)

        assert words == [100, 200]
        assert client_cls.call_args.args == ("10.0.0.7",)
        assert client_cls.call_args.kwargs["port"] == 1502
        client.read_holding_registers.assert_awaited_once_with(40000, count=2, device_id=3)

    @pytest.mark.asyncio
    async def test_connect_refused_returns_false(self) -> None:
        client = _make_mock_client()
        client.connect.return_value = False

        with patch("gateway.src.adapters.modbus.AsyncModbusTcpClient", return_value=client):
            transport = _modbus()
            assert await transport.open() is False

        client.close.assert_called_once()
        with pytest.raises(DeviceConnectionError, match="not connected"):
            await transport.read_words(0, 1, RegisterTable.HOLDING)

    @pytest.mark.asyncio
    async def test_exception_response(self) -> None:
        client = _make_mock_client(_make_response([], is_error=True))

        with patch("gateway.src.adapters.modbus.AsyncModbusTcpClient", return_value=client):
            transport = _modbus()
            await transport.open()
            with pytest.raises(DeviceProtocolError, match="exception response"):
                await transport.read_words(100, 1, RegisterTable.INPUT)

    @pytest.mark.asyncio
    async def test_short_reply(self) -> None:
        client = _make_mock_client(_make_response([1]))

        with patch("gateway.src.adapters.modbus.AsyncModbusTcpClient", return_value=client):
            transport = _modbus()
            await transport.open()
            with pytest.raises(DeviceProtocolError, match="short reply"):
                await transport.read_words(100, 2, RegisterTable.HOLDING)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [ConnectionException("socket closed"), ModbusIOException("no response")],
    )
    async def test_io_failure_is_connection_error(self, error: Exception) -> None:
        client = _make_mock_client()
        client.read_holding_registers.side_effect = error

        with patch("gateway.src.adapters.modbus.AsyncModbusTcpClient", return_value=client):
            transport = _modbus()
            await transport.open()
            with pytest.raises(DeviceConnectionError):
                await transport.read_words(0, 1, RegisterTable.HOLDING)

    @pytest.mark.asyncio
    async def test_timeout_is_connection_error(self) -> None:
        client = _make_mock_client()
        client.write_register = _hang

        with patch("gateway.src.adapters.modbus.AsyncModbusTcpClient", return_value=client):
            transport = _modbus(timeout_s=0.01)
            await transport.open()
            with pytest.raises(DeviceConnectionError, match="timed out"):
                await transport.write_register(40100, 5)

    @pytest.mark.asyncio
    async def test_dropped_client_is_connection_error(self) -> None:
        client = _make_mock_client(_make_response([1]))

        with patch("gateway.src.adapters.modbus.AsyncModbusTcpClient", return_value=client):
            transport = _modbus()
            await transport.open()
        client.connected = False

        with pytest.raises(DeviceConnectionError, match="not connected"):
            await transport.read_words(0, 1, RegisterTable.HOLDING)
        client.read_holding_registers.assert_not_awaited()


# ---------------------------------------------------------------------------
# OCPP
# ---------------------------------------------------------------------------


class TestWebSocketOcppTransport:
    """OCPP-J framing over a WebSocket."""

    @pytest.mark.asyncio
    async def test_call_result_correlated(self) -> None:
        ws = FakeWebSocket()
        transport = await _open_ocpp(ws)

        task = asyncio.create_task(transport.call("Heartbeat", {}))
        await drain(lambda: ws.sent)
        [kind, message_id, action, payload] = ws.sent[0]
        ws.feed([3, "someone-else", {"currentTime": "wrong"}])
        ws.feed([3, message_id, {"currentTime": "2026-03-01T12:00:00Z"}])

        assert await task == {"currentTime": "2026-03-01T12:00:00Z"}
        assert (kind, action, payload) == (2, "Heartbeat", {})
        await transport.close()

    @pytest.mark.asyncio
    async def test_call_error_raises_protocol_error(self) -> None:
        ws = FakeWebSocket()
        transport = await _open_ocpp(ws)

        task = asyncio.create_task(transport.call("Reset", {"type": "Hard"}))
        await drain(lambda: ws.sent)
        ws.feed([4, ws.sent[0][1], "NotImplemented", "no resets", {}])

        with pytest.raises(DeviceProtocolError, match="CALLERROR NotImplemented: no resets"):
            await task
        await transport.close()

    @pytest.mark.asyncio
    async def test_unanswered_call_times_out(self) -> None:
        ws = FakeWebSocket()
        transport = await _open_ocpp(ws)

        with pytest.raises(DeviceConnectionError, match="Heartbeat: no response"):
            await transport.call("Heartbeat", {})
        await transport.close()

    @pytest.mark.asyncio
    async def test_call_when_closed(self) -> None:
        transport = WebSocketOcppTransport(OcppConnection(url="ws://csms.local"), device_id=3)

        with pytest.raises(DeviceConnectionError, match="not open"):
            await transport.call("Heartbeat", {})

    @pytest.mark.asyncio
    async def test_remote_call_answered(self) -> None:
        ws = FakeWebSocket()
        on_call = AsyncMock(return_value={})
        transport = await _open_ocpp(ws, on_call=on_call)

        ws.feed([2, "srv-1", "StatusNotification", {"connectorId": 1, "status": "Available"}])
        await drain(lambda: ws.sent)

        assert ws.sent == [[3, "srv-1", {}]]
        on_call.assert_awaited_once_with("StatusNotification", {"connectorId": 1, "status": "Available"})
        await transport.close()

    @pytest.mark.asyncio
    async def test_remote_call_not_supported(self) -> None:
        ws = FakeWebSocket()
        transport = await _open_ocpp(ws, on_call=AsyncMock(return_value=None))

        ws.feed([2, "srv-2", "DataTransfer", {}])
        await drain(lambda: ws.sent)

        assert ws.sent == [[4, "srv-2", "NotSupported", "DataTransfer not supported", {}]]
        await transport.close()

    @pytest.mark.asyncio
    async def test_remote_call_invalid_payload(self) -> None:
        ws = FakeWebSocket()
        on_call = AsyncMock(side_effect=CommandValidationError("Connector 9 not found"))
        transport = await _open_ocpp(ws, on_call=on_call)

        ws.feed([2, "srv-3", "MeterValues", {"connectorId": 9}])
        await drain(lambda: ws.sent)

        assert ws.sent == [[4, "srv-3", "PropertyConstraintViolation", "Connector 9 not found", {}]]
        await transport.close()

    @pytest.mark.asyncio
    async def test_remote_call_while_own_call_pending(self) -> None:
        ws = FakeWebSocket()
        release = asyncio.Event()

        async def on_call(action: str, payload: dict[str, Any]) -> dict[str, Any]:
            await release.wait()
            return {}

        transport = await _open_ocpp(ws, on_call=on_call)
        task = asyncio.create_task(transport.call("StartTransaction", {"connectorId": 1}))
        await drain(lambda: ws.sent)
        ws.feed([2, "srv-4", "StatusNotification", {"connectorId": 1}])
        ws.feed([3, ws.sent[0][1], {"transactionId": 5}])

        assert await task == {"transactionId": 5}
        release.set()
        await drain(lambda: len(ws.sent) == 2)
        assert ws.sent[1] == [3, "srv-4", {}]
        await transport.close()

    @pytest.mark.asyncio
    async def test_malformed_frame_ignored(self) -> None:
        ws = FakeWebSocket()
        on_call = AsyncMock(return_value={})
        transport = await _open_ocpp(ws, on_call=on_call)

        ws._frames.put_nowait("not json")
        ws.feed([2, "srv-5", "Heartbeat", {}])
        await drain(lambda: ws.sent)

        assert ws.sent == [[3, "srv-5", {}]]
        await transport.close()

    @pytest.mark.asyncio
    async def test_unexpected_close_reported(self) -> None:
        ws = FakeWebSocket()
        on_closed = AsyncMock()
        transport = await _open_ocpp(ws, on_closed=on_closed)
        pending = asyncio.create_task(transport.call("Heartbeat", {}))
        await drain(lambda: ws.sent)

        ws.feed(None)
        await drain(lambda: on_closed.await_count)

        on_closed.assert_awaited_once_with("connection closed")
        with pytest.raises(DeviceConnectionError, match="connection closed"):
            await pending
        await transport.close()

    @pytest.mark.asyncio
    async def test_local_close_not_reported(self) -> None:
        ws = FakeWebSocket()
        on_closed = AsyncMock()
        transport = await _open_ocpp(ws, on_closed=on_closed)

        await transport.close()

        assert ws.closed is True
        on_closed.assert_not_awaited()


# ---------------------------------------------------------------------------
# TCP
# ---------------------------------------------------------------------------


def _stream(data: bytes) -> tuple[asyncio.StreamReader, MagicMock]:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    writer = MagicMock()
    writer.drain = AsyncMock()
    writer.wait_closed = AsyncMock()
    return reader, writer


class TestTcpStreamTransport:
    """TcpStreamTransport reads and writes."""

    @pytest.mark.asyncio
    async def test_peer_close_is_connection_error(self) -> None:
        reader, writer = _stream(b"P=1200\n")
        transport = TcpStreamTransport(TcpConnection(host="10.0.0.9", port=9000), device_id=9)

        with patch(
            "gateway.src.adapters.tcpip.asyncio.open_connection",
            AsyncMock(return_value=(reader, writer)),
        ) as open_connection:
            assert await transport.open() is True

        open_connection.assert_awaited_once_with("10.0.0.9", 9000)
        assert await transport.read() == b"P=1200\n"
        with pytest.raises(DeviceConnectionError, match="closed by peer"):
            await transport.read()
        await transport.close()
        writer.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_write_failure_is_connection_error(self) -> None:
        reader, writer = _stream(b"")
        writer.drain.side_effect = ConnectionResetError("reset by peer")
        transport = TcpStreamTransport(TcpConnection(host="10.0.0.9", port=9000), device_id=9)

        with patch(
            "gateway.src.adapters.tcpip.asyncio.open_connection",
            AsyncMock(return_value=(reader, writer)),
        ):
            await transport.open()

        with pytest.raises(DeviceConnectionError, match="TCP write failed"):
            await transport.write(b"GET\n")
        writer.write.assert_called_once_with(b"GET\n")

    @pytest.mark.asyncio
    async def test_read_before_open(self) -> None:
        transport = TcpStreamTransport(TcpConnection(host="10.0.0.9", port=9000), device_id=9)

        with pytest.raises(DeviceConnectionError, match="not open"):
            await transport.read()
