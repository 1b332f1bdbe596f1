"""
Generic TCP/IP adapter: devices speaking an ad-hoc protocol over a socket.

The adapter opens a raw stream with ``asyncio.open_connection`` and treats
every chunk the device sends as one complete message. No framing is
inferred: a message split across two TCP segments arrives as two readings.
Each message is decoded per the configured format (``hex``, ``ascii``,
``utf8`` or ``json``; JSON that fails to parse falls back to a utf8 string)
and published as telemetry.

Commands are named templates from the device config. ``{key}`` placeholders
are filled from the command parameters before the bytes are sent. An
optional ``poll`` template is sent every poll interval.

CHANGELOG:
- 2026-03-02: Send the optional poll template on an interval
- 2026-02-28: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, Field

from gateway.src.adapters.base import CommandFn, DeviceAdapter
from gateway.src.errors import CommandValidationError, DeviceConnectionError
from gateway.src.models import Reading

if TYPE_CHECKING:
    from gateway.src.bridge import ProtocolBridge

logger = logging.getLogger(__name__)

READ_CHUNK: int = 4096
"""Maximum bytes taken from the stream per receive event."""

POLL_COMMAND: str = "poll"
"""Template name sent on the poll interval when configured."""


class DataFormat(str, Enum):
    """How received bytes are decoded."""

    HEX = "hex"
    ASCII = "ascii"
    UTF8 = "utf8"
    JSON = "json"


class TcpConnection(BaseModel):
    """Connection parameters for a generic TCP/IP device.

    Attributes:
        host: Device hostname or IP.
        port: TCP port.
        data_format: Decoding applied to received messages.
        timeout_s: Connect and write timeout.
        poll_interval_s: Seconds between ``poll`` template sends.
        commands: Command name to template (``{key}`` placeholders).
        mock_mode: Use the simulated transport instead of real I/O.
    """

    host: str = ""
    port: int = Field(default=0, ge=0, le=65535)
    data_format: DataFormat = DataFormat.UTF8
    timeout_s: float = Field(default=10.0, gt=0)
    poll_interval_s: float = Field(default=60.0, gt=0)
    commands: dict[str, str] = Field(default_factory=dict)
    mock_mode: bool = False


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class StreamTransport(Protocol):
    """Byte stream to the device."""

    async def open(self) -> bool: ...

    async def close(self) -> None: ...

    async def read(self) -> bytes: ...

    async def write(self, data: bytes) -> None: ...


class TcpStreamTransport:
    """:class:`StreamTransport` over ``asyncio.open_connection``.

    Args:
        connection: Connection descriptor.
        device_id: Gateway device id used in errors.
    """

    def __init__(self, connection: TcpConnection, *, device_id: int) -> None:
        self._conn = connection
        self._device_id = device_id
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    async def open(self) -> bool:
        self._reader, self._writer = await asyncio.wait_for(
            asyncio.open_connection(self._conn.host, self._conn.port),
            timeout=self._conn.timeout_s,
        )
        logger.info("TCP link to %s:%d open", self._conn.host, self._conn.port)
        return True

    async def close(self) -> None:
        writer, self._writer = self._writer, None
        self._reader = None
        if writer is None:
            return
        writer.close()
        try:
            await asyncio.wait_for(writer.wait_closed(), timeout=5.0)
        except TimeoutError:
            logger.warning("Timeout closing TCP link to %s:%d", self._conn.host, self._conn.port)
        except OSError as exc:
            logger.debug("TCP close error for %s:%d: %s", self._conn.host, self._conn.port, exc)

    async def read(self) -> bytes:
        if self._reader is None:
            raise DeviceConnectionError("TCP link not open", device_id=self._device_id)
        try:
            data = await self._reader.read(READ_CHUNK)
        except OSError as exc:
            raise DeviceConnectionError(f"TCP read failed: {exc}", device_id=self._device_id) from exc
        if not data:
            raise DeviceConnectionError("TCP link closed by peer", device_id=self._device_id)
        return data

    async def write(self, data: bytes) -> None:
        if self._writer is None:
            raise DeviceConnectionError("TCP link not open", device_id=self._device_id)
        try:
            self._writer.write(data)
            await asyncio.wait_for(self._writer.drain(), timeout=self._conn.timeout_s)
        except (OSError, TimeoutError) as exc:
            raise DeviceConnectionError(f"TCP write failed: {exc}", device_id=self._device_id) from exc


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def decode_message(data: bytes, data_format: DataFormat | str) -> Any:
    """Decode one received message.

    Returns:
        A hex or text string, or the parsed JSON value. JSON that fails to
        parse is returned as a utf8 string.
    """
    fmt = DataFormat(data_format)
    if fmt is DataFormat.HEX:
        return data.hex()
    if fmt is DataFormat.ASCII:
        return data.decode("ascii", errors="replace")
    text = data.decode("utf-8", errors="replace")
    if fmt is DataFormat.JSON:
        try:
            return json.loads(text)
        except ValueError:
            logger.warning("Invalid JSON from device, kept as text: %r", text[:80])
    return text


def _to_values(decoded: Any, data_format: DataFormat) -> dict[str, Any]:
    values: dict[str, Any] = {"data_format": data_format.value}
    if isinstance(decoded, dict):
        for key, value in decoded.items():
            if isinstance(value, (bool, int, float, str)):
                values[str(key)] = value
            else:
                values[str(key)] = json.dumps(value)
    elif isinstance(decoded, (bool, int, float, str)):
        values["data"] = decoded
    else:
        values["data"] = json.dumps(decoded)
    return values


def render_template(template: str, params: dict[str, Any]) -> str:
    """Replace ``{key}`` placeholders with parameter values.

    Placeholders without a matching parameter are left as they are.
    """
    rendered = template
    for key, value in params.items():
        rendered = rendered.replace(f"{{{key}}}", str(value))
    return rendered


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class TcpIpAdapter(DeviceAdapter):
    """Raw-stream adapter.

    Args:
        identity: Device identity.
        bridge: Bridge for this device.
        transport: Byte stream (real or simulated).
        data_format: Decoding applied to received messages.
        templates: Command name to template.
        poll_interval_s: Interval for the ``poll`` template.
        **kwargs: Forwarded to :class:`DeviceAdapter`.
    """

    def __init__(
        self,
        identity: Any,
        bridge: ProtocolBridge,
        transport: StreamTransport,
        *,
        data_format: DataFormat = DataFormat.UTF8,
        templates: dict[str, str] | None = None,
        poll_interval_s: float = 60.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(identity, bridge, transport, **kwargs)
        self.transport = transport
        self._format = DataFormat(data_format)
        self._templates = dict(templates or {})
        self._poll_interval_s = poll_interval_s

    async def _on_link_up(self) -> None:
        self._spawn(self._receive_loop(), "receive")
        if POLL_COMMAND in self._templates:
            self._spawn(self._every(self._poll_interval_s, self._send_poll, "poll"), "poll")

    async def _receive_loop(self) -> None:
        while self.lifecycle.is_connected:
            try:
                data = await self.transport.read()
            except DeviceConnectionError as exc:
                await self.lifecycle.link_lost(exc.message)
                return
            try:
                await self.handle_message(data)
            except Exception:
                logger.error("Device %d message handling failed", self.device_id, exc_info=True)

    async def handle_message(self, data: bytes) -> dict[str, Any]:
        """Decode one received message and publish it."""
        decoded = decode_message(data, self._format)
        reading = Reading(values=_to_values(decoded, self._format))
        return await self._publish_reading(reading)

    async def _send_poll(self) -> None:
        await self.transport.write(self._templates[POLL_COMMAND].encode("utf-8"))

    async def read_data(self) -> Reading:
        """Return the last received message.

        Raises:
            DeviceConnectionError: Not connected.
        """
        self._require_connected()
        if self._last_reading is None:
            return Reading(values={"data_format": self._format.value})
        return self._last_reading

    async def write_data(self, params: dict[str, Any]) -> bool:
        """Send ``params["data"]`` (str or bytes) to the device."""
        if "data" not in params:
            raise CommandValidationError("TCP/IP write requires 'data'")
        return await self.send_data(params["data"])

    async def send_data(self, data: str | bytes) -> bool:
        """Send raw data.

        Returns:
            True if the bytes were written; False if the link failed (the
            failure is handed to the lifecycle).
        """
        payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        self._require_connected()
        try:
            await self.transport.write(payload)
        except DeviceConnectionError as exc:
            await self.lifecycle.link_lost(exc.message)
            return False
        return True

    async def execute_command(self, command: str, params: dict[str, Any]) -> Any:
        """Run a built-in command or send a rendered template.

        Raises:
            CommandValidationError: Neither a built-in nor a configured
                template.
        """
        if command in self.commands():
            return await super().execute_command(command, params)
        template = self._templates.get(command)
        if template is None:
            raise CommandValidationError(f"Command '{command}' not defined for device {self.device_id}")
        sent = await self.send_data(render_template(template, params))
        return {"sent": sent}

    def commands(self) -> dict[str, CommandFn]:
        table = super().commands()
        table["send"] = self._command_write
        return table

    def get_device_info(self) -> dict[str, Any]:
        info = super().get_device_info()
        info["dataFormat"] = self._format.value
        info["commands"] = sorted(self._templates)
        return info
