"""
OCPP adapter: session-oriented EV chargers speaking OCPP 1.6-J.

The adapter plays the charge-point side towards a central system over a
WebSocket. It announces itself with BootNotification on connect, sends
Heartbeat and MeterValues on their intervals, and manages charging
transactions per connector.

Session invariant: a connector has at most one ``InProgress`` transaction.
``start_transaction`` checks and records under a lock, so concurrent starts
on the same connector yield exactly one transaction; the loser gets None.

Overall charger status is ``charging`` while any connector has an active
transaction and ``available`` otherwise.

Meter values come from an injectable :class:`MeterSource`; without one the
last values pushed through :meth:`OcppAdapter.update_meter` or reported by the
remote side in MeterValues are used.

CALLs initiated by the remote side (StatusNotification, MeterValues,
StartTransaction, StopTransaction) are routed to
:meth:`OcppAdapter.handle_call` and answered with a CALLRESULT; other actions
get a ``NotSupported`` CALLERROR.

CHANGELOG:
- 2026-03-05: Route inbound CALLs to the adapter; Reset type, ClearChargingProfile
- 2026-03-03: Add reset and charging-profile commands
- 2026-02-27: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

import websockets
from pydantic import BaseModel, Field
from websockets.exceptions import ConnectionClosed, WebSocketException

from gateway.src.adapters.base import CommandFn, DeviceAdapter
from gateway.src.errors import (
    CommandValidationError,
    DeviceConnectionError,
    DeviceProtocolError,
)
from gateway.src.lifecycle import OCPP_POLICY
from gateway.src.models import DeviceStatus, Reading, Transaction, TransactionStatus

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from gateway.src.bridge import ProtocolBridge

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

OCPP_SUBPROTOCOL: str = "ocpp1.6"
"""WebSocket subprotocol negotiated with the central system."""

CALL, CALLRESULT, CALLERROR = 2, 3, 4
"""OCPP-J message type ids."""

DEFAULT_HEARTBEAT_S: float = 300.0
"""Heartbeat interval used until BootNotification returns one."""

DEFAULT_METER_INTERVAL_S: float = 60.0
"""Seconds between MeterValues while a transaction is active."""

COMPLETED_HISTORY: int = 50
"""Completed transactions kept for inspection."""

RESET_TYPES = frozenset({"Soft", "Hard"})
"""Accepted Reset.req types."""

ENERGY_MEASURAND: str = "Energy.Active.Import.Register"
POWER_MEASURAND: str = "Power.Active.Import"


class ChargePointStatus(str, Enum):
    """OCPP 1.6 connector status."""

    AVAILABLE = "Available"
    PREPARING = "Preparing"
    CHARGING = "Charging"
    SUSPENDED_EV = "SuspendedEV"
    SUSPENDED_EVSE = "SuspendedEVSE"
    FINISHING = "Finishing"
    RESERVED = "Reserved"
    UNAVAILABLE = "Unavailable"
    FAULTED = "Faulted"


_STARTABLE = frozenset({ChargePointStatus.AVAILABLE, ChargePointStatus.PREPARING})


@dataclass(slots=True)
class Connector:
    """Mutable state of one charging connector.

    Attributes:
        connector_id: OCPP connector id (1-based).
        connector_type: Plug type.
        max_power_w: Maximum charging power.
        status: Current OCPP status.
        energy_wh: Energy register in Wh.
        power_w: Current charging power in W.
    """

    connector_id: int
    connector_type: str = "Type 2"
    max_power_w: float = 22000.0
    status: ChargePointStatus = ChargePointStatus.AVAILABLE
    energy_wh: int = 0
    power_w: float = 0.0


class OcppConnection(BaseModel):
    """Connection parameters for an OCPP charge point.

    Attributes:
        url: Central system WebSocket URL (``ws://`` or ``wss://``).
        charge_point_id: Identity appended to the URL path.
        vendor: BootNotification chargePointVendor.
        model: BootNotification chargePointModel.
        connectors: Connector ids exposed by the charger.
        timeout_s: Connect and call timeout.
        heartbeat_interval_s: Heartbeat interval before boot overrides it.
        meter_interval_s: MeterValues interval.
        mock_mode: Use the simulated transport instead of real I/O.
    """

    url: str = ""
    charge_point_id: str = ""
    vendor: str = "EnergyGateway"
    model: str = "Gateway-CP"
    connectors: list[int] = Field(default_factory=lambda: [1])
    timeout_s: float = Field(default=10.0, gt=0)
    heartbeat_interval_s: float = Field(default=DEFAULT_HEARTBEAT_S, gt=0)
    meter_interval_s: float = Field(default=DEFAULT_METER_INTERVAL_S, gt=0)
    mock_mode: bool = False


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class OcppTransport(Protocol):
    """Request/response channel to the central system."""

    async def open(self) -> bool: ...

    async def close(self) -> None: ...

    async def call(self, action: str, payload: dict[str, Any]) -> dict[str, Any]: ...


class MeterSource(Protocol):
    """Provides ``(energy_wh, power_w)`` for a charging connector."""

    def sample(self, connector: Connector, elapsed_s: float) -> tuple[int, float]: ...


class WebSocketOcppTransport:
    """OCPP-J over a WebSocket client connection.

    Outgoing CALLs are correlated to CALLRESULT/CALLERROR frames by message
    id. Incoming CALLs are answered from ``on_call`` in their own task, so a
    handler may wait on state held by an outgoing call. Without a handler, or
    when it returns None, the answer is a ``NotSupported`` CALLERROR.

    Args:
        connection: Connection descriptor.
        device_id: Gateway device id used in errors.
        on_closed: Awaited when the socket closes unexpectedly.
        on_call: Answers incoming CALLs with a CALLRESULT payload.
    """

    def __init__(
        self,
        connection: OcppConnection,
        *,
        device_id: int,
        on_closed: Callable[[str], Awaitable[None]] | None = None,
        on_call: Callable[[str, dict[str, Any]], Awaitable[dict[str, Any] | None]] | None = None,
    ) -> None:
        self._conn = connection
        self._device_id = device_id
        self.on_closed = on_closed
        self.on_call = on_call
        self._ws: Any = None
        self._reader: asyncio.Task[None] | None = None
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._inbound: set[asyncio.Task[None]] = set()
        self._closing = False

    @property
    def url(self) -> str:
        base = self._conn.url.rstrip("/")
        if self._conn.charge_point_id:
            return f"{base}/{self._conn.charge_point_id}"
        return base

    async def open(self) -> bool:
        self._closing = False
        try:
            self._ws = await websockets.connect(
                self.url,
                subprotocols=[OCPP_SUBPROTOCOL],
                open_timeout=self._conn.timeout_s,
                ping_interval=20,
                ping_timeout=10,
            )
        except (OSError, WebSocketException) as exc:
            logger.warning("OCPP connect to %s failed: %s", self.url, exc)
            return False
        self._reader = asyncio.create_task(self._read_loop())
        return True

    async def close(self) -> None:
        self._closing = True
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        for task in list(self._inbound):
            if task is not asyncio.current_task():
                task.cancel()
        if self._ws is not None:
            with contextlib.suppress(WebSocketException, OSError):
                await self._ws.close()
            self._ws = None
        self._fail_pending("connection closed")

    async def call(self, action: str, payload: dict[str, Any]) -> dict[str, Any]:
        if self._ws is None:
            raise DeviceConnectionError("OCPP socket not open", device_id=self._device_id)
        message_id = uuid.uuid4().hex
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[message_id] = future
        try:
            await self._ws.send(json.dumps([CALL, message_id, action, payload]))
            return await asyncio.wait_for(future, timeout=self._conn.timeout_s)
        except TimeoutError as exc:
            raise DeviceConnectionError(f"{action}: no response", device_id=self._device_id) from exc
        except (ConnectionClosed, OSError) as exc:
            raise DeviceConnectionError(f"{action}: {exc}", device_id=self._device_id) from exc
        finally:
            self._pending.pop(message_id, None)

    async def _read_loop(self) -> None:
        reason = "connection closed"
        try:
            async for raw in self._ws:
                await self._handle_frame(raw)
        except ConnectionClosed as exc:
            reason = f"connection closed: {exc}"
        self._fail_pending(reason)
        if not self._closing and self.on_closed is not None:
            await self.on_closed(reason)

    async def _handle_frame(self, raw: str | bytes) -> None:
        try:
            frame = json.loads(raw)
            kind, message_id = frame[0], frame[1]
        except (ValueError, TypeError, IndexError, KeyError):
            logger.warning("Device %d: malformed OCPP frame %r", self._device_id, raw)
            return

        if kind == CALL:
            action = frame[2] if len(frame) > 2 else ""
            payload = frame[3] if len(frame) > 3 and isinstance(frame[3], dict) else {}
            task = asyncio.create_task(self._answer(message_id, str(action), payload))
            self._inbound.add(task)
            task.add_done_callback(self._inbound.discard)
            return
        future = self._pending.get(message_id)
        if future is None or future.done():
            return
        if kind == CALLRESULT:
            future.set_result(frame[2] if len(frame) > 2 else {})
        elif kind == CALLERROR:
            code = frame[2] if len(frame) > 2 else "GenericError"
            description = frame[3] if len(frame) > 3 else ""
            future.set_exception(
                DeviceProtocolError(f"CALLERROR {code}: {description}", device_id=self._device_id)
            )

    async def _answer(self, message_id: str, action: str, payload: dict[str, Any]) -> None:
        result: dict[str, Any] | None = None
        error: tuple[str, str] | None = None
        if self.on_call is not None:
            try:
                result = await self.on_call(action, payload)
            except CommandValidationError as exc:
                error = ("PropertyConstraintViolation", exc.message)
            except Exception as exc:
                logger.error("Device %d: %s handler failed", self._device_id, action, exc_info=True)
                error = ("InternalError", str(exc))
        if error is None and result is None:
            error = ("NotSupported", f"{action} not supported")

        if error is not None:
            frame: list[Any] = [CALLERROR, message_id, error[0], error[1], {}]
        else:
            frame = [CALLRESULT, message_id, result]
        if self._ws is None:
            return
        with contextlib.suppress(ConnectionClosed, OSError):
            await self._ws.send(json.dumps(frame))

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(DeviceConnectionError(reason, device_id=self._device_id))
        self._pending.clear()


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


class OcppAdapter(DeviceAdapter):
    """Charge-point adapter with per-connector transaction tracking.

    Args:
        identity: Device identity.
        bridge: Bridge for this device.
        transport: OCPP request channel (real or simulated).
        connectors: Connectors of the charger. Defaults to one Type 2
            connector with id 1.
        vendor: BootNotification vendor.
        model: BootNotification model.
        heartbeat_interval_s: Heartbeat interval until boot overrides it.
        meter_interval_s: MeterValues interval.
        meter_source: Optional live meter.
        **kwargs: Forwarded to :class:`DeviceAdapter`.
    """

    default_policy = OCPP_POLICY

    def __init__(
        self,
        identity: Any,
        bridge: ProtocolBridge,
        transport: OcppTransport,
        *,
        connectors: list[Connector] | None = None,
        vendor: str = "EnergyGateway",
        model: str = "Gateway-CP",
        heartbeat_interval_s: float = DEFAULT_HEARTBEAT_S,
        meter_interval_s: float = DEFAULT_METER_INTERVAL_S,
        meter_source: MeterSource | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(identity, bridge, transport, **kwargs)
        self.transport = transport
        self._connectors = {c.connector_id: c for c in connectors or [Connector(1)]}
        self._vendor = vendor
        self._model = model
        self._heartbeat_interval_s = heartbeat_interval_s
        self._meter_interval_s = meter_interval_s
        self._meter_source = meter_source
        self._active: dict[int, Transaction] = {}
        self._completed: deque[Transaction] = deque(maxlen=COMPLETED_HISTORY)
        self._lock = asyncio.Lock()
        self._local_ids = itertools.count(1)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def connectors(self) -> dict[int, Connector]:
        return dict(self._connectors)

    @property
    def active_transactions(self) -> dict[int, Transaction]:
        """Connector id to its in-progress transaction."""
        return dict(self._active)

    @property
    def completed_transactions(self) -> list[Transaction]:
        return list(self._completed)

    def charger_status(self) -> str:
        """``charging`` if any connector has an active transaction."""
        return "charging" if self._active else "available"

    # ------------------------------------------------------------------
    # Link
    # ------------------------------------------------------------------

    async def _on_link_up(self) -> None:
        try:
            response = await self._call(
                "BootNotification",
                {"chargePointVendor": self._vendor, "chargePointModel": self._model},
            )
        except DeviceConnectionError:
            return
        except DeviceProtocolError as exc:
            logger.warning("Device %d boot notification failed: %s", self.device_id, exc.message)
            response = {}
        if response.get("status") not in (None, "Accepted"):
            logger.warning("Device %d boot not accepted: %s", self.device_id, response)
        interval = response.get("interval")
        if isinstance(interval, (int, float)) and interval > 0:
            self._heartbeat_interval_s = float(interval)
        self._spawn(self._every(self._heartbeat_interval_s, self.heartbeat, "heartbeat"), "heartbeat")
        self._spawn(self._every(self._meter_interval_s, self.send_meter_values, "meter"), "meter")

    async def heartbeat(self) -> None:
        await self._call("Heartbeat", {})

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def start_transaction(self, connector_id: int, id_tag: str) -> Transaction | None:
        """Start charging on a connector.

        Returns:
            The new transaction, or None if the connector already has one in
            progress, is not startable, or the central system rejected the tag.

        Raises:
            CommandValidationError: Unknown connector or empty id tag.
            DeviceConnectionError: Link down or lost during the request.
        """
        connector = self._connectors.get(connector_id)
        if connector is None:
            raise CommandValidationError(f"Connector {connector_id} not found")
        if not id_tag:
            raise CommandValidationError("idTag is required")

        async with self._lock:
            if connector_id in self._active:
                logger.warning(
                    "Device %d connector %d already has transaction %d",
                    self.device_id,
                    connector_id,
                    self._active[connector_id].id,
                )
                return None
            if connector.status not in _STARTABLE:
                logger.warning(
                    "Device %d connector %d not available (%s)",
                    self.device_id,
                    connector_id,
                    connector.status.value,
                )
                return None
            self._require_connected()
            response = await self._call(
                "StartTransaction",
                {
                    "connectorId": connector_id,
                    "idTag": id_tag,
                    "timestamp": _now_iso(),
                    "meterStart": connector.energy_wh,
                },
            )
            tag_status = response.get("idTagInfo", {}).get("status", "Accepted")
            if tag_status != "Accepted":
                logger.warning("Device %d idTag %s rejected: %s", self.device_id, id_tag, tag_status)
                return None
            transaction = Transaction(
                id=response.get("transactionId") or next(self._local_ids),
                connector_id=connector_id,
                id_tag=id_tag,
                meter_start=connector.energy_wh,
            )
            self._active[connector_id] = transaction
            connector.status = ChargePointStatus.CHARGING

        logger.info(
            "Device %d transaction %d started on connector %d",
            self.device_id,
            transaction.id,
            connector_id,
        )
        await self._publish_connector(connector)
        return transaction

    async def stop_transaction(self, transaction_id: int, id_tag: str | None = None) -> Transaction | None:
        """Stop an active transaction.

        Returns:
            The completed transaction, or None if no active transaction has
            that id.

        Raises:
            DeviceConnectionError: Link down or lost during the request.
        """
        async with self._lock:
            transaction = next(
                (t for t in self._active.values() if t.id == transaction_id),
                None,
            )
            if transaction is None:
                return None
            self._require_connected()
            connector = self._connectors[transaction.connector_id]
            await self._call(
                "StopTransaction",
                {
                    "transactionId": transaction.id,
                    "idTag": id_tag or transaction.id_tag,
                    "timestamp": _now_iso(),
                    "meterStop": connector.energy_wh,
                },
            )
            self._complete(transaction, connector)

        logger.info(
            "Device %d transaction %d stopped (%d Wh)",
            self.device_id,
            transaction.id,
            transaction.meter_stop - transaction.meter_start,
        )
        await self._publish_connector(connector)
        return transaction

    def _complete(self, transaction: Transaction, connector: Connector) -> None:
        transaction.status = TransactionStatus.COMPLETED
        transaction.meter_stop = connector.energy_wh
        transaction.stop_time = datetime.now(tz=UTC)
        del self._active[transaction.connector_id]
        self._completed.append(transaction)
        connector.status = ChargePointStatus.AVAILABLE
        connector.power_w = 0.0

    def update_meter(self, connector_id: int, *, energy_wh: int, power_w: float) -> None:
        """Record a meter sample pushed by an external metering source.

        Raises:
            CommandValidationError: Unknown connector.
        """
        connector = self._connectors.get(connector_id)
        if connector is None:
            raise CommandValidationError(f"Connector {connector_id} not found")
        connector.energy_wh = energy_wh
        connector.power_w = power_w

    async def send_meter_values(self) -> None:
        """Sample, report and publish meter values of charging connectors."""
        for connector_id in list(self._active):
            connector = self._connectors[connector_id]
            if self._meter_source is not None:
                energy_wh, power_w = self._meter_source.sample(connector, self._meter_interval_s)
                connector.energy_wh, connector.power_w = energy_wh, power_w
            transaction = self._active.get(connector_id)
            if transaction is None:
                continue
            await self._call(
                "MeterValues",
                {
                    "connectorId": connector_id,
                    "transactionId": transaction.id,
                    "meterValue": [
                        {
                            "timestamp": _now_iso(),
                            "sampledValue": [
                                {
                                    "value": str(connector.energy_wh),
                                    "measurand": ENERGY_MEASURAND,
                                    "unit": "Wh",
                                },
                                {
                                    "value": str(round(connector.power_w, 1)),
                                    "measurand": POWER_MEASURAND,
                                    "unit": "W",
                                },
                            ],
                        }
                    ],
                },
            )
            await self._publish_connector(connector)

    async def reset(self, reset_type: str = "Soft") -> dict[str, Any]:
        """Send Reset to the central system.

        When accepted, every active transaction is stopped and all connectors
        return to ``Available``.

        Raises:
            CommandValidationError: ``reset_type`` is not Soft or Hard.
            DeviceConnectionError: Link down or lost during the request.
        """
        if reset_type not in RESET_TYPES:
            raise CommandValidationError(f"Reset type must be Soft or Hard, got {reset_type!r}")
        self._require_connected()
        response = await self._call("Reset", {"type": reset_type})
        status = response.get("status", "Accepted")
        if status != "Accepted":
            logger.warning("Device %d reset %s: %s", self.device_id, reset_type, status)
            return {"status": status, "type": reset_type, "stoppedTransactions": []}

        stopped = []
        for transaction in list(self._active.values()):
            if await self.stop_transaction(transaction.id) is not None:
                stopped.append(transaction.id)
        for connector in self._connectors.values():
            connector.status = ChargePointStatus.AVAILABLE
        return {"status": "Accepted", "type": reset_type, "stoppedTransactions": stopped}

    # ------------------------------------------------------------------
    # Remote-initiated calls
    # ------------------------------------------------------------------

    async def handle_call(self, action: str, payload: dict[str, Any]) -> dict[str, Any] | None:
        """Answer a CALL sent by the remote side.

        Returns:
            The CALLRESULT payload, or None for unsupported actions.

        Raises:
            CommandValidationError: Payload names an unknown connector,
                status or transaction.
        """
        handler = {
            "StatusNotification": self._on_status_notification,
            "MeterValues": self._on_meter_values,
            "StartTransaction": self._on_start_transaction,
            "StopTransaction": self._on_stop_transaction,
        }.get(action)
        if handler is None:
            logger.debug("Device %d: unsupported remote action %s", self.device_id, action)
            return None
        return await handler(payload)

    def _connector_for(self, payload: dict[str, Any]) -> Connector:
        connector_id = _int_param(payload, "connectorId")
        connector = self._connectors.get(connector_id)
        if connector is None:
            raise CommandValidationError(f"Connector {connector_id} not found")
        return connector

    async def _on_status_notification(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            status = ChargePointStatus(payload.get("status"))
        except ValueError as exc:
            raise CommandValidationError(f"Unknown status {payload.get('status')!r}") from exc
        error_code = str(payload.get("errorCode", "NoError"))
        faulted = status is ChargePointStatus.FAULTED or error_code != "NoError"

        # connectorId 0 addresses the charger as a whole
        if _int_param(payload, "connectorId", default=0) == 0:
            connectors = list(self._connectors.values())
        else:
            connectors = [self._connector_for(payload)]
        for connector in connectors:
            connector.status = status

        if faulted:
            await self._set_status(
                DeviceStatus.ERROR,
                {"connectorId": payload.get("connectorId", 0), "errorCode": error_code},
            )
        elif self.status is DeviceStatus.ERROR:
            await self._set_status(DeviceStatus.ONLINE)
        for connector in connectors:
            await self._publish_connector(connector)
        return {}

    async def _on_meter_values(self, payload: dict[str, Any]) -> dict[str, Any]:
        connector = self._connector_for(payload)
        energy_wh, power_w = connector.energy_wh, connector.power_w
        for meter_value in payload.get("meterValue") or []:
            for sample in meter_value.get("sampledValue") or []:
                measurand = sample.get("measurand", ENERGY_MEASURAND)
                try:
                    value = float(sample.get("value"))
                except (TypeError, ValueError) as exc:
                    raise CommandValidationError(f"Invalid sampled value {sample.get('value')!r}") from exc
                if str(sample.get("unit", "")).lower().startswith("k"):
                    value *= 1000
                if measurand == ENERGY_MEASURAND:
                    energy_wh = int(round(value))
                elif measurand == POWER_MEASURAND:
                    power_w = value
        self.update_meter(connector.connector_id, energy_wh=energy_wh, power_w=power_w)
        await self._publish_connector(connector)
        return {}

    async def _on_start_transaction(self, payload: dict[str, Any]) -> dict[str, Any]:
        connector = self._connector_for(payload)
        id_tag = str(payload.get("idTag", ""))
        if not id_tag:
            raise CommandValidationError("idTag is required")
        async with self._lock:
            existing = self._active.get(connector.connector_id)
            if existing is not None:
                return {"transactionId": existing.id, "idTagInfo": {"status": "ConcurrentTx"}}
            meter_start = _int_param(payload, "meterStart", default=connector.energy_wh)
            connector.energy_wh = meter_start
            transaction = Transaction(
                id=next(self._local_ids),
                connector_id=connector.connector_id,
                id_tag=id_tag,
                meter_start=meter_start,
            )
            self._active[connector.connector_id] = transaction
            connector.status = ChargePointStatus.CHARGING

        logger.info(
            "Device %d remote transaction %d started on connector %d",
            self.device_id,
            transaction.id,
            connector.connector_id,
        )
        await self._publish_connector(connector)
        return {"transactionId": transaction.id, "idTagInfo": {"status": "Accepted"}}

    async def _on_stop_transaction(self, payload: dict[str, Any]) -> dict[str, Any]:
        transaction_id = _int_param(payload, "transactionId")
        async with self._lock:
            transaction = next(
                (t for t in self._active.values() if t.id == transaction_id),
                None,
            )
            if transaction is None:
                raise CommandValidationError(f"No active transaction {transaction_id}")
            connector = self._connectors[transaction.connector_id]
            connector.energy_wh = _int_param(payload, "meterStop", default=connector.energy_wh)
            self._complete(transaction, connector)

        logger.info("Device %d remote transaction %d stopped", self.device_id, transaction.id)
        await self._publish_connector(connector)
        return {"idTagInfo": {"status": "Accepted"}}

    # ------------------------------------------------------------------
    # Readings
    # ------------------------------------------------------------------

    async def read_data(self) -> Reading:
        """Aggregate connector state into one reading."""
        values: dict[str, Any] = {}
        total_energy = 0
        total_power = 0.0
        for cid, connector in sorted(self._connectors.items()):
            values[f"connector{cid}_energy"] = connector.energy_wh
            values[f"connector{cid}_power"] = connector.power_w
            values[f"connector{cid}_charging"] = connector.status is ChargePointStatus.CHARGING
            values[f"connector{cid}_available"] = connector.status is ChargePointStatus.AVAILABLE
            values[f"connector{cid}_faulted"] = connector.status is ChargePointStatus.FAULTED
            total_energy += connector.energy_wh
            total_power += connector.power_w
        values["totalEnergy"] = total_energy
        values["totalPower"] = total_power
        values["status"] = self.charger_status()
        reading = Reading(values=values)
        self._last_reading = reading
        return reading

    async def write_data(self, params: dict[str, Any]) -> bool:
        """Send a raw OCPP action ``{action, payload}``."""
        action = params.get("action")
        if not action:
            raise CommandValidationError("OCPP write requires 'action'")
        self._require_connected()
        response = await self._call(str(action), dict(params.get("payload") or {}))
        return response.get("status", "Accepted") == "Accepted"

    async def _publish_connector(self, connector: Connector) -> None:
        transaction = self._active.get(connector.connector_id)
        values: dict[str, Any] = {
            "connector_id": connector.connector_id,
            "energy": connector.energy_wh,
            "power": connector.power_w,
            "status": connector.status.value,
            "charger_status": self.charger_status(),
        }
        if transaction is not None:
            values["transaction_id"] = transaction.id
        await self._publish_reading(Reading(values=values))

    async def _call(self, action: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            return await self.transport.call(action, payload)
        except DeviceConnectionError as exc:
            await self.lifecycle.link_lost(exc.message)
            raise

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def commands(self) -> dict[str, CommandFn]:
        table = super().commands()
        table.update(
            start_transaction=self._command_start,
            stop_transaction=self._command_stop,
            reset=self._command_reset,
            set_charging_profile=self._command_profile,
            clear_charging_profile=self._command_clear_profile,
        )
        return table

    async def _command_start(self, params: dict[str, Any]) -> dict[str, Any]:
        connector_id = _int_param(params, "connectorId", default=1)
        transaction = await self.start_transaction(connector_id, str(params.get("idTag", "")))
        if transaction is None:
            raise CommandValidationError(f"Connector {connector_id} cannot start a transaction")
        return {"transactionId": transaction.id, "connectorId": connector_id}

    async def _command_stop(self, params: dict[str, Any]) -> dict[str, Any]:
        transaction_id = _int_param(params, "transactionId")
        transaction = await self.stop_transaction(transaction_id, params.get("idTag"))
        if transaction is None:
            raise CommandValidationError(f"No active transaction {transaction_id}")
        return {
            "transactionId": transaction.id,
            "energyWh": (transaction.meter_stop or 0) - transaction.meter_start,
        }

    async def _command_reset(self, params: dict[str, Any]) -> dict[str, Any]:
        return await self.reset(str(params.get("type", "Soft")))

    async def _command_profile(self, params: dict[str, Any]) -> dict[str, Any]:
        connector_id = _int_param(params, "connectorId", default=1)
        if connector_id not in self._connectors:
            raise CommandValidationError(f"Connector {connector_id} not found")
        profile = params.get("profile")
        if not isinstance(profile, dict):
            raise CommandValidationError("set_charging_profile requires a 'profile' object")
        self._require_connected()
        return await self._call(
            "SetChargingProfile",
            {"connectorId": connector_id, "csChargingProfiles": profile},
        )

    async def _command_clear_profile(self, params: dict[str, Any]) -> dict[str, Any]:
        connector_id = _int_param(params, "connectorId", default=0)
        payload: dict[str, Any] = {}
        if connector_id:
            if connector_id not in self._connectors:
                raise CommandValidationError(f"Connector {connector_id} not found")
            payload["connectorId"] = connector_id
        if "profileId" in params:
            payload["id"] = _int_param(params, "profileId")
        self._require_connected()
        return await self._call("ClearChargingProfile", payload)

    def get_device_info(self) -> dict[str, Any]:
        info = super().get_device_info()
        info["chargerStatus"] = self.charger_status()
        info["connectors"] = [
            {
                "connectorId": c.connector_id,
                "type": c.connector_type,
                "status": c.status.value,
                "maxPowerW": c.max_power_w,
            }
            for c in self._connectors.values()
        ]
        info["activeTransactions"] = [t.id for t in self._active.values()]
        return info


def _int_param(params: dict[str, Any], key: str, *, default: int | None = None) -> int:
    value = params.get(key, default)
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise CommandValidationError(f"'{key}' must be an integer") from exc
