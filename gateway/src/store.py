"""
Persistence collaborator: forwards readings and status changes to a store.

Adapters hand every published reading and status change to a
:class:`ReadingStore`. :class:`HttpReadingStore` posts them as JSON to a
storage service over HTTPS with Bearer token authentication. Storage is
best-effort: failures are logged and reported as ``False``, never raised
into adapter loops, and the bus remains the system of record.

Operations:
- save_reading(identity, reading): POST ``/v1/readings``.
- save_status(identity, status, details): POST ``/v1/status``.

CHANGELOG:
- 2026-03-03: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from gateway.src.models import DeviceIdentity, DeviceStatus, Reading

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_S = 10.0


class ReadingStore(Protocol):
    """Destination for readings and status changes."""

    async def save_reading(self, identity: DeviceIdentity, reading: Reading) -> bool: ...

    async def save_status(
        self,
        identity: DeviceIdentity,
        status: DeviceStatus,
        details: dict[str, Any] | None,
    ) -> bool: ...


class HttpReadingStore:
    """HTTPS client for the reading store service.

    The base URL must use HTTPS; ``http://`` URLs are rejected at
    construction time. TLS certificate verification is always enabled.

    Args:
        base_url: Base URL of the store service.
        token: Bearer token sent with every request.
        timeout_s: Request timeout.

    Raises:
        ValueError: If *base_url* does not start with ``https://``.
    """

    def __init__(self, base_url: str, token: str, timeout_s: float = _DEFAULT_TIMEOUT_S) -> None:
        if not base_url.lower().startswith("https://"):
            raise ValueError(f"Store base URL must use HTTPS (got: '{base_url}').")
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout_s = timeout_s

    async def save_reading(self, identity: DeviceIdentity, reading: Reading) -> bool:
        """Store one native reading."""
        return await self._post(
            "/v1/readings",
            {
                "deviceId": identity.device_id,
                "deviceType": identity.device_type.value,
                "protocol": identity.protocol.value,
                "timestamp": reading.captured_at.isoformat(),
                "values": reading.values,
            },
        )

    async def save_status(
        self,
        identity: DeviceIdentity,
        status: DeviceStatus,
        details: dict[str, Any] | None,
    ) -> bool:
        """Store one status change."""
        body: dict[str, Any] = {
            "deviceId": identity.device_id,
            "status": status.value,
        }
        if details:
            body["details"] = details
        return await self._post("/v1/status", body)

    async def _post(self, path: str, body: dict[str, Any]) -> bool:
        try:
            async with httpx.AsyncClient(verify=True, timeout=self._timeout_s) as client:
                response = await client.post(
                    f"{self._base_url}{path}",
                    json=body,
                    headers={"Authorization": f"Bearer {self._token}"},
                )
        except httpx.HTTPError as exc:
            logger.warning("Store request %s failed (network error): %s", path, exc)
            return False

        if response.is_success:
            return True
        logger.warning("Store request %s failed (HTTP %d)", path, response.status_code)
        return False
