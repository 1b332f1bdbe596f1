"""
Error taxonomy for the energy device gateway.

Every failure raised inside the gateway derives from :class:`GatewayError`.
The ``recoverable`` flag tells loops whether local recovery (retry, skip the
cycle) applies. Only :class:`CommandValidationError` is meant to reach a
command caller; all other classes are handled inside adapter loops and never
terminate the process.

CHANGELOG:
- 2026-03-02: Add BusPublishError and GatewayConfigError
- 2026-02-21: Initial creation

TODO:
- None
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base exception for all gateway errors.

    Attributes:
        message: Human-readable description.
        recoverable: Whether the caller may retry or continue.
    """

    def __init__(self, message: str, *, recoverable: bool = True) -> None:
        super().__init__(message)
        self.message = message
        self.recoverable = recoverable


class DeviceError(GatewayError):
    """Error tied to a single device.

    Attributes:
        device_id: Identifier of the device that failed.
    """

    def __init__(self, message: str, *, device_id: int, recoverable: bool = True) -> None:
        super().__init__(f"[device {device_id}] {message}", recoverable=recoverable)
        self.device_id = device_id


class DeviceConnectionError(DeviceError):
    """Transport-level failure or timeout.

    Always retried through the reconnect backoff, never fatal on its own.
    """


class DeviceProtocolError(DeviceError):
    """Malformed or unexpected device response.

    The affected read/poll cycle is skipped; the connection is kept.
    """


class ReconnectExhaustedError(DeviceError):
    """Maximum reconnect attempts reached.

    Reported via a status message and followed by a cooldown; never raised
    out of the lifecycle controller.

    Attributes:
        attempts: Number of consecutive failed attempts.
    """

    def __init__(self, *, device_id: int, attempts: int) -> None:
        super().__init__(
            f"reconnect exhausted after {attempts} attempts",
            device_id=device_id,
        )
        self.attempts = attempts


class CommandValidationError(GatewayError):
    """Caller-supplied command parameter rejected.

    Raised synchronously before any state change, never retried and never
    affects connection state.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message, recoverable=False)


class BusPublishError(GatewayError):
    """Publish to the message bus failed or was not acknowledged."""

    def __init__(self, message: str, *, topic: str) -> None:
        super().__init__(f"{message} (topic={topic})")
        self.topic = topic


class GatewayConfigError(GatewayError):
    """Invalid gateway or device configuration detected at startup."""

    def __init__(self, message: str) -> None:
        super().__init__(message, recoverable=False)
