"""
Energy device gateway package.

Connects Modbus, SunSpec, OCPP, EEBus and raw TCP/IP energy devices to a
canonical MQTT telemetry and command bus, with uniform reconnect handling,
declarative field mapping and per-signal delivery guarantees.

CHANGELOG:
- 2026-02-21: Initial creation

TODO:
- None
"""
