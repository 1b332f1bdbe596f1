"""
Gateway configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
Process-level settings (bus, spool, health, store) come from the
environment or a .env file; the device list lives in the JSON file named by
``DEVICES_FILE`` and is validated by :mod:`gateway.src.factory`.

CHANGELOG:
- 2026-03-03: Add optional HTTPS reading store
- 2026-02-28: Initial creation

TODO:
- None
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


class GatewaySettings(BaseSettings):
    """Gateway process configuration.

    Attributes:
        mqtt_host: MQTT broker hostname.
        mqtt_port: MQTT broker port (default 1883).
        mqtt_client_id: MQTT client id. Empty lets the broker assign one.
        mqtt_username: Optional broker username.
        mqtt_password: Optional broker password.
        mqtt_tls: Connect to the broker over TLS.
        devices_file: JSON file holding the list of device configs.
        spool_path: SQLite outbox path for unacknowledged publishes.
        health_path: Health file path.
        log_level: Root log level.
        publish_timeout_s: Seconds to wait for a QoS>=1 publish acknowledgement.
        flush_interval_s: Seconds between outbox flushes.
        health_interval_s: Seconds between health file writes.
        store_base_url: Reading store base URL (must be HTTPS). Empty
            disables the store.
        store_token: Bearer token for the reading store.
    """

    mqtt_host: str
    mqtt_port: int = 1883
    mqtt_client_id: str = ""
    mqtt_username: str = ""
    mqtt_password: str = ""
    mqtt_tls: bool = False
    devices_file: str = "/config/devices.json"
    spool_path: str = "/data/outbox.db"
    health_path: str = "/data/health.json"
    log_level: str = "INFO"
    publish_timeout_s: float = 10.0
    flush_interval_s: float = 5.0
    health_interval_s: float = 30.0
    store_base_url: str = ""
    store_token: str = ""

    @field_validator("mqtt_port")
    @classmethod
    def mqtt_port_must_be_valid(cls, v: int) -> int:
        """Validate MQTT port is in valid range."""
        if v < 1 or v > 65535:
            raise ValueError("MQTT_PORT must be between 1 and 65535")
        return v

    @field_validator("store_base_url")
    @classmethod
    def store_base_url_must_be_https(cls, v: str) -> str:
        """Validate that the store URL, when set, uses HTTPS."""
        if v and not v.startswith("https://"):
            raise ValueError(f"STORE_BASE_URL must use HTTPS (got: '{v[:20]}...')")
        return v

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_known(cls, v: str) -> str:
        """Normalise and validate the log level name."""
        level = v.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(sorted(_LOG_LEVELS))}")
        return level

    @field_validator("publish_timeout_s", "flush_interval_s", "health_interval_s")
    @classmethod
    def intervals_must_be_positive(cls, v: float) -> float:
        """Validate timeouts and intervals are positive."""
        if v <= 0:
            raise ValueError("timeouts and intervals must be > 0")
        return v

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
