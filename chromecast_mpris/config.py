"""Configuration models for the application."""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import logging
_LOGGER = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Configuration Dataclasses
# -----------------------------------------------------------------------------

@dataclass
class AppConfig:
    """General application settings."""
    debug: bool = False


@dataclass
class CastConfig:
    """Timing of the receiver connection state machine."""
    # Upper bound for every single request (connect, list sessions, join, get status).
    connect_timeout_ms: int = 10000
    # Delay between two successful status polls.
    poll_interval_ms: int = 1000
    # Delay before re-listing sessions or restarting discovery after a failure.
    retry_interval_ms: int = 5000

    def __post_init__(self) -> None:
        for name in ("connect_timeout_ms", "poll_interval_ms", "retry_interval_ms"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValueError(f"cast.{name} must be a positive integer, got {value!r}")

    @property
    def connect_timeout(self) -> float:
        return self.connect_timeout_ms / 1000

    @property
    def poll_interval(self) -> float:
        return self.poll_interval_ms / 1000

    @property
    def retry_interval(self) -> float:
        return self.retry_interval_ms / 1000


@dataclass
class DiscoveryConfig:
    """Settings for mDNS receiver discovery."""
    service_type: str = "_googlecast._tcp.local."
    # Only accept the receiver with this friendly name (e.g. "Living Room TV").
    friendly_name: Optional[str] = None


@dataclass
class MprisConfig:
    """Settings for the exported MPRIS player."""
    name: str = "chromecast"
    identity: str = "Chromecast"


@dataclass
class MqttConfig:
    """Settings for the MQTT client."""
    enabled: bool = False
    host: Optional[str] = None
    port: int = 1883
    username: Optional[str] = None
    password: Optional[str] = None


@dataclass
class Config:
    """Main configuration object."""
    app: AppConfig = field(default_factory=AppConfig)
    cast: CastConfig = field(default_factory=CastConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    mpris: MprisConfig = field(default_factory=MprisConfig)
    mqtt: MqttConfig = field(default_factory=MqttConfig)

# -----------------------------------------------------------------------------
# Helper Function
# -----------------------------------------------------------------------------

def load_config_from_json(config_path: Path) -> Config:
    """Loads configuration from a JSON file and populates dataclasses."""

    # --- Step 1: Load raw JSON data ---
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw_data = json.load(f)
    except FileNotFoundError:
        _LOGGER.critical("Configuration file not found at: %s", config_path)
        raise
    except json.JSONDecodeError as e:
        _LOGGER.critical("Error parsing configuration file: %s", e)
        raise

    if not isinstance(raw_data, dict):
        raise ValueError("Configuration file must contain a JSON object.")

    # --- Step 2: Create config objects from raw data ---
    app_config = AppConfig(**raw_data.get("app", {}))
    cast_config = CastConfig(**raw_data.get("cast", {}))
    discovery_config = DiscoveryConfig(**raw_data.get("discovery", {}))
    mpris_config = MprisConfig(**raw_data.get("mpris", {}))
    mqtt_config = MqttConfig(**raw_data.get("mqtt", {}))

    # --- Step 3: Set MQTT 'enabled' flag ---
    if mqtt_config.host:
        mqtt_config.enabled = True

    # --- Step 4: Return the main Config object ---
    return Config(
        app=app_config,
        cast=cast_config,
        discovery=discovery_config,
        mpris=mpris_config,
        mqtt=mqtt_config,
    )
