"""
Session Configuration

Timing, retry budgets and safety thresholds for a device session.
Stored as JSON with a version key.
"""

import json
import logging
import math
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ..communication.telemetry import TecStatus

logger = logging.getLogger(__name__)


CONFIG_VERSION = "1.0"


class ConfigError(ValueError):
    """Invalid session configuration."""
    pass


@dataclass
class SessionConfig:
    """Tunable parameters of a device session."""
    baudrate: int = 115200
    tick_interval: float = 0.5          # seconds between control ticks
    response_timeout: float = 0.25      # per request/response exchange
    handshake_timeout: float = 1.0
    enable_timeout: float = 5.0         # ENABLING -> ACTIVE deadline
    disable_timeout: float = 1.0
    shutdown_timeout: float = 3.0
    corrupt_frame_budget: int = 3
    max_missed_ticks: int = 3
    ocp_debounce_count: int = 3
    device_fault_mask: int = int(TecStatus.FAILSAFE_ACTIVE)
    max_rx_buffer: int = 256
    max_slew_pct_per_s: float = 20.0

    def validate(self) -> None:
        """
        Check every field.

        Raises:
            ConfigError: On the first invalid value
        """
        positive_floats = ("tick_interval", "response_timeout", "handshake_timeout",
                           "enable_timeout", "disable_timeout", "shutdown_timeout")
        for name in positive_floats:
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or isinstance(value, bool) \
                    or not math.isfinite(value) or value <= 0:
                raise ConfigError(f"{name} must be a positive number, got {value!r}")

        positive_ints = ("baudrate", "corrupt_frame_budget", "ocp_debounce_count")
        for name in positive_ints:
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")

        if not isinstance(self.max_missed_ticks, int) or self.max_missed_ticks < 0:
            raise ConfigError(f"max_missed_ticks must be >= 0, got {self.max_missed_ticks!r}")
        if not isinstance(self.max_rx_buffer, int) or self.max_rx_buffer < 8:
            raise ConfigError(f"max_rx_buffer must be at least one frame (8), got {self.max_rx_buffer!r}")
        if not isinstance(self.device_fault_mask, int) or not 0 <= self.device_fault_mask < (1 << 32):
            raise ConfigError(f"device_fault_mask must be a 32-bit mask, got {self.device_fault_mask!r}")
        if not isinstance(self.max_slew_pct_per_s, (int, float)) or self.max_slew_pct_per_s < 0:
            raise ConfigError(f"max_slew_pct_per_s must be >= 0, got {self.max_slew_pct_per_s!r}")

    def to_dict(self) -> Dict[str, Any]:
        data = {"version": CONFIG_VERSION}
        data.update(asdict(self))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionConfig":
        """
        Build a config from a dict, filling missing keys with defaults.

        Raises:
            ConfigError: On unknown keys, unsupported version or invalid values
        """
        data = dict(data)
        version = str(data.pop("version", CONFIG_VERSION))
        if not version.startswith("1."):
            raise ConfigError(f"Unsupported configuration version: {version}")

        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        config = cls(**data)
        config.validate()
        return config

    @classmethod
    def load_from_file(cls, filepath: str) -> Tuple[Optional["SessionConfig"], Optional[str]]:
        """
        Load configuration from JSON file with validation

        Args:
            filepath: Path to JSON configuration file

        Returns:
            Tuple of (config or None, error_message or None)
        """
        path = Path(filepath)
        if not path.exists():
            error_msg = f"Configuration file not found: {filepath}"
            logger.error(error_msg)
            return None, error_msg

        try:
            with open(path, 'r', encoding='utf-8') as f:
                loaded = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            error_msg = f"Failed to read configuration: {e}"
            logger.error(error_msg)
            return None, error_msg

        if not isinstance(loaded, dict):
            error_msg = "Configuration root must be a JSON object"
            logger.error(error_msg)
            return None, error_msg

        try:
            config = cls.from_dict(loaded)
        except (ConfigError, TypeError) as e:
            error_msg = f"Invalid configuration: {e}"
            logger.error(error_msg)
            return None, error_msg

        logger.info(f"Loaded session configuration from: {path}")
        return config, None

    def save_to_file(self, filepath: str) -> bool:
        """
        Save configuration to JSON file

        Returns:
            True if saved successfully, False otherwise
        """
        path = Path(filepath)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, 'w', encoding='utf-8') as f:
                json.dump(self.to_dict(), f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save configuration: {e}")
            return False

        logger.info(f"Saved session configuration to: {path}")
        return True
