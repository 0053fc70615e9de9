# Heat Pump Supervisor
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Configuration from environment variables with validation."""

import logging
import os

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid."""


def _bool(env: str, default: str) -> bool:
    return os.environ.get(env, default).lower() in ("true", "1", "yes")


class Config:
    def __init__(self):
        # Serial line
        self.serial_port = os.environ.get("HP_SERIAL_PORT", "/dev/ttyUSB0")
        self.baud = self._int("HP_BAUD", "19200", 1200, 115200)
        self.data_bits = self._int("HP_DATA_BITS", "8", 7, 8)
        self.stop_bits = self._int("HP_STOP_BITS", "2", 1, 2)
        self.parity = os.environ.get("HP_PARITY", "N").upper()
        self.timeout = self._float("HP_TIMEOUT", "5", 0.1, 60)
        if self.parity not in ("N", "E", "O"):
            raise ConfigError(f"HP_PARITY={self.parity!r} must be N, E or O")

        # Slave addresses
        self.heat_pump_slave = self._int("HP_SLAVE", "1", 1, 247)
        self.pump_slave = self._int("PUMP_SLAVE", "10", 1, 247)
        if self.heat_pump_slave == self.pump_slave:
            raise ConfigError(
                f"HP_SLAVE and PUMP_SLAVE must differ (both {self.pump_slave})"
            )

        self.poll_interval = self._float("SUPERVISOR_POLL_INTERVAL", "1.0", 0.1, 60)
        self.log_every = self._int("SUPERVISOR_LOG_EVERY", "5", 1, 3600)
        self.mock_mode = _bool("SUPERVISOR_MOCK_MODE", "false")
        self.log_level = os.environ.get("SUPERVISOR_LOG_LEVEL", "INFO").upper()
        self.recovery_enabled = _bool("SUPERVISOR_RECOVERY_ENABLED", "true")
        self.web_port = self._int("SUPERVISOR_WEB_PORT", "8085", 1, 65535)
        self.sample_db = os.environ.get("SUPERVISOR_SAMPLE_DB", "/data/heatpump.db")

        # MQTT (disabled when no broker is set)
        self.mqtt_broker = os.environ.get("MQTT_BROKER", "")
        self.mqtt_port = self._int("MQTT_PORT", "1883", 1, 65535)
        self.mqtt_username = os.environ.get("MQTT_USERNAME", "")
        self.mqtt_password = os.environ.get("MQTT_PASSWORD", "")
        self.mqtt_topic_prefix = os.environ.get("MQTT_TOPIC_PREFIX", "heatpump")
        if not self.mqtt_topic_prefix or any(c in self.mqtt_topic_prefix for c in "#+ "):
            raise ConfigError(
                f"MQTT_TOPIC_PREFIX contains invalid characters: {self.mqtt_topic_prefix!r}"
            )

        # E-mail notifications (disabled when no server is set)
        self.smtp_server = os.environ.get("SMTP_SERVER", "")
        self.smtp_port = self._int("SMTP_PORT", "587", 1, 65535)
        self.smtp_username = os.environ.get("SMTP_USERNAME", "")
        self.smtp_password = os.environ.get("SMTP_PASSWORD", "")
        self.notify_from = os.environ.get("NOTIFY_FROM", "")
        self.notify_to = [
            a.strip() for a in os.environ.get("NOTIFY_TO", "").split(",") if a.strip()
        ]

        self._log_config()

    @staticmethod
    def _int(env: str, default: str, min_val: int, max_val: int) -> int:
        raw = os.environ.get(env, default)
        try:
            val = int(raw)
        except (ValueError, TypeError):
            raise ConfigError(f"{env}={raw!r} is not a valid integer")
        if not (min_val <= val <= max_val):
            raise ConfigError(f"{env}={val} out of range [{min_val}, {max_val}]")
        return val

    @staticmethod
    def _float(env: str, default: str, min_val: float, max_val: float) -> float:
        raw = os.environ.get(env, default)
        try:
            val = float(raw)
        except (ValueError, TypeError):
            raise ConfigError(f"{env}={raw!r} is not a valid number")
        if not (min_val <= val <= max_val):
            raise ConfigError(f"{env}={val} out of range [{min_val}, {max_val}]")
        return val

    @property
    def mqtt_enabled(self) -> bool:
        return bool(self.mqtt_broker)

    def _log_config(self):
        logger.info(
            "Config: port=%s %d%s%d hp=%d pumps=%d mock=%s poll=%.1fs mqtt=%s recovery=%s",
            self.serial_port, self.data_bits, self.parity, self.stop_bits,
            self.heat_pump_slave, self.pump_slave, self.mock_mode,
            self.poll_interval, self.mqtt_broker or "disabled", self.recovery_enabled,
        )
