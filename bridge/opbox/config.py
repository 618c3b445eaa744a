# Open Power Box Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Configuration from environment variables with validation."""

import logging
import os

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid."""


class Config:
    def __init__(self):
        # Serial link
        self.serial_port = os.environ.get("OPB_SERIAL_PORT", "/dev/ttyUSB0")
        self.serial_baud = self._int("OPB_SERIAL_BAUD", "115200", 300, 921600)
        self.command_delay = self._float("OPB_COMMAND_DELAY", "0.1", 0, 5)
        self.read_timeout = self._float("OPB_READ_TIMEOUT", "1.0", 0.1, 30)
        self.read_sections = self._int("OPB_READ_SECTIONS", "2", 1, 20)
        self.settle_delay = self._float("OPB_SETTLE_DELAY", "0.5", 0, 10)
        self.wifi_apply_delay = self._float("OPB_WIFI_APPLY_DELAY", "5.0", 0, 60)

        self.device_id = os.environ.get("OPB_DEVICE_ID", "openpowerbox")
        self.poll_interval = self._float("OPB_POLL_INTERVAL", "5.0", 0.1, 300)
        self.mock_mode = os.environ.get("OPB_MOCK_MODE", "false").lower() in ("true", "1", "yes")
        self.log_level = os.environ.get("OPB_LOG_LEVEL", "INFO").upper()

        self.mqtt_broker = os.environ.get("MQTT_BROKER", "mosquitto")
        self.mqtt_port = self._int("MQTT_PORT", "1883", 1, 65535)
        self.mqtt_username = os.environ.get("MQTT_USERNAME", "")
        self.mqtt_password = os.environ.get("MQTT_PASSWORD", "")

        # Validate device_id has no MQTT-unsafe characters
        if not self.device_id or any(c in self.device_id for c in "/#+ "):
            raise ConfigError(
                f"OPB_DEVICE_ID contains invalid characters: {self.device_id!r}"
            )

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

    def _log_config(self):
        logger.info(
            "Config: port=%s@%d mock=%s poll=%.1fs mqtt=%s:%d device=%s",
            self.serial_port, self.serial_baud, self.mock_mode,
            self.poll_interval, self.mqtt_broker, self.mqtt_port, self.device_id,
        )
