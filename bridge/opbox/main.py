# Open Power Box Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Entry point -- Open Power Box serial->MQTT bridge.

Architecture
------------
PowerBoxBridge  -- builds the transport (serial port or MockPowerBox), the
                   PowerBoxDriver and the MQTT handler, connects, then runs
                   the poll loop until stopped.
PowerBoxDriver  -- command engine + poller for the one connected box.
"""

__version__ = "1.0.0"

import asyncio
import json
import logging
import signal
import sys
import time

from .config import Config, ConfigError
from .driver import ConnectError, PowerBoxDriver
from .frame_codec import DeviceError, ProtocolError
from .mock_box import MockPowerBox
from .mqtt_handler import MQTTHandler
from .opb_model import (
    CATEGORY_NAMES,
    LIMIT_NAMES,
    Category,
    LimitSlot,
    PowerBoxData,
    VerifyResult,
)
from .serial_client import SerialClient, TransportError

logger = logging.getLogger("opb_bridge")

_ON = ("on", "1", "true", "yes", "inverted")
_OFF = ("off", "0", "false", "no", "normal")

_CATEGORY_BY_NAME = {name: cat for cat, name in CATEGORY_NAMES.items()}
_SLOT_BY_NAME = {name: slot for slot, name in LIMIT_NAMES.items()}


def parse_switch(payload: str) -> bool:
    """Parse an on/off style payload."""
    text = payload.strip().lower()
    if text in _ON:
        return True
    if text in _OFF:
        return False
    raise ValueError(f"expected on/off, got {payload!r}")


class PowerBoxBridge:
    """Top-level orchestrator for one Open Power Box."""

    def __init__(self, config: Config | None = None):
        self.config = config or Config()
        self._running = False
        self._start_time = time.time()
        self._subsystem_errors = {"mqtt": 0}

        self.mqtt = MQTTHandler(self.config)
        self.transport = self._create_transport()
        self.driver = PowerBoxDriver(
            self.transport,
            poll_interval=self.config.poll_interval,
            wifi_apply_delay=self.config.wifi_apply_delay,
        )
        self.driver.on_snapshot(self._safe_publish)

    def _create_transport(self):
        if self.config.mock_mode:
            logger.info("Starting in MOCK mode")
            self._transport_name = "mock"
            return MockPowerBox()
        logger.info(
            "Serial transport: %s @ %d baud",
            self.config.serial_port, self.config.serial_baud,
        )
        self._transport_name = "serial"
        return SerialClient(
            port=self.config.serial_port,
            baud=self.config.serial_baud,
            timeout=self.config.read_timeout,
            read_sections=self.config.read_sections,
            command_delay=self.config.command_delay,
            settle_delay=self.config.settle_delay,
        )

    async def run(self) -> bool:
        """Connect, announce over MQTT and poll until stopped.

        Returns False when the initial connect fails.
        """
        self._running = True
        try:
            topology = await self.driver.connect()
        except ConnectError as e:
            logger.error("Could not connect to the power box: %s", e)
            return False

        self.mqtt.set_command_callback(self._handle_command)
        self.mqtt.connect()
        self.mqtt.publish_ha_discovery(topology)

        logger.info(
            "Monitoring %s via %s (%d indices per sweep)",
            topology.describe(), self._transport_name, topology.num_switch,
        )
        await self.driver.poller.run()
        return True

    # -- Subsystem isolation ----------------------------------------------

    def _safe_publish(self, data: PowerBoxData):
        """Publish to MQTT, catching errors independently."""
        try:
            self.mqtt.publish_box_data(data)
        except Exception:
            self._subsystem_errors["mqtt"] += 1
            if self._subsystem_errors["mqtt"] <= 3:
                logger.exception("MQTT publish error")

    # -- Commands ---------------------------------------------------------

    async def _handle_command(self, target: str, key: str, payload: str):
        """Handle a command from MQTT and publish the response."""
        error = None
        result = None
        try:
            outcome = await self._dispatch(target, key, payload)
            success, result, error = self._summarize(outcome)
        except (ValueError, IndexError, KeyError) as e:
            success, error = False, f"invalid command: {e}"
        except (TransportError, ProtocolError, DeviceError, RuntimeError) as e:
            success, error = False, f"{self._transport_name} error: {e}"

        self.mqtt.publish_command_response(target, key, success, error, result)
        logger.info(
            "Command %s/%s -> %s%s",
            target, key, "OK" if success else "FAILED",
            f" ({error})" if error else "",
        )

    @staticmethod
    def _summarize(outcome) -> tuple[bool, str | None, str | None]:
        if outcome is None:
            return False, None, "ignored: master switch is off"
        if isinstance(outcome, VerifyResult):
            ok = outcome is VerifyResult.CONFIRMED
            return ok, outcome.value, None if ok else outcome.value
        if isinstance(outcome, dict):
            failed = [n for n, r in outcome.items() if r is not VerifyResult.CONFIRMED]
            if failed:
                return False, None, f"not confirmed for ports {[n + 1 for n in failed]}"
            return True, "confirmed", None
        return True, str(outcome), None

    async def _dispatch(self, target: str, key: str, payload: str):
        driver = self.driver
        if target == "dc":
            return await driver.set_power_port(int(key) - 1, parse_switch(payload))
        if target == "dew":
            text = payload.strip().lower()
            if text in _OFF:
                return await driver.set_dew_port(int(key) - 1, False)
            duty = 100 if text in _ON else int(float(text))
            return await driver.set_dew_port(int(key) - 1, duty > 0, duty)
        if target == "usb":
            return await driver.set_usb_port(int(key) - 1, parse_switch(payload))
        if target == "bank":
            return await driver.set_bank(parse_switch(payload), int(key) - 1)
        if target == "relay":
            return await driver.set_relay(parse_switch(payload), int(key) - 1)
        if target == "name":
            return await driver.set_name(int(key), payload)
        if target == "polarity":
            return await driver.set_reverse_polarity(_CATEGORY_BY_NAME[key], parse_switch(payload))
        if target == "limit":
            return await driver.set_limit(_SLOT_BY_NAME[key], float(payload))
        if target == "device":
            return await self._dispatch_device(key, payload)
        raise ValueError(f"unknown target {target!r}")

    async def _dispatch_device(self, key: str, payload: str):
        if key == "reboot":
            await self.driver.reboot()
            return "rebooting"
        if key == "all_dc":
            return await self.driver.set_all_dc(parse_switch(payload))
        if key == "all_dew":
            return await self.driver.set_all_dew(parse_switch(payload))
        if key == "wifi":
            try:
                body = json.loads(payload)
            except json.JSONDecodeError as e:
                raise ValueError(f"wifi payload is not JSON: {e}") from None
            if not isinstance(body, dict) or not body.get("ssid"):
                raise ValueError("wifi payload needs an 'ssid'")
            return await self.driver.set_wifi(str(body["ssid"]), str(body.get("password", "")))
        raise ValueError(f"unknown device command {key!r}")

    # -- Status -----------------------------------------------------------

    def get_status_detail(self) -> dict:
        detail = self.driver.poller.get_status_detail()
        detail["transport"] = self._transport_name
        detail["transport_health"] = self.transport.get_health()
        detail["mqtt"] = self.mqtt.get_status()
        detail["uptime"] = round(time.time() - self._start_time, 1)
        detail["all_dc"] = self.driver.all_dc
        detail["all_dew"] = self.driver.all_dew
        if any(v > 0 for v in self._subsystem_errors.values()):
            detail["subsystem_errors"] = dict(self._subsystem_errors)
        return detail

    def stop(self):
        if not self._running:
            return
        self._running = False
        self.driver.poller.stop()
        self.driver.disconnect()
        self.mqtt.disconnect()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    try:
        config = Config()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    bridge = PowerBoxBridge(config)
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def _shutdown(sig, frame):
        logger.info("Received signal %s, shutting down...", sig)
        bridge.stop()
        loop.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    connected = True
    try:
        connected = loop.run_until_complete(bridge.run())
    except KeyboardInterrupt:
        pass
    except RuntimeError:
        # loop.stop() from the signal handler interrupts run_until_complete
        logger.debug("Event loop stopped", exc_info=True)
    finally:
        bridge.stop()
        loop.close()
        logger.info("Bridge stopped.")

    if not connected:
        sys.exit(1)


if __name__ == "__main__":
    main()
