# Open Power Box Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""MQTT pub/sub handler: publishes box snapshots, subscribes for commands, HA discovery.

Topic root is ``opb/{device_id}``. Commands arrive on
``opb/{device_id}/{target}/{key}/command`` and are handed to the registered
callback as ``(target, key, payload)`` on the asyncio loop. Port numbers in
topics are 1-based.
"""

import asyncio
import json
import logging
import time
from typing import Awaitable, Callable

import paho.mqtt.client as mqtt

from .config import Config
from .opb_model import (
    CATEGORY_NAMES,
    INDEX_ORDER,
    LIMIT_NAMES,
    Category,
    PowerBoxData,
    Topology,
)

logger = logging.getLogger(__name__)

CommandCallback = Callable[[str, str, str], Awaitable[None]]

COMMAND_TARGETS = frozenset(
    set(CATEGORY_NAMES.values()) | {"name", "polarity", "limit", "device"}
)


class MQTTHandler:
    def __init__(self, config: Config):
        self.config = config
        self.device = config.device_id
        self.base = f"opb/{self.device}"
        self._command_callback: CommandCallback | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

        # Connection status tracking
        self._connected: bool = False
        self._reconnect_count: int = 0
        self._last_connect_time: float | None = None
        self._last_disconnect_time: float | None = None
        self._publish_errors: int = 0
        self._total_publishes: int = 0
        self._ha_discovery_sent: bool = False

        # Pending publishes queued while disconnected (max 100)
        self._pending_publishes: list[tuple[str, str, bool, int]] = []
        self._max_pending = 100

        self.client = mqtt.Client(
            client_id=f"opb-bridge-{self.device}",
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        )
        self.client.will_set(
            f"{self.base}/bridge/status", "offline", qos=1, retain=True
        )
        self.client.on_connect = self._on_connect
        self.client.on_message = self._on_message
        self.client.on_disconnect = self._on_disconnect
        # Auto-reconnect with backoff
        self.client.reconnect_delay_set(min_delay=1, max_delay=30)

    def set_command_callback(self, callback: CommandCallback):
        """Set the coroutine that handles ``(target, key, payload)`` commands."""
        self._command_callback = callback

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def connect(self):
        logger.info("Connecting to MQTT broker %s:%d", self.config.mqtt_broker, self.config.mqtt_port)
        self._loop = asyncio.get_event_loop()

        if self.config.mqtt_username:
            self.client.username_pw_set(
                self.config.mqtt_username, self.config.mqtt_password
            )
            logger.info("MQTT authentication configured for user %s", self.config.mqtt_username)

        try:
            self.client.connect(self.config.mqtt_broker, self.config.mqtt_port, keepalive=60)
            self.client.loop_start()
        except Exception:
            logger.exception("Failed to connect to MQTT broker")

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        logger.info("MQTT connected (rc=%s)", reason_code)
        if self._last_connect_time is not None:
            self._reconnect_count += 1
            logger.info("MQTT reconnected (count=%d)", self._reconnect_count)
        self._connected = True
        self._last_connect_time = time.time()

        client.publish(f"{self.base}/bridge/status", "online", qos=1, retain=True)

        topic = f"{self.base}/+/+/command"
        client.subscribe(topic, qos=1)
        logger.info("Subscribed to %s", topic)

        # Drain pending publishes queued during disconnect
        if self._pending_publishes:
            drained = len(self._pending_publishes)
            for topic, payload, retain, qos in self._pending_publishes:
                try:
                    client.publish(topic, payload, qos=qos, retain=retain)
                except Exception:
                    logger.debug("Dropped pending publish to %s", topic, exc_info=True)
            self._pending_publishes.clear()
            logger.info("Drained %d pending publishes after reconnect", drained)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        logger.warning("MQTT disconnected (rc=%s)", reason_code)
        self._connected = False
        self._last_disconnect_time = time.time()

    def get_status(self) -> dict:
        """Return MQTT connection health info."""
        return {
            "connected": self._connected,
            "reconnect_count": self._reconnect_count,
            "last_connect": self._last_connect_time,
            "last_disconnect": self._last_disconnect_time,
            "broker": self.config.mqtt_broker,
            "port": self.config.mqtt_port,
            "publish_errors": self._publish_errors,
            "total_publishes": self._total_publishes,
            "ha_discovery_sent": self._ha_discovery_sent,
        }

    def _publish(self, topic: str, payload, retain: bool = False, qos: int = 0):
        """Publish with error tracking. Queues retained messages on failure."""
        self._total_publishes += 1

        try:
            info = self.client.publish(topic, payload, qos=qos, retain=retain)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                self._publish_errors += 1
                if self._publish_errors % 100 == 1:
                    logger.warning("MQTT publish failed (rc=%s, topic=%s)", info.rc, topic)
                if retain and len(self._pending_publishes) < self._max_pending:
                    self._pending_publishes.append((topic, str(payload), retain, qos))
        except Exception:
            self._publish_errors += 1
            if self._publish_errors % 100 == 1:
                logger.exception("MQTT publish exception (topic=%s)", topic)
            if retain and len(self._pending_publishes) < self._max_pending:
                self._pending_publishes.append((topic, str(payload), retain, qos))

    # ------------------------------------------------------------------
    # Incoming message routing
    # ------------------------------------------------------------------

    def _on_message(self, client, userdata, msg: mqtt.MQTTMessage):
        """Route ``opb/{device}/{target}/{key}/command`` to the callback."""
        try:
            parts = msg.topic.split("/")
            if (len(parts) != 5 or parts[0] != "opb" or parts[1] != self.device
                    or parts[4] != "command"):
                return
            target, key = parts[2], parts[3]
            if target not in COMMAND_TARGETS:
                logger.warning("Ignoring command for unknown target %r", target)
                return
            payload = msg.payload.decode("utf-8").strip()
            logger.info("Command received: %s/%s -> %s", target, key,
                        "***" if target == "device" and key == "wifi" else payload)

            if not self._loop:
                logger.warning("Event loop not set, cannot dispatch command")
                return
            if not self._command_callback:
                logger.warning("No command callback registered")
                return
            asyncio.run_coroutine_threadsafe(
                self._command_callback(target, key, payload), self._loop
            )
        except Exception:
            logger.exception("Error handling MQTT message on %s", msg.topic)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish_box_data(self, data: PowerBoxData):
        """Publish a full snapshot to MQTT topics (retained)."""
        prefix = self.base
        topo = data.topology

        status: dict = {
            "topology": {
                "dc": topo.num_dc,
                "dew": topo.num_pwm,
                "relay": topo.num_relay,
                "bank": topo.num_on,
                "usb": topo.num_usb,
            },
            "input_voltage": data.input_voltage,
            "total_current": data.total_current,
            "total_power": data.total_power,
            "aux": list(data.aux_readings),
            "ip": data.ip,
            "ssid": data.ssid,
            "timestamp": data.timestamp or time.time(),
        }
        self._publish(f"{prefix}/status", json.dumps(status), retain=True)

        # Input
        for metric, value in (
            ("voltage", data.input_voltage),
            ("current", data.total_current),
            ("power", data.total_power),
        ):
            if value is not None:
                self._publish(f"{prefix}/input/{metric}", str(round(value, 3)), retain=True)

        # Ports
        for category in INDEX_ORDER:
            for port in data.category_ports(category):
                pp = f"{prefix}/{CATEGORY_NAMES[category]}/{port.number + 1}"
                if port.enabled is not None:
                    self._publish(f"{pp}/state", "on" if port.enabled else "off", retain=True)
                if port.duty_cycle is not None:
                    self._publish(f"{pp}/duty_cycle", str(port.duty_cycle), retain=True)
                if port.voltage is not None:
                    self._publish(f"{pp}/voltage", str(port.voltage), retain=True)
                if port.current is not None:
                    self._publish(f"{pp}/current", str(port.current), retain=True)
                if port.name:
                    self._publish(f"{pp}/name", port.name, retain=True)

        for category, inverted in data.reverse_polarity.items():
            self._publish(
                f"{prefix}/polarity/{CATEGORY_NAMES[category]}",
                "inverted" if inverted else "normal",
                retain=True,
            )
        for slot, limit in data.limits.items():
            self._publish(f"{prefix}/limit/{LIMIT_NAMES[slot]}", str(limit), retain=True)

        if data.ip:
            self._publish(f"{prefix}/wifi/ip", data.ip, retain=True)
        if data.ssid:
            self._publish(f"{prefix}/wifi/ssid", data.ssid, retain=True)

    def publish_command_response(
        self, target: str, key: str, success: bool,
        error: str | None = None, result: str | None = None,
    ):
        """Publish a command response."""
        resp = {
            "success": success,
            "target": target,
            "key": key,
            "result": result,
            "error": error,
            "ts": time.time(),
        }
        self._publish(
            f"{self.base}/{target}/{key}/command/response",
            json.dumps(resp),
            qos=1,
        )

    # --- Home Assistant MQTT Discovery ---

    def publish_ha_discovery(self, topology: Topology):
        """Publish Home Assistant MQTT auto-discovery configs.

        Switches for DC, bank, relay and USB outputs, a number entity per
        dew heater duty cycle, and voltage/current/power sensors.
        """
        if self._ha_discovery_sent:
            return

        dev = self.device
        base = self.base
        device_info = {
            "identifiers": [f"openpowerbox_{dev}"],
            "name": f"Open Power Box {dev}",
            "manufacturer": "Open Power Box",
            "model": f"{topology.num_dc}DC/{topology.num_pwm}PWM",
        }
        avail = {
            "topic": f"{base}/bridge/status",
            "payload_available": "online",
            "payload_not_available": "offline",
        }

        # Output switches
        for category in (Category.DC, Category.BANK, Category.RELAY, Category.USB):
            label = CATEGORY_NAMES[category]
            for n in range(1, topology.count(category) + 1):
                uid = f"{dev}_{label}_{n}"
                config = {
                    "name": f"{label.upper()} {n}",
                    "unique_id": uid,
                    "device": device_info,
                    "availability": avail,
                    "state_topic": f"{base}/{label}/{n}/state",
                    "command_topic": f"{base}/{label}/{n}/command",
                    "payload_on": "on",
                    "payload_off": "off",
                    "state_on": "on",
                    "state_off": "off",
                    "icon": "mdi:power-socket",
                }
                self._publish(
                    f"homeassistant/switch/{uid}/config",
                    json.dumps(config),
                    retain=True,
                )

        # Dew heater duty cycles
        for n in range(1, topology.num_pwm + 1):
            uid = f"{dev}_dew_{n}"
            config = {
                "name": f"Dew {n}",
                "unique_id": uid,
                "device": device_info,
                "availability": avail,
                "state_topic": f"{base}/dew/{n}/duty_cycle",
                "command_topic": f"{base}/dew/{n}/command",
                "min": 0,
                "max": 100,
                "step": 1,
                "unit_of_measurement": "%",
                "icon": "mdi:heat-wave",
            }
            self._publish(
                f"homeassistant/number/{uid}/config",
                json.dumps(config),
                retain=True,
            )

        # Per-channel sensors
        metrics = [
            ("voltage", "V", "voltage", "mdi:flash-triangle"),
            ("current", "A", "current", "mdi:current-dc"),
        ]
        for category in (Category.DC, Category.PWM, Category.BANK):
            label = CATEGORY_NAMES[category]
            for n in range(1, topology.count(category) + 1):
                for metric, unit, dev_class, icon in metrics:
                    uid = f"{dev}_{label}_{n}_{metric}"
                    config = {
                        "name": f"{label.upper()} {n} {metric.title()}",
                        "unique_id": uid,
                        "device": device_info,
                        "availability": avail,
                        "state_topic": f"{base}/{label}/{n}/{metric}",
                        "unit_of_measurement": unit,
                        "device_class": dev_class,
                        "state_class": "measurement",
                        "icon": icon,
                    }
                    self._publish(
                        f"homeassistant/sensor/{uid}/config",
                        json.dumps(config),
                        retain=True,
                    )

        # Input sensors
        for metric, unit, dev_class, icon in metrics + [("power", "W", "power", "mdi:flash")]:
            uid = f"{dev}_input_{metric}"
            config = {
                "name": f"Input {metric.title()}",
                "unique_id": uid,
                "device": device_info,
                "availability": avail,
                "state_topic": f"{base}/input/{metric}",
                "unit_of_measurement": unit,
                "device_class": dev_class,
                "state_class": "measurement",
                "icon": icon,
            }
            self._publish(
                f"homeassistant/sensor/{uid}/config",
                json.dumps(config),
                retain=True,
            )

        # Bridge status binary sensor
        uid = f"{dev}_bridge_status"
        config = {
            "name": "Bridge Status",
            "unique_id": uid,
            "device": device_info,
            "state_topic": f"{base}/bridge/status",
            "payload_on": "online",
            "payload_off": "offline",
            "device_class": "connectivity",
            "icon": "mdi:bridge",
        }
        self._publish(
            f"homeassistant/binary_sensor/{uid}/config",
            json.dumps(config),
            retain=True,
        )

        self._ha_discovery_sent = True
        logger.info("Published HA MQTT Discovery configs for %s (%s)", dev, topology.describe())

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    def disconnect(self):
        """Publish offline status and disconnect."""
        self._publish(f"{self.base}/bridge/status", "offline", qos=1, retain=True)
        try:
            self.client.loop_stop()
            self.client.disconnect()
        except Exception:
            logger.debug("Error during MQTT disconnect", exc_info=True)
