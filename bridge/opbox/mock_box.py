# Open Power Box Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Simulated Open Power Box for testing without real hardware.

Speaks the same request/reply protocol as the firmware, so the command
engine, poller and driver run unchanged against it. The default layout is
the stock board: 7 DC switches, 3 dew heaters, 1 relay, 1 DC bank, no USB.

Faults can be injected per index: read timeouts, E replies, writes the box
silently ignores, and line noise ahead of each reply.
"""

import logging
import math
import random
import time

from .frame_codec import REPLY_TAGS
from .opb_model import (
    CMD_GET,
    CMD_GET_IP,
    CMD_GET_LIMIT,
    CMD_GET_NAME,
    CMD_GET_REVERSE,
    CMD_GET_SSID,
    CMD_REBOOT,
    CMD_SET,
    CMD_SET_LIMIT,
    CMD_SET_NAME,
    CMD_SET_PASSWORD,
    CMD_SET_REVERSE,
    CMD_SET_SSID,
    CMD_TOPOLOGY,
    CATEGORY_NAMES,
    Category,
    LimitSlot,
    Topology,
)
from .serial_client import TransportError

logger = logging.getLogger(__name__)

DEFAULT_LIMITS = {
    LimitSlot.DC: 5.0,
    LimitSlot.PWM: 3.0,
    LimitSlot.BANK: 10.0,
    LimitSlot.DC_TOTAL: 15.0,
    LimitSlot.PWM_TOTAL: 6.0,
    LimitSlot.GLOBAL: 20.0,
}


class MockPowerBox:
    """In-memory box implementing the BoxTransport protocol."""

    def __init__(self, num_dc: int = 7, num_pwm: int = 3, num_relay: int = 1,
                 num_on: int = 1, num_usb: int = 0,
                 ip: str = "192.168.4.1", ssid: str = "OpenPowerBox",
                 station_ip: str = "192.168.1.50"):
        self.topology = Topology(
            num_dc=num_dc, num_pwm=num_pwm, num_relay=num_relay,
            num_on=num_on, num_usb=num_usb,
        )
        self._connected = False
        self._path: str | None = None
        self._pending: list[str] = []
        self._consecutive_failures = 0
        self._start_time = time.time()

        self._outputs: dict[int, int] = {i: 0 for i in range(self.topology.total)}
        self._names: dict[int, str] = {}
        for category in Category:
            for n in range(self.topology.count(category)):
                index = self.topology.port(category, n)
                self._names[index] = f"{CATEGORY_NAMES[category].upper()} {n + 1}"
        self._reverse: dict[int, int] = {int(c): 0 for c in Category}
        self._limits: dict[int, float] = {int(k): v for k, v in DEFAULT_LIMITS.items()}

        self._ip = ip
        self._ssid = ssid
        self._password = ""
        self._station_ip = station_ip
        self._wifi_changed = False
        self.reboots = 0

        # Fault injection
        self.timeout_indices: set[int] = set()
        self.error_indices: dict[int, str] = {}
        self.rejected_writes: set[int] = set()
        self.noise = ""

        # Every decoded command, for assertions
        self.commands: list[tuple[str, int, str | None]] = []

    # ------------------------------------------------------------------
    # Transport protocol
    # ------------------------------------------------------------------

    async def connect(self, path: str | None = None) -> None:
        self._path = path
        self._connected = True
        self._pending.clear()
        logger.info("Mock: power box connected (%s)", self.topology.describe())

    @property
    def is_connected(self) -> bool:
        return self._connected

    def close(self) -> None:
        self._connected = False
        self._pending.clear()

    def get_health(self) -> dict:
        return {
            "transport": "mock",
            "connected": self._connected,
            "consecutive_failures": self._consecutive_failures,
            "reachable": self._consecutive_failures < 10,
        }

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def reset_health(self) -> None:
        self._consecutive_failures = 0

    async def send(self, payload: bytes) -> None:
        if not self._connected:
            raise TransportError("Mock: port not open")
        # Stale replies are discarded before each write, like the serial link
        self._pending.clear()
        command, index, value = self._parse(payload.decode("utf-8"))
        self.commands.append((command, index, value))
        reply = self._handle(command, index, value)
        if reply is not None:
            self._pending.append(self.noise + reply)

    async def receive(self) -> str:
        if not self._connected:
            raise TransportError("Mock: port not open")
        if not self._pending:
            self._consecutive_failures += 1
            raise TransportError("Mock: no ';' within the read timeout")
        self._consecutive_failures = 0
        return self._pending.pop(0)

    # ------------------------------------------------------------------
    # Fault injection helpers
    # ------------------------------------------------------------------

    def set_output(self, index: int, value: int) -> None:
        """Change an output behind the driver's back (front-panel press)."""
        self._outputs[index] = int(value)

    def output(self, index: int) -> int:
        return self._outputs[index]

    # ------------------------------------------------------------------
    # Firmware emulation
    # ------------------------------------------------------------------

    @staticmethod
    def _parse(line: str) -> tuple[str, int, str | None]:
        text = line.strip()
        if not text.startswith("#"):
            raise TransportError(f"Mock: malformed command {line!r}")
        parts = text[1:].strip().split(" ", 2)
        if len(parts) < 2:
            raise TransportError(f"Mock: malformed command {line!r}")
        value = parts[2] if len(parts) == 3 else None
        return parts[0], int(parts[1]), value

    def _handle(self, command: str, index: int, value: str | None) -> str | None:
        if REPLY_TAGS.get(command, "") is None:
            self._handle_silent(command, value)
            return None
        if index in self.timeout_indices and command in (CMD_GET, CMD_SET):
            return None
        if index in self.error_indices and command in (CMD_GET, CMD_SET):
            return f"#E{index}:{self.error_indices[index]};"

        if command == CMD_TOPOLOGY:
            t = self.topology
            return f"#Z:{t.num_dc},{t.num_pwm},{t.num_relay},{t.num_on},{t.num_usb};"
        if command == CMD_GET:
            if not 0 <= index < self.topology.num_switch:
                return f"#E{index}:invalid index;"
            return f"#G{index}:{self._read_value(index)};"
        if command == CMD_SET:
            return self._set_value(index, value)
        if command in (CMD_GET_NAME, CMD_SET_NAME):
            if index not in self._names:
                return f"#E{index}:invalid port;"
            if command == CMD_SET_NAME and value is not None:
                self._names[index] = value.strip()
            return f"#n{index}:{self._names[index]};"
        if command in (CMD_GET_REVERSE, CMD_SET_REVERSE):
            if index not in self._reverse:
                return f"#E{index}:invalid category;"
            if command == CMD_SET_REVERSE and value is not None:
                self._reverse[index] = 1 if int(float(value)) else 0
            return f"#r{index}:{self._reverse[index]};"
        if command in (CMD_GET_LIMIT, CMD_SET_LIMIT):
            if index not in self._limits:
                return f"#E{index}:invalid limit;"
            if command == CMD_SET_LIMIT and value is not None:
                self._limits[index] = float(value)
            return f"#l{index}:{self._limits[index]:.2f};"
        if command == CMD_GET_IP:
            return f"#i:{self._ip};"
        if command in (CMD_GET_SSID, CMD_SET_SSID):
            if command == CMD_SET_SSID and value is not None:
                self._ssid = value.strip()
                self._wifi_changed = True
            return f"#f:{self._ssid};"
        return f"#E{index}:unknown command {command};"

    def _handle_silent(self, command: str, value: str | None) -> None:
        if command == CMD_SET_PASSWORD:
            self._password = value or ""
            self._wifi_changed = True
        elif command == CMD_REBOOT:
            self.reboots += 1
            if self._wifi_changed:
                self._ip = self._station_ip
                self._wifi_changed = False
            logger.info("Mock: reboot #%d, IP now %s", self.reboots, self._ip)

    def _set_value(self, index: int, value: str | None) -> str:
        category = (
            self.topology.category_of(index)
            if 0 <= index < self.topology.num_switch else None
        )
        if category is None or value is None:
            return f"#E{index}:read only;"
        if index not in self.rejected_writes:
            number = int(float(value))
            if category is Category.PWM:
                self._outputs[index] = max(0, min(100, number))
            else:
                self._outputs[index] = 1 if number else 0
        return f"#G{index}:{self._outputs[index]};"

    def _read_value(self, index: int) -> str:
        topo = self.topology
        if index < topo.total:
            return str(self._outputs[index])
        return "%.2f" % self._sensor(index)

    def _input_voltage(self) -> float:
        elapsed = time.time() - self._start_time
        return 12.4 + 0.1 * math.sin(elapsed / 60.0)

    def _channel_load(self, index: int) -> float:
        """Current drawn by the output at *index* (amps)."""
        level = self._outputs.get(index, 0)
        if not level:
            return 0.0
        if self.topology.category_of(index) is Category.PWM:
            return 1.5 * level / 100.0
        return 0.3 + 0.05 * index + random.uniform(-0.01, 0.01)

    def _sensor(self, index: int) -> float:
        topo = self.topology
        vin = self._input_voltage()
        if index == topo.input_voltage():
            return vin
        if index == topo.total_current():
            return sum(self._channel_load(i) for i in range(topo.total))
        if index in (topo.aux(0), topo.aux(1)):
            return 25.0 + random.uniform(-0.5, 0.5)  # board temperature
        # Per-channel voltage/current pairs: DC, then dew, then bank
        offset = index - topo.sensor_num
        pair, is_current = divmod(offset, 2)
        for category in (Category.DC, Category.PWM, Category.BANK):
            count = topo.count(category)
            if pair < count:
                port = topo.port(category, pair)
                if is_current:
                    return self._channel_load(port)
                level = self._outputs[port]
                if category is Category.PWM:
                    return vin * level / 100.0
                return vin if level else 0.0
            pair -= count
        return 0.0
