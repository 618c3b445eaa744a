"""Topology, global index arithmetic and data models for the Open Power Box."""

import enum
import math
from dataclasses import dataclass, field

# Request command characters
CMD_TOPOLOGY = "Z"
CMD_GET = "G"
CMD_SET = "S"
CMD_GET_NAME = "n"
CMD_SET_NAME = "N"
CMD_GET_REVERSE = "r"
CMD_SET_REVERSE = "R"
CMD_GET_LIMIT = "l"
CMD_SET_LIMIT = "L"
CMD_GET_IP = "I"
CMD_GET_SSID = "f"
CMD_SET_SSID = "F"
CMD_SET_PASSWORD = "H"
CMD_REBOOT = "p"

# Aggregate sensor slots following the switch-like entries
AGGREGATE_SLOTS = 4


class ValueParseError(ValueError):
    """Raised when a cached device value cannot be decoded as its kind."""


class Category(enum.IntEnum):
    """Port categories. Values are the reverse-polarity slot numbers."""
    DC = 0
    PWM = 1
    BANK = 2
    RELAY = 3
    USB = 4


CATEGORY_NAMES = {
    Category.DC: "dc",
    Category.PWM: "dew",
    Category.BANK: "bank",
    Category.RELAY: "relay",
    Category.USB: "usb",
}

# Global index layout order (bank outputs come before the relay)
INDEX_ORDER = (Category.DC, Category.PWM, Category.BANK, Category.RELAY, Category.USB)


class LimitSlot(enum.IntEnum):
    """The six configurable current limits."""
    DC = 0
    PWM = 1
    BANK = 2
    DC_TOTAL = 3
    PWM_TOTAL = 4
    GLOBAL = 5


LIMIT_NAMES = {
    LimitSlot.DC: "dc",
    LimitSlot.PWM: "pwm",
    LimitSlot.BANK: "bank",
    LimitSlot.DC_TOTAL: "dc_total",
    LimitSlot.PWM_TOTAL: "pwm_total",
    LimitSlot.GLOBAL: "global",
}


class ValueKind(enum.Enum):
    BOOL = "bool"
    INT = "int"
    FLOAT = "float"
    TEXT = "text"


class VerifyResult(enum.Enum):
    """Outcome of a write-with-verify round trip."""
    CONFIRMED = "confirmed"
    MISMATCH = "mismatch"
    DEVICE_ERROR = "device_error"
    PROTOCOL_ERROR = "protocol_error"


FLOAT_TOLERANCE = 1e-3


def parse_as(text: str, kind: ValueKind):
    """Decode device text as *kind*, raising ValueParseError on bad input."""
    raw = text.strip()
    if kind is ValueKind.TEXT:
        return raw
    try:
        if kind is ValueKind.BOOL:
            return int(float(raw)) != 0
        if kind is ValueKind.INT:
            return int(float(raw))
        return float(raw)
    except (TypeError, ValueError):
        raise ValueParseError(f"{raw!r} is not a valid {kind.value}") from None


def values_equal(a, b, kind: ValueKind) -> bool:
    """Compare two decoded values of the same kind."""
    if kind is ValueKind.FLOAT:
        return math.isclose(a, b, rel_tol=0.0, abs_tol=FLOAT_TOLERANCE)
    return a == b


@dataclass(frozen=True)
class CachedValue:
    """Raw device payload tagged with the kind chosen at first write."""
    raw: str
    kind: ValueKind = ValueKind.TEXT

    @property
    def value(self):
        return parse_as(self.raw, self.kind)

    def as_bool(self) -> bool:
        return parse_as(self.raw, ValueKind.BOOL)

    def as_int(self) -> int:
        return parse_as(self.raw, ValueKind.INT)

    def as_float(self) -> float:
        return parse_as(self.raw, ValueKind.FLOAT)

    def __str__(self) -> str:
        return self.raw


@dataclass(frozen=True)
class Topology:
    """Device-reported port counts, fixed for the lifetime of a connection.

    Global index layout:
        [0, total)                      switch-like ports in INDEX_ORDER
        total .. total+3                input voltage, total current, 2 aux
        sensor_num + 2*i (+1)           DC channel i voltage (current)
        sensor_num + 2*dc + 2*j (+1)    dew channel j voltage (current)
        sensor_num + 2*(dc+pwm) + 2*k   bank k voltage (current at +1)
    """
    num_dc: int = 0
    num_pwm: int = 0
    num_relay: int = 0
    num_on: int = 0
    num_usb: int = 0

    def __post_init__(self):
        for name in ("num_dc", "num_pwm", "num_relay", "num_on", "num_usb"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")

    @property
    def total(self) -> int:
        return self.num_dc + self.num_pwm + self.num_on + self.num_relay + self.num_usb

    @property
    def sensor_num(self) -> int:
        return self.total + AGGREGATE_SLOTS

    @property
    def num_switch(self) -> int:
        return (self.num_dc + self.num_pwm + self.num_on) * 2 + self.total + AGGREGATE_SLOTS

    def count(self, category: Category) -> int:
        return {
            Category.DC: self.num_dc,
            Category.PWM: self.num_pwm,
            Category.BANK: self.num_on,
            Category.RELAY: self.num_relay,
            Category.USB: self.num_usb,
        }[category]

    def offset(self, category: Category) -> int:
        """First global index of *category*."""
        start = 0
        for cat in INDEX_ORDER:
            if cat is category:
                return start
            start += self.count(cat)
        raise KeyError(category)

    def port(self, category: Category, number: int) -> int:
        if not 0 <= number < self.count(category):
            raise IndexError(
                f"{CATEGORY_NAMES[category]} port {number} out of range "
                f"(device has {self.count(category)})"
            )
        return self.offset(category) + number

    def dc(self, number: int) -> int:
        return self.port(Category.DC, number)

    def pwm(self, number: int) -> int:
        return self.port(Category.PWM, number)

    def bank(self, number: int = 0) -> int:
        return self.port(Category.BANK, number)

    def relay(self, number: int = 0) -> int:
        return self.port(Category.RELAY, number)

    def usb(self, number: int) -> int:
        return self.port(Category.USB, number)

    # -- Sensor slots ------------------------------------------------------

    def input_voltage(self) -> int:
        return self.total

    def total_current(self) -> int:
        return self.total + 1

    def aux(self, k: int) -> int:
        if k not in (0, 1):
            raise IndexError(f"aux sensor {k} out of range")
        return self.total + 2 + k

    def _pair(self, base: int, number: int, limit: int, label: str) -> int:
        if not 0 <= number < limit:
            raise IndexError(f"{label} sensor {number} out of range")
        return base + 2 * number

    def dc_voltage(self, number: int) -> int:
        return self._pair(self.sensor_num, number, self.num_dc, "dc")

    def dc_current(self, number: int) -> int:
        return self.dc_voltage(number) + 1

    def pwm_voltage(self, number: int) -> int:
        return self._pair(self.sensor_num + 2 * self.num_dc, number, self.num_pwm, "dew")

    def pwm_current(self, number: int) -> int:
        return self.pwm_voltage(number) + 1

    def bank_voltage(self, number: int = 0) -> int:
        base = self.sensor_num + 2 * (self.num_dc + self.num_pwm)
        return self._pair(base, number, self.num_on, "bank")

    def bank_current(self, number: int = 0) -> int:
        return self.bank_voltage(number) + 1

    def category_of(self, index: int) -> Category | None:
        """Category of a switch-like index, None for sensor slots."""
        if not 0 <= index < self.num_switch:
            raise IndexError(f"index {index} outside [0, {self.num_switch})")
        start = 0
        for cat in INDEX_ORDER:
            end = start + self.count(cat)
            if index < end:
                return cat
            start = end
        return None

    def kind_of(self, index: int) -> ValueKind:
        """Value kind stored at *index*."""
        category = self.category_of(index)
        if category is None:
            return ValueKind.FLOAT
        if category is Category.PWM:
            return ValueKind.INT
        return ValueKind.BOOL

    def describe(self) -> str:
        return (
            f"{self.num_dc} DC switches + {self.num_pwm} dew heaters + "
            f"{self.num_relay} relays + {self.num_on} DC bank + {self.num_usb} USB ports"
        )


@dataclass
class PortData:
    category: Category
    number: int
    index: int
    name: str = ""
    value: CachedValue | None = None
    voltage: float | None = None   # volts
    current: float | None = None   # amps

    @property
    def enabled(self) -> bool | None:
        if self.value is None:
            return None
        try:
            return self.value.as_bool()
        except ValueParseError:
            return None

    @property
    def duty_cycle(self) -> int | None:
        if self.category is not Category.PWM or self.value is None:
            return None
        try:
            return self.value.as_int()
        except ValueParseError:
            return None


@dataclass
class PowerBoxData:
    """One refreshed snapshot, published after every completed poll sweep."""
    topology: Topology
    ports: dict[Category, list[PortData]] = field(default_factory=dict)
    input_voltage: float | None = None
    total_current: float | None = None
    total_power: float | None = None
    aux_readings: tuple[float | None, float | None] = (None, None)
    reverse_polarity: dict[Category, bool] = field(default_factory=dict)
    limits: dict[LimitSlot, float] = field(default_factory=dict)
    ip: str = ""
    ssid: str = ""
    values: dict[int, str | None] = field(default_factory=dict)
    timestamp: float = 0.0

    def category_ports(self, category: Category) -> list[PortData]:
        return self.ports.get(category, [])
