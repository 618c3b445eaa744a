# Open Power Box Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Local mirror of the box's state, owned by one connection.

The StateCache is sized exactly to the topology's num_switch at connect
time. Only the command engine writes to it; everyone else reads copies.
"""

import logging
from dataclasses import dataclass, field

from .opb_model import CachedValue, Category, LimitSlot, Topology, ValueKind

logger = logging.getLogger(__name__)


class StateCache:
    """Index-addressed store of the latest known device values."""

    def __init__(self, topology: Topology):
        self.topology = topology
        self._values: list[CachedValue | None] = [None] * topology.num_switch
        self.names: dict[int, str] = {}
        self.reverse: dict[Category, bool] = {}
        self.limits: dict[LimitSlot, float] = {}
        self.ip = ""
        self.ssid = ""

    def __len__(self) -> int:
        return len(self._values)

    def _check(self, index: int) -> int:
        if not 0 <= index < len(self._values):
            raise IndexError(f"index {index} outside [0, {len(self._values)})")
        return index

    def get(self, index: int) -> CachedValue | None:
        return self._values[self._check(index)]

    def set(self, index: int, raw: str | None) -> CachedValue | None:
        """Store raw device text at *index*; the kind comes from the layout."""
        self._check(index)
        if raw is None:
            self._values[index] = None
            return None
        current = self._values[index]
        kind = current.kind if current is not None else self.topology.kind_of(index)
        value = CachedValue(raw.strip(), kind)
        self._values[index] = value
        return value

    def restore(self, index: int, previous: CachedValue | None) -> None:
        """Put back a value captured before an unconfirmed write."""
        self._values[self._check(index)] = previous

    def kind_of(self, index: int) -> ValueKind:
        current = self.get(index)
        return current.kind if current is not None else self.topology.kind_of(index)

    def raw_values(self) -> dict[int, str | None]:
        return {i: (v.raw if v is not None else None) for i, v in enumerate(self._values)}

    def float_at(self, index: int) -> float | None:
        """Float reading at *index*, None when unknown or unparseable."""
        value = self.get(index)
        if value is None:
            return None
        try:
            return value.as_float()
        except ValueError:
            logger.debug("Unparseable reading %r at index %d", value.raw, index)
            return None


@dataclass
class DeviceSession:
    """Everything known about the box for one connection.

    Created on connect, dropped on disconnect.
    """
    topology: Topology
    cache: StateCache = field(init=False)

    def __post_init__(self):
        self.cache = StateCache(self.topology)
