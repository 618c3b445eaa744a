# Open Power Box Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Periodic refresh of every global index and snapshot publication.

One tick sweeps [0, num_switch) with a single G per index, ascending. A
failing read keeps the prior cached value and the sweep moves on. A sweep
interrupted by stop() or a disconnect publishes nothing.
"""

import asyncio
import inspect
import logging
import time
from typing import Callable

from .command_engine import CommandEngine
from .frame_codec import DeviceError, ProtocolError
from .opb_model import INDEX_ORDER, Category, PortData, PowerBoxData
from .serial_client import TransportError
from .state_cache import StateCache

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[PowerBoxData], object]

# Consecutive link failures before the box is reported degraded
DEGRADED_THRESHOLD = 10


def build_snapshot(cache: StateCache) -> PowerBoxData:
    """Derive a PowerBoxData from the current cache contents."""
    topo = cache.topology
    ports: dict[Category, list[PortData]] = {}
    for category in INDEX_ORDER:
        entries = []
        for n in range(topo.count(category)):
            index = topo.port(category, n)
            port = PortData(
                category=category,
                number=n,
                index=index,
                name=cache.names.get(index, ""),
                value=cache.get(index),
            )
            if category is Category.DC:
                port.voltage = cache.float_at(topo.dc_voltage(n))
                port.current = cache.float_at(topo.dc_current(n))
            elif category is Category.PWM:
                port.voltage = cache.float_at(topo.pwm_voltage(n))
                port.current = cache.float_at(topo.pwm_current(n))
            elif category is Category.BANK:
                port.voltage = cache.float_at(topo.bank_voltage(n))
                port.current = cache.float_at(topo.bank_current(n))
            entries.append(port)
        ports[category] = entries

    voltage = cache.float_at(topo.input_voltage())
    current = cache.float_at(topo.total_current())
    power = voltage * current if voltage is not None and current is not None else None

    return PowerBoxData(
        topology=topo,
        ports=ports,
        input_voltage=voltage,
        total_current=current,
        total_power=power,
        aux_readings=(cache.float_at(topo.aux(0)), cache.float_at(topo.aux(1))),
        reverse_polarity=dict(cache.reverse),
        limits=dict(cache.limits),
        ip=cache.ip,
        ssid=cache.ssid,
        values=cache.raw_values(),
        timestamp=time.time(),
    )


class PowerBoxPoller:
    """Poll loop for one connected box.

    Snapshot callbacks may be plain functions or coroutines; a failing
    callback is logged and never stops the others or the loop.
    """

    def __init__(self, engine: CommandEngine, poll_interval: float = 5.0):
        self.engine = engine
        self.poll_interval = poll_interval
        self._callbacks: list[SnapshotCallback] = []
        self._running = False
        self._stopped = False

        # Stats
        self._poll_count = 0
        self._read_failures = 0
        self._interrupted_sweeps = 0
        self._callback_errors = 0
        self._last_poll_duration = 0.0
        self._last_successful_poll = 0.0

        # Link state
        self._degraded = False

    def on_snapshot(self, callback: SnapshotCallback) -> None:
        self._callbacks.append(callback)

    @property
    def is_connected(self) -> bool:
        return self.engine.session is not None and self.engine.transport.is_connected

    def _halted(self) -> bool:
        return self._stopped or not self.is_connected

    async def sweep(self) -> bool:
        """Refresh every index once. Returns False if interrupted."""
        num_switch = self.engine.topology.num_switch
        failures = 0
        for index in range(num_switch):
            if self._halted():
                self._interrupted_sweeps += 1
                logger.info("Sweep interrupted at index %d of %d", index, num_switch)
                return False
            try:
                await self.engine.get_indexed(index)
            except (TransportError, ProtocolError, DeviceError) as e:
                failures += 1
                logger.debug("Read of index %d failed: %s", index, e)
        self._read_failures += failures
        if failures:
            logger.debug("Sweep finished with %d failed reads", failures)
        return True

    async def tick(self) -> PowerBoxData | None:
        """One poll: sweep, derive, publish. None when skipped or interrupted."""
        if self._halted():
            return None
        poll_start = time.monotonic()
        completed = await self.sweep()
        self._update_link_state()
        if not completed:
            return None

        data = build_snapshot(self.engine.cache)
        await self._publish(data)

        self._poll_count += 1
        self._last_successful_poll = time.time()
        self._last_poll_duration = time.monotonic() - poll_start

        if self._poll_count % 60 == 1:
            logger.info(
                "Poll #%d: input=%.1fV %.2fA, %d indices (%.0fms)",
                self._poll_count,
                data.input_voltage or 0,
                data.total_current or 0,
                len(data.values),
                self._last_poll_duration * 1000,
            )
        return data

    def _update_link_state(self) -> None:
        """Track DEGRADED/HEALTHY from the link's consecutive failures."""
        failures = self.engine.transport.consecutive_failures
        if not self._degraded and failures >= DEGRADED_THRESHOLD:
            self._degraded = True
            logger.warning("Link degraded: %d consecutive failures", failures)
        elif self._degraded and failures == 0:
            self._degraded = False
            logger.info("Link recovered")

    async def _publish(self, data: PowerBoxData) -> None:
        for callback in list(self._callbacks):
            try:
                result = callback(data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self._callback_errors += 1
                if self._callback_errors <= 3 or self._callback_errors % 30 == 0:
                    logger.exception("Snapshot callback error (error %d)", self._callback_errors)

    async def run(self):
        """Main poll loop, until stop()."""
        self._running = True
        self._stopped = False
        while self._running:
            try:
                await self.tick()
            except Exception:
                logger.exception("Error in poll loop")
            await asyncio.sleep(self.poll_interval)

    def get_status_detail(self) -> dict:
        now = time.time()
        detail = {
            "connected": self.is_connected,
            "degraded": self._degraded,
            "poll_count": self._poll_count,
            "read_failures": self._read_failures,
            "interrupted_sweeps": self._interrupted_sweeps,
            "last_poll_duration_ms": round(self._last_poll_duration * 1000, 1) if self._last_poll_duration else None,
            "last_successful_poll": self._last_successful_poll or None,
            "seconds_since_last_poll": round(now - self._last_successful_poll, 1) if self._last_successful_poll else None,
        }
        if self._callback_errors:
            detail["callback_errors"] = self._callback_errors
        return detail

    def stop(self):
        self._running = False
        self._stopped = True
