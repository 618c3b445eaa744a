# Open Power Box Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""PowerBoxDriver -- the surface the bridge and other callers talk to.

Owns the transport, the command engine and the poller for one box, runs the
connect sequence, and adds the master DC / dew toggles: while a master is
off, per-port requests for that category are ignored.
"""

import asyncio
import logging

from .command_engine import CommandEngine
from .frame_codec import DeviceError, ProtocolError, format_value
from .opb_model import (
    CATEGORY_NAMES,
    LIMIT_NAMES,
    CachedValue,
    Category,
    LimitSlot,
    PowerBoxData,
    Topology,
    VerifyResult,
)
from .poller import PowerBoxPoller, SnapshotCallback, build_snapshot
from .serial_client import TransportError
from .state_cache import DeviceSession
from .transport import BoxTransport

logger = logging.getLogger(__name__)

# Read failures tolerated while loading settings after connect
_READ_ERRORS = (TransportError, ProtocolError, DeviceError)


class ConnectError(Exception):
    """The link could not be opened or the box did not report its topology."""


class PowerBoxDriver:
    """High-level control of one Open Power Box."""

    def __init__(
        self,
        transport: BoxTransport,
        poll_interval: float = 5.0,
        wifi_apply_delay: float = 5.0,
    ):
        self.transport = transport
        self.engine = CommandEngine(transport)
        self.poller = PowerBoxPoller(self.engine, poll_interval)
        self.wifi_apply_delay = wifi_apply_delay
        self.all_dc = True
        self.all_dew = True

    @property
    def session(self) -> DeviceSession | None:
        return self.engine.session

    @property
    def topology(self) -> Topology | None:
        return self.session.topology if self.session else None

    @property
    def is_connected(self) -> bool:
        return self.session is not None and self.transport.is_connected

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self, path: str | None = None) -> Topology:
        """Open the link, discover the topology and load device settings."""
        if self.session is not None:
            await self.engine.aclose()
            logger.info("Closed the previous session before reconnecting")

        try:
            await self.transport.connect(path)
        except OSError as e:
            raise ConnectError(f"cannot open link: {e}") from e

        try:
            topology = await self.engine.discover_topology()
        except _READ_ERRORS as e:
            self.transport.close()
            raise ConnectError(f"topology discovery failed: {e}") from e

        self.transport.reset_health()
        self.engine.session = DeviceSession(topology)
        self.all_dc = True
        self.all_dew = True
        logger.info("Connected: %s (%d indices)", topology.describe(), topology.num_switch)

        await self._load_settings(topology)
        return topology

    async def _load_settings(self, topology: Topology) -> None:
        """Read WiFi, port names, limits and polarity. Failures are logged."""
        reads = [("IP address", self.engine.get_ip), ("SSID", self.engine.get_ssid)]
        for category in (Category.DC, Category.PWM):
            for n in range(topology.count(category)):
                index = topology.port(category, n)
                reads.append((
                    f"{CATEGORY_NAMES[category]} {n} name",
                    lambda index=index: self.engine.get_name(index),
                ))
        for slot in LimitSlot:
            reads.append((
                f"{LIMIT_NAMES[slot]} limit",
                lambda slot=slot: self.engine.get_limit(slot),
            ))
        for category in Category:
            reads.append((
                f"{CATEGORY_NAMES[category]} polarity",
                lambda category=category: self.engine.get_reverse_polarity(category),
            ))

        for label, read in reads:
            try:
                await read()
            except _READ_ERRORS as e:
                logger.warning("Could not read %s: %s", label, e)

    def disconnect(self) -> None:
        """Drop the session and release the link.

        The port closes once any exchange in flight has its reply.
        """
        self.engine.close()
        logger.info("Disconnected from the power box")

    def _require_session(self) -> DeviceSession:
        if self.session is None:
            raise RuntimeError("not connected to a power box")
        return self.session

    # ------------------------------------------------------------------
    # Generic operations
    # ------------------------------------------------------------------

    async def get_indexed(self, index: int) -> CachedValue | None:
        return await self.engine.get_indexed(index)

    async def set_indexed(self, index: int, value) -> VerifyResult:
        return await self.engine.set_indexed(index, value)

    async def get_name(self, index: int) -> str | None:
        return await self.engine.get_name(index)

    async def set_name(self, index: int, name: str) -> VerifyResult:
        return await self.engine.set_name(index, name)

    async def get_reverse_polarity(self, category: Category) -> bool | None:
        return await self.engine.get_reverse_polarity(category)

    async def set_reverse_polarity(self, category: Category, enabled: bool) -> VerifyResult:
        return await self.engine.set_reverse_polarity(category, enabled)

    async def get_limit(self, slot: LimitSlot) -> float | None:
        return await self.engine.get_limit(slot)

    async def set_limit(self, slot: LimitSlot, value: float) -> VerifyResult:
        return await self.engine.set_limit(slot, value)

    # ------------------------------------------------------------------
    # Port helpers
    # ------------------------------------------------------------------

    async def set_power_port(self, number: int, enabled: bool) -> VerifyResult | None:
        """Switch a DC port. Ignored (None) while the DC master is off."""
        topo = self._require_session().topology
        index = topo.dc(number)
        if not self.all_dc:
            logger.info("All DC outputs are off, ignoring request for DC port %d", number)
            return None
        logger.info("Changing state of DC port %d (index %d) to %d", number, index, int(enabled))
        return await self.engine.set_indexed(index, enabled)

    async def set_dew_port(
        self, number: int, enabled: bool, duty_cycle: int | None = None,
    ) -> VerifyResult | None:
        """Set a dew heater duty cycle (0 when disabled). Gated by the dew master."""
        topo = self._require_session().topology
        index = topo.pwm(number)
        if not self.all_dew:
            logger.info("All dew heaters are off, ignoring request for dew port %d", number)
            return None
        if enabled and duty_cycle is None:
            raise ValueError("duty_cycle is required to enable a dew port")
        value = int(duty_cycle) if enabled else 0
        logger.info("Setting dew port %d to %s with duty cycle %d", number, enabled, value)
        return await self.engine.set_indexed(index, value)

    async def set_usb_port(self, number: int, enabled: bool) -> VerifyResult:
        topo = self._require_session().topology
        return await self.engine.set_indexed(topo.usb(number), enabled)

    async def set_bank(self, enabled: bool, number: int = 0) -> VerifyResult:
        topo = self._require_session().topology
        return await self.engine.set_indexed(topo.bank(number), enabled)

    async def set_relay(self, enabled: bool, number: int = 0) -> VerifyResult:
        topo = self._require_session().topology
        return await self.engine.set_indexed(topo.relay(number), enabled)

    async def set_all_dc(self, enabled: bool) -> dict[int, VerifyResult]:
        """DC master toggle. Turning it off switches every DC port off."""
        topo = self._require_session().topology
        self.all_dc = bool(enabled)
        results: dict[int, VerifyResult] = {}
        if not self.all_dc:
            for n in range(topo.num_dc):
                results[n] = await self.engine.set_indexed(topo.dc(n), False)
        logger.info("All DC outputs %s", "enabled" if self.all_dc else "disabled")
        return results

    async def set_all_dew(self, enabled: bool) -> dict[int, VerifyResult]:
        """Dew master toggle. Turning it off sets every duty cycle to 0."""
        topo = self._require_session().topology
        self.all_dew = bool(enabled)
        results: dict[int, VerifyResult] = {}
        if not self.all_dew:
            for n in range(topo.num_pwm):
                results[n] = await self.engine.set_indexed(topo.pwm(n), 0)
        logger.info("All dew heaters %s", "enabled" if self.all_dew else "disabled")
        return results

    # ------------------------------------------------------------------
    # WiFi / reboot
    # ------------------------------------------------------------------

    async def get_wifi(self) -> tuple[str | None, str | None]:
        """Re-read (ip, ssid) from the box."""
        ip = await self.engine.get_ip()
        ssid = await self.engine.get_ssid()
        return ip, ssid

    async def set_wifi(self, ssid: str, password: str) -> VerifyResult:
        """Store credentials, reboot the radio, then re-read the IP.

        Returns the verification result of the SSID write.
        """
        self._require_session()
        # Reject both values before the SSID reaches the box
        format_value(ssid)
        format_value(password)
        result = await self.engine.set_ssid(ssid)
        if result is not VerifyResult.CONFIRMED:
            logger.warning("SSID change not confirmed (%s)", result.value)
        await self.engine.set_password(password)
        await self.engine.reboot()
        logger.info("Applying WiFi settings, waiting %.1fs", self.wifi_apply_delay)
        await asyncio.sleep(self.wifi_apply_delay)
        try:
            await self.engine.get_ip()
        except _READ_ERRORS as e:
            logger.warning("Could not read IP address after WiFi change: %s", e)
        return result

    async def reboot(self) -> None:
        logger.info("Rebooting device...")
        await self.engine.reboot()

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def on_snapshot(self, callback: SnapshotCallback) -> None:
        self.poller.on_snapshot(callback)

    def snapshot(self) -> PowerBoxData | None:
        """Latest snapshot derived from the cache, None when disconnected."""
        if self.session is None:
            return None
        return build_snapshot(self.session.cache)
