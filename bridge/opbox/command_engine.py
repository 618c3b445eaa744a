# Open Power Box Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Get/set primitives for the Open Power Box, built on the frame codec.

Every primitive is one synchronous round trip: encode, send, block for the
';'-terminated reply, decode, update the StateCache. A single asyncio.Lock
keeps exactly one command in flight.

Mutating primitives follow one write-with-verify sequence:
  1. capture the cached value
  2. send, then store the requested value before the reply arrives
  3. await the reply
  4. E frame -> DEVICE_ERROR; malformed / wrong tag or index ->
     PROTOCOL_ERROR. Either way the cache is left as it stands, holding
     the optimistic value
  5. echo equal to the request -> CONFIRMED; otherwise the captured value
     is restored -> MISMATCH
A failed set is never retried.
"""

import asyncio
import logging
from typing import Any, Callable

from .frame_codec import (
    REPLY_TAGS,
    DeviceError,
    Frame,
    ProtocolError,
    decode_reply,
    encode_command,
    format_value,
    parse_topology,
)
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
    CachedValue,
    Category,
    LimitSlot,
    Topology,
    ValueKind,
    ValueParseError,
    VerifyResult,
    parse_as,
    values_equal,
)
from .serial_client import TransportError
from .state_cache import DeviceSession, StateCache
from .transport import BoxTransport

logger = logging.getLogger(__name__)

# Replies to these carry no meaningful index
DEVICE_WIDE = frozenset({CMD_TOPOLOGY, CMD_GET_IP, CMD_GET_SSID, CMD_SET_SSID})


class CommandEngine:
    """Request/reply primitives plus the write-with-verify machine."""

    def __init__(self, transport: BoxTransport, session: DeviceSession | None = None):
        self._transport = transport
        self.session = session
        self._lock = asyncio.Lock()
        self._close_pending = False

    @property
    def transport(self) -> BoxTransport:
        return self._transport

    @property
    def cache(self) -> StateCache:
        if self.session is None:
            raise RuntimeError("no device session (not connected)")
        return self.session.cache

    @property
    def topology(self) -> Topology:
        return self.cache.topology

    # ------------------------------------------------------------------
    # Round trips
    # ------------------------------------------------------------------

    async def _round_trip(
        self, command: str, index: int, value=None,
        on_sent: Callable[[], None] | None = None,
    ) -> Frame:
        payload = encode_command(command, index, value)
        async with self._lock:
            try:
                await self._transport.send(payload)
                if on_sent is not None:
                    on_sent()
                raw = await self._transport.receive()
            finally:
                self._close_if_pending()
        return decode_reply(raw)

    async def _fire(self, command: str, index: int, value=None) -> None:
        """Send a command that gets no reply."""
        payload = encode_command(command, index, value)
        async with self._lock:
            try:
                await self._transport.send(payload)
            finally:
                self._close_if_pending()

    # ------------------------------------------------------------------
    # Link release
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Drop the session and release the link.

        A round trip in flight keeps the port open until its reply or
        timeout; the link is then closed before the lock is released.
        """
        self.session = None
        if self._lock.locked():
            self._close_pending = True
            logger.debug("Close deferred until the current exchange finishes")
        else:
            self._transport.close()

    async def aclose(self) -> None:
        """Wait for any exchange in flight, then drop the session and close."""
        async with self._lock:
            self.session = None
            self._close_pending = False
            self._transport.close()

    def _close_if_pending(self) -> None:
        if self._close_pending:
            self._close_pending = False
            self._transport.close()

    def _expected(self, command: str, index: int) -> tuple[str, int | None]:
        return REPLY_TAGS[command], (None if command in DEVICE_WIDE else index)

    async def _read(self, command: str, index: int) -> Frame | None:
        """Non-mutating query. None when the reply is for something else."""
        frame = await self._round_trip(command, index)
        if frame.is_error:
            logger.info("The power box returned error: %s (index %s)", frame.payload, frame.index)
            raise DeviceError(frame.index, frame.payload)
        tag, want_index = self._expected(command, index)
        if not frame.matches(tag, want_index):
            logger.warning(
                "Ignoring reply %s%s:%s to '%s %d'",
                frame.tag, frame.index, frame.payload, command, index,
            )
            return None
        return frame

    async def _write_verify(
        self, command: str, index: int, value, kind: ValueKind, label: str,
        get: Callable[[], Any], put: Callable[[Any], None],
        restore: Callable[[Any], None],
    ) -> VerifyResult:
        previous = get()
        try:
            frame = await self._round_trip(command, index, value, on_sent=lambda: put(value))
        except ProtocolError as e:
            logger.warning("%s: malformed reply (%s)", label, e)
            return VerifyResult.PROTOCOL_ERROR
        except TransportError:
            # No reply means nothing confirmed the write
            restore(previous)
            raise

        if frame.is_error:
            logger.info("The power box returned error for %s: %s", label, frame.payload)
            return VerifyResult.DEVICE_ERROR

        tag, want_index = self._expected(command, index)
        if not frame.matches(tag, want_index):
            logger.warning(
                "%s: reply %s%s:%s does not answer the request",
                label, frame.tag, frame.index, frame.payload,
            )
            return VerifyResult.PROTOCOL_ERROR

        requested = parse_as(format_value(value), kind)
        try:
            echoed = parse_as(frame.payload, kind)
            confirmed = values_equal(requested, echoed, kind)
        except ValueParseError:
            confirmed = False

        if confirmed:
            return VerifyResult.CONFIRMED

        restore(previous)
        logger.warning(
            "ERROR: the power box didn't acknowledge %s (requested %s, device reports %r)",
            label, format_value(value), frame.payload,
        )
        return VerifyResult.MISMATCH

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    async def discover_topology(self) -> Topology:
        frame = await self._read(CMD_TOPOLOGY, 0)
        if frame is None:
            raise ProtocolError("topology query answered with an unrelated frame")
        topology = parse_topology(frame.payload)
        logger.info("Number of switches returned by the device: %s", topology.describe())
        return topology

    # ------------------------------------------------------------------
    # Switch / dew / sensor values
    # ------------------------------------------------------------------

    async def get_indexed(self, index: int) -> CachedValue | None:
        """Read the value at a global index into the cache."""
        cache = self.cache
        cache.get(index)  # range check before touching the wire
        frame = await self._read(CMD_GET, index)
        if frame is None:
            return cache.get(index)
        return cache.set(index, frame.payload)

    def _coerce(self, value, kind: ValueKind):
        if kind is ValueKind.BOOL:
            return int(bool(value))
        if kind is ValueKind.INT:
            return int(value)
        if kind is ValueKind.FLOAT:
            return float(value)
        return str(value)

    async def set_indexed(self, index: int, value) -> VerifyResult:
        """Write a switch or dew duty-cycle value with verification."""
        cache = self.cache
        if self.topology.category_of(index) is None:
            raise ValueError(f"index {index} is a sensor slot and cannot be set")
        kind = cache.kind_of(index)
        value = self._coerce(value, kind)
        return await self._write_verify(
            CMD_SET, index, value, kind, f"switch {index}",
            get=lambda: cache.get(index),
            put=lambda v: cache.set(index, format_value(v)),
            restore=lambda prev: cache.restore(index, prev),
        )

    # ------------------------------------------------------------------
    # Port names
    # ------------------------------------------------------------------

    def _check_port(self, index: int) -> None:
        if not 0 <= index < self.topology.total:
            raise IndexError(f"index {index} is not a port (0..{self.topology.total - 1})")

    async def get_name(self, index: int) -> str | None:
        self._check_port(index)
        frame = await self._read(CMD_GET_NAME, index)
        if frame is None:
            return self.cache.names.get(index)
        self.cache.names[index] = frame.payload.strip()
        return self.cache.names[index]

    async def set_name(self, index: int, name: str) -> VerifyResult:
        self._check_port(index)
        names = self.cache.names
        name = name.strip()

        def restore(prev):
            if prev is None:
                names.pop(index, None)
            else:
                names[index] = prev

        return await self._write_verify(
            CMD_SET_NAME, index, name, ValueKind.TEXT, f"name of port {index}",
            get=lambda: names.get(index),
            put=lambda v: names.__setitem__(index, v),
            restore=restore,
        )

    # ------------------------------------------------------------------
    # Reverse polarity
    # ------------------------------------------------------------------

    async def get_reverse_polarity(self, category: Category) -> bool | None:
        category = Category(category)
        frame = await self._read(CMD_GET_REVERSE, int(category))
        if frame is None:
            return self.cache.reverse.get(category)
        try:
            flag = parse_as(frame.payload, ValueKind.BOOL)
        except ValueParseError as e:
            raise ProtocolError(f"bad polarity value: {e}") from None
        self.cache.reverse[category] = flag
        return flag

    async def set_reverse_polarity(self, category: Category, enabled: bool) -> VerifyResult:
        category = Category(category)
        reverse = self.cache.reverse

        def restore(prev):
            if prev is None:
                reverse.pop(category, None)
            else:
                reverse[category] = prev

        return await self._write_verify(
            CMD_SET_REVERSE, int(category), bool(enabled), ValueKind.BOOL,
            f"{category.name} polarity",
            get=lambda: reverse.get(category),
            put=lambda v: reverse.__setitem__(category, bool(v)),
            restore=restore,
        )

    # ------------------------------------------------------------------
    # Current limits
    # ------------------------------------------------------------------

    async def get_limit(self, slot: LimitSlot) -> float | None:
        slot = LimitSlot(slot)
        frame = await self._read(CMD_GET_LIMIT, int(slot))
        if frame is None:
            return self.cache.limits.get(slot)
        try:
            limit = parse_as(frame.payload, ValueKind.FLOAT)
        except ValueParseError as e:
            raise ProtocolError(f"bad limit value: {e}") from None
        self.cache.limits[slot] = limit
        return limit

    async def set_limit(self, slot: LimitSlot, value: float) -> VerifyResult:
        slot = LimitSlot(slot)
        limits = self.cache.limits

        def restore(prev):
            if prev is None:
                limits.pop(slot, None)
            else:
                limits[slot] = prev

        return await self._write_verify(
            CMD_SET_LIMIT, int(slot), float(value), ValueKind.FLOAT,
            f"{slot.name} limit",
            get=lambda: limits.get(slot),
            put=lambda v: limits.__setitem__(slot, float(v)),
            restore=restore,
        )

    # ------------------------------------------------------------------
    # WiFi / reboot
    # ------------------------------------------------------------------

    async def get_ip(self) -> str | None:
        frame = await self._read(CMD_GET_IP, 0)
        if frame is None:
            return None
        self.cache.ip = frame.payload.strip()
        logger.info("IP Address returned by the device: %s", self.cache.ip)
        return self.cache.ip

    async def get_ssid(self) -> str | None:
        frame = await self._read(CMD_GET_SSID, 0)
        if frame is None:
            return None
        self.cache.ssid = frame.payload.strip()
        logger.info("SSID returned by the device: %s", self.cache.ssid)
        return self.cache.ssid

    async def set_ssid(self, ssid: str) -> VerifyResult:
        cache = self.cache
        return await self._write_verify(
            CMD_SET_SSID, 0, ssid.strip(), ValueKind.TEXT, "WiFi SSID",
            get=lambda: cache.ssid,
            put=lambda v: setattr(cache, "ssid", v),
            restore=lambda prev: setattr(cache, "ssid", prev),
        )

    async def set_password(self, password: str) -> None:
        """Send the WiFi password. The box does not answer."""
        await self._fire(CMD_SET_PASSWORD, 0, password)

    async def reboot(self) -> None:
        """Reboot the box, applying pending network settings. No reply."""
        await self._fire(CMD_REBOOT, 0)
