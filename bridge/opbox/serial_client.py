# Open Power Box Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Serial link to the Open Power Box.

Owns the pyserial port for the lifetime of a connection: 115200 8N1, raw,
no flow control, ~1s read timeout. The box is an ESP32 behind a CP210x/CH340
USB-UART bridge that uses DTR+RTS for auto-reset, so both lines are held low
before the port is opened and again after it is configured, and HUPCL is
cleared so closing the port never pulses DTR.

Blocking pyserial calls run in the default executor; the async send/receive
halves are what the command engine uses.
"""

import asyncio
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

try:
    import serial
    HAS_PYSERIAL = True
except ImportError:
    HAS_PYSERIAL = False

try:
    import termios
except ImportError:  # not POSIX
    termios = None


class TransportError(ConnectionError):
    """Link-layer failure: open, write or read."""


class SerialClient:
    """Raw byte transport over the box's USB serial port.

    Provides health tracking with the same shape as the poller expects
    from any transport.
    """

    TERMINATOR = b";"

    def __init__(
        self,
        port: str,
        baud: int = 115200,
        timeout: float = 1.0,
        read_sections: int = 2,
        command_delay: float = 0.1,
        settle_delay: float = 0.5,
    ):
        if not HAS_PYSERIAL:
            raise RuntimeError("pyserial is required for serial transport: pip install pyserial")

        self._port = port
        self._baud = baud
        self._timeout = timeout
        self._read_sections = read_sections
        self._command_delay = command_delay
        self._settle_delay = settle_delay

        self._serial: Optional["serial.Serial"] = None

        # Health tracking
        self._total_commands = 0
        self._failed_commands = 0
        self._consecutive_failures = 0
        self._last_success_time: float | None = None
        self._last_error_time: float | None = None
        self._last_error_msg: str | None = None

    @property
    def port(self) -> str:
        return self._port

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def is_connected(self) -> bool:
        return self._serial is not None and self._serial.is_open

    def get_health(self) -> dict:
        """Return serial link health metrics."""
        return {
            "port": self._port,
            "baud": self._baud,
            "connected": self.is_connected,
            "total_commands": self._total_commands,
            "failed_commands": self._failed_commands,
            "consecutive_failures": self._consecutive_failures,
            "last_success": self._last_success_time,
            "last_error": self._last_error_time,
            "last_error_msg": self._last_error_msg,
            "reachable": self._consecutive_failures < 10,
        }

    def reset_health(self) -> None:
        """Zero out failure counters after recovery."""
        self._consecutive_failures = 0
        self._failed_commands = 0
        self._last_error_msg = None
        self._last_error_time = None

    def _record_success(self):
        self._consecutive_failures = 0
        self._last_success_time = time.time()

    def _record_failure(self, msg: str):
        self._failed_commands += 1
        self._consecutive_failures += 1
        self._last_error_time = time.time()
        self._last_error_msg = msg
        if self._consecutive_failures == 1:
            logger.warning("Serial: %s", msg)
        elif self._consecutive_failures <= 5:
            logger.error("Serial: %s (failure %d)", msg, self._consecutive_failures)
        elif self._consecutive_failures % 30 == 0:
            logger.error(
                "Serial: box unreachable for %d consecutive failures: %s",
                self._consecutive_failures, msg,
            )

    # ------------------------------------------------------------------
    # Open / close
    # ------------------------------------------------------------------

    async def connect(self, path: str | None = None) -> None:
        """Open and configure the serial port."""
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self.open, path)

    def open(self, path: str | None = None) -> None:
        """Synchronous open + line configuration + settle delay."""
        if path:
            self._port = path
        if self._serial and self._serial.is_open:
            self._serial.close()
        self._serial = None

        ser = serial.Serial()
        ser.port = self._port
        ser.baudrate = self._baud
        ser.bytesize = 8
        ser.parity = "N"
        ser.stopbits = 1
        ser.xonxoff = False
        ser.rtscts = False
        ser.dsrdtr = False
        ser.timeout = self._timeout
        ser.write_timeout = self._timeout
        # Applied by pyserial at open() time, before any attribute change
        ser.dtr = False
        ser.rts = False

        try:
            ser.open()
        except (OSError, ValueError) as e:
            raise TransportError(f"cannot open {self._port}: {e}") from e

        try:
            self._disable_hangup(ser)
            ser.reset_input_buffer()
            ser.reset_output_buffer()
            self._clear_modem_lines(ser)
        except (OSError, ValueError) as e:
            try:
                ser.close()
            except (OSError, ValueError):
                logger.debug("Error closing %s after failed setup", self._port, exc_info=True)
            raise TransportError(f"cannot configure {self._port}: {e}") from e

        self._serial = ser
        time.sleep(self._settle_delay)
        logger.info("Opened serial port %s at %d baud (DTR/RTS held LOW)", self._port, self._baud)

    @staticmethod
    def _clear_modem_lines(ser) -> None:
        ser.dtr = False
        ser.rts = False

    @staticmethod
    def _disable_hangup(ser) -> None:
        """Clear HUPCL so closing the port does not drop DTR."""
        if termios is None:
            return
        try:
            fd = ser.fileno()
            attrs = termios.tcgetattr(fd)
            attrs[2] &= ~termios.HUPCL
            termios.tcsetattr(fd, termios.TCSANOW, attrs)
        except (OSError, termios.error) as e:
            logger.warning("Serial: could not clear HUPCL: %s", e)

    def close(self) -> None:
        """Close the serial port. Modem lines are left as configured."""
        if self._serial and self._serial.is_open:
            try:
                self._serial.close()
                logger.info("Serial: closed %s", self._port)
            except Exception:
                logger.debug("Error closing serial port", exc_info=True)
        self._serial = None

    def _require_open(self):
        ser = self._serial
        if not ser or not ser.is_open:
            raise TransportError("Serial port not open")
        return ser

    # ------------------------------------------------------------------
    # Blocking byte I/O
    # ------------------------------------------------------------------

    def write(self, data: bytes) -> int:
        ser = self._require_open()
        try:
            written = ser.write(data)
        except (OSError, ValueError) as e:
            raise TransportError(f"write failed: {e}") from e
        if written is not None and written < len(data):
            raise TransportError(f"short write ({written}/{len(data)} bytes)")
        return len(data)

    def read_until(self, terminator: bytes = TERMINATOR, max_sections: int | None = None) -> bytes:
        """Read until *terminator*, allowing up to *max_sections* timeouts.

        Returns everything read including the terminator. Raises
        TransportError instead of returning partial data.
        """
        ser = self._require_open()
        sections = max_sections or self._read_sections
        buf = b""
        for _ in range(sections):
            try:
                buf += ser.read_until(terminator)
            except (OSError, ValueError) as e:
                raise TransportError(f"read failed: {e}") from e
            if terminator in buf:
                return buf
        raise TransportError(
            f"no {terminator!r} within {sections} read sections (got {buf[-60:]!r})"
        )

    # ------------------------------------------------------------------
    # Async halves used by the command engine
    # ------------------------------------------------------------------

    def _send_sync(self, payload: bytes) -> None:
        ser = self._require_open()
        # Drop stale replies from a previous timed-out exchange
        ser.reset_input_buffer()
        self.write(payload)
        time.sleep(self._command_delay)

    async def send(self, payload: bytes) -> None:
        """Write one encoded command, then wait out the firmware turnaround."""
        self._total_commands += 1
        try:
            loop = asyncio.get_event_loop()
            await loop.run_in_executor(None, self._send_sync, payload)
        except TransportError as e:
            self._record_failure(f"send {payload!r}: {e}")
            raise
        logger.debug("CMD <%s>", payload.decode("ascii", errors="replace").strip())

    async def receive(self) -> str:
        """Block for one terminated reply and return it as text."""
        try:
            loop = asyncio.get_event_loop()
            data = await loop.run_in_executor(None, self.read_until, self.TERMINATOR)
        except TransportError as e:
            self._record_failure(f"receive: {e}")
            raise
        self._record_success()
        return data.decode("ascii", errors="replace")
