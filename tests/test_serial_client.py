# Open Power Box Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Tests for SerialClient with mocked pyserial."""

import os
import sys
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "bridge"))

from opbox.serial_client import SerialClient, TransportError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

HUPCL = 0x400


def _make_mock_serial(sections: list[bytes] | None = None):
    """Create a mock serial.Serial whose read_until returns *sections* in turn."""
    mock = MagicMock()
    mock.is_open = True
    mock.fileno.return_value = 7

    queue = list(sections or [])

    def _read_until(terminator=b"\n"):
        return queue.pop(0) if queue else b""

    mock.read_until = MagicMock(side_effect=_read_until)
    mock.write = MagicMock(side_effect=lambda data: len(data))
    return mock


def _make_termios():
    mock = MagicMock()
    mock.HUPCL = HUPCL
    mock.TCSANOW = 0
    mock.error = OSError
    mock.tcgetattr.return_value = [0, 0, HUPCL | 0x30, 0, 0, 0, []]
    return mock


def _open_client(mock_ser, **kwargs):
    """Open a SerialClient against *mock_ser* with sleeps and termios patched."""
    client = SerialClient(port="/dev/ttyUSB0", settle_delay=0, command_delay=0, **kwargs)
    with patch("opbox.serial_client.serial") as mock_serial_mod, \
         patch("opbox.serial_client.termios", _make_termios()), \
         patch("opbox.serial_client.time.sleep"):
        mock_serial_mod.Serial.return_value = mock_ser
        client.open()
    return client


# ---------------------------------------------------------------------------
# Construction tests
# ---------------------------------------------------------------------------

class TestSerialClientInit:
    def test_default_params(self):
        with patch("opbox.serial_client.HAS_PYSERIAL", True):
            client = SerialClient(port="/dev/ttyUSB0")
        assert client.port == "/dev/ttyUSB0"
        assert client._baud == 115200
        assert client._timeout == 1.0
        assert client._read_sections == 2
        assert client.consecutive_failures == 0
        assert client.is_connected is False

    def test_no_pyserial_raises(self):
        with patch("opbox.serial_client.HAS_PYSERIAL", False):
            with pytest.raises(RuntimeError, match="pyserial"):
                SerialClient(port="/dev/ttyUSB0")

    def test_transport_error_is_connection_error(self):
        assert issubclass(TransportError, ConnectionError)


# ---------------------------------------------------------------------------
# Open / line discipline
# ---------------------------------------------------------------------------

class TestOpen:
    def test_lines_low_before_open(self):
        mock_ser = _make_mock_serial()
        seen = {}

        def _open():
            seen["dtr"] = mock_ser.dtr
            seen["rts"] = mock_ser.rts

        mock_ser.open.side_effect = _open
        _open_client(mock_ser)
        assert seen == {"dtr": False, "rts": False}

    def test_lines_low_after_open(self):
        mock_ser = _make_mock_serial()
        _open_client(mock_ser)
        assert mock_ser.dtr is False
        assert mock_ser.rts is False

    def test_port_settings(self):
        mock_ser = _make_mock_serial()
        _open_client(mock_ser, timeout=1.5)
        assert mock_ser.port == "/dev/ttyUSB0"
        assert mock_ser.baudrate == 115200
        assert mock_ser.bytesize == 8
        assert mock_ser.parity == "N"
        assert mock_ser.stopbits == 1
        assert mock_ser.xonxoff is False
        assert mock_ser.rtscts is False
        assert mock_ser.dsrdtr is False
        assert mock_ser.timeout == 1.5

    def test_hupcl_cleared(self):
        mock_ser = _make_mock_serial()
        termios_mock = _make_termios()
        client = SerialClient(port="/dev/ttyUSB0", settle_delay=0)
        with patch("opbox.serial_client.serial") as mock_serial_mod, \
             patch("opbox.serial_client.termios", termios_mock), \
             patch("opbox.serial_client.time.sleep"):
            mock_serial_mod.Serial.return_value = mock_ser
            client.open()

        termios_mock.tcgetattr.assert_called_once_with(7)
        fd, when, attrs = termios_mock.tcsetattr.call_args[0]
        assert fd == 7
        assert attrs[2] & HUPCL == 0
        assert attrs[2] & 0x30 == 0x30

    def test_buffers_flushed(self):
        mock_ser = _make_mock_serial()
        _open_client(mock_ser)
        mock_ser.reset_input_buffer.assert_called()
        mock_ser.reset_output_buffer.assert_called()

    def test_settle_delay(self):
        mock_ser = _make_mock_serial()
        client = SerialClient(port="/dev/ttyUSB0", settle_delay=0.5)
        with patch("opbox.serial_client.serial") as mock_serial_mod, \
             patch("opbox.serial_client.termios", _make_termios()), \
             patch("opbox.serial_client.time.sleep") as mock_sleep:
            mock_serial_mod.Serial.return_value = mock_ser
            client.open()
        mock_sleep.assert_called_with(0.5)

    def test_open_failure_raises_transport_error(self):
        mock_ser = _make_mock_serial()
        mock_ser.open.side_effect = OSError("No such file or directory")
        client = SerialClient(port="/dev/ttyUSB9", settle_delay=0)
        with patch("opbox.serial_client.serial") as mock_serial_mod, \
             patch("opbox.serial_client.termios", _make_termios()):
            mock_serial_mod.Serial.return_value = mock_ser
            with pytest.raises(TransportError, match="ttyUSB9"):
                client.open()
        assert client.is_connected is False

    @pytest.mark.parametrize("step", ["reset_input_buffer", "reset_output_buffer"])
    def test_setup_failure_after_open_closes_port(self, step):
        mock_ser = _make_mock_serial()
        getattr(mock_ser, step).side_effect = OSError(5, "I/O error")
        client = SerialClient(port="/dev/ttyUSB0", settle_delay=0)
        with patch("opbox.serial_client.serial") as mock_serial_mod, \
             patch("opbox.serial_client.termios", _make_termios()), \
             patch("opbox.serial_client.time.sleep"):
            mock_serial_mod.Serial.return_value = mock_ser
            with pytest.raises(TransportError, match="cannot configure"):
                client.open()
        mock_ser.close.assert_called_once()
        assert client.is_connected is False

    def test_path_override(self):
        mock_ser = _make_mock_serial()
        client = SerialClient(port="/dev/ttyUSB0", settle_delay=0)
        with patch("opbox.serial_client.serial") as mock_serial_mod, \
             patch("opbox.serial_client.termios", _make_termios()), \
             patch("opbox.serial_client.time.sleep"):
            mock_serial_mod.Serial.return_value = mock_ser
            client.open("/dev/ttyACM0")
        assert client.port == "/dev/ttyACM0"
        assert mock_ser.port == "/dev/ttyACM0"

    @pytest.mark.asyncio
    async def test_async_connect(self):
        mock_ser = _make_mock_serial()
        client = SerialClient(port="/dev/ttyUSB0", settle_delay=0)
        with patch("opbox.serial_client.serial") as mock_serial_mod, \
             patch("opbox.serial_client.termios", _make_termios()), \
             patch("opbox.serial_client.time.sleep"):
            mock_serial_mod.Serial.return_value = mock_ser
            await client.connect()
        assert client.is_connected is True


# ---------------------------------------------------------------------------
# Byte I/O
# ---------------------------------------------------------------------------

class TestReadUntil:
    def test_single_section(self):
        client = _open_client(_make_mock_serial([b"#G3:1;"]))
        assert client.read_until(b";") == b"#G3:1;"

    def test_two_sections(self):
        client = _open_client(_make_mock_serial([b"#G12:12.", b"41;"]))
        assert client.read_until(b";") == b"#G12:12.41;"

    def test_budget_exhausted_raises(self):
        client = _open_client(_make_mock_serial([b"#G12:", b"12.4", b"1;"]))
        with pytest.raises(TransportError):
            client.read_until(b";")

    def test_timeout_raises(self):
        client = _open_client(_make_mock_serial([]))
        with pytest.raises(TransportError, match="read sections"):
            client.read_until(b";")

    def test_read_error_wrapped(self):
        mock_ser = _make_mock_serial()
        client = _open_client(mock_ser)
        mock_ser.read_until.side_effect = OSError("device reports readiness to read but returned no data")
        with pytest.raises(TransportError):
            client.read_until(b";")

    def test_not_open_raises(self):
        client = SerialClient(port="/dev/ttyUSB0")
        with pytest.raises(TransportError, match="not open"):
            client.read_until(b";")


class TestWrite:
    def test_write_returns_length(self):
        mock_ser = _make_mock_serial()
        client = _open_client(mock_ser)
        assert client.write(b"# G 0\n") == 6
        mock_ser.write.assert_called_once_with(b"# G 0\n")

    def test_short_write_raises(self):
        mock_ser = _make_mock_serial()
        client = _open_client(mock_ser)
        mock_ser.write.side_effect = lambda data: 2
        with pytest.raises(TransportError, match="short write"):
            client.write(b"# G 0\n")

    def test_write_error_wrapped(self):
        mock_ser = _make_mock_serial()
        client = _open_client(mock_ser)
        mock_ser.write.side_effect = OSError("Input/output error")
        with pytest.raises(TransportError):
            client.write(b"# G 0\n")


class TestSendReceive:
    @pytest.mark.asyncio
    async def test_send_flushes_and_waits(self):
        mock_ser = _make_mock_serial()
        client = _open_client(mock_ser)
        client._command_delay = 0.1
        mock_ser.reset_input_buffer.reset_mock()
        with patch("opbox.serial_client.time.sleep") as mock_sleep:
            await client.send(b"# S 3 1\n")
        mock_ser.reset_input_buffer.assert_called_once()
        mock_ser.write.assert_called_with(b"# S 3 1\n")
        mock_sleep.assert_called_once_with(0.1)

    @pytest.mark.asyncio
    async def test_receive_decodes(self):
        client = _open_client(_make_mock_serial([b"noise#G3:1;"]))
        assert await client.receive() == "noise#G3:1;"
        assert client.consecutive_failures == 0
        assert client._last_success_time is not None

    @pytest.mark.asyncio
    async def test_receive_failure_recorded(self):
        client = _open_client(_make_mock_serial([]))
        with pytest.raises(TransportError):
            await client.receive()
        assert client.consecutive_failures == 1
        assert client.get_health()["failed_commands"] == 1

    @pytest.mark.asyncio
    async def test_send_when_closed_recorded(self):
        client = SerialClient(port="/dev/ttyUSB0")
        with pytest.raises(TransportError):
            await client.send(b"# G 0\n")
        assert client.consecutive_failures == 1
        assert client.get_health()["total_commands"] == 1


# ---------------------------------------------------------------------------
# Health / close
# ---------------------------------------------------------------------------

class TestHealth:
    def test_reachable_threshold(self):
        client = SerialClient(port="/dev/ttyUSB0")
        for _ in range(9):
            client._record_failure("timeout")
        assert client.get_health()["reachable"] is True
        client._record_failure("timeout")
        assert client.get_health()["reachable"] is False

    def test_record_success_resets(self):
        client = SerialClient(port="/dev/ttyUSB0")
        client._record_failure("timeout")
        client._record_success()
        assert client.consecutive_failures == 0

    def test_reset_health(self):
        client = SerialClient(port="/dev/ttyUSB0")
        client._record_failure("timeout")
        client.reset_health()
        health = client.get_health()
        assert health["failed_commands"] == 0
        assert health["last_error_msg"] is None


class TestClose:
    def test_close(self):
        mock_ser = _make_mock_serial()
        client = _open_client(mock_ser)
        client.close()
        mock_ser.close.assert_called_once()
        assert client.is_connected is False

    def test_close_does_not_touch_modem_lines(self):
        mock_ser = _make_mock_serial()
        client = _open_client(mock_ser)
        mock_ser.dtr = "untouched"
        client.close()
        assert mock_ser.dtr == "untouched"

    def test_close_error_suppressed(self):
        mock_ser = _make_mock_serial()
        client = _open_client(mock_ser)
        mock_ser.close.side_effect = OSError("gone")
        client.close()
        assert client.is_connected is False
