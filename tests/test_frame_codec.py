# Open Power Box Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Tests for the request encoder, reply decoder and topology parser."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "bridge"))

from opbox.frame_codec import (
    REPLY_TAGS,
    DeviceError,
    ProtocolError,
    decode_reply,
    encode_command,
    format_value,
    parse_topology,
)


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

class TestEncodeCommand:
    def test_set_switch(self):
        assert encode_command("S", 3, 1) == b"# S 3 1\n"

    def test_get_without_value(self):
        assert encode_command("G", 12) == b"# G 12\n"

    def test_bool_value(self):
        assert encode_command("R", 0, True) == b"# R 0 1\n"
        assert encode_command("S", 0, False) == b"# S 0 0\n"

    def test_float_uses_six_decimals(self):
        assert encode_command("L", 2, 2.5) == b"# L 2 2.500000\n"

    def test_text_value(self):
        assert encode_command("N", 0, "Main Camera") == b"# N 0 Main Camera\n"

    def test_text_with_newline_rejected(self):
        with pytest.raises(ValueError):
            encode_command("F", 0, "bad\nssid")

    @pytest.mark.parametrize("text", ["Cam;era", "#1 scope", "end;"])
    def test_text_with_frame_delimiters_rejected(self, text):
        with pytest.raises(ValueError, match="cannot contain"):
            encode_command("N", 2, text)

    def test_multi_char_command_rejected(self):
        with pytest.raises(ValueError):
            encode_command("GG", 0)

    def test_format_value(self):
        assert format_value(0.1) == "0.100000"
        assert format_value(55) == "55"


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

class TestDecodeReply:
    def test_simple_get(self):
        frame = decode_reply("#G3:1;")
        assert frame.tag == "G"
        assert frame.index == 3
        assert frame.payload == "1"
        assert not frame.is_error

    def test_noise_before_hash_is_discarded(self):
        frame = decode_reply("\x00boot garbage\r\n#G12:12.41;")
        assert frame.matches("G", 12)
        assert frame.payload == "12.41"

    def test_error_frame(self):
        frame = decode_reply("#E3:overcurrent;")
        assert frame.is_error
        assert frame.index == 3
        assert frame.payload == "overcurrent"

    def test_error_frame_without_colon(self):
        frame = decode_reply("#Ebusy;")
        assert frame.is_error
        assert frame.index is None

    def test_device_wide_reply_has_no_index(self):
        frame = decode_reply("#i:192.168.1.20;")
        assert frame.tag == "i"
        assert frame.index is None
        assert frame.payload == "192.168.1.20"
        assert frame.matches("i")

    def test_payload_may_contain_colons(self):
        assert decode_reply("#n0:Cam:Main;").payload == "Cam:Main"

    def test_no_hash_raises(self):
        with pytest.raises(ProtocolError):
            decode_reply("G3:1;")

    def test_missing_colon_raises(self):
        with pytest.raises(ProtocolError):
            decode_reply("#G31;")

    def test_bad_index_raises(self):
        with pytest.raises(ProtocolError):
            decode_reply("#Gx:1;")

    def test_empty_body_raises(self):
        with pytest.raises(ProtocolError):
            decode_reply("#;")

    def test_protocol_error_is_value_error(self):
        assert issubclass(ProtocolError, ValueError)

    def test_matches_checks_index(self):
        frame = decode_reply("#G4:1;")
        assert not frame.matches("G", 3)
        assert not frame.matches("n", 4)

    def test_multi_frame_read_yields_first_frame(self):
        frame = decode_reply("xx#G0:1;#G1:0;")
        assert (frame.tag, frame.index, frame.payload) == ("G", 0, "1")


class TestReplyTags:
    def test_setters_answer_with_getter_tag(self):
        assert REPLY_TAGS["S"] == "G"
        assert REPLY_TAGS["N"] == "n"
        assert REPLY_TAGS["R"] == "r"
        assert REPLY_TAGS["L"] == "l"
        assert REPLY_TAGS["F"] == "f"
        assert REPLY_TAGS["I"] == "i"

    def test_fire_and_forget(self):
        assert REPLY_TAGS["H"] is None
        assert REPLY_TAGS["p"] is None


class TestDeviceError:
    def test_carries_index_and_message(self):
        err = DeviceError(3, "overcurrent")
        assert err.index == 3
        assert err.message == "overcurrent"
        assert "overcurrent" in str(err)


# ---------------------------------------------------------------------------
# Topology
# ---------------------------------------------------------------------------

class TestParseTopology:
    def test_field_order(self):
        topo = parse_topology("2,3,1,1,4")
        assert topo.num_dc == 2
        assert topo.num_pwm == 3
        assert topo.num_relay == 1
        assert topo.num_on == 1
        assert topo.num_usb == 4

    def test_stock_board(self):
        topo = parse_topology("7,3,1,1,0")
        assert topo.num_switch == 38

    def test_whitespace_tolerated(self):
        assert parse_topology(" 7, 3 ,1,1,0 ").num_pwm == 3

    def test_too_few_fields(self):
        with pytest.raises(ProtocolError):
            parse_topology("7,3,1")

    def test_non_integer(self):
        with pytest.raises(ProtocolError):
            parse_topology("7,x,1,1,0")

    def test_negative(self):
        with pytest.raises(ProtocolError):
            parse_topology("7,3,1,-1,0")

    def test_extra_leading_field_is_not_a_dc_count(self):
        with pytest.raises(ProtocolError):
            parse_topology("1,7,3,1,1,0")
