# Open Power Box Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Tests for topology index arithmetic and value parsing."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "bridge"))

from opbox.opb_model import (
    CachedValue,
    Category,
    PortData,
    Topology,
    ValueKind,
    ValueParseError,
    parse_as,
    values_equal,
)


STOCK = Topology(num_dc=7, num_pwm=3, num_relay=1, num_on=1, num_usb=0)


# ---------------------------------------------------------------------------
# Derived counts
# ---------------------------------------------------------------------------

class TestTopologyCounts:
    def test_stock_board(self):
        assert STOCK.total == 12
        assert STOCK.sensor_num == 16
        assert STOCK.num_switch == 38

    def test_usb_variant(self):
        topo = Topology(num_dc=2, num_pwm=3, num_relay=1, num_on=1, num_usb=4)
        assert topo.total == 11
        assert topo.num_switch == (2 + 3 + 1) * 2 + 11 + 4

    def test_all_zero(self):
        topo = Topology()
        assert topo.total == 0
        assert topo.sensor_num == 4
        assert topo.num_switch == 4

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            Topology(num_dc=-1)


# ---------------------------------------------------------------------------
# Index layout
# ---------------------------------------------------------------------------

class TestTopologyIndices:
    def test_switch_ranges(self):
        assert [STOCK.dc(n) for n in range(7)] == list(range(7))
        assert [STOCK.pwm(n) for n in range(3)] == [7, 8, 9]
        assert STOCK.bank() == 10
        assert STOCK.relay() == 11

    def test_usb_follows_everything(self):
        topo = Topology(num_dc=2, num_pwm=3, num_relay=1, num_on=1, num_usb=4)
        assert topo.usb(0) == 7
        assert topo.usb(3) == 10

    def test_aggregate_slots(self):
        assert STOCK.input_voltage() == 12
        assert STOCK.total_current() == 13
        assert STOCK.aux(0) == 14
        assert STOCK.aux(1) == 15

    def test_sensor_pairs(self):
        assert STOCK.dc_voltage(0) == 16
        assert STOCK.dc_current(0) == 17
        assert STOCK.dc_voltage(6) == 28
        assert STOCK.pwm_voltage(0) == 30
        assert STOCK.pwm_current(2) == 35
        assert STOCK.bank_voltage() == 36
        assert STOCK.bank_current() == 37
        assert STOCK.bank_current() == STOCK.num_switch - 1

    def test_out_of_range_port(self):
        with pytest.raises(IndexError):
            STOCK.dc(7)
        with pytest.raises(IndexError):
            STOCK.usb(0)
        with pytest.raises(IndexError):
            STOCK.pwm_voltage(3)

    def test_zero_topology_has_no_ports(self):
        topo = Topology()
        with pytest.raises(IndexError):
            topo.dc(0)
        assert topo.category_of(0) is None
        assert topo.input_voltage() == 0

    def test_category_of(self):
        assert STOCK.category_of(0) is Category.DC
        assert STOCK.category_of(9) is Category.PWM
        assert STOCK.category_of(10) is Category.BANK
        assert STOCK.category_of(11) is Category.RELAY
        assert STOCK.category_of(12) is None
        with pytest.raises(IndexError):
            STOCK.category_of(38)

    def test_kind_of(self):
        assert STOCK.kind_of(0) is ValueKind.BOOL
        assert STOCK.kind_of(7) is ValueKind.INT
        assert STOCK.kind_of(11) is ValueKind.BOOL
        assert STOCK.kind_of(20) is ValueKind.FLOAT


# ---------------------------------------------------------------------------
# Value parsing
# ---------------------------------------------------------------------------

class TestParseAs:
    def test_bool(self):
        assert parse_as("1", ValueKind.BOOL) is True
        assert parse_as("0", ValueKind.BOOL) is False
        assert parse_as("1.000000", ValueKind.BOOL) is True

    def test_int_truncates(self):
        assert parse_as("55", ValueKind.INT) == 55
        assert parse_as("55.000000", ValueKind.INT) == 55

    def test_float(self):
        assert parse_as(" 12.34 ", ValueKind.FLOAT) == pytest.approx(12.34)

    def test_text_trimmed(self):
        assert parse_as("  Camera ", ValueKind.TEXT) == "Camera"

    def test_garbage_raises(self):
        with pytest.raises(ValueParseError):
            parse_as("abc", ValueKind.FLOAT)
        with pytest.raises(ValueError):
            parse_as("", ValueKind.INT)

    def test_float_tolerance(self):
        assert values_equal(2.5, 2.5004, ValueKind.FLOAT)
        assert not values_equal(2.5, 2.51, ValueKind.FLOAT)
        assert not values_equal("a", "b", ValueKind.TEXT)


class TestCachedValue:
    def test_value_uses_kind(self):
        assert CachedValue("1", ValueKind.BOOL).value is True
        assert CachedValue("42", ValueKind.INT).value == 42
        assert str(CachedValue("12.3", ValueKind.FLOAT)) == "12.3"

    def test_port_enabled_unparseable(self):
        port = PortData(Category.DC, 0, 0, value=CachedValue("x", ValueKind.BOOL))
        assert port.enabled is None

    def test_duty_cycle_only_for_dew(self):
        dew = PortData(Category.PWM, 0, 7, value=CachedValue("40", ValueKind.INT))
        dc = PortData(Category.DC, 0, 0, value=CachedValue("1", ValueKind.BOOL))
        assert dew.duty_cycle == 40
        assert dew.enabled is True
        assert dc.duty_cycle is None
