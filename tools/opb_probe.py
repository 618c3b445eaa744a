#!/usr/bin/env python3
# Open Power Box Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Serial probe: connect to an Open Power Box and dump everything it reports.

Discovers the topology, reads every global index once, prints names,
limits, polarity flags and WiFi settings, sanity-checks the sensor ranges,
and saves the raw values as a JSON fixture for offline testing.

Usage:
    python3 tools/opb_probe.py /dev/ttyUSB0
    python3 tools/opb_probe.py --mock
"""

import asyncio
import argparse
import json
import sys
from pathlib import Path

# Add bridge source to path
BRIDGE_DIR = Path(__file__).resolve().parent.parent / "bridge"
sys.path.insert(0, str(BRIDGE_DIR))

from opbox.driver import ConnectError, PowerBoxDriver
from opbox.frame_codec import DeviceError, ProtocolError
from opbox.mock_box import MockPowerBox
from opbox.opb_model import CATEGORY_NAMES, INDEX_ORDER, LIMIT_NAMES
from opbox.serial_client import SerialClient, TransportError

CAPTURE_DIR = Path(__file__).resolve().parent / "captured_output"


def banner(text: str):
    width = 60
    print(f"\n{'=' * width}")
    print(f"  {text}")
    print(f"{'=' * width}")


def section(text: str):
    print(f"\n--- {text} ---")


def validate_range(label: str, value, min_val, max_val):
    """Check a numeric value is within expected range."""
    if value is None:
        print(f"  WARN: {label} is None")
        return False
    in_range = min_val <= value <= max_val
    status = "OK" if in_range else "FAIL"
    print(f"  [{status}] {label}: {value} (expected {min_val}-{max_val})")
    return in_range


async def probe_indices(driver: PowerBoxDriver) -> dict[int, str | None]:
    """Read every global index once, reporting failures inline."""
    topo = driver.topology
    section(f"G 0..{topo.num_switch - 1}  (all indices)")
    raw: dict[int, str | None] = {}
    for index in range(topo.num_switch):
        category = topo.category_of(index)
        label = CATEGORY_NAMES[category] if category is not None else "sensor"
        try:
            value = await driver.get_indexed(index)
            raw[index] = value.raw if value is not None else None
            print(f"    [{index:3d}] {label:7s} {raw[index]}")
        except (TransportError, ProtocolError, DeviceError) as e:
            raw[index] = None
            print(f"    [{index:3d}] {label:7s} ERROR: {e}")
    return raw


def print_snapshot(driver: PowerBoxDriver):
    data = driver.snapshot()
    section("Derived snapshot")
    print(f"    Input:   {data.input_voltage} V  {data.total_current} A  {data.total_power} W")
    print(f"    Aux:     {data.aux_readings}")
    for category in INDEX_ORDER:
        for port in data.category_ports(category):
            print(
                f"    {CATEGORY_NAMES[category]} {port.number + 1}: "
                f"name={port.name!r} value={port.value} "
                f"V={port.voltage} A={port.current}"
            )
    section("Settings")
    for slot, limit in sorted(data.limits.items()):
        print(f"    limit {LIMIT_NAMES[slot]}: {limit} A")
    for category, inverted in sorted(data.reverse_polarity.items()):
        print(f"    polarity {CATEGORY_NAMES[category]}: {'inverted' if inverted else 'normal'}")
    print(f"    WiFi: ssid={data.ssid!r} ip={data.ip!r}")

    section("Validation")
    validate_range("Input Voltage", data.input_voltage, 9, 16)
    validate_range("Total Current (A)", data.total_current, 0, 30)


def save_capture(name: str, raw: dict[int, str | None], driver: PowerBoxDriver):
    """Save raw index values as a JSON test fixture."""
    topo = driver.topology
    CAPTURE_DIR.mkdir(parents=True, exist_ok=True)
    path = CAPTURE_DIR / f"{name}.json"
    path.write_text(json.dumps({
        "topology": [topo.num_dc, topo.num_pwm, topo.num_relay, topo.num_on, topo.num_usb],
        "values": {str(k): v for k, v in raw.items()},
    }, indent=2))
    print(f"  Saved: {path}")


async def main():
    parser = argparse.ArgumentParser(
        description="Open Power Box Serial Probe: read every index and setting"
    )
    parser.add_argument("port", nargs="?", default="/dev/ttyUSB0",
                        help="Serial port (default: /dev/ttyUSB0)")
    parser.add_argument("--baud", type=int, default=115200,
                        help="Baud rate (default: 115200)")
    parser.add_argument("--timeout", type=float, default=1.0,
                        help="Read timeout per section in seconds (default: 1)")
    parser.add_argument("--mock", action="store_true",
                        help="Probe the built-in simulator instead of a port")
    args = parser.parse_args()

    banner("Open Power Box Serial Probe")
    if args.mock:
        transport = MockPowerBox()
        print("  Transport: mock")
    else:
        print(f"  Port:     {args.port}")
        print(f"  Baud:     {args.baud}")
        print(f"  Timeout:  {args.timeout}s")
        transport = SerialClient(port=args.port, baud=args.baud, timeout=args.timeout)

    driver = PowerBoxDriver(transport)
    try:
        banner("Connecting...")
        topo = await driver.connect()
        print(f"  Connected: {topo.describe()}")
        print(f"  Global indices: {topo.num_switch} (sensors from {topo.sensor_num})")

        banner("Index sweep")
        raw = await probe_indices(driver)
        print_snapshot(driver)
        save_capture("mock_sweep" if args.mock else "sweep", raw, driver)

        banner("Link Health")
        for k, v in transport.get_health().items():
            print(f"  {k}: {v}")
    except ConnectError as e:
        print(f"\n  FATAL ERROR: {e}")
        sys.exit(1)
    finally:
        driver.disconnect()
        print("\n  Port closed.")


if __name__ == "__main__":
    asyncio.run(main())
