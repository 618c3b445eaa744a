# Open Power Box Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Pure-function encoder/decoder for the Open Power Box serial protocol.

Fully testable with no I/O dependencies.

Request (newline terminated):
    # <CMD> <INDEX> [<VALUE>]\\n        e.g. "# S 3 1\\n", "# G 12\\n"

Reply (one or more ';'-terminated frames, noise before '#' discarded):
    #G3:1;                             value of index 3
    #n0:Camera;                        name of port 0
    #Z0:7,3,1,1,0;                     topology DC,PWM,Relay,On,USB
    #E3:overcurrent;                   device-reported error
"""

import logging
from dataclasses import dataclass

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
    Topology,
)

logger = logging.getLogger(__name__)

FRAME_START = "#"
FRAME_END = ";"
ERROR_TAG = "E"

# Request command -> expected reply tag (None: no reply is sent)
REPLY_TAGS: dict[str, str | None] = {
    CMD_TOPOLOGY: "Z",
    CMD_GET: "G",
    CMD_SET: "G",
    CMD_GET_NAME: "n",
    CMD_SET_NAME: "n",
    CMD_GET_REVERSE: "r",
    CMD_SET_REVERSE: "r",
    CMD_GET_LIMIT: "l",
    CMD_SET_LIMIT: "l",
    CMD_GET_IP: "i",
    CMD_GET_SSID: "f",
    CMD_SET_SSID: "f",
    CMD_SET_PASSWORD: None,
    CMD_REBOOT: None,
}


class ProtocolError(ValueError):
    """Reply lacks the expected '#', tag, index or colon structure."""


class DeviceError(Exception):
    """The box answered with an explicit E frame."""

    def __init__(self, index: int | None, message: str):
        self.index = index
        self.message = message
        super().__init__(f"device error at index {index}: {message}")


@dataclass(frozen=True)
class Frame:
    tag: str
    index: int | None
    payload: str

    @property
    def is_error(self) -> bool:
        return self.tag == ERROR_TAG

    def matches(self, tag: str, index: int | None = None) -> bool:
        """True when tag matches and, if given, the index matches too."""
        if self.tag != tag:
            return False
        return index is None or self.index == index


def format_value(value) -> str:
    """Render a command value the way the firmware expects it."""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return "%f" % value
    text = str(value)
    if "\n" in text or "\r" in text:
        raise ValueError("command values cannot contain line breaks")
    # The echo of a text value would be cut at the first frame delimiter
    if FRAME_END in text or FRAME_START in text:
        raise ValueError(f"command values cannot contain {FRAME_START!r} or {FRAME_END!r}")
    return text


def encode_command(command: str, index: int, value=None) -> bytes:
    """Encode one request line.

    >>> encode_command("S", 3, 1)
    b'# S 3 1\\n'
    """
    if len(command) != 1:
        raise ValueError(f"command must be a single character, got {command!r}")
    line = f"{FRAME_START} {command} {int(index)}"
    if value is not None:
        line += f" {format_value(value)}"
    return (line + "\n").encode("utf-8")


def _decode_body(body: str) -> Frame:
    if not body:
        raise ProtocolError("empty frame")
    tag = body[0]
    colon = body.find(":")
    if colon < 0:
        if tag == ERROR_TAG:
            return Frame(ERROR_TAG, None, body[1:].strip())
        raise ProtocolError(f"missing ':' in frame {body!r}")

    index_text = body[1:colon].strip()
    if index_text:
        try:
            index = int(index_text)
        except ValueError:
            raise ProtocolError(f"bad index {index_text!r} in frame {body!r}") from None
    else:
        index = None
    return Frame(tag, index, body[colon + 1:])


def decode_reply(raw: str) -> Frame:
    """Decode the first frame of a reply.

    Bytes before the first '#' are framing noise. Raises ProtocolError for
    malformed input; an E frame is returned as an error Frame.
    """
    start = raw.find(FRAME_START)
    if start < 0:
        raise ProtocolError(f"no '#' in reply {raw[:60]!r}")
    body = raw[start + 1:]
    end = body.find(FRAME_END)
    if end >= 0:
        body = body[:end]
    return _decode_body(body.strip("\r\n"))


def parse_topology(payload: str) -> Topology:
    """Parse the Z payload "numDC,numPWM,numRelay,numOn,numUSB".

    Fields are peeled off from the right: USB, On, Relay, PWM; whatever is
    left is the DC count.
    """
    rest = payload.strip()
    peeled = []
    for label in ("usb", "on", "relay", "pwm"):
        if "," not in rest:
            raise ProtocolError(f"topology payload {payload!r} missing {label} count")
        rest, field_text = rest.rsplit(",", 1)
        peeled.append(_count(field_text, label, payload))
    num_usb, num_on, num_relay, num_pwm = peeled
    num_dc = _count(rest, "dc", payload)
    return Topology(
        num_dc=num_dc, num_pwm=num_pwm, num_relay=num_relay,
        num_on=num_on, num_usb=num_usb,
    )


def _count(text: str, label: str, payload: str) -> int:
    try:
        val = int(text.strip())
    except ValueError:
        raise ProtocolError(f"bad {label} count {text!r} in topology {payload!r}") from None
    if val < 0:
        raise ProtocolError(f"negative {label} count in topology {payload!r}")
    return val
