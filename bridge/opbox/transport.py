# Open Power Box Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Abstract link protocol for Open Power Box communication.

Defines the BoxTransport interface that the serial link and the simulated
box both implement, so the command engine works with either.
"""

from typing import Protocol, runtime_checkable


@runtime_checkable
class BoxTransport(Protocol):
    """Protocol for request/reply links to the box.

    Implementations: SerialClient, MockPowerBox.
    """

    async def connect(self, path: str | None = None) -> None:
        """Open the link (path overrides the configured one)."""
        ...

    async def send(self, payload: bytes) -> None:
        """Write one encoded command and honour the inter-command delay."""
        ...

    async def receive(self) -> str:
        """Block for one ';'-terminated reply. Raises TransportError."""
        ...

    @property
    def is_connected(self) -> bool:
        ...

    def get_health(self) -> dict:
        """Return link health metrics."""
        ...

    @property
    def consecutive_failures(self) -> int:
        ...

    def reset_health(self) -> None:
        ...

    def close(self) -> None:
        """Release the link."""
        ...
