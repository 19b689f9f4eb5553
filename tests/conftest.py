"""
Pytest configuration for FlexiCart tests.

Adds the repository root to sys.path and provides a scripted transport
standing in for the serial port.
"""

import asyncio
import sys
from pathlib import Path
from typing import Optional, Union

import pytest


# Add the repository root to sys.path for proper imports
root_path = Path(__file__).parent.parent
if str(root_path) not in sys.path:
    sys.path.insert(0, str(root_path))

from flexicart.exceptions import ResponseTimeoutError  # noqa: E402
from flexicart.settings import PollingSettings, ScanSettings  # noqa: E402


ACK = bytes([0x04])
NAK = bytes([0x05])
BUSY = bytes([0x06])

Reply = Union[bytes, BaseException]


def data_reply(*payload: int) -> bytes:
    """STX-framed reply carrying ``payload`` after the 5 header bytes."""
    return bytes([0x02, 0x06, 0x01, 0x01, 0x00, *payload])


class ScriptedTransport:
    """
    Transport double replaying a script of replies.

    Each entry is returned (bytes) or raised (exception) in order. When the
    script is exhausted ``default`` is returned, or ResponseTimeoutError is
    raised if there is no default.
    """

    def __init__(self, replies: Optional[list[Reply]] = None, default: Optional[Reply] = None) -> None:
        self.replies = list(replies or [])
        self.default = default
        self.frames: list[bytes] = []
        self.timeouts: list[Optional[float]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def send(self, frame: bytes, timeout: Optional[float] = None) -> bytes:
        self.frames.append(bytes(frame))
        self.timeouts.append(timeout)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if self.replies:
                reply = self.replies.pop(0)
            elif self.default is not None:
                reply = self.default
            else:
                reply = ResponseTimeoutError("No scripted reply")
            if isinstance(reply, BaseException):
                raise reply
            return reply
        finally:
            self.in_flight -= 1

    @property
    def commands(self) -> list[int]:
        """Command byte of every frame sent."""
        return [frame[5] for frame in self.frames]


@pytest.fixture
def transport():
    """Empty scripted transport; tests append replies."""
    return ScriptedTransport()


@pytest.fixture
def fast_polling():
    """Polling settings with short intervals."""
    return PollingSettings(
        poll_interval=0.01,
        max_polls=10,
        stable_polls=3,
        status_refresh_interval=0,
        inventory_refresh_interval=0,
        cleanup_interval=0,
    )


@pytest.fixture
def fast_scan():
    """Scan settings without delays."""
    return ScanSettings(
        scan_timeout=0.05,
        follow_up_delay=0,
        inter_command_delay=0,
    )
