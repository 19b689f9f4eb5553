"""
FlexiCart Transport Layer.

Opens the serial port for a single exchange, writes one frame, collects the
reply and closes the port again. The reply ends at a terminator byte
(ETX, CR or LF), at the maximum response length, after an optional
inter-byte idle gap, or when the response timeout expires. Partial data at
timeout is a normal result; no data at all is a ResponseTimeoutError.

All components reach the port through one CommandChannel, which serializes
exchanges in FIFO order.
"""

import asyncio
import logging
from typing import Optional, Protocol

import serial
import serial_asyncio

from .codec import hex_dump
from .exceptions import (
    ChannelBusyError,
    OpenFailedError,
    OpenTimeoutError,
    ResponseTimeoutError,
    WriteFailedError,
)
from .settings import ChannelSettings


logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Anything that can exchange one frame for one reply."""

    async def send(self, frame: bytes, timeout: Optional[float] = None) -> bytes:
        ...


class SerialSession:
    """
    Per-exchange serial session.

    Attributes:
        settings: Serial channel configuration.
    """

    def __init__(self, settings: ChannelSettings) -> None:
        """
        Initialize the session.

        Args:
            settings: Serial channel configuration.
        """
        self.settings = settings
        self._busy = False

    @property
    def busy(self) -> bool:
        """Check if an exchange is in progress."""
        return self._busy

    async def send(self, frame: bytes, timeout: Optional[float] = None) -> bytes:
        """
        Exchange one frame for one reply.

        Args:
            frame: Frame to write.
            timeout: Response timeout in seconds (default from settings).

        Returns:
            Collected reply bytes (possibly partial).

        Raises:
            ChannelBusyError: If another exchange is in progress.
            OpenTimeoutError: If opening the port took too long.
            OpenFailedError: If the port could not be opened.
            WriteFailedError: If the frame could not be written.
            ResponseTimeoutError: If no byte arrived in time.
        """
        if self._busy:
            raise ChannelBusyError(
                "Send issued while another exchange is outstanding",
                port=self.settings.port,
            )
        self._busy = True
        try:
            reader, writer = await self._open()
            try:
                await self._write(writer, frame)
                return await self._collect(
                    reader,
                    timeout if timeout is not None else self.settings.response_timeout,
                )
            finally:
                await self._close(writer)
        finally:
            self._busy = False

    async def _open(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        cfg = self.settings
        try:
            return await asyncio.wait_for(
                serial_asyncio.open_serial_connection(
                    url=cfg.port,
                    baudrate=cfg.baudrate,
                    bytesize=cfg.bytesize,
                    parity=cfg.parity,
                    stopbits=cfg.stopbits,
                    xonxoff=False,
                    rtscts=False,
                ),
                timeout=cfg.open_timeout,
            )
        except asyncio.TimeoutError:
            raise OpenTimeoutError(
                f"Timed out opening {cfg.port} after {cfg.open_timeout}s",
                port=cfg.port,
            )
        except (serial.SerialException, OSError) as e:
            raise OpenFailedError(f"Failed to open {cfg.port}: {e}", port=cfg.port)

    async def _write(self, writer: asyncio.StreamWriter, frame: bytes) -> None:
        logger.debug(f"TX: {hex_dump(frame)}")
        try:
            writer.write(frame)
            await writer.drain()
        except (serial.SerialException, OSError) as e:
            raise WriteFailedError(f"Write failed: {e}", port=self.settings.port)

    async def _collect(self, reader: asyncio.StreamReader, timeout: float) -> bytes:
        cfg = self.settings
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        buffer = bytearray()

        while len(buffer) < cfg.max_response_length:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            wait = remaining
            if buffer and cfg.inter_byte_timeout is not None:
                wait = min(wait, cfg.inter_byte_timeout)
            try:
                chunk = await asyncio.wait_for(
                    reader.read(cfg.max_response_length - len(buffer)),
                    timeout=wait,
                )
            except asyncio.TimeoutError:
                break
            if not chunk:
                logger.debug("EOF on serial port")
                break

            terminated = False
            for byte in chunk:
                buffer.append(byte)
                if byte in cfg.terminators:
                    terminated = True
                    break
            if terminated:
                break

        if not buffer:
            logger.debug("Receive timeout, no data")
            raise ResponseTimeoutError(
                f"No response within {timeout}s",
                port=cfg.port,
            )

        logger.debug(f"RX: {hex_dump(buffer)}")
        return bytes(buffer)

    async def _close(self, writer: asyncio.StreamWriter) -> None:
        writer.close()
        try:
            await writer.wait_closed()
        except Exception as e:
            logger.debug(f"Close error (ignored): {e}")


class CommandChannel:
    """
    Single serialization point in front of a transport.

    Every exchange (user commands, macro polling, refresh loops, scans)
    acquires the same FIFO lock.
    """

    def __init__(self, transport: Transport) -> None:
        self._transport = transport
        self._lock = asyncio.Lock()

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    async def exchange(self, frame: bytes, timeout: Optional[float] = None) -> bytes:
        """Send one frame through the transport while holding the lock."""
        async with self._lock:
            return await self._transport.send(frame, timeout)
