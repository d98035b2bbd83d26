#!/usr/bin/env python3
"""
transport.py

Byte sources for the stream processor: a serial port, a capture file, or
stdin. All of them are handed out as objects with a read(size) method that
returns as soon as some data is available and b"" at end of input.
"""

from __future__ import annotations

import contextlib
import logging
import sys
from pathlib import Path
from typing import BinaryIO, Iterator, Optional

import serial


LOG = logging.getLogger("transport")

DEFAULT_BAUD_RATE = 115200

# Tells the target that the host is listening.
HANDSHAKE = b"c"

# Driver queue sizes requested on Windows (rx, tx).
WINDOWS_RX_BUFFER = 4096
WINDOWS_TX_BUFFER = 1024 * 128


class FileReader:
    """read() that does not wait for a full chunk on pipes."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self._read = getattr(stream, "read1", stream.read)

    def read(self, size: int) -> bytes:
        return self._read(size)


class SerialReader:
    """Blocks until at least one byte arrives, then returns what is buffered."""

    def __init__(self, port: serial.SerialBase) -> None:
        self._port = port

    def read(self, size: int) -> bytes:
        wanted = max(1, min(size, self._port.in_waiting))
        return self._port.read(wanted)


def open_serial(port: str, baud_rate: int = DEFAULT_BAUD_RATE) -> serial.SerialBase:
    """
    Open and prepare a serial port (or a pyserial URL such as loop://).

    Raises serial.SerialException if the port cannot be opened.
    """
    LOG.info("Opening serial port %s at %d baud", port, baud_rate)
    ser = serial.serial_for_url(port, baudrate=baud_rate, timeout=None)

    if hasattr(ser, "set_buffer_size"):
        ser.set_buffer_size(rx_size=WINDOWS_RX_BUFFER, tx_size=WINDOWS_TX_BUFFER)

    ser.reset_input_buffer()
    ser.reset_output_buffer()
    ser.write(HANDSHAKE)
    return ser


@contextlib.contextmanager
def open_reader(
    input_path: Optional[str] = None,
    serial_port: Optional[str] = None,
    baud_rate: int = DEFAULT_BAUD_RATE,
) -> Iterator[object]:
    """Yield a reader for the serial port, the input file, or stdin."""
    if serial_port:
        ser = open_serial(serial_port, baud_rate)
        try:
            yield SerialReader(ser)
        finally:
            ser.close()
        return

    if input_path:
        LOG.info("Reading frames from %s", input_path)
        with Path(input_path).open("rb") as f:
            yield FileReader(f)
        return

    LOG.debug("Reading frames from stdin")
    yield FileReader(sys.stdin.buffer)


__all__ = [
    "DEFAULT_BAUD_RATE",
    "HANDSHAKE",
    "FileReader",
    "SerialReader",
    "open_serial",
    "open_reader",
]
