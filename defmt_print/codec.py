#!/usr/bin/env python3
"""
codec.py

The two decoding primitives used by the stream processor, plus their
encoding counterparts for building streams.

  - decode_frame(data) -> payload
      Undo the zero-free frame encoding (COBS). Raises FrameDecodeError.
  - decode_payload(table, payload) -> (Frame, consumed)
      Read the ULEB128 interned-string index at the start of the payload and
      look it up in the Table. Arguments are kept as raw bytes.
      Raises UnexpectedEof (incomplete payload) or Malformed (index unknown).

Both are pure functions so that the stream processor can be driven with
other implementations.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from cobs import cobs

from .errors import FrameDecodeError, Malformed, UnexpectedEof
from .table import Level, Table


# A u64 never needs more than ten 7-bit groups.
MAX_ULEB128_LEN = 10

FRAME_DELIMITER = b"\x00"


@dataclass(frozen=True)
class Frame:
    index: int
    level: Optional[Level]
    format: str
    args: bytes = b""

    def message(self) -> str:
        if not self.args:
            return self.format
        return f"{self.format} [args: {self.args.hex()}]"


# ---------------------------------------------------------------------------
# LEB128
# ---------------------------------------------------------------------------

def encode_uleb128(value: int) -> bytes:
    if value < 0:
        raise ValueError("ULEB128 cannot encode negative values")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_uleb128(data: bytes) -> Tuple[int, int]:
    """Return (value, bytes used)."""
    value = 0
    for i, byte in enumerate(data):
        if i >= MAX_ULEB128_LEN:
            raise Malformed("ULEB128 value longer than 10 bytes")
        value |= (byte & 0x7F) << (7 * i)
        if not byte & 0x80:
            return value, i + 1
    raise UnexpectedEof("truncated ULEB128 value")


# ---------------------------------------------------------------------------
# Frames
# ---------------------------------------------------------------------------

def decode_frame(data: bytes) -> bytes:
    try:
        return cobs.decode(data)
    except cobs.DecodeError as e:
        raise FrameDecodeError(str(e)) from e


def encode_frame(payload: bytes) -> bytes:
    """Encode one payload and append the zero delimiter."""
    return cobs.encode(payload) + FRAME_DELIMITER


def decode_payload(table: Table, payload: bytes) -> Tuple[Frame, int]:
    index, used = decode_uleb128(payload)
    fmt = table.get(index)
    if fmt is None:
        raise Malformed(f"index 0x{index:x} is not in the interned-string table")
    frame = Frame(
        index=index,
        level=table.level_of(index),
        format=fmt,
        args=bytes(payload[used:]),
    )
    return frame, len(payload)


def encode_payload(index: int, args: bytes = b"") -> bytes:
    return encode_uleb128(index) + args


__all__ = [
    "Frame",
    "FRAME_DELIMITER",
    "encode_uleb128",
    "decode_uleb128",
    "decode_frame",
    "encode_frame",
    "decode_payload",
    "encode_payload",
]
