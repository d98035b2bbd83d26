#!/usr/bin/env python3
"""
stream.py

Turns a raw byte stream into symbolicated log events.

Bytes arrive in chunks of arbitrary size. Frames are terminated by a single
zero byte (the frame encoding never produces zeros inside a frame), so the
processor keeps a reassembly buffer and, on every read:

  1) appends the new bytes,
  2) decodes every complete frame found in the buffer, in order,
  3) keeps the unterminated tail for the next read.

Failure handling per frame:
  - frame encoding invalid  -> log, skip this frame, keep going.
  - payload incomplete      -> stop for now, keep the frame, wait for input.
  - payload malformed       -> the stream is desynchronized: raise.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Optional, Tuple

from .codec import Frame, decode_frame, decode_payload
from .errors import FrameDecodeError, Malformed, StreamDesynchronized, UnexpectedEof
from .locations import Locations
from .log_sink import log_frame
from .table import Table


LOG = logging.getLogger("stream")

READ_BUFFER_SIZE = 1024

Sink = Callable[[Frame, Optional[str], Optional[int], Optional[str]], None]


def locations_complete(table: Table, locations: Locations) -> bool:
    """True if every index of the table has a location."""
    return all(index in locations for index in table.indices())


class StreamProcessor:
    """
    Stateful decoder for one input stream.

    Parameters:
        table / locations:
            Output of extract_table() / resolve_locations() for the firmware
            that produces the stream.
        sink:
            Called as sink(frame, file, line, module) for every frame.
        frame_decoder:
            bytes between two delimiters -> payload; raises FrameDecodeError.
        payload_decoder:
            (table, payload) -> (Frame, consumed); raises UnexpectedEof or
            Malformed.
        cwd:
            Files below this directory are reported relative to it.
            Defaults to the current working directory.
    """

    def __init__(
        self,
        table: Table,
        locations: Optional[Locations],
        sink: Sink = log_frame,
        frame_decoder: Callable[[bytes], bytes] = decode_frame,
        payload_decoder: Callable[[Table, bytes], Tuple[Frame, int]] = decode_payload,
        cwd: Optional[Path] = None,
    ) -> None:
        self._table = table
        self._sink = sink
        self._frame_decoder = frame_decoder
        self._payload_decoder = payload_decoder
        self._cwd = cwd if cwd is not None else Path.cwd()
        self._buffer = bytearray()

        if locations is not None and locations_complete(table, locations):
            self._locations: Optional[Locations] = locations
        else:
            LOG.warning("(BUG) location info is incomplete; it will be omitted from the output")
            self._locations = None

    @property
    def locations_enabled(self) -> bool:
        return self._locations is not None

    @property
    def pending(self) -> bytes:
        """Bytes read but not yet consumed into a frame."""
        return bytes(self._buffer)

    # -----------------------------------------------------------------------
    # Decoding
    # -----------------------------------------------------------------------

    def _display_path(self, path: Path) -> str:
        try:
            return str(path.relative_to(self._cwd))
        except ValueError:
            # not below cwd; use full path
            return str(path)

    def _emit(self, frame: Frame) -> None:
        file = line = module = None
        if self._locations is not None:
            # every table index was checked in __init__
            loc = self._locations[frame.index]
            file = self._display_path(loc.file)
            line = loc.line
            module = loc.module
        self._sink(frame, file, line, module)

    def feed(self, data: bytes) -> int:
        """
        Process one chunk of input. Returns the number of frames emitted.

        Raises StreamDesynchronized if a payload does not match the table.
        """
        self._buffer.extend(data)
        buf = self._buffer
        start = 0
        emitted = 0

        while True:
            end = buf.find(0, start)
            if end < 0:
                break

            if end > start:
                try:
                    payload = self._frame_decoder(bytes(buf[start:end]))
                except FrameDecodeError:
                    LOG.error("Malformed frame of len %d", end - start)
                else:
                    try:
                        frame, _consumed = self._payload_decoder(self._table, payload)
                    except UnexpectedEof:
                        break
                    except Malformed as e:
                        LOG.error("failed to decode defmt data: %s", buf.hex())
                        raise StreamDesynchronized(bytes(buf)) from e
                    self._emit(frame)
                    emitted += 1

            start = end + 1

        if start >= len(buf):
            buf.clear()
        elif start:
            del buf[:start]
        return emitted

    def run(self, reader, chunk_size: int = READ_BUFFER_SIZE) -> int:
        """
        Read from reader until it returns no data. Returns frames emitted.

        reader only needs a read(size) -> bytes method.
        """
        total = 0
        while True:
            data = reader.read(chunk_size)
            if not data:
                break
            total += self.feed(data)

        if self._buffer:
            LOG.warning("Input ended with %d undecoded bytes", len(self._buffer))
        LOG.info("Input exhausted after %d frames", total)
        return total


__all__ = [
    "READ_BUFFER_SIZE",
    "locations_complete",
    "StreamProcessor",
]
