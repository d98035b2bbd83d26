#!/usr/bin/env python3
"""
producer.py

Host-side model of the on-device frame producer.

The firmware logger keeps one framed queue per interrupt priority level.
A log call acquires a fixed-size write grant on the queue of the current
priority, writes its encoded bytes into it and commits on release. Since a
priority level can only be preempted by a higher one, there is never more
than one writer per level.

This module reproduces that contract so that replay captures and tests can
be produced without hardware:

  - 16 PriorityChannel objects, each with its own lock and queue.
  - DeviceLogger.init() may be called once; a second call raises
    AlreadyInitialized.
  - DeviceLogger.acquire(priority) is a context manager; the grant is
    committed on every exit path.
  - A grant whose capacity was reached (overflow, or an exact fit) is
    committed as a zero-length frame, i.e. the message is lost.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from collections import deque
from typing import Callable, Deque, Iterator, List, Optional, Sequence

from .codec import encode_frame
from .errors import AlreadyInitialized, ChannelBusy, NotInitialized, PriorityOutOfRange


LOG = logging.getLogger("producer")

PRIORITY_LEVELS = 16
GRANT_SIZE = 1024
QUEUE_CAPACITY = 16384

# Bytes of framing overhead the queue keeps per committed frame.
FRAME_HEADER_SIZE = 2


def priority_from_registers(primask_active: bool, basepri: int) -> int:
    """
    Current priority level as the firmware computes it: 0 when interrupts
    are masked, otherwise the upper nibble of BASEPRI.
    """
    if primask_active:
        return 0
    return (basepri & 0xFF) >> 4


class GrantWriter:
    """Fixed-capacity write region handed out by a channel."""

    def __init__(self, capacity: int = GRANT_SIZE) -> None:
        self._buf = bytearray(capacity)
        self.capacity = capacity
        self.written = 0

    def write(self, data: bytes) -> None:
        available = self.capacity - self.written
        if len(data) <= available:
            self._buf[self.written:self.written + len(data)] = data
            self.written += len(data)
        else:
            # no more data fits; the grant will be discarded on commit
            self.written = self.capacity

    @property
    def overflowed(self) -> bool:
        return self.written >= self.capacity

    def data(self) -> bytes:
        return bytes(self._buf[:self.written])


class PriorityChannel:
    """Framed queue of one priority level."""

    def __init__(self, priority: int, capacity: int = QUEUE_CAPACITY) -> None:
        self.priority = priority
        self.capacity = capacity
        # held by the single writer of this level; never waited on
        self._lock = threading.Lock()
        # guards _frames and _used between writer and consumer
        self._queue_lock = threading.Lock()
        self._frames: Deque[bytes] = deque()
        self._used = 0

    @property
    def used(self) -> int:
        with self._queue_lock:
            return self._used

    def _free(self) -> int:
        with self._queue_lock:
            return self.capacity - self._used

    def _commit(self, writer: GrantWriter) -> None:
        frame = b"" if writer.overflowed else writer.data()
        if writer.overflowed:
            LOG.debug("Priority %d: grant full, message discarded", self.priority)
        with self._queue_lock:
            self._frames.append(frame)
            self._used += len(frame) + FRAME_HEADER_SIZE

    @contextlib.contextmanager
    def acquire(self, grant_size: int = GRANT_SIZE) -> Iterator[Optional[GrantWriter]]:
        """
        Yield a GrantWriter, or None when the queue has no room for a grant
        (the log is dropped, as on the device).
        """
        if not self._lock.acquire(blocking=False):
            raise ChannelBusy(self.priority)
        try:
            if self._free() < grant_size + FRAME_HEADER_SIZE:
                yield None
                return
            writer = GrantWriter(grant_size)
            try:
                yield writer
            finally:
                self._commit(writer)
        finally:
            self._lock.release()

    def read_frames(self) -> List[bytes]:
        """Consumer side: take every committed frame, oldest first."""
        with self._queue_lock:
            frames = list(self._frames)
            self._frames.clear()
            self._used = 0
        return frames


class DeviceLogger:
    """The sixteen channels of one device, indexed by priority."""

    def __init__(self) -> None:
        self._channels: Optional[Sequence[PriorityChannel]] = None

    def init(self, channels: Optional[Sequence[PriorityChannel]] = None) -> None:
        if self._channels is not None:
            raise AlreadyInitialized()
        if channels is None:
            channels = [PriorityChannel(i) for i in range(PRIORITY_LEVELS)]
        if len(channels) != PRIORITY_LEVELS:
            raise ValueError(f"expected {PRIORITY_LEVELS} channels, got {len(channels)}")
        self._channels = tuple(channels)

    def channel(self, priority: int) -> PriorityChannel:
        if self._channels is None:
            raise NotInitialized()
        if not 0 <= priority < PRIORITY_LEVELS:
            raise PriorityOutOfRange(priority, PRIORITY_LEVELS)
        return self._channels[priority]

    def acquire(self, priority: int):
        return self.channel(priority).acquire()

    def log(self, priority: int, data: bytes) -> bool:
        """Write one message. Returns False if it was dropped."""
        with self.acquire(priority) as writer:
            if writer is None:
                return False
            writer.write(data)
            return not writer.overflowed

    def wire_bytes(self, encoder: Callable[[bytes], bytes] = encode_frame) -> bytes:
        """
        Drain every channel in index order and return the encoded
        stream. Discarded (zero-length) frames are not transmitted.
        """
        if self._channels is None:
            raise NotInitialized()
        out = bytearray()
        for channel in self._channels:
            for frame in channel.read_frames():
                if frame:
                    out += encoder(frame)
        return bytes(out)


__all__ = [
    "PRIORITY_LEVELS",
    "GRANT_SIZE",
    "QUEUE_CAPACITY",
    "priority_from_registers",
    "GrantWriter",
    "PriorityChannel",
    "DeviceLogger",
]
