#!/usr/bin/env python3
"""
errors.py

Exception types raised by defmt_print.

Library code raises these; only the CLI turns them into a log line and a
non-zero exit status.
"""

from __future__ import annotations


class DefmtPrintError(Exception):
    """Base class for every error raised by this package."""


# ---------------------------------------------------------------------------
# ELF / table extraction
# ---------------------------------------------------------------------------

class ElfParseError(DefmtPrintError):
    """The binary image is not a well-formed ELF file."""


class TableError(DefmtPrintError):
    """The `.defmt` metadata is inconsistent or incomplete."""


class VersionConflict(TableError):
    def __init__(self, first: str, second: str) -> None:
        super().__init__(
            f"multiple defmt versions in use: {first} and {second} "
            "(only one is supported)"
        )
        self.first = first
        self.second = second


class MissingMetadata(TableError):
    def __init__(self, missing) -> None:
        self.missing = sorted(missing)
        super().__init__(
            "`_defmt_*` symbol not found: " + ", ".join(self.missing)
        )


# ---------------------------------------------------------------------------
# DWARF / locations
# ---------------------------------------------------------------------------

class MalformedDebugInfo(DefmtPrintError):
    """Structural problem in the DWARF data of the image."""


class AddressCollision(DefmtPrintError):
    """
    Two live log call sites resolved to the same address.

    This points at a bug in the live-symbol filter, never at bad input.
    """

    def __init__(self, address: int, old, new) -> None:
        super().__init__(
            f"BUG in DWARF variable filter: index collision for addr "
            f"0x{address:08x} (old = {old}, new = {new})"
        )
        self.address = address
        self.old = old
        self.new = new


# ---------------------------------------------------------------------------
# Stream decoding
# ---------------------------------------------------------------------------

class FrameDecodeError(DefmtPrintError):
    """The bytes between two zero delimiters are not a valid encoded frame."""


class DecodeError(DefmtPrintError):
    """Base class of the table decoder results that are not a frame."""


class UnexpectedEof(DecodeError):
    """The payload is a valid but incomplete prefix of a frame."""


class Malformed(DecodeError):
    """The payload does not match the interned-string table."""


class StreamDesynchronized(DefmtPrintError):
    def __init__(self, data: bytes) -> None:
        super().__init__(f"failed to decode defmt data: {data.hex()}")
        self.data = data


# ---------------------------------------------------------------------------
# Producer model
# ---------------------------------------------------------------------------

class AlreadyInitialized(DefmtPrintError):
    def __init__(self) -> None:
        super().__init__("init called twice")


class NotInitialized(DefmtPrintError):
    def __init__(self) -> None:
        super().__init__("logger used before init")


class ChannelBusy(DefmtPrintError):
    def __init__(self, priority: int) -> None:
        super().__init__(f"logger for priority {priority} already acquired")
        self.priority = priority


class PriorityOutOfRange(DefmtPrintError, IndexError):
    def __init__(self, priority: int, levels: int) -> None:
        super().__init__(f"priority {priority} outside 0..{levels - 1}")
        self.priority = priority


__all__ = [
    "DefmtPrintError",
    "ElfParseError",
    "TableError",
    "VersionConflict",
    "MissingMetadata",
    "MalformedDebugInfo",
    "AddressCollision",
    "FrameDecodeError",
    "DecodeError",
    "UnexpectedEof",
    "Malformed",
    "StreamDesynchronized",
    "AlreadyInitialized",
    "NotInitialized",
    "ChannelBusy",
    "PriorityOutOfRange",
]
