#!/usr/bin/env python3
"""
table.py

Builds the interned-string table from the symbols of a firmware ELF.

Responsibilities:
  - Find the `.defmt` section. Its absence is not an error: firmware built
    without defmt simply has no table.
  - Walk `.symtab`:
      * `_defmt_version_ = X` symbols (optionally wrapped in stray quotes left
        by the linker script) give the protocol version.
      * The ten `_defmt_<level>_{start,end}` markers in `.defmt` give the
        half-open address range of each log level.
      * Every other symbol in `.defmt` is an interned string, keyed by its
        address.
  - Return an immutable Table.

This module does NOT look at DWARF. See locations.py for that.
"""

from __future__ import annotations

import enum
import io
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterator, Mapping, Optional, Set

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile

from .errors import ElfParseError, MissingMetadata, VersionConflict


LOG = logging.getLogger("table")

DEFMT_SECTION = ".defmt"

# LLD keeps the quotes of the linker script in the symbol name, so both
# spellings show up in the wild.
VERSION_PREFIXES = ('"_defmt_version_ = ', "_defmt_version_ = ")


class Level(enum.Enum):
    TRACE = "trace"
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


# "_defmt_info_start" -> (Level.INFO, "start"), ...
_MARKERS: Dict[str, tuple] = {
    f"_defmt_{level.value}_{edge}": (level, edge)
    for level in Level
    for edge in ("start", "end")
}


@dataclass(frozen=True)
class Table:
    """
    Interned strings of one firmware image.

    entries:
        address -> raw interned string, read-only.
    error / warn / info / debug / trace:
        half-open address ranges of each level.
    version:
        protocol version tag found in the symbol table.
    """
    entries: Mapping[int, str]
    error: range
    warn: range
    info: range
    debug: range
    trace: range
    version: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "entries", MappingProxyType(dict(self.entries)))

    def __hash__(self) -> int:
        return hash((
            tuple(self.entries.items()),
            self.error, self.warn, self.info, self.debug, self.trace,
            self.version,
        ))

    def indices(self) -> Iterator[int]:
        return iter(self.entries)

    def symbols(self) -> Set[str]:
        """Raw strings of the symbols that survived linking."""
        return set(self.entries.values())

    def get(self, index: int) -> Optional[str]:
        return self.entries.get(index)

    def level_of(self, index: int) -> Optional[Level]:
        for level in Level:
            if index in getattr(self, level.value):
                return level
        return None

    def __len__(self) -> int:
        return len(self.entries)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def open_elf(image: bytes) -> ELFFile:
    """Parse an in-memory ELF image. Raises ElfParseError."""
    try:
        return ELFFile(io.BytesIO(image))
    except ELFError as e:
        raise ElfParseError(f"not a valid ELF file: {e}") from e


def _section_index(elf: ELFFile, name: str) -> Optional[int]:
    for index, section in enumerate(elf.iter_sections()):
        if section.name == name:
            return index
    return None


def _parse_version(name: str) -> Optional[str]:
    for prefix in VERSION_PREFIXES:
        if name.startswith(prefix):
            return name[len(prefix):].strip('"')
    return None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def extract_table(image: bytes) -> Optional[Table]:
    """
    Build the Table of an ELF image.

    Returns None if the image has no `.defmt` section.

    Raises:
        ElfParseError:    image is not an ELF file.
        VersionConflict:  two different `_defmt_version_` symbols.
        MissingMetadata:  a level marker or the version symbol is absent.
    """
    elf = open_elf(image)

    defmt_shndx = _section_index(elf, DEFMT_SECTION)
    if defmt_shndx is None:
        LOG.info("No %s section found; firmware was built without defmt", DEFMT_SECTION)
        return None

    entries: Dict[int, str] = {}
    bounds: Dict[str, int] = {}
    version: Optional[str] = None

    symtab = elf.get_section_by_name(".symtab")
    symbols = symtab.iter_symbols() if symtab is not None else iter(())

    try:
        for sym in symbols:
            name = sym.name
            if not name:
                continue

            # The version symbol is absolute, so it is not tied to `.defmt`.
            new_version = _parse_version(name)
            if new_version is not None:
                if version is not None and version != new_version:
                    raise VersionConflict(version, new_version)
                version = new_version

            if sym["st_shndx"] != defmt_shndx:
                continue

            address = sym["st_value"]
            if name in _MARKERS:
                bounds[name] = address
            else:
                entries[address] = name
    except ELFError as e:
        raise ElfParseError(f"failed to read symbol table: {e}") from e

    missing = set(_MARKERS) - set(bounds)
    if version is None:
        missing.add("_defmt_version_")
    if missing:
        raise MissingMetadata(missing)

    ranges = {
        level.value: range(
            bounds[f"_defmt_{level.value}_start"],
            bounds[f"_defmt_{level.value}_end"],
        )
        for level in Level
    }

    LOG.info(
        "Loaded %d interned strings (defmt version %s)", len(entries), version
    )
    for level in Level:
        r = ranges[level.value]
        LOG.debug("%-5s range: [0x%x, 0x%x)", level.value, r.start, r.stop)

    return Table(entries=dict(sorted(entries.items())), version=version, **ranges)


__all__ = [
    "DEFMT_SECTION",
    "Level",
    "Table",
    "open_elf",
    "extract_table",
]
