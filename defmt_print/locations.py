#!/usr/bin/env python3
"""
locations.py

Maps every live defmt log call site to its source location using the DWARF
data of the firmware ELF.

Responsibilities:
  - Walk each compilation unit depth-first (explicit stack, no recursion),
    tracking the enclosing namespaces by depth.
  - Pick the `DEFMT_LOG_STATEMENT` variables. Their linkage name is
    "<interned string>@<disambiguator>".
  - Drop the ones whose interned string is not in the Table: the linker
    garbage-collected them, but DWARF still describes them with a stale
    address.
  - Resolve address (DW_OP_addr of the location expression), file (line
    program file entry + directories) and module path.

The result is a plain dict {address: Location}, ordered by address.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from elftools.common.exceptions import DWARFError, ELFError
from elftools.dwarf.dwarf_expr import DWARFExprParser

from .errors import AddressCollision, MalformedDebugInfo
from .table import Table, open_elf


LOG = logging.getLogger("locations")

LOG_STATEMENT_NAME = "DEFMT_LOG_STATEMENT"
LINKAGE_SEPARATOR = "@"
MODULE_SEPARATOR = "::"

# Attribute forms that carry an inline DWARF expression.
_EXPR_FORMS = {
    "DW_FORM_exprloc",
    "DW_FORM_block",
    "DW_FORM_block1",
    "DW_FORM_block2",
    "DW_FORM_block4",
}


@dataclass(frozen=True)
class Location:
    file: Path
    line: int
    module: str

    def __str__(self) -> str:
        return f"{self.file}:{self.line}"


Locations = Dict[int, Location]


@dataclass
class DebugUnit:
    """
    What the walk needs from one compilation unit.

    line_header is the header of the unit's line program, or None when the
    unit has no DW_AT_stmt_list.
    """
    top_die: Any
    line_header: Any
    comp_dir: Optional[str]
    structs: Any
    offset: int = 0


# ---------------------------------------------------------------------------
# Attribute helpers
# ---------------------------------------------------------------------------

def _field(entry: Any, *names: str) -> Any:
    # Line program entries are keyed differently across DWARF versions.
    for name in names:
        try:
            return entry[name]
        except KeyError:
            continue
    return None


def _text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if not isinstance(value, (bytes, bytearray)):
        value = _field(value, "DW_LNCT_path")
        if value is None:
            raise MalformedDebugInfo("missing path in line program entry")
        return _text(value)
    try:
        return bytes(value).decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedDebugInfo(f"non UTF-8 string in DWARF: {value!r}") from e


def walk_dies(top_die: Any) -> Iterator[Tuple[Any, str]]:
    """
    Yield (die, module_path) for every DIE below top_die, in pre-order.

    The namespace stack is indexed by depth (children of the unit are depth
    0). Entering a named namespace truncates the stack to its depth and
    pushes its name.
    """
    segments: List[str] = []
    stack: List[Tuple[Any, int]] = []
    if top_die.has_children:
        stack.extend((child, 0) for child in reversed(list(top_die.iter_children())))

    while stack:
        die, depth = stack.pop()

        if die.tag == "DW_TAG_namespace":
            name_attr = die.attributes.get("DW_AT_name")
            if name_attr is not None:
                del segments[depth:]
                segments.append(_text(name_attr.value))

        yield die, MODULE_SEPARATOR.join(segments)

        if die.has_children:
            children = list(die.iter_children())
            stack.extend((child, depth + 1) for child in reversed(children))


def exprloc_to_address(expr: Iterable[int], structs: Any) -> int:
    """Return the operand of the first DW_OP_addr in a location expression."""
    try:
        ops = DWARFExprParser(structs).parse_expr(list(expr))
    except (ELFError, DWARFError, KeyError) as e:
        raise MalformedDebugInfo(f"undecodable location expression: {e}") from e

    for op in ops:
        if op.op_name == "DW_OP_addr":
            return op.args[0]
    raise MalformedDebugInfo("`DW_OP_addr` not found in location expression")


def file_index_to_path(index: int, line_header: Any, comp_dir: Optional[str]) -> Path:
    """
    Turn a DW_AT_decl_file index into a path.

    DWARF <= 4 numbers files from 1 and uses directory 0 for the compilation
    directory; DWARF 5 numbers both from 0.
    """
    if index == 0:
        raise MalformedDebugInfo("`FileIndex` was zero")
    if line_header is None:
        raise MalformedDebugInfo("no line program")

    version = line_header["version"]
    files = line_header["file_entry"]
    dirs = line_header["include_directory"]

    pos = index if version >= 5 else index - 1
    if pos >= len(files):
        raise MalformedDebugInfo(f"no file entry for index {index}")
    entry = files[pos]

    dir_index = _field(entry, "dir_index", "DW_LNCT_directory_index") or 0
    directory: Any = None
    if version >= 5:
        if dir_index < len(dirs):
            directory = dirs[dir_index]
    elif dir_index == 0:
        directory = comp_dir
    elif dir_index - 1 < len(dirs):
        directory = dirs[dir_index - 1]

    path = Path()
    if directory is not None:
        directory = _text(directory)
        if not PurePath(directory).is_absolute() and comp_dir:
            path = Path(comp_dir)
        path = path / directory

    return path / _text(_field(entry, "name", "DW_LNCT_path"))


# ---------------------------------------------------------------------------
# Walk
# ---------------------------------------------------------------------------

def _log_statement_attrs(die: Any) -> Optional[Tuple[Any, ...]]:
    attrs = die.attributes
    wanted = (
        attrs.get("DW_AT_name"),
        attrs.get("DW_AT_linkage_name"),
        attrs.get("DW_AT_decl_file"),
        attrs.get("DW_AT_decl_line"),
        attrs.get("DW_AT_location"),
    )
    if any(a is None for a in wanted):
        return None
    if wanted[4].form not in _EXPR_FORMS:
        # location list: not a static
        return None
    return wanted


def collect_locations(units: Iterable[DebugUnit], live_symbols: Set[str]) -> Locations:
    """
    Build {address: Location} for the live log statements of the given units.

    Raises:
        MalformedDebugInfo: structural problem in a matching entry.
        AddressCollision:   two live statements share an address.
    """
    found: Dict[int, Location] = {}
    dropped = 0

    for unit in units:
        if unit.top_die is None:
            raise MalformedDebugInfo(f"empty DWARF unit at offset 0x{unit.offset:x}")

        for die, module in walk_dies(unit.top_die):
            if die.tag != "DW_TAG_variable":
                continue

            attrs = _log_statement_attrs(die)
            if attrs is None:
                continue
            name_attr, linkage_attr, file_attr, line_attr, loc_attr = attrs

            if _text(name_attr.value) != LOG_STATEMENT_NAME:
                continue

            linkage_name = _text(linkage_attr.value)
            symbol = linkage_name.split(LINKAGE_SEPARATOR, 1)[0]
            if symbol not in live_symbols:
                # GC-ed by the linker; its address is meaningless.
                LOG.debug("Dropping dead log statement %s", linkage_name)
                dropped += 1
                continue

            address = exprloc_to_address(loc_attr.value, unit.structs)
            location = Location(
                file=file_index_to_path(file_attr.value, unit.line_header, unit.comp_dir),
                line=line_attr.value,
                module=module,
            )

            old = found.get(address)
            if old is not None:
                raise AddressCollision(address, old, location)
            found[address] = location
            LOG.debug("0x%08x -> %s (%s)", address, location, module)

    LOG.info("Resolved %d log locations (%d dead statements skipped)", len(found), dropped)
    return dict(sorted(found.items()))


def _iter_units(dwarf: Any) -> Iterator[DebugUnit]:
    for cu in dwarf.iter_CUs():
        top = cu.get_top_DIE()
        if top is not None and top.is_null():
            top = None

        comp_dir = None
        line_header = None
        if top is not None:
            comp_dir_attr = top.attributes.get("DW_AT_comp_dir")
            if comp_dir_attr is not None:
                comp_dir = _text(comp_dir_attr.value)
            line_program = dwarf.line_program_for_CU(cu)
            if line_program is not None:
                line_header = line_program.header

        yield DebugUnit(
            top_die=top,
            line_header=line_header,
            comp_dir=comp_dir,
            structs=cu.structs,
            offset=cu.cu_offset,
        )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def resolve_locations(image: bytes, table: Table) -> Locations:
    """
    Resolve the source location of every live log statement of an ELF image.

    An image without DWARF yields an empty map.
    """
    elf = open_elf(image)
    if not elf.has_dwarf_info():
        LOG.warning("No DWARF info in image; log locations are unavailable")
        return {}

    try:
        dwarf = elf.get_dwarf_info()
        return collect_locations(_iter_units(dwarf), table.symbols())
    except (ELFError, DWARFError, KeyError, ValueError) as e:
        # unknown forms and enum values surface as lookup errors
        raise MalformedDebugInfo(f"failed to read DWARF: {e}") from e


__all__ = [
    "LOG_STATEMENT_NAME",
    "Location",
    "Locations",
    "DebugUnit",
    "walk_dies",
    "exprloc_to_address",
    "file_index_to_path",
    "collect_locations",
    "resolve_locations",
]
