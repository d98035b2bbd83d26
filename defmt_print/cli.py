#!/usr/bin/env python3
"""
cli.py

Main entry point of defmt-print.

Responsibilities:
  - Load the firmware ELF, build the interned-string table and the log
    locations.
  - Open the input (serial port, capture file or stdin) and print every
    decoded frame.
  - Optionally dump the table instead of streaming (--dump-table).

Every fatal error ends here as one log line and exit status 1.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional, Tuple

import serial

from . import DEFMT_VERSION, __version__
from .errors import DefmtPrintError, StreamDesynchronized
from .locations import Locations, resolve_locations
from .log_sink import init_logger
from .stream import StreamProcessor
from .table import Table, extract_table
from .transport import DEFAULT_BAUD_RATE, open_reader


LOG = logging.getLogger("cli")


# ---------------------------------------------------------------------------
# CLI helpers
# ---------------------------------------------------------------------------

def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="defmt-print",
        description="Prints defmt-encoded logs to stdout.",
    )
    p.add_argument(
        "-e",
        "--elf",
        metavar="ELF",
        help="Firmware ELF that produced the log stream.",
    )
    p.add_argument(
        "-V",
        "--version",
        action="store_true",
        help="Print version information and exit.",
    )
    p.add_argument(
        "--serial",
        metavar="PORT",
        help="Serial port (or pyserial URL) to receive defmt frames from.",
    )
    p.add_argument(
        "--baud-rate",
        type=int,
        default=DEFAULT_BAUD_RATE,
        help=f"Baud rate of the serial port (default: {DEFAULT_BAUD_RATE}).",
    )
    p.add_argument(
        "--input",
        metavar="FILE",
        help="Read a captured stream from FILE instead of stdin.",
    )
    p.add_argument(
        "--dump-table",
        action="store_true",
        help="Print the interned strings with their level and location, then exit.",
    )
    p.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging.",
    )
    return p


def print_version() -> None:
    print(f"defmt-print {__version__}")
    print(f"supported defmt version: {DEFMT_VERSION}")


def load_firmware(elf_path: Path) -> Tuple[Table, Locations]:
    """
    Read the ELF and build table + locations.

    Raises DefmtPrintError (or OSError) on failure.
    """
    LOG.info("Loading firmware: %s", elf_path)
    image = elf_path.read_bytes()

    table = extract_table(image)
    if table is None:
        raise DefmtPrintError(".defmt data not found")

    locations = resolve_locations(image, table)
    return table, locations


def dump_table(table: Table, locations: Locations) -> None:
    for index, string in table.entries.items():
        level = table.level_of(index)
        label = level.value if level is not None else "-"
        loc = locations.get(index)
        where = f"{loc.module} @ {loc}" if loc is not None else "?"
        print(f"0x{index:08x}\t{label}\t{string}\t{where}")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> None:
    parser = build_argparser()
    args = parser.parse_args(argv)

    if args.version:
        print_version()
        return

    if not args.elf:
        parser.error("the following arguments are required: -e/--elf")

    init_logger(args.verbose)

    if args.serial and args.input:
        LOG.warning("--serial is specified; ignoring --input.")

    try:
        table, locations = load_firmware(Path(args.elf))
    except OSError as e:
        LOG.error("Cannot read ELF file %s: %s", args.elf, e)
        raise SystemExit(1)
    except DefmtPrintError as e:
        LOG.error("%s", e)
        raise SystemExit(1)

    if args.dump_table:
        dump_table(table, locations)
        return

    processor = StreamProcessor(table, locations)

    try:
        with open_reader(
            input_path=args.input,
            serial_port=args.serial,
            baud_rate=args.baud_rate,
        ) as reader:
            processor.run(reader)
    except StreamDesynchronized:
        # already logged with the raw bytes
        raise SystemExit(1)
    except (OSError, serial.SerialException) as e:
        LOG.error("Input error: %s", e)
        raise SystemExit(1)
    except KeyboardInterrupt:
        LOG.info("Interrupted")


if __name__ == "__main__":
    main()
