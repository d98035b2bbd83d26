#!/usr/bin/env python3
"""
log_sink.py

Where decoded frames end up.

Two kinds of output share the process:
  - host diagnostics (this tool's own LOG.* calls) -> stderr, root logger.
  - device frames -> the "defmt" logger -> stdout, one record per frame.

The device logger does not propagate, so host verbosity never filters or
duplicates device output.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, TextIO

from .codec import Frame
from .table import Level


DEVICE_LOGGER_NAME = "defmt"

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LEVELS = {
    Level.TRACE: TRACE,
    Level.DEBUG: logging.DEBUG,
    Level.INFO: logging.INFO,
    Level.WARN: logging.WARNING,
    Level.ERROR: logging.ERROR,
}

DEVICE_LOG = logging.getLogger(DEVICE_LOGGER_NAME)


class FrameFormatter(logging.Formatter):
    """
    Renders a device frame as:

        INFO  Hello, world!
        └─ app::sensor @ src/main.rs:10
    """

    def format(self, record: logging.LogRecord) -> str:
        level = getattr(record, "defmt_level", None)
        label = level.value.upper() if level is not None else ""
        text = f"{label:<5} {record.getMessage()}" if label else record.getMessage()

        file = getattr(record, "defmt_file", None)
        if file is None:
            return text
        line = getattr(record, "defmt_line", None)
        module = getattr(record, "defmt_module", None) or "?"
        where = f"{file}:{line}" if line is not None else file
        return f"{text}\n└─ {module} @ {where}"


def log_frame(
    frame: Frame,
    file: Optional[str] = None,
    line: Optional[int] = None,
    module: Optional[str] = None,
) -> None:
    """Forward one decoded frame to the device logger."""
    level = LEVELS.get(frame.level, logging.INFO)
    DEVICE_LOG.log(
        level,
        "%s",
        frame.message(),
        extra={
            "defmt_level": frame.level,
            "defmt_file": file,
            "defmt_line": line,
            "defmt_module": module,
        },
    )


def init_logger(verbose: bool = False, stream: Optional[TextIO] = None) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(levelname)s] %(message)s",
    )

    for handler in list(DEVICE_LOG.handlers):
        DEVICE_LOG.removeHandler(handler)
    handler = logging.StreamHandler(stream if stream is not None else sys.stdout)
    handler.setFormatter(FrameFormatter())
    DEVICE_LOG.addHandler(handler)
    # Every frame is shown, whatever the host verbosity.
    DEVICE_LOG.setLevel(TRACE)
    DEVICE_LOG.propagate = False


__all__ = [
    "DEVICE_LOGGER_NAME",
    "TRACE",
    "FrameFormatter",
    "log_frame",
    "init_logger",
]
