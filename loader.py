"""Module: read a program image (comma-separated integers) into a list.

This module contains:
- tokenize(s) -> list of (offset, token) pairs
- parse_program(s) -> list of ints
- load_program(path) -> list of ints
- format_program(values) -> comma-separated text (inverse of parse_program)
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

TOKEN_RE = re.compile(
    r"""
    \s*                             # skip leading whitespace
    ([^,\s]+|,)                     # a value or a separator
    """,
    re.VERBOSE,
)

_INT_RE = re.compile(r"^[-+]?\d+$")


class LoadError(ValueError):
    """Raised when a program image is malformed or cannot be read."""

    pass


def tokenize(s: str) -> list[tuple[int, str]]:
    """Split source text into (offset, token) pairs; whitespace and newlines are ignored."""
    return [(m.start(1), m.group(1)) for m in TOKEN_RE.finditer(s)]


def parse_program(s: str) -> list[int]:
    """Parse a comma-separated integer list.

    A single trailing comma is tolerated. Empty fields and non-integer
    tokens raise LoadError naming the offending offset.
    """
    values: list[int] = []
    expect_value = True
    for offset, tok in tokenize(s):
        if tok == ",":
            if expect_value:
                msg = f"Empty value at offset {offset}"
                raise LoadError(msg)
            expect_value = True
            continue
        if not expect_value:
            msg = f"Missing separator before {tok!r} at offset {offset}"
            raise LoadError(msg)
        if not _INT_RE.match(tok):
            msg = f"Bad value {tok!r} at offset {offset}"
            raise LoadError(msg)
        values.append(int(tok))
        expect_value = False
    if not values:
        msg = "Program image is empty"
        raise LoadError(msg)
    return values


def load_program(path: str | Path) -> list[int]:
    """Read and parse a program image file."""
    p = Path(path)
    if not p.exists():
        msg = f"Program file not found: {path}"
        raise LoadError(msg)
    try:
        text = p.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        msg = f"Failed to read program file {path}: {e}"
        raise LoadError(msg) from e
    try:
        values = parse_program(text)
    except LoadError as e:
        msg = f"{path}: {e}"
        raise LoadError(msg) from e
    logging.debug("loader: read %d words from %s", len(values), path)
    return values


def format_program(values: list[int]) -> str:
    """Render memory contents in the same comma-separated form."""
    return ",".join(str(v) for v in values)
