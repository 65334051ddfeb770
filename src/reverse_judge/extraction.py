"""Numeric extraction and text normalization shared by the analysis engines.

All engines read program inputs through :func:`extract_numbers`, which
applies the size-prefix convention: when the first integer of an input
equals the count of the integers that follow it, it is treated as a length
header and dropped. ``"3\\n1 2 3\\n"`` therefore yields ``[1, 2, 3]``. The
heuristic misfires on inputs such as ``"2\\n5 7\\n"`` read as a plain pair,
and on single-number inputs like ``"1\\n"`` (a one-element header with no
body is kept as-is).
"""

from __future__ import annotations

import math
import re

_INT_RE = re.compile(r"-?\d+")
_WHITESPACE_RE = re.compile(r"\s+")

BOOLEAN_TRUE: frozenset[str] = frozenset({"yes", "1", "true"})
BOOLEAN_FALSE: frozenset[str] = frozenset({"no", "0", "false"})


def extract_integers(text: str) -> list[int]:
    """Return every integer literal in *text*, in order."""
    return [int(m) for m in _INT_RE.findall(text)]


def extract_numbers(text: str) -> list[int]:
    """Return the integers of *text* with a leading size prefix removed.

    Args:
        text: Program input.

    Returns:
        The element values. The first integer is dropped when it equals
        the number of integers after it.
    """
    numbers = extract_integers(text)
    if len(numbers) > 1 and numbers[0] == len(numbers) - 1:
        return numbers[1:]
    return numbers


def extract_first_number(text: str) -> int | None:
    """Return the first integer in *text*, or ``None`` when there is none."""
    match = _INT_RE.search(text)
    return int(match.group()) if match else None


def normalize_output(text: str) -> str:
    """Collapse all whitespace runs to single spaces and strip the ends."""
    return _WHITESPACE_RE.sub(" ", text).strip()


def normalize_input(text: str) -> str:
    """Deduplication key for test inputs (whitespace-insensitive)."""
    return _WHITESPACE_RE.sub(" ", text).strip()


def ensure_trailing_newline(text: str) -> str:
    """Return *text* terminated by exactly one newline."""
    return text.rstrip("\n") + "\n"


def parse_number(text: str) -> float | None:
    """Parse a whole output as a finite number, or return ``None``."""
    try:
        value = float(text.strip())
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return value


def format_number(value: float) -> str:
    """Render integral values without a decimal point."""
    if isinstance(value, int):
        return str(value)
    if value.is_integer():
        return str(int(value))
    return repr(value)


def parse_boolean(text: str) -> bool | None:
    """Interpret YES/NO, 1/0, true/false outputs; ``None`` otherwise."""
    token = text.strip().lower()
    if token in BOOLEAN_TRUE:
        return True
    if token in BOOLEAN_FALSE:
        return False
    return None


def is_boolean_output(text: str) -> bool:
    """Whether *text* is one of the recognized boolean spellings."""
    return parse_boolean(text) is not None
