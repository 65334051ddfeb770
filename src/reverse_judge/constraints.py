"""Constraint parser: variable ranges and structural hints from free text.

Reads the problem's input-format and constraints descriptions and extracts
``lo <= name <= hi`` ranges (with exponent notation such as ``10^5``,
``2*10^5`` or ``1e9``), one-sided bounds, and keyword-triggered structural
hints. Parsing never fails: malformed matches are skipped, and when nothing
parses the result degrades to a single variable ``n`` in ``[1, 100]``.
"""

from __future__ import annotations

import logging
import re

from reverse_judge.models import ParsedConstraints, StructuralHint, VariableBound

logger = logging.getLogger(__name__)

DEFAULT_VARIABLE = VariableBound(name="n", type="int", min=1, max=100)

_MAX_EXPONENT = 18

# A number token: optional sign, mantissa, optional ``e`` exponent, optional
# ``* base`` multiplier and optional ``^ exp`` / ``** exp`` power.
_NUM = (
    r"-?\s*\d+(?:\.\d+)?(?:[eE][+-]?\d+)?"
    r"(?:\s*[*·×]\s*\d+)?"
    r"(?:\s*(?:\^|\*\*)\s*\{?-?\d+\}?)?"
)
_NAME = r"[A-Za-z_][A-Za-z0-9]*(?:_\{?[A-Za-z0-9]+\}?|\[[^\]\n]{0,8}\])?"
_NAMES = rf"{_NAME}(?:\s*,\s*{_NAME})*"
_LE = r"(?:≤|<=|=<|⩽|<)"
_GE = r"(?:≥|>=|=>|⩾|>)"

_RANGE_RE = re.compile(rf"(?P<lo>{_NUM})\s*(?P<op1>{_LE})\s*(?P<names>{_NAMES})\s*(?P<op2>{_LE})\s*(?P<hi>{_NUM})")
_UPPER_RE = re.compile(rf"(?<![\w.])(?P<names>{_NAMES})\s*(?P<op>{_LE})\s*(?P<hi>{_NUM})")
_LOWER_RE = re.compile(rf"(?<![\w.])(?P<names>{_NAMES})\s*(?P<op>{_GE})\s*(?P<lo>{_NUM})")

_HINT_KEYWORDS: dict[StructuralHint, tuple[re.Pattern[str], ...]] = {
    StructuralHint.ARRAY: (
        re.compile(r"\barray", re.IGNORECASE),
        re.compile(r"\bsequence", re.IGNORECASE),
        re.compile(r"\blist\b", re.IGNORECASE),
        re.compile(r"\b[a-z]\s+(?:integers|elements|numbers)\b", re.IGNORECASE),
    ),
    StructuralHint.MATRIX: (
        re.compile(r"\bmatri(?:x|ces)\b", re.IGNORECASE),
        re.compile(r"\bgrid", re.IGNORECASE),
    ),
    StructuralHint.GRAPH: (
        re.compile(r"\bgraph", re.IGNORECASE),
        re.compile(r"\bedges?\b", re.IGNORECASE),
        re.compile(r"\bnodes?\b", re.IGNORECASE),
        re.compile(r"\bverte(?:x|ces)\b", re.IGNORECASE),
    ),
    StructuralHint.TREE: (re.compile(r"\btrees?\b", re.IGNORECASE),),
    StructuralHint.STRING: (
        re.compile(r"\bstrings?\b", re.IGNORECASE),
        re.compile(r"\bcharacters?\b", re.IGNORECASE),
    ),
}


def parse_number(token: str) -> int | float:
    """Evaluate a constraint number token.

    Supports ``10^5``, ``10**5``, ``2*10^5``, ``2·10^5``, ``1e9``, signs and
    decimals. Exponents are capped at 18.

    Args:
        token: The raw matched token.

    Returns:
        An ``int`` for integral values, otherwise a ``float``.

    Raises:
        ValueError: If the token cannot be evaluated.
    """
    text = re.sub(r"\s+", "", token).replace("{", "").replace("}", "")
    sign = 1
    if text.startswith("-"):
        sign = -1
        text = text[1:]

    exponent = 1
    power = re.split(r"\^|\*\*", text, maxsplit=1)
    if len(power) == 2:
        text, exp_text = power
        exponent = int(exp_text)
        if exponent > _MAX_EXPONENT:
            logger.debug("Capping exponent %d in %r", exponent, token)
            exponent = _MAX_EXPONENT

    coefficient: int | float = 1
    parts = re.split(r"[*·×]", text, maxsplit=1)
    if len(parts) == 2:
        coefficient = _parse_plain(parts[0])
        text = parts[1]

    base = _parse_plain(text)
    value = sign * coefficient * base**exponent
    if isinstance(value, float) and value.is_integer() and abs(value) < 2**63:
        return int(value)
    return value


def _parse_plain(text: str) -> int | float:
    """Parse an unsigned mantissa with optional ``e`` exponent."""
    if re.fullmatch(r"\d+", text):
        return int(text)
    mantissa, _, exp = text.lower().partition("e")
    if exp and int(exp) > _MAX_EXPONENT:
        text = f"{mantissa}e{_MAX_EXPONENT}"
    return float(text)


def _split_names(names: str) -> list[str]:
    return [name.strip() for name in names.split(",") if name.strip()]


def _is_integral(value: int | float) -> bool:
    return isinstance(value, int) or float(value).is_integer()


def _make_bound(
    name: str,
    lo: int | float | None,
    hi: int | float | None,
    *,
    strict_lo: bool = False,
    strict_hi: bool = False,
) -> VariableBound:
    """Build a bound, narrowing strict integer inequalities by one."""
    values = [v for v in (lo, hi) if v is not None]
    is_int = all(_is_integral(v) for v in values)
    if is_int:
        lo = int(lo) + (1 if strict_lo else 0) if lo is not None else None
        hi = int(hi) - (1 if strict_hi else 0) if hi is not None else None
    return VariableBound(name=name, type="int" if is_int else "float", min=lo, max=hi)


def _mask(text: str, spans: list[tuple[int, int]]) -> str:
    """Blank out already-consumed spans so one-sided patterns skip them."""
    chars = list(text)
    for start, end in spans:
        chars[start:end] = " " * (end - start)
    return "".join(chars)


def _parse_ranges(text: str) -> tuple[list[VariableBound], str]:
    """Extract two-sided ranges and return them with the remaining text."""
    bounds: list[VariableBound] = []
    spans: list[tuple[int, int]] = []
    for match in _RANGE_RE.finditer(text):
        try:
            lo = parse_number(match.group("lo"))
            hi = parse_number(match.group("hi"))
        except (ValueError, OverflowError) as exc:
            logger.debug("Skipping range %r: %s", match.group(), exc)
            continue
        for name in _split_names(match.group("names")):
            bounds.append(
                _make_bound(
                    name,
                    lo,
                    hi,
                    strict_lo=match.group("op1") == "<",
                    strict_hi=match.group("op2") == "<",
                )
            )
        spans.append(match.span())
    return bounds, _mask(text, spans)


def _parse_one_sided(text: str) -> list[VariableBound]:
    """Extract ``name <= hi`` (min defaults to 1) and ``name >= lo`` bounds."""
    bounds: list[VariableBound] = []
    for match in _UPPER_RE.finditer(text):
        try:
            hi = parse_number(match.group("hi"))
        except (ValueError, OverflowError) as exc:
            logger.debug("Skipping upper bound %r: %s", match.group(), exc)
            continue
        for name in _split_names(match.group("names")):
            bounds.append(_make_bound(name, 1, hi, strict_hi=match.group("op") == "<"))
    for match in _LOWER_RE.finditer(text):
        try:
            lo = parse_number(match.group("lo"))
        except (ValueError, OverflowError) as exc:
            logger.debug("Skipping lower bound %r: %s", match.group(), exc)
            continue
        for name in _split_names(match.group("names")):
            bounds.append(_make_bound(name, lo, None, strict_lo=match.group("op") == ">"))
    return bounds


def detect_structural_hints(text: str) -> frozenset[StructuralHint]:
    """Return the structural hints whose keywords appear in *text*."""
    return frozenset(
        hint
        for hint, patterns in _HINT_KEYWORDS.items()
        if any(p.search(text) for p in patterns)
    )


def parse_constraints(format_text: str, constraints_text: str = "") -> ParsedConstraints:
    """Parse variable ranges and structural hints from problem descriptions.

    Args:
        format_text: Free-text input-format description.
        constraints_text: Free-text constraints description.

    Returns:
        The parsed constraints, with at least one variable. The first bound
        found for a name wins; later duplicates are dropped.
    """
    combined = f"{constraints_text}\n{format_text}"

    ranges, remainder = _parse_ranges(combined)
    found = ranges + _parse_one_sided(remainder)

    variables: list[VariableBound] = []
    seen: set[str] = set()
    for bound in found:
        if bound.name in seen:
            continue
        seen.add(bound.name)
        variables.append(bound)

    if not variables:
        logger.debug("No constraints parsed; defaulting to %s", DEFAULT_VARIABLE)
        variables = [DEFAULT_VARIABLE]

    hints = detect_structural_hints(combined)
    logger.debug(
        "Parsed %d variable(s) %s with hints %s",
        len(variables),
        [v.name for v in variables],
        sorted(hints),
    )
    return ParsedConstraints(variables=tuple(variables), structural_hints=hints)
