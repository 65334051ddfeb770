"""Test strategy generator: candidate inputs from declarative rules.

Each :class:`TestStrategy` is an independent, pure generator over the parsed
constraints. Strategies are tagged with the input shapes they apply to, so an
array-only rule never emits inputs for a string or graph problem. A strategy
that raises is skipped and logged without affecting the rest of the batch.

The merged batch is ordered by descending priority (stable across strategy
order), filtered for well-formedness against the structural hints and known
bounds, deduplicated by whitespace-collapsed input, and truncated.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
import logging
import re
import string

from pydantic import BaseModel, ConfigDict

from reverse_judge.constraints import parse_constraints
from reverse_judge.extraction import ensure_trailing_newline, normalize_input
from reverse_judge.models import (
    ParsedConstraints,
    StructuralHint,
    TestCase,
    TestCategory,
    VariableBound,
)

logger = logging.getLogger(__name__)

DEFAULT_TARGET_COUNT = 25

SIZE_VARIABLE_NAMES: frozenset[str] = frozenset({"n", "size", "len", "length"})
ELEMENT_VARIABLE_NAMES: frozenset[str] = frozenset({"a", "arr", "array", "b", "x", "v", "nums", "values", "elements"})
_SUBSCRIPTED_RE = re.compile(r"^[A-Za-z]+(?:_\{?[A-Za-z0-9]+\}?|\[[^\]]*\])$")

# Largest boundary value materialized into a full structure.
_MAX_MATERIALIZED = 20

ALL_SHAPES: frozenset[StructuralHint] = frozenset(StructuralHint)
ARRAY_SHAPES: frozenset[StructuralHint] = frozenset({StructuralHint.ARRAY})


class TestStrategy(BaseModel):
    """A named, pure generator of test cases.

    Attributes:
        name: Strategy identifier used in logs.
        description: What the strategy probes.
        shapes: Input shapes the strategy applies to.
        generate: Pure function from constraints to test cases.
    """

    __test__ = False

    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    shapes: frozenset[StructuralHint]
    generate: Callable[[ParsedConstraints], list[TestCase]]


# ---------------------------------------------------------------------------
# Shape helpers
# ---------------------------------------------------------------------------


def input_shape(constraints: ParsedConstraints) -> StructuralHint:
    """Pick the dominant input shape; problems without hints are array-shaped."""
    hints = constraints.structural_hints
    for hint in (
        StructuralHint.ARRAY,
        StructuralHint.MATRIX,
        StructuralHint.TREE,
        StructuralHint.GRAPH,
        StructuralHint.STRING,
    ):
        if hint in hints:
            return hint
    return StructuralHint.ARRAY


def size_variable(constraints: ParsedConstraints) -> VariableBound | None:
    """Return the first variable that names an input size."""
    for var in constraints.variables:
        if var.name.lower() in SIZE_VARIABLE_NAMES:
            return var
    return None


def _names_elements(name: str) -> bool:
    return bool(_SUBSCRIPTED_RE.match(name)) or name.lower() in ELEMENT_VARIABLE_NAMES


def element_variable(constraints: ParsedConstraints) -> VariableBound | None:
    """Return the bounded variable that describes the array elements.

    Subscripted names such as ``a_i`` or ``x[i]`` and common array names win.
    Otherwise the first bounded variable that is not an input size is used.
    """
    bounded = [
        var
        for var in constraints.variables
        if var.name.lower() not in SIZE_VARIABLE_NAMES and var.min is not None and var.max is not None
    ]
    for var in bounded:
        if _names_elements(var.name):
            return var
    return bounded[0] if bounded else None


def array_input(values: Sequence[int]) -> str:
    """Render ``values`` as a length line followed by the elements."""
    return f"{len(values)}\n{' '.join(str(v) for v in values)}\n"


def materialize(value: int, constraints: ParsedConstraints) -> str:
    """Turn a scalar boundary value into a full input of the problem's shape.

    Args:
        value: The boundary value of the size variable.
        constraints: Parsed constraints supplying the structural hints.

    Returns:
        An ``n``-element array, ``n x n`` matrix, path tree, path graph,
        length-``n`` string, or the bare integer when no hint is present.
    """
    hints = constraints.structural_hints
    if not hints:
        return f"{value}\n"
    shape = input_shape(constraints)
    size = max(value, 1)
    if shape is StructuralHint.ARRAY:
        return array_input(list(range(1, size + 1)))
    if shape is StructuralHint.MATRIX:
        rows = "\n".join(" ".join(str(c) for c in range(1, size + 1)) for _ in range(size))
        return f"{size} {size}\n{rows}\n"
    if shape is StructuralHint.TREE:
        edges = "".join(f"{i} {i + 1}\n" for i in range(1, size))
        return f"{size}\n{edges}"
    if shape is StructuralHint.GRAPH:
        edges = "".join(f"{i} {i + 1}\n" for i in range(1, size))
        return f"{size} {size - 1}\n{edges}"
    letters = string.ascii_lowercase
    return "".join(letters[i % len(letters)] for i in range(size)) + "\n"


def _case(text: str, rationale: str, category: TestCategory, priority: int) -> TestCase:
    return TestCase(
        input=ensure_trailing_newline(text),
        rationale=rationale,
        category=category,
        priority=priority,
    )


def _canned(
    category: TestCategory, entries: Iterable[tuple[str, str, int]]
) -> Callable[[ParsedConstraints], list[TestCase]]:
    """Build a generator that ignores constraints and emits fixed cases."""
    frozen = tuple(entries)

    def _generate(_constraints: ParsedConstraints) -> list[TestCase]:
        return [_case(text, rationale, category, priority) for text, rationale, priority in frozen]

    return _generate


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def _boundary(constraints: ParsedConstraints) -> list[TestCase]:
    """Minimum, practical maximum and just-above-minimum of the size variable.

    Without a size variable and without structural hints, the first
    variable is probed as a bare scalar at its minimum and maximum.
    """
    cases: list[TestCase] = []
    var = size_variable(constraints)
    if var is not None:
        lo = int(var.min) if var.min is not None else 1
        hi = int(var.max) if var.max is not None else lo + _MAX_MATERIALIZED
        lo = max(lo, 0)
        practical = max(lo, min(hi, _MAX_MATERIALIZED))
        cases.append(
            _case(materialize(lo, constraints), f"Minimum {var.name}={lo}", TestCategory.BOUNDARY, 10)
        )
        cases.append(
            _case(
                materialize(practical, constraints),
                f"Practical maximum {var.name}={practical}",
                TestCategory.BOUNDARY,
                10,
            )
        )
        if hi - lo > 2:
            cases.append(
                _case(
                    materialize(lo + 1, constraints),
                    f"Just above minimum {var.name}={lo + 1}",
                    TestCategory.BOUNDARY,
                    8,
                )
            )
        return cases

    if constraints.structural_hints or not constraints.variables:
        return cases
    scalar = constraints.variables[0]
    if scalar.type != "int":
        return cases
    for value, label, priority in (
        (scalar.min, "Minimum", 10),
        (scalar.max, "Maximum", 10),
        (scalar.min + 1 if scalar.min is not None else None, "Just above minimum", 8),
    ):
        if value is None:
            continue
        cases.append(
            _case(f"{int(value)}\n", f"{label} {scalar.name}={int(value)}", TestCategory.BOUNDARY, priority)
        )
    return cases


_IDENTITY = _canned(
    TestCategory.IDENTITY,
    [
        ("1\n0", "Single zero", 9),
        ("1\n1", "Single one", 9),
        ("5\n0 0 0 0 0", "All zeros", 9),
        ("5\n1 1 1 1 1", "All ones", 9),
    ],
)

_SIGNS = _canned(
    TestCategory.SIGNS,
    [
        ("5\n-1 -2 -3 -4 -5", "All negative", 8),
        ("5\n1 2 3 4 5", "All positive", 8),
        ("6\n-3 -2 -1 1 2 3", "Mixed signs without zero", 8),
        ("7\n-3 -2 -1 0 1 2 3", "Mixed signs with zero", 8),
        ("6\n-1 1 -1 1 -1 1", "Alternating signs", 7),
    ],
)

_ORDERING = _canned(
    TestCategory.ORDERING,
    [
        ("5\n1 2 3 4 5", "Sorted ascending", 8),
        ("5\n5 4 3 2 1", "Sorted descending", 8),
        ("5\n1 1 2 2 3", "Non-decreasing with repeats", 7),
        ("6\n1 3 2 6 5 4", "Partially sorted", 6),
        ("5\n3 1 4 1 5", "Unsorted", 6),
    ],
)

_DUPLICATES = _canned(
    TestCategory.DUPLICATES,
    [
        ("5\n7 7 7 7 7", "All identical", 8),
        ("5\n1 2 3 4 5", "All unique", 7),
        ("6\n1 2 2 3 3 3", "Increasing multiplicity", 6),
        ("8\n1 1 2 2 3 3 4 4", "Pairs", 6),
    ],
)

_SEQUENCES = _canned(
    TestCategory.SEQUENCES,
    [
        ("5\n2 4 6 8 10", "Even arithmetic progression", 7),
        ("5\n1 3 5 7 9", "Odd arithmetic progression", 7),
        ("5\n1 2 4 8 16", "Powers of two", 7),
        ("6\n1 1 2 3 5 8", "Fibonacci prefix", 7),
        ("5\n2 3 5 7 11", "Primes", 6),
        ("5\n1 4 9 16 25", "Perfect squares", 6),
    ],
)

_LARGE_VALUES = _canned(
    TestCategory.LARGE_VALUES,
    [
        ("3\n1000000000 1000000000 1000000000", "Sum exceeds 32-bit range", 8),
        ("3\n-1000000000 -1000000000 -1000000000", "Negative overflow", 8),
        ("2\n1000000000 -1000000000", "Extremes cancel", 8),
        ("4\n999999999 1 -999999999 -1", "Large mixed", 7),
    ],
)

_DP_PATTERNS = _canned(
    TestCategory.DP_PATTERNS,
    [
        ("6\n-2 1 -3 4 -1 2", "Kadane's max subarray trigger", 6),
        ("6\n2 3 1 5 4 6", "LIS trigger", 6),
        ("8\n1 2 1 2 1 2 1 2", "Periodic pattern", 5),
        ("5\n5 4 3 2 1", "Greedy worst case", 6),
    ],
)

_STRING_PATTERNS = _canned(
    TestCategory.STRING_PATTERNS,
    [
        ("a", "Single character", 10),
        ("aaaaa", "All identical characters", 8),
        ("racecar", "Palindrome", 8),
        ("abcde", "Distinct ascending characters", 7),
        ("edcba", "Distinct descending characters", 7),
        ("abababab", "Repeating period", 6),
        ("abcabcbb", "Repeats with varied gaps", 6),
        ("zyxwvutsrqponmlkjihgfedcba", "Whole alphabet reversed", 5),
    ],
)


def _structure(constraints: ParsedConstraints) -> list[TestCase]:
    """Small canonical shapes for matrix, tree and graph problems."""
    shape = input_shape(constraints)
    entries: list[tuple[str, str, int]]
    if shape is StructuralHint.MATRIX:
        entries = [
            ("1 1\n5", "Single cell", 9),
            ("2 2\n1 2\n3 4", "Square matrix", 8),
            ("3 3\n1 0 0\n0 1 0\n0 0 1", "Identity matrix", 7),
            ("2 3\n1 2 3\n4 5 6", "Rectangular matrix", 7),
            ("3 3\n0 0 0\n0 0 0\n0 0 0", "All zeros", 6),
        ]
    elif shape is StructuralHint.TREE:
        entries = [
            ("1", "Single node", 9),
            ("2\n1 2", "Single edge", 8),
            ("5\n1 2\n1 3\n1 4\n1 5", "Star tree", 7),
            ("5\n1 2\n2 3\n3 4\n4 5", "Path tree", 7),
            ("7\n1 2\n1 3\n2 4\n2 5\n3 6\n3 7", "Complete binary tree", 6),
        ]
    elif shape is StructuralHint.GRAPH:
        entries = [
            ("2 1\n1 2", "Single edge", 9),
            ("3 3\n1 2\n2 3\n3 1", "Triangle cycle", 8),
            ("4 2\n1 2\n3 4", "Disconnected components", 7),
            ("4 0", "No edges", 7),
            ("5 4\n1 2\n2 3\n3 4\n4 5", "Path graph", 6),
        ]
    else:
        return []
    return [_case(text, rationale, TestCategory.STRUCTURE, priority) for text, rationale, priority in entries]


STRATEGIES: tuple[TestStrategy, ...] = (
    TestStrategy(name="boundary", description="Size-variable boundary values", shapes=ALL_SHAPES, generate=_boundary),
    TestStrategy(name="identity", description="Zero and identity elements", shapes=ARRAY_SHAPES, generate=_IDENTITY),
    TestStrategy(name="signs", description="Sign variations", shapes=ARRAY_SHAPES, generate=_SIGNS),
    TestStrategy(name="ordering", description="Sorted and unsorted orders", shapes=ARRAY_SHAPES, generate=_ORDERING),
    TestStrategy(name="duplicates", description="Repeated elements", shapes=ARRAY_SHAPES, generate=_DUPLICATES),
    TestStrategy(name="sequences", description="Mathematical sequences", shapes=ARRAY_SHAPES, generate=_SEQUENCES),
    TestStrategy(
        name="large_values",
        description="Overflow-prone magnitudes",
        shapes=ARRAY_SHAPES,
        generate=_LARGE_VALUES,
    ),
    TestStrategy(
        name="dp_patterns",
        description="Kadane, LIS and greedy-revealing arrays",
        shapes=ARRAY_SHAPES,
        generate=_DP_PATTERNS,
    ),
    TestStrategy(
        name="string_patterns",
        description="Palindromes, repeats and character orderings",
        shapes=frozenset({StructuralHint.STRING}),
        generate=_STRING_PATTERNS,
    ),
    TestStrategy(
        name="structure",
        description="Canonical matrix, tree and graph shapes",
        shapes=frozenset({StructuralHint.MATRIX, StructuralHint.TREE, StructuralHint.GRAPH}),
        generate=_structure,
    ),
)


# ---------------------------------------------------------------------------
# Validation and batching
# ---------------------------------------------------------------------------


def _array_tokens(text: str) -> tuple[int, list[int]] | None:
    """Split an array-shaped input into its count and integer elements."""
    lines = [line for line in text.strip().splitlines() if line.strip()]
    if len(lines) < 2:
        return None
    head = lines[0].split()
    if len(head) != 1:
        return None
    try:
        count = int(head[0])
        elements = [int(tok) for line in lines[1:] for tok in line.split()]
    except ValueError:
        return None
    return count, elements


def is_well_formed(text: str, constraints: ParsedConstraints) -> bool:
    """Check that *text* is a plausible input for the problem's shape.

    The input must be non-blank. For array-shaped problems whose body is all
    integers, the leading count must equal the number of elements.
    """
    if not text.strip():
        return False
    if input_shape(constraints) is not StructuralHint.ARRAY:
        return True
    parsed = _array_tokens(text)
    if parsed is None:
        return True
    count, elements = parsed
    return count == len(elements)


def within_bounds(text: str, constraints: ParsedConstraints) -> bool:
    """Reject array inputs that violate known size or element bounds."""
    if input_shape(constraints) is not StructuralHint.ARRAY:
        return True
    parsed = _array_tokens(text)
    if parsed is None:
        return True
    count, elements = parsed
    size = size_variable(constraints)
    if size is not None and size.max is not None and count > size.max:
        return False
    if size is not None and size.min is not None and count < size.min:
        return False
    element = element_variable(constraints)
    if element is None:
        return True
    return all(element.min <= value <= element.max for value in elements)


def dedupe_cases(cases: Iterable[TestCase], *, seen: set[str] | None = None) -> list[TestCase]:
    """Drop cases whose normalized input was already seen, keeping order."""
    seen = set() if seen is None else seen
    unique: list[TestCase] = []
    for case in cases:
        key = normalize_input(case.input)
        if key in seen:
            continue
        seen.add(key)
        unique.append(case)
    return unique


def generate_test_cases(
    constraints: ParsedConstraints,
    target_count: int = DEFAULT_TARGET_COUNT,
) -> list[TestCase]:
    """Run every applicable strategy and return the trimmed batch.

    Args:
        constraints: Parsed constraints for the problem.
        target_count: Maximum number of cases to return.

    Returns:
        Cases ordered by descending priority with no two sharing a
        normalized input.
    """
    shape = input_shape(constraints)
    collected: list[TestCase] = []
    for strategy in STRATEGIES:
        if shape not in strategy.shapes:
            continue
        try:
            produced = strategy.generate(constraints)
        except Exception:
            logger.warning("Strategy %s failed; skipping", strategy.name, exc_info=True)
            continue
        logger.debug("Strategy %s produced %d case(s)", strategy.name, len(produced))
        collected.extend(produced)

    accepted = [
        case
        for case in collected
        if is_well_formed(case.input, constraints) and within_bounds(case.input, constraints)
    ]
    if len(accepted) < len(collected):
        logger.debug("Dropped %d case(s) violating shape or bounds", len(collected) - len(accepted))

    ordered = sorted(accepted, key=lambda case: case.priority, reverse=True)
    return dedupe_cases(ordered)[:target_count]


def generate_test_suite(
    format_text: str,
    constraints_text: str = "",
    target_count: int = DEFAULT_TARGET_COUNT,
) -> list[TestCase]:
    """Parse the descriptions and generate a batch in one call."""
    return generate_test_cases(parse_constraints(format_text, constraints_text), target_count)


def cases_by_category(constraints: ParsedConstraints, category: TestCategory) -> list[TestCase]:
    """Return the generated cases of one category from an untrimmed batch."""
    return [case for case in generate_test_cases(constraints, 50) if case.category == category]


def external_case(text: str, rationale: str, priority: int = 5) -> TestCase:
    """Wrap an externally generated input, unescaping literal ``\\n``."""
    return _case(text.replace("\\n", "\n"), rationale, TestCategory.EXTERNAL, priority)


def merge_test_cases(*batches: Iterable[TestCase], limit: int) -> list[TestCase]:
    """Concatenate batches in order, dropping duplicates, up to *limit*."""
    merged: list[TestCase] = []
    for batch in batches:
        merged.extend(batch)
    return dedupe_cases(merged)[:limit]
