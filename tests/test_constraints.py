"""Tests for numeric extraction and the constraint parser."""

from __future__ import annotations

from hypothesis import given, settings, strategies as st
from reverse_judge.constraints import DEFAULT_VARIABLE, detect_structural_hints, parse_constraints, parse_number
from reverse_judge.extraction import (
    extract_first_number,
    extract_integers,
    extract_numbers,
    format_number,
    normalize_output,
    parse_boolean,
)
from reverse_judge.models import StructuralHint
import pytest

# ===========================================================================
# Extraction helpers
# ===========================================================================


@pytest.mark.unit
class TestExtraction:
    """Integer extraction with the size-prefix convention."""

    def test_size_prefix_is_dropped(self) -> None:
        """A leading count matching the remaining integers is a header."""
        assert extract_numbers("3\n1 2 3\n") == [1, 2, 3]

    def test_pair_misread_as_prefixed_list(self) -> None:
        """``2\\n5 7`` is ambiguous; the heuristic reads it as a prefixed pair."""
        assert extract_numbers("2\n5 7\n") == [5, 7]

    def test_non_matching_prefix_is_kept(self) -> None:
        """A first integer that is not a count stays."""
        assert extract_numbers("5 7\n") == [5, 7]

    def test_single_number_is_kept(self) -> None:
        """A lone integer has no body to prefix."""
        assert extract_numbers("1\n") == [1]

    def test_negative_numbers(self) -> None:
        """Signs are preserved."""
        assert extract_integers("-3 4 -5") == [-3, 4, -5]

    def test_first_number(self) -> None:
        """First integer or None."""
        assert extract_first_number("abc 42 7") == 42
        assert extract_first_number("no digits") is None

    def test_normalize_output(self) -> None:
        """Whitespace runs collapse to single spaces."""
        assert normalize_output("  1\n 2\t3 \n") == "1 2 3"

    @pytest.mark.parametrize(("text", "expected"), [("YES", True), ("no", False), ("1", True), ("maybe", None)])
    def test_parse_boolean(self, text: str, expected: bool | None) -> None:
        """Boolean spellings are case-insensitive."""
        assert parse_boolean(text) is expected

    def test_format_number(self) -> None:
        """Integral floats lose their decimal point."""
        assert format_number(6.0) == "6"
        assert format_number(2.5) == "2.5"


# ===========================================================================
# Number tokens
# ===========================================================================


@pytest.mark.unit
class TestParseNumber:
    """Constraint number tokens with exponent notation."""

    @pytest.mark.parametrize(
        ("token", "expected"),
        [
            ("10^5", 100000),
            ("10**5", 100000),
            ("2*10^5", 200000),
            ("2·10^5", 200000),
            ("1e9", 1000000000),
            ("-100", -100),
            ("10^{9}", 1000000000),
        ],
    )
    def test_tokens(self, token: str, expected: int) -> None:
        """Every supported notation evaluates to an int."""
        value = parse_number(token)
        assert value == expected
        assert isinstance(value, int)

    def test_decimal_stays_float(self) -> None:
        """Non-integral values are floats."""
        assert parse_number("0.5") == pytest.approx(0.5)

    def test_exponent_is_capped(self) -> None:
        """Exponents above 18 are capped."""
        assert parse_number("10^30") == 10**18


# ===========================================================================
# Full parse
# ===========================================================================


@pytest.mark.unit
class TestParseConstraints:
    """parse_constraints extracts ranges and hints."""

    def test_two_sided_ranges(self) -> None:
        """``lo <= name <= hi`` ranges produce bounds in order."""
        parsed = parse_constraints("n integers", "1 <= n <= 10^5, -10^9 <= a_i <= 10^9")
        n = parsed.variable("n")
        a = parsed.variable("a_i")
        assert n is not None and (n.min, n.max) == (1, 100000)
        assert a is not None and (a.min, a.max) == (-(10**9), 10**9)
        assert n.type == "int"

    def test_unicode_operators(self) -> None:
        """Unicode inequality signs are understood."""
        parsed = parse_constraints("", "1 ≤ n ≤ 2·10^5")
        n = parsed.variable("n")
        assert n is not None and n.max == 200000

    def test_shared_range_for_several_names(self) -> None:
        """``1 <= n, m <= 100`` bounds both names."""
        parsed = parse_constraints("", "1 <= n, m <= 100")
        assert parsed.variable("n") is not None
        assert parsed.variable("m") is not None

    def test_strict_inequality_narrows_integers(self) -> None:
        """``0 < n < 10`` becomes ``[1, 9]``."""
        parsed = parse_constraints("", "0 < n < 10")
        n = parsed.variable("n")
        assert n is not None and (n.min, n.max) == (1, 9)

    def test_one_sided_upper_bound_defaults_min(self) -> None:
        """``n <= 50`` gets a minimum of 1."""
        parsed = parse_constraints("", "n <= 50")
        n = parsed.variable("n")
        assert n is not None and (n.min, n.max) == (1, 50)

    def test_first_bound_wins(self) -> None:
        """Later duplicates of a name are dropped."""
        parsed = parse_constraints("n <= 1000", "1 <= n <= 10")
        assert [v.name for v in parsed.variables].count("n") == 1
        n = parsed.variable("n")
        assert n is not None and n.max == 10

    def test_default_when_nothing_parses(self) -> None:
        """Unparseable text yields the default variable."""
        parsed = parse_constraints("read some stuff", "")
        assert parsed.variables == (DEFAULT_VARIABLE,)

    def test_structural_hints(self) -> None:
        """Keywords map to hints."""
        hints = detect_structural_hints("A tree with n nodes given as an edge list, plus a string s")
        assert StructuralHint.TREE in hints
        assert StructuralHint.GRAPH in hints
        assert StructuralHint.STRING in hints
        assert StructuralHint.MATRIX not in hints

    def test_array_hint_from_format(self) -> None:
        """``n integers`` implies an array."""
        parsed = parse_constraints("The second line contains n integers.", "")
        assert parsed.has_hint(StructuralHint.ARRAY)

    @given(format_text=st.text(max_size=200), constraints_text=st.text(max_size=200))
    @settings(max_examples=200)
    def test_never_raises_and_has_a_variable(self, format_text: str, constraints_text: str) -> None:
        """Arbitrary text always parses to at least one variable."""
        parsed = parse_constraints(format_text, constraints_text)
        assert len(parsed.variables) >= 1
