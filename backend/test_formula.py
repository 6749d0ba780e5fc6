"""
Tests for the formula skill: parsing, fail-soft evaluation, validation and calculated columns.
"""

import pytest

from skills.formula import (
    FormulaError,
    add_calculated_column,
    evaluate_formula,
    formula_aggregate,
    parse_formula,
    referenced_columns,
    validate_formula,
)


class TestEvaluateFormula:
    """Tests for expression evaluation against a row."""

    def test_column_difference(self):
        """The basic margin formula over one row."""
        assert evaluate_formula("revenue - cost", {"revenue": 100, "cost": 50}) == 50

    @pytest.mark.parametrize("formula,expected", [
        ("a + b * 2", 7),
        ("(a + b) * 2", 10),
        ("-a + 10", 9),
        ("b % a", 0),
        ("a / b", 0.25),
        ("2.5 * 2", 5),
    ])
    def test_precedence(self, formula, expected):
        """Standard arithmetic precedence and parentheses."""
        assert evaluate_formula(formula, {"a": 1, "b": 4}) == pytest.approx(expected)

    @pytest.mark.parametrize("formula", ["a / 0", "a % 0", "a +", "a $ b", "import os", ""])
    def test_failures_become_zero(self, formula):
        """Division by zero and malformed input never raise."""
        assert evaluate_formula(formula, {"a": 1, "b": 2}) == 0

    def test_longest_column_name_wins(self):
        """`cost_total` is never read as `cost` followed by junk."""
        row = {"cost": 1, "cost_total": 10}
        assert evaluate_formula("cost_total - cost", row) == 9

    def test_string_cells_are_coerced(self):
        assert evaluate_formula("a * 2", {"a": "3"}) == 6

    def test_strict_parse_raises(self):
        with pytest.raises(FormulaError):
            parse_formula("(a + 1", {"a": 1})

    @pytest.mark.parametrize("formula", [
        "-" * 3000 + "cost",
        "(" * 3000 + "cost" + ")" * 3000,
    ])
    def test_deep_nesting_becomes_zero(self, formula):
        """Pathological nesting is rejected by the parser, not the interpreter stack."""
        assert evaluate_formula(formula, {"cost": 1}) == 0
        with pytest.raises(FormulaError):
            parse_formula(formula, {"cost": 1})

    def test_moderate_nesting_still_evaluates(self):
        formula = "(" * 20 + "cost + 1" + ")" * 20
        assert evaluate_formula(formula, {"cost": 1}) == 2
        assert evaluate_formula("--cost", {"cost": 3}) == 3


class TestValidateFormula:
    """Tests for the authoring-time check."""

    def test_valid(self):
        assert validate_formula("revenue - cost", ["revenue", "cost"]) == (True, "ok")

    def test_no_columns(self):
        """Constant formulas are valid but flagged."""
        assert validate_formula("1 + 2", ["revenue"]) == (True, "Formula references no columns.")

    @pytest.mark.parametrize("formula", ["revenue -", "revenue * profit", "(revenue"])
    def test_invalid(self, formula):
        ok, message = validate_formula(formula, ["revenue"])
        assert not ok
        assert message

    def test_deep_nesting_invalid(self):
        ok, message = validate_formula("(" * 3000 + "1" + ")" * 3000, [])
        assert not ok
        assert "nested too deeply" in message

    def test_referenced_columns(self):
        """Columns come back once each, in order of first use."""
        cols = referenced_columns("b + a * b", ["a", "b", "c"])
        assert cols == ["b", "a"]


class TestFormulaAggregate:
    """Tests for per-group formula results."""

    def test_sums_then_evaluates(self):
        """The formula is applied to per-group sums, not averaged per row."""
        rows = [
            {"r": "E", "revenue": 100, "cost": 60},
            {"r": "E", "revenue": 50, "cost": 10},
            {"r": "W", "revenue": 30, "cost": 20},
        ]
        result = formula_aggregate(rows, "r", "revenue - cost", label="margin")
        assert result == [
            {"name": "E", "value": 80, "margin": 80},
            {"name": "W", "value": 10, "margin": 10},
        ]

    def test_default_label(self):
        rows = [{"r": "E", "a": 2}]
        assert formula_aggregate(rows, "r", "a * 3") == [{"name": "E", "value": 6}]


class TestAddCalculatedColumn:
    """Tests for appending formula columns to rows."""

    def test_appends_rounded_values(self):
        """New column is rounded to 2 decimals; input rows are untouched."""
        rows = [{"a": 1, "b": 3}]
        out = add_calculated_column(rows, "ratio", "a / b")
        assert out == [{"a": 1, "b": 3, "ratio": 0.33}]
        assert "ratio" not in rows[0]

    def test_invalid_formula_yields_zero(self):
        out = add_calculated_column([{"a": 1}], "bad", "a +")
        assert out[0]["bad"] == 0
