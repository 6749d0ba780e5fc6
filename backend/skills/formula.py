"""
Formula skill: arithmetic expressions over column names.

Grammar (recursive descent, no code execution):

    expr   := term (('+' | '-') term)*
    term   := unary (('*' | '/' | '%') unary)*
    unary  := ('+' | '-') unary | atom
    atom   := NUMBER | COLUMN | '(' expr ')'

Column names are matched longest-first at word boundaries, so ``cost`` is
never matched inside ``cost_total``. Anything else in the expression is an
error; at evaluation time every error (and every non-finite result) becomes 0.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from core.config import MAX_GROUPS
from core.models import Row
from core.utils import as_label, column_names, round2, to_number

logger = logging.getLogger("uvicorn.error")

_NUMBER = re.compile(r"\d+(?:\.\d*)?|\.\d+")
_OPERATORS = set("+-*/%()")
# nested parentheses plus unary signs
MAX_NESTING = 64


class FormulaError(ValueError):
    """Raised for expressions outside the formula grammar."""


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

def _is_word(ch: str) -> bool:
    return ch.isalnum() or ch == "_"


def _match_column(text: str, pos: int, columns: Sequence[str]) -> Optional[str]:
    for col in columns:
        if not col or not text.startswith(col, pos):
            continue
        end = pos + len(col)
        # word-boundary semantics at both ends
        if _is_word(col[0]) and pos > 0 and _is_word(text[pos - 1]):
            continue
        if _is_word(col[-1]) and end < len(text) and _is_word(text[end]):
            continue
        return col
    return None


def tokenize(formula: str, columns: Iterable[str]) -> List[Tuple[str, Any]]:
    """Split *formula* into ("num" | "col" | "op", value) tokens."""
    ordered = sorted(set(columns), key=len, reverse=True)
    tokens: List[Tuple[str, Any]] = []
    pos = 0
    while pos < len(formula):
        ch = formula[pos]
        if ch.isspace():
            pos += 1
            continue
        col = _match_column(formula, pos, ordered)
        if col is not None:
            tokens.append(("col", col))
            pos += len(col)
            continue
        m = _NUMBER.match(formula, pos)
        if m:
            tokens.append(("num", float(m.group(0))))
            pos = m.end()
            continue
        if ch in _OPERATORS:
            tokens.append(("op", ch))
            pos += 1
            continue
        raise FormulaError(f"Unexpected '{ch}' at position {pos}")
    return tokens


# ---------------------------------------------------------------------------
# Parser / evaluator
# ---------------------------------------------------------------------------

class _Parser:
    def __init__(self, tokens: List[Tuple[str, Any]], values: Mapping[str, float]) -> None:
        self.tokens = tokens
        self.values = values
        self.pos = 0
        self.depth = 0

    def _enter(self) -> None:
        self.depth += 1
        if self.depth > MAX_NESTING:
            raise FormulaError("Formula is nested too deeply")

    def _peek(self) -> Optional[Tuple[str, Any]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self) -> Tuple[str, Any]:
        tok = self._peek()
        if tok is None:
            raise FormulaError("Unexpected end of formula")
        self.pos += 1
        return tok

    def parse(self) -> float:
        if not self.tokens:
            raise FormulaError("Empty formula")
        value = self._expr()
        if self._peek() is not None:
            raise FormulaError(f"Unexpected '{self._peek()[1]}'")
        return value

    def _expr(self) -> float:
        value = self._term()
        while self._peek() in (("op", "+"), ("op", "-")):
            op = self._take()[1]
            rhs = self._term()
            value = value + rhs if op == "+" else value - rhs
        return value

    def _term(self) -> float:
        value = self._unary()
        while self._peek() in (("op", "*"), ("op", "/"), ("op", "%")):
            op = self._take()[1]
            rhs = self._unary()
            if op == "*":
                value = value * rhs
            elif rhs == 0:
                # x/0 and x%0 are non-finite
                value = math.nan
            elif op == "/":
                value = value / rhs
            else:
                value = math.fmod(value, rhs)
        return value

    def _unary(self) -> float:
        tok = self._peek()
        if tok in (("op", "-"), ("op", "+")):
            self._take()
            self._enter()
            value = self._unary()
            self.depth -= 1
            return -value if tok[1] == "-" else value
        return self._atom()

    def _atom(self) -> float:
        kind, val = self._take()
        if kind == "num":
            return val
        if kind == "col":
            return to_number(self.values.get(val))
        if val == "(":
            self._enter()
            inner = self._expr()
            self.depth -= 1
            if self._take() != ("op", ")"):
                raise FormulaError("Missing ')'")
            return inner
        raise FormulaError(f"Unexpected '{val}'")


def parse_formula(formula: str, values: Mapping[str, Any]) -> float:
    """Evaluate strictly: raises FormulaError on malformed input."""
    tokens = tokenize(formula, values.keys())
    return _Parser(tokens, values).parse()


def evaluate_formula(formula: str, values: Mapping[str, Any]) -> float:
    """Evaluate *formula* against a column->value map; 0 on any failure."""
    try:
        result = parse_formula(formula, values)
    except FormulaError:
        return 0.0
    except OverflowError:
        return 0.0
    return result if math.isfinite(result) else 0.0


def validate_formula(formula: str, columns: Iterable[str]) -> Tuple[bool, str]:
    """Authoring-time check. Returns (ok, message)."""
    cols = list(columns)
    try:
        tokens = tokenize(formula, cols)
        _Parser(tokens, {c: 1.0 for c in cols}).parse()
    except FormulaError as e:
        return False, str(e)
    if not any(kind == "col" for kind, _ in tokens):
        return True, "Formula references no columns."
    return True, "ok"


def referenced_columns(formula: str, columns: Iterable[str]) -> List[str]:
    """Columns the formula mentions, in order of first use."""
    try:
        tokens = tokenize(formula, columns)
    except FormulaError:
        return []
    out: List[str] = []
    for kind, val in tokens:
        if kind == "col" and val not in out:
            out.append(val)
    return out


# ---------------------------------------------------------------------------
# Dataset operations
# ---------------------------------------------------------------------------

def formula_aggregate(
    rows: List[Row],
    group_by: str,
    formula: str,
    label: str = "value",
) -> List[Dict[str, Any]]:
    """
    Group rows, sum every referenced column per group, then evaluate the
    formula on the per-group sums.

    Output rows are ``{name, value, <label>}``, sorted descending and capped
    at MAX_GROUPS like every other grouped aggregation.
    """
    columns = referenced_columns(formula, column_names(rows))
    sums: Dict[str, Dict[str, float]] = {}
    for row in rows:
        key = as_label(row.get(group_by))
        bucket = sums.setdefault(key, {c: 0.0 for c in columns})
        for c in columns:
            bucket[c] += to_number(row.get(c))

    out: List[Dict[str, Any]] = []
    for name, bucket in sums.items():
        value = evaluate_formula(formula, bucket)
        record: Dict[str, Any] = {"name": name, "value": value}
        if label and label != "value":
            record[label] = value
        out.append(record)

    out.sort(key=lambda r: r["value"], reverse=True)
    return out[:MAX_GROUPS]


def add_calculated_column(rows: List[Row], name: str, formula: str) -> List[Row]:
    """New rows with *name* = formula evaluated per row (2 decimals)."""
    ok, message = validate_formula(formula, column_names(rows))
    if not ok:
        logger.warning("Calculated column '%s' has an invalid formula (%s); values will be 0", name, message)

    out: List[Row] = []
    for row in rows:
        new_row = dict(row)
        new_row[name] = round2(evaluate_formula(formula, row))
        out.append(new_row)
    return out
