"""Evaluator for rule expressions.

Evaluation never raises: a malformed rule, a bad regex, a type mismatch or a
missing variable all evaluate to ``None``.
"""

import operator
import re
from collections.abc import Callable
from typing import Any

from invoicemind.logging_config import get_logger
from invoicemind.logic.expressions import (
    And,
    Arithmetic,
    Compare,
    ContainsIgnoreCase,
    DateNormalize,
    Expr,
    ExtractCurrency,
    ExtractNumber,
    If,
    Literal,
    MapDescription,
    Not,
    Or,
    ParseGermanDate,
    RegexExtract,
    RegexTest,
    RuleError,
    Truthy,
    Var,
    parse_rule,
)
from invoicemind.utils.dates import normalize_date, parse_german_date
from invoicemind.utils.diff import get_path

logger = get_logger(__name__)

SUPPORTED_CURRENCIES = ["EUR", "USD", "GBP", "CHF", "JPY"]

_NUMBER = re.compile(r"\d+(?:[.,]\d+)?")

_ORDERING: dict[str, Callable[[Any, Any], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
}


def truthy(value: Any) -> bool:
    """JSON-logic truthiness: empty arrays and strings, 0 and null are false."""
    if isinstance(value, list):
        return len(value) > 0
    return bool(value)


# Domain primitives. Each is safe to call with arbitrary input.


def regex_extract(pattern: Any, text: Any, group: Any = 1) -> str | None:
    if not text or not pattern or not isinstance(text, str):
        return None
    try:
        match = re.search(str(pattern), text, re.IGNORECASE)
        if not match:
            return None
        return match.group(int(group)) or None
    except (re.error, IndexError, TypeError, ValueError):
        return None


def regex_test(pattern: Any, text: Any) -> bool:
    if not text or not pattern or not isinstance(text, str):
        return False
    try:
        return re.search(str(pattern), text, re.IGNORECASE) is not None
    except re.error:
        return False


def map_description(description: Any, mapping: dict[str, str]) -> str | None:
    """Look up a code for ``description``: exact key first, then containment."""
    if not description or not mapping or not isinstance(description, str):
        return None

    normalized = description.lower().strip()

    for key, value in mapping.items():
        if normalized == key.lower():
            return value

    for key, value in mapping.items():
        if key.lower() in normalized:
            return value

    return None


def extract_number(text: Any) -> float | None:
    """First number in ``text``; a decimal comma is read as a decimal point."""
    if isinstance(text, int | float) and not isinstance(text, bool):
        return float(text)
    if not text or not isinstance(text, str):
        return None
    match = _NUMBER.search(text)
    if not match:
        return None
    return float(match.group(0).replace(",", "."))


def extract_currency(text: Any) -> str | None:
    if not text or not isinstance(text, str):
        return None
    for currency in SUPPORTED_CURRENCIES:
        if re.search(rf"\b{currency}\b", text, re.IGNORECASE):
            return currency
    return None


def contains_ignore_case(text: Any, search: Any) -> bool:
    if not text or not search:
        return False
    return str(search).lower() in str(text).lower()


class Evaluator:
    """Interprets an expression tree against a flat record."""

    def __init__(self, data: dict[str, Any]):
        self.data = data
        self._dispatch: dict[type, Callable[[Any], Any]] = {
            Literal: self._literal,
            Var: self._var,
            And: self._and,
            Or: self._or,
            Not: self._not,
            Truthy: self._truthy,
            If: self._if,
            Compare: self._compare,
            Arithmetic: self._arithmetic,
            RegexExtract: self._regex_extract,
            RegexTest: self._regex_test,
            MapDescription: self._map_description,
            DateNormalize: self._date_normalize,
            ParseGermanDate: self._parse_german_date,
            ExtractNumber: self._extract_number,
            ExtractCurrency: self._extract_currency,
            ContainsIgnoreCase: self._contains_ignore_case,
        }

    def evaluate(self, expr: Expr) -> Any:
        return self._dispatch[type(expr)](expr)

    def _literal(self, expr: Literal) -> Any:
        return expr.value

    def _var(self, expr: Var) -> Any:
        value = get_path(self.data, expr.path)
        return expr.default if value is None else value

    def _and(self, expr: And) -> Any:
        value: Any = None
        for operand in expr.operands:
            value = self.evaluate(operand)
            if not truthy(value):
                return value
        return value

    def _or(self, expr: Or) -> Any:
        value: Any = None
        for operand in expr.operands:
            value = self.evaluate(operand)
            if truthy(value):
                return value
        return value

    def _not(self, expr: Not) -> bool:
        return not truthy(self.evaluate(expr.operand))

    def _truthy(self, expr: Truthy) -> bool:
        return truthy(self.evaluate(expr.operand))

    def _if(self, expr: If) -> Any:
        branches = expr.branches
        for i in range(0, len(branches) - 1, 2):
            if truthy(self.evaluate(branches[i])):
                return self.evaluate(branches[i + 1])
        if len(branches) % 2 == 1:
            return self.evaluate(branches[-1])
        return None

    def _compare(self, expr: Compare) -> bool:
        left = self.evaluate(expr.left)
        right = self.evaluate(expr.right)

        if expr.op in ("==", "==="):
            return left == right
        if expr.op in ("!=", "!=="):
            return left != right

        if left is None or right is None:
            return False
        try:
            return _ORDERING[expr.op](left, right)
        except TypeError:
            return False

    def _arithmetic(self, expr: Arithmetic) -> float:
        values = [self.evaluate(operand) for operand in expr.operands]
        numbers = [_as_number(v) for v in values]

        if expr.op == "+":
            return sum(numbers)
        if expr.op == "*":
            result = 1.0
            for n in numbers:
                result *= n
            return result
        if expr.op == "-":
            if len(numbers) == 1:
                return -numbers[0]
            return numbers[0] - numbers[1]
        if expr.op == "/":
            return numbers[0] / numbers[1]
        return numbers[0] % numbers[1]

    def _regex_extract(self, expr: RegexExtract) -> str | None:
        return regex_extract(
            self.evaluate(expr.pattern),
            self.evaluate(expr.text),
            self.evaluate(expr.group),
        )

    def _regex_test(self, expr: RegexTest) -> bool:
        return regex_test(self.evaluate(expr.pattern), self.evaluate(expr.text))

    def _map_description(self, expr: MapDescription) -> str | None:
        return map_description(self.evaluate(expr.description), dict(expr.mapping))

    def _date_normalize(self, expr: DateNormalize) -> str | None:
        value = self.evaluate(expr.operand)
        return normalize_date(value) if isinstance(value, str) else None

    def _parse_german_date(self, expr: ParseGermanDate) -> str | None:
        value = self.evaluate(expr.operand)
        return parse_german_date(value) if isinstance(value, str) else None

    def _extract_number(self, expr: ExtractNumber) -> float | None:
        return extract_number(self.evaluate(expr.operand))

    def _extract_currency(self, expr: ExtractCurrency) -> str | None:
        return extract_currency(self.evaluate(expr.operand))

    def _contains_ignore_case(self, expr: ContainsIgnoreCase) -> bool:
        return contains_ignore_case(
            self.evaluate(expr.text), self.evaluate(expr.search)
        )


def _as_number(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        return float(value)
    raise TypeError(f"Not a number: {value!r}")


def evaluate_rule(rule: Any, data: dict[str, Any]) -> Any:
    """Parse and evaluate ``rule`` against ``data``, returning None on any failure."""
    try:
        return Evaluator(data).evaluate(parse_rule(rule))
    except (
        RuleError,
        TypeError,
        ValueError,
        ArithmeticError,
        LookupError,
        RecursionError,
    ) as e:
        logger.debug(
            "rule_evaluation_failed", error_type=type(e).__name__, error=str(e)
        )
        return None


def is_valid_rule(rule: Any) -> bool:
    """Whether ``rule`` parses into a known expression tree."""
    try:
        parse_rule(rule)
    except (RuleError, RecursionError):
        return False
    return True
