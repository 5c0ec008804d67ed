"""Rule expression language.

Rules are persisted as JSON-logic style dictionaries, ``{"operator": [args]}``,
and parsed into a closed set of immutable AST nodes (one class per operator).
``to_rule`` is the inverse of ``parse_rule``.
"""

from dataclasses import dataclass
from typing import Any


class RuleError(ValueError):
    """Raised when a serialized rule cannot be parsed."""


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Var:
    path: str
    default: Any = None


@dataclass(frozen=True)
class And:
    operands: tuple["Expr", ...]


@dataclass(frozen=True)
class Or:
    operands: tuple["Expr", ...]


@dataclass(frozen=True)
class Not:
    operand: "Expr"


@dataclass(frozen=True)
class Truthy:
    operand: "Expr"


@dataclass(frozen=True)
class If:
    # condition, value, condition, value, ..., [else]
    branches: tuple["Expr", ...]


@dataclass(frozen=True)
class Compare:
    op: str
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True)
class Arithmetic:
    op: str
    operands: tuple["Expr", ...]


@dataclass(frozen=True)
class RegexExtract:
    pattern: "Expr"
    text: "Expr"
    group: "Expr"


@dataclass(frozen=True)
class RegexTest:
    pattern: "Expr"
    text: "Expr"


@dataclass(frozen=True)
class MapDescription:
    description: "Expr"
    mapping: tuple[tuple[str, str], ...]


@dataclass(frozen=True)
class DateNormalize:
    operand: "Expr"


@dataclass(frozen=True)
class ParseGermanDate:
    operand: "Expr"


@dataclass(frozen=True)
class ExtractNumber:
    operand: "Expr"


@dataclass(frozen=True)
class ExtractCurrency:
    operand: "Expr"


@dataclass(frozen=True)
class ContainsIgnoreCase:
    text: "Expr"
    search: "Expr"


Expr = (
    Literal
    | Var
    | And
    | Or
    | Not
    | Truthy
    | If
    | Compare
    | Arithmetic
    | RegexExtract
    | RegexTest
    | MapDescription
    | DateNormalize
    | ParseGermanDate
    | ExtractNumber
    | ExtractCurrency
    | ContainsIgnoreCase
)

COMPARISON_OPERATORS = ("==", "!=", "===", "!==", ">", ">=", "<", "<=")
ARITHMETIC_OPERATORS = ("+", "-", "*", "/", "%")

_UNARY = {
    "!": Not,
    "!!": Truthy,
    "date_normalize": DateNormalize,
    "parse_german_date": ParseGermanDate,
    "extract_number": ExtractNumber,
    "extract_currency": ExtractCurrency,
}
_UNARY_NAMES = {cls: name for name, cls in _UNARY.items()}


def _args(value: Any) -> list[Any]:
    return list(value) if isinstance(value, list) else [value]


def _arity(op: str, args: list[Any], minimum: int, maximum: int) -> None:
    if not minimum <= len(args) <= maximum:
        raise RuleError(f"Operator {op!r} takes {minimum}-{maximum} arguments")


def parse_rule(rule: Any) -> Expr:
    """Parse a serialized rule into an expression tree.

    Raises:
        RuleError: If the rule uses an unknown operator or wrong arity
    """
    if not isinstance(rule, dict):
        if isinstance(rule, list):
            raise RuleError("Bare arrays are not valid expressions")
        return Literal(rule)

    if len(rule) != 1:
        raise RuleError(f"Expected exactly one operator, got {sorted(rule)}")

    op, raw = next(iter(rule.items()))
    args = _args(raw)

    if op == "var":
        _arity(op, args, 1, 2)
        path = "" if args[0] is None else str(args[0])
        return Var(path, args[1] if len(args) > 1 else None)
    if op == "and":
        _arity(op, args, 1, 64)
        return And(tuple(parse_rule(a) for a in args))
    if op == "or":
        _arity(op, args, 1, 64)
        return Or(tuple(parse_rule(a) for a in args))
    if op == "if":
        _arity(op, args, 1, 64)
        return If(tuple(parse_rule(a) for a in args))
    if op in COMPARISON_OPERATORS:
        _arity(op, args, 2, 2)
        return Compare(op, parse_rule(args[0]), parse_rule(args[1]))
    if op in ("/", "%"):
        _arity(op, args, 2, 2)
        return Arithmetic(op, (parse_rule(args[0]), parse_rule(args[1])))
    if op == "-":
        _arity(op, args, 1, 2)
        return Arithmetic(op, tuple(parse_rule(a) for a in args))
    if op in ARITHMETIC_OPERATORS:
        _arity(op, args, 1, 64)
        return Arithmetic(op, tuple(parse_rule(a) for a in args))
    if op == "regex_extract":
        _arity(op, args, 2, 3)
        group = parse_rule(args[2]) if len(args) > 2 else Literal(1)
        return RegexExtract(parse_rule(args[0]), parse_rule(args[1]), group)
    if op == "regex_test":
        _arity(op, args, 2, 2)
        return RegexTest(parse_rule(args[0]), parse_rule(args[1]))
    if op == "map_description":
        _arity(op, args, 2, 2)
        mapping = args[1]
        if not isinstance(mapping, dict):
            raise RuleError("map_description expects a literal mapping")
        pairs = tuple((str(k), str(v)) for k, v in mapping.items())
        return MapDescription(parse_rule(args[0]), pairs)
    if op == "contains_ignore_case":
        _arity(op, args, 2, 2)
        return ContainsIgnoreCase(parse_rule(args[0]), parse_rule(args[1]))
    if op in _UNARY:
        _arity(op, args, 1, 1)
        return _UNARY[op](parse_rule(args[0]))

    raise RuleError(f"Unrecognized operator: {op!r}")


def to_rule(expr: Expr) -> Any:
    """Serialize an expression tree back to its dictionary form."""
    if isinstance(expr, Literal):
        return expr.value
    if isinstance(expr, Var):
        if expr.default is None:
            return {"var": expr.path}
        return {"var": [expr.path, expr.default]}
    if isinstance(expr, And):
        return {"and": [to_rule(o) for o in expr.operands]}
    if isinstance(expr, Or):
        return {"or": [to_rule(o) for o in expr.operands]}
    if isinstance(expr, If):
        return {"if": [to_rule(b) for b in expr.branches]}
    if isinstance(expr, Compare):
        return {expr.op: [to_rule(expr.left), to_rule(expr.right)]}
    if isinstance(expr, Arithmetic):
        return {expr.op: [to_rule(o) for o in expr.operands]}
    if isinstance(expr, RegexExtract):
        return {
            "regex_extract": [
                to_rule(expr.pattern),
                to_rule(expr.text),
                to_rule(expr.group),
            ]
        }
    if isinstance(expr, RegexTest):
        return {"regex_test": [to_rule(expr.pattern), to_rule(expr.text)]}
    if isinstance(expr, MapDescription):
        return {"map_description": [to_rule(expr.description), dict(expr.mapping)]}
    if isinstance(expr, ContainsIgnoreCase):
        return {"contains_ignore_case": [to_rule(expr.text), to_rule(expr.search)]}
    if type(expr) in _UNARY_NAMES:
        return {_UNARY_NAMES[type(expr)]: [to_rule(expr.operand)]}

    raise RuleError(f"Unknown expression node: {type(expr).__name__}")


# Builders for the rule shapes the induction engine emits


def create_regex_rule(
    pattern: str, source_field: str = "raw_text", group: int = 1
) -> dict[str, Any]:
    return to_rule(RegexExtract(Literal(pattern), Var(source_field), Literal(group)))


def create_map_rule(mapping: dict[str, str], source_field: str) -> dict[str, Any]:
    return to_rule(MapDescription(Var(source_field), tuple(mapping.items())))


def create_arithmetic_rule(formula: str, source_field: str) -> dict[str, Any] | None:
    """Build one of the known 19% VAT formulas over ``source_field``.

    inclusive_vat_19: tax = gross - gross / 1.19
    exclusive_vat_19: tax = net * 0.19
    net_from_gross_19: net = gross / 1.19
    """
    source = Var(source_field)
    if formula == "inclusive_vat_19":
        expr: Expr = Arithmetic(
            "-", (source, Arithmetic("/", (source, Literal(1.19))))
        )
    elif formula == "exclusive_vat_19":
        expr = Arithmetic("*", (source, Literal(0.19)))
    elif formula == "net_from_gross_19":
        expr = Arithmetic("/", (source, Literal(1.19)))
    else:
        return None
    return to_rule(expr)


def create_condition_rule(
    condition: Any, then_value: Any, else_value: Any = None
) -> dict[str, Any]:
    return {"if": [condition, then_value, else_value]}
