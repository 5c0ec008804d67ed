"""Rule expression language, evaluator and induction engine."""

from invoicemind.logic.evaluator import evaluate_rule, is_valid_rule
from invoicemind.logic.expressions import RuleError, parse_rule, to_rule
from invoicemind.logic.induction import induce_rules

__all__ = [
    "RuleError",
    "evaluate_rule",
    "induce_rules",
    "is_valid_rule",
    "parse_rule",
    "to_rule",
]
