"""Recall, cognitive and decision engines."""

from invoicemind.engines.cognitive import CognitiveEngine, calculate_confidence
from invoicemind.engines.decision import DecisionEngine, invoice_fingerprint
from invoicemind.engines.recall import RecallEngine

__all__ = [
    "CognitiveEngine",
    "DecisionEngine",
    "RecallEngine",
    "calculate_confidence",
    "invoice_fingerprint",
]
