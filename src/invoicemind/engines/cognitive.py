"""Cognitive engine: executes learned rules and scores their confidence."""

import json
from typing import Any

from invoicemind.engines.recall import pattern_rule_id
from invoicemind.logging_config import get_logger
from invoicemind.logic.evaluator import evaluate_rule, truthy
from invoicemind.models import (
    AuditEntry,
    FieldConfidence,
    ProcessingContext,
    ProposalSource,
    ResolutionMemory,
)
from invoicemind.utils.dates import days_between, now_iso
from invoicemind.utils.diff import get_path

logger = get_logger(__name__)

UNPROVEN_RULE_DISCOUNT = 0.8
BASE_WEIGHT = 0.6
DAILY_DECAY = 0.99
MIN_CONFIDENCE = 0.1
VENDOR_DEFAULT_CONFIDENCE = 0.90

# Checked in order against the serialized action; the first hit is the target.
# An action mentioning several of these resolves to the earliest entry.
TARGET_FIELD_PRIORITY = [
    ("tax", "tax_amount"),
    ("net", "net_amount"),
    ("total", "total_amount"),
]

Proposals = dict[str, FieldConfidence]


def calculate_confidence(
    base_confidence: float,
    resolution: ResolutionMemory | None,
    last_used: str | None,
    now: str | None = None,
) -> float:
    """Blend a rule's base confidence with its resolution history.

    Without history the rule is unproven and gets ``base * 0.8``. Otherwise
    the Laplace-smoothed acceptance rate ``(accepted + 1) / (total + 2)`` is
    weighted 40/60 against the base, decayed by 0.99 per day since last use,
    and floored at 0.1.
    """
    if resolution is None or resolution.total_applications == 0:
        return base_confidence * UNPROVEN_RULE_DISCOUNT

    memory_confidence = (resolution.accepted_count + 1) / (
        resolution.total_applications + 2
    )

    decay = 1.0
    if last_used:
        decay = DAILY_DECAY ** days_between(last_used, now or now_iso())

    blended = BASE_WEIGHT * base_confidence + (1 - BASE_WEIGHT) * memory_confidence
    return max(MIN_CONFIDENCE, blended * decay)


def infer_target_field(action: dict[str, Any]) -> str | None:
    """Guess which field a correction action writes to."""
    serialized = json.dumps(action)
    for needle, field in TARGET_FIELD_PRIORITY:
        if needle in serialized:
            return field
    return None


class CognitiveEngine:
    """Turns a processing context into field proposals."""

    def apply(self, context: ProcessingContext) -> tuple[Proposals, list[AuditEntry]]:
        """Apply vendor patterns, vendor defaults and correction rules.

        Returns:
            The proposals keyed by field, and the audit entries to append
        """
        proposals: Proposals = {}
        audit: list[AuditEntry] = []
        record = context.invoice.to_record()
        vendor = context.vendor_memory

        if vendor:
            for field, pattern in vendor.patterns.items():
                value = evaluate_rule(pattern.logic, record)
                if value is None:
                    continue

                rule_id = pattern_rule_id(vendor.id, field)
                confidence = calculate_confidence(
                    pattern.confidence,
                    context.resolution_memories.get(rule_id),
                    pattern.last_used,
                )
                proposals[field] = FieldConfidence(
                    field=field,
                    value=value,
                    confidence=confidence,
                    source=ProposalSource.VENDOR_PATTERN,
                    rule_id=rule_id,
                    reasoning=f'Applied vendor pattern for "{vendor.vendor_name}"',
                )
                audit.append(
                    AuditEntry(
                        step="APPLY",
                        action="VENDOR_PATTERN",
                        field=field,
                        old_value=get_path(record, field),
                        new_value=value,
                        reasoning=(
                            f"Extracted using vendor pattern (confidence: {confidence:.2f})"
                        ),
                        confidence=confidence,
                    )
                )

            defaults = vendor.defaults.model_dump(exclude_none=True)
            for field, value in defaults.items():
                if field in proposals or not value:
                    continue
                proposals[field] = FieldConfidence(
                    field=field,
                    value=value,
                    confidence=VENDOR_DEFAULT_CONFIDENCE,
                    source=ProposalSource.VENDOR_PATTERN,
                    reasoning="Applied vendor default value",
                )
                audit.append(
                    AuditEntry(
                        step="APPLY",
                        action="VENDOR_DEFAULT",
                        field=field,
                        new_value=value,
                        reasoning="Applied vendor default value",
                        confidence=VENDOR_DEFAULT_CONFIDENCE,
                    )
                )

        for correction in context.correction_memories:
            if not truthy(evaluate_rule(correction.trigger_condition, record)):
                continue

            value = evaluate_rule(correction.action, record)
            if value is None:
                continue

            field = infer_target_field(correction.action)
            if field is None:
                logger.debug("correction_target_unknown", rule_id=correction.id)
                continue

            confidence = calculate_confidence(
                correction.confidence,
                context.resolution_memories.get(correction.id),
                correction.last_used,
            )
            existing = proposals.get(field)
            if existing and existing.confidence >= confidence:
                continue

            proposals[field] = FieldConfidence(
                field=field,
                value=value,
                confidence=confidence,
                source=ProposalSource.CORRECTION_RULE,
                rule_id=correction.id,
                reasoning=correction.description,
            )
            audit.append(
                AuditEntry(
                    step="APPLY",
                    action="CORRECTION_RULE",
                    field=field,
                    old_value=get_path(record, field),
                    new_value=value,
                    reasoning=correction.description,
                    confidence=confidence,
                )
            )

        logger.info(
            "rules_applied",
            invoice_id=context.invoice.id,
            proposals=sorted(proposals),
        )
        return proposals, audit
