"""Decision engine: merges proposals and decides whether a human must review."""

import hashlib
import math
from functools import lru_cache
from typing import Any, NamedTuple

from pydantic import TypeAdapter, ValidationError

from invoicemind.integrations.memory_store import MemoryStore
from invoicemind.logging_config import get_logger
from invoicemind.models import (
    AuditEntry,
    FieldConfidence,
    Invoice,
    LineItem,
    OutputContract,
    ProcessingContext,
    ResolutionOutcome,
)
from invoicemind.utils.dates import now_iso
from invoicemind.utils.diff import get_path

logger = get_logger(__name__)

OUTPUT_FIELDS = [
    "date",
    "service_date",
    "due_date",
    "total_amount",
    "tax_amount",
    "net_amount",
    "currency",
    "line_items",
    "payment_terms",
    "po_number",
]
CRITICAL_FIELDS = ["total_amount", "date", "vendor"]

OCR_CONFIDENCE = 0.70
CRITICAL_FIELD_THRESHOLD = 0.90
OVERALL_THRESHOLD = 0.80
AMOUNT_TOLERANCE = 0.01


class ReviewDecision(NamedTuple):
    required: bool
    reasoning: str


def invoice_fingerprint(
    vendor: str,
    invoice_number: str,
    date: str | None,
    total_amount: float | None,
) -> str:
    """Deterministic duplicate-detection hash of the identifying fields."""
    total = f"{total_amount:.2f}" if total_amount is not None else ""
    data = f"{vendor}|{invoice_number}|{date or ''}|{total}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


@lru_cache
def _adapter(model: type, field: str) -> TypeAdapter:
    return TypeAdapter(model.model_fields[field].annotation)


def _values_match(human: Any, system: Any) -> bool:
    if isinstance(human, int | float) and isinstance(system, int | float):
        return math.isclose(human, system, abs_tol=AMOUNT_TOLERANCE)
    return human == system


class DecisionEngine:
    """Builds the output contract and applies the escalation policy."""

    def __init__(self, store: MemoryStore):
        self.store = store

    def _merge(
        self,
        invoice: Invoice,
        proposals: dict[str, FieldConfidence],
    ) -> tuple[dict[str, Any], list[float], list[AuditEntry]]:
        output: dict[str, Any] = {
            "invoice_id": invoice.id,
            "vendor": invoice.vendor,
            "invoice_number": invoice.invoice_number,
        }
        line_items = [item.model_dump() for item in invoice.line_items or []]
        confidences: list[float] = []
        audit: list[AuditEntry] = []

        for field, proposal in proposals.items():
            head, _, rest = field.partition(".")
            try:
                if head == "line_items" and rest:
                    index, _, attribute = rest.partition(".")
                    value = _adapter(LineItem, attribute).validate_python(
                        proposal.value
                    )
                    line_items[int(index)][attribute] = value
                    output["line_items"] = line_items
                elif field in OutputContract.model_fields:
                    output[field] = _adapter(OutputContract, field).validate_python(
                        proposal.value
                    )
                else:
                    raise KeyError(field)
            except (ValidationError, KeyError, IndexError, ValueError):
                audit.append(
                    AuditEntry(
                        step="DECIDE",
                        action="PROPOSAL_DISCARDED",
                        field=field,
                        new_value=proposal.value,
                        reasoning=f"Proposed value does not fit output field {field!r}",
                        confidence=proposal.confidence,
                    )
                )
                continue
            confidences.append(proposal.confidence)

        for field in OUTPUT_FIELDS:
            if field in output:
                continue
            if field not in invoice.model_fields_set:
                continue
            value = getattr(invoice, field)
            if value is None:
                confidences.append(0.0)
                continue
            output[field] = line_items if field == "line_items" else value
            confidences.append(OCR_CONFIDENCE)

        return output, confidences, audit

    def _should_escalate(
        self,
        context: ProcessingContext,
        output: dict[str, Any],
        overall_confidence: float,
        proposals: dict[str, FieldConfidence],
        is_duplicate: bool,
    ) -> ReviewDecision:
        if is_duplicate:
            return ReviewDecision(
                True,
                "Duplicate invoice detected: matches fingerprint of previously "
                "processed invoice",
            )

        if context.vendor_memory is None:
            return ReviewDecision(
                True,
                "New vendor: no existing memory found, requires initial human review",
            )

        for field in CRITICAL_FIELDS:
            value = output.get(field)
            proposal = proposals.get(field)
            if value is None or value == "" or (
                proposal and proposal.confidence < CRITICAL_FIELD_THRESHOLD
            ):
                return ReviewDecision(
                    True,
                    f'Critical field "{field}" is missing or has low confidence',
                )

        if overall_confidence < OVERALL_THRESHOLD:
            return ReviewDecision(
                True,
                f"Overall confidence ({overall_confidence:.2f}) below threshold "
                f"({OVERALL_THRESHOLD:.2f})",
            )

        line_items = output.get("line_items") or []
        total = output.get("total_amount")
        if line_items and total is not None:
            line_sum = sum(item.get("amount") or 0.0 for item in line_items)
            if line_sum > 0 and abs(total - line_sum) > AMOUNT_TOLERANCE:
                return ReviewDecision(
                    True,
                    f"Total amount mismatch: invoice total ({total}) differs from "
                    f"line item sum ({line_sum})",
                )

        return ReviewDecision(
            False,
            f"High confidence automation: overall score {overall_confidence:.2f}",
        )

    def decide(
        self,
        context: ProcessingContext,
        proposals: dict[str, FieldConfidence],
    ) -> OutputContract:
        """Produce the output contract and record the invoice fingerprint.

        The fingerprint is recorded whether or not the invoice is escalated,
        unless it was already known.
        """
        invoice = context.invoice
        output, confidences, audit = self._merge(invoice, proposals)

        overall = sum(confidences) / len(confidences) if confidences else 0.0

        fingerprint = invoice_fingerprint(
            invoice.vendor, invoice.invoice_number, invoice.date, invoice.total_amount
        )
        is_duplicate = self.store.fingerprint_exists(fingerprint)

        decision = self._should_escalate(
            context, output, overall, proposals, is_duplicate
        )

        processed_at = now_iso()
        if not is_duplicate:
            self.store.record_processed_invoice(
                fingerprint,
                invoice.id,
                invoice.vendor,
                invoice.invoice_number,
                invoice.total_amount,
                processed_at,
            )

        audit.append(
            AuditEntry(
                step="DECIDE",
                action="ESCALATE" if decision.required else "AUTO_APPROVE",
                reasoning=decision.reasoning,
                confidence=overall,
            )
        )

        if decision.required:
            logger.info(
                "invoice_escalated", invoice_id=invoice.id, reason=decision.reasoning
            )
        else:
            logger.info(
                "invoice_auto_approved", invoice_id=invoice.id, confidence=overall
            )

        return OutputContract(
            **output,
            requires_human_review=decision.required,
            reasoning=decision.reasoning,
            confidence=overall,
            audit_trail=[*context.audit_trail, *audit],
            processed_at=processed_at,
        )

    def record_resolutions(
        self,
        proposals: dict[str, FieldConfidence],
        human_correction: Invoice,
        outcome: ResolutionOutcome | None = None,
    ) -> dict[str, ResolutionOutcome]:
        """Reinforce or penalize every rule that produced a proposal.

        A field counts as ACCEPTED when the human kept the system value (numbers
        within one cent) or left the field unset, and REJECTED otherwise.

        Args:
            proposals: The proposals made while processing the invoice
            human_correction: The human-verified invoice
            outcome: The reviewer's verdict on the invoice as a whole, for the log

        Returns:
            The recorded outcome per rule id
        """
        corrected = human_correction.to_record()
        recorded: dict[str, ResolutionOutcome] = {}

        for field, proposal in proposals.items():
            if not proposal.rule_id:
                continue

            human_value = get_path(corrected, field)
            if human_value is None or _values_match(human_value, proposal.value):
                field_outcome = ResolutionOutcome.ACCEPTED
            else:
                field_outcome = ResolutionOutcome.REJECTED

            memory = self.store.get_resolution_memory(proposal.rule_id)
            self.store.upsert_resolution_memory(
                memory.record(human_correction.id, field_outcome)
            )
            recorded[proposal.rule_id] = field_outcome

        logger.info(
            "resolutions_recorded",
            invoice_id=human_correction.id,
            outcome=outcome,
            rules=len(recorded),
        )
        return recorded
