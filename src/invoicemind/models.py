"""Data models for invoices, learned memories and processing output.

Attributes are snake_case in Python; the JSON wire format is camelCase and
both spellings are accepted on input.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from invoicemind.utils.dates import now_iso

RESOLUTION_HISTORY_LIMIT = 100


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _FrozenWireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )


class RuleType(StrEnum):
    REGEX = "REGEX"
    ANCHOR = "ANCHOR"
    POSITIONAL = "POSITIONAL"
    FORMULA = "FORMULA"
    MAP = "MAP"


class ProposalSource(StrEnum):
    OCR = "OCR"
    VENDOR_PATTERN = "VENDOR_PATTERN"
    CORRECTION_RULE = "CORRECTION_RULE"
    HUMAN = "HUMAN"


class ResolutionOutcome(StrEnum):
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    MODIFIED = "MODIFIED"


class LineItem(_FrozenWireModel):
    """Individual line item on an invoice."""

    description: str
    quantity: float | None = None
    unit_price: float | None = None
    amount: float | None = None
    sku: str | None = None
    tax_rate: float | None = None


class Invoice(_FrozenWireModel):
    """Invoice as delivered by an upstream extractor.

    Immutable: a human correction is a new Invoice, usually built with
    ``invoice.model_copy(update={...})``.
    """

    id: str
    vendor: str
    invoice_number: str
    date: str | None = None
    service_date: str | None = None
    due_date: str | None = None
    currency: str | None = None
    net_amount: float | None = None
    tax_amount: float | None = None
    total_amount: float | None = None
    line_items: list[LineItem] | None = None
    payment_terms: str | None = None
    po_number: str | None = None
    raw_text: str

    def to_record(self) -> dict[str, Any]:
        """Flat dict view used by the rule evaluator and the diff."""
        return self.model_dump(exclude_none=True)


class VendorPattern(_FrozenWireModel):
    """A learned extraction rule for one target field of one vendor."""

    rule_type: RuleType
    logic: dict[str, Any]
    confidence: float = Field(ge=0.0, le=1.0)
    sample_evidence: str | None = None
    created_at: str = Field(default_factory=now_iso)
    last_used: str | None = None


class VendorDefaults(_WireModel):
    currency: str | None = None
    payment_terms: str | None = None


class VendorMemory(_WireModel):
    """Per-vendor knowledge: aliases, defaults and one pattern per field."""

    id: str
    vendor_name: str
    fingerprints: list[str] = Field(default_factory=list)
    defaults: VendorDefaults = Field(default_factory=VendorDefaults)
    patterns: dict[str, VendorPattern] = Field(default_factory=dict)
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)

    def with_patterns(
        self, patterns: dict[str, VendorPattern], timestamp: str | None = None
    ) -> "VendorMemory":
        """Return a copy where ``patterns`` overwrite existing ones per field."""
        merged = {**self.patterns, **patterns}
        return self.model_copy(
            update={"patterns": merged, "updated_at": timestamp or now_iso()}
        )


class CorrectionMemory(_FrozenWireModel):
    """A vendor-agnostic rule triggered by the state of the invoice data."""

    id: str
    trigger_condition: dict[str, Any]
    action: dict[str, Any]
    description: str
    confidence: float = Field(ge=0.0, le=1.0)
    decay_factor: float = 0.95
    created_at: str = Field(default_factory=now_iso)
    last_used: str | None = None


class ResolutionHistoryItem(_FrozenWireModel):
    invoice_id: str
    outcome: ResolutionOutcome
    timestamp: str


class ResolutionMemory(_FrozenWireModel):
    """Acceptance and rejection counts for a single rule."""

    rule_id: str
    total_applications: int = 0
    accepted_count: int = 0
    rejected_count: int = 0
    last_used: str | None = None
    history: list[ResolutionHistoryItem] = Field(default_factory=list)

    def record(
        self,
        invoice_id: str,
        outcome: ResolutionOutcome,
        timestamp: str | None = None,
    ) -> "ResolutionMemory":
        """Return a copy with ``outcome`` counted and appended to the history.

        The history keeps the most recent ``RESOLUTION_HISTORY_LIMIT`` items.
        """
        timestamp = timestamp or now_iso()
        history = [
            *self.history,
            ResolutionHistoryItem(
                invoice_id=invoice_id, outcome=outcome, timestamp=timestamp
            ),
        ][-RESOLUTION_HISTORY_LIMIT:]

        return self.model_copy(
            update={
                "total_applications": self.total_applications + 1,
                "accepted_count": self.accepted_count
                + (outcome == ResolutionOutcome.ACCEPTED),
                "rejected_count": self.rejected_count
                + (outcome == ResolutionOutcome.REJECTED),
                "last_used": timestamp,
                "history": history,
            }
        )


class AuditEntry(_FrozenWireModel):
    """One timestamped reasoning step."""

    step: str
    action: str
    field: str | None = None
    old_value: Any = None
    new_value: Any = None
    reasoning: str
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    timestamp: str = Field(default_factory=now_iso)


class FieldConfidence(_FrozenWireModel):
    """A proposed value for one output field."""

    field: str
    value: Any
    confidence: float = Field(ge=0.0, le=1.0)
    source: ProposalSource
    rule_id: str | None = None
    reasoning: str = ""


class ProcessingContext(BaseModel):
    """Everything recalled for a single invoice."""

    model_config = ConfigDict(frozen=True)

    invoice: Invoice
    vendor_memory: VendorMemory | None = None
    correction_memories: list[CorrectionMemory] = Field(default_factory=list)
    resolution_memories: dict[str, ResolutionMemory] = Field(default_factory=dict)
    audit_trail: list[AuditEntry] = Field(default_factory=list)

    def with_audit(self, entries: list[AuditEntry]) -> "ProcessingContext":
        """Return a copy with ``entries`` appended to the audit trail."""
        return self.model_copy(update={"audit_trail": [*self.audit_trail, *entries]})


class InductionResult(BaseModel):
    """Rules synthesized from one human correction."""

    vendor_rules: list[tuple[str, VendorPattern]] = Field(default_factory=list)
    correction_rules: list[CorrectionMemory] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.vendor_rules and not self.correction_rules


class OutputContract(_FrozenWireModel):
    """Finalized invoice fields plus the review decision."""

    invoice_id: str
    vendor: str
    invoice_number: str
    date: str | None = None
    service_date: str | None = None
    due_date: str | None = None
    total_amount: float | None = None
    tax_amount: float | None = None
    net_amount: float | None = None
    currency: str | None = None
    line_items: list[LineItem] | None = None
    payment_terms: str | None = None
    po_number: str | None = None
    requires_human_review: bool
    reasoning: str
    confidence: float = Field(ge=0.0, le=1.0)
    audit_trail: list[AuditEntry]
    processed_at: str = Field(default_factory=now_iso)
