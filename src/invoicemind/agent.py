"""Invoice agent: the process/learn loop over a memory store."""

from pathlib import Path
from typing import Any, TypeVar
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from invoicemind.config import get_settings
from invoicemind.engines import CognitiveEngine, DecisionEngine, RecallEngine
from invoicemind.integrations.memory_store import MemoryStore, SQLiteMemoryStore
from invoicemind.logging_config import get_logger
from invoicemind.logic.induction import induce_rules
from invoicemind.models import (
    AuditEntry,
    InductionResult,
    Invoice,
    OutputContract,
    ResolutionOutcome,
    VendorMemory,
)
from invoicemind.utils.fuzzy import generate_fingerprints

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


class InvoiceValidationError(ValueError):
    """Raised when an invoice or output contract does not match its schema."""

    def __init__(self, kind: str, error: ValidationError):
        self.kind = kind
        self.errors = error.errors()
        super().__init__(f"Invalid {kind}: {error}")


def _validate(model: type[M], value: M | dict[str, Any], kind: str) -> M:
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except ValidationError as e:
        raise InvoiceValidationError(kind, e) from e


class InvoiceAgent:
    """Recall, apply and decide for each invoice; learn from corrections.

    Attributes:
        store: The memory store every engine reads from and writes to
    """

    def __init__(
        self,
        store: MemoryStore | None = None,
        db_path: str | Path | None = None,
    ):
        if store is None:
            store = SQLiteMemoryStore(db_path or get_settings().db_path)
        self.store = store
        self.recall_engine = RecallEngine(store)
        self.cognitive_engine = CognitiveEngine()
        self.decision_engine = DecisionEngine(store)

    def __enter__(self) -> "InvoiceAgent":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def process(self, invoice: Invoice | dict[str, Any]) -> OutputContract:
        """Run one invoice through recall, rule application and decision.

        Raises:
            InvoiceValidationError: If the invoice or the produced output is invalid
        """
        invoice = _validate(Invoice, invoice, "invoice")

        context = self.recall_engine.build_context(invoice)
        context = context.with_audit(
            [
                AuditEntry(
                    step="START",
                    action="PROCESSING_STARTED",
                    reasoning=f"Processing invoice {invoice.id} from {invoice.vendor}",
                )
            ]
        )

        proposals, audit = self.cognitive_engine.apply(context)
        context = context.with_audit(audit)

        output = self.decision_engine.decide(context, proposals)

        return _validate(
            OutputContract, output.model_dump(by_alias=True), "output contract"
        )

    def learn(
        self,
        system_output: Invoice | dict[str, Any],
        human_correction: Invoice | dict[str, Any],
        outcome: ResolutionOutcome | None = None,
    ) -> InductionResult:
        """Induce and persist rules from a human correction.

        The vendor memory is created on first correction. Every rule that made a
        proposal for ``system_output`` is reinforced or penalized. Proposals are
        rebuilt from memory as it stood before this correction, so ``learn`` does
        not need to run on the agent that processed the invoice.

        Args:
            system_output: The invoice as the system produced it
            human_correction: The same invoice after human review
            outcome: The reviewer's overall verdict; inferred when omitted

        Returns:
            The rules that were learned

        Raises:
            InvoiceValidationError: If either invoice is invalid
        """
        system_output = _validate(Invoice, system_output, "system output")
        human_correction = _validate(Invoice, human_correction, "human correction")

        # Before any new rule is stored, so only earlier rules get feedback
        proposals, _ = self.cognitive_engine.apply(
            self.recall_engine.build_context(system_output)
        )

        induction = induce_rules(system_output, human_correction)

        vendor_memory = self.recall_engine.find_vendor_memory(human_correction.vendor)
        if vendor_memory is None:
            vendor_memory = VendorMemory(
                id=uuid4().hex,
                vendor_name=human_correction.vendor,
                fingerprints=generate_fingerprints(human_correction.vendor),
            )
            logger.info("vendor_memory_created", vendor=human_correction.vendor)

        if induction.vendor_rules:
            vendor_memory = vendor_memory.with_patterns(dict(induction.vendor_rules))
        self.store.upsert_vendor(vendor_memory)

        for rule in induction.correction_rules:
            self.store.upsert_correction_memory(rule)

        if outcome is None:
            outcome = (
                ResolutionOutcome.ACCEPTED
                if induction.is_empty
                else ResolutionOutcome.MODIFIED
            )

        self.decision_engine.record_resolutions(proposals, human_correction, outcome)

        logger.info(
            "learning_complete",
            invoice_id=human_correction.id,
            vendor=vendor_memory.vendor_name,
            vendor_rules=len(induction.vendor_rules),
            correction_rules=len(induction.correction_rules),
        )
        return induction

    def get_vendor_memory(self, vendor_name: str) -> VendorMemory | None:
        return self.store.find_vendor_exact(vendor_name)

    def get_all_vendor_memories(self) -> list[VendorMemory]:
        return self.store.list_vendors()

    def close(self) -> None:
        self.store.close()
