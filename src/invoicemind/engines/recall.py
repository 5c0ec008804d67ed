"""Recall engine: resolves the vendor and gathers memories for one invoice."""

from invoicemind.integrations.memory_store import MemoryStore
from invoicemind.logging_config import get_logger
from invoicemind.models import (
    AuditEntry,
    Invoice,
    ProcessingContext,
    ResolutionMemory,
    VendorMemory,
)
from invoicemind.utils.fuzzy import DEFAULT_THRESHOLD

logger = get_logger(__name__)

VENDOR_MATCH_THRESHOLD = DEFAULT_THRESHOLD
VENDOR_MATCHED_CONFIDENCE = 0.95


def pattern_rule_id(vendor_id: str, field: str) -> str:
    """Resolution memory key for a vendor pattern."""
    return f"{vendor_id}:{field}"


class RecallEngine:
    """Builds a ``ProcessingContext`` from the memory store. Never writes."""

    def __init__(self, store: MemoryStore):
        self.store = store

    def find_vendor_memory(self, vendor_name: str) -> VendorMemory | None:
        """Exact name lookup, falling back to the best approximate match."""
        exact = self.store.find_vendor_exact(vendor_name)
        if exact:
            return exact

        matches = self.store.search_vendors_approx(vendor_name, VENDOR_MATCH_THRESHOLD)
        if not matches:
            return None

        best = matches[0]
        logger.debug(
            "vendor_fuzzy_matched",
            query=vendor_name,
            vendor=best.vendor.vendor_name,
            score=round(best.score, 3),
        )
        return best.vendor

    def build_context(self, invoice: Invoice) -> ProcessingContext:
        audit: list[AuditEntry] = []
        resolutions: dict[str, ResolutionMemory] = {}

        vendor_memory = self.find_vendor_memory(invoice.vendor)
        if vendor_memory:
            audit.append(
                AuditEntry(
                    step="RECALL",
                    action="VENDOR_MATCHED",
                    reasoning=(
                        f'Matched vendor "{invoice.vendor}" to existing memory '
                        f'"{vendor_memory.vendor_name}"'
                    ),
                    confidence=VENDOR_MATCHED_CONFIDENCE,
                )
            )
            for field in vendor_memory.patterns:
                rule_id = pattern_rule_id(vendor_memory.id, field)
                resolutions[rule_id] = self.store.get_resolution_memory(rule_id)
        else:
            audit.append(
                AuditEntry(
                    step="RECALL",
                    action="NEW_VENDOR",
                    reasoning=f'No existing memory found for vendor "{invoice.vendor}"',
                    confidence=0.0,
                )
            )

        corrections = self.store.list_correction_memories()
        for correction in corrections:
            resolutions[correction.id] = self.store.get_resolution_memory(correction.id)

        audit.append(
            AuditEntry(
                step="RECALL",
                action="CORRECTIONS_LOADED",
                reasoning=f"Loaded {len(corrections)} global correction rule(s)",
            )
        )

        logger.info(
            "context_built",
            invoice_id=invoice.id,
            vendor_matched=vendor_memory is not None,
            corrections=len(corrections),
        )

        return ProcessingContext(
            invoice=invoice,
            vendor_memory=vendor_memory,
            correction_memories=corrections,
            resolution_memories=resolutions,
            audit_trail=audit,
        )
