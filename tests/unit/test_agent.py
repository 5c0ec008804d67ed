"""Unit tests for the invoice agent boundary API."""

from unittest.mock import MagicMock, patch

import pytest

from invoicemind.agent import InvoiceAgent, InvoiceValidationError
from invoicemind.engines.recall import pattern_rule_id
from invoicemind.integrations.memory_store import SQLiteMemoryStore
from invoicemind.models import LineItem, OutputContract, ResolutionOutcome
from tests.utils import make_invoice

pytestmark = pytest.mark.unit

RAW_TEXT = "Rechnung 2024-001\nLeistungsdatum: 01.12.2023\nGesamt: 119.00 EUR"


@pytest.fixture
def agent():
    with InvoiceAgent(store=SQLiteMemoryStore()) as agent:
        yield agent


class TestProcess:
    def test_new_vendor_is_escalated(self, agent):
        output = agent.process(make_invoice())

        assert isinstance(output, OutputContract)
        assert output.requires_human_review
        assert output.reasoning.startswith("New vendor")
        assert 0.0 <= output.confidence <= 1.0
        assert [e.action for e in output.audit_trail][:3] == [
            "NEW_VENDOR",
            "CORRECTIONS_LOADED",
            "PROCESSING_STARTED",
        ]

    def test_same_invoice_twice_is_duplicate(self, agent):
        invoice = make_invoice()
        agent.process(invoice)
        second = agent.process(invoice)

        assert second.requires_human_review
        assert "Duplicate" in second.reasoning

    def test_accepts_camel_case_dict(self, agent):
        output = agent.process(
            {
                "id": "INV-9",
                "vendor": "ACME",
                "invoiceNumber": "9",
                "totalAmount": 10,
                "rawText": "Total 10",
            }
        )
        assert output.invoice_id == "INV-9"
        assert output.total_amount == 10.0

    def test_invalid_invoice(self, agent):
        with pytest.raises(InvoiceValidationError, match="Invalid invoice") as exc:
            agent.process({"id": "INV-9", "vendor": "ACME"})
        assert exc.value.errors
        assert isinstance(exc.value, ValueError)


class TestLearn:
    def test_creates_vendor_memory(self, agent):
        system = make_invoice(raw_text=RAW_TEXT)
        corrected = system.model_copy(update={"service_date": "2023-12-01"})

        result = agent.learn(system, corrected)

        assert [field for field, _ in result.vendor_rules] == ["service_date"]
        memory = agent.get_vendor_memory("Supplier GmbH")
        assert memory is not None
        assert "supplier" in memory.fingerprints
        assert "service_date" in memory.patterns
        assert agent.get_all_vendor_memories() == [memory]

    def test_vendor_is_remembered_without_new_rules(self, agent):
        invoice = make_invoice()
        result = agent.learn(invoice, invoice)

        assert result.is_empty
        assert agent.get_vendor_memory("Supplier GmbH") is not None

    def test_existing_vendor_is_updated_in_place(self, agent):
        system = make_invoice(raw_text=RAW_TEXT)
        agent.learn(system, system.model_copy(update={"service_date": "2023-12-01"}))
        agent.learn(
            make_invoice(vendor="Supplier GmbH.", raw_text="Bestellung PO-123"),
            make_invoice(
                vendor="Supplier GmbH.", raw_text="Bestellung PO-123", po_number="PO-123"
            ),
        )

        [memory] = agent.get_all_vendor_memories()
        assert set(memory.patterns) == {"service_date", "po_number"}

    def test_correction_rules_are_global(self, agent):
        system = make_invoice(tax_amount=0.0, raw_text="Gesamt 119\nMwSt. inkl.")
        agent.learn(system, system.model_copy(update={"tax_amount": 19.0}))

        output = agent.process(
            make_invoice(
                id="INV-77",
                vendor="Other Vendor AG",
                invoice_number="77",
                tax_amount=0.0,
                raw_text="Brutto 119 EUR, MwSt. inkl.",
            )
        )
        assert output.tax_amount == pytest.approx(19.0)

    def test_records_resolutions_for_processed_invoice(self, agent):
        system = make_invoice(raw_text=RAW_TEXT)
        agent.learn(system, system.model_copy(update={"service_date": "2023-12-01"}))
        vendor_id = agent.get_vendor_memory("Supplier GmbH").id

        invoice = make_invoice(id="INV-002", invoice_number="2024-002", raw_text=RAW_TEXT)
        output = agent.process(invoice)
        assert output.service_date == "2023-12-01"

        agent.learn(invoice, invoice.model_copy(update={"service_date": "2023-12-02"}))

        memory = agent.store.get_resolution_memory(pattern_rule_id(vendor_id, "service_date"))
        assert memory.total_applications == 1
        assert memory.rejected_count == 1

    def test_learn_on_another_agent_records_resolutions(self, tmp_path):
        db_path = tmp_path / "memory.db"
        system = make_invoice(raw_text=RAW_TEXT)
        with InvoiceAgent(db_path=db_path) as agent:
            agent.learn(system, system.model_copy(update={"service_date": "2023-12-01"}))
            vendor_id = agent.get_vendor_memory("Supplier GmbH").id

        invoice = make_invoice(id="INV-002", invoice_number="2024-002", raw_text=RAW_TEXT)
        with InvoiceAgent(db_path=db_path) as agent:
            assert agent.process(invoice).service_date == "2023-12-01"

        with InvoiceAgent(db_path=db_path) as agent:
            agent.learn(invoice, invoice.model_copy(update={"service_date": "2023-12-01"}))
            memory = agent.store.get_resolution_memory(
                pattern_rule_id(vendor_id, "service_date")
            )

        assert memory.total_applications == 1
        assert memory.accepted_count == 1

    def test_new_rules_get_no_feedback_from_their_own_correction(self, agent):
        system = make_invoice(raw_text=RAW_TEXT)
        agent.learn(system, system.model_copy(update={"service_date": "2023-12-01"}))
        vendor_id = agent.get_vendor_memory("Supplier GmbH").id

        memory = agent.store.get_resolution_memory(pattern_rule_id(vendor_id, "service_date"))
        assert memory.total_applications == 0

    def test_explicit_outcome_is_passed_through(self, agent):
        invoice = make_invoice()
        with patch.object(agent.decision_engine, "record_resolutions") as record:
            agent.learn(invoice, invoice, ResolutionOutcome.ACCEPTED)
        record.assert_called_once_with({}, invoice, ResolutionOutcome.ACCEPTED)

    def test_invalid_correction(self, agent):
        with pytest.raises(InvoiceValidationError, match="human correction"):
            agent.learn(make_invoice(), {"id": "x"})


def test_processing_keeps_no_per_invoice_state(agent):
    before = dict(vars(agent))
    for number in range(50):
        agent.process(make_invoice(id=f"INV-{number}", invoice_number=str(number)))
    assert vars(agent) == before


def test_close_closes_store():
    store = MagicMock()
    with InvoiceAgent(store=store):
        pass
    store.close.assert_called_once()


def test_db_path_creates_sqlite_store(tmp_path):
    db_path = tmp_path / "memory.db"
    with InvoiceAgent(db_path=db_path) as agent:
        agent.process(make_invoice(line_items=[LineItem(description="A", amount=119.0)]))
    assert db_path.exists()
