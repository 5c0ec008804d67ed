"""Unit tests for the cognitive engine and confidence scoring."""

import pytest

from invoicemind.engines.cognitive import (
    CognitiveEngine,
    calculate_confidence,
    infer_target_field,
)
from invoicemind.logic.expressions import create_arithmetic_rule, create_regex_rule
from invoicemind.models import (
    CorrectionMemory,
    ProcessingContext,
    ProposalSource,
    ResolutionMemory,
    ResolutionOutcome,
    RuleType,
    VendorDefaults,
    VendorMemory,
    VendorPattern,
)
from tests.utils import make_invoice

pytestmark = pytest.mark.unit

RAW_TEXT = "Leistungsdatum: 01.12.2023\nGesamt: 119.00 EUR\nMwSt. inkl."


def history(accepted: int, rejected: int) -> ResolutionMemory:
    memory = ResolutionMemory(rule_id="r")
    for i in range(accepted):
        memory = memory.record(f"A{i}", ResolutionOutcome.ACCEPTED, "2024-01-01T00:00:00+00:00")
    for i in range(rejected):
        memory = memory.record(f"R{i}", ResolutionOutcome.REJECTED, "2024-01-01T00:00:00+00:00")
    return memory


def vat_rule(confidence: float = 0.95) -> CorrectionMemory:
    return CorrectionMemory(
        id="inclusive_vat_19-1234abcd",
        trigger_condition={
            "and": [{"!": [{"var": "tax_amount"}]}, {">": [{"var": "total_amount"}, 0]}]
        },
        action={
            "if": [
                {"!": [{"var": "tax_amount"}]},
                create_arithmetic_rule("inclusive_vat_19", "total_amount"),
                {"var": "tax_amount"},
            ]
        },
        description="Calculate 19% VAT from gross amount",
        confidence=confidence,
    )


class TestCalculateConfidence:
    def test_no_history_discount(self):
        assert calculate_confidence(0.95, None, None) == pytest.approx(0.76)
        assert calculate_confidence(0.95, ResolutionMemory(rule_id="r"), None) == (
            pytest.approx(0.76)
        )

    def test_laplace_smoothing_without_decay(self):
        # 0.6 * 0.9 + 0.4 * (3 + 1) / (4 + 2)
        result = calculate_confidence(0.9, history(3, 1), None)
        assert result == pytest.approx(0.54 + 0.4 * 4 / 6)

    def test_daily_decay(self):
        fresh = calculate_confidence(
            0.9, history(2, 0), "2024-01-01T00:00:00+00:00", now="2024-01-01T00:00:00+00:00"
        )
        aged = calculate_confidence(
            0.9, history(2, 0), "2024-01-01T00:00:00+00:00", now="2024-01-11T00:00:00+00:00"
        )
        assert aged == pytest.approx(fresh * 0.99**10)

    def test_floor(self):
        result = calculate_confidence(
            0.1, history(0, 5), "2020-01-01T00:00:00+00:00", now="2024-01-01T00:00:00+00:00"
        )
        assert result == 0.1

    def test_monotonic_in_accepted_count(self):
        scores = [
            calculate_confidence(0.8, history(accepted, 6 - accepted), None)
            for accepted in range(7)
        ]
        assert scores == sorted(scores)

    @pytest.mark.parametrize("accepted", range(0, 11))
    def test_bounds(self, accepted):
        score = calculate_confidence(1.0, history(accepted, 10 - accepted), None)
        assert 0.0 <= score <= 1.0


class TestInferTargetField:
    def test_tax_wins_over_total(self):
        assert infer_target_field(vat_rule().action) == "tax_amount"

    def test_net_before_total(self):
        action = create_arithmetic_rule("net_from_gross_19", "total_amount")
        assert infer_target_field({"if": [{"!": [{"var": "net_amount"}]}, action]}) == (
            "net_amount"
        )

    def test_plain_total_formula(self):
        action = create_arithmetic_rule("inclusive_vat_19", "total_amount")
        assert infer_target_field(action) == "total_amount"

    def test_no_target(self):
        assert infer_target_field({"var": "po_number"}) is None


class TestApply:
    def test_vendor_pattern_proposal(self):
        vendor = VendorMemory(
            id="v1",
            vendor_name="Supplier GmbH",
            patterns={
                "service_date": VendorPattern(
                    rule_type=RuleType.REGEX,
                    logic={
                        "date_normalize": [
                            create_regex_rule(r"Leistungsdatum[:\s]*([\d.]+)")
                        ]
                    },
                    confidence=0.95,
                )
            },
        )
        context = ProcessingContext(
            invoice=make_invoice(raw_text=RAW_TEXT), vendor_memory=vendor
        )

        proposals, audit = CognitiveEngine().apply(context)

        proposal = proposals["service_date"]
        assert proposal.value == "2023-12-01"
        assert proposal.confidence == pytest.approx(0.76)
        assert proposal.source == ProposalSource.VENDOR_PATTERN
        assert proposal.rule_id == "v1:service_date"
        assert audit[0].action == "VENDOR_PATTERN"
        assert audit[0].old_value is None

    def test_pattern_without_result_is_skipped(self):
        vendor = VendorMemory(
            id="v1",
            vendor_name="Supplier GmbH",
            patterns={
                "po_number": VendorPattern(
                    rule_type=RuleType.REGEX,
                    logic=create_regex_rule(r"PO-(\d+)"),
                    confidence=0.85,
                ),
                "broken": VendorPattern(
                    rule_type=RuleType.REGEX, logic={"nope": []}, confidence=0.85
                ),
            },
        )
        context = ProcessingContext(invoice=make_invoice(), vendor_memory=vendor)

        proposals, audit = CognitiveEngine().apply(context)

        assert proposals == {}
        assert audit == []

    def test_vendor_defaults(self):
        vendor = VendorMemory(
            id="v1",
            vendor_name="Supplier GmbH",
            defaults=VendorDefaults(currency="EUR", payment_terms="30 Tage netto"),
        )
        context = ProcessingContext(invoice=make_invoice(), vendor_memory=vendor)

        proposals, audit = CognitiveEngine().apply(context)

        assert proposals["currency"].value == "EUR"
        assert proposals["currency"].confidence == 0.90
        assert proposals["payment_terms"].rule_id is None
        assert [e.action for e in audit] == ["VENDOR_DEFAULT", "VENDOR_DEFAULT"]

    def test_correction_rule_applies(self):
        context = ProcessingContext(
            invoice=make_invoice(tax_amount=0.0, raw_text=RAW_TEXT),
            correction_memories=[vat_rule()],
        )

        proposals, audit = CognitiveEngine().apply(context)

        proposal = proposals["tax_amount"]
        assert proposal.value == pytest.approx(19.0)
        assert proposal.confidence == pytest.approx(0.76)
        assert proposal.source == ProposalSource.CORRECTION_RULE
        assert proposal.rule_id == "inclusive_vat_19-1234abcd"
        assert audit[0].old_value == 0.0

    def test_correction_rule_not_triggered(self):
        context = ProcessingContext(
            invoice=make_invoice(tax_amount=19.0), correction_memories=[vat_rule()]
        )
        proposals, _ = CognitiveEngine().apply(context)
        assert proposals == {}

    def test_correction_uses_resolution_history(self):
        rule = vat_rule()
        context = ProcessingContext(
            invoice=make_invoice(),
            correction_memories=[rule],
            resolution_memories={rule.id: history(4, 0)},
        )
        proposals, _ = CognitiveEngine().apply(context)
        assert proposals["tax_amount"].confidence == pytest.approx(
            0.6 * 0.95 + 0.4 * 5 / 6
        )

    def test_higher_confidence_proposal_is_kept(self):
        vendor = VendorMemory(
            id="v1",
            vendor_name="Supplier GmbH",
            patterns={
                "tax_amount": VendorPattern(
                    rule_type=RuleType.REGEX,
                    logic={"extract_number": [create_regex_rule(r"Steuer (\d+)")]},
                    confidence=1.0,
                )
            },
        )
        context = ProcessingContext(
            invoice=make_invoice(raw_text="Steuer 20"),
            vendor_memory=vendor,
            correction_memories=[vat_rule(confidence=0.95)],
        )

        proposals, _ = CognitiveEngine().apply(context)

        assert proposals["tax_amount"].value == 20.0
        assert proposals["tax_amount"].source == ProposalSource.VENDOR_PATTERN

    def test_correction_replaces_weaker_proposal(self):
        vendor = VendorMemory(
            id="v1",
            vendor_name="Supplier GmbH",
            patterns={
                "tax_amount": VendorPattern(
                    rule_type=RuleType.REGEX,
                    logic={"extract_number": [create_regex_rule(r"Steuer (\d+)")]},
                    confidence=0.5,
                )
            },
        )
        context = ProcessingContext(
            invoice=make_invoice(raw_text="Steuer 20"),
            vendor_memory=vendor,
            correction_memories=[vat_rule(confidence=0.95)],
        )

        proposals, _ = CognitiveEngine().apply(context)

        assert proposals["tax_amount"].source == ProposalSource.CORRECTION_RULE
