"""Induction engine: synthesizes rules from a human correction.

The diff between the system output and the corrected invoice is walked leaf by
leaf. Each changed path is dispatched by name:

    *date*                          date regex
    amount/price/quantity/tax/...   arithmetic formula, else numeric regex
    *sku*                           description-to-SKU mapping
    payment_terms                   Skonto regex, else text regex
    po_number                       PO shape regex
    anything else                   text regex

Literal values are always escaped before they are embedded in a pattern, and
free text captures are bounded.
"""

import math
import re
from typing import Any
from uuid import uuid4

from invoicemind.logging_config import get_logger
from invoicemind.logic.expressions import (
    create_arithmetic_rule,
    create_condition_rule,
    create_map_rule,
    create_regex_rule,
)
from invoicemind.models import (
    CorrectionMemory,
    InductionResult,
    Invoice,
    RuleType,
    VendorPattern,
)
from invoicemind.utils.diff import compute_diff, extract_changes, get_path

logger = get_logger(__name__)

DATE_LABELS = [
    "Leistungsdatum",
    "Service Date",
    "Datum",
    "Date",
    "Rechnungsdatum",
    "Invoice Date",
]
LABEL_SYNONYMS = {
    "net": ["Netto", "Net"],
    "total": ["Gesamt", "Total", "Summe"],
    "tax": ["MwSt", "Tax", "VAT"],
    "date": ["Datum", "Date"],
}

DATE_CAPTURE = r"(\d{2}\.\d{2}\.\d{2,4}|\d{4}-\d{2}-\d{2})"
NUMBER_CAPTURE = r"(\d+[.,]?\d*)"
TEXT_CAPTURE = r"([^\n\r]{1,200})"
SKONTO_PATTERN = r"(\d{1,2}(?:[.,]\d{1,2})?\s?%\s?Skonto)"
INCLUSIVE_TAX_MARKER = r"mwst\.?\s*inkl|gross|brutto|tax\s*incl"

LABELED_DATE_CONFIDENCE = 0.95
UNLABELED_DATE_CONFIDENCE = 0.70
NUMBER_CONFIDENCE = 0.85
SKONTO_CONFIDENCE = 0.90
PO_CONFIDENCE = 0.85
TEXT_CONFIDENCE = 0.80
MAPPING_CONFIDENCE = 0.85

EVIDENCE_WINDOW = 20
FORMULA_TOLERANCE = 0.01
MIN_TOKEN_LENGTH = 3

_DATE_FIELD = re.compile(r"date", re.IGNORECASE)
_NUMERIC_FIELD = re.compile(r"amount|price|quantity|tax|total|net", re.IGNORECASE)
_ISO_DATE = re.compile(r"(\d{4})-(\d{2})-(\d{2})")


# Hypotheses are tried in order. Each is
# (formula, target, source, compute, needs_tax_marker, confidence, description).
ARITHMETIC_HYPOTHESES = [
    (
        "inclusive_vat_19",
        "tax_amount",
        "total_amount",
        lambda gross: gross - gross / 1.19,
        True,
        0.95,
        'Calculate 19% VAT from gross amount when "MwSt. inkl." detected',
    ),
    (
        "exclusive_vat_19",
        "tax_amount",
        "net_amount",
        lambda net: net * 0.19,
        False,
        0.90,
        "Calculate 19% VAT from net amount",
    ),
    (
        "net_from_gross_19",
        "net_amount",
        "total_amount",
        lambda gross: gross / 1.19,
        False,
        0.90,
        "Calculate net amount from gross (19% VAT)",
    ),
]


def generate_rule_id(base: str) -> str:
    return f"{base}-{uuid4().hex[:8]}"


def format_number(value: float) -> str:
    """Shortest textual form of a number: 19.0 -> "19", 19.5 -> "19.5"."""
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def generate_date_variants(value: str) -> list[str]:
    """The value itself, plus DD.MM.YYYY and DD.MM.YY forms of an ISO date."""
    variants = [value]
    match = _ISO_DATE.search(value)
    if match:
        year, month, day = match.groups()
        variants.append(f"{day}.{month}.{year}")
        variants.append(f"{day}.{month}.{year[2:]}")
    return variants


def generate_field_labels(field: str) -> list[str]:
    """Label candidates for a field: its name, a spaced form and synonyms."""
    name = field.rsplit(".", 1)[-1]
    labels = [name, name.replace("_", " ")]
    lowered = name.lower()
    for needle, synonyms in LABEL_SYNONYMS.items():
        if needle in lowered:
            labels.extend(synonyms)
    return list(dict.fromkeys(labels))


def _evidence(text: str, start: int, end: int) -> str:
    return text[max(0, start - EVIDENCE_WINDOW) : end + EVIDENCE_WINDOW]


def _regex_pattern(
    pattern: str, confidence: float, evidence: str | None, wrapper: str | None = None
) -> VendorPattern:
    logic = create_regex_rule(pattern, "raw_text", 1)
    if wrapper:
        logic = {wrapper: [logic]}
    return VendorPattern(
        rule_type=RuleType.REGEX,
        logic=logic,
        confidence=confidence,
        sample_evidence=evidence,
    )


# Regex synthesis


def induce_date_pattern(value: Any, raw_text: str) -> VendorPattern | None:
    """Find a labeled occurrence of the date, else any occurrence of its shape.

    The extracted text is normalized to an ISO date at evaluation time.
    """
    if not raw_text or not value or not isinstance(value, str):
        return None

    variants = generate_date_variants(value)

    for variant in variants:
        for label in DATE_LABELS:
            probe = rf"{re.escape(label)}[:\s]*{re.escape(variant)}"
            match = re.search(probe, raw_text, re.IGNORECASE)
            if match:
                return _regex_pattern(
                    rf"{re.escape(label)}[:\s]*{DATE_CAPTURE}",
                    LABELED_DATE_CONFIDENCE,
                    _evidence(raw_text, match.start(), match.end()),
                    wrapper="date_normalize",
                )

    for variant in variants:
        if variant in raw_text:
            shape = re.sub(r"\d", r"\\d", re.escape(variant))
            return _regex_pattern(
                f"({shape})",
                UNLABELED_DATE_CONFIDENCE,
                variant,
                wrapper="date_normalize",
            )

    return None


def induce_number_pattern(
    field: str, value: float, raw_text: str
) -> VendorPattern | None:
    """Emit the first labeled number pattern that matches the raw text."""
    if not raw_text:
        return None

    text = format_number(value)
    variants = list(dict.fromkeys([text, text.replace(".", ",")]))
    if not any(variant in raw_text for variant in variants):
        return None

    for label in generate_field_labels(field):
        pattern = rf"{re.escape(label)}[:\s]*{NUMBER_CAPTURE}"
        if re.search(pattern, raw_text, re.IGNORECASE):
            return _regex_pattern(
                pattern, NUMBER_CONFIDENCE, text, wrapper="extract_number"
            )

    return None


def induce_text_pattern(field: str, value: Any, raw_text: str) -> VendorPattern | None:
    """Capture the rest of the line after a field label, if it holds the value."""
    if not raw_text or not value or not isinstance(value, str):
        return None
    if value not in raw_text:
        return None

    for label in generate_field_labels(field):
        pattern = rf"{re.escape(label)}[:\s]*{TEXT_CAPTURE}"
        match = re.search(pattern, raw_text, re.IGNORECASE)
        if match and value in match.group(1):
            return _regex_pattern(pattern, TEXT_CONFIDENCE, value)

    return None


def induce_payment_terms_pattern(value: Any, raw_text: str) -> VendorPattern | None:
    if not raw_text or not value or not isinstance(value, str):
        return None

    if "skonto" in value.lower() and re.search(
        SKONTO_PATTERN, raw_text, re.IGNORECASE
    ):
        return _regex_pattern(SKONTO_PATTERN, SKONTO_CONFIDENCE, value)

    return induce_text_pattern("payment_terms", value, raw_text)


def generalize_po_number(value: str) -> str:
    """Replace letters and digits by character classes, escape the rest."""
    parts = []
    for char in value:
        if char.isascii() and char.isupper():
            parts.append("[A-Z]")
        elif char.isascii() and char.islower():
            parts.append("[a-z]")
        elif char.isascii() and char.isdigit():
            parts.append(r"\d")
        else:
            parts.append(re.escape(char))
    return f"({''.join(parts)})"


def induce_po_pattern(value: Any, raw_text: str) -> VendorPattern | None:
    if not raw_text or not value or not isinstance(value, str):
        return None
    if value not in raw_text:
        return None
    return _regex_pattern(generalize_po_number(value), PO_CONFIDENCE, value)


# Arithmetic synthesis


def induce_arithmetic_rule(
    field: str, value: float, record: dict[str, Any]
) -> CorrectionMemory | None:
    """Find a 19% VAT formula that reproduces the corrected value.

    The trigger only fires while the target field is still empty, and the
    action returns the existing value when the target is already set.
    """
    raw_text = record.get("raw_text") or ""

    for (
        formula,
        target,
        source,
        compute,
        needs_marker,
        confidence,
        description,
    ) in ARITHMETIC_HYPOTHESES:
        if field != target or record.get(target):
            continue

        source_value = record.get(source)
        if not source_value:
            continue
        if needs_marker and not re.search(INCLUSIVE_TAX_MARKER, raw_text, re.IGNORECASE):
            continue

        if not math.isclose(
            compute(source_value), value, rel_tol=0.0, abs_tol=FORMULA_TOLERANCE
        ):
            continue

        conditions: list[Any] = [
            {"!": [{"var": target}]},
            {">": [{"var": source}, 0]},
        ]
        if needs_marker:
            conditions.append(
                {"regex_test": [INCLUSIVE_TAX_MARKER, {"var": "raw_text"}]}
            )

        return CorrectionMemory(
            id=generate_rule_id(formula),
            trigger_condition={"and": conditions},
            action=create_condition_rule(
                {"!": [{"var": target}]},
                create_arithmetic_rule(formula, source),
                {"var": target},
            ),
            description=description,
            confidence=confidence,
        )

    return None


# Mapping synthesis


def build_description_mapping(description: str, sku: str) -> dict[str, str]:
    """Full lowercased description plus every token longer than three characters."""
    lowered = description.lower()
    mapping = {lowered: sku}
    for token in lowered.split():
        if len(token) > MIN_TOKEN_LENGTH:
            mapping.setdefault(token, sku)
    return mapping


def induce_mapping(field: str, sku: Any, record: dict[str, Any]) -> VendorPattern | None:
    if not sku or not isinstance(sku, str) or not field.endswith(".sku"):
        return None

    source_field = field.removesuffix(".sku") + ".description"
    description = get_path(record, source_field)
    if not description or not isinstance(description, str):
        return None

    return VendorPattern(
        rule_type=RuleType.MAP,
        logic=create_map_rule(build_description_mapping(description, sku), source_field),
        confidence=MAPPING_CONFIDENCE,
        sample_evidence=description,
    )


def induce_rules(system_output: Invoice, human_correction: Invoice) -> InductionResult:
    """Synthesize vendor patterns and correction rules from a correction.

    Args:
        system_output: The invoice as the system produced it
        human_correction: The same invoice after human review

    Returns:
        The induced rules; empty when nothing actionable changed
    """
    result = InductionResult()
    original = system_output.to_record()
    changes = extract_changes(compute_diff(original, human_correction.to_record()))
    raw_text = system_output.raw_text

    for field, value in changes.items():
        if get_path(original, field) == value:
            continue

        is_number = isinstance(value, int | float) and not isinstance(value, bool)

        if _DATE_FIELD.search(field):
            pattern = induce_date_pattern(value, raw_text)
        elif _NUMERIC_FIELD.search(field) and is_number:
            rule = induce_arithmetic_rule(field, value, original)
            if rule:
                result.correction_rules.append(rule)
                continue
            pattern = induce_number_pattern(field, value, raw_text)
        elif "sku" in field:
            pattern = induce_mapping(field, value, original)
        elif "payment_terms" in field:
            pattern = induce_payment_terms_pattern(value, raw_text)
        elif "po_number" in field:
            pattern = induce_po_pattern(value, raw_text)
        else:
            pattern = induce_text_pattern(field, value, raw_text)

        if pattern:
            result.vendor_rules.append((field, pattern))
        else:
            logger.debug("no_rule_induced", field=field)

    logger.info(
        "rules_induced",
        invoice_id=human_correction.id,
        vendor_rules=[field for field, _ in result.vendor_rules],
        correction_rules=[rule.id for rule in result.correction_rules],
    )
    return result
