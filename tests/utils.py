import re
from typing import Any

from invoicemind.models import Invoice


def clean_cli_output(output: str) -> str:
    """
    Remove ANSI escape codes, Rich formatting characters, whitespace, and newlines
    from CLI output to make assertions robust against terminal wrapping.
    """
    # 1. Remove ANSI escape codes
    ansi_escape = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
    output = ansi_escape.sub("", output)

    # 2. Remove:
    # \s - all whitespace (space, tab, newline, etc.)
    # │, ╭, ╮, ╰, ╯, ─ - Rich box characters
    return re.sub(r"[\s│╭╮╰╯─]", "", output)


def make_invoice(**overrides: Any) -> Invoice:
    """Build a minimal valid invoice; keyword arguments override fields."""
    fields: dict[str, Any] = {
        "id": "INV-001",
        "vendor": "Supplier GmbH",
        "invoice_number": "2024-001",
        "date": "2024-01-15",
        "total_amount": 119.0,
        "raw_text": "Rechnung 2024-001\nGesamt: 119.00 EUR",
    }
    fields.update(overrides)
    return Invoice(**fields)
