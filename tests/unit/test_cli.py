import json
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from invoicemind.engines.recall import pattern_rule_id
from invoicemind.integrations.memory_store import SQLiteMemoryStore
from invoicemind.main import app
from tests.utils import clean_cli_output

pytestmark = pytest.mark.unit

runner = CliRunner()

INVOICE = {
    "id": "INV-001",
    "vendor": "Supplier GmbH",
    "invoiceNumber": "2024-001",
    "date": "2024-01-15",
    "totalAmount": 119.0,
    "rawText": "Rechnung 2024-001\nLeistungsdatum: 01.12.2023\nGesamt: 119.00 EUR",
}


@pytest.fixture(autouse=True)
def mock_configure_logging():
    with patch("invoicemind.main.configure_logging") as mock:
        yield mock


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "memory.db"


@pytest.fixture
def invoice_file(tmp_path):
    path = tmp_path / "invoice.json"
    path.write_text(json.dumps(INVOICE), encoding="utf-8")
    return path


@pytest.fixture
def corrected_file(tmp_path):
    path = tmp_path / "corrected.json"
    path.write_text(json.dumps({**INVOICE, "serviceDate": "2023-12-01"}), encoding="utf-8")
    return path


def test_commands_exist():
    """Verify that all commands are listed in the help output."""
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    clean_stdout = clean_cli_output(result.stdout.lower())
    for command in ("process", "learn", "vendors", "vendor"):
        assert command in clean_stdout


def test_process_prints_output_contract(invoice_file, db_path):
    result = runner.invoke(app, ["process", str(invoice_file), "--db", str(db_path)])

    assert result.exit_code == 0
    clean_stdout = clean_cli_output(result.stdout)
    assert '"invoiceId":"INV-001"' in clean_stdout
    assert '"requiresHumanReview":true' in clean_stdout
    assert "Newvendor" in clean_stdout


def test_process_twice_reports_duplicate(invoice_file, db_path):
    runner.invoke(app, ["process", str(invoice_file), "--db", str(db_path)])
    result = runner.invoke(app, ["process", str(invoice_file), "--db", str(db_path)])

    assert result.exit_code == 0
    assert "Duplicateinvoicedetected" in clean_cli_output(result.stdout)


def test_process_exports_csv(invoice_file, db_path, tmp_path):
    export_path = tmp_path / "review.csv"
    result = runner.invoke(
        app,
        ["process", str(invoice_file), "--db", str(db_path), "--export", str(export_path)],
    )

    assert result.exit_code == 0
    assert export_path.exists()
    assert "INV-001" in export_path.read_text(encoding="utf-8")


def test_process_invalid_invoice(tmp_path, db_path):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"id": "INV-001"}), encoding="utf-8")

    result = runner.invoke(app, ["process", str(path), "--db", str(db_path)])

    assert result.exit_code == 2
    assert "Invalidinvoice" in clean_cli_output(result.output)


def test_process_unreadable_file(tmp_path, db_path):
    result = runner.invoke(
        app, ["process", str(tmp_path / "missing.json"), "--db", str(db_path)]
    )
    assert result.exit_code == 1
    assert "cannotread" in clean_cli_output(result.output)


def test_process_malformed_json(tmp_path, db_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")

    result = runner.invoke(app, ["process", str(path), "--db", str(db_path)])

    assert result.exit_code == 1
    assert "notvalidJSON" in clean_cli_output(result.output)


def test_learn_and_inspect_vendor(invoice_file, corrected_file, db_path):
    result = runner.invoke(
        app, ["learn", str(invoice_file), str(corrected_file), "--db", str(db_path)]
    )
    assert result.exit_code == 0
    clean_stdout = clean_cli_output(result.stdout)
    assert "Learned1vendorrule(s)" in clean_stdout
    assert "service_date" in clean_stdout
    assert "Learned0correctionrule(s)" in clean_stdout

    result = runner.invoke(app, ["vendors", "--db", str(db_path)])
    assert result.exit_code == 0
    assert "SupplierGmbH:service_date" in clean_cli_output(result.stdout)

    result = runner.invoke(app, ["vendor", "Supplier GmbH", "--db", str(db_path)])
    assert result.exit_code == 0
    assert '"vendorName":"SupplierGmbH"' in clean_cli_output(result.stdout)


def test_learn_records_feedback_for_processed_invoice(
    invoice_file, corrected_file, db_path, tmp_path
):
    runner.invoke(app, ["learn", str(invoice_file), str(corrected_file), "--db", str(db_path)])

    second = {**INVOICE, "id": "INV-002", "invoiceNumber": "2024-002"}
    second_file = tmp_path / "second.json"
    second_file.write_text(json.dumps(second), encoding="utf-8")
    second_corrected = tmp_path / "second_corrected.json"
    second_corrected.write_text(
        json.dumps({**second, "serviceDate": "2023-12-01"}), encoding="utf-8"
    )

    result = runner.invoke(app, ["process", str(second_file), "--db", str(db_path)])
    assert '"serviceDate":"2023-12-01"' in clean_cli_output(result.stdout)

    result = runner.invoke(
        app, ["learn", str(second_file), str(second_corrected), "--db", str(db_path)]
    )
    assert result.exit_code == 0

    with SQLiteMemoryStore(db_path) as store:
        vendor_id = store.find_vendor_exact("Supplier GmbH").id
        memory = store.get_resolution_memory(pattern_rule_id(vendor_id, "service_date"))
    assert memory.total_applications == 1
    assert memory.accepted_count == 1


def test_vendors_empty(db_path):
    result = runner.invoke(app, ["vendors", "--db", str(db_path)])
    assert result.exit_code == 0
    assert "Novendormemoriesfound." in clean_cli_output(result.stdout)


def test_unknown_vendor(db_path):
    result = runner.invoke(app, ["vendor", "Nobody", "--db", str(db_path)])
    assert result.exit_code == 1
    assert "nomemoryforvendor" in clean_cli_output(result.output)
