import json
from pathlib import Path
from typing import Any

import typer
from dotenv import load_dotenv

from invoicemind.agent import InvoiceAgent, InvoiceValidationError
from invoicemind.config import get_settings
from invoicemind.integrations.local_export import LocalExporter
from invoicemind.logging_config import configure_logging

load_dotenv()

app = typer.Typer(no_args_is_help=True)


@app.callback(invoke_without_command=True)
def callback(ctx: typer.Context):
    """invoicemind CLI tool."""
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


def read_json(path: Path) -> dict[str, Any]:
    """Load a JSON object from ``path``, exiting with code 1 on failure."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        typer.echo(f"Error: cannot read {path}: {e}", err=True)
        raise typer.Exit(code=1) from e
    except json.JSONDecodeError as e:
        typer.echo(f"Error: {path} is not valid JSON: {e}", err=True)
        raise typer.Exit(code=1) from e

    if not isinstance(data, dict):
        typer.echo(f"Error: {path} must contain a JSON object", err=True)
        raise typer.Exit(code=1)
    return data


def open_agent(db: Path | None) -> InvoiceAgent:
    return InvoiceAgent(db_path=db or get_settings().db_path)


DB_OPTION = typer.Option(None, "--db", "-d", help="SQLite memory database path")


@app.command()
def process(
    invoice: Path = typer.Argument(..., help="Invoice JSON file"),
    db: Path | None = DB_OPTION,
    export: Path | None = typer.Option(
        None, "--export", "-e", help="Append the result to this review-queue CSV"
    ),
):
    """Process an invoice and print the output contract."""
    data = read_json(invoice)

    with open_agent(db) as agent:
        try:
            output = agent.process(data)
        except InvoiceValidationError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(code=2) from e

    typer.echo(output.model_dump_json(by_alias=True, indent=2))

    if export:
        LocalExporter().export([output], export)
        typer.echo(f"Appended result to {export}", err=True)


@app.command()
def learn(
    system_output: Path = typer.Argument(..., help="System output invoice JSON"),
    corrected: Path = typer.Argument(..., help="Human-corrected invoice JSON"),
    db: Path | None = DB_OPTION,
):
    """Learn rules from a human correction."""
    system_data = read_json(system_output)
    corrected_data = read_json(corrected)

    with open_agent(db) as agent:
        try:
            result = agent.learn(system_data, corrected_data)
        except InvoiceValidationError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(code=2) from e

    typer.echo(f"Learned {len(result.vendor_rules)} vendor rule(s)")
    for field, pattern in result.vendor_rules:
        typer.echo(f"  - {field} ({pattern.rule_type}, {pattern.confidence:.2f})")
    typer.echo(f"Learned {len(result.correction_rules)} correction rule(s)")
    for rule in result.correction_rules:
        typer.echo(f"  - {rule.id}: {rule.description}")


@app.command()
def vendors(db: Path | None = DB_OPTION):
    """List all vendor memories."""
    with open_agent(db) as agent:
        memories = agent.get_all_vendor_memories()

    if not memories:
        typer.echo("No vendor memories found.")
        return

    for memory in memories:
        fields = ", ".join(sorted(memory.patterns)) or "-"
        typer.echo(f"{memory.vendor_name}: {fields}")


@app.command()
def vendor(
    name: str = typer.Argument(..., help="Exact vendor name"),
    db: Path | None = DB_OPTION,
):
    """Show one vendor memory as JSON."""
    with open_agent(db) as agent:
        memory = agent.get_vendor_memory(name)

    if memory is None:
        typer.echo(f"Error: no memory for vendor {name!r}", err=True)
        raise typer.Exit(code=1)

    typer.echo(memory.model_dump_json(by_alias=True, indent=2))


def main():
    app()


if __name__ == "__main__":
    main()
