"""Local CSV export of processed invoices (the review queue)."""

import csv
import fcntl
import os
from pathlib import Path

from invoicemind.models import OutputContract

CSV_HEADER = [
    "invoice_id",
    "vendor",
    "invoice_number",
    "date",
    "total_amount",
    "currency",
    "confidence",
    "requires_human_review",
    "reasoning",
    "processed_at",
]


def contract_to_row(output: OutputContract) -> list[str]:
    """Flatten an output contract into one CSV row matching ``CSV_HEADER``."""
    total = f"{output.total_amount:.2f}" if output.total_amount is not None else ""
    return [
        output.invoice_id,
        output.vendor,
        output.invoice_number,
        output.date or "",
        total,
        output.currency or "",
        f"{output.confidence:.2f}",
        "yes" if output.requires_human_review else "no",
        output.reasoning,
        output.processed_at,
    ]


class LocalExporter:
    """Exporter for appending output contracts to a local CSV file."""

    def export(self, outputs: list[OutputContract], path: Path) -> None:
        """Append output contracts to a CSV file.

        The file and its parent directory are created on first use, and the
        header is written only while the file is still empty.

        Args:
            outputs: Output contracts to append, in order
            path: Path to the CSV file to write/append to

        Raises:
            PermissionError: If the file cannot be written due to permissions
            OSError: If there are filesystem-related errors
        """
        if not outputs:
            return

        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, mode="a", encoding="utf-8", newline="") as f:
            # Exclusive lock so concurrent exports never interleave rows
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                # Size must be checked after acquiring the lock
                is_new_file = os.fstat(f.fileno()).st_size == 0

                writer = csv.writer(f)
                if is_new_file:
                    writer.writerow(CSV_HEADER)

                for output in outputs:
                    writer.writerow(contract_to_row(output))
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
