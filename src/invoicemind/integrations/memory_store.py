"""SQLite persistence for vendor, correction and resolution memories.

The engines only depend on the ``MemoryStore`` protocol. ``SQLiteMemoryStore``
is the default implementation; its errors (``sqlite3.Error``) are not caught
anywhere in the processing pipeline.
"""

import json
import sqlite3
from pathlib import Path
from typing import Any, NamedTuple, Protocol

from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from invoicemind.logging_config import get_logger
from invoicemind.models import (
    CorrectionMemory,
    ResolutionHistoryItem,
    ResolutionMemory,
    VendorDefaults,
    VendorMemory,
    VendorPattern,
)
from invoicemind.utils.fuzzy import DEFAULT_THRESHOLD, rank_candidates

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS vendor_memories (
    id TEXT PRIMARY KEY,
    vendor_name TEXT NOT NULL,
    fingerprints TEXT NOT NULL,
    defaults TEXT,
    patterns TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_vendor_name ON vendor_memories(vendor_name);

CREATE TABLE IF NOT EXISTS correction_memories (
    id TEXT PRIMARY KEY,
    trigger_condition TEXT NOT NULL,
    action TEXT NOT NULL,
    description TEXT NOT NULL,
    confidence REAL NOT NULL,
    decay_factor REAL DEFAULT 0.95,
    created_at TEXT NOT NULL,
    last_used TEXT
);

CREATE TABLE IF NOT EXISTS resolution_memories (
    rule_id TEXT PRIMARY KEY,
    total_applications INTEGER DEFAULT 0,
    accepted_count INTEGER DEFAULT 0,
    rejected_count INTEGER DEFAULT 0,
    last_used TEXT,
    history TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS processed_invoices (
    fingerprint TEXT PRIMARY KEY,
    invoice_id TEXT NOT NULL,
    vendor TEXT NOT NULL,
    invoice_number TEXT NOT NULL,
    total_amount REAL,
    processed_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_invoice_id ON processed_invoices(invoice_id);
"""


class VendorMatch(NamedTuple):
    vendor: VendorMemory
    score: float


class MemoryStore(Protocol):
    """Persistence operations the engines rely on."""

    def find_vendor_exact(self, name: str) -> VendorMemory | None: ...

    def search_vendors_approx(
        self, query: str, threshold: float = DEFAULT_THRESHOLD
    ) -> list[VendorMatch]: ...

    def list_vendors(self) -> list[VendorMemory]: ...

    def get_vendor(self, vendor_id: str) -> VendorMemory | None: ...

    def upsert_vendor(self, memory: VendorMemory) -> None: ...

    def list_correction_memories(self) -> list[CorrectionMemory]: ...

    def upsert_correction_memory(self, memory: CorrectionMemory) -> None: ...

    def get_resolution_memory(self, rule_id: str) -> ResolutionMemory: ...

    def upsert_resolution_memory(self, memory: ResolutionMemory) -> None: ...

    def fingerprint_exists(self, fingerprint: str) -> bool: ...

    def record_processed_invoice(
        self,
        fingerprint: str,
        invoice_id: str,
        vendor: str,
        invoice_number: str,
        total_amount: float | None,
        timestamp: str,
    ) -> None: ...

    def close(self) -> None: ...


def _is_retryable_error(exception: BaseException) -> bool:
    """Retry only on transient lock contention.

    Retries on:
    - "database is locked" / "database is busy" (another writer holds the lock)

    Does NOT retry on:
    - Corrupt or missing database files
    - Schema or constraint errors
    """
    if isinstance(exception, sqlite3.OperationalError):
        message = str(exception).lower()
        return "locked" in message or "busy" in message
    return False


_write_retry = retry(
    retry=retry_if_exception(_is_retryable_error),
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
    reraise=True,
)


class SQLiteMemoryStore:
    """SQLite-backed ``MemoryStore``.

    Attributes:
        db_path: Database file path, or ":memory:" for a private in-memory store
    """

    def __init__(self, db_path: str | Path = ":memory:"):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(self.db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.executescript(SCHEMA)
        self._conn.commit()
        logger.debug("memory_store_opened", db_path=self.db_path)

    def __enter__(self) -> "SQLiteMemoryStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _write(self, sql: str, params: tuple[Any, ...]) -> None:
        with self._conn:
            self._conn.execute(sql, params)

    # Vendor memories

    @staticmethod
    def _vendor_from_row(row: sqlite3.Row) -> VendorMemory:
        patterns = {
            field: VendorPattern.model_validate(pattern)
            for field, pattern in json.loads(row["patterns"]).items()
        }
        return VendorMemory(
            id=row["id"],
            vendor_name=row["vendor_name"],
            fingerprints=json.loads(row["fingerprints"]),
            defaults=VendorDefaults.model_validate(json.loads(row["defaults"] or "{}")),
            patterns=patterns,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def find_vendor_exact(self, name: str) -> VendorMemory | None:
        row = self._conn.execute(
            "SELECT * FROM vendor_memories WHERE vendor_name = ? ORDER BY rowid LIMIT 1",
            (name,),
        ).fetchone()
        return self._vendor_from_row(row) if row else None

    def get_vendor(self, vendor_id: str) -> VendorMemory | None:
        row = self._conn.execute(
            "SELECT * FROM vendor_memories WHERE id = ?", (vendor_id,)
        ).fetchone()
        return self._vendor_from_row(row) if row else None

    def list_vendors(self) -> list[VendorMemory]:
        rows = self._conn.execute(
            "SELECT * FROM vendor_memories ORDER BY rowid"
        ).fetchall()
        return [self._vendor_from_row(row) for row in rows]

    def search_vendors_approx(
        self, query: str, threshold: float = DEFAULT_THRESHOLD
    ) -> list[VendorMatch]:
        candidates = (
            (vendor, vendor.vendor_name, vendor.fingerprints)
            for vendor in self.list_vendors()
        )
        return [
            VendorMatch(vendor, score)
            for vendor, score in rank_candidates(query, candidates, threshold)
        ]

    @_write_retry
    def upsert_vendor(self, memory: VendorMemory) -> None:
        patterns = {
            field: pattern.model_dump(mode="json")
            for field, pattern in memory.patterns.items()
        }
        # ON CONFLICT keeps the original rowid, which preserves insertion order
        self._write(
            """
            INSERT INTO vendor_memories
                (id, vendor_name, fingerprints, defaults, patterns, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                vendor_name = excluded.vendor_name,
                fingerprints = excluded.fingerprints,
                defaults = excluded.defaults,
                patterns = excluded.patterns,
                updated_at = excluded.updated_at
            """,
            (
                memory.id,
                memory.vendor_name,
                json.dumps(memory.fingerprints, ensure_ascii=False),
                memory.defaults.model_dump_json(exclude_none=True),
                json.dumps(patterns, ensure_ascii=False),
                memory.created_at,
                memory.updated_at,
            ),
        )

    # Correction memories

    def list_correction_memories(self) -> list[CorrectionMemory]:
        rows = self._conn.execute(
            "SELECT * FROM correction_memories ORDER BY rowid"
        ).fetchall()
        return [
            CorrectionMemory(
                id=row["id"],
                trigger_condition=json.loads(row["trigger_condition"]),
                action=json.loads(row["action"]),
                description=row["description"],
                confidence=row["confidence"],
                decay_factor=row["decay_factor"],
                created_at=row["created_at"],
                last_used=row["last_used"],
            )
            for row in rows
        ]

    @_write_retry
    def upsert_correction_memory(self, memory: CorrectionMemory) -> None:
        self._write(
            """
            INSERT OR REPLACE INTO correction_memories
                (id, trigger_condition, action, description, confidence,
                 decay_factor, created_at, last_used)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                memory.id,
                json.dumps(memory.trigger_condition),
                json.dumps(memory.action),
                memory.description,
                memory.confidence,
                memory.decay_factor,
                memory.created_at,
                memory.last_used,
            ),
        )

    # Resolution memories

    def get_resolution_memory(self, rule_id: str) -> ResolutionMemory:
        row = self._conn.execute(
            "SELECT * FROM resolution_memories WHERE rule_id = ?", (rule_id,)
        ).fetchone()
        if not row:
            return ResolutionMemory(rule_id=rule_id)

        return ResolutionMemory(
            rule_id=row["rule_id"],
            total_applications=row["total_applications"],
            accepted_count=row["accepted_count"],
            rejected_count=row["rejected_count"],
            last_used=row["last_used"],
            history=[
                ResolutionHistoryItem.model_validate(item)
                for item in json.loads(row["history"])
            ],
        )

    @_write_retry
    def upsert_resolution_memory(self, memory: ResolutionMemory) -> None:
        history = [item.model_dump(mode="json") for item in memory.history]
        self._write(
            """
            INSERT OR REPLACE INTO resolution_memories
                (rule_id, total_applications, accepted_count, rejected_count,
                 last_used, history)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                memory.rule_id,
                memory.total_applications,
                memory.accepted_count,
                memory.rejected_count,
                memory.last_used,
                json.dumps(history),
            ),
        )

    # Duplicate detection

    def fingerprint_exists(self, fingerprint: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM processed_invoices WHERE fingerprint = ?", (fingerprint,)
        ).fetchone()
        return row is not None

    @_write_retry
    def record_processed_invoice(
        self,
        fingerprint: str,
        invoice_id: str,
        vendor: str,
        invoice_number: str,
        total_amount: float | None,
        timestamp: str,
    ) -> None:
        self._write(
            """
            INSERT OR REPLACE INTO processed_invoices
                (fingerprint, invoice_id, vendor, invoice_number, total_amount,
                 processed_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (fingerprint, invoice_id, vendor, invoice_number, total_amount, timestamp),
        )

    def close(self) -> None:
        self._conn.close()
        logger.debug("memory_store_closed", db_path=self.db_path)
