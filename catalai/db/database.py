"""SQLite State-Management für den Decision Core.

Verwaltet die persistente Speicherung von Matrix-Versionen, Fällen,
Lern-Analysen, Vorschlägen und Validierungsläufen.  Nutzt aiosqlite
für async Zugriff.

Schema-Migrationen erfolgen über CREATE TABLE IF NOT EXISTS.

Tabellen:
- matrix_versions: Unveränderliche Matrix-Versionen (JSON-Payload)
- cases: Fälle mit Klassifizierung, Auswertung und Feedback
- learning_analyses: Ergebnisse der Lern-Analysen
- learning_suggestions: Regelvorschläge inkl. Status
- validation_tests: Ergebnisse von Validierungsläufen
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from catalai.cases import CaseRecord, Feedback
from catalai.exceptions import NotFoundError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Schema-Definitionen
# ---------------------------------------------------------------------------

_SCHEMA_MATRIX_VERSIONS = """
CREATE TABLE IF NOT EXISTS matrix_versions (
    version TEXT PRIMARY KEY,
    major INTEGER NOT NULL,
    minor INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    created_by TEXT NOT NULL,
    active INTEGER NOT NULL DEFAULT 0,
    payload TEXT NOT NULL
);
"""

_SCHEMA_CASES = """
CREATE TABLE IF NOT EXISTS cases (
    case_id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    subject TEXT,
    category TEXT,
    has_feedback INTEGER NOT NULL DEFAULT 0,
    feedback_confirmed INTEGER,
    payload TEXT NOT NULL
);
"""

_SCHEMA_LEARNING_ANALYSES = """
CREATE TABLE IF NOT EXISTS learning_analyses (
    analysis_id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    trigger TEXT NOT NULL,
    payload TEXT NOT NULL
);
"""

_SCHEMA_LEARNING_SUGGESTIONS = """
CREATE TABLE IF NOT EXISTS learning_suggestions (
    suggestion_id TEXT PRIMARY KEY,
    analysis_id TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    payload TEXT NOT NULL
);
"""

_SCHEMA_VALIDATION_TESTS = """
CREATE TABLE IF NOT EXISTS validation_tests (
    test_id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    matrix_version TEXT NOT NULL,
    payload TEXT NOT NULL
);
"""

_INDEXES = [
    # Höchstens eine aktive Matrix-Version
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_mv_single_active "
    "ON matrix_versions(active) WHERE active = 1;",

    # Zeitbereichs-Abfragen für die Lern-Analyse
    "CREATE INDEX IF NOT EXISTS idx_cases_created_at "
    "ON cases(created_at);",

    "CREATE INDEX IF NOT EXISTS idx_ls_status "
    "ON learning_suggestions(status);",

    "CREATE INDEX IF NOT EXISTS idx_la_trigger "
    "ON learning_analyses(trigger, created_at);",
]


def to_db_timestamp(value: datetime) -> str:
    """Einheitliches ISO-Format in UTC, damit Stringvergleiche sortieren."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Database-Klasse
# ---------------------------------------------------------------------------

class Database:
    """Async SQLite-Datenbankzugriff mit Schema-Migration.

    Verwendung:
        db = Database(path)
        await db.initialize()
        ...
        await db.close()

    Oder als Context-Manager:
        async with Database(path) as db:
            ...
    """

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path) if isinstance(db_path, str) else db_path
        self._connection: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Erstellt Verbindung, setzt PRAGMAs und führt Schema-Migration aus."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(str(self._db_path))

        # WAL-Modus: Leser sehen während eines Schreibvorgangs den letzten Commit
        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA foreign_keys=ON")
        self._connection.row_factory = aiosqlite.Row

        await self._migrate()
        logger.info("Datenbank initialisiert: %s", self._db_path)

    async def close(self) -> None:
        """Schließt die Datenbankverbindung."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("Datenbankverbindung geschlossen")

    async def __aenter__(self) -> Database:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    @property
    def write_lock(self) -> asyncio.Lock:
        """Serialisiert Schreibvorgänge auf der gemeinsamen Connection.

        Ein commit() eines Schreibers würde sonst die offene Transaktion
        eines anderen mit abschließen.
        """
        return self._write_lock

    @property
    def connection(self) -> aiosqlite.Connection:
        """Gibt die aktive Verbindung zurück.

        Raises:
            RuntimeError: Wenn die Datenbank nicht initialisiert ist.
        """
        if self._connection is None:
            raise RuntimeError(
                "Datenbank nicht initialisiert – "
                "await db.initialize() aufrufen"
            )
        return self._connection

    # --- Schema-Migration ---

    async def _migrate(self) -> None:
        """Erstellt Tabellen und Indizes falls sie nicht existieren (idempotent)."""
        conn = self.connection

        for schema in (
            _SCHEMA_MATRIX_VERSIONS,
            _SCHEMA_CASES,
            _SCHEMA_LEARNING_ANALYSES,
            _SCHEMA_LEARNING_SUGGESTIONS,
            _SCHEMA_VALIDATION_TESTS,
        ):
            await conn.execute(schema)

        for idx_sql in _INDEXES:
            await conn.execute(idx_sql)

        await conn.commit()
        logger.debug("Schema-Migration abgeschlossen")

    # --- Fälle ---

    async def save_case(self, record: CaseRecord, *, keep_feedback: bool = False) -> None:
        """Fügt einen Fall ein oder ersetzt ihn (gleiche case_id).

        Mit keep_feedback=True bleibt bereits gespeichertes Feedback erhalten,
        wenn `record` selbst keines trägt (erneuter Pipeline-Lauf).
        """
        async with self._write_lock:
            if keep_feedback and record.feedback is None:
                existing = await self.get_case(record.case_id)
                if existing is not None and existing.feedback is not None:
                    logger.info("Fall %s neu klassifiziert, Feedback bleibt erhalten", record.case_id)
                    record = record.model_copy(update={"feedback": existing.feedback})
            await self._upsert_case(record)
        logger.debug("Fall gespeichert: %s", record.case_id)

    async def _upsert_case(self, record: CaseRecord) -> None:
        conn = self.connection
        await conn.execute(
            """
            INSERT INTO cases (
                case_id, created_at, subject, category,
                has_feedback, feedback_confirmed, payload
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(case_id) DO UPDATE SET
                subject = excluded.subject,
                category = excluded.category,
                has_feedback = excluded.has_feedback,
                feedback_confirmed = excluded.feedback_confirmed,
                payload = excluded.payload
            """,
            (
                record.case_id,
                to_db_timestamp(record.created_at),
                record.subject,
                record.classification.category.value if record.classification else None,
                1 if record.feedback is not None else 0,
                int(record.feedback.confirmed) if record.feedback is not None else None,
                record.model_dump_json(),
            ),
        )
        await conn.commit()

    async def get_case(self, case_id: str) -> Optional[CaseRecord]:
        cursor = await self.connection.execute(
            "SELECT payload FROM cases WHERE case_id = ?",
            (case_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return CaseRecord.model_validate_json(row["payload"])

    async def record_feedback(self, case_id: str, feedback: Feedback) -> CaseRecord:
        """Hängt Feedback an einen gespeicherten Fall.

        Raises:
            NotFoundError: Wenn der Fall nicht existiert.
        """
        record = await self.get_case(case_id)
        if record is None:
            raise NotFoundError("Fall", case_id)
        updated = record.model_copy(update={"feedback": feedback})
        await self.save_case(updated)
        logger.info(
            "Feedback gespeichert: case=%s, confirmed=%s, corrected=%s",
            case_id,
            feedback.confirmed,
            feedback.corrected_category.value if feedback.corrected_category else None,
        )
        return updated

    async def load_cases_in_range(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[CaseRecord]:
        """Lädt Fälle im Zeitraum [start, end], älteste zuerst."""
        clauses: list[str] = []
        params: list[Any] = []
        if start is not None:
            clauses.append("created_at >= ?")
            params.append(to_db_timestamp(start))
        if end is not None:
            clauses.append("created_at <= ?")
            params.append(to_db_timestamp(end))

        sql = "SELECT payload FROM cases"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at, case_id"

        cursor = await self.connection.execute(sql, params)
        rows = await cursor.fetchall()
        return [CaseRecord.model_validate_json(row["payload"]) for row in rows]
