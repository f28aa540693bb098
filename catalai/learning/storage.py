"""CRUD für Lern-Analysen, Vorschläge und Validierungsläufe.

Alle Datensätze werden als JSON-Payload gespeichert, Status und
Zeitstempel zusätzlich als Spalten für Abfragen.

Statuswechsel von Vorschlägen laufen als bedingtes UPDATE
(`WHERE status = <erwarteter Status>`).  Hat ein paralleler Aufruf den
Status bereits geändert, schlägt der Wechsel mit WorkflowViolationError
fehl statt ihn still zu überschreiben.
"""

from __future__ import annotations

import logging
from typing import Optional

import aiosqlite

from catalai.db.database import Database, to_db_timestamp
from catalai.exceptions import WorkflowViolationError
from catalai.learning.models import (
    AnalysisTrigger,
    LearningAnalysis,
    LearningSuggestion,
    SuggestionStatus,
    ValidationTestResult,
)
from catalai.matrix.models import utcnow

logger = logging.getLogger(__name__)


class LearningStorage:
    """Async CRUD für die Lern-Tabellen.

    Verwendung:
        storage = LearningStorage(database)
        await storage.save_analysis(analysis)
        pending = await storage.list_suggestions(SuggestionStatus.PENDING)
    """

    def __init__(self, database: Database) -> None:
        self._db = database

    @property
    def _conn(self) -> aiosqlite.Connection:
        """Kurzschreibweise für die DB-Connection."""
        return self._db.connection

    # =========================================================================
    # Analysen
    # =========================================================================

    async def save_analysis(self, analysis: LearningAnalysis) -> None:
        async with self._db.write_lock:
            await self._conn.execute(
                """
                INSERT INTO learning_analyses (analysis_id, created_at, trigger, payload)
                VALUES (?, ?, ?, ?)
                """,
                (
                    analysis.analysis_id,
                    to_db_timestamp(analysis.created_at),
                    analysis.trigger.value,
                    analysis.model_dump_json(),
                ),
            )
            await self._conn.commit()
        logger.debug("Analyse gespeichert: %s", analysis.analysis_id)

    async def get_analysis(self, analysis_id: str) -> Optional[LearningAnalysis]:
        cursor = await self._conn.execute(
            "SELECT payload FROM learning_analyses WHERE analysis_id = ?",
            (analysis_id,),
        )
        row = await cursor.fetchone()
        return LearningAnalysis.model_validate_json(row["payload"]) if row else None

    async def get_last_analysis(
        self,
        trigger: AnalysisTrigger | None = None,
    ) -> Optional[LearningAnalysis]:
        """Jüngste Analyse, optional nur eines Auslösers."""
        if trigger is None:
            cursor = await self._conn.execute(
                "SELECT payload FROM learning_analyses ORDER BY created_at DESC LIMIT 1",
            )
        else:
            cursor = await self._conn.execute(
                """
                SELECT payload FROM learning_analyses
                WHERE trigger = ?
                ORDER BY created_at DESC LIMIT 1
                """,
                (trigger.value,),
            )
        row = await cursor.fetchone()
        return LearningAnalysis.model_validate_json(row["payload"]) if row else None

    async def list_analyses(self, limit: int = 20) -> list[LearningAnalysis]:
        cursor = await self._conn.execute(
            "SELECT payload FROM learning_analyses ORDER BY created_at DESC LIMIT ?",
            (limit,),
        )
        rows = await cursor.fetchall()
        return [LearningAnalysis.model_validate_json(row["payload"]) for row in rows]

    # =========================================================================
    # Vorschläge
    # =========================================================================

    async def insert_suggestion(self, suggestion: LearningSuggestion) -> None:
        async with self._db.write_lock:
            await self._conn.execute(
                """
                INSERT INTO learning_suggestions (
                    suggestion_id, analysis_id, status, created_at, updated_at, payload
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    suggestion.suggestion_id,
                    suggestion.analysis_id,
                    suggestion.status.value,
                    to_db_timestamp(suggestion.created_at),
                    to_db_timestamp(utcnow()),
                    suggestion.model_dump_json(),
                ),
            )
            await self._conn.commit()

    async def update_suggestion(
        self,
        suggestion: LearningSuggestion,
        expected_status: SuggestionStatus,
    ) -> None:
        """Schreibt einen Statuswechsel, nur wenn der alte Status noch gilt.

        Raises:
            WorkflowViolationError: Status wurde zwischenzeitlich geändert.
        """
        async with self._db.write_lock:
            cursor = await self._conn.execute(
                """
                UPDATE learning_suggestions
                SET status = ?, updated_at = ?, payload = ?
                WHERE suggestion_id = ? AND status = ?
                """,
                (
                    suggestion.status.value,
                    to_db_timestamp(utcnow()),
                    suggestion.model_dump_json(),
                    suggestion.suggestion_id,
                    expected_status.value,
                ),
            )
            await self._conn.commit()
        if cursor.rowcount == 0:
            raise WorkflowViolationError(
                "Vorschlag",
                suggestion.suggestion_id,
                expected_status.value,
                suggestion.status.value,
            )

    async def get_suggestion(self, suggestion_id: str) -> Optional[LearningSuggestion]:
        cursor = await self._conn.execute(
            "SELECT payload FROM learning_suggestions WHERE suggestion_id = ?",
            (suggestion_id,),
        )
        row = await cursor.fetchone()
        return LearningSuggestion.model_validate_json(row["payload"]) if row else None

    async def list_suggestions(
        self,
        status: SuggestionStatus | None = None,
    ) -> list[LearningSuggestion]:
        """Vorschläge, neueste zuerst."""
        if status is None:
            cursor = await self._conn.execute(
                "SELECT payload FROM learning_suggestions ORDER BY created_at DESC",
            )
        else:
            cursor = await self._conn.execute(
                """
                SELECT payload FROM learning_suggestions
                WHERE status = ?
                ORDER BY created_at DESC
                """,
                (status.value,),
            )
        rows = await cursor.fetchall()
        return [LearningSuggestion.model_validate_json(row["payload"]) for row in rows]

    # =========================================================================
    # Validierungsläufe
    # =========================================================================

    async def save_validation_test(self, result: ValidationTestResult) -> None:
        async with self._db.write_lock:
            await self._conn.execute(
                """
                INSERT INTO validation_tests (test_id, created_at, matrix_version, payload)
                VALUES (?, ?, ?, ?)
                """,
                (
                    result.test_id,
                    to_db_timestamp(result.created_at),
                    result.matrix_version,
                    result.model_dump_json(),
                ),
            )
            await self._conn.commit()

    async def list_validation_tests(self, limit: int = 20) -> list[ValidationTestResult]:
        cursor = await self._conn.execute(
            "SELECT payload FROM validation_tests ORDER BY created_at DESC LIMIT ?",
            (limit,),
        )
        rows = await cursor.fetchall()
        return [ValidationTestResult.model_validate_json(row["payload"]) for row in rows]
