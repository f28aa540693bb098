"""Persistenz der Matrix-Versionen in SQLite.

Jede Version wird einmal geschrieben und danach nie verändert.  Das
active-Flag ist ausschließlich in der Spalte `active` maßgeblich, der
JSON-Payload enthält den Stand zum Zeitpunkt der Veröffentlichung.

Versionswechsel (alte deaktivieren, neue aktiv einfügen) laufen in einer
einzigen BEGIN-IMMEDIATE-Transaktion.  Leser sehen dadurch nie null oder
zwei aktive Versionen.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import aiosqlite

from catalai.db.database import Database, to_db_timestamp
from catalai.matrix.models import (
    CreatedBy,
    DecisionMatrix,
    MatrixDraft,
    next_version,
)

logger = logging.getLogger(__name__)


class MatrixRepository(Protocol):
    """Schnittstelle des Persistenz-Kollaborators für Matrix-Versionen."""

    async def get_active_matrix(self) -> Optional[DecisionMatrix]: ...

    async def get_matrix_version(self, version: str) -> Optional[DecisionMatrix]: ...

    async def list_matrix_versions(self) -> list[str]: ...

    async def save_new_matrix_version(
        self,
        draft: MatrixDraft,
        created_by: CreatedBy,
        major_bump: bool = False,
    ) -> DecisionMatrix: ...


# ---------------------------------------------------------------------------
# Storage-Klasse
# ---------------------------------------------------------------------------

class SqliteMatrixRepository:
    """Matrix-Versionen in der Tabelle matrix_versions.

    Verwendung:
        repository = SqliteMatrixRepository(database)
        matrix = await repository.save_new_matrix_version(draft, CreatedBy.ADMIN)
        active = await repository.get_active_matrix()
    """

    def __init__(self, database: Database) -> None:
        self._db = database

    @property
    def _conn(self) -> aiosqlite.Connection:
        """Kurzschreibweise für die DB-Connection."""
        return self._db.connection

    # =========================================================================
    # Lesen
    # =========================================================================

    async def get_active_matrix(self) -> Optional[DecisionMatrix]:
        # Gleiche Connection wie der Schreiber: ohne Lock wäre der
        # Zwischenstand einer laufenden Transaktion sichtbar
        async with self._db.write_lock:
            cursor = await self._conn.execute(
                "SELECT payload, active FROM matrix_versions WHERE active = 1",
            )
            row = await cursor.fetchone()
        return self._row_to_matrix(row) if row else None

    async def get_matrix_version(self, version: str) -> Optional[DecisionMatrix]:
        async with self._db.write_lock:
            cursor = await self._conn.execute(
                "SELECT payload, active FROM matrix_versions WHERE version = ?",
                (version,),
            )
            row = await cursor.fetchone()
        return self._row_to_matrix(row) if row else None

    async def list_matrix_versions(self) -> list[str]:
        """Alle Versionsnummern, numerisch aufsteigend sortiert."""
        cursor = await self._conn.execute(
            "SELECT version FROM matrix_versions ORDER BY major, minor",
        )
        rows = await cursor.fetchall()
        return [row["version"] for row in rows]

    # =========================================================================
    # Schreiben
    # =========================================================================

    async def save_new_matrix_version(
        self,
        draft: MatrixDraft,
        created_by: CreatedBy,
        major_bump: bool = False,
    ) -> DecisionMatrix:
        """Vergibt die nächste Versionsnummer und aktiviert die neue Version.

        Die Nummer wird aus der höchsten vorhandenen Version abgeleitet,
        nicht aus der aktiven.
        """
        async with self._db.write_lock:
            conn = self._conn
            await conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = await conn.execute(
                    "SELECT version FROM matrix_versions "
                    "ORDER BY major DESC, minor DESC LIMIT 1",
                )
                latest = await cursor.fetchone()
                version = next_version(latest["version"] if latest else None, major_bump)

                matrix = DecisionMatrix(
                    version=version,
                    created_by=created_by,
                    description=draft.description,
                    attributes=list(draft.attributes),
                    rules=list(draft.rules),
                    active=True,
                )
                major, minor = matrix.version_key

                await conn.execute("UPDATE matrix_versions SET active = 0 WHERE active = 1")
                await conn.execute(
                    """
                    INSERT INTO matrix_versions (
                        version, major, minor, created_at, created_by, active, payload
                    ) VALUES (?, ?, ?, ?, ?, 1, ?)
                    """,
                    (
                        version,
                        major,
                        minor,
                        to_db_timestamp(matrix.created_at),
                        created_by.value,
                        matrix.to_file_json(indent=None),
                    ),
                )
                await conn.commit()
            except BaseException:
                await conn.rollback()
                raise

        logger.info(
            "Matrix-Version %s gespeichert und aktiviert (%s, %d Attribute, %d Regeln)",
            version,
            created_by.value,
            len(matrix.attributes),
            len(matrix.rules),
        )
        return matrix

    # =========================================================================
    # Hilfsmethoden
    # =========================================================================

    @staticmethod
    def _row_to_matrix(row: aiosqlite.Row) -> DecisionMatrix:
        matrix = DecisionMatrix.from_file_json(row["payload"])
        return matrix.model_copy(update={"active": bool(row["active"])})
