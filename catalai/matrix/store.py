"""Matrix Store: aktive Version, Historie und Versionierung.

Jede Änderung erzeugt eine neue Version N+1, die vorherige wird
deaktiviert und bleibt unverändert lesbar.  Existiert noch keine
Version, wird beim ersten Zugriff einmalig eine Basis-Matrix vom LLM
generiert und als "1.0" gespeichert.

Retries und Timeouts übernimmt der Aufrufer (Pipeline bzw. Service),
nicht der Store.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from catalai.exceptions import MatrixValidationError, NotFoundError
from catalai.logging_config import get_logger
from catalai.matrix.models import CreatedBy, DecisionMatrix, MatrixDraft
from catalai.matrix.storage import MatrixRepository

if TYPE_CHECKING:
    from catalai.llm.client import LLMCollaborator

logger = get_logger("matrix")


@dataclass(frozen=True)
class MatrixSaveResult:
    """Ergebnis eines Speichervorgangs.

    conflict=True bedeutet: der Entwurf basierte auf einer Version, die
    beim Speichern nicht mehr aktiv war.  Gespeichert wird trotzdem
    (last-writer-wins), der Konflikt bleibt aber sichtbar.
    """

    matrix: DecisionMatrix
    previous_version: Optional[str]
    base_version: Optional[str]
    conflict: bool = False


class MatrixStore:
    """Zugriff auf versionierte Decision Matrices.

    Verwendung:
        store = MatrixStore(SqliteMatrixRepository(db), llm=llm_client)
        matrix = await store.get_active()
        result = await store.save(draft, base_version=matrix.version)
    """

    def __init__(
        self,
        repository: MatrixRepository,
        llm: Optional["LLMCollaborator"] = None,
    ) -> None:
        self._repository = repository
        self._llm = llm
        self._bootstrap_lock = asyncio.Lock()

    # --- Lesen ---

    async def get_active(self) -> DecisionMatrix:
        """Aktive Version, bei leerem Store wird einmalig generiert.

        Raises:
            NotFoundError: Kein Eintrag und kein LLM für die Generierung.
        """
        matrix = await self._repository.get_active_matrix()
        if matrix is not None:
            return matrix
        return await self.generate_initial()

    async def get_version(self, version: str) -> DecisionMatrix:
        """Liest eine bestimmte Version.

        Raises:
            NotFoundError: Wenn die Version nicht existiert.
        """
        matrix = await self._repository.get_matrix_version(version)
        if matrix is None:
            raise NotFoundError("Matrix-Version", version)
        return matrix

    async def list_versions(self) -> list[str]:
        return await self._repository.list_matrix_versions()

    # --- Schreiben ---

    async def generate_initial(self) -> DecisionMatrix:
        """Erzeugt Version 1.0 per LLM, falls noch keine Version existiert.

        Parallele Aufrufe generieren nur einmal.
        """
        async with self._bootstrap_lock:
            existing = await self._repository.get_active_matrix()
            if existing is not None:
                return existing
            if await self._repository.list_matrix_versions():
                # Versionen vorhanden, aber keine aktiv: darf nicht vorkommen
                raise NotFoundError("Matrix-Version", "active")
            if self._llm is None:
                raise NotFoundError("Matrix-Version", "active")

            logger.info("Keine Matrix vorhanden – Basis-Matrix wird generiert")
            draft = await self._llm.generate_initial_matrix()
            self._validate(draft)
            matrix = await self._repository.save_new_matrix_version(draft, CreatedBy.AI)
            logger.info(
                "Basis-Matrix %s generiert: %d Attribute, %d Regeln",
                matrix.version,
                len(matrix.attributes),
                len(matrix.rules),
            )
            return matrix

    async def save(
        self,
        draft: MatrixDraft,
        *,
        created_by: CreatedBy = CreatedBy.ADMIN,
        base_version: Optional[str] = None,
        major_bump: bool = False,
    ) -> MatrixSaveResult:
        """Speichert einen Entwurf als neue aktive Version.

        Args:
            draft: Neue Attribute und Regeln.
            created_by: ai oder admin.
            base_version: Version, auf der der Entwurf beruht (Konflikterkennung).
            major_bump: "1.4" → "2.0" statt "1.5".

        Raises:
            MatrixValidationError: Doppelte Attributnamen oder Regel-IDs.
        """
        self._validate(draft)
        previous = await self._repository.get_active_matrix()
        previous_version = previous.version if previous else None
        conflict = base_version is not None and base_version != previous_version

        if conflict:
            logger.warning(
                "Versionskonflikt: Entwurf basiert auf %s, aktiv ist %s – "
                "wird trotzdem als neue Version gespeichert",
                base_version,
                previous_version,
            )
            # Konflikt bleibt in der gespeicherten Version nachvollziehbar
            note = f"[Versionskonflikt: basiert auf {base_version}, aktiv war {previous_version or '-'}]"
            draft = draft.model_copy(
                update={"description": f"{draft.description} {note}".strip()},
            )

        matrix = await self._repository.save_new_matrix_version(
            draft,
            created_by,
            major_bump=major_bump,
        )
        logger.info(
            "Matrix %s → %s (%s)%s",
            previous_version or "-",
            matrix.version,
            created_by.value,
            " [Konflikt]" if conflict else "",
        )
        return MatrixSaveResult(
            matrix=matrix,
            previous_version=previous_version,
            base_version=base_version,
            conflict=conflict,
        )

    @staticmethod
    def _validate(draft: MatrixDraft) -> None:
        names = [a.name for a in draft.attributes]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise MatrixValidationError(
                f"Doppelte Attributnamen: {', '.join(sorted(duplicates))}",
                stage="matrix_save",
            )
        rule_ids = [r.rule_id for r in draft.rules]
        duplicate_ids = {r for r in rule_ids if rule_ids.count(r) > 1}
        if duplicate_ids:
            raise MatrixValidationError(
                f"Doppelte Regel-IDs: {', '.join(sorted(duplicate_ids))}",
                stage="matrix_save",
            )
        declared = set(names)
        for rule in draft.rules:
            for condition in rule.conditions:
                if condition.attribute not in declared:
                    logger.warning(
                        "Regel '%s' referenziert nicht deklariertes Attribut '%s'",
                        rule.rule_id,
                        condition.attribute,
                    )
