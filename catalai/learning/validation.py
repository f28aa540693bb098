"""Validierungstest: aktuelle Matrix gegen frühere Fehlklassifizierungen.

Es läuft nur der Regel-Evaluator, nicht die LLM-Pipeline.  Für jeden Fall
der Stichprobe werden die damals extrahierten Attribute und die damalige
LLM-Klassifizierung erneut gegen die *aktive* Matrix ausgewertet.

Ergebnis pro Fall:
- falsch → richtig: improved
- richtig → falsch: worsened
- sonst: unchanged
"""

from __future__ import annotations

import math
import random
from datetime import datetime
from typing import Optional

from catalai.cases import CaseRecord
from catalai.db.database import Database
from catalai.learning.models import (
    ValidationCaseResult,
    ValidationOutcome,
    ValidationTestResult,
)
from catalai.learning.storage import LearningStorage
from catalai.logging_config import get_logger
from catalai.matrix.evaluator import evaluate
from catalai.matrix.models import Category
from catalai.matrix.store import MatrixStore

logger = get_logger("learning")


def sample_size(population: int, ratio: float = 0.1, min_sample: int = 10) -> int:
    """max(min_sample, ceil(ratio × n)), höchstens n."""
    if population <= 0:
        return 0
    return min(population, max(min_sample, math.ceil(ratio * population)))


def classify_outcome(
    correct: Category,
    original: Category,
    new: Category,
) -> ValidationOutcome:
    if original != correct and new == correct:
        return ValidationOutcome.IMPROVED
    if original == correct and new != correct:
        return ValidationOutcome.WORSENED
    return ValidationOutcome.UNCHANGED


class MatrixValidator:
    """Führt Validierungstests aus und speichert das Ergebnis.

    Verwendung:
        validator = MatrixValidator(db, storage, store, ratio=0.1, min_sample=10)
        result = await validator.run()
    """

    def __init__(
        self,
        database: Database,
        storage: LearningStorage,
        matrix_store: MatrixStore,
        ratio: float = 0.1,
        min_sample: int = 10,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._db = database
        self._storage = storage
        self._store = matrix_store
        self._ratio = ratio
        self._min_sample = min_sample
        self._rng = rng or random.Random()

    async def run(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> ValidationTestResult:
        matrix = await self._store.get_active()
        cases = await self._db.load_cases_in_range(start, end)
        population = [c for c in cases if c.is_misclassified and c.correct_category is not None]

        size = sample_size(len(population), self._ratio, self._min_sample)
        sample = self._rng.sample(population, size) if size else []

        details: list[ValidationCaseResult] = []
        skipped = 0
        for case in sample:
            result = self._revalidate(case, matrix)
            if result is None:
                skipped += 1
                continue
            details.append(result)

        counts = {outcome: 0 for outcome in ValidationOutcome}
        for detail in details:
            counts[detail.outcome] += 1

        result = ValidationTestResult(
            matrix_version=matrix.version,
            population_size=len(population),
            sample_size=size,
            improved=counts[ValidationOutcome.IMPROVED],
            unchanged=counts[ValidationOutcome.UNCHANGED],
            worsened=counts[ValidationOutcome.WORSENED],
            skipped=skipped,
            improvement_rate=(
                counts[ValidationOutcome.IMPROVED] / len(details) * 100 if details else 0.0
            ),
            details=details,
        )
        await self._storage.save_validation_test(result)

        logger.info(
            "Validierung Matrix %s: %d/%d Fälle, %d besser, %d gleich, "
            "%d schlechter, %d übersprungen (%.1f%% Verbesserung)",
            matrix.version,
            size,
            len(population),
            result.improved,
            result.unchanged,
            result.worsened,
            skipped,
            result.improvement_rate,
        )
        return result

    @staticmethod
    def _revalidate(case: CaseRecord, matrix) -> Optional[ValidationCaseResult]:
        # Ohne gespeicherte Auswertung fehlen die extrahierten Attribute
        if case.evaluation is None:
            return None
        evaluation = evaluate(
            matrix,
            case.evaluation.extracted_attributes,
            case.evaluation.original_classification,
        )
        correct = case.correct_category
        original = case.evaluation.final_classification.category
        new = evaluation.final_classification.category
        return ValidationCaseResult(
            case_id=case.case_id,
            correct_category=correct,
            original_category=original,
            new_category=new,
            outcome=classify_outcome(correct, original, new),  # type: ignore[arg-type]
        )
