"""Trigger-Logik für die automatische Lern-Analyse.

Auslöser: Nach jedem Feedback wird die Zustimmungsquote neu berechnet.
Liegt sie für mindestens eine Kategorie (mit vorhandenem Feedback) unter
der Schwelle, wird eine automatische Analyse gestartet.

Mindestabstand: learning_min_interval_h zwischen automatischen Läufen.
Manuelle Analysen sind davon nicht betroffen.
"""

from __future__ import annotations

from datetime import datetime, timezone

from catalai.learning.models import AgreementReport, AnalysisTrigger
from catalai.learning.storage import LearningStorage
from catalai.logging_config import get_logger

logger = get_logger("learning")


class LearningTrigger:
    """Entscheidet, ob eine automatische Analyse fällig ist.

    Die Analyse selbst wird NICHT hier durchgeführt.

    Verwendung:
        trigger = LearningTrigger(storage, threshold=0.8, min_interval_h=24)
        should_run, reason = await trigger.should_run(report)
    """

    def __init__(
        self,
        storage: LearningStorage,
        threshold: float = 0.8,
        min_interval_h: int = 24,
    ) -> None:
        self._storage = storage
        self._threshold = threshold
        self._min_interval_h = min_interval_h

    @property
    def threshold(self) -> float:
        return self._threshold

    async def should_run(self, report: AgreementReport) -> tuple[bool, str]:
        """Prüft Schwellwert und Mindestabstand.

        Returns:
            Tuple (should_run, reason) mit menschenlesbarer Begründung.
        """
        # Kaltstart: ohne Feedback gilt überall 1.0
        if report.total_with_feedback == 0:
            return (False, "Noch kein Feedback vorhanden")

        below = report.categories_below(self._threshold)
        if not below:
            return (
                False,
                f"Zustimmung ausreichend (gesamt {report.overall:.2f}, "
                f"Schwelle {self._threshold:.2f})",
            )

        last = await self._storage.get_last_analysis(AnalysisTrigger.AUTOMATIC)
        if last is not None:
            last_at = last.created_at
            if last_at.tzinfo is None:
                last_at = last_at.replace(tzinfo=timezone.utc)
            hours_since = (datetime.now(timezone.utc) - last_at).total_seconds() / 3600
            if hours_since < self._min_interval_h:
                return (
                    False,
                    f"Mindestabstand nicht erreicht: "
                    f"{hours_since:.1f}h / {self._min_interval_h}h",
                )

        names = ", ".join(
            f"{category.value}={report.per_category[category]:.2f}" for category in below
        )
        logger.info(
            "Lern-Trigger: Zustimmung unter %.2f für %s",
            self._threshold,
            names,
        )
        return (True, f"Zustimmung unter Schwelle: {names}")
