"""Lern-Analyse: Zustimmungsquoten, Fehlerpaare, Muster und Vorschläge.

Ablauf eines Analyse-Laufs:
1. Fälle mit Klassifizierung und Feedback aus SQLite laden
2. Zustimmungsquote gesamt und pro Kategorie berechnen (lokal, kein LLM)
3. Fehlklassifizierungen nach (von → nach) bündeln
4. Lokale Muster-Heuristiken
5. Nur wenn Fehlklassifizierungen existieren: LLM-Zusammenfassung und
   Regelvorschläge (jeweils optional, Fehler werden geloggt)
6. Vorschläge und Analyse speichern

Der Kaltstart (kein Feedback) liefert überall 1.0 und keine Vorschläge.
"""

from __future__ import annotations

import time
import uuid
from collections import Counter, defaultdict
from datetime import datetime
from typing import Any, Optional, Sequence

from catalai.cases import CaseRecord
from catalai.db.database import Database
from catalai.exceptions import NotFoundError, RetryableTurnError
from catalai.learning.models import (
    AgreementReport,
    AnalysisEvidence,
    AnalysisTrigger,
    LearningAnalysis,
    LearningSuggestion,
    MisclassificationCluster,
)
from catalai.learning.storage import LearningStorage
from catalai.learning.trigger import LearningTrigger
from catalai.llm.client import LLMCollaborator
from catalai.llm.retry import RetryPolicy, call_with_retry
from catalai.logging_config import get_logger
from catalai.matrix.models import Category, DecisionMatrix
from catalai.matrix.store import MatrixStore

logger = get_logger("learning")

MAX_EXAMPLE_IDS = 5
MAX_EVIDENCE_EXAMPLES = 10
LOW_CONFIDENCE = 0.7
SUBJECT_CONSISTENCY_THRESHOLD = 0.7
SUBJECT_MIN_CASES = 3


# ---------------------------------------------------------------------------
# Reine Auswertungsfunktionen
# ---------------------------------------------------------------------------

def compute_agreement(cases: Sequence[CaseRecord]) -> AgreementReport:
    """Zustimmungsquote = bestätigt / alle mit Feedback.

    Pro Kategorie zählt die vom System vergebene Kategorie.  Kategorien
    ohne Feedback behalten 1.0.
    """
    with_feedback = [c for c in cases if c.has_feedback]
    if not with_feedback:
        return AgreementReport()

    totals: Counter[Category] = Counter()
    confirmed: Counter[Category] = Counter()
    for case in with_feedback:
        category = case.classification.category  # type: ignore[union-attr]
        totals[category] += 1
        if case.feedback.confirmed:  # type: ignore[union-attr]
            confirmed[category] += 1

    per_category = {
        category: (confirmed[category] / totals[category]) if totals[category] else 1.0
        for category in Category
    }
    confirmed_total = sum(confirmed.values())
    return AgreementReport(
        overall=confirmed_total / len(with_feedback),
        per_category=per_category,
        total_with_feedback=len(with_feedback),
        confirmed=confirmed_total,
        counts_per_category={c: n for c, n in totals.items()},
    )


def cluster_misclassifications(cases: Sequence[CaseRecord]) -> list[MisclassificationCluster]:
    """Bündelt Korrekturen nach (vergebene → korrigierte Kategorie).

    Sortierung: Häufigkeit absteigend, bei Gleichstand nach Stufenfolge.
    """
    examples: dict[tuple[Category, Category], list[str]] = defaultdict(list)
    for case in cases:
        if not case.is_misclassified:
            continue
        corrected = case.feedback.corrected_category  # type: ignore[union-attr]
        predicted = case.classification.category  # type: ignore[union-attr]
        if corrected is None or corrected == predicted:
            continue
        examples[(predicted, corrected)].append(case.case_id)

    clusters = [
        MisclassificationCluster(
            from_category=pair[0],
            to_category=pair[1],
            count=len(ids),
            example_case_ids=ids[:MAX_EXAMPLE_IDS],
        )
        for pair, ids in examples.items()
    ]
    clusters.sort(key=lambda c: (-c.count, c.from_category.tier, c.to_category.tier))
    return clusters


def detect_patterns(
    cases: Sequence[CaseRecord],
    clusters: Sequence[MisclassificationCluster],
) -> list[str]:
    """Lokale Heuristiken, ergänzt später die LLM-Zusammenfassung."""
    patterns: list[str] = []

    if clusters:
        top = clusters[0]
        patterns.append(
            f"Most common misclassification: {top.from_category.value} → "
            f"{top.to_category.value} ({top.count} occurrences)"
        )

    over = sum(c.count for c in clusters if c.from_category.tier > c.to_category.tier)
    if over:
        patterns.append(
            f"Over-classification tendency: {over} cases where the system "
            f"classified higher than the correct category"
        )
    under = sum(c.count for c in clusters if c.from_category.tier < c.to_category.tier)
    if under:
        patterns.append(
            f"Under-classification tendency: {under} cases where the system "
            f"classified lower than the correct category"
        )

    low_confidence = [
        c for c in cases
        if c.is_misclassified and c.classification.confidence < LOW_CONFIDENCE  # type: ignore[union-attr]
    ]
    if low_confidence:
        patterns.append(
            f"{len(low_confidence)} misclassifications had confidence < "
            f"{LOW_CONFIDENCE}, suggesting uncertainty"
        )

    by_subject: dict[str, list[CaseRecord]] = defaultdict(list)
    for case in cases:
        if case.subject and case.has_feedback:
            by_subject[case.subject].append(case)
    inconsistent = []
    for subject, group in by_subject.items():
        if len(group) < SUBJECT_MIN_CASES:
            continue
        rate = sum(1 for c in group if c.feedback.confirmed) / len(group)  # type: ignore[union-attr]
        if rate < SUBJECT_CONSISTENCY_THRESHOLD:
            inconsistent.append((subject, rate, len(group)))
    inconsistent.sort(key=lambda item: (-item[2], item[0]))
    for subject, rate, total in inconsistent[:3]:
        patterns.append(
            f'Subject "{subject}": low consistency ({rate * 100:.0f}% agreement) '
            f"across {total} cases"
        )

    return patterns


def _case_example(case: CaseRecord) -> dict[str, Any]:
    """Kompakte Fallbeschreibung für den LLM-Prompt."""
    return {
        "caseId": case.case_id,
        "description": case.description[:400],
        "subject": case.subject,
        "predicted": case.classification.category.value if case.classification else None,
        "corrected": (
            case.feedback.corrected_category.value
            if case.feedback and case.feedback.corrected_category
            else None
        ),
        "confidence": case.classification.confidence if case.classification else None,
        "triggeredRules": (
            [t.rule_id for t in case.evaluation.triggered_rules] if case.evaluation else []
        ),
        "comments": case.feedback.comments if case.feedback else "",
    }


# ---------------------------------------------------------------------------
# Analyzer-Klasse
# ---------------------------------------------------------------------------

class LearningAnalyzer:
    """Führt Lern-Analysen durch und legt Vorschläge als "pending" an.

    Verwendung:
        analyzer = LearningAnalyzer(db, storage, llm, store, policy, trigger)
        analysis = await analyzer.analyze(misclassified_only=True)
        report, analysis = await analyzer.check_and_trigger()
    """

    def __init__(
        self,
        database: Database,
        storage: LearningStorage,
        llm: LLMCollaborator,
        matrix_store: MatrixStore,
        retry_policy: RetryPolicy | None = None,
        trigger: LearningTrigger | None = None,
    ) -> None:
        self._db = database
        self._storage = storage
        self._llm = llm
        self._store = matrix_store
        self._policy = retry_policy or RetryPolicy()
        self._trigger = trigger or LearningTrigger(storage)

    async def analyze(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        misclassified_only: bool = False,
        trigger: AnalysisTrigger = AnalysisTrigger.MANUAL,
    ) -> LearningAnalysis:
        """Analysiert Fälle im Zeitraum [start, end].

        Args:
            start, end: Optionaler Zeitraum (Erstellungszeitpunkt der Fälle).
            misclassified_only: Fehlerpaare und Muster nur aus korrigierten
                Fällen.  Die Zustimmungsquote basiert immer auf allen
                Fällen mit Feedback.
            trigger: automatic oder manual.

        Raises:
            RetryableTurnError: Fälle konnten nicht geladen oder das
                Ergebnis nicht gespeichert werden.
        """
        start_time = time.monotonic()
        logger.info(
            "Lern-Analyse gestartet: trigger=%s, zeitraum=%s..%s, nur_fehler=%s",
            trigger.value,
            start.isoformat() if start else "-",
            end.isoformat() if end else "-",
            misclassified_only,
        )

        # --- Schritt 1: Fälle laden ---
        loaded = await call_with_retry(
            lambda: self._db.load_cases_in_range(start, end),
            self._policy,
            "cases load",
        )
        if not loaded.ok:
            raise RetryableTurnError(
                f"Fälle konnten nicht geladen werden: {loaded.error_message}",
                stage="learning_load",
                cause=loaded.error,
            )
        with_feedback = [c for c in loaded.value or [] if c.has_feedback]

        # --- Schritt 2: Zustimmungsquote ---
        agreement = compute_agreement(with_feedback)

        # --- Schritt 3+4: Fehlerpaare und lokale Muster ---
        scope = [c for c in with_feedback if c.is_misclassified] if misclassified_only else with_feedback
        clusters = cluster_misclassifications(scope)
        patterns = detect_patterns(scope, clusters)

        # --- Schritt 5: LLM-Auswertung (nur bei Fehlklassifizierungen) ---
        matrix: Optional[DecisionMatrix] = None
        suggestions: list[LearningSuggestion] = []
        analysis_id = str(uuid.uuid4())

        if clusters:
            matrix = await self._load_matrix()
            evidence = AnalysisEvidence(
                matrix=matrix,
                agreement=agreement,
                misclassifications=clusters,
                local_patterns=patterns,
                examples=[
                    _case_example(c) for c in scope if c.is_misclassified
                ][:MAX_EVIDENCE_EXAMPLES],
            )
            patterns.extend(await self._summarize(evidence))
            suggestions = await self._suggest(evidence, analysis_id)

        analysis = LearningAnalysis(
            analysis_id=analysis_id,
            trigger=trigger,
            range_start=start,
            range_end=end,
            misclassified_only=misclassified_only,
            cases_analyzed=len(scope),
            matrix_version=matrix.version if matrix else None,
            agreement=agreement,
            misclassifications=clusters,
            identified_patterns=patterns,
            suggestion_ids=[s.suggestion_id for s in suggestions],
        )

        # --- Schritt 6: Speichern ---
        await self._save(analysis, suggestions)

        logger.info(
            "Lern-Analyse %s abgeschlossen: %.1fs, %d Fälle, Zustimmung %.2f, "
            "%d Fehlerpaare, %d Muster, %d Vorschläge",
            analysis.analysis_id,
            time.monotonic() - start_time,
            analysis.cases_analyzed,
            agreement.overall,
            len(clusters),
            len(patterns),
            len(suggestions),
        )
        return analysis

    async def check_and_trigger(self) -> tuple[AgreementReport, Optional[LearningAnalysis]]:
        """Berechnet die Zustimmung neu und startet ggf. eine automatische Analyse."""
        cases = await self._db.load_cases_in_range()
        report = compute_agreement(cases)
        should_run, reason = await self._trigger.should_run(report)
        if not should_run:
            logger.debug("Lern-Trigger nicht ausgelöst: %s", reason)
            return report, None

        logger.info("Automatische Lern-Analyse: %s", reason)
        analysis = await self.analyze(trigger=AnalysisTrigger.AUTOMATIC)
        return report, analysis

    # =========================================================================
    # Interne Schritte
    # =========================================================================

    async def _load_matrix(self) -> Optional[DecisionMatrix]:
        try:
            result = await call_with_retry(self._store.get_active, self._policy, "matrix load")
        except NotFoundError:
            logger.warning("Keine aktive Matrix, Vorschläge ohne Matrix-Kontext")
            return None
        if not result.ok:
            logger.warning(
                "Aktive Matrix nicht verfügbar, Vorschläge ohne Matrix-Kontext: %s",
                result.error_message,
            )
        return result.value

    async def _summarize(self, evidence: AnalysisEvidence) -> list[str]:
        result = await call_with_retry(
            lambda: self._llm.summarize_patterns(evidence),
            self._policy,
            "summarize_patterns",
        )
        if not result.ok:
            logger.warning(
                "Muster-Zusammenfassung übersprungen (%s): %s",
                result.status.value,
                result.error_message,
            )
            return []
        return [p for p in result.value or [] if p.strip()]

    async def _suggest(
        self,
        evidence: AnalysisEvidence,
        analysis_id: str,
    ) -> list[LearningSuggestion]:
        result = await call_with_retry(
            lambda: self._llm.generate_rule_suggestions(evidence),
            self._policy,
            "generate_rule_suggestions",
        )
        if not result.ok:
            logger.warning(
                "Regelvorschläge übersprungen (%s): %s",
                result.status.value,
                result.error_message,
            )
            return []
        return [
            LearningSuggestion(analysis_id=analysis_id, change=change)
            for change in result.value or []
        ]

    async def _save(
        self,
        analysis: LearningAnalysis,
        suggestions: list[LearningSuggestion],
    ) -> None:
        async def _write() -> None:
            for suggestion in suggestions:
                if await self._storage.get_suggestion(suggestion.suggestion_id) is None:
                    await self._storage.insert_suggestion(suggestion)
            if await self._storage.get_analysis(analysis.analysis_id) is None:
                await self._storage.save_analysis(analysis)

        result = await call_with_retry(_write, self._policy, f"analysis save {analysis.analysis_id}")
        if not result.ok:
            raise RetryableTurnError(
                f"Analyse konnte nicht gespeichert werden: {result.error_message}",
                stage="learning_persist",
                cause=result.error,
            )
