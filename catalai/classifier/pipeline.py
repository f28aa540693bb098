"""Klassifizierungs-Pipeline: Orchestrierung eines Falls über mehrere Runden.

Ablauf pro Fall:

 1. Erst-Klassifizierung durch das LLM
 2. Confidence-Routing und ggf. Rückfrage-Dialog (ClarificationController)
 3. Nach jeder Antwortrunde: erneute Klassifizierung, zurück zu 2.
 4. Aktive Matrix-Version einmal pro Anfrage auflösen
 5. Attribute extrahieren (fehlende/ungültige → "unknown")
 6. Regelauswertung gegen genau diese Version
 7. Fall speichern und Ergebnis zurückgeben

Jeder Kollaborator-Aufruf läuft über call_with_retry().  Schlägt ein
Aufruf nach allen Versuchen fehl, endet die Runde mit
RetryableTurnError und die übergebene Session bleibt unverändert: die
Pipeline arbeitet immer auf einer Kopie.  Unbrauchbare LLM-Antworten
führen stattdessen zu manueller Prüfung, sichtbar über fallback_reason.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional, Sequence

from catalai.cases import CaseRecord
from catalai.clarification.controller import ClarificationController, ClarificationLimits
from catalai.clarification.models import (
    ClarificationQuestion,
    ClarificationSession,
    ClarificationState,
    StopReason,
)
from catalai.classifier.attributes import normalize_attributes, unknown_attributes
from catalai.exceptions import RetryableTurnError
from catalai.llm.client import LLMCollaborator
from catalai.llm.retry import CallStatus, LLMResult, RetryPolicy, call_with_retry
from catalai.logging_config import get_logger
from catalai.matrix.evaluator import evaluate
from catalai.matrix.models import Classification, DecisionMatrixEvaluation
from catalai.matrix.store import MatrixStore

if TYPE_CHECKING:
    from catalai.config import Settings
    from catalai.db.database import Database

logger = get_logger("classifier")


# ---------------------------------------------------------------------------
# Pipeline-Ergebnis
# ---------------------------------------------------------------------------

class TurnStatus(str, Enum):
    QUESTIONS = "questions"           # Rückfragen offen
    CLASSIFIED = "classified"         # Fertig, keine Prüfung nötig
    MANUAL_REVIEW = "manual_review"   # Fertig, manuelle Prüfung erforderlich


@dataclass
class TurnResult:
    """Ergebnis einer Runde.

    `session` ist der neue Dialogzustand, den der Aufrufer für die
    nächste Runde aufbewahrt.
    """

    case_id: str
    status: TurnStatus
    session: ClarificationSession

    questions: list[ClarificationQuestion] = field(default_factory=list)
    classification: Classification | None = None
    evaluation: DecisionMatrixEvaluation | None = None

    manual_review: bool = False
    interview_skipped: bool = False
    stop_reason: StopReason | None = None

    # Gesetzt, wenn statt eines regulären Ergebnisses manuelle Prüfung greift
    fallback_reason: str | None = None

    duration_seconds: float = 0.0

    @property
    def is_final(self) -> bool:
        return self.status != TurnStatus.QUESTIONS


# ---------------------------------------------------------------------------
# Pipeline-Konfiguration
# ---------------------------------------------------------------------------

@dataclass
class PipelineConfig:
    """Konfigurierbare Optionen für die Pipeline.

    Wird aus Settings befüllt.
    """

    limits: ClarificationLimits = field(default_factory=ClarificationLimits)
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    # Abgeschlossene Fälle für den Lernkreislauf speichern
    persist_cases: bool = True

    @classmethod
    def from_settings(cls, settings: "Settings") -> "PipelineConfig":
        return cls(
            limits=ClarificationLimits.from_settings(settings),
            retry=RetryPolicy.from_settings(settings),
        )


# ---------------------------------------------------------------------------
# Klassifizierungs-Pipeline
# ---------------------------------------------------------------------------

class ClassificationPipeline:
    """Orchestriert Klassifizierung, Rückfragen und Regelauswertung.

    Verwendet Dependency Injection: LLM, Matrix Store und optional die
    Datenbank für Fall-Datensätze werden von außen übergeben.

    Verwendung:
        pipeline = ClassificationPipeline(llm, store, config=config, database=db)
        result = await pipeline.start("case-1", "Monthly invoice matching ...")
        while result.status == TurnStatus.QUESTIONS:
            answers = ask_user(result.questions)
            result = await pipeline.answer(result.session, answers)
    """

    def __init__(
        self,
        llm: LLMCollaborator,
        matrix_store: MatrixStore,
        config: PipelineConfig | None = None,
        database: Optional["Database"] = None,
    ) -> None:
        self._llm = llm
        self._store = matrix_store
        self._config = config or PipelineConfig()
        self._controller = ClarificationController(self._config.limits)
        self._db = database

    # --- Öffentliche API ---

    async def start(
        self,
        case_id: str,
        description: str,
        subject: str | None = None,
    ) -> TurnResult:
        """Erste Runde eines neuen Falls.

        Raises:
            RetryableTurnError: LLM/Speicher nach allen Versuchen nicht erreichbar.
        """
        started = time.monotonic()
        logger.info("Pipeline Start: Fall %s", case_id)
        session = ClarificationSession(case_id=case_id, description=description, subject=subject)

        # Schritt 1: Erst-Klassifizierung
        classification = await self._classify(session, stage="initial_classification")
        if classification is None:
            result = await self._fallback(session, "Erst-Klassifizierung unbrauchbar")
        else:
            # Schritt 2: Routing / Rückfragen
            result = await self._advance(session, classification)
        return self._timed(result, started)

    async def answer(self, session: ClarificationSession, answers: Sequence[str]) -> TurnResult:
        """Antworten auf die offenen Fragen einreichen.

        Raises:
            RetryableTurnError: Runde fehlgeschlagen, `session` bleibt gültig.
            ValueError: Session wartet nicht auf Antworten.
        """
        started = time.monotonic()
        working = session.model_copy(deep=True)
        self._controller.record_answers(working, answers)

        # Schritt 3: Neu klassifizieren mit erweitertem Verlauf
        classification = await self._classify(working, stage="reclassification")
        if classification is None:
            result = await self._fallback(working, "Neu-Klassifizierung unbrauchbar")
        else:
            result = await self._advance(working, classification)
        return self._timed(result, started)

    async def force_classify(self, session: ClarificationSession) -> TurnResult:
        """Dialog überspringen und sofort abschließen ("jetzt klassifizieren").

        Raises:
            RetryableTurnError: Runde fehlgeschlagen, `session` bleibt gültig.
            ValueError: Dialog bereits beendet.
        """
        started = time.monotonic()
        working = session.model_copy(deep=True)
        self._controller.force_classify(working)

        if working.last_classification is None:
            classification = await self._classify(working, stage="initial_classification")
            if classification is None:
                return self._timed(
                    await self._fallback(working, "Klassifizierung unbrauchbar"),
                    started,
                )
            working.last_classification = classification

        return self._timed(await self._finalize(working), started)

    # --- Schritte ---

    async def _classify(
        self,
        session: ClarificationSession,
        stage: str,
    ) -> Optional[Classification]:
        """LLM-Klassifizierung; None bei unbrauchbarer Antwort."""
        result = await call_with_retry(
            lambda: self._llm.classify(session.description, session.history),
            self._config.retry,
            label=f"classify case={session.case_id}",
        )
        self._raise_if_failed(result, session, stage)
        if result.status == CallStatus.MALFORMED:
            return None
        return result.value

    async def _advance(
        self,
        session: ClarificationSession,
        classification: Classification,
    ) -> TurnResult:
        session.last_classification = classification
        self._controller.route(session, classification.confidence)

        if session.state == ClarificationState.ASKING:
            plan = self._controller.plan_round(session)
            if plan is not None:
                questions = await call_with_retry(
                    lambda: self._llm.generate_questions(
                        session.description,
                        classification,
                        session.history,
                        plan.remaining_budget,
                        plan.max_questions,
                    ),
                    self._config.retry,
                    label=f"questions case={session.case_id}",
                )
                self._raise_if_failed(questions, session, "question_generation")
                if questions.status == CallStatus.MALFORMED:
                    return await self._fallback(session, "Rückfragen unbrauchbar")

                accepted = self._controller.accept_questions(session, questions.value or [], plan)
                if session.state == ClarificationState.WAITING_FOR_ANSWER:
                    return TurnResult(
                        case_id=session.case_id,
                        status=TurnStatus.QUESTIONS,
                        session=session,
                        questions=accepted,
                    )

        return await self._finalize(session)

    async def _finalize(
        self,
        session: ClarificationSession,
        fallback_reason: str | None = None,
    ) -> TurnResult:
        classification = session.last_classification
        if classification is None:
            return await self._fallback(
                session, fallback_reason or "Keine Klassifizierung vorhanden",
            )

        # Schritt 4: Matrix-Version einmal pro Anfrage auflösen
        matrix_result = await call_with_retry(
            self._store.get_active,
            self._config.retry,
            label=f"matrix case={session.case_id}",
        )
        self._raise_if_failed(matrix_result, session, "matrix_lookup")
        if matrix_result.status == CallStatus.MALFORMED or matrix_result.value is None:
            return await self._complete(
                session,
                classification=classification,
                evaluation=None,
                fallback_reason=fallback_reason or "Keine Matrix verfügbar",
            )
        matrix = matrix_result.value

        # Schritt 5: Attribute extrahieren
        extracted = await call_with_retry(
            lambda: self._llm.extract_attributes(
                session.description, session.history, matrix.attributes,
            ),
            self._config.retry,
            label=f"attributes case={session.case_id}",
        )
        self._raise_if_failed(extracted, session, "attribute_extraction")
        if extracted.status == CallStatus.MALFORMED:
            logger.warning(
                "Fall %s: Attribut-Extraktion unbrauchbar – alle Attribute unknown",
                session.case_id,
            )
            values = unknown_attributes(matrix)
        else:
            values = normalize_attributes(matrix, extracted.value or {})

        # Schritt 6: Regelauswertung
        evaluation = evaluate(matrix, values, classification)

        return await self._complete(
            session,
            classification=evaluation.final_classification,
            evaluation=evaluation,
            fallback_reason=fallback_reason,
        )

    async def _complete(
        self,
        session: ClarificationSession,
        classification: Classification | None,
        evaluation: DecisionMatrixEvaluation | None,
        fallback_reason: str | None,
    ) -> TurnResult:
        manual_review = (
            session.manual_review
            or fallback_reason is not None
            or (evaluation is not None and evaluation.review_flag)
        )
        result = TurnResult(
            case_id=session.case_id,
            status=TurnStatus.MANUAL_REVIEW if manual_review else TurnStatus.CLASSIFIED,
            session=session,
            classification=classification,
            evaluation=evaluation,
            manual_review=manual_review,
            interview_skipped=session.interview_skipped,
            stop_reason=session.stop_reason,
            fallback_reason=fallback_reason,
        )

        # Schritt 7: Fall speichern
        await self._persist(result)

        logger.info(
            "Pipeline abgeschlossen: Fall %s → %s (%s)%s",
            session.case_id,
            classification.category.value if classification else "-",
            result.status.value,
            f", Fallback: {fallback_reason}" if fallback_reason else "",
        )
        return result

    async def _fallback(self, session: ClarificationSession, reason: str) -> TurnResult:
        """Manuelle Prüfung statt Fehler bei unbrauchbarer LLM-Antwort."""
        logger.warning("Fall %s: %s – manuelle Prüfung", session.case_id, reason)
        if not session.state.is_terminal:
            self._controller.force_stop(session, StopReason.MALFORMED_LLM_OUTPUT)
        session.manual_review = True

        if session.last_classification is None:
            return await self._complete(
                session,
                classification=None,
                evaluation=None,
                fallback_reason=reason,
            )
        return await self._finalize(session, fallback_reason=reason)

    async def _persist(self, result: TurnResult) -> None:
        if self._db is None or not self._config.persist_cases:
            return

        session = result.session
        record = CaseRecord(
            case_id=session.case_id,
            description=session.description,
            subject=session.subject,
            history=list(session.history),
            classification=result.classification,
            evaluation=result.evaluation,
            manual_review=result.manual_review,
            interview_skipped=result.interview_skipped,
        )
        saved: LLMResult[None] = await call_with_retry(
            lambda: self._db.save_case(record, keep_feedback=True),  # type: ignore[union-attr]
            self._config.retry,
            label=f"persist case={session.case_id}",
        )
        self._raise_if_failed(saved, session, "persist_case")

    # --- Hilfsmethoden ---

    @staticmethod
    def _raise_if_failed(
        result: LLMResult,
        session: ClarificationSession,
        stage: str,
    ) -> None:
        if result.status == CallStatus.FAILED:
            raise RetryableTurnError(
                f"Fall {session.case_id}: Schritt '{stage}' fehlgeschlagen "
                f"nach {result.attempts} Versuch(en): {result.error_message}",
                case_id=session.case_id,
                stage=stage,
                cause=result.error,
            )

    @staticmethod
    def _timed(result: TurnResult, started: float) -> TurnResult:
        result.duration_seconds = time.monotonic() - started
        return result
