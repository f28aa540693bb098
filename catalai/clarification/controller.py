"""Steuerung des Rückfrage-Dialogs.

Zustandsautomat pro Fall:

    AWAITING_INITIAL ──route(c)──► READY_TO_CLASSIFY   (c > hoch, oder c < niedrig + Review)
                                 └► ASKING ──plan/accept──► WAITING_FOR_ANSWER
    WAITING_FOR_ANSWER ──record_answers──► AWAITING_INITIAL (wartet auf neue Confidence)
    AWAITING_INITIAL / ASKING ──Loop-Guard──► FORCE_STOPPED (+ Review), unabhängig von c
    jeder nicht-terminale Zustand ──force_classify──► READY_TO_CLASSIFY

Fragenplan pro Runde:
    Runde 0      → 2–3 Fragen
    Runden 1–4   → 2 Fragen
    Runden 5–7   → 1 Frage
    ab Runde 8   → 1 Frage, nur wenn als kritisch markiert

Der Controller ruft selbst keine Kollaboratoren auf.  Er entscheidet nur
und verändert die übergebene Session, die Pipeline liefert die
Confidence-Werte und Fragen des LLM.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Sequence

from catalai.cases import QAPair
from catalai.clarification.loop_detection import (
    detect_repetition,
    detect_user_lacks_information,
    is_duplicate_question,
)
from catalai.clarification.models import (
    ClarificationQuestion,
    ClarificationSession,
    ClarificationState,
    StopReason,
)
from catalai.logging_config import get_logger

if TYPE_CHECKING:
    from catalai.config import Settings

logger = get_logger("clarification")


# ---------------------------------------------------------------------------
# Konfiguration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ClarificationLimits:
    high_threshold: float = 0.85
    low_threshold: float = 0.6
    soft_turn_limit: int = 8
    hard_turn_limit: int = 15

    # Loop-Guard
    repetition_window: int = 5
    repetition_min_distinct: int = 3
    dont_know_window: int = 3
    dont_know_threshold: int = 2

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ClarificationLimits":
        return cls(
            high_threshold=settings.high_confidence_threshold,
            low_threshold=settings.low_confidence_threshold,
            soft_turn_limit=settings.soft_turn_limit,
            hard_turn_limit=settings.hard_turn_limit,
        )


@dataclass(frozen=True)
class RoundPlan:
    """Wie viele Fragen in der aktuellen Runde gestellt werden dürfen."""

    round_index: int
    min_questions: int
    max_questions: int
    remaining_budget: int
    critical_only: bool = False


def questions_for_round(round_index: int) -> tuple[int, int, bool]:
    """(min, max, nur_kritisch) für eine Runde laut Fragenplan."""
    if round_index == 0:
        return 2, 3, False
    if round_index <= 4:
        return 2, 2, False
    if round_index <= 7:
        return 1, 1, False
    return 1, 1, True


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class ClarificationController:
    """Entscheidet pro Runde: fragen, stoppen oder klassifizieren.

    Verwendung:
        controller = ClarificationController(limits)
        controller.route(session, confidence)
        if session.state == ClarificationState.ASKING:
            plan = controller.plan_round(session)
            if plan is not None:
                questions = await llm.generate_questions(...)
                controller.accept_questions(session, questions, plan)
    """

    def __init__(self, limits: ClarificationLimits | None = None) -> None:
        self._limits = limits or ClarificationLimits()

    @property
    def limits(self) -> ClarificationLimits:
        return self._limits

    # --- Schwellwert-Prüfung ---

    def route(self, session: ClarificationSession, confidence: float) -> ClarificationState:
        """Schwellwert-Prüfung nach Erst-Klassifizierung oder neuer Antwort.

        Raises:
            ValueError: Wenn der Dialog bereits beendet ist.
        """
        if session.state.is_terminal:
            raise ValueError(
                f"Fall {session.case_id}: Dialog bereits beendet ({session.state.value})"
            )

        reason = self.check_loop_guard(session)
        if reason is not None:
            self.force_stop(session, reason)
            return session.state

        limits = self._limits
        if confidence > limits.high_threshold:
            self._finish(
                session,
                ClarificationState.READY_TO_CLASSIFY,
                StopReason.HIGH_CONFIDENCE,
                f"confidence {confidence:.2f} > {limits.high_threshold:.2f}",
            )
        elif confidence < limits.low_threshold:
            session.manual_review = True
            self._finish(
                session,
                ClarificationState.READY_TO_CLASSIFY,
                StopReason.LOW_CONFIDENCE,
                f"confidence {confidence:.2f} < {limits.low_threshold:.2f}",
            )
        else:
            self._transition(session, ClarificationState.ASKING, f"confidence {confidence:.2f}")
        return session.state

    # --- Fragerunde ---

    def check_loop_guard(self, session: ClarificationSession) -> Optional[StopReason]:
        """Prüft Wiederholung, Ratlosigkeit und hartes Limit."""
        limits = self._limits
        if detect_repetition(
            session.asked_questions,
            window=limits.repetition_window,
            min_distinct=limits.repetition_min_distinct,
        ):
            return StopReason.REPETITION
        if detect_user_lacks_information(
            session.answers,
            window=limits.dont_know_window,
            threshold=limits.dont_know_threshold,
        ):
            return StopReason.USER_LACKS_INFORMATION
        if session.turns_taken >= limits.hard_turn_limit:
            return StopReason.HARD_LIMIT
        if len(session.asked_questions) >= limits.hard_turn_limit:
            return StopReason.HARD_LIMIT
        return None

    def plan_round(self, session: ClarificationSession) -> Optional[RoundPlan]:
        """Loop-Guard prüfen und Fragenkontingent der Runde bestimmen.

        Returns:
            RoundPlan, oder None wenn der Dialog gestoppt wurde.
        """
        self._require_state(session, ClarificationState.ASKING)

        reason = self.check_loop_guard(session)
        if reason is not None:
            self.force_stop(session, reason)
            return None

        if session.turns_taken >= self._limits.soft_turn_limit and not session.soft_limit_warned:
            session.soft_limit_warned = True
            logger.warning(
                "Fall %s: %d Rückfragen beantwortet (weiches Limit %d) – Dialog läuft weiter",
                session.case_id,
                session.turns_taken,
                self._limits.soft_turn_limit,
            )

        remaining = self._limits.hard_turn_limit - len(session.asked_questions)
        min_q, max_q, critical_only = questions_for_round(session.rounds)
        max_q = min(max_q, remaining)
        return RoundPlan(
            round_index=session.rounds,
            min_questions=min(min_q, max_q),
            max_questions=max_q,
            remaining_budget=remaining,
            critical_only=critical_only,
        )

    def accept_questions(
        self,
        session: ClarificationSession,
        candidates: Sequence[ClarificationQuestion],
        plan: RoundPlan,
    ) -> list[ClarificationQuestion]:
        """Filtert LLM-Fragen und stellt sie dem Nutzer.

        Duplikate (gegen bisherige und untereinander) werden verworfen.
        Bleibt nichts übrig, endet der Dialog:
        - LLM liefert keine Fragen → READY_TO_CLASSIFY
        - ab Runde 8 keine kritische Frage → READY_TO_CLASSIFY
        - nur Duplikate → FORCE_STOPPED (Wiederholung)

        Returns:
            Die tatsächlich gestellten Fragen (leer wenn der Dialog endet).
        """
        self._require_state(session, ClarificationState.ASKING)

        if not candidates:
            self._finish(
                session,
                ClarificationState.READY_TO_CLASSIFY,
                StopReason.NO_FURTHER_QUESTIONS,
                "LLM sieht keinen weiteren Klärungsbedarf",
            )
            return []

        pool = [q for q in candidates if q.critical] if plan.critical_only else list(candidates)
        if not pool:
            self._finish(
                session,
                ClarificationState.READY_TO_CLASSIFY,
                StopReason.NO_CRITICAL_QUESTION,
                f"Runde {plan.round_index}: keine kritische Frage",
            )
            return []

        accepted: list[ClarificationQuestion] = []
        seen = list(session.asked_questions)
        for question in pool:
            if len(accepted) >= plan.max_questions:
                break
            if is_duplicate_question(question.question, seen):
                logger.info(
                    "Fall %s: doppelte Frage verworfen: '%s'",
                    session.case_id,
                    question.question[:80],
                )
                continue
            accepted.append(question)
            seen.append(question.question)

        if not accepted:
            self.force_stop(session, StopReason.REPETITION)
            return []

        session.asked_questions = session.asked_questions + [q.question for q in accepted]
        session.pending_questions = accepted
        session.rounds += 1
        self._transition(
            session,
            ClarificationState.WAITING_FOR_ANSWER,
            f"Runde {plan.round_index}: {len(accepted)} Frage(n)",
        )
        return accepted

    # --- Antworten ---

    def record_answers(self, session: ClarificationSession, answers: Sequence[str]) -> None:
        """Übernimmt Antworten auf die offenen Fragen.

        Danach muss die Pipeline neu klassifizieren und route() aufrufen.

        Raises:
            ValueError: Falscher Zustand oder unpassende Anzahl Antworten.
        """
        self._require_state(session, ClarificationState.WAITING_FOR_ANSWER)
        pending = session.pending_questions
        if not answers:
            raise ValueError(f"Fall {session.case_id}: keine Antwort übergeben")
        if len(answers) > len(pending):
            raise ValueError(
                f"Fall {session.case_id}: {len(answers)} Antworten auf "
                f"{len(pending)} offene Fragen"
            )

        session.answers = session.answers + list(answers)
        session.history = session.history + [
            QAPair(question=question.question, answer=answer)
            for question, answer in zip(pending, answers)
        ]
        session.turns_taken += len(answers)
        session.pending_questions = []
        self._transition(
            session,
            ClarificationState.AWAITING_INITIAL,
            f"{len(answers)} Antwort(en), turns={session.turns_taken}",
        )

    # --- Abbruch ---

    def force_classify(self, session: ClarificationSession) -> None:
        """Manuelles "jetzt klassifizieren" aus jedem nicht-terminalen Zustand.

        Raises:
            ValueError: Wenn der Dialog bereits beendet ist.
        """
        if session.state.is_terminal:
            raise ValueError(
                f"Fall {session.case_id}: Dialog bereits beendet ({session.state.value})"
            )
        session.interview_skipped = True
        session.pending_questions = []
        self._finish(
            session,
            ClarificationState.READY_TO_CLASSIFY,
            StopReason.FORCED_BY_USER,
            "Interview übersprungen",
        )

    def force_stop(self, session: ClarificationSession, reason: StopReason) -> None:
        session.manual_review = True
        session.pending_questions = []
        self._finish(session, ClarificationState.FORCE_STOPPED, reason, reason.value)

    # --- intern ---

    def _finish(
        self,
        session: ClarificationSession,
        state: ClarificationState,
        reason: StopReason,
        detail: str,
    ) -> None:
        session.stop_reason = reason
        self._transition(session, state, detail)

    @staticmethod
    def _transition(
        session: ClarificationSession,
        target: ClarificationState,
        detail: str,
    ) -> None:
        previous = session.state
        session.state = target
        session.last_action = detail
        logger.info(
            "Fall %s: %s → %s (%s)",
            session.case_id,
            previous.value,
            target.value,
            detail,
        )

    @staticmethod
    def _require_state(session: ClarificationSession, expected: ClarificationState) -> None:
        if session.state != expected:
            raise ValueError(
                f"Fall {session.case_id}: erwartet Zustand {expected.value}, "
                f"ist {session.state.value}"
            )
