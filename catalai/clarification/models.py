"""Zustand des Rückfrage-Dialogs eines Falls."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from catalai.cases import QAPair
from catalai.matrix.models import Classification


class ClarificationState(str, Enum):
    AWAITING_INITIAL = "awaiting_initial"
    ASKING = "asking"                      # transient
    WAITING_FOR_ANSWER = "waiting_for_answer"
    READY_TO_CLASSIFY = "ready_to_classify"
    FORCE_STOPPED = "force_stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (ClarificationState.READY_TO_CLASSIFY, ClarificationState.FORCE_STOPPED)


class StopReason(str, Enum):
    """Warum der Dialog beendet wurde (für Audit-Log und UI)."""
    HIGH_CONFIDENCE = "high_confidence"
    LOW_CONFIDENCE = "low_confidence"
    REPETITION = "repetition_detected"
    USER_LACKS_INFORMATION = "user_lacks_information"
    HARD_LIMIT = "hard_limit_reached"
    NO_FURTHER_QUESTIONS = "no_further_questions"
    NO_CRITICAL_QUESTION = "no_critical_question"
    FORCED_BY_USER = "forced_by_user"
    MALFORMED_LLM_OUTPUT = "malformed_llm_output"


class ClarificationQuestion(BaseModel):
    """Eine Rückfrage an den Nutzer, wie sie das LLM vorschlägt."""

    question: str = Field(min_length=1)
    purpose: str = ""
    critical: bool = False


class ClarificationSession(BaseModel):
    """Serialisierbarer Dialogzustand.

    Wird vom Aufrufer zwischen den Runden aufbewahrt.  Die Pipeline
    arbeitet immer auf einer Kopie und gibt den neuen Stand nur bei
    erfolgreich abgeschlossener Runde zurück.
    """

    model_config = ConfigDict(validate_assignment=True)

    case_id: str
    description: str
    subject: Optional[str] = None
    state: ClarificationState = ClarificationState.AWAITING_INITIAL
    turns_taken: int = 0
    rounds: int = 0
    asked_questions: list[str] = Field(default_factory=list)
    answers: list[str] = Field(default_factory=list)
    history: list[QAPair] = Field(default_factory=list)
    pending_questions: list[ClarificationQuestion] = Field(default_factory=list)
    last_action: str = "created"
    last_classification: Optional[Classification] = None
    manual_review: bool = False
    interview_skipped: bool = False
    soft_limit_warned: bool = False
    stop_reason: Optional[StopReason] = None
