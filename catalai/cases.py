"""Fall-Datensätze für Historie und Lernkreislauf.

Ein Fall bündelt Beschreibung, Rückfrage-Verlauf, finale Klassifizierung,
die Regelauswertung und (später) das Feedback des Nutzers.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from catalai.matrix.models import (
    Category,
    Classification,
    DecisionMatrixEvaluation,
    utcnow,
)


class QAPair(BaseModel):
    question: str
    answer: str


class Feedback(BaseModel):
    """Bestätigung oder Korrektur durch den Nutzer."""

    confirmed: bool
    corrected_category: Optional[Category] = None
    comments: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


class CaseRecord(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    case_id: str
    description: str
    created_at: datetime = Field(default_factory=utcnow)
    subject: Optional[str] = None
    history: list[QAPair] = Field(default_factory=list)
    classification: Optional[Classification] = None
    evaluation: Optional[DecisionMatrixEvaluation] = None
    manual_review: bool = False
    interview_skipped: bool = False
    feedback: Optional[Feedback] = None

    @property
    def has_feedback(self) -> bool:
        return self.feedback is not None and self.classification is not None

    @property
    def is_misclassified(self) -> bool:
        return self.has_feedback and not self.feedback.confirmed  # type: ignore[union-attr]

    @property
    def correct_category(self) -> Optional[Category]:
        """Vom Nutzer bestätigte bzw. korrigierte Kategorie."""
        if self.feedback is None or self.classification is None:
            return None
        if self.feedback.confirmed:
            return self.classification.category
        return self.feedback.corrected_category
