"""Datenmodell des Lernkreislaufs.

Analysen und Validierungsläufe sind nach der Erstellung unveränderlich.
Vorschläge durchlaufen den Status-Workflow aus learning.suggestions.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from catalai.logging_config import get_logger
from catalai.matrix.bootstrap import clamp, coerce_rule_payload
from catalai.matrix.models import (
    Attribute,
    Category,
    DecisionMatrix,
    Rule,
    utcnow,
)

logger = get_logger("learning")


class SuggestionType(str, Enum):
    NEW_RULE = "new_rule"
    MODIFY_RULE = "modify_rule"
    ADJUST_WEIGHT = "adjust_weight"
    NEW_ATTRIBUTE = "new_attribute"


class SuggestionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPLIED = "applied"


class AnalysisTrigger(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class ValidationOutcome(str, Enum):
    IMPROVED = "improved"
    UNCHANGED = "unchanged"
    WORSENED = "worsened"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Vorschläge
# ---------------------------------------------------------------------------

class ImpactEstimate(_CamelModel):
    affected_categories: list[Category] = Field(default_factory=list)
    expected_improvement_percent: float = Field(default=0.0, ge=0.0, le=100.0)
    confidence_level: float = Field(default=0.5, ge=0.0, le=1.0)


class SuggestedChange(_CamelModel):
    """Vorgeschlagene Matrix-Änderung, Nutzlast abhängig vom Typ.

    - new_rule:      new_rule
    - modify_rule:   rule_id + modified_rule
    - adjust_weight: attribute_name + new_weight
    - new_attribute: new_attribute
    """

    type: SuggestionType
    rationale: str = ""
    impact: ImpactEstimate = Field(default_factory=ImpactEstimate)
    new_rule: Optional[Rule] = None
    rule_id: Optional[str] = None
    modified_rule: Optional[Rule] = None
    attribute_name: Optional[str] = None
    new_weight: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    new_attribute: Optional[Attribute] = None

    @model_validator(mode="after")
    def _check_payload(self) -> "SuggestedChange":
        if self.type == SuggestionType.NEW_RULE and self.new_rule is None:
            raise ValueError("new_rule benötigt newRule")
        if self.type == SuggestionType.MODIFY_RULE and (
            self.rule_id is None or self.modified_rule is None
        ):
            raise ValueError("modify_rule benötigt ruleId und modifiedRule")
        if self.type == SuggestionType.ADJUST_WEIGHT and (
            self.attribute_name is None or self.new_weight is None
        ):
            raise ValueError("adjust_weight benötigt attributeName und newWeight")
        if self.type == SuggestionType.NEW_ATTRIBUTE and self.new_attribute is None:
            raise ValueError("new_attribute benötigt newAttribute")
        return self


class LearningSuggestion(_CamelModel):
    suggestion_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    analysis_id: str
    created_at: datetime = Field(default_factory=utcnow)
    status: SuggestionStatus = SuggestionStatus.PENDING
    change: SuggestedChange
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None
    applied_version: Optional[str] = None

    @property
    def type(self) -> SuggestionType:
        return self.change.type


def parse_suggested_changes(items: Any) -> list[SuggestedChange]:
    """Validiert rohe LLM-Vorschläge, ungültige werden verworfen.

    Wirkungsschätzungen werden begrenzt, neue Regeln erhalten bei Bedarf
    eine uuid als ruleId.
    """
    if not isinstance(items, list):
        return []

    changes: list[SuggestedChange] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        data = dict(item)
        payload = data.pop("suggestedChange", None) or data.pop("suggested_change", None) or {}
        if isinstance(payload, dict):
            data.update(payload)

        impact = dict(data.get("impactEstimate") or data.get("impact") or {})
        data.pop("impactEstimate", None)
        data["impact"] = {
            "affectedCategories": [
                c for c in (_safe_category(v) for v in impact.get("affectedCategories") or [])
                if c is not None
            ],
            "expectedImprovementPercent": clamp(
                impact.get("expectedImprovementPercent", 0), 0.0, 100.0, 0.0
            ),
            "confidenceLevel": clamp(impact.get("confidenceLevel", 0.5), 0.0, 1.0, 0.5),
        }
        for key in ("newRule", "modifiedRule"):
            if isinstance(data.get(key), dict):
                data[key] = coerce_rule_payload(data[key])
        if data.get("newWeight") is not None:
            data["newWeight"] = clamp(data["newWeight"], 0.0, 1.0, 0.5)
        if data.get("type") == SuggestionType.MODIFY_RULE.value and isinstance(
            data.get("modifiedRule"), dict
        ):
            # Geänderte Regel behält die ID der Originalregel
            if data.get("ruleId"):
                data["modifiedRule"]["ruleId"] = data["ruleId"]

        try:
            changes.append(SuggestedChange.model_validate(data))
        except ValidationError as exc:
            logger.warning(
                "Vorschlag vom Typ %r verworfen: %s",
                item.get("type"),
                exc.errors()[:1],
            )
    return changes


def _safe_category(value: Any) -> Optional[Category]:
    try:
        return Category.parse(value)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Analyse
# ---------------------------------------------------------------------------

class AgreementReport(_CamelModel):
    """Zustimmungsquoten gesamt und pro Kategorie.

    Ohne Feedback gilt 1.0, damit ein Kaltstart keinen Alarm auslöst.
    """

    overall: float = 1.0
    per_category: dict[Category, float] = Field(
        default_factory=lambda: {category: 1.0 for category in Category}
    )
    total_with_feedback: int = 0
    confirmed: int = 0
    counts_per_category: dict[Category, int] = Field(default_factory=dict)

    def categories_below(self, threshold: float) -> list[Category]:
        """Kategorien mit echtem Feedback, deren Quote unter `threshold` liegt."""
        return [
            category
            for category, rate in self.per_category.items()
            if self.counts_per_category.get(category, 0) > 0 and rate < threshold
        ]


class MisclassificationCluster(_CamelModel):
    from_category: Category
    to_category: Category
    count: int
    example_case_ids: list[str] = Field(default_factory=list)


class AnalysisEvidence(_CamelModel):
    """Verdichtete Datenlage, die an das LLM übergeben wird."""

    matrix: Optional[DecisionMatrix] = None
    agreement: AgreementReport
    misclassifications: list[MisclassificationCluster] = Field(default_factory=list)
    local_patterns: list[str] = Field(default_factory=list)
    examples: list[dict[str, Any]] = Field(default_factory=list)


class LearningAnalysis(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    analysis_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    trigger: AnalysisTrigger
    created_at: datetime = Field(default_factory=utcnow)
    range_start: Optional[datetime] = None
    range_end: Optional[datetime] = None
    misclassified_only: bool = False
    cases_analyzed: int = 0
    matrix_version: Optional[str] = None
    agreement: AgreementReport = Field(default_factory=AgreementReport)
    misclassifications: list[MisclassificationCluster] = Field(default_factory=list)
    identified_patterns: list[str] = Field(default_factory=list)
    suggestion_ids: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Validierung
# ---------------------------------------------------------------------------

class ValidationCaseResult(_CamelModel):
    case_id: str
    correct_category: Category
    original_category: Category
    new_category: Category
    outcome: ValidationOutcome


class ValidationTestResult(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    test_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = Field(default_factory=utcnow)
    matrix_version: str
    population_size: int
    sample_size: int
    improved: int = 0
    unchanged: int = 0
    worsened: int = 0
    skipped: int = 0
    improvement_rate: float = 0.0
    details: list[ValidationCaseResult] = Field(default_factory=list)
