"""Datenmodell der Decision Matrix.

Pydantic-Modelle für Klassifizierung, Attribute, Regeln und
Matrix-Versionen.  Die JSON-Form (camelCase, `possibleValues`) entspricht
dem persistierten Matrix-Dateiformat:

    {"version": "1.0", "createdAt": "...", "createdBy": "ai",
     "description": "...", "attributes": [...], "rules": [...],
     "active": true}

Veröffentlichte Versionen, Klassifizierungen und Auswertungen sind
eingefroren (frozen=True).  Änderungen laufen immer über einen
MatrixDraft, der beim Speichern zu einer neuen Version wird.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


# Platzhalter für fehlende oder nicht parsbare Attributwerte
UNKNOWN = "unknown"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Category(str, Enum):
    """Die sechs Transformationsstufen, aufsteigend nach Automatisierungsgrad."""
    ELIMINATE = "Eliminate"
    SIMPLIFY = "Simplify"
    DIGITISE = "Digitise"
    RPA = "RPA"
    AI_AGENT = "AI Agent"
    AGENTIC_AI = "Agentic AI"

    @property
    def tier(self) -> int:
        """Position in der Stufenfolge (0 = Eliminate)."""
        return list(Category).index(self)

    @classmethod
    def parse(cls, value: Any) -> "Category":
        """Toleranter Parser für LLM- und Formulareingaben.

        Akzeptiert Groß-/Kleinschreibung, Bindestriche/Unterstriche und
        die US-Schreibweise "Digitize".

        Raises:
            ValueError: Wenn kein bekannter Kategoriename erkannt wird.
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Kategorie muss ein String sein, nicht {type(value).__name__}")
        key = " ".join(value.replace("-", " ").replace("_", " ").split()).lower()
        key = _CATEGORY_ALIASES.get(key, key)
        for member in cls:
            if member.value.lower() == key:
                return member
        raise ValueError(f"Unbekannte Kategorie: '{value}'")


_CATEGORY_ALIASES = {
    "digitize": "digitise",
    "digitalise": "digitise",
    "digitalize": "digitise",
    "robotic process automation": "rpa",
    "ai agents": "ai agent",
    "agentic": "agentic ai",
}


class AttributeType(str, Enum):
    CATEGORICAL = "categorical"
    NUMERIC = "numeric"
    BOOLEAN = "boolean"


class Operator(str, Enum):
    EQ = "=="
    NE = "!="
    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="
    IN = "in"
    NOT_IN = "not_in"


class ActionType(str, Enum):
    OVERRIDE = "override"
    ADJUST_CONFIDENCE = "adjust_confidence"
    FLAG_REVIEW = "flag_review"


class CreatedBy(str, Enum):
    AI = "ai"
    ADMIN = "admin"


class _CamelModel(BaseModel):
    """Basis: camelCase im JSON, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        protected_namespaces=(),
    )


# ---------------------------------------------------------------------------
# Klassifizierung
# ---------------------------------------------------------------------------

class Classification(_CamelModel):
    """Ein Klassifizierungsergebnis.  Jeder Versuch erzeugt ein neues Objekt."""

    category: Category
    confidence: float = Field(ge=0.0, le=1.0)
    rationale: str = ""
    category_progression: str = ""
    future_opportunities: str = ""
    model_used: str = ""
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("category", mode="before")
    @classmethod
    def _parse_category(cls, v: Any) -> Category:
        return Category.parse(v)


# ---------------------------------------------------------------------------
# Attribute, Bedingungen, Regeln
# ---------------------------------------------------------------------------

class Attribute(_CamelModel):
    """Deklariertes Merkmal eines Falls (z.B. data_sensitivity)."""

    name: str = Field(min_length=1)
    type: AttributeType
    possible_values: Optional[list[str]] = None
    weight: float = Field(default=0.5, ge=0.0, le=1.0)
    description: str = ""

    @property
    def allowed_values(self) -> list[str]:
        return list(self.possible_values or [])


class Condition(_CamelModel):
    attribute: str
    operator: Operator
    value: Any = None


class RuleAction(_CamelModel):
    """Genau eine Aktion pro Regel, immer mit Begründung für das Audit-Log."""

    type: ActionType
    target_category: Optional[Category] = None
    confidence_adjustment: Optional[float] = Field(default=None, ge=-1.0, le=1.0)
    rationale: str = ""

    @field_validator("target_category", mode="before")
    @classmethod
    def _parse_target(cls, v: Any) -> Optional[Category]:
        # LLM liefert gelegentlich ["RPA"] statt "RPA"
        if isinstance(v, list):
            v = v[0] if v else None
        if v is None or v == "":
            return None
        return Category.parse(v)

    @model_validator(mode="after")
    def _check_payload(self) -> "RuleAction":
        if self.type == ActionType.OVERRIDE and self.target_category is None:
            raise ValueError("override benötigt targetCategory")
        if self.type == ActionType.ADJUST_CONFIDENCE and self.confidence_adjustment is None:
            raise ValueError("adjust_confidence benötigt confidenceAdjustment")
        return self


class Rule(_CamelModel):
    rule_id: str = Field(min_length=1)
    name: str
    description: str = ""
    conditions: list[Condition] = Field(default_factory=list)
    action: RuleAction
    priority: int = Field(default=50, ge=0, le=100)
    active: bool = True


# ---------------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------------

class MatrixDraft(BaseModel):
    """Bearbeitbarer Entwurf, aus dem beim Speichern eine neue Version wird."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    description: str = ""
    attributes: list[Attribute] = Field(default_factory=list)
    rules: list[Rule] = Field(default_factory=list)


class DecisionMatrix(_CamelModel):
    """Eine veröffentlichte, unveränderliche Matrix-Version."""

    version: str
    created_at: datetime = Field(default_factory=utcnow)
    created_by: CreatedBy
    description: str = ""
    attributes: list[Attribute] = Field(default_factory=list)
    rules: list[Rule] = Field(default_factory=list)
    active: bool = False

    @field_validator("version")
    @classmethod
    def _check_version(cls, v: str) -> str:
        parse_version(v)
        return v

    @property
    def version_key(self) -> tuple[int, int]:
        return parse_version(self.version)

    def get_attribute(self, name: str) -> Optional[Attribute]:
        for attribute in self.attributes:
            if attribute.name == name:
                return attribute
        return None

    def attribute_names(self) -> list[str]:
        return [a.name for a in self.attributes]

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        for rule in self.rules:
            if rule.rule_id == rule_id:
                return rule
        return None

    def to_draft(self) -> MatrixDraft:
        """Kopie als Entwurf für die nächste Version."""
        return MatrixDraft(
            description=self.description,
            attributes=list(self.attributes),
            rules=list(self.rules),
        )

    def to_file_json(self, indent: int | None = 2) -> str:
        """Serialisiert im persistierten Dateiformat."""
        return json.dumps(
            self.model_dump(mode="json", by_alias=True),
            indent=indent,
            ensure_ascii=False,
        )

    @classmethod
    def from_file_json(cls, raw: str | bytes) -> "DecisionMatrix":
        return cls.model_validate_json(raw)


# ---------------------------------------------------------------------------
# Auswertung
# ---------------------------------------------------------------------------

class TriggeredRule(_CamelModel):
    """Eine ausgelöste Regel mit der Aktion, die sie beigetragen hat."""

    rule_id: str
    rule_name: str
    priority: int
    action: RuleAction


class EvaluationWarning(_CamelModel):
    """Strukturierter Hinweis auf eine inkonsistente Regel."""

    rule_id: str
    attribute: str
    reason: str


class DecisionMatrixEvaluation(_CamelModel):
    """Protokoll einer Regelauswertung, genau eines pro Klassifizierungsversuch."""

    matrix_version: str
    extracted_attributes: dict[str, Any] = Field(default_factory=dict)
    triggered_rules: list[TriggeredRule] = Field(default_factory=list)
    original_classification: Classification
    final_classification: Classification
    overridden: bool = False
    review_flag: bool = False
    warnings: list[EvaluationWarning] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Versionsnummern
# ---------------------------------------------------------------------------

def parse_version(version: str) -> tuple[int, int]:
    """Zerlegt "major.minor" in ein sortierbares Tupel.

    Raises:
        ValueError: Bei ungültigem Format.
    """
    parts = version.split(".")
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        raise ValueError(f"Ungültige Versionsnummer: '{version}' (erwartet major.minor)")
    return int(parts[0]), int(parts[1])


def next_version(current: Optional[str], major_bump: bool = False) -> str:
    """Nächste Versionsnummer: "1.0" → "1.1", mit major_bump "1.7" → "2.0".

    Ohne bestehende Version beginnt die Zählung bei "1.0".
    """
    if current is None:
        return "1.0"
    major, minor = parse_version(current)
    if major_bump:
        return f"{major + 1}.0"
    return f"{major}.{minor + 1}"
