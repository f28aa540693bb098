"""Regelauswertung: deterministischer Abgleich von LLM-Klassifizierung und Regeln.

Reine Funktion ohne externe Aufrufe.  Ablauf:

1. Nur aktive Regeln berücksichtigen
2. Rangfolge: Priorität absteigend, bei Gleichstand Deklarationsreihenfolge
3. Bedingungen jeder Regel in Rangfolge prüfen (UND-Verknüpfung, eine
   Regel ohne Bedingungen trifft immer zu)
4. Aktionen aller passenden Regeln anwenden, und zwar in umgekehrter
   Rangfolge: die ranghöchste Regel wird zuletzt angewendet und hat bei
   konkurrierenden Overrides das letzte Wort
5. confidence-Deltas summieren sich, Ergebnis bleibt in [0, 1]

Bedingungen auf nicht deklarierte Attribute oder auf den Wert "unknown"
sind nie erfüllt.  Nicht deklarierte Attribute werden zusätzlich geloggt
und als EvaluationWarning im Ergebnis festgehalten, nie als Fehler
geworfen.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

from catalai.logging_config import get_logger
from catalai.matrix.models import (
    UNKNOWN,
    ActionType,
    Attribute,
    AttributeType,
    Classification,
    Condition,
    DecisionMatrix,
    DecisionMatrixEvaluation,
    EvaluationWarning,
    Operator,
    Rule,
    TriggeredRule,
)

logger = get_logger("matrix")

_TRUE_STRINGS = {"true", "yes", "y", "1", "ja"}
_FALSE_STRINGS = {"false", "no", "n", "0", "nein"}


# ---------------------------------------------------------------------------
# Öffentliche API
# ---------------------------------------------------------------------------

def rank_rules(rules: list[Rule]) -> list[Rule]:
    """Aktive Regeln in Rangfolge (Priorität absteigend, stabil)."""
    active = [rule for rule in rules if rule.active]
    return sorted(active, key=lambda rule: -rule.priority)


def evaluate(
    matrix: DecisionMatrix,
    attribute_values: Mapping[str, Any],
    classification: Classification,
) -> DecisionMatrixEvaluation:
    """Wendet die Regeln einer Matrix-Version auf eine Klassifizierung an.

    Args:
        matrix: Die für diese Anfrage aufgelöste Matrix-Version.
        attribute_values: Extrahierte Attributwerte (Name → Wert).
        classification: Eingehende Klassifizierung des LLM.

    Returns:
        DecisionMatrixEvaluation mit finaler Klassifizierung und
        ausgelösten Regeln in Anwendungsreihenfolge.
    """
    declared = {attribute.name: attribute for attribute in matrix.attributes}
    warnings: list[EvaluationWarning] = []

    matched = [
        rule
        for rule in rank_rules(matrix.rules)
        if _rule_matches(rule, declared, attribute_values, warnings)
    ]

    category = classification.category
    confidence = classification.confidence
    overridden = False
    review_flag = False
    triggered: list[TriggeredRule] = []

    for rule in reversed(matched):
        action = rule.action
        if action.type == ActionType.OVERRIDE and action.target_category is not None:
            category = action.target_category
            overridden = True
        elif action.type == ActionType.ADJUST_CONFIDENCE:
            confidence = _clamp(confidence + (action.confidence_adjustment or 0.0))
        elif action.type == ActionType.FLAG_REVIEW:
            review_flag = True

        triggered.append(
            TriggeredRule(
                rule_id=rule.rule_id,
                rule_name=rule.name,
                priority=rule.priority,
                action=action,
            )
        )

    final = classification.model_copy(
        update={"category": category, "confidence": confidence},
    )

    evaluation = DecisionMatrixEvaluation(
        matrix_version=matrix.version,
        extracted_attributes=dict(attribute_values),
        triggered_rules=triggered,
        original_classification=classification,
        final_classification=final,
        overridden=overridden,
        review_flag=review_flag,
        warnings=warnings,
    )

    logger.info(
        "Matrix v%s: %d/%d Regeln ausgelöst, %s (%.2f) → %s (%.2f), "
        "override=%s, review=%s",
        matrix.version,
        len(triggered),
        len(matrix.rules),
        classification.category.value,
        classification.confidence,
        category.value,
        confidence,
        overridden,
        review_flag,
    )
    return evaluation


# ---------------------------------------------------------------------------
# Bedingungen
# ---------------------------------------------------------------------------

def _rule_matches(
    rule: Rule,
    declared: Mapping[str, Attribute],
    values: Mapping[str, Any],
    warnings: list[EvaluationWarning],
) -> bool:
    for condition in rule.conditions:
        attribute = declared.get(condition.attribute)
        if attribute is None:
            logger.warning(
                "Regel '%s' referenziert unbekanntes Attribut '%s' – Bedingung gilt als falsch",
                rule.rule_id,
                condition.attribute,
            )
            warnings.append(
                EvaluationWarning(
                    rule_id=rule.rule_id,
                    attribute=condition.attribute,
                    reason="undeclared_attribute",
                )
            )
            return False
        if not evaluate_condition(condition, attribute, values.get(condition.attribute)):
            return False
    return True


def evaluate_condition(condition: Condition, attribute: Attribute, actual: Any) -> bool:
    """Prüft eine einzelne Bedingung gemäß dem deklarierten Attributtyp.

    Fehlende Werte, "unknown" und nicht konvertierbare Werte ergeben
    immer False, nie eine Exception.
    """
    if _is_missing(actual):
        return False

    if attribute.type == AttributeType.NUMERIC:
        return _compare(condition, actual, _to_number)
    if attribute.type == AttributeType.BOOLEAN:
        if condition.operator in (Operator.GT, Operator.LT, Operator.GE, Operator.LE):
            return False
        return _compare(condition, actual, _to_bool)
    if condition.operator in (Operator.GT, Operator.LT, Operator.GE, Operator.LE):
        # Kategoriale Werte haben keine Ordnung, numerische Werte schon
        return _compare(condition, actual, _to_number)
    return _compare(condition, actual, _to_text)


def _compare(condition: Condition, actual: Any, coerce: Any) -> bool:
    left = coerce(actual)
    if left is None:
        return False

    operator = condition.operator
    if operator in (Operator.IN, Operator.NOT_IN):
        candidates = condition.value if isinstance(condition.value, (list, tuple, set)) else [condition.value]
        coerced = [coerce(c) for c in candidates]
        contained = left in [c for c in coerced if c is not None]
        return contained if operator == Operator.IN else not contained

    right = coerce(condition.value)
    if right is None:
        return False

    if operator == Operator.EQ:
        return left == right
    if operator == Operator.NE:
        return left != right
    try:
        if operator == Operator.GT:
            return left > right
        if operator == Operator.LT:
            return left < right
        if operator == Operator.GE:
            return left >= right
        if operator == Operator.LE:
            return left <= right
    except TypeError:
        return False
    return False


# ---------------------------------------------------------------------------
# Typkonvertierung
# ---------------------------------------------------------------------------

def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    return isinstance(value, str) and value.strip().lower() in ("", UNKNOWN)


def _to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip().casefold()


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _to_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return None


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))
