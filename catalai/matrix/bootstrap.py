"""Bereinigung KI-generierter Matrix-Entwürfe.

Das LLM liefert Attribute und Regeln als freies JSON.  Bevor daraus eine
Matrix-Version wird, gelten dieselben Regeln wie für manuelle Entwürfe:

- Attribute ohne Namen, mit unbekanntem Typ oder (kategorial) ohne
  erlaubte Werte werden verworfen, Gewicht auf [0, 1] begrenzt
- Bedingungen auf unbekannte Attribute oder unzulässige Werte entfallen
- Regeln ohne gültige Bedingung werden übersprungen
- Override auf eine ungültige Kategorie wird zu adjust_confidence mit 0
- Priorität auf [0, 100] begrenzt (Default 50), fehlende IDs per uuid4
"""

from __future__ import annotations

import uuid
from typing import Any, Optional

from pydantic import ValidationError

from catalai.logging_config import get_logger
from catalai.matrix.models import (
    ActionType,
    Attribute,
    AttributeType,
    Category,
    Condition,
    MatrixDraft,
    Operator,
    Rule,
)

logger = get_logger("matrix")

# Vorschläge für den Generierungs-Prompt
DEFAULT_ATTRIBUTE_HINTS = (
    "frequency",
    "business_value",
    "complexity",
    "risk",
    "user_count",
    "data_sensitivity",
)

_VALUE_OPERATORS = (Operator.EQ, Operator.NE)
_LIST_OPERATORS = (Operator.IN, Operator.NOT_IN)


def clamp(value: Any, low: float, high: float, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    try:
        float(value)
    except (TypeError, ValueError):
        return False
    return True


def coerce_rule_payload(raw: dict[str, Any]) -> dict[str, Any]:
    """Vereinheitlicht ein Regel-Dict aus LLM-Antworten.

    Ergänzt fehlende IDs und Namen, begrenzt die Priorität und
    repariert ungültige Override-Ziele.
    """
    data = dict(raw)
    data["ruleId"] = str(data.get("ruleId") or data.get("rule_id") or uuid.uuid4())
    data.pop("rule_id", None)
    data["name"] = str(data.get("name") or "Unbenannte Regel")
    data["priority"] = int(clamp(data.get("priority", 50), 0, 100, 50))
    data["active"] = bool(data.get("active", True))

    action = dict(data.get("action") or {})
    if action.get("type") == ActionType.OVERRIDE.value:
        target = action.get("targetCategory", action.get("target_category"))
        if isinstance(target, list):
            target = target[0] if target else None
        try:
            action["targetCategory"] = Category.parse(target).value
        except ValueError:
            logger.warning(
                "Regel '%s': ungültige Zielkategorie %r – wird zu adjust_confidence(0)",
                data["name"],
                target,
            )
            action = {
                "type": ActionType.ADJUST_CONFIDENCE.value,
                "confidenceAdjustment": 0.0,
                "rationale": action.get("rationale", ""),
            }
    elif action.get("type") == ActionType.ADJUST_CONFIDENCE.value:
        delta = action.get("confidenceAdjustment", action.get("confidence_adjustment"))
        action["confidenceAdjustment"] = clamp(delta, -1.0, 1.0, 0.0)
    data["action"] = action
    return data


def sanitize_attribute(raw: Any) -> Optional[Attribute]:
    if not isinstance(raw, dict) or not raw.get("name"):
        return None
    data = dict(raw)
    data["weight"] = clamp(data.get("weight", 0.5), 0.0, 1.0, 0.5)
    try:
        attribute = Attribute.model_validate(data)
    except ValidationError as exc:
        logger.warning("Attribut '%s' verworfen: %s", raw.get("name"), exc.errors()[:1])
        return None
    if attribute.type == AttributeType.CATEGORICAL and not attribute.possible_values:
        logger.warning("Kategoriales Attribut '%s' ohne erlaubte Werte verworfen", attribute.name)
        return None
    return attribute


def sanitize_condition(raw: Any, attributes: dict[str, Attribute]) -> Optional[Condition]:
    if not isinstance(raw, dict):
        return None
    try:
        condition = Condition.model_validate(raw)
    except ValidationError:
        return None

    attribute = attributes.get(condition.attribute)
    if attribute is None:
        return None

    if attribute.type == AttributeType.CATEGORICAL:
        allowed = {v.casefold() for v in attribute.allowed_values}
        if condition.operator in _LIST_OPERATORS:
            values = condition.value if isinstance(condition.value, list) else [condition.value]
            if not values or any(str(v).casefold() not in allowed for v in values):
                return None
        elif condition.operator in _VALUE_OPERATORS:
            if str(condition.value).casefold() not in allowed:
                return None
    elif attribute.type == AttributeType.NUMERIC and condition.operator not in _LIST_OPERATORS:
        if not _is_number(condition.value):
            return None
    return condition


def sanitize_rule(raw: Any, attributes: dict[str, Attribute]) -> Optional[Rule]:
    if not isinstance(raw, dict):
        return None
    data = coerce_rule_payload(raw)
    declared = data.get("conditions") or []
    conditions = [
        condition
        for condition in (sanitize_condition(c, attributes) for c in declared)
        if condition is not None
    ]
    # Regeln ohne Bedingungen gelten immer; nur komplett ungültige fallen weg
    if declared and not conditions:
        logger.warning("Regel '%s' ohne gültige Bedingung übersprungen", data["name"])
        return None
    data["conditions"] = [c.model_dump(by_alias=True) for c in conditions]
    try:
        return Rule.model_validate(data)
    except ValidationError as exc:
        logger.warning("Regel '%s' verworfen: %s", data["name"], exc.errors()[:1])
        return None


def sanitize_draft(raw: dict[str, Any]) -> MatrixDraft:
    """Baut aus einer LLM-Antwort einen gültigen MatrixDraft."""
    attributes: dict[str, Attribute] = {}
    for item in raw.get("attributes") or []:
        attribute = sanitize_attribute(item)
        if attribute is not None and attribute.name not in attributes:
            attributes[attribute.name] = attribute

    rules: list[Rule] = []
    seen_ids: set[str] = set()
    for item in raw.get("rules") or []:
        rule = sanitize_rule(item, attributes)
        if rule is None:
            continue
        if rule.rule_id in seen_ids:
            rule = rule.model_copy(update={"rule_id": str(uuid.uuid4())})
        seen_ids.add(rule.rule_id)
        rules.append(rule)

    logger.info(
        "Matrix-Entwurf bereinigt: %d/%d Attribute, %d/%d Regeln übernommen",
        len(attributes),
        len(raw.get("attributes") or []),
        len(rules),
        len(raw.get("rules") or []),
    )
    return MatrixDraft(
        description=str(raw.get("description") or "KI-generierte Basis-Matrix"),
        attributes=list(attributes.values()),
        rules=rules,
    )
