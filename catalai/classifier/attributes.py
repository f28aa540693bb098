"""Normalisierung extrahierter Attributwerte.

Das LLM liefert eine freie Zuordnung Name → Wert.  Für jedes in der
Matrix deklarierte Attribut wird daraus ein typgerechter Wert oder der
Platzhalter "unknown":

- kategorial: nur erlaubte Werte (Groß-/Kleinschreibung egal), sonst unknown
- numerisch: float, sonst unknown
- boolesch: True/False aus bool, 0/1, "yes"/"no", ..., sonst unknown

Zusätzliche, nicht deklarierte Schlüssel werden verworfen.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

from catalai.logging_config import get_logger
from catalai.matrix.models import UNKNOWN, Attribute, AttributeType, DecisionMatrix

logger = get_logger("classifier")

_TRUE = {"true", "yes", "y", "1"}
_FALSE = {"false", "no", "n", "0"}


def unknown_attributes(matrix: DecisionMatrix) -> dict[str, Any]:
    """Alle deklarierten Attribute mit Wert "unknown"."""
    return {attribute.name: UNKNOWN for attribute in matrix.attributes}


def normalize_attributes(matrix: DecisionMatrix, raw: Mapping[str, Any]) -> dict[str, Any]:
    """Bringt LLM-Werte in die deklarierten Typen.

    Args:
        matrix: Matrix-Version mit den Attribut-Deklarationen.
        raw: Rohwerte vom LLM.

    Returns:
        Dict mit genau einem Eintrag pro deklariertem Attribut.
    """
    values: dict[str, Any] = {}
    unresolved: list[str] = []
    for attribute in matrix.attributes:
        value = _coerce(attribute, raw.get(attribute.name))
        if value is None:
            unresolved.append(attribute.name)
            value = UNKNOWN
        values[attribute.name] = value

    if unresolved:
        logger.info(
            "Attribute ohne verwertbaren Wert (→ unknown): %s",
            ", ".join(unresolved),
        )
    return values


def _coerce(attribute: Attribute, value: Any) -> Optional[Any]:
    if value is None:
        return None
    if isinstance(value, str) and value.strip().lower() in ("", UNKNOWN):
        return None

    if attribute.type == AttributeType.NUMERIC:
        if isinstance(value, bool):
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    if attribute.type == AttributeType.BOOLEAN:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        return None

    text = str(value).strip()
    for allowed in attribute.allowed_values:
        if allowed.casefold() == text.casefold():
            return allowed
    return None
