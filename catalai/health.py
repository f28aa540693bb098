"""Health-Checks der Subsysteme für DecisionService.health().

Jeder Check liefert ein Dict mit mindestens "status".  Ausser dem
Schreibtest im Datenverzeichnis haben die Checks keine Seiteneffekte,
insbesondere löst der Matrix-Check keine Basis-Generierung aus.
"""

from __future__ import annotations

from typing import Any

from catalai.config import Settings
from catalai.matrix.storage import MatrixRepository


def check_api_key_present(settings: Settings) -> dict[str, Any]:
    """Nur Vorhandensein und Präfix, kein API-Call."""
    key = settings.anthropic_api_key
    if not key:
        return {"status": "not_configured"}
    return {"status": "ok", "model": settings.default_model, "key_prefix": f"{key[:12]}..."}


def check_storage_writable(settings: Settings) -> dict[str, Any]:
    """Schreibtest im Datenverzeichnis, dazu Zustand der DB-Datei."""
    probe = settings.data_dir / ".health_probe"
    result: dict[str, Any] = {"path": str(settings.data_dir)}
    try:
        settings.data_dir.mkdir(parents=True, exist_ok=True)
        probe.write_text("ok", encoding="utf-8")
        probe.unlink()
    except OSError as exc:
        return {**result, "status": "error", "error": str(exc)}

    db_path = settings.db_path
    result["database"] = str(db_path)
    result["database_bytes"] = db_path.stat().st_size if db_path.exists() else 0
    return {**result, "status": "ok"}


async def check_active_matrix(repository: MatrixRepository) -> dict[str, Any]:
    """Aktive Version und Regeln auf nicht deklarierte Attribute.

    "warning" heißt: die Matrix ist nutzbar, einzelne Bedingungen
    greifen aber nie.
    """
    matrix = await repository.get_active_matrix()
    if matrix is None:
        return {"status": "not_initialized"}

    declared = set(matrix.attribute_names())
    dangling = sorted(
        {
            f"{rule.rule_id}:{condition.attribute}"
            for rule in matrix.rules
            for condition in rule.conditions
            if condition.attribute not in declared
        }
    )
    return {
        "status": "warning" if dangling else "ok",
        "version": matrix.version,
        "attributes": len(matrix.attributes),
        "rules": len(matrix.rules),
        "active_rules": sum(1 for rule in matrix.rules if rule.active),
        "undeclared_references": dangling,
    }
