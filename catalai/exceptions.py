"""Fehlerhierarchie des Decision Core.

Hierarchie:
    DecisionCoreError (Basis)
    ├── RetryableTurnError       – Kollaborator-Fehler nach erschöpften Retries
    ├── WorkflowViolationError   – unzulässiger Statusübergang eines Vorschlags
    ├── NotFoundError            – Matrix-Version, Vorschlag oder Fall fehlt
    ├── MatrixValidationError    – Matrix-Entwurf verletzt Strukturregeln
    └── SuggestionApplyError     – genehmigte Änderung nicht anwendbar

Jeder Fehler trägt Kontext (case_id, stage, cause) für die
Rekonstruktion aus dem Audit-Log.  LLM-spezifische Fehler liegen in
catalai.llm.client.
"""

from __future__ import annotations

from typing import Any


class DecisionCoreError(Exception):
    """Basisklasse für alle Fehler des Decision Core."""

    def __init__(
        self,
        message: str,
        *,
        case_id: str | None = None,
        stage: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.case_id = case_id
        self.stage = stage
        self.cause = cause

    @property
    def retryable(self) -> bool:
        return False

    def to_dict(self) -> dict[str, Any]:
        """Strukturierter Kontext für Audit-Log und API-Antworten."""
        return {
            "error": type(self).__name__,
            "message": str(self),
            "case_id": self.case_id,
            "stage": self.stage,
            "cause": repr(self.cause) if self.cause is not None else None,
            "retryable": self.retryable,
        }


class RetryableTurnError(DecisionCoreError):
    """Ein Dialog-Schritt ist fehlgeschlagen, es wurde nichts gespeichert.

    Der Aufrufer darf denselben Schritt mit unverändertem Session-Stand
    erneut einreichen.
    """

    @property
    def retryable(self) -> bool:
        return True


class WorkflowViolationError(DecisionCoreError):
    """Statusübergang ist laut Übergangstabelle nicht erlaubt."""

    def __init__(self, entity: str, entity_id: str, current: str, target: str) -> None:
        super().__init__(
            f"{entity} {entity_id}: Übergang {current} → {target} nicht erlaubt",
            stage="workflow",
        )
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.target = target


class NotFoundError(DecisionCoreError):
    """Angeforderte Ressource existiert nicht."""

    def __init__(self, resource_type: str, resource_id: str) -> None:
        super().__init__(
            f"{resource_type} '{resource_id}' nicht gefunden",
            stage="lookup",
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class MatrixValidationError(DecisionCoreError):
    """Matrix-Entwurf ist strukturell ungültig (z.B. doppelte Attributnamen)."""


class SuggestionApplyError(DecisionCoreError):
    """Genehmigter Vorschlag kann nicht in eine neue Matrix-Version überführt werden."""
