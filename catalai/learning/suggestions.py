"""Status-Workflow für Regelvorschläge.

Übergangstabelle:

    pending  → approved, rejected
    approved → applied
    rejected → (terminal)
    applied  → (terminal)

Jeder andere Übergang wird mit WorkflowViolationError abgelehnt.  Ein
genehmigter Vorschlag wird in eine neue Matrix-Version überführt
(MatrixStore.save), erst danach ist er "applied".
"""

from __future__ import annotations

import uuid
from typing import Optional, TypeVar

from catalai.exceptions import NotFoundError, SuggestionApplyError, WorkflowViolationError
from catalai.learning.models import (
    LearningSuggestion,
    SuggestedChange,
    SuggestionStatus,
    SuggestionType,
)
from catalai.learning.storage import LearningStorage
from catalai.logging_config import get_logger
from catalai.matrix.models import CreatedBy, DecisionMatrix, MatrixDraft, utcnow
from catalai.matrix.store import MatrixStore

logger = get_logger("learning")

T = TypeVar("T")


TRANSITIONS: dict[SuggestionStatus, frozenset[SuggestionStatus]] = {
    SuggestionStatus.PENDING: frozenset({SuggestionStatus.APPROVED, SuggestionStatus.REJECTED}),
    SuggestionStatus.APPROVED: frozenset({SuggestionStatus.APPLIED}),
    SuggestionStatus.REJECTED: frozenset(),
    SuggestionStatus.APPLIED: frozenset(),
}


def can_transition(current: SuggestionStatus, target: SuggestionStatus) -> bool:
    return target in TRANSITIONS[current]


def transition(
    suggestion: LearningSuggestion,
    target: SuggestionStatus,
    **updates: object,
) -> LearningSuggestion:
    """Neuer Vorschlagsstand mit Status `target`.

    Raises:
        WorkflowViolationError: Übergang nicht in der Tabelle.
    """
    if not can_transition(suggestion.status, target):
        raise WorkflowViolationError(
            "Vorschlag",
            suggestion.suggestion_id,
            suggestion.status.value,
            target.value,
        )
    return suggestion.model_copy(update={"status": target, **updates})


def apply_change(matrix: DecisionMatrix, change: SuggestedChange) -> MatrixDraft:
    """Überträgt eine Änderung auf einen Entwurf der aktiven Matrix.

    Raises:
        SuggestionApplyError: Referenzierte Regel/Attribut fehlt oder existiert schon.
    """
    draft = matrix.to_draft()

    if change.type == SuggestionType.NEW_RULE:
        rule = _payload(change, change.new_rule, "newRule")
        if matrix.get_rule(rule.rule_id) is not None:
            rule = rule.model_copy(update={"rule_id": str(uuid.uuid4())})
        draft.rules.append(rule)

    elif change.type == SuggestionType.MODIFY_RULE:
        index = _index_of_rule(draft, change.rule_id or "")
        if index is None:
            raise SuggestionApplyError(
                f"Regel '{change.rule_id}' existiert nicht in Matrix {matrix.version}",
                stage="suggestion_apply",
            )
        modified = _payload(change, change.modified_rule, "modifiedRule")
        draft.rules[index] = modified.model_copy(update={"rule_id": change.rule_id})

    elif change.type == SuggestionType.ADJUST_WEIGHT:
        for i, attribute in enumerate(draft.attributes):
            if attribute.name == change.attribute_name:
                draft.attributes[i] = attribute.model_copy(update={"weight": change.new_weight})
                break
        else:
            raise SuggestionApplyError(
                f"Attribut '{change.attribute_name}' existiert nicht in Matrix {matrix.version}",
                stage="suggestion_apply",
            )

    elif change.type == SuggestionType.NEW_ATTRIBUTE:
        attribute = _payload(change, change.new_attribute, "newAttribute")
        if matrix.get_attribute(attribute.name) is not None:
            raise SuggestionApplyError(
                f"Attribut '{attribute.name}' existiert bereits in Matrix {matrix.version}",
                stage="suggestion_apply",
            )
        draft.attributes.append(attribute)

    return draft


def _payload(change: SuggestedChange, value: Optional[T], field: str) -> T:
    # model_construct umgeht die Nutzlast-Prüfung von SuggestedChange
    if value is None:
        raise SuggestionApplyError(
            f"Änderung vom Typ {change.type.value} ohne {field}",
            stage="suggestion_apply",
        )
    return value


def _index_of_rule(draft: MatrixDraft, rule_id: str) -> Optional[int]:
    for i, rule in enumerate(draft.rules):
        if rule.rule_id == rule_id:
            return i
    return None


class SuggestionWorkflow:
    """Genehmigen, Ablehnen und Übernehmen von Vorschlägen.

    Verwendung:
        workflow = SuggestionWorkflow(storage, matrix_store)
        applied = await workflow.approve(suggestion_id, reviewer="admin")
    """

    def __init__(self, storage: LearningStorage, matrix_store: MatrixStore) -> None:
        self._storage = storage
        self._store = matrix_store

    async def get(self, suggestion_id: str) -> LearningSuggestion:
        """Raises:
            NotFoundError: Unbekannte ID.
        """
        suggestion = await self._storage.get_suggestion(suggestion_id)
        if suggestion is None:
            raise NotFoundError("Vorschlag", suggestion_id)
        return suggestion

    async def list(self, status: SuggestionStatus | None = None) -> list[LearningSuggestion]:
        return await self._storage.list_suggestions(status)

    async def approve(
        self,
        suggestion_id: str,
        reviewer: str,
        notes: str | None = None,
        apply: bool = True,
    ) -> LearningSuggestion:
        """pending → approved, bei apply=True direkt weiter nach applied.

        Raises:
            NotFoundError, WorkflowViolationError, SuggestionApplyError
        """
        current = await self.get(suggestion_id)
        approved = transition(
            current,
            SuggestionStatus.APPROVED,
            reviewed_by=reviewer,
            reviewed_at=utcnow(),
            review_notes=notes,
        )
        await self._storage.update_suggestion(approved, expected_status=current.status)
        logger.info("Vorschlag %s genehmigt von %s", suggestion_id, reviewer)

        if not apply:
            return approved
        return await self._apply(approved)

    async def reject(
        self,
        suggestion_id: str,
        reviewer: str,
        notes: str | None = None,
    ) -> LearningSuggestion:
        """pending → rejected (terminal)."""
        current = await self.get(suggestion_id)
        rejected = transition(
            current,
            SuggestionStatus.REJECTED,
            reviewed_by=reviewer,
            reviewed_at=utcnow(),
            review_notes=notes,
        )
        await self._storage.update_suggestion(rejected, expected_status=current.status)
        logger.info("Vorschlag %s abgelehnt von %s", suggestion_id, reviewer)
        return rejected

    async def apply(self, suggestion_id: str) -> LearningSuggestion:
        """approved → applied für einen bereits genehmigten Vorschlag."""
        return await self._apply(await self.get(suggestion_id))

    async def _apply(self, suggestion: LearningSuggestion) -> LearningSuggestion:
        if not can_transition(suggestion.status, SuggestionStatus.APPLIED):
            raise WorkflowViolationError(
                "Vorschlag",
                suggestion.suggestion_id,
                suggestion.status.value,
                SuggestionStatus.APPLIED.value,
            )

        matrix = await self._store.get_active()
        draft = apply_change(matrix, suggestion.change)
        draft.description = (
            f"Vorschlag {suggestion.suggestion_id} ({suggestion.type.value}) übernommen"
        )
        saved = await self._store.save(
            draft,
            created_by=CreatedBy.ADMIN,
            base_version=matrix.version,
        )

        applied = transition(
            suggestion,
            SuggestionStatus.APPLIED,
            applied_version=saved.matrix.version,
        )
        await self._storage.update_suggestion(applied, expected_status=suggestion.status)
        logger.info(
            "Vorschlag %s übernommen: Matrix %s → %s",
            suggestion.suggestion_id,
            matrix.version,
            saved.matrix.version,
        )
        return applied
