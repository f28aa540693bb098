"""Shared fixtures and a scripted fake LLM collaborator."""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Optional, Sequence

import pytest
import pytest_asyncio

from catalai.cases import QAPair
from catalai.clarification.models import ClarificationQuestion
from catalai.db.database import Database
from catalai.learning.models import AnalysisEvidence, SuggestedChange
from catalai.llm.retry import RetryPolicy
from catalai.matrix.models import (
    ActionType,
    Attribute,
    AttributeType,
    Category,
    Classification,
    Condition,
    MatrixDraft,
    Operator,
    Rule,
    RuleAction,
)
from catalai.matrix.storage import SqliteMatrixRepository
from catalai.matrix.store import MatrixStore


class FakeLLM:
    """Scripted stand-in for LLMClient.

    Every operation pops its next scripted response. The last entry is
    sticky, so a single exception keeps failing on every retry. Entries
    that are exceptions are raised instead of returned.
    """

    def __init__(
        self,
        classifications: Sequence[Any] = (),
        questions: Sequence[Any] = (),
        attributes: Sequence[Any] = (),
        suggestions: Sequence[Any] = (),
        patterns: Sequence[Any] = (),
        initial_matrix: Optional[Any] = None,
    ) -> None:
        self._scripts: dict[str, list[Any]] = {
            "classify": list(classifications),
            "generate_questions": list(questions),
            "extract_attributes": list(attributes),
            "generate_rule_suggestions": list(suggestions),
            "summarize_patterns": list(patterns),
            "generate_initial_matrix": [initial_matrix] if initial_matrix is not None else [],
        }
        self.calls: dict[str, int] = defaultdict(int)
        self.received: dict[str, list[Any]] = defaultdict(list)

    def _next(self, operation: str, default: Any = None) -> Any:
        self.calls[operation] += 1
        script = self._scripts[operation]
        if not script:
            return default
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, BaseException):
            raise item
        return item

    async def classify(self, description: str, history: Sequence[QAPair]) -> Classification:
        self.received["classify"].append(list(history))
        return self._next("classify")

    async def generate_questions(
        self,
        description: str,
        classification: Classification,
        history: Sequence[QAPair],
        remaining_budget: int,
        max_questions: int = 3,
    ) -> list[ClarificationQuestion]:
        self.received["generate_questions"].append(max_questions)
        return self._next("generate_questions", default=[])

    async def extract_attributes(
        self,
        description: str,
        history: Sequence[QAPair],
        attributes: Sequence[Attribute],
    ) -> dict[str, Any]:
        return self._next("extract_attributes", default={})

    async def generate_rule_suggestions(self, evidence: AnalysisEvidence) -> list[SuggestedChange]:
        self.received["generate_rule_suggestions"].append(evidence)
        return self._next("generate_rule_suggestions", default=[])

    async def summarize_patterns(self, evidence: AnalysisEvidence) -> list[str]:
        return self._next("summarize_patterns", default=[])

    async def generate_initial_matrix(self) -> MatrixDraft:
        return self._next("generate_initial_matrix")


def classification(category: Category = Category.RPA, confidence: float = 0.7) -> Classification:
    return Classification(category=category, confidence=confidence, rationale="test")


def question(text: str, critical: bool = False) -> ClarificationQuestion:
    return ClarificationQuestion(question=text, purpose="test", critical=critical)


def sensitivity_attribute() -> Attribute:
    return Attribute(
        name="data_sensitivity",
        type=AttributeType.CATEGORICAL,
        possible_values=["public", "internal", "confidential", "restricted"],
        weight=0.8,
    )


def review_rule() -> Rule:
    return Rule(
        rule_id="restricted-review",
        name="Restricted data needs review",
        conditions=[
            Condition(attribute="data_sensitivity", operator=Operator.EQ, value="restricted"),
        ],
        action=RuleAction(type=ActionType.FLAG_REVIEW, rationale="restricted data"),
        priority=80,
    )


def make_draft(rules: Optional[list[Rule]] = None, description: str = "test matrix") -> MatrixDraft:
    return MatrixDraft(
        description=description,
        attributes=[
            sensitivity_attribute(),
            Attribute(name="volume", type=AttributeType.NUMERIC, weight=0.5),
            Attribute(name="rule_based", type=AttributeType.BOOLEAN, weight=0.6),
        ],
        rules=[review_rule()] if rules is None else rules,
    )


@pytest.fixture
def fast_policy() -> RetryPolicy:
    """Retry policy without backoff delays."""
    return RetryPolicy(attempts=2, timeout_seconds=5, backoff_min=0, backoff_max=0)


@pytest_asyncio.fixture
async def db(tmp_path):
    """Initialized on-disk SQLite database in a temp directory."""
    database = Database(tmp_path / "decision_core.db")
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def repository(db) -> SqliteMatrixRepository:
    return SqliteMatrixRepository(db)


@pytest.fixture
def store(repository) -> MatrixStore:
    return MatrixStore(repository)
