"""Tests for agreement analysis, the suggestion workflow and validation tests."""

import random
from datetime import timedelta

import pytest
import pytest_asyncio

from catalai.cases import CaseRecord, Feedback
from catalai.exceptions import NotFoundError, SuggestionApplyError, WorkflowViolationError
from catalai.learning.analyzer import (
    LearningAnalyzer,
    cluster_misclassifications,
    compute_agreement,
    detect_patterns,
)
from catalai.learning.models import (
    AnalysisTrigger,
    LearningAnalysis,
    LearningSuggestion,
    SuggestedChange,
    SuggestionStatus,
    SuggestionType,
    ValidationOutcome,
)
from catalai.learning.storage import LearningStorage
from catalai.learning.suggestions import SuggestionWorkflow, apply_change, can_transition
from catalai.learning.trigger import LearningTrigger
from catalai.learning.validation import MatrixValidator, classify_outcome, sample_size
from catalai.llm.client import LLMAPIError
from catalai.matrix.models import (
    ActionType,
    Attribute,
    AttributeType,
    Category,
    Condition,
    CreatedBy,
    DecisionMatrix,
    DecisionMatrixEvaluation,
    Operator,
    Rule,
    RuleAction,
    utcnow,
)

from conftest import FakeLLM, classification, make_draft, review_rule


def case(
    case_id: str,
    predicted: Category,
    confirmed: bool | None,
    corrected: Category | None = None,
    confidence: float = 0.8,
    subject: str | None = None,
    attributes: dict | None = None,
) -> CaseRecord:
    c = classification(predicted, confidence)
    feedback = None
    if confirmed is not None:
        feedback = Feedback(confirmed=confirmed, corrected_category=corrected)
    evaluation = None
    if attributes is not None:
        evaluation = DecisionMatrixEvaluation(
            matrix_version="1.0",
            extracted_attributes=attributes,
            original_classification=c,
            final_classification=c,
        )
    return CaseRecord(
        case_id=case_id,
        description=f"Process {case_id}",
        subject=subject,
        classification=c,
        evaluation=evaluation,
        feedback=feedback,
    )


def simplify_rule() -> Rule:
    return Rule(
        rule_id="restricted-simplify",
        name="Restricted processes are simplified first",
        conditions=[Condition(attribute="data_sensitivity", operator=Operator.EQ, value="restricted")],
        action=RuleAction(type=ActionType.OVERRIDE, target_category=Category.SIMPLIFY),
        priority=70,
    )


def new_rule_change() -> SuggestedChange:
    return SuggestedChange(
        type=SuggestionType.NEW_RULE,
        rationale="RPA is often corrected to Simplify for restricted data",
        new_rule=simplify_rule(),
    )


@pytest.fixture
def storage(db) -> LearningStorage:
    return LearningStorage(db)


@pytest_asyncio.fixture
async def seeded(db, store):
    await store.save(make_draft())
    return store


async def save_cases(db, cases):
    for record in cases:
        await db.save_case(record)


class TestAgreement:
    """Agreement rates and misclassification clusters."""

    def test_cold_start_is_perfect_agreement(self):
        """Test that no feedback means 1.0 overall and for every category."""
        report = compute_agreement([case("c1", Category.RPA, confirmed=None)])

        assert report.overall == 1.0
        assert set(report.per_category) == set(Category)
        assert all(rate == 1.0 for rate in report.per_category.values())
        assert report.total_with_feedback == 0
        assert report.categories_below(0.8) == []

    def test_rates_per_category(self):
        """Test overall and per-category rates from mixed feedback."""
        report = compute_agreement([
            case("c1", Category.RPA, confirmed=True),
            case("c2", Category.RPA, confirmed=True),
            case("c3", Category.RPA, confirmed=False, corrected=Category.SIMPLIFY),
            case("c4", Category.SIMPLIFY, confirmed=True),
        ])

        assert report.overall == 0.75
        assert abs(report.per_category[Category.RPA] - 2 / 3) < 1e-9
        assert report.per_category[Category.SIMPLIFY] == 1.0
        assert report.per_category[Category.AGENTIC_AI] == 1.0
        assert report.categories_below(0.8) == [Category.RPA]

    def test_clusters_sorted_with_capped_examples(self):
        """Test clustering by pair, frequency order and at most five examples."""
        cases = [
            case(f"rpa-{i}", Category.RPA, confirmed=False, corrected=Category.SIMPLIFY)
            for i in range(7)
        ] + [case("agent-1", Category.AI_AGENT, confirmed=False, corrected=Category.AGENTIC_AI)]

        clusters = cluster_misclassifications(cases)

        assert [(c.from_category, c.to_category, c.count) for c in clusters] == [
            (Category.RPA, Category.SIMPLIFY, 7),
            (Category.AI_AGENT, Category.AGENTIC_AI, 1),
        ]
        assert clusters[0].example_case_ids == [f"rpa-{i}" for i in range(5)]

    def test_local_patterns(self):
        """Test the local heuristics for tier direction, confidence and subjects."""
        cases = [
            case("c1", Category.RPA, confirmed=False, corrected=Category.SIMPLIFY,
                 confidence=0.65, subject="Finance"),
            case("c2", Category.RPA, confirmed=False, corrected=Category.SIMPLIFY, subject="Finance"),
            case("c3", Category.DIGITISE, confirmed=False, corrected=Category.RPA, subject="Finance"),
            case("c4", Category.RPA, confirmed=True, subject="HR"),
        ]

        patterns = detect_patterns(cases, cluster_misclassifications(cases))

        assert patterns[0].startswith("Most common misclassification: RPA → Simplify (2")
        assert any(p.startswith("Over-classification tendency: 2") for p in patterns)
        assert any(p.startswith("Under-classification tendency: 1") for p in patterns)
        assert any("1 misclassifications had confidence" in p for p in patterns)
        assert any('Subject "Finance"' in p for p in patterns)
        assert not any('Subject "HR"' in p for p in patterns)


class TestAnalyzer:
    """Full analysis runs against the database."""

    @pytest.mark.asyncio
    async def test_cold_start_analysis(self, db, storage, seeded, fast_policy):
        """Test that analyze() without feedback reports 1.0 and calls no LLM."""
        llm = FakeLLM()
        analyzer = LearningAnalyzer(db, storage, llm, seeded, fast_policy, LearningTrigger(storage))
        await save_cases(db, [case("c1", Category.RPA, confirmed=None)])

        analysis = await analyzer.analyze()
        report, automatic = await analyzer.check_and_trigger()

        assert analysis.agreement.overall == 1.0
        assert all(rate == 1.0 for rate in analysis.agreement.per_category.values())
        assert analysis.suggestion_ids == []
        assert llm.calls["generate_rule_suggestions"] == 0
        assert report.overall == 1.0
        assert automatic is None
        assert await storage.get_analysis(analysis.analysis_id) == analysis

    @pytest.mark.asyncio
    async def test_analysis_creates_pending_suggestions(self, db, storage, seeded, fast_policy):
        """Test that misclassifications lead to LLM patterns and stored suggestions."""
        llm = FakeLLM(suggestions=[[new_rule_change()]], patterns=[["Restricted data is over-automated"]])
        analyzer = LearningAnalyzer(db, storage, llm, seeded, fast_policy)
        await save_cases(db, [
            case("c1", Category.RPA, confirmed=False, corrected=Category.SIMPLIFY),
            case("c2", Category.RPA, confirmed=False, corrected=Category.SIMPLIFY),
            case("c3", Category.SIMPLIFY, confirmed=True),
        ])

        analysis = await analyzer.analyze()

        assert analysis.trigger == AnalysisTrigger.MANUAL
        assert analysis.matrix_version == "1.0"
        assert analysis.cases_analyzed == 3
        assert len(analysis.suggestion_ids) == 1
        assert "Restricted data is over-automated" in analysis.identified_patterns
        assert analysis.identified_patterns[0].startswith("Most common misclassification")

        pending = await storage.list_suggestions(SuggestionStatus.PENDING)
        assert [s.suggestion_id for s in pending] == analysis.suggestion_ids
        assert pending[0].analysis_id == analysis.analysis_id

        evidence = llm.received["generate_rule_suggestions"][0]
        assert evidence.misclassifications[0].count == 2
        assert evidence.matrix.version == "1.0"

    @pytest.mark.asyncio
    async def test_misclassified_only_keeps_overall_agreement(self, db, storage, seeded, fast_policy):
        """Test that the filter narrows the scope but not the agreement rate."""
        analyzer = LearningAnalyzer(db, storage, FakeLLM(), seeded, fast_policy)
        await save_cases(db, [
            case("c1", Category.RPA, confirmed=False, corrected=Category.SIMPLIFY),
            case("c2", Category.RPA, confirmed=True),
            case("c3", Category.RPA, confirmed=True),
            case("c4", Category.RPA, confirmed=True),
        ])

        analysis = await analyzer.analyze(misclassified_only=True)

        assert analysis.misclassified_only is True
        assert analysis.cases_analyzed == 1
        assert analysis.agreement.overall == 0.75

    @pytest.mark.asyncio
    async def test_failing_llm_still_saves_analysis(self, db, storage, seeded, fast_policy):
        """Test that LLM failures only drop the suggestion and summary parts."""
        llm = FakeLLM(suggestions=[LLMAPIError("down", 503)], patterns=[LLMAPIError("down", 503)])
        analyzer = LearningAnalyzer(db, storage, llm, seeded, fast_policy)
        await save_cases(db, [case("c1", Category.RPA, confirmed=False, corrected=Category.SIMPLIFY)])

        analysis = await analyzer.analyze()

        assert analysis.suggestion_ids == []
        assert analysis.misclassifications[0].count == 1
        assert await storage.get_analysis(analysis.analysis_id) is not None

    @pytest.mark.asyncio
    async def test_automatic_trigger_respects_cooldown(self, db, storage, seeded, fast_policy):
        """Test that low agreement triggers once, then waits for the interval."""
        trigger = LearningTrigger(storage, threshold=0.8, min_interval_h=24)
        analyzer = LearningAnalyzer(db, storage, FakeLLM(), seeded, fast_policy, trigger)
        await save_cases(db, [
            case("c1", Category.RPA, confirmed=False, corrected=Category.SIMPLIFY),
            case("c2", Category.RPA, confirmed=True),
        ])

        report, first = await analyzer.check_and_trigger()
        _, second = await analyzer.check_and_trigger()

        assert report.categories_below(0.8) == [Category.RPA]
        assert first is not None
        assert first.trigger == AnalysisTrigger.AUTOMATIC
        assert second is None

    @pytest.mark.asyncio
    async def test_trigger_fires_again_after_interval(self, storage):
        """Test that an old automatic analysis no longer blocks the trigger."""
        old = LearningAnalysis(
            trigger=AnalysisTrigger.AUTOMATIC,
            created_at=utcnow() - timedelta(hours=25),
        )
        await storage.save_analysis(old)
        report = compute_agreement([
            case("c1", Category.RPA, confirmed=False, corrected=Category.SIMPLIFY),
        ])

        should_run, reason = await LearningTrigger(storage, 0.8, 24).should_run(report)

        assert should_run is True
        assert "RPA" in reason


class TestSuggestionWorkflow:
    """Status transitions and merging into the matrix."""

    @pytest.fixture
    def workflow(self, storage, seeded) -> SuggestionWorkflow:
        return SuggestionWorkflow(storage, seeded)

    async def add(self, storage, change=None) -> LearningSuggestion:
        suggestion = LearningSuggestion(analysis_id="analysis-1", change=change or new_rule_change())
        await storage.insert_suggestion(suggestion)
        return suggestion

    def test_transition_table(self):
        """Test the allowed transitions."""
        assert can_transition(SuggestionStatus.PENDING, SuggestionStatus.APPROVED)
        assert can_transition(SuggestionStatus.PENDING, SuggestionStatus.REJECTED)
        assert can_transition(SuggestionStatus.APPROVED, SuggestionStatus.APPLIED)
        assert not can_transition(SuggestionStatus.PENDING, SuggestionStatus.APPLIED)
        assert not can_transition(SuggestionStatus.REJECTED, SuggestionStatus.APPROVED)
        assert not can_transition(SuggestionStatus.APPLIED, SuggestionStatus.PENDING)

    @pytest.mark.asyncio
    async def test_approve_applies_to_new_version(self, workflow, storage, seeded):
        """Test that approval merges the change into matrix 1.1."""
        suggestion = await self.add(storage)

        applied = await workflow.approve(suggestion.suggestion_id, reviewer="admin", notes="ok")

        assert applied.status == SuggestionStatus.APPLIED
        assert applied.applied_version == "1.1"
        assert applied.reviewed_by == "admin"
        active = await seeded.get_active()
        assert active.version == "1.1"
        assert active.created_by == CreatedBy.ADMIN
        assert active.get_rule("restricted-simplify") is not None
        assert (await seeded.get_version("1.0")).get_rule("restricted-simplify") is None

    @pytest.mark.asyncio
    async def test_terminal_states_cannot_change(self, workflow, storage):
        """Test that applied and rejected suggestions are final."""
        applied = await self.add(storage)
        rejected = await self.add(storage)
        await workflow.approve(applied.suggestion_id, reviewer="admin")
        result = await workflow.reject(rejected.suggestion_id, reviewer="admin", notes="not useful")

        assert result.status == SuggestionStatus.REJECTED
        assert result.review_notes == "not useful"
        with pytest.raises(WorkflowViolationError):
            await workflow.approve(applied.suggestion_id, reviewer="admin")
        with pytest.raises(WorkflowViolationError):
            await workflow.reject(applied.suggestion_id, reviewer="admin")
        with pytest.raises(WorkflowViolationError):
            await workflow.approve(rejected.suggestion_id, reviewer="admin")

    @pytest.mark.asyncio
    async def test_approve_without_apply(self, workflow, storage, seeded):
        """Test the two-step approve then apply path."""
        suggestion = await self.add(storage)

        approved = await workflow.approve(suggestion.suggestion_id, reviewer="admin", apply=False)
        assert approved.status == SuggestionStatus.APPROVED
        assert (await seeded.get_active()).version == "1.0"

        applied = await workflow.apply(suggestion.suggestion_id)
        assert applied.status == SuggestionStatus.APPLIED
        assert (await seeded.get_active()).version == "1.1"

    @pytest.mark.asyncio
    async def test_unknown_suggestion(self, workflow):
        """Test that a missing id raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await workflow.approve("missing", reviewer="admin")


class TestApplyChange:
    """Merging single changes into a matrix draft."""

    @pytest.fixture
    def matrix(self) -> DecisionMatrix:
        draft = make_draft()
        return DecisionMatrix(
            version="1.0",
            created_by=CreatedBy.AI,
            attributes=draft.attributes,
            rules=draft.rules,
            active=True,
        )

    def test_new_rule_with_colliding_id_gets_fresh_id(self, matrix):
        """Test that a new rule never replaces an existing one."""
        change = SuggestedChange(type=SuggestionType.NEW_RULE, new_rule=review_rule())

        draft = apply_change(matrix, change)

        assert len(draft.rules) == 2
        assert draft.rules[1].rule_id != "restricted-review"

    def test_change_without_payload_raises(self, matrix):
        """Test that an unvalidated change without its payload is rejected cleanly."""
        change = SuggestedChange.model_construct(type=SuggestionType.NEW_ATTRIBUTE, new_attribute=None)

        with pytest.raises(SuggestionApplyError):
            apply_change(matrix, change)

    def test_modify_rule(self, matrix):
        """Test replacing a rule by id and failing on unknown ids."""
        modified = review_rule().model_copy(update={"priority": 10})
        change = SuggestedChange(
            type=SuggestionType.MODIFY_RULE, rule_id="restricted-review", modified_rule=modified,
        )
        assert apply_change(matrix, change).rules[0].priority == 10

        missing = change.model_copy(update={"rule_id": "nope"})
        with pytest.raises(SuggestionApplyError):
            apply_change(matrix, missing)

    def test_adjust_weight_and_new_attribute(self, matrix):
        """Test weight changes and attribute additions."""
        weight = SuggestedChange(
            type=SuggestionType.ADJUST_WEIGHT, attribute_name="volume", new_weight=0.9,
        )
        draft = apply_change(matrix, weight)
        assert [a.weight for a in draft.attributes if a.name == "volume"] == [0.9]

        added = SuggestedChange(
            type=SuggestionType.NEW_ATTRIBUTE,
            new_attribute=Attribute(name="exception_rate", type=AttributeType.NUMERIC),
        )
        assert [a.name for a in apply_change(matrix, added).attributes][-1] == "exception_rate"

        duplicate = SuggestedChange(
            type=SuggestionType.NEW_ATTRIBUTE,
            new_attribute=Attribute(name="volume", type=AttributeType.NUMERIC),
        )
        with pytest.raises(SuggestionApplyError):
            apply_change(matrix, duplicate)


class TestValidation:
    """Re-running the evaluator over past misclassifications."""

    def test_sample_size(self):
        """Test the minimum sample and the ten percent floor."""
        assert sample_size(0) == 0
        assert sample_size(5) == 5
        assert sample_size(50) == 10
        assert sample_size(200) == 20
        assert sample_size(1001) == 101

    def test_classify_outcome(self):
        """Test improved, worsened and unchanged outcomes."""
        assert classify_outcome(Category.SIMPLIFY, Category.RPA, Category.SIMPLIFY) == ValidationOutcome.IMPROVED
        assert classify_outcome(Category.SIMPLIFY, Category.SIMPLIFY, Category.RPA) == ValidationOutcome.WORSENED
        assert classify_outcome(Category.SIMPLIFY, Category.RPA, Category.DIGITISE) == ValidationOutcome.UNCHANGED

    @pytest.mark.asyncio
    async def test_new_rule_fixes_past_cases(self, db, storage, store):
        """Test that a corrective rule shows up as improved cases."""
        await store.save(make_draft(rules=[simplify_rule()]))
        restricted = {"data_sensitivity": "restricted", "volume": "unknown", "rule_based": "unknown"}
        public = {"data_sensitivity": "public", "volume": "unknown", "rule_based": "unknown"}
        await save_cases(db, [
            case("fixed-1", Category.RPA, False, Category.SIMPLIFY, attributes=restricted),
            case("fixed-2", Category.RPA, False, Category.SIMPLIFY, attributes=restricted),
            case("still-wrong", Category.RPA, False, Category.DIGITISE, attributes=public),
            case("no-trace", Category.RPA, False, Category.SIMPLIFY),
            case("fine", Category.RPA, True, attributes=restricted),
        ])
        validator = MatrixValidator(db, storage, store, ratio=0.1, min_sample=10, rng=random.Random(7))

        result = await validator.run()

        assert result.matrix_version == "1.0"
        assert result.population_size == 4
        assert result.sample_size == 4
        assert result.improved == 2
        assert result.unchanged == 1
        assert result.worsened == 0
        assert result.skipped == 1
        assert abs(result.improvement_rate - 200 / 3) < 1e-9
        assert (await storage.list_validation_tests())[0].test_id == result.test_id
