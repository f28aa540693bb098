"""Tests for the classification pipeline."""

import pytest

from catalai.cases import Feedback
from catalai.classifier.pipeline import ClassificationPipeline, PipelineConfig, TurnStatus
from catalai.clarification.controller import ClarificationLimits
from catalai.clarification.models import ClarificationSession, ClarificationState, StopReason
from catalai.exceptions import RetryableTurnError
from catalai.llm.client import LLMAPIError, LLMResponseError
from catalai.matrix.models import Category

from conftest import FakeLLM, classification, make_draft, question


@pytest.fixture
def config(fast_policy):
    return PipelineConfig(limits=ClarificationLimits(), retry=fast_policy)


async def seeded_pipeline(store, db, llm, config):
    await store.save(make_draft())
    return ClassificationPipeline(llm, store, config=config, database=db)


class TestEndToEnd:
    """Full turns through clarification and rule evaluation."""

    @pytest.mark.asyncio
    async def test_one_round_then_flag_review(self, store, db, config):
        """Test 0.7 → two questions → 0.9 → restricted data is flagged for review."""
        llm = FakeLLM(
            classifications=[classification(Category.RPA, 0.7), classification(Category.RPA, 0.9)],
            questions=[[question("How many invoices per month?"), question("Which data is handled?")]],
            attributes=[{"data_sensitivity": "restricted"}],
        )
        pipeline = await seeded_pipeline(store, db, llm, config)

        first = await pipeline.start("case-1", "Monthly invoice matching against purchase orders")

        assert first.status == TurnStatus.QUESTIONS
        assert len(first.questions) == 2
        assert first.session.state == ClarificationState.WAITING_FOR_ANSWER

        final = await pipeline.answer(first.session, ["About 400", "Salary data"])

        assert final.is_final
        assert final.session.state == ClarificationState.READY_TO_CLASSIFY
        assert final.session.stop_reason == StopReason.HIGH_CONFIDENCE
        assert llm.calls["generate_questions"] == 1
        assert len(final.evaluation.triggered_rules) == 1
        assert final.evaluation.review_flag is True
        assert final.classification.category == Category.RPA
        assert final.status == TurnStatus.MANUAL_REVIEW

        record = await db.get_case("case-1")
        assert record is not None
        assert len(record.history) == 2
        assert record.evaluation.matrix_version == "1.0"

    @pytest.mark.asyncio
    async def test_high_confidence_classifies_immediately(self, store, db, config):
        """Test that confidence above the threshold asks no questions."""
        llm = FakeLLM(
            classifications=[classification(Category.DIGITISE, 0.95)],
            attributes=[{"data_sensitivity": "public"}],
        )
        pipeline = await seeded_pipeline(store, db, llm, config)

        result = await pipeline.start("case-2", "Paper forms scanned into a shared drive")

        assert result.status == TurnStatus.CLASSIFIED
        assert result.classification.category == Category.DIGITISE
        assert result.evaluation.triggered_rules == []
        assert llm.calls["generate_questions"] == 0

    @pytest.mark.asyncio
    async def test_force_classify_marks_interview_skipped(self, store, db, config):
        """Test that skipping the interview finalises with the last classification."""
        llm = FakeLLM(
            classifications=[classification(Category.SIMPLIFY, 0.7)],
            questions=[[question("Who approves?"), question("How often?")]],
            attributes=[{}],
        )
        pipeline = await seeded_pipeline(store, db, llm, config)
        first = await pipeline.start("case-3", "Approval chain with five signatures")

        result = await pipeline.force_classify(first.session)

        assert result.interview_skipped is True
        assert result.stop_reason == StopReason.FORCED_BY_USER
        assert result.classification.category == Category.SIMPLIFY
        assert llm.calls["classify"] == 1


class TestFailures:
    """Collaborator failures and malformed output."""

    @pytest.mark.asyncio
    async def test_failed_turn_leaves_session_unchanged(self, store, db, config):
        """Test that a failing LLM raises and keeps the caller's session intact."""
        llm = FakeLLM(
            classifications=[classification(Category.RPA, 0.7), LLMAPIError("overloaded", 529)],
            questions=[[question("How often?"), question("Which systems?")]],
        )
        pipeline = await seeded_pipeline(store, db, llm, config)
        first = await pipeline.start("case-4", "Invoice matching")
        before = first.session.model_dump()

        with pytest.raises(RetryableTurnError) as exc_info:
            await pipeline.answer(first.session, ["Daily", "SAP"])

        assert exc_info.value.retryable is True
        assert exc_info.value.case_id == "case-4"
        assert exc_info.value.to_dict()["stage"] == "reclassification"
        assert exc_info.value.to_dict()["retryable"] is True
        assert first.session.model_dump() == before
        assert first.session.state == ClarificationState.WAITING_FOR_ANSWER
        assert llm.calls["classify"] == 1 + config.retry.attempts

    @pytest.mark.asyncio
    async def test_malformed_classification_goes_to_manual_review(self, store, db, config):
        """Test that unusable LLM output ends in manual review, not an exception."""
        llm = FakeLLM(classifications=[LLMResponseError("not json", raw_response="oops")])
        pipeline = await seeded_pipeline(store, db, llm, config)

        result = await pipeline.start("case-5", "Something vague")

        assert result.status == TurnStatus.MANUAL_REVIEW
        assert result.manual_review is True
        assert result.fallback_reason
        assert result.classification is None
        assert result.session.state == ClarificationState.FORCE_STOPPED
        assert result.session.stop_reason == StopReason.MALFORMED_LLM_OUTPUT

    @pytest.mark.asyncio
    async def test_malformed_attributes_become_unknown(self, store, db, config):
        """Test that failed attribute extraction sets every attribute to unknown."""
        llm = FakeLLM(
            classifications=[classification(Category.RPA, 0.9)],
            attributes=[LLMResponseError("bad attributes")],
        )
        pipeline = await seeded_pipeline(store, db, llm, config)

        result = await pipeline.start("case-6", "Invoice matching")

        assert set(result.evaluation.extracted_attributes.values()) == {"unknown"}
        assert result.evaluation.triggered_rules == []
        assert result.status == TurnStatus.CLASSIFIED

    @pytest.mark.asyncio
    async def test_finalize_without_classification_goes_to_manual_review(self, store, db, config):
        """Test that a session without any classification is not finalised as classified."""
        llm = FakeLLM()
        pipeline = await seeded_pipeline(store, db, llm, config)
        session = ClarificationSession(case_id="case-7", description="Nothing classified yet")

        result = await pipeline._finalize(session)

        assert result.status == TurnStatus.MANUAL_REVIEW
        assert result.classification is None
        assert result.fallback_reason
        assert llm.calls["extract_attributes"] == 0


class TestPersistence:
    """Stored case records across repeated runs."""

    @pytest.mark.asyncio
    async def test_rerun_keeps_existing_feedback(self, store, db, config):
        """Test that classifying a case id again does not erase its feedback."""
        llm = FakeLLM(
            classifications=[classification(Category.RPA, 0.95), classification(Category.SIMPLIFY, 0.95)],
            attributes=[{"data_sensitivity": "public"}],
        )
        pipeline = await seeded_pipeline(store, db, llm, config)
        await pipeline.start("case-8", "Invoice matching")
        await db.record_feedback("case-8", Feedback(confirmed=False, corrected_category=Category.AI_AGENT))

        rerun = await pipeline.start("case-8", "Invoice matching")

        record = await db.get_case("case-8")
        assert rerun.classification.category == Category.SIMPLIFY
        assert record.classification.category == Category.SIMPLIFY
        assert record.feedback is not None
        assert record.feedback.corrected_category == Category.AI_AGENT
