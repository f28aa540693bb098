"""Tests for LLM response parsing and sanitizing of generated content."""

import pytest

from catalai.learning.models import SuggestionType, parse_suggested_changes
from catalai.llm.client import LLMClient, LLMConfigError, LLMResponseError
from catalai.matrix.bootstrap import clamp, sanitize_draft
from catalai.matrix.models import ActionType, Category, Classification


class TestParseJson:
    """JSON extraction from raw model output."""

    def test_plain_json(self):
        """Test that plain JSON is parsed as is."""
        assert LLMClient._parse_json('{"category": "RPA"}') == {"category": "RPA"}

    def test_code_fence(self):
        """Test that JSON inside a markdown code block is extracted."""
        raw = 'Here you go:\n```json\n{"confidence": 0.9}\n```\nDone.'
        assert LLMClient._parse_json(raw) == {"confidence": 0.9}

    def test_invalid_json_raises(self):
        """Test that broken JSON raises LLMResponseError with the raw text."""
        with pytest.raises(LLMResponseError) as exc_info:
            LLMClient._parse_json("not json at all")
        assert exc_info.value.raw_response == "not json at all"

    def test_parse_object_rejects_lists(self):
        """Test that a top-level array is not accepted as an object."""
        with pytest.raises(LLMResponseError):
            LLMClient._parse_object("[1, 2, 3]")


class TestClientConfig:
    """API key checks on construction."""

    def test_missing_key(self):
        """Test that a missing API key raises LLMConfigError."""
        with pytest.raises(LLMConfigError):
            LLMClient(api_key=None)

    def test_wrong_prefix(self):
        """Test that a key without the expected prefix is rejected."""
        with pytest.raises(LLMConfigError):
            LLMClient(api_key="invalid-key")


class TestResponseValidation:
    """Validation of classification and question payloads."""

    @pytest.fixture
    def client(self, monkeypatch):
        client = LLMClient(api_key="sk-ant-test-key")
        replies: list[str] = []

        async def fake_complete(system, user, max_tokens=None):
            return replies.pop(0)

        monkeypatch.setattr(client, "_complete", fake_complete)
        client.replies = replies
        return client

    @pytest.mark.asyncio
    async def test_out_of_range_confidence_is_malformed(self, client):
        """Test that a confidence above 1 is rejected instead of clamped."""
        client.replies.append('{"category": "RPA", "confidence": 1.4}')

        with pytest.raises(LLMResponseError):
            await client.classify("Invoice intake", [])

    @pytest.mark.asyncio
    async def test_empty_question_list_is_accepted(self, client):
        """Test that an empty question array is a valid "nothing to ask" answer."""
        client.replies.append("[]")
        classification = Classification(category=Category.RPA, confidence=0.7)

        questions = await client.generate_questions("Invoice intake", classification, [], 8)

        assert questions == []

    @pytest.mark.asyncio
    async def test_questions_capped_at_maximum(self, client):
        """Test that more than max_questions items are cut off."""
        client.replies.append(
            '[{"question": "A?", "purpose": "a"}, {"question": "B?", "purpose": "b"},'
            ' {"question": "C?", "purpose": "c"}, {"question": "D?", "purpose": "d"}]'
        )
        classification = Classification(category=Category.RPA, confidence=0.7)

        questions = await client.generate_questions("Invoice intake", classification, [], 8)

        assert [q.question for q in questions] == ["A?", "B?", "C?"]


class TestSanitizeDraft:
    """Cleanup of generated matrix drafts."""

    def raw_draft(self) -> dict:
        return {
            "description": "generated",
            "attributes": [
                {"name": "data_sensitivity", "type": "categorical",
                 "possibleValues": ["public", "restricted"], "weight": 3},
                {"name": "volume", "type": "numeric"},
                {"name": "no_values", "type": "categorical"},
                {"type": "boolean"},
                {"name": "odd", "type": "vector"},
            ],
            "rules": [
                {
                    "ruleId": "r1",
                    "name": "Restricted review",
                    "conditions": [
                        {"attribute": "data_sensitivity", "operator": "==", "value": "Restricted"},
                        {"attribute": "unknown_attr", "operator": "==", "value": "x"},
                    ],
                    "action": {"type": "flag_review", "rationale": "sensitive"},
                    "priority": 250,
                },
                {
                    "ruleId": "r2",
                    "name": "Bad target",
                    "conditions": [{"attribute": "volume", "operator": ">", "value": 100}],
                    "action": {"type": "override", "targetCategory": "Teleport"},
                },
                {
                    "ruleId": "r3",
                    "name": "Only invalid conditions",
                    "conditions": [{"attribute": "data_sensitivity", "operator": "==", "value": "secret"}],
                    "action": {"type": "flag_review"},
                },
                {
                    "name": "No id",
                    "conditions": [{"attribute": "volume", "operator": "<", "value": "ten"}],
                    "action": {"type": "flag_review"},
                },
            ],
        }

    def test_attributes_filtered_and_clamped(self):
        """Test that invalid attributes are dropped and weights clamped."""
        draft = sanitize_draft(self.raw_draft())

        assert [a.name for a in draft.attributes] == ["data_sensitivity", "volume"]
        assert draft.attributes[0].weight == 1.0
        assert draft.attributes[1].weight == 0.5

    def test_rules_filtered(self):
        """Test condition filtering, priority clamping and target repair."""
        draft = sanitize_draft(self.raw_draft())
        rules = {rule.rule_id: rule for rule in draft.rules}

        assert set(rules) == {"r1", "r2"}
        assert [c.attribute for c in rules["r1"].conditions] == ["data_sensitivity"]
        assert rules["r1"].priority == 100
        assert rules["r2"].action.type == ActionType.ADJUST_CONFIDENCE
        assert rules["r2"].action.confidence_adjustment == 0.0

    def test_rule_declared_without_conditions_is_kept(self):
        """Test that an unconditional rule survives, unlike one with only invalid conditions."""
        raw = self.raw_draft()
        raw["rules"].append({
            "ruleId": "always",
            "name": "Always review",
            "conditions": [],
            "action": {"type": "flag_review"},
        })

        draft = sanitize_draft(raw)
        rules = {rule.rule_id: rule for rule in draft.rules}

        assert "always" in rules
        assert rules["always"].conditions == []
        assert "r3" not in rules

    def test_duplicate_rule_ids_are_renamed(self):
        """Test that a repeated rule id gets a fresh one."""
        raw = self.raw_draft()
        raw["rules"] = [raw["rules"][0], dict(raw["rules"][0])]

        draft = sanitize_draft(raw)

        assert len(draft.rules) == 2
        assert draft.rules[0].rule_id == "r1"
        assert draft.rules[1].rule_id != "r1"

    def test_clamp(self):
        """Test clamping with fallback for non-numbers."""
        assert clamp(5, 0, 1, 0.5) == 1
        assert clamp(-2, 0, 1, 0.5) == 0
        assert clamp("abc", 0, 1, 0.5) == 0.5


class TestParseSuggestedChanges:
    """Validation of raw rule suggestions."""

    def test_valid_and_invalid_items(self):
        """Test that invalid items are dropped and impact values clamped."""
        raw = [
            {
                "type": "new_rule",
                "rationale": "RPA is often corrected",
                "suggestedChange": {
                    "newRule": {
                        "name": "Restricted to Simplify",
                        "conditions": [
                            {"attribute": "data_sensitivity", "operator": "==", "value": "restricted"},
                        ],
                        "action": {"type": "override", "targetCategory": "simplify"},
                        "priority": 140,
                    },
                },
                "impactEstimate": {
                    "affectedCategories": ["RPA", "bogus"],
                    "expectedImprovementPercent": 250,
                    "confidenceLevel": 2,
                },
            },
            {"type": "adjust_weight", "attributeName": "volume"},
            {"type": "unknown_type"},
            "not a dict",
            {"type": "adjust_weight", "attributeName": "volume", "newWeight": 7},
        ]

        changes = parse_suggested_changes(raw)

        assert [c.type for c in changes] == [SuggestionType.NEW_RULE, SuggestionType.ADJUST_WEIGHT]
        new_rule = changes[0].new_rule
        assert new_rule.rule_id
        assert new_rule.priority == 100
        assert new_rule.action.target_category == Category.SIMPLIFY
        assert changes[0].impact.affected_categories == [Category.RPA]
        assert changes[0].impact.expected_improvement_percent == 100.0
        assert changes[0].impact.confidence_level == 1.0
        assert changes[1].new_weight == 1.0

    def test_modify_rule_keeps_original_id(self):
        """Test that a modified rule carries the id of the rule it replaces."""
        raw = [{
            "type": "modify_rule",
            "ruleId": "restricted-review",
            "modifiedRule": {
                "ruleId": "something-else",
                "name": "Restricted review",
                "conditions": [],
                "action": {"type": "flag_review"},
            },
        }]

        changes = parse_suggested_changes(raw)

        assert changes[0].modified_rule.rule_id == "restricted-review"

    def test_non_list_input(self):
        """Test that anything but a list yields no suggestions."""
        assert parse_suggested_changes({"type": "new_rule"}) == []
