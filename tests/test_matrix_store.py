"""Tests for matrix versioning and the matrix store."""

import asyncio

import pytest

from catalai.exceptions import MatrixValidationError, NotFoundError
from catalai.matrix.models import (
    ActionType,
    Attribute,
    AttributeType,
    CreatedBy,
    DecisionMatrix,
    RuleAction,
    next_version,
    parse_version,
)
from catalai.matrix.storage import SqliteMatrixRepository
from catalai.matrix.store import MatrixStore

from conftest import FakeLLM, make_draft, review_rule


class TestVersionNumbers:
    """Version id arithmetic."""

    def test_next_version(self):
        """Test minor and major bumps."""
        assert next_version(None) == "1.0"
        assert next_version("1.0") == "1.1"
        assert next_version("1.9") == "1.10"
        assert next_version("1.9", major_bump=True) == "2.0"

    def test_parse_version_rejects_garbage(self):
        """Test that malformed version ids raise."""
        assert parse_version("3.12") == (3, 12)
        with pytest.raises(ValueError):
            parse_version("v1")


class TestMatrixStore:
    """Saving, reading and activating versions."""

    @pytest.mark.asyncio
    async def test_save_creates_new_immutable_version(self, store, db):
        """Test that 1.0 stays readable and unchanged after saving 1.1."""
        first = await store.save(make_draft())
        changed = make_draft(rules=[])
        second = await store.save(changed, base_version="1.0")

        assert first.matrix.version == "1.0"
        assert second.matrix.version == "1.1"
        assert second.previous_version == "1.0"
        assert second.conflict is False

        old = await store.get_version("1.0")
        assert [r.rule_id for r in old.rules] == ["restricted-review"]
        assert old.active is False

        active = await store.get_active()
        assert active.version == "1.1"
        assert active.rules == []
        assert await store.list_versions() == ["1.0", "1.1"]

        cursor = await db.connection.execute(
            "SELECT COUNT(*) AS n FROM matrix_versions WHERE active = 1"
        )
        row = await cursor.fetchone()
        assert row["n"] == 1

    @pytest.mark.asyncio
    async def test_unknown_version_raises(self, store):
        """Test that reading a missing version raises NotFoundError."""
        await store.save(make_draft())
        with pytest.raises(NotFoundError):
            await store.get_version("9.9")

    @pytest.mark.asyncio
    async def test_major_bump(self, store):
        """Test that an explicit major bump starts a new major line."""
        await store.save(make_draft())
        await store.save(make_draft())
        result = await store.save(make_draft(), major_bump=True)

        assert result.matrix.version == "2.0"
        assert await store.list_versions() == ["1.0", "1.1", "2.0"]

    @pytest.mark.asyncio
    async def test_stale_base_version_is_reported(self, store):
        """Test that saving on top of an outdated version flags a conflict."""
        await store.save(make_draft())
        await store.save(make_draft())

        result = await store.save(make_draft(), base_version="1.0")

        assert result.conflict is True
        assert result.matrix.version == "1.2"

        stored = await store.get_version("1.2")
        assert "Versionskonflikt" in stored.description
        assert "1.0" in stored.description and "1.1" in stored.description
        assert "Versionskonflikt" not in (await store.get_version("1.1")).description

    @pytest.mark.asyncio
    async def test_duplicate_attribute_names_are_rejected(self, store):
        """Test that a draft with duplicate attribute names cannot be saved."""
        draft = make_draft()
        draft.attributes.append(Attribute(name="volume", type=AttributeType.NUMERIC))

        with pytest.raises(MatrixValidationError):
            await store.save(draft)
        assert await store.list_versions() == []

    @pytest.mark.asyncio
    async def test_empty_store_without_llm_raises(self, store):
        """Test that an empty store cannot bootstrap without an LLM."""
        with pytest.raises(NotFoundError):
            await store.get_active()


class TestBootstrap:
    """Lazy generation of the initial matrix."""

    @pytest.mark.asyncio
    async def test_concurrent_first_access_generates_once(self, db):
        """Test that parallel first reads trigger exactly one generation."""
        llm = FakeLLM(initial_matrix=make_draft(description="generated"))
        store = MatrixStore(SqliteMatrixRepository(db), llm=llm)

        results = await asyncio.gather(*(store.get_active() for _ in range(3)))

        assert {m.version for m in results} == {"1.0"}
        assert results[0].created_by == CreatedBy.AI
        assert llm.calls["generate_initial_matrix"] == 1
        assert await store.list_versions() == ["1.0"]

    @pytest.mark.asyncio
    async def test_existing_matrix_is_not_regenerated(self, db):
        """Test that bootstrap is skipped once a version exists."""
        llm = FakeLLM(initial_matrix=make_draft())
        store = MatrixStore(SqliteMatrixRepository(db), llm=llm)
        await store.save(make_draft())

        matrix = await store.get_active()

        assert matrix.created_by == CreatedBy.ADMIN
        assert llm.calls["generate_initial_matrix"] == 0


class TestFileFormat:
    """Persisted matrix file shape."""

    def test_file_json_uses_camel_case(self):
        """Test that the file format uses camelCase keys and parses back."""
        draft = make_draft()
        matrix = DecisionMatrix(
            version="1.3",
            created_by=CreatedBy.ADMIN,
            attributes=draft.attributes,
            rules=draft.rules,
            active=True,
        )
        raw = matrix.to_file_json()

        assert '"possibleValues"' in raw
        assert '"ruleId"' in raw
        assert '"createdBy": "admin"' in raw
        assert DecisionMatrix.from_file_json(raw) == matrix

    def test_override_without_target_is_invalid(self):
        """Test that an override action needs a target category."""
        with pytest.raises(ValueError):
            RuleAction(type=ActionType.OVERRIDE)
        assert review_rule().action.type == ActionType.FLAG_REVIEW
