"""LLM-Kollaborator auf Basis der Anthropic Messages API.

Verwendet das Anthropic Python SDK (AsyncAnthropic) für asynchrone
Aufrufe.  Jede Antwort wird als JSON erwartet, tolerant gegenüber
Markdown-Codeblöcken geparst und mit Pydantic validiert.

Fehlerbilder:
- LLMAPIError: Transport- oder HTTP-Fehler (retry-fähig)
- LLMResponseError: Antwort nicht parsbar oder ungültig (retry-fähig,
  nach erschöpften Retries "malformed")
- LLMConfigError: fehlender API-Key (nicht retry-fähig)

Retries und Timeouts übernimmt catalai.llm.retry, nicht der Client.
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional, Protocol, Sequence

import anthropic
from pydantic import BaseModel, Field, ValidationError

from catalai.cases import QAPair
from catalai.clarification.models import ClarificationQuestion
from catalai.learning.models import (
    AnalysisEvidence,
    SuggestedChange,
    parse_suggested_changes,
)
from catalai.llm import prompts
from catalai.logging_config import get_logger
from catalai.matrix.bootstrap import sanitize_draft
from catalai.matrix.models import Attribute, Classification, MatrixDraft

logger = get_logger("llm")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class LLMError(Exception):
    """Basisklasse für alle LLM-Client-Fehler."""


class LLMConfigError(LLMError):
    """Fehlende oder ungültige Konfiguration (z.B. kein API-Key)."""


class LLMAPIError(LLMError):
    """Fehler bei der Kommunikation mit der LLM API."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class LLMResponseError(LLMError):
    """Antwort des LLM konnte nicht geparst oder validiert werden."""

    def __init__(self, message: str, raw_response: str = "") -> None:
        super().__init__(message)
        self.raw_response = raw_response


# ---------------------------------------------------------------------------
# Schnittstelle
# ---------------------------------------------------------------------------

class LLMCollaborator(Protocol):
    """Alle Aufrufe, die der Decision Core an ein LLM delegiert."""

    async def classify(self, description: str, history: Sequence[QAPair]) -> Classification: ...

    async def generate_questions(
        self,
        description: str,
        classification: Classification,
        history: Sequence[QAPair],
        remaining_budget: int,
        max_questions: int = 3,
    ) -> list[ClarificationQuestion]: ...

    async def extract_attributes(
        self,
        description: str,
        history: Sequence[QAPair],
        attributes: Sequence[Attribute],
    ) -> dict[str, Any]: ...

    async def generate_rule_suggestions(self, evidence: AnalysisEvidence) -> list[SuggestedChange]: ...

    async def summarize_patterns(self, evidence: AnalysisEvidence) -> list[str]: ...

    async def generate_initial_matrix(self) -> MatrixDraft: ...


# ---------------------------------------------------------------------------
# Response-Modelle
# ---------------------------------------------------------------------------

class QuestionsResponse(BaseModel):
    questions: list[ClarificationQuestion] = Field(default_factory=list)


class PatternsResponse(BaseModel):
    patterns: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

DEFAULT_MAX_TOKENS = 2048


class LLMClient:
    """Asynchroner LLM-Kollaborator über die Anthropic API.

    Verwendung:
        async with LLMClient(api_key="sk-ant-...") as client:
            classification = await client.classify(description, history=[])
    """

    def __init__(
        self,
        api_key: Optional[str],
        default_model: str = "claude-sonnet-4-5-20250929",
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        """Initialisiert den Client.

        SDK-interne Retries sind abgeschaltet, damit nur die Retry-Policy
        des Aufrufers gilt.

        Raises:
            LLMConfigError: Wenn der API-Key fehlt oder ungültig ist.
        """
        if not api_key:
            raise LLMConfigError(
                "ANTHROPIC_API_KEY ist nicht konfiguriert. "
                "Bitte in .env oder als Umgebungsvariable setzen."
            )
        if not api_key.startswith("sk-ant-"):
            raise LLMConfigError(
                "ANTHROPIC_API_KEY hat ein ungültiges Format "
                "(erwartet: Prefix 'sk-ant-')."
            )

        self._client = anthropic.AsyncAnthropic(api_key=api_key, max_retries=0)
        self._model = default_model
        self._max_tokens = max_tokens
        logger.info("LLMClient initialisiert: model=%s, max_tokens=%d", default_model, max_tokens)

    async def close(self) -> None:
        await self._client.close()
        logger.debug("LLMClient geschlossen")

    async def __aenter__(self) -> "LLMClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # --- Kollaborator-Aufrufe ---

    async def classify(self, description: str, history: Sequence[QAPair]) -> Classification:
        raw = await self._complete(
            prompts.CLASSIFY_SYSTEM_PROMPT,
            prompts.build_classify_prompt(description, history),
        )
        data = self._parse_object(raw)
        data["modelUsed"] = self._model
        try:
            classification = Classification.model_validate(data)
        except ValidationError as exc:
            raise LLMResponseError(f"Klassifizierung ungültig: {exc}", raw_response=raw) from exc
        logger.info(
            "Klassifizierung: %s (%.2f)",
            classification.category.value,
            classification.confidence,
        )
        return classification

    async def generate_questions(
        self,
        description: str,
        classification: Classification,
        history: Sequence[QAPair],
        remaining_budget: int,
        max_questions: int = 3,
    ) -> list[ClarificationQuestion]:
        raw = await self._complete(
            prompts.QUESTIONS_SYSTEM_PROMPT,
            prompts.build_questions_prompt(
                description, classification, history, max_questions, remaining_budget,
            ),
        )
        parsed = self._parse_json(raw)
        if isinstance(parsed, list):
            parsed = {"questions": parsed}
        response = self._validate(QuestionsResponse, parsed, raw)
        return response.questions[:max_questions]

    async def extract_attributes(
        self,
        description: str,
        history: Sequence[QAPair],
        attributes: Sequence[Attribute],
    ) -> dict[str, Any]:
        raw = await self._complete(
            prompts.ATTRIBUTES_SYSTEM_PROMPT,
            prompts.build_attributes_prompt(description, history, attributes),
        )
        data = self._parse_object(raw)
        values = data.get("attributes", data)
        if not isinstance(values, dict):
            raise LLMResponseError("attributes ist kein Objekt", raw_response=raw)
        return values

    async def generate_rule_suggestions(self, evidence: AnalysisEvidence) -> list[SuggestedChange]:
        raw = await self._complete(
            prompts.SUGGESTIONS_SYSTEM_PROMPT,
            prompts.build_evidence_prompt(evidence.model_dump(mode="json", by_alias=True)),
            max_tokens=self._max_tokens * 2,
        )
        parsed = self._parse_json(raw)
        items = parsed.get("suggestions", []) if isinstance(parsed, dict) else parsed
        return parse_suggested_changes(items)

    async def summarize_patterns(self, evidence: AnalysisEvidence) -> list[str]:
        raw = await self._complete(
            prompts.PATTERNS_SYSTEM_PROMPT,
            prompts.build_evidence_prompt(
                evidence.model_dump(mode="json", by_alias=True, exclude={"matrix"}),
            ),
        )
        parsed = self._parse_json(raw)
        if isinstance(parsed, list):
            parsed = {"patterns": parsed}
        return self._validate(PatternsResponse, parsed, raw).patterns

    async def generate_initial_matrix(self) -> MatrixDraft:
        raw = await self._complete(
            prompts.MATRIX_SYSTEM_PROMPT,
            "Create the initial decision matrix.",
            max_tokens=self._max_tokens * 2,
        )
        draft = sanitize_draft(self._parse_object(raw))
        if not draft.attributes:
            raise LLMResponseError("Matrix-Entwurf ohne gültige Attribute", raw_response=raw)
        return draft

    # --- Hilfsmethoden (intern) ---

    async def _complete(self, system: str, user: str, max_tokens: int | None = None) -> str:
        try:
            message = await self._client.messages.create(
                model=self._model,
                max_tokens=max_tokens or self._max_tokens,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
        except anthropic.APIConnectionError as exc:
            raise LLMAPIError(f"Verbindung zur LLM API fehlgeschlagen: {exc}") from exc
        except anthropic.RateLimitError as exc:
            raise LLMAPIError("LLM API Rate-Limit erreicht (429)", status_code=429) from exc
        except anthropic.APIStatusError as exc:
            raise LLMAPIError(
                f"LLM API Fehler (HTTP {exc.status_code}): {exc.message}",
                status_code=exc.status_code,
            ) from exc

        logger.debug(
            "LLM-Antwort: %d/%d Tokens, stop=%s",
            message.usage.input_tokens,
            message.usage.output_tokens,
            message.stop_reason,
        )
        return self._extract_text(message)

    @staticmethod
    def _extract_text(message: Any) -> str:
        """Sucht den ersten TextBlock in message.content.

        Raises:
            LLMResponseError: Wenn kein Textinhalt vorhanden ist.
        """
        for block in message.content:
            if hasattr(block, "text") and block.text:
                return block.text

        raise LLMResponseError(
            "LLM-Antwort enthält keinen Textinhalt",
            raw_response=str(message.content),
        )

    @staticmethod
    def _parse_json(raw_text: str) -> Any:
        """Parst JSON, auch wenn es in einem Markdown-Codeblock steht.

        Raises:
            LLMResponseError: Wenn kein gültiges JSON enthalten ist.
        """
        cleaned = raw_text.strip()

        # Matcht ```json ... ``` oder ``` ... ```
        codeblock_match = re.search(
            r"```(?:json)?\s*\n?(.*?)\n?\s*```",
            cleaned,
            re.DOTALL,
        )
        if codeblock_match:
            cleaned = codeblock_match.group(1).strip()

        try:
            return json.loads(cleaned)
        except json.JSONDecodeError as exc:
            raise LLMResponseError(
                f"Ungültiges JSON in LLM-Antwort: {exc}",
                raw_response=raw_text,
            ) from exc

    @classmethod
    def _parse_object(cls, raw_text: str) -> dict[str, Any]:
        data = cls._parse_json(raw_text)
        if not isinstance(data, dict):
            raise LLMResponseError(
                f"JSON ist kein Objekt sondern {type(data).__name__}",
                raw_response=raw_text,
            )
        return data

    @staticmethod
    def _validate(model: type[BaseModel], data: Any, raw_text: str) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise LLMResponseError(
                f"JSON-Validierung fehlgeschlagen: {exc}",
                raw_response=raw_text,
            ) from exc
