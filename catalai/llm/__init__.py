"""LLM-Kollaborator: Anthropic-Client, Prompts und Retry-Hülle.

Typische Verwendung:
    from catalai.llm import LLMClient, RetryPolicy, call_with_retry

    async with LLMClient(api_key="sk-ant-...") as client:
        result = await call_with_retry(
            lambda: client.classify(description, history=[]),
            RetryPolicy(),
            label="classify",
        )
        if result.ok:
            print(result.value.category, result.value.confidence)
"""

from catalai.llm.client import (
    LLMAPIError,
    LLMClient,
    LLMCollaborator,
    LLMConfigError,
    LLMError,
    LLMResponseError,
)
from catalai.llm.retry import (
    CallStatus,
    LLMResult,
    RetryPolicy,
    call_with_retry,
)

__all__ = [
    # Client
    "LLMClient",
    "LLMCollaborator",
    # Exceptions
    "LLMError",
    "LLMConfigError",
    "LLMAPIError",
    "LLMResponseError",
    # Retry
    "CallStatus",
    "LLMResult",
    "RetryPolicy",
    "call_with_retry",
]
