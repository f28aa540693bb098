"""Retry- und Timeout-Hülle für Kollaborator-Aufrufe.

Jeder Aufruf an LLM oder Persistenz läuft über call_with_retry():

- Timeout pro Versuch via asyncio.wait_for
- Bis zu N Versuche mit exponentiellem Backoff (tenacity)
- Ergebnis als LLMResult mit Status ok / malformed / failed

Aufrufer verzweigen auf result.status statt Exceptions zu fangen.
"malformed" heißt: das LLM hat geantwortet, aber unbrauchbar.
"failed" heißt: Timeout, Transport- oder Speicherfehler.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Generic, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from catalai.llm.client import LLMAPIError, LLMError, LLMResponseError
from catalai.logging_config import get_logger

if TYPE_CHECKING:
    from catalai.config import Settings

logger = get_logger("llm")

T = TypeVar("T")

# Transiente Fehler, die einen weiteren Versuch rechtfertigen
RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    LLMAPIError,
    LLMResponseError,
    asyncio.TimeoutError,
    sqlite3.OperationalError,
)


class CallStatus(str, Enum):
    OK = "ok"
    MALFORMED = "malformed"
    FAILED = "failed"


@dataclass(frozen=True)
class LLMResult(Generic[T]):
    """Ergebnis eines Kollaborator-Aufrufs nach allen Versuchen."""

    status: CallStatus
    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status == CallStatus.OK

    @property
    def error_message(self) -> str:
        if self.error is None:
            return ""
        return f"{type(self.error).__name__}: {self.error}"


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    timeout_seconds: float = 30.0
    backoff_multiplier: float = 1.0
    backoff_min: float = 1.0
    backoff_max: float = 10.0

    @classmethod
    def from_settings(cls, settings: "Settings") -> "RetryPolicy":
        return cls(
            attempts=settings.llm_max_attempts,
            timeout_seconds=settings.llm_timeout_seconds,
            backoff_min=settings.retry_backoff_min_seconds,
            backoff_max=settings.retry_backoff_max_seconds,
        )


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    label: str,
) -> LLMResult[T]:
    """Führt `operation` mit Timeout und Retries aus.

    Args:
        operation: Parameterlose Coroutine-Factory (pro Versuch neu aufgerufen).
        policy: Versuche, Timeout, Backoff.
        label: Bezeichnung für das Log (z.B. "classify case=42").

    Returns:
        LLMResult; wirft nur bei Programmierfehlern (nicht-Kollaborator-Exceptions).
    """
    retrying = AsyncRetrying(
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        stop=stop_after_attempt(policy.attempts),
        wait=wait_exponential(
            multiplier=policy.backoff_multiplier,
            min=policy.backoff_min,
            max=policy.backoff_max,
        ),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )

    try:
        async for attempt in retrying:
            with attempt:
                value = await asyncio.wait_for(operation(), timeout=policy.timeout_seconds)
    except LLMResponseError as exc:
        attempts = retrying.statistics.get("attempt_number", policy.attempts)
        logger.error("%s: unbrauchbare Antwort nach %d Versuch(en): %s", label, attempts, exc)
        return LLMResult(status=CallStatus.MALFORMED, error=exc, attempts=attempts)
    except (LLMError, asyncio.TimeoutError, sqlite3.Error) as exc:
        attempts = retrying.statistics.get("attempt_number", policy.attempts)
        logger.error(
            "%s: fehlgeschlagen nach %d Versuch(en): %s",
            label,
            attempts,
            exc or type(exc).__name__,
        )
        return LLMResult(status=CallStatus.FAILED, error=exc, attempts=attempts)

    attempts = retrying.statistics.get("attempt_number", 1)
    if attempts > 1:
        logger.info("%s: erfolgreich im %d. Versuch", label, attempts)
    return LLMResult(status=CallStatus.OK, value=value, attempts=attempts)
