"""Erkennung degenerierter Dialoge.

- Wiederholung: unter den letzten 5 Fragen weniger als 3 verschiedene
- Ratlosigkeit: mindestens 2 der letzten 3 Antworten sind "weiß nicht"
- Duplikate: neue Frage ist (fast) gleich einer bereits gestellten

Fragen werden vor dem Vergleich normalisiert (Kleinschreibung,
Satzzeichen entfernt, Whitespace zusammengefasst).  Zusätzlich gilt eine
Frage als Duplikat, wenn SequenceMatcher eine Ähnlichkeit von mindestens
DUPLICATE_THRESHOLD liefert.
"""

from __future__ import annotations

import re
from difflib import SequenceMatcher
from typing import Iterable, Sequence

DUPLICATE_THRESHOLD = 0.85

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_APOSTROPHES = str.maketrans({"\u2019": "'", "\u2018": "'", "\u02bc": "'"})

_DONT_KNOW_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\b(?:do\s*n[o']?t|dont)\s*know\b",
        r"\bidk\b",
        r"\bno\s+idea\b",
        r"\bnot\s+sure\b",
        r"\bunsure\b",
        r"\bno\s+clue\b",
        r"\bcan'?t\s+say\b",
        r"\bcannot\s+say\b",
        r"\bhave\s+no\s+(?:information|info)\b",
        r"^\s*(?:n/?a|unknown|\?+)\s*[.!]?\s*$",
        r"\bkeine\s+ahnung\b",
        r"\bwei(?:ß|ss)\s+(?:ich\s+)?nicht\b",
    )
]


def normalize_question(text: str) -> str:
    """Vergleichsform einer Frage."""
    lowered = _PUNCTUATION.sub(" ", text.lower())
    return _WHITESPACE.sub(" ", lowered).strip()


def is_duplicate_question(
    candidate: str,
    asked: Iterable[str],
    threshold: float = DUPLICATE_THRESHOLD,
) -> bool:
    """True wenn `candidate` einer bereits gestellten Frage entspricht."""
    normalized = normalize_question(candidate)
    for previous in asked:
        other = normalize_question(previous)
        if normalized == other:
            return True
        if SequenceMatcher(None, normalized, other).ratio() >= threshold:
            return True
    return False


def is_dont_know(answer: str) -> bool:
    """True wenn die Antwort eine Variante von "weiß ich nicht" ist.

    Typografische Apostrophe (Mobil- und macOS-Tastaturen) zählen wie '.
    """
    text = answer.translate(_APOSTROPHES)
    return any(pattern.search(text) for pattern in _DONT_KNOW_PATTERNS)


def detect_repetition(questions: Sequence[str], window: int = 5, min_distinct: int = 3) -> bool:
    """Weniger als `min_distinct` verschiedene Fragen unter den letzten `window`."""
    if len(questions) < window:
        return False
    recent = questions[-window:]
    return len({normalize_question(q) for q in recent}) < min_distinct


def detect_user_lacks_information(
    answers: Sequence[str],
    window: int = 3,
    threshold: int = 2,
) -> bool:
    """Mindestens `threshold` der letzten `window` Antworten sind "weiß nicht"."""
    recent = answers[-window:]
    return sum(1 for answer in recent if is_dont_know(answer)) >= threshold
