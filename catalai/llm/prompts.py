"""Prompt-Templates für alle LLM-Aufrufe.

Jeder Prompt verlangt eine reine JSON-Antwort.  Die Builder-Funktionen
fügen Fallbeschreibung, Verlauf und Kontext ein.
"""

from __future__ import annotations

import json
from typing import Any, Sequence

from catalai.cases import QAPair
from catalai.matrix.bootstrap import DEFAULT_ATTRIBUTE_HINTS
from catalai.matrix.models import Attribute, Category, Classification


CATEGORY_GUIDE = """\
Transformation categories, ordered from least to most automation:
1. Eliminate – the process adds no value and should be removed.
2. Simplify – the process is needed but can be streamlined first.
3. Digitise – manual or paper-based work should move to digital tools.
4. RPA – rule-based, repetitive, structured digital work for software robots.
5. AI Agent – work that needs judgement on unstructured input within one task.
6. Agentic AI – multi-step, goal-driven work that plans and acts across systems."""


CLASSIFY_SYSTEM_PROMPT = f"""\
You classify business process descriptions into a transformation category.

{CATEGORY_GUIDE}

Respond with JSON only:
{{
  "category": "<one of: {', '.join(c.value for c in Category)}>",
  "confidence": <number between 0 and 1>,
  "rationale": "<why this category>",
  "categoryProgression": "<why the lower categories do not fit>",
  "futureOpportunities": "<what could move it to a higher category later>"
}}"""


QUESTIONS_SYSTEM_PROMPT = """\
You help classify a business process. The current classification is not
certain enough. Ask the user short clarification questions that would most
change the classification. Never repeat or rephrase a question that was
already asked. Mark a question as critical only if the classification cannot
be decided without it.

Respond with JSON only:
{
  "questions": [
    {"question": "<question>", "purpose": "<what it clarifies>", "critical": <true|false>}
  ]
}
Return an empty list if no further question is needed."""


ATTRIBUTES_SYSTEM_PROMPT = """\
You extract structured attributes from a business process description and
the clarification conversation. Use only the allowed values for categorical
attributes, numbers for numeric attributes and true/false for boolean ones.
Use "unknown" when the information is not available.

Respond with JSON only:
{"attributes": {"<attribute name>": <value>}}"""


MATRIX_SYSTEM_PROMPT = f"""\
You design a decision matrix that adjusts process classifications with
business rules.

{CATEGORY_GUIDE}

Define 5 to 8 attributes (suggested: {', '.join(DEFAULT_ATTRIBUTE_HINTS)}) and
8 to 15 rules. Rules combine conditions on attributes with exactly one action:
"override" (set targetCategory), "adjust_confidence" (signed
confidenceAdjustment between -1 and 1) or "flag_review".

Respond with JSON only:
{{
  "description": "<short description>",
  "attributes": [
    {{"name": "<snake_case>", "type": "categorical|numeric|boolean",
      "possibleValues": ["<only for categorical>"], "weight": <0..1>,
      "description": "<meaning>"}}
  ],
  "rules": [
    {{"name": "<name>", "description": "<meaning>",
      "conditions": [{{"attribute": "<name>", "operator": "==|!=|>|<|>=|<=|in|not_in",
                      "value": <value or list>}}],
      "action": {{"type": "override|adjust_confidence|flag_review",
                 "targetCategory": "<category>", "confidenceAdjustment": <number>,
                 "rationale": "<why>"}},
      "priority": <0..100>, "active": true}}
  ]
}}"""


PATTERNS_SYSTEM_PROMPT = """\
You analyse disagreements between an automatic process classifier and its
users. Summarise the most important recurring patterns in one sentence each.

Respond with JSON only:
{"patterns": ["<pattern>", "..."]}"""


SUGGESTIONS_SYSTEM_PROMPT = f"""\
You improve a decision matrix based on classification feedback.

{CATEGORY_GUIDE}

Propose at most 5 changes. Allowed types:
- "new_rule": provide "newRule" (same shape as matrix rules)
- "modify_rule": provide "ruleId" of an existing rule and "modifiedRule"
- "adjust_weight": provide "attributeName" and "newWeight" (0..1)
- "new_attribute": provide "newAttribute"

Respond with JSON only:
{{
  "suggestions": [
    {{"type": "<type>", "rationale": "<why>",
      "impactEstimate": {{"affectedCategories": ["<category>"],
                         "expectedImprovementPercent": <0..100>,
                         "confidenceLevel": <0..1>}},
      "newRule": {{}}, "ruleId": "", "modifiedRule": {{}},
      "attributeName": "", "newWeight": 0.5, "newAttribute": {{}}}}
  ]
}}"""


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

def format_history(history: Sequence[QAPair]) -> str:
    if not history:
        return "(no clarification yet)"
    return "\n".join(
        f"Q{i}: {pair.question}\nA{i}: {pair.answer}"
        for i, pair in enumerate(history, start=1)
    )


def build_classify_prompt(description: str, history: Sequence[QAPair]) -> str:
    return (
        f"Process description:\n{description}\n\n"
        f"Clarification so far:\n{format_history(history)}"
    )


def build_questions_prompt(
    description: str,
    classification: Classification,
    history: Sequence[QAPair],
    max_questions: int,
    remaining_budget: int,
) -> str:
    return (
        f"Process description:\n{description}\n\n"
        f"Current classification: {classification.category.value} "
        f"(confidence {classification.confidence:.2f})\n"
        f"Rationale: {classification.rationale}\n\n"
        f"Clarification so far:\n{format_history(history)}\n\n"
        f"Ask at most {max_questions} question(s). "
        f"{remaining_budget} question(s) remain in total for this case."
    )


def build_attributes_prompt(
    description: str,
    history: Sequence[QAPair],
    attributes: Sequence[Attribute],
) -> str:
    lines = []
    for attribute in attributes:
        line = f"- {attribute.name} ({attribute.type.value})"
        if attribute.possible_values:
            line += f", allowed: {', '.join(attribute.possible_values)}"
        if attribute.description:
            line += f": {attribute.description}"
        lines.append(line)
    return (
        "Attributes:\n" + "\n".join(lines) + "\n\n"
        f"Process description:\n{description}\n\n"
        f"Clarification:\n{format_history(history)}"
    )


def build_evidence_prompt(evidence: dict[str, Any]) -> str:
    return "Evidence:\n" + json.dumps(evidence, indent=2, ensure_ascii=False, default=str)
