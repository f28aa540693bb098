"""Klassifizierungs-Pipeline: Erst-Klassifizierung, Rückfragen, Regelauswertung.

Typische Verwendung:
    from catalai.classifier import ClassificationPipeline, PipelineConfig, TurnStatus

    pipeline = ClassificationPipeline(llm, store, PipelineConfig.from_settings(settings))
    result = await pipeline.start("case-1", description)
"""

from catalai.classifier.attributes import normalize_attributes, unknown_attributes
from catalai.classifier.pipeline import (
    ClassificationPipeline,
    PipelineConfig,
    TurnResult,
    TurnStatus,
)

__all__ = [
    # Pipeline
    "ClassificationPipeline",
    "PipelineConfig",
    "TurnResult",
    "TurnStatus",
    # Attribute
    "normalize_attributes",
    "unknown_attributes",
]
