"""Pydantic schemas for request/response and model-output validation"""
from narrative_engine.schemas.drift import (
    DRIFT_JSON_SHAPE,
    DriftClue,
    DriftElement,
    DriftPlotTwist,
    DriftRelationshipChange,
    DriftReportPayload,
)
from narrative_engine.schemas.generation import GenerateChaptersRequest, GenerationTaskResponse

__all__ = [
    # Drift
    "DRIFT_JSON_SHAPE",
    "DriftClue",
    "DriftElement",
    "DriftPlotTwist",
    "DriftRelationshipChange",
    "DriftReportPayload",
    # Generation
    "GenerateChaptersRequest",
    "GenerationTaskResponse",
]
