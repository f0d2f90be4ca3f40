"""Observability utilities (metrics, logging)."""

from .metrics import (
    REQUEST_COUNT,
    REQUEST_LATENCY,
    CHAPTER_GENERATION_TOTAL,
    CHAPTER_GENERATION_DURATION,
    LLM_RETRY_TOTAL,
    OUTLINE_EXPANSION_TOTAL,
    RECONCILIATION_TOTAL,
    WORLD_EVOLUTION_TOTAL,
    render_metrics,
    METRICS_CONTENT_TYPE,
)
from .structured_logging import configure_structlog
from .middleware import ObservabilityMiddleware

__all__ = [
    "REQUEST_COUNT",
    "REQUEST_LATENCY",
    "CHAPTER_GENERATION_TOTAL",
    "CHAPTER_GENERATION_DURATION",
    "LLM_RETRY_TOTAL",
    "OUTLINE_EXPANSION_TOTAL",
    "RECONCILIATION_TOTAL",
    "WORLD_EVOLUTION_TOTAL",
    "render_metrics",
    "METRICS_CONTENT_TYPE",
    "configure_structlog",
    "ObservabilityMiddleware",
]
