"""Prometheus metrics definitions."""
from __future__ import annotations

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


REQUEST_COUNT = Counter(
    "narrative_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_LATENCY = Histogram(
    "narrative_http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10],
)

CHAPTER_GENERATION_TOTAL = Counter(
    "narrative_chapter_generation_total",
    "Total chapter generations",
    ["status"],
)

CHAPTER_GENERATION_DURATION = Histogram(
    "narrative_chapter_generation_duration_seconds",
    "Chapter generation duration",
    ["stage"],
    buckets=[1, 5, 10, 30, 60, 120, 300, 600],
)

LLM_RETRY_TOTAL = Counter(
    "narrative_llm_retries_total",
    "Application-level retries of language model calls",
    ["call_site"],
)

OUTLINE_EXPANSION_TOTAL = Counter(
    "narrative_outline_expansions_total",
    "Detailed outline expansion attempts",
    ["outcome"],
)

RECONCILIATION_TOTAL = Counter(
    "narrative_reconciliation_total",
    "Reconciliation cycle outcomes",
    ["outcome"],
)

WORLD_EVOLUTION_TOTAL = Counter(
    "narrative_world_evolution_total",
    "World evolution outcomes",
    ["outcome"],
)


def render_metrics() -> bytes:
    return generate_latest()


METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST
