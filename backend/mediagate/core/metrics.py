"""
Prometheus metrics for the moderation pipeline (served on /metrics).
"""
from __future__ import annotations

from prometheus_client import Counter

CONTENT_STAGED = Counter(
    "mediagate_content_staged_total", "Content items accepted by staging", ["kind"],
)
DECISIONS = Counter(
    "mediagate_decisions_total", "Moderation decisions recorded", ["decision", "source"],
)
MODALITY_VERDICTS = Counter(
    "mediagate_modality_verdicts_total", "Per-modality verdicts", ["modality", "verdict"],
)
EXTERNAL_RETRIES = Counter(
    "mediagate_external_retries_total", "Retried external calls", ["operation"],
)
STORAGE_FAILURES = Counter(
    "mediagate_storage_failures_total", "Durable store verification failures",
)
PUBLISH_FAILURES = Counter(
    "mediagate_publish_failures_total", "Delivery network publish failures",
)
SWEEPER_ACTIONS = Counter(
    "mediagate_sweeper_actions_total", "Recovery sweeper actions", ["action"],
)
CONCURRENCY_CONFLICTS = Counter(
    "mediagate_concurrency_conflicts_total", "Lost conditional writes", ["stage"],
)
