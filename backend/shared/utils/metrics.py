"""
Lightweight metrics collection for Scorekeeper.
Wraps prometheus_client with async-safe patterns.
"""
from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Iterator

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from shared.config import get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Counters ────────────────────────────────────────────────────────────
EVENTS_INGESTED = Counter(
    "sk_events_ingested_total",
    "Canonical events seen at the intake boundary, by outcome",
    ["provider", "outcome"],
)
EVENTS_QUARANTINED = Counter(
    "sk_events_quarantined_total",
    "Events placed in quarantine",
    ["reason"],
)
LEDGER_APPENDS = Counter(
    "sk_ledger_appends_total",
    "Ledger entries appended",
    ["kind"],
)
RULE_FAILURES = Counter(
    "sk_rule_evaluation_failures_total",
    "Rule evaluation failures that put a match under review",
    ["sport"],
)
CORRECTIONS = Counter(
    "sk_corrections_total",
    "Correction lifecycle transitions",
    ["status"],
)
PROJECTION_REBUILDS = Counter(
    "sk_projection_rebuilds_total",
    "Projection folds by mode",
    ["mode"],
)
ALERTS = Counter(
    "sk_alerts_total",
    "Operator-facing alerts raised",
    ["kind"],
)
NOTIFY_FAILURES = Counter(
    "sk_notify_failures_total",
    "Post-commit notifications and alerts that could not be published",
    ["channel"],
)

# ── Histograms ──────────────────────────────────────────────────────────
INTAKE_LATENCY = Histogram(
    "sk_intake_seconds",
    "Time to take one event from intake to ledger append",
    ["provider"],
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)
LEASE_WAIT = Histogram(
    "sk_lease_wait_seconds",
    "Time spent waiting for a per-match writer lease",
    buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
)

# ── Gauges ──────────────────────────────────────────────────────────────
QUARANTINE_OPEN = Gauge(
    "sk_quarantine_open",
    "Events currently held in quarantine",
)
CIRCUIT_STATE = Gauge(
    "sk_provider_circuit_open",
    "1 when a provider circuit is not closed",
    ["provider"],
)


@contextmanager
def track_latency(histogram: Histogram, **labels: str) -> Iterator[None]:
    """Context manager to track operation latency."""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        if labels:
            histogram.labels(**labels).observe(elapsed)
        else:
            histogram.observe(elapsed)


def start_metrics_server(port: int | None = None) -> None:
    """Start the Prometheus metrics HTTP server."""
    settings = get_settings()
    if not settings.metrics_enabled:
        return
    metrics_port = port or settings.metrics_port
    try:
        start_http_server(metrics_port)
        logger.info("metrics_server_started", port=metrics_port)
    except OSError as exc:
        logger.warning("metrics_server_failed", error=str(exc), port=metrics_port)
