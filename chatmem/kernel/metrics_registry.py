"""
Prometheus collectors for retrieval diagnostics.

All collectors live on a dedicated CollectorRegistry so importing chatmem
never touches the process-wide default registry, and tests can reset the
registry between runs without "Duplicated timeseries" errors.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from prometheus_client import CollectorRegistry, Counter, Histogram


logger = logging.getLogger(__name__)

HIGH_RELEVANCE = 0.7
MEDIUM_RELEVANCE = 0.4

_registry: CollectorRegistry | None = None
_metrics: RetrievalMetrics | None = None
_registry_lock = threading.Lock()


@dataclass(frozen=True)
class RetrievalMetrics:
    """Collectors shared by the retriever, stores and embedding engine"""

    searches_total: Counter
    degradations_total: Counter
    stage_seconds: Histogram
    results_total: Counter
    dimension_mismatch_total: Counter
    embeddings_total: Counter


def _build_metrics(registry: CollectorRegistry) -> RetrievalMetrics:
    return RetrievalMetrics(
        searches_total=Counter(
            "chatmem_searches_total",
            "Searches served, by mode",
            ["mode"],
            registry=registry,
        ),
        degradations_total=Counter(
            "chatmem_degradations_total",
            "Searches that fell back to a simpler path, by reason",
            ["reason"],
            registry=registry,
        ),
        stage_seconds=Histogram(
            "chatmem_stage_seconds",
            "Latency of each retrieval stage",
            ["stage"],
            registry=registry,
        ),
        results_total=Counter(
            "chatmem_results_total",
            "Returned results, by relevance bucket",
            ["bucket"],
            registry=registry,
        ),
        dimension_mismatch_total=Counter(
            "chatmem_dimension_mismatch_total",
            "Stored vectors skipped because their dimension differs from the query",
            registry=registry,
        ),
        embeddings_total=Counter(
            "chatmem_embeddings_total",
            "Texts embedded, by provider",
            ["provider"],
            registry=registry,
        ),
    )


def get_metrics_registry() -> CollectorRegistry:
    """
    Get or create the chatmem metrics registry.

    Thread-safe; every caller shares the same registry until
    reset_metrics_registry() is called.
    """
    global _registry, _metrics

    with _registry_lock:
        if _registry is None:
            _registry = CollectorRegistry(auto_describe=True)
            _metrics = _build_metrics(_registry)
            logger.debug("Created chatmem metrics registry")
        return _registry


def get_retrieval_metrics() -> RetrievalMetrics:
    """Collectors bound to the current registry"""
    get_metrics_registry()
    return _metrics


def reset_metrics_registry() -> None:
    """
    Drop the registry and its collectors.

    Intended for tests; collectors handed out earlier keep counting into
    the old registry.
    """
    global _registry, _metrics

    with _registry_lock:
        _registry = None
        _metrics = None
        logger.debug("Reset metrics registry")


def relevance_bucket(score: float) -> str:
    """Coarse bucket used in diagnostics: high, medium or low"""
    if score >= HIGH_RELEVANCE:
        return "high"
    if score >= MEDIUM_RELEVANCE:
        return "medium"
    return "low"
