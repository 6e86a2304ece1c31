"""
Hybrid Retrieval Engine for chatmem

Combines lexical (keyword) and semantic (vector) memory retrieval.

Features:
- Three modes: keyword, vector, hybrid (default)
- Keyword and vector paths run concurrently with no shared state
- Weighted fusion; candidates found by both paths are promoted to hybrid
- Threshold filter, then (score desc, recency desc, id desc) ordering
- Degradation: keyword candidates fill in when the vector path comes up short
- Explicit orphan policy for vector records whose memory was deleted
- Debug observability: per-stage timings, candidate and bucket counts
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any

import httpx
import numpy as np

from chatmem.kernel.embedding_engine import EmbeddingEngine
from chatmem.kernel.errors import DependencyError, DependencyTimeout, SearchUnavailable
from chatmem.kernel.keyword_extractor import HeuristicKeywordExtractor
from chatmem.kernel.memory_store import MemoryStore
from chatmem.kernel.metrics_registry import get_retrieval_metrics, relevance_bucket
from chatmem.kernel.remote_keywords import (
    KeywordResolution,
    KeywordResolver,
    RemoteKeywordService,
)
from chatmem.kernel.retrieval_config import RetrievalConfig, Settings
from chatmem.kernel.search_request import SearchRequest, build_search_request
from chatmem.kernel.time_utils import parse_ts
from chatmem.kernel.types import (
    HybridResult,
    KeywordResult,
    MemoryRecord,
    ScoreDetails,
    SearchMode,
    SearchResult,
    VectorRecord,
    VectorResult,
    content_key,
)
from chatmem.kernel.vector_store import ScanReport, VectorStore


logger = logging.getLogger(__name__)


def keyword_score(memory: MemoryRecord) -> float:
    """Lexical matches carry no similarity, so the score derives from importance"""
    return memory.importance / 10.0


@dataclass
class PathOutcome:
    """What one retrieval path produced"""

    keyword_hits: list[MemoryRecord] = field(default_factory=list)
    vector_hits: list[tuple[VectorRecord, float]] = field(default_factory=list)
    failed: bool = False
    degraded_reason: str | None = None
    elapsed_ms: float = 0.0
    resolution: KeywordResolution | None = None
    orphan_ids: set[int] = field(default_factory=set)
    scan: ScanReport = field(default_factory=ScanReport)


@dataclass
class _Candidate:
    memory: MemoryRecord | None = None
    record: VectorRecord | None = None
    kw_score: float | None = None
    vec_sim: float | None = None
    raw: float = 0.0
    orphan: bool = False

    @property
    def recency(self) -> float:
        if self.memory is not None:
            return parse_ts(self.memory.created_at)
        return parse_ts(self.record.created_at)

    @property
    def sort_id(self) -> int:
        source = self.memory if self.memory is not None else self.record
        return source.id or 0

    def sort_key(self) -> tuple[float, float, int]:
        return (-self.raw, -self.recency, -self.sort_id)


@dataclass(frozen=True)
class PerformanceReport:
    """Average latency per mode over a set of probe queries"""

    keyword_ms: float
    vector_ms: float
    hybrid_ms: float
    recommendations: list[str]


class HybridRetriever:
    """
    Hybrid search orchestrator

    Read-only with respect to both stores. Holds no per-query state apart
    from last_debug, which is diagnostic only.
    """

    def __init__(
        self,
        memory_store: MemoryStore,
        vector_store: VectorStore | None = None,
        embedding_engine: EmbeddingEngine | None = None,
        keyword_resolver: KeywordResolver | None = None,
        config: RetrievalConfig | None = None,
    ) -> None:
        """
        Initialize hybrid retriever

        Args:
            memory_store: Lexical store
            vector_store: Vector store (vector path disabled when None)
            embedding_engine: Embedding engine (vector path disabled when None)
            keyword_resolver: Keyword resolution strategy; defaults to the
                local heuristic extractor only
            config: Search defaults snapshot
        """
        self.config = config or RetrievalConfig()
        self.memory_store = memory_store
        self.vector_store = vector_store
        self.embedding_engine = embedding_engine
        self.keywords = keyword_resolver or KeywordResolver(
            HeuristicKeywordExtractor(self.config.max_keywords)
        )
        self.debug_enabled = self.config.debug or os.getenv("CHATMEM_RETRIEVAL_DEBUG") == "1"
        self.last_debug: dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def hybrid_search(
        self,
        user_id: str | None,
        query: str | None,
        mode: SearchMode | str | None = None,
        keyword_weight: float | None = None,
        vector_weight: float | None = None,
        threshold: float | None = None,
        limit: int | None = None,
    ) -> list[SearchResult]:
        """
        Search a user's memories

        Args:
            user_id: Owner to scope the search to (required)
            query: Free-text query (required; "" broadens to top memories)
            mode: keyword, vector or hybrid (default)
            keyword_weight: Weight of the keyword score in fusion
            vector_weight: Weight of the vector similarity in fusion
            threshold: Minimum score to keep
            limit: Maximum results

        Returns:
            Results ordered by relevance_score descending

        Raises:
            InvalidParameters: Before any sub-search runs
            SearchUnavailable: When every path that matters failed
        """
        req = build_search_request(
            self.config,
            user_id,
            query,
            mode=mode,
            keyword_weight=keyword_weight,
            vector_weight=vector_weight,
            threshold=threshold,
            limit=limit,
        )
        metrics = get_retrieval_metrics()
        metrics.searches_total.labels(mode=req.mode.value).inc()
        t_start = time.perf_counter()

        if req.mode == SearchMode.KEYWORD:
            kw = await self._keyword_path(req, req.limit)
            if kw.failed:
                raise SearchUnavailable("Keyword search failed")
            vec = PathOutcome()
            candidates = self._single_path_keyword(kw.keyword_hits)
            results, supplemented = self._finalize(candidates, req), 0

        elif req.mode == SearchMode.VECTOR:
            kw = PathOutcome()
            vec = await self._vector_path(req, req.limit, req.threshold)
            candidates = self._single_path_vector(vec)
            results, supplemented = self._finalize(candidates, req), 0

        else:
            fetch_limit = req.limit * self.config.candidate_multiplier
            kw, vec = await asyncio.gather(
                self._keyword_path(req, fetch_limit),
                self._vector_path(req, fetch_limit, self.config.vector_threshold),
            )
            if kw.failed and vec.failed:
                raise SearchUnavailable("Both keyword and vector search failed")
            candidates = self._fuse(kw.keyword_hits, vec, req)
            results = self._finalize(candidates, req)
            results, supplemented = self._supplement(results, kw.keyword_hits, vec, req)

        for reason in (kw.degraded_reason, vec.degraded_reason):
            if reason:
                metrics.degradations_total.labels(reason=reason).inc()

        buckets: dict[str, int] = {"high": 0, "medium": 0, "low": 0}
        for r in results:
            bucket = relevance_bucket(r.relevance_score)
            buckets[bucket] += 1
            metrics.results_total.labels(bucket=bucket).inc()

        overflow = sum(1 for r in results if r.details.overflow)
        if overflow:
            logger.warning(
                f"{overflow} fused scores exceeded 1.0 (weights "
                f"{req.keyword_weight:.2f}+{req.vector_weight:.2f}); reported clamped"
            )

        elapsed_ms = (time.perf_counter() - t_start) * 1000
        metrics.stage_seconds.labels(stage="total").observe(elapsed_ms / 1000)
        if self.debug_enabled:
            self._build_debug_info(req, kw, vec, results, buckets, overflow, supplemented, elapsed_ms)

        logger.debug(
            f"Search returned {len(results)} results "
            f"(mode={req.mode.value}, user={req.user_id}, {elapsed_ms:.1f}ms)"
        )
        return results

    search = hybrid_search

    def memory_stats(self, user_id: str) -> dict[str, Any]:
        return self.memory_store.stats(user_id)

    async def vector_stats(self, user_id: str) -> dict[str, Any]:
        if self.vector_store is None:
            return {}
        return await self.vector_store.get_user_memory_stats(user_id)

    async def aclose(self) -> None:
        """Close HTTP clients held by the embedding engine and keyword resolver"""
        if self.embedding_engine is not None:
            await self.embedding_engine.aclose()
        await self.keywords.aclose()

    async def get_stats(self, user_id: str) -> dict[str, Any]:
        """Read-only summary of both stores and the embedding model"""
        return {
            "memory": self.memory_stats(user_id),
            "vector": await self.vector_stats(user_id),
            "embedding": self.embedding_engine.model_info() if self.embedding_engine else None,
        }

    async def analyze_performance(self, user_id: str, queries: list[str]) -> PerformanceReport:
        """
        Time each mode over probe queries and suggest a setup

        Args:
            user_id: User whose memories are searched
            queries: Probe queries (at least one)
        """
        if not queries:
            raise ValueError("queries must not be empty")

        totals = {mode: 0.0 for mode in SearchMode}
        for query in queries:
            for mode in (SearchMode.KEYWORD, SearchMode.VECTOR, SearchMode.HYBRID):
                start = time.perf_counter()
                try:
                    await self.hybrid_search(user_id, query, mode=mode, limit=3)
                except SearchUnavailable as e:
                    logger.warning(f"Probe {query!r} in {mode.value} mode failed: {e}")
                totals[mode] += (time.perf_counter() - start) * 1000

        n = len(queries)
        kw_ms = totals[SearchMode.KEYWORD] / n
        vec_ms = totals[SearchMode.VECTOR] / n
        hyb_ms = totals[SearchMode.HYBRID] / n

        recommendations = []
        if kw_ms < vec_ms and kw_ms < hyb_ms:
            recommendations.append("Keyword search is fastest; suited to real-time queries")
        if vec_ms < hyb_ms * 0.8:
            recommendations.append("Vector search is efficient; consider raising vector_weight")
        if hyb_ms > kw_ms * 2:
            recommendations.append("Hybrid search is slow; consider lowering vector_weight")

        return PerformanceReport(kw_ms, vec_ms, hyb_ms, recommendations)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    async def _keyword_path(self, req: SearchRequest, fetch_limit: int) -> PathOutcome:
        """Resolve keywords and run the lexical search"""
        start = time.perf_counter()
        outcome = PathOutcome()

        try:
            resolution = await self.keywords.resolve(req.query)
            outcome.resolution = resolution
            outcome.degraded_reason = resolution.degraded_reason
            hits = await asyncio.to_thread(
                self.memory_store.search, req.user_id, resolution.keywords, fetch_limit
            )
            if not hits and resolution.source == "remote":
                logger.info("Remote keywords matched nothing, retrying with local extractor")
                resolution = self.keywords.resolve_local(req.query, "remote_no_match")
                outcome.resolution = resolution
                outcome.degraded_reason = resolution.degraded_reason
                hits = await asyncio.to_thread(
                    self.memory_store.search, req.user_id, resolution.keywords, fetch_limit
                )
            outcome.keyword_hits = hits
        except Exception as e:
            logger.error(f"Keyword search failed: {e}")
            outcome.failed = True
            outcome.degraded_reason = "keyword_store_error"

        outcome.elapsed_ms = (time.perf_counter() - start) * 1000
        get_retrieval_metrics().stage_seconds.labels(stage="keyword").observe(
            outcome.elapsed_ms / 1000
        )
        return outcome

    async def _vector_path(
        self,
        req: SearchRequest,
        fetch_limit: int,
        store_threshold: float,
    ) -> PathOutcome:
        """Embed the query and scan the vector store; never raises"""
        start = time.perf_counter()
        outcome = PathOutcome()

        if self.vector_store is None or self.embedding_engine is None:
            outcome.degraded_reason = "vector_disabled"
            return outcome
        if not req.query.strip():
            outcome.degraded_reason = "empty_query"
            return outcome

        try:
            if self.config.skip_vector_when_empty:
                stats = await self.vector_store.get_user_memory_stats(req.user_id)
                if stats["vectorized_memories"] == 0:
                    logger.debug(f"User {req.user_id} has no vectorized memories, skipping")
                    outcome.degraded_reason = "no_vectors"
                    return outcome

            try:
                qvec = await self.embedding_engine.embed(req.query)
            except DependencyTimeout as e:
                logger.warning(f"Query embedding timed out: {e}")
                outcome.failed = True
                outcome.degraded_reason = "embedding_timeout"
                return outcome
            except DependencyError as e:
                logger.warning(f"Query embedding failed: {e}")
                outcome.failed = True
                outcome.degraded_reason = "embedding_error"
                return outcome

            hits = await self.vector_store.similarity_search(
                req.user_id,
                qvec,
                limit=fetch_limit,
                threshold=store_threshold,
                report=outcome.scan,
            )
            outcome.vector_hits, outcome.orphan_ids = await self._apply_orphan_policy(
                req.user_id, hits
            )
        except Exception as e:
            logger.error(f"Vector search failed: {e}")
            outcome.failed = True
            outcome.degraded_reason = "vector_store_error"
        finally:
            outcome.elapsed_ms = (time.perf_counter() - start) * 1000
            get_retrieval_metrics().stage_seconds.labels(stage="vector").observe(
                outcome.elapsed_ms / 1000
            )

        return outcome

    async def _apply_orphan_policy(
        self,
        user_id: str,
        hits: list[tuple[VectorRecord, float]],
    ) -> tuple[list[tuple[VectorRecord, float]], set[int]]:
        """
        Find vector hits whose memory no longer exists

        Returns:
            (hits to keep, ids of every orphan seen)
        """
        if not hits:
            return hits, set()

        try:
            live_ids, live_keys = await asyncio.to_thread(
                self.memory_store.existing_refs,
                user_id,
                [r.memory_id for r, _ in hits if r.memory_id is not None],
                [r.content_key for r, _ in hits],
            )
        except Exception as e:
            logger.warning(f"Orphan check failed, keeping all vector hits: {e}")
            return hits, set()

        kept = []
        orphan_ids: set[int] = set()
        for record, sim in hits:
            live = (record.memory_id is not None and record.memory_id in live_ids) or (
                record.content_key in live_keys
            )
            if not live:
                orphan_ids.add(record.id)
                if self.config.orphan_policy == "drop":
                    continue
            kept.append((record, sim))

        if orphan_ids:
            logger.info(
                f"{len(orphan_ids)} vector hits for {user_id} have no memory record "
                f"(policy={self.config.orphan_policy})"
            )
        return kept, orphan_ids

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _single_path_keyword(self, hits: list[MemoryRecord]) -> list[_Candidate]:
        out = []
        for memory in hits:
            score = keyword_score(memory)
            out.append(_Candidate(memory=memory, kw_score=score, raw=score))
        return out

    def _single_path_vector(self, vec: PathOutcome) -> list[_Candidate]:
        return [
            _Candidate(record=record, vec_sim=sim, raw=sim, orphan=record.id in vec.orphan_ids)
            for record, sim in vec.vector_hits
        ]

    def _fuse(
        self,
        keyword_hits: list[MemoryRecord],
        vec: PathOutcome,
        req: SearchRequest,
    ) -> list[_Candidate]:
        """
        Weighted fusion of both paths

        A vector hit joins a keyword hit when its metadata memory_id equals
        the memory id, or failing that when their trimmed, lower-cased
        contents are equal. Weights are applied as given; the raw sum may
        exceed 1.0.
        """
        w_kw, w_vec = req.keyword_weight, req.vector_weight

        by_id: dict[int, _Candidate] = {}
        by_key: dict[str, _Candidate] = {}
        candidates: list[_Candidate] = []
        for memory in keyword_hits:
            if memory.id in by_id:
                continue
            kw = keyword_score(memory)
            cand = _Candidate(memory=memory, kw_score=kw, raw=w_kw * kw)
            by_id[memory.id] = cand
            by_key.setdefault(memory.content_key, cand)
            candidates.append(cand)

        seen_vector_keys: set[str] = set()
        for record, sim in vec.vector_hits:
            twin = None
            if record.memory_id is not None:
                twin = by_id.get(record.memory_id)
            if twin is None:
                twin = by_key.get(record.content_key)

            if twin is not None:
                if twin.record is not None:
                    continue  # memory already fused with a closer vector
                twin.record = record
                twin.vec_sim = sim
                twin.raw = w_kw * twin.kw_score + w_vec * sim
                continue

            if record.content_key in seen_vector_keys:
                continue
            seen_vector_keys.add(record.content_key)
            candidates.append(
                _Candidate(
                    record=record,
                    vec_sim=sim,
                    raw=w_vec * sim,
                    orphan=record.id in vec.orphan_ids,
                )
            )

        return candidates

    def _finalize(self, candidates: list[_Candidate], req: SearchRequest) -> list[SearchResult]:
        """Threshold, order, truncate and wrap"""
        kept = [c for c in candidates if c.raw >= req.threshold]
        kept.sort(key=_Candidate.sort_key)
        return [self._to_result(c) for c in kept[: req.limit]]

    def _supplement(
        self,
        results: list[SearchResult],
        keyword_hits: list[MemoryRecord],
        vec: PathOutcome,
        req: SearchRequest,
    ) -> tuple[list[SearchResult], int]:
        """
        Fill up with keyword candidates when the vector path came up short

        A candidate qualifies when its own keyword score passes the
        threshold, even though its weighted score did not. It keeps the
        weighted score, so it ranks after every thresholded result and
        the list stays sorted.
        """
        if len(vec.vector_hits) >= req.limit or len(results) >= req.limit:
            return results, 0

        present = {r.memory.id for r in results if isinstance(r, (KeywordResult, HybridResult))}
        extra = []
        for memory in keyword_hits:
            if memory.id in present or keyword_score(memory) < req.threshold:
                continue
            present.add(memory.id)
            kw = keyword_score(memory)
            extra.append(_Candidate(memory=memory, kw_score=kw, raw=req.keyword_weight * kw))

        extra.sort(key=_Candidate.sort_key)
        extra = extra[: req.limit - len(results)]
        if extra:
            logger.debug(f"Supplemented {len(extra)} keyword results (vector path short)")
        return results + [self._to_result(c) for c in extra], len(extra)

    def _to_result(self, cand: _Candidate) -> SearchResult:
        raw = cand.raw
        score = float(np.clip(raw, 0.0, 1.0))
        details = ScoreDetails(
            keyword_score=cand.kw_score,
            vector_similarity=cand.vec_sim,
            raw_score=raw,
            overflow=raw > 1.0,
            orphan=cand.orphan,
        )
        if cand.memory is not None and cand.record is not None:
            return HybridResult(cand.memory, cand.record, score, details)
        if cand.memory is not None:
            return KeywordResult(cand.memory, score, details)
        return VectorResult(cand.record, score, details)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def _build_debug_info(
        self,
        req: SearchRequest,
        kw: PathOutcome,
        vec: PathOutcome,
        results: list[SearchResult],
        buckets: dict[str, int],
        overflow: int,
        supplemented: int,
        elapsed_ms: float,
    ) -> None:
        """Store per-query diagnostics in last_debug"""
        self.last_debug = {
            "mode": req.mode.value,
            "keywords": kw.resolution.keywords if kw.resolution else [],
            "keyword_source": kw.resolution.source if kw.resolution else None,
            "timings_ms": {
                "keyword": round(kw.elapsed_ms, 2),
                "vector": round(vec.elapsed_ms, 2),
                "total": round(elapsed_ms, 2),
            },
            "candidates": {
                "keyword": len(kw.keyword_hits),
                "vector": len(vec.vector_hits),
            },
            "degradations": [r for r in (kw.degraded_reason, vec.degraded_reason) if r],
            "weights": {"keyword": req.keyword_weight, "vector": req.vector_weight},
            "buckets": buckets,
            "result_types": {
                t.value: sum(1 for r in results if r.search_type == t) for t in SearchMode
            },
            "supplemented": supplemented,
            "overflow": overflow,
            "orphans": len(vec.orphan_ids),
            "dimension_mismatches": vec.scan.dimension_mismatches,
        }


def build_retriever(
    settings: Settings,
    db_path: str | None = None,
    remote_client: httpx.AsyncClient | None = None,
) -> HybridRetriever:
    """
    Wire stores, embedding engine and keyword resolver from a Settings snapshot

    The embedding engine is left out (vector path disabled) when its
    provider cannot be constructed, e.g. a missing API key.
    """
    path = db_path or settings.db_path
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    memory_store = MemoryStore(path)
    vector_store = VectorStore(path, dim=settings.embeddings.dim)

    try:
        engine: EmbeddingEngine | None = EmbeddingEngine(settings.embeddings)
    except ValueError as e:
        logger.warning(f"Embedding engine unavailable, vector path disabled: {e}")
        engine = None

    remote = None
    if settings.remote_keywords.enabled:
        remote = RemoteKeywordService(settings.remote_keywords, client=remote_client)

    resolver = KeywordResolver(HeuristicKeywordExtractor(settings.retrieval.max_keywords), remote)
    return HybridRetriever(
        memory_store,
        vector_store,
        engine,
        keyword_resolver=resolver,
        config=settings.retrieval,
    )
