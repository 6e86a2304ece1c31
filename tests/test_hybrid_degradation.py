"""
Tests for hybrid retrieval degradation, failure policy and orphans

A hybrid search whose vector path fails, times out or finds nothing must
return the same records, in the same order, as a keyword-only search.
"""

import sqlite3

import httpx
import pytest

from chatmem.kernel.errors import InvalidParameters, SearchUnavailable
from chatmem.kernel.hybrid_retriever import HybridRetriever
from chatmem.kernel.memory_store import MemoryStore
from chatmem.kernel.metrics_registry import get_metrics_registry
from chatmem.kernel.remote_keywords import KeywordResolver, RemoteKeywordConfig, RemoteKeywordService
from chatmem.kernel.types import KeywordResult, VectorResult
from tests.helpers import (
    BASKETBALL,
    FailingEmbeddingProvider,
    MappedEmbeddingProvider,
    add_memory,
    make_retriever,
    seed_u1,
)


QUERIES = ["篮球", "电脑", "我", "", "我的电脑配置", "运动"]


def _ids(results):
    return [r.ref.id for r in results]


def _degradations(reason):
    return get_metrics_registry().get_sample_value(
        "chatmem_degradations_total", {"reason": reason}
    )


def _break_keyword_store(monkeypatch, retriever):
    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(retriever.memory_store, "search", broken)


class TestDegradationLaw:
    """Hybrid with a dead vector path behaves like keyword mode"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "provider",
        [FailingEmbeddingProvider(), FailingEmbeddingProvider(delay=5.0)],
        ids=["error", "timeout"],
    )
    async def test_failed_embedding_matches_keyword_mode(self, temp_db_path, provider):
        retriever = make_retriever(temp_db_path, provider=provider)
        retriever.embedding_engine.config.timeout_s = 0.05
        await seed_u1(retriever)
        await add_memory(retriever, "我的电脑配置是M3 Max", 3)

        for query in QUERIES:
            hybrid = await retriever.hybrid_search("u1", query)
            keyword = await retriever.hybrid_search("u1", query, mode="keyword")
            assert _ids(hybrid) == _ids(keyword), query
            assert all(isinstance(r, KeywordResult) for r in hybrid)

    @pytest.mark.asyncio
    async def test_no_vectors_matches_keyword_mode(self, temp_db_path):
        """A user with no vectorized memories skips the vector path"""
        provider = MappedEmbeddingProvider({"篮球": BASKETBALL})
        retriever = make_retriever(temp_db_path, provider=provider)
        await add_memory(retriever, "我喜欢打篮球", 8)
        await add_memory(retriever, "我的电脑是MacBook", 5)

        for query in QUERIES:
            hybrid = await retriever.hybrid_search("u1", query)
            keyword = await retriever.hybrid_search("u1", query, mode="keyword")
            assert _ids(hybrid) == _ids(keyword), query

        assert provider.calls == []
        assert _degradations("no_vectors") == len(QUERIES) - 1
        assert _degradations("empty_query") == 1

    @pytest.mark.asyncio
    async def test_supplemented_results_rank_last(self, temp_db_path):
        """Keyword hits below the weighted threshold fill in after fused results"""
        retriever = make_retriever(temp_db_path, debug=True)
        await seed_u1(retriever)

        results = await retriever.hybrid_search("u1", "")

        assert [r.relevance_score for r in results] == pytest.approx([0.32, 0.2])
        assert retriever.last_debug["supplemented"] == 1

    @pytest.mark.asyncio
    async def test_embedding_error_counted(self, temp_db_path):
        retriever = make_retriever(temp_db_path, provider=FailingEmbeddingProvider())
        await seed_u1(retriever)

        await retriever.hybrid_search("u1", "篮球")

        assert _degradations("embedding_error") == 1.0


class TestFailurePolicy:
    """Which failures surface to the caller"""

    @pytest.mark.asyncio
    async def test_vector_mode_fails_closed(self, temp_db_path):
        retriever = make_retriever(temp_db_path, provider=FailingEmbeddingProvider())
        await seed_u1(retriever)

        assert await retriever.hybrid_search("u1", "篮球", mode="vector") == []

    @pytest.mark.asyncio
    async def test_keyword_mode_store_failure(self, temp_db_path, monkeypatch):
        retriever = make_retriever(temp_db_path)
        await seed_u1(retriever)
        _break_keyword_store(monkeypatch, retriever)

        with pytest.raises(SearchUnavailable):
            await retriever.hybrid_search("u1", "篮球", mode="keyword")

    @pytest.mark.asyncio
    async def test_hybrid_survives_keyword_failure(self, temp_db_path, monkeypatch):
        retriever = make_retriever(temp_db_path)
        await seed_u1(retriever)
        _break_keyword_store(monkeypatch, retriever)

        results = await retriever.hybrid_search("u1", "篮球")

        assert len(results) == 1
        assert isinstance(results[0], VectorResult)
        assert results[0].relevance_score == pytest.approx(0.6)

    @pytest.mark.asyncio
    async def test_hybrid_both_paths_failed(self, temp_db_path, monkeypatch):
        retriever = make_retriever(temp_db_path, provider=FailingEmbeddingProvider())
        await seed_u1(retriever)
        _break_keyword_store(monkeypatch, retriever)

        with pytest.raises(SearchUnavailable):
            await retriever.hybrid_search("u1", "篮球")

    @pytest.mark.asyncio
    async def test_vector_path_disabled_without_engine(self, temp_db_path):
        await seed_u1(make_retriever(temp_db_path))
        retriever = HybridRetriever(MemoryStore(temp_db_path))

        hybrid = await retriever.hybrid_search("u1", "篮球")
        assert _ids(hybrid) == _ids(await retriever.hybrid_search("u1", "篮球", mode="keyword"))
        assert await retriever.hybrid_search("u1", "篮球", mode="vector") == []


class TestValidation:
    """Invalid parameters are rejected before any sub-search runs"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"user_id": None},
            {"user_id": ""},
            {"query": None},
            {"limit": 0},
            {"threshold": 1.5},
            {"keyword_weight": -0.1},
            {"mode": "fuzzy"},
        ],
    )
    async def test_rejected_before_search(self, temp_db_path, kwargs):
        provider = MappedEmbeddingProvider({"篮球": BASKETBALL})
        retriever = make_retriever(temp_db_path, provider=provider)
        call = {"user_id": "u1", "query": "篮球", **kwargs}

        with pytest.raises(InvalidParameters):
            await retriever.hybrid_search(**call)

        assert provider.calls == []


class TestOrphans:
    """Vector records whose memory was deleted"""

    @pytest.mark.asyncio
    async def test_orphans_dropped_by_default(self, temp_db_path):
        retriever = make_retriever(temp_db_path, debug=True)
        basketball, _ = await seed_u1(retriever)
        retriever.memory_store.delete(basketball)

        assert await retriever.hybrid_search("u1", "运动") == []
        assert retriever.last_debug["orphans"] == 1

    @pytest.mark.asyncio
    async def test_orphans_kept_and_flagged(self, temp_db_path):
        retriever = make_retriever(temp_db_path, orphan_policy="keep")
        basketball, _ = await seed_u1(retriever)
        retriever.memory_store.delete(basketball)

        results = await retriever.hybrid_search("u1", "运动", mode="vector")

        assert len(results) == 1
        assert results[0].details.orphan is True
        assert results[0].record.memory_id == basketball

    @pytest.mark.asyncio
    async def test_orphan_check_failure_keeps_hits(self, temp_db_path, monkeypatch):
        retriever = make_retriever(temp_db_path)
        await seed_u1(retriever)

        def broken(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(retriever.memory_store, "existing_refs", broken)

        results = await retriever.hybrid_search("u1", "运动", mode="vector")
        assert len(results) == 1
        assert results[0].details.orphan is False


class TestRemoteKeywords:
    """Remote keyword answers that match nothing are retried locally"""

    @pytest.mark.asyncio
    async def test_remote_no_match_retries_locally(self, temp_db_path):
        def handler(request):
            return httpx.Response(200, json={"choices": [{"message": {"content": "足球,排球"}}]})

        remote = RemoteKeywordService(
            RemoteKeywordConfig(enabled=True, base_url="http://nlp.test/v1"),
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        retriever = make_retriever(
            temp_db_path, keyword_resolver=KeywordResolver(remote=remote), debug=True
        )
        basketball, _ = await seed_u1(retriever)

        results = await retriever.hybrid_search("u1", "篮球", mode="keyword")

        assert _ids(results) == [basketball]
        assert retriever.last_debug["keyword_source"] == "local"
        assert "remote_no_match" in retriever.last_debug["degradations"]
        assert _degradations("remote_no_match") == 1.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode", ["keyword", "vector", "hybrid"])
    async def test_non_text_answer_falls_back_locally(self, temp_db_path, mode):
        def handler(request):
            return httpx.Response(200, json={"choices": [{"message": {"content": 42}}]})

        remote = RemoteKeywordService(
            RemoteKeywordConfig(enabled=True, base_url="http://nlp.test/v1"),
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        retriever = make_retriever(temp_db_path, keyword_resolver=KeywordResolver(remote=remote))
        await seed_u1(retriever)

        results = await retriever.hybrid_search("u1", "篮球", mode=mode)

        assert [r.ref.content for r in results] == ["我喜欢打篮球"]
        if mode != "vector":
            assert _degradations("remote_error") == 1.0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
