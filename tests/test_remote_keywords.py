"""
Tests for remote keyword extraction and the two-tier resolver
"""

import asyncio
import json

import httpx
import pytest

from chatmem.kernel.errors import DependencyError, DependencyTimeout
from chatmem.kernel.remote_keywords import (
    KeywordResolver,
    RemoteKeywordConfig,
    RemoteKeywordService,
    parse_keywords,
)


def _completion(content):
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


def _service(handler, timeout_s=5.0):
    cfg = RemoteKeywordConfig(enabled=True, base_url="http://nlp.test/v1", timeout_s=timeout_s)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RemoteKeywordService(cfg, client=client)


class TestParseKeywords:
    def test_mixed_separators(self):
        assert parse_keywords("我, 自己，介绍、员工\n新员工") == ["我", "自己", "介绍", "员工", "新员工"]

    def test_drops_blank_long_and_repeated(self):
        assert parse_keywords("我,,我, ,这是一个超过十个字符长度的关键词") == ["我"]

    def test_caps_at_twenty(self):
        answer = ",".join(f"词{i}" for i in range(30))
        assert len(parse_keywords(answer)) == 20

    def test_empty(self):
        assert parse_keywords("") == []


class TestRemoteKeywordService:
    """HTTP behaviour of the remote extractor"""

    @pytest.mark.asyncio
    async def test_success(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return _completion("我,自己,介绍,员工")

        keywords = await _service(handler).extract("我要向新员工介绍自己")

        assert keywords == ["我", "自己", "介绍", "员工"]
        assert seen["url"] == "http://nlp.test/v1/chat/completions"
        assert seen["body"]["model"] == "deepseek-v3"
        assert seen["body"]["messages"][1]["content"].endswith("我要向新员工介绍自己")

    @pytest.mark.asyncio
    async def test_http_error(self):
        service = _service(lambda request: httpx.Response(503, text="overloaded"))
        with pytest.raises(DependencyError, match="HTTP 503"):
            await service.extract("x")

    @pytest.mark.asyncio
    async def test_transport_timeout(self):
        def handler(request):
            raise httpx.ConnectTimeout("slow", request=request)

        with pytest.raises(DependencyTimeout):
            await _service(handler).extract("x")

    @pytest.mark.asyncio
    async def test_time_bound(self):
        async def handler(request):
            await asyncio.sleep(5)
            return _completion("我")

        with pytest.raises(DependencyTimeout):
            await _service(handler).extract("x", timeout_s=0.05)

    @pytest.mark.asyncio
    async def test_missing_content(self):
        service = _service(lambda request: httpx.Response(200, json={"choices": []}))
        with pytest.raises(DependencyError, match="no message content"):
            await service.extract("x")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", [42, ["篮球"], {"keywords": "篮球"}])
    async def test_non_text_content(self, content):
        service = _service(lambda request: _completion(content))
        with pytest.raises(DependencyError, match="not text"):
            await service.extract("x")

    @pytest.mark.asyncio
    async def test_null_content_is_empty(self):
        assert await _service(lambda request: _completion(None)).extract("x") == []


class TestKeywordResolver:
    """Remote first, local heuristic on any degradation"""

    @pytest.mark.asyncio
    async def test_local_only(self):
        resolution = await KeywordResolver().resolve("篮球")
        assert resolution.keywords == ["篮球"]
        assert resolution.source == "local"
        assert resolution.degraded_reason is None

    @pytest.mark.asyncio
    async def test_remote_used(self):
        resolver = KeywordResolver(remote=_service(lambda request: _completion("篮球,运动")))
        resolution = await resolver.resolve("我喜欢什么运动")
        assert resolution.keywords == ["篮球", "运动"]
        assert resolution.source == "remote"

    @pytest.mark.asyncio
    async def test_remote_error_falls_back(self):
        resolver = KeywordResolver(remote=_service(lambda request: httpx.Response(500)))
        resolution = await resolver.resolve("篮球")
        assert resolution.keywords == ["篮球"]
        assert resolution.source == "local"
        assert resolution.degraded_reason == "remote_error"

    @pytest.mark.asyncio
    async def test_remote_timeout_falls_back(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        resolution = await KeywordResolver(remote=_service(handler)).resolve("篮球")
        assert resolution.source == "local"
        assert resolution.degraded_reason == "remote_timeout"

    @pytest.mark.asyncio
    async def test_remote_empty_falls_back(self):
        resolver = KeywordResolver(remote=_service(lambda request: _completion("  ,  ")))
        resolution = await resolver.resolve("篮球")
        assert resolution.keywords == ["篮球"]
        assert resolution.degraded_reason == "remote_empty"

    @pytest.mark.asyncio
    async def test_non_text_content_falls_back(self):
        resolver = KeywordResolver(remote=_service(lambda request: _completion(42)))
        resolution = await resolver.resolve("篮球")
        assert resolution.keywords == ["篮球"]
        assert resolution.degraded_reason == "remote_error"

    @pytest.mark.asyncio
    async def test_unexpected_remote_failure_falls_back(self, monkeypatch):
        service = _service(lambda request: _completion("篮球"))

        async def broken(query, timeout_s=None):
            raise RuntimeError("boom")

        monkeypatch.setattr(service, "extract", broken)
        resolution = await KeywordResolver(remote=service).resolve("篮球")
        assert resolution.source == "local"
        assert resolution.degraded_reason == "remote_error"

    @pytest.mark.asyncio
    async def test_blank_query_skips_remote(self):
        calls = []

        def handler(request):
            calls.append(request)
            return _completion("我")

        resolution = await KeywordResolver(remote=_service(handler)).resolve("  ")
        assert resolution.keywords == []
        assert calls == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
