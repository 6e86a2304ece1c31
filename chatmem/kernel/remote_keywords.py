"""
Remote keyword extraction

RemoteKeywordService asks an OpenAI-compatible chat-completions endpoint
for a comma-separated keyword list. KeywordResolver wraps it with the
local heuristic extractor as a second tier: one remote attempt, bounded by
a timeout, then local extraction on timeout, error or an empty answer.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass

import httpx

from chatmem.kernel.errors import DependencyError, DependencyTimeout
from chatmem.kernel.keyword_extractor import HeuristicKeywordExtractor, KeywordExtractor


logger = logging.getLogger(__name__)

SERVICE_NAME = "remote-keywords"
MAX_REMOTE_KEYWORDS = 20
MAX_KEYWORD_LENGTH = 10

SYSTEM_PROMPT = """你是专业的中文关键词提取专家。请从用户查询中提取所有重要的关键词，用于记忆搜索。

规则：
1. 提取核心名词、动词、形容词
2. 保留重要的单字词（如"我"、"你"、"他"）
3. 识别人名、地名、品牌名
4. 识别技术术语和专业词汇
5. 避免无意义的词汇组合
6. 按重要性排序

输出格式：直接返回关键词列表，用逗号分隔，不要任何解释。

示例：
查询："我要向我的新员工介绍自己"
输出：我,自己,介绍,员工,新员工,个人,信息,工作"""

_SEPARATORS = re.compile(r"[,，、\n]")


@dataclass
class RemoteKeywordConfig:
    """Connection settings for the remote keyword service"""

    enabled: bool = False
    base_url: str = "https://api.openai.com/v1"
    model: str = "deepseek-v3"
    api_key_env: str = "OPENAI_API_KEY"
    timeout_s: float = 10.0
    temperature: float = 0.1
    max_tokens: int = 500

    def __post_init__(self):
        if self.timeout_s <= 0:
            raise ValueError(f"timeout_s must be > 0, got {self.timeout_s}")


def parse_keywords(text: str) -> list[str]:
    """
    Parse a comma-separated model answer into keywords

    Entries are trimmed; blanks and entries longer than 10 characters are
    dropped; at most 20 unique entries are kept, in answer order.
    """
    keywords: list[str] = []
    for part in _SEPARATORS.split(text or ""):
        part = part.strip()
        if 0 < len(part) <= MAX_KEYWORD_LENGTH and part not in keywords:
            keywords.append(part)
    return keywords[:MAX_REMOTE_KEYWORDS]


class RemoteKeywordService:
    """
    NLP-assisted keyword extractor behind an HTTP API

    Raises DependencyTimeout / DependencyError; never retries.
    """

    def __init__(
        self,
        cfg: RemoteKeywordConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = cfg or RemoteKeywordConfig(enabled=True)
        self.api_key = os.getenv(self.config.api_key_env)
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=self.config.timeout_s)

    async def extract(self, query: str, timeout_s: float | None = None) -> list[str]:
        """
        Ask the remote service for keywords

        Args:
            query: Raw query text
            timeout_s: Override for the configured time bound

        Returns:
            Parsed keywords (possibly empty)
        """
        timeout_s = timeout_s or self.config.timeout_s
        try:
            return await asyncio.wait_for(self._request(query), timeout=timeout_s)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise DependencyTimeout(SERVICE_NAME, timeout_s) from e

    async def _request(self, query: str) -> list[str]:
        payload = {
            "model": self.config.model,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": f"请从以下查询中提取关键词：{query}"},
            ],
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = await self.client.post(
                f"{self.config.base_url.rstrip('/')}/chat/completions",
                json=payload,
                headers=headers,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException:
            raise
        except httpx.HTTPStatusError as e:
            raise DependencyError(
                SERVICE_NAME, f"HTTP {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.RequestError as e:
            raise DependencyError(SERVICE_NAME, f"request failed: {e}") from e
        except ValueError as e:
            raise DependencyError(SERVICE_NAME, f"invalid JSON response: {e}") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise DependencyError(SERVICE_NAME, "response has no message content") from e
        if content is None:
            content = ""
        if not isinstance(content, str):
            raise DependencyError(SERVICE_NAME, "response content is not text")

        keywords = parse_keywords(content)
        logger.debug(f"Remote keywords for {query!r}: {keywords}")
        return keywords

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


@dataclass(frozen=True)
class KeywordResolution:
    """Keywords plus where they came from"""

    keywords: list[str]
    source: str  # 'remote' or 'local'
    degraded_reason: str | None = None


class KeywordResolver:
    """
    Two-tier keyword resolution: remote first, local heuristic fallback

    Args:
        local: Extractor used when remote is absent or degraded
        remote: Optional remote service
    """

    def __init__(
        self,
        local: KeywordExtractor | None = None,
        remote: RemoteKeywordService | None = None,
    ) -> None:
        self.local = local or HeuristicKeywordExtractor()
        self.remote = remote

    def resolve_local(self, query: str, reason: str | None = None) -> KeywordResolution:
        return KeywordResolution(self.local.extract(query), "local", reason)

    async def resolve(self, query: str) -> KeywordResolution:
        """
        Resolve keywords for a query

        An empty or whitespace-only query never reaches the remote service.
        """
        if self.remote is None or not query.strip():
            return self.resolve_local(query)

        try:
            keywords = await self.remote.extract(query)
        except DependencyTimeout as e:
            logger.warning(f"Remote keyword extraction timed out, using local extractor: {e}")
            return self.resolve_local(query, "remote_timeout")
        except DependencyError as e:
            logger.warning(f"Remote keyword extraction failed, using local extractor: {e}")
            return self.resolve_local(query, "remote_error")
        except Exception as e:
            logger.error(f"Unexpected remote keyword failure, using local extractor: {e}")
            return self.resolve_local(query, "remote_error")

        if not keywords:
            logger.info(f"Remote keyword extraction returned nothing for {query!r}, using local")
            return self.resolve_local(query, "remote_empty")

        return KeywordResolution(keywords, "remote")

    async def aclose(self) -> None:
        if self.remote is not None:
            await self.remote.aclose()
