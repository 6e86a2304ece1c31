"""
Embedding Engine for chatmem
Maps memory text to fixed-length vectors through a pluggable provider
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Any, Iterable

import httpx
import numpy as np

from chatmem.kernel.errors import DependencyError, DependencyTimeout
from chatmem.kernel.metrics_registry import get_retrieval_metrics


logger = logging.getLogger(__name__)

SERVICE_NAME = "embeddings"
MAX_INPUT_CHARS = 8000
PROBE_TEXT = "connection test"

_WHITESPACE = re.compile(r"\s+")


@dataclass
class EmbeddingConfig:
    """Configuration for embedding generation"""

    provider: str = "openai"  # 'openai' or 'hash'
    model: str = "text-embedding-ada-002"
    dim: int = 1536
    base_url: str = "https://api.openai.com/v1"
    api_key_env: str = "OPENAI_API_KEY"
    timeout_s: float = 10.0
    max_tokens: int = 8192

    def __post_init__(self):
        if self.dim <= 0:
            raise ValueError(f"dim must be > 0, got {self.dim}")
        if self.timeout_s <= 0:
            raise ValueError(f"timeout_s must be > 0, got {self.timeout_s}")


@dataclass(frozen=True)
class ConnectionCheck:
    """Outcome of EmbeddingEngine.test_connection()"""

    success: bool
    model: str
    response_time_ms: float
    error: str | None = None

    def __bool__(self) -> bool:
        return self.success


def preprocess_text(text: str) -> str:
    """Trim, collapse whitespace runs and cap input length"""
    return _WHITESPACE.sub(" ", text.strip())[:MAX_INPUT_CHARS]


class EmbeddingProvider:
    """Base class for embedding providers"""

    name = "base"

    async def embed(self, texts: list[str]) -> np.ndarray:
        """
        Generate embeddings for texts

        Args:
            texts: List of text strings to embed

        Returns:
            numpy array of shape (N, dim) with float32 dtype
        """
        raise NotImplementedError

    async def aclose(self) -> None:
        pass


class HashEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic hash-based embedder for tests and offline setups

    Same text always yields the same L2-normalized vector; there is no
    semantic signal beyond exact text identity.
    """

    name = "hash"

    def __init__(self, dim: int = 256) -> None:
        self.dim = dim

    async def embed(self, texts: list[str]) -> np.ndarray:
        return np.array([self._embed_one(t) for t in texts], dtype=np.float32).reshape(
            len(texts), self.dim
        )

    def _embed_one(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dim, dtype=np.float32)
        digest = b""
        counter = 0
        # stretch sha256 output until every component has 4 bytes
        while len(digest) < self.dim * 4:
            digest += hashlib.sha256(f"{text}:{counter}".encode("utf-8")).digest()
            counter += 1
        ints = np.frombuffer(digest[: self.dim * 4], dtype=">i4")
        vec[:] = ints / float(2**31)

        norm = np.linalg.norm(vec)
        if norm > 0:
            vec = vec / norm
        return vec


class OpenAIEmbeddingsProvider(EmbeddingProvider):
    """
    OpenAI-compatible /embeddings endpoint over httpx

    Requires the API key in the environment variable named by
    EmbeddingConfig.api_key_env.
    """

    name = "openai"

    def __init__(self, cfg: EmbeddingConfig, client: httpx.AsyncClient | None = None) -> None:
        self.config = cfg
        self.api_key = os.getenv(cfg.api_key_env)
        if not self.api_key:
            raise ValueError(
                f"OpenAI provider requires {cfg.api_key_env} environment variable"
            )
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=cfg.timeout_s)
        logger.info(f"Initialized OpenAI embeddings provider: {cfg.model}")

    async def embed(self, texts: list[str]) -> np.ndarray:
        try:
            response = await self.client.post(
                f"{self.config.base_url.rstrip('/')}/embeddings",
                json={"model": self.config.model, "input": texts},
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise DependencyTimeout(SERVICE_NAME, self.config.timeout_s) from e
        except httpx.HTTPStatusError as e:
            raise DependencyError(
                SERVICE_NAME, f"HTTP {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.RequestError as e:
            raise DependencyError(SERVICE_NAME, f"request failed: {e}") from e
        except ValueError as e:
            raise DependencyError(SERVICE_NAME, f"invalid JSON response: {e}") from e

        try:
            items = sorted(data["data"], key=lambda item: item.get("index", 0))
            vectors = [item["embedding"] for item in items]
        except (KeyError, TypeError) as e:
            raise DependencyError(SERVICE_NAME, "response has no embeddings") from e

        return np.asarray(vectors, dtype=np.float32)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class EmbeddingEngine:
    """
    Orchestrates embedding generation with provider management

    Every call is bounded by the configured timeout; failures surface as
    DependencyTimeout / DependencyError for the caller to degrade on.
    """

    # Provider registry
    PROVIDERS = {
        "hash": HashEmbeddingProvider,
        "openai": OpenAIEmbeddingsProvider,
    }

    def __init__(
        self,
        cfg: EmbeddingConfig | None = None,
        provider: EmbeddingProvider | None = None,
    ) -> None:
        """
        Initialize embedding engine

        Args:
            cfg: Embedding configuration. If None, uses OpenAI defaults.
            provider: Pre-built provider (skips registry lookup)
        """
        self.config = cfg or EmbeddingConfig()
        self.provider = provider or self._create_provider(self.config)

    def _create_provider(self, cfg: EmbeddingConfig) -> EmbeddingProvider:
        """Create provider instance from config"""
        provider_class = self.PROVIDERS.get(cfg.provider)

        if provider_class is None:
            raise ValueError(
                f"Unknown provider: {cfg.provider}. "
                f"Available: {list(self.PROVIDERS.keys())}"
            )

        if cfg.provider == "hash":
            return provider_class(dim=cfg.dim)
        return provider_class(cfg)

    async def embed_texts(self, texts: Iterable[str]) -> np.ndarray:
        """
        Generate embeddings for texts in one provider call

        Returns:
            numpy array of shape (N, dim) with float32 dtype
        """
        texts_list = [preprocess_text(t) for t in texts]

        if not texts_list:
            return np.zeros((0, self.config.dim), dtype=np.float32)

        try:
            embeddings = await asyncio.wait_for(
                self.provider.embed(texts_list), timeout=self.config.timeout_s
            )
        except asyncio.TimeoutError as e:
            raise DependencyTimeout(SERVICE_NAME, self.config.timeout_s) from e

        expected_shape = (len(texts_list), self.config.dim)
        if embeddings.shape != expected_shape:
            raise DependencyError(
                SERVICE_NAME,
                f"provider returned shape {embeddings.shape}, expected {expected_shape}",
            )

        get_retrieval_metrics().embeddings_total.labels(provider=self.provider.name).inc(
            len(texts_list)
        )
        return embeddings.astype(np.float32, copy=False)

    async def embed(self, text: str) -> np.ndarray:
        """Embed a single text"""
        return (await self.embed_texts([text]))[0]

    def model_info(self) -> dict[str, Any]:
        return {
            "name": self.config.model,
            "provider": self.config.provider,
            "dimension": self.config.dim,
            "max_tokens": self.config.max_tokens,
        }

    async def test_connection(self) -> ConnectionCheck:
        """
        Embed a probe text and report how it went

        Never raises; failures are reported in the returned ConnectionCheck.
        """
        start = time.perf_counter()
        try:
            await self.embed(PROBE_TEXT)
        except (DependencyError, ValueError) as e:
            elapsed = (time.perf_counter() - start) * 1000
            logger.warning(f"Embedding connection test failed: {e}")
            return ConnectionCheck(False, self.config.model, elapsed, str(e))

        elapsed = (time.perf_counter() - start) * 1000
        return ConnectionCheck(True, self.config.model, elapsed)

    async def aclose(self) -> None:
        await self.provider.aclose()
