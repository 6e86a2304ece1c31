"""
Fake embedding providers for deterministic retrieval tests
"""

import asyncio

import numpy as np

from chatmem.kernel.embedding_engine import EmbeddingConfig, EmbeddingEngine, EmbeddingProvider
from chatmem.kernel.errors import DependencyError


class MappedEmbeddingProvider(EmbeddingProvider):
    """Returns a fixed vector per text; unknown texts get `default`"""

    name = "mapped"

    def __init__(self, mapping: dict, dim: int = 2, default=None):
        self.mapping = {k: np.asarray(v, dtype=np.float32) for k, v in mapping.items()}
        self.dim = dim
        self.default = np.asarray(default if default is not None else [0.0] * dim, dtype=np.float32)
        self.calls = []

    async def embed(self, texts):
        self.calls.append(list(texts))
        return np.stack([self.mapping.get(t, self.default) for t in texts]).astype(np.float32)


class FailingEmbeddingProvider(EmbeddingProvider):
    """Always fails, or hangs for `delay` seconds when set"""

    name = "failing"

    def __init__(self, delay: float | None = None):
        self.delay = delay
        self.calls = 0

    async def embed(self, texts):
        self.calls += 1
        if self.delay is not None:
            await asyncio.sleep(self.delay)
        raise DependencyError("embeddings", "service unavailable")


def make_engine(provider: EmbeddingProvider, dim: int = 2, timeout_s: float = 10.0) -> EmbeddingEngine:
    """EmbeddingEngine around a fake provider"""
    cfg = EmbeddingConfig(provider="hash", model="fake-model", dim=dim, timeout_s=timeout_s)
    return EmbeddingEngine(cfg, provider=provider)
