"""
Core data types for chatmem retrieval

MemoryRecord and VectorRecord mirror the two stores. Search results are a
tagged union (KeywordResult | VectorResult | HybridResult) so fusion code
can dispatch exhaustively on the result kind.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

import numpy as np


class MemoryCategory(str, Enum):
    PERSONAL_INFO = "personal_info"
    WORK_CONTEXT = "work_context"
    DEVICE_INFO = "device_info"
    SKILLS = "skills"
    EDUCATION = "education"
    CONTACT_INFO = "contact_info"
    PREFERENCES = "preferences"
    INTERESTS = "interests"
    RELATIONSHIPS = "relationships"
    GOALS = "goals"
    PROJECTS = "projects"
    LIFESTYLE = "lifestyle"
    OPINIONS = "opinions"
    EXPERIENCES = "experiences"
    FACTS = "facts"
    OTHER = "other"


class MemorySource(str, Enum):
    CONVERSATION = "conversation"
    UPLOAD = "upload"
    MANUAL = "manual"


class SearchMode(str, Enum):
    KEYWORD = "keyword"
    VECTOR = "vector"
    HYBRID = "hybrid"


def content_key(text: str) -> str:
    """Identity key used to match the same fact across both stores"""
    return text.strip().lower()


def dedupe_tags(tags: list[str] | None) -> list[str]:
    """Drop blank and repeated tags, keeping first occurrence"""
    seen: dict[str, None] = {}
    for tag in tags or []:
        tag = str(tag).strip()
        if tag:
            seen.setdefault(tag, None)
    return list(seen)


@dataclass
class MemoryRecord:
    """A stored, user-scoped fact"""

    user_id: str
    content: str
    category: str = MemoryCategory.OTHER.value
    tags: list[str] = field(default_factory=list)
    source: str = MemorySource.CONVERSATION.value
    importance: int = 5
    conversation_id: str | None = None
    extracted_from: str | None = None
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None

    def __post_init__(self):
        if not self.user_id:
            raise ValueError("user_id is required")
        if not self.content or not self.content.strip():
            raise ValueError("content must be non-empty")
        if isinstance(self.category, MemoryCategory):
            self.category = self.category.value
        if isinstance(self.source, MemorySource):
            self.source = self.source.value
        if self.category not in {c.value for c in MemoryCategory}:
            raise ValueError(f"Unknown memory category: {self.category}")
        if self.source not in {s.value for s in MemorySource}:
            raise ValueError(f"Unknown memory source: {self.source}")
        if not 1 <= int(self.importance) <= 10:
            raise ValueError(f"importance must be in [1, 10], got {self.importance}")
        self.importance = int(self.importance)
        self.tags = dedupe_tags(self.tags)

    @property
    def content_key(self) -> str:
        return content_key(self.content)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "content": self.content,
            "category": self.category,
            "tags": list(self.tags),
            "source": self.source,
            "importance": self.importance,
            "conversation_id": self.conversation_id,
            "extracted_from": self.extracted_from,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class VectorRecord:
    """Semantic counterpart of a memory, stored independently of it"""

    user_id: str
    content: str
    embedding: np.ndarray
    category: str = MemoryCategory.OTHER.value
    metadata: dict[str, Any] = field(default_factory=dict)
    id: int | None = None
    norm: float = 0.0
    model: str | None = None
    created_at: str | None = None

    @property
    def dim(self) -> int:
        return int(self.embedding.shape[0])

    @property
    def memory_id(self) -> int | None:
        """MemoryRecord id this vector was generated from, if recorded"""
        value = self.metadata.get("memory_id")
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    @property
    def content_key(self) -> str:
        return content_key(self.content)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "content": self.content,
            "category": self.category,
            "metadata": dict(self.metadata),
            "dim": self.dim,
            "model": self.model,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class MemoryRef:
    """Identity and content of the record a result points at"""

    store: str  # 'memory' or 'vector'
    id: int | None
    content: str
    created_at: str | None


@dataclass(frozen=True)
class ScoreDetails:
    """Per-signal sub-scores kept for explainability"""

    keyword_score: float | None = None
    vector_similarity: float | None = None
    raw_score: float = 0.0
    overflow: bool = False
    orphan: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "keyword_score": self.keyword_score,
            "vector_similarity": self.vector_similarity,
            "raw_score": self.raw_score,
            "overflow": self.overflow,
            "orphan": self.orphan,
        }


@dataclass(frozen=True)
class KeywordResult:
    """Candidate produced by the lexical path only"""

    memory: MemoryRecord
    relevance_score: float
    details: ScoreDetails

    search_type = SearchMode.KEYWORD

    @property
    def ref(self) -> MemoryRef:
        return MemoryRef("memory", self.memory.id, self.memory.content, self.memory.created_at)


@dataclass(frozen=True)
class VectorResult:
    """Candidate produced by the semantic path only"""

    record: VectorRecord
    relevance_score: float
    details: ScoreDetails

    search_type = SearchMode.VECTOR

    @property
    def ref(self) -> MemoryRef:
        return MemoryRef("vector", self.record.id, self.record.content, self.record.created_at)


@dataclass(frozen=True)
class HybridResult:
    """Candidate found by both paths and fused"""

    memory: MemoryRecord
    record: VectorRecord
    relevance_score: float
    details: ScoreDetails

    search_type = SearchMode.HYBRID

    @property
    def ref(self) -> MemoryRef:
        return MemoryRef("memory", self.memory.id, self.memory.content, self.memory.created_at)


SearchResult = Union[KeywordResult, VectorResult, HybridResult]


def result_to_dict(result: SearchResult) -> dict[str, Any]:
    """Flatten a search result for JSON output"""
    ref = result.ref
    return {
        "search_type": result.search_type.value,
        "store": ref.store,
        "id": ref.id,
        "content": ref.content,
        "created_at": ref.created_at,
        "relevance_score": result.relevance_score,
        "details": result.details.to_dict(),
    }
