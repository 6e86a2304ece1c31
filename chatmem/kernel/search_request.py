"""
Validated search parameters
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from chatmem.kernel.errors import InvalidParameters
from chatmem.kernel.retrieval_config import RetrievalConfig
from chatmem.kernel.types import SearchMode


MAX_LIMIT = 1000


class SearchRequest(BaseModel):
    """One hybrid_search() call; an empty query is valid and broadens"""

    model_config = ConfigDict(frozen=True, extra="forbid")

    user_id: str = Field(min_length=1)
    query: str
    mode: SearchMode = SearchMode.HYBRID
    keyword_weight: float = Field(ge=0.0, le=1.0)
    vector_weight: float = Field(ge=0.0, le=1.0)
    threshold: float = Field(ge=0.0, le=1.0)
    limit: int = Field(ge=1, le=MAX_LIMIT)


def build_search_request(
    config: RetrievalConfig,
    user_id: str | None,
    query: str | None,
    mode: SearchMode | str | None = None,
    keyword_weight: float | None = None,
    vector_weight: float | None = None,
    threshold: float | None = None,
    limit: int | None = None,
) -> SearchRequest:
    """
    Merge call arguments over config defaults and validate them

    Raises:
        InvalidParameters: If user_id/query is missing or a value is out of range
    """
    try:
        return SearchRequest(
            user_id=user_id,
            query=query,
            mode=mode if mode is not None else SearchMode.HYBRID,
            keyword_weight=config.keyword_weight if keyword_weight is None else keyword_weight,
            vector_weight=config.vector_weight if vector_weight is None else vector_weight,
            threshold=config.threshold if threshold is None else threshold,
            limit=config.limit if limit is None else limit,
        )
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise InvalidParameters(f"Invalid search parameters: {problems}") from e
