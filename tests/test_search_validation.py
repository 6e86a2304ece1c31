"""
Tests for search parameter validation and defaults merging
"""

import pytest
from pydantic import ValidationError

from chatmem.kernel.errors import InvalidParameters
from chatmem.kernel.retrieval_config import RetrievalConfig
from chatmem.kernel.search_request import MAX_LIMIT, build_search_request
from chatmem.kernel.types import SearchMode


class TestBuildSearchRequest:
    def test_defaults_from_config(self):
        cfg = RetrievalConfig(keyword_weight=0.3, vector_weight=0.7, threshold=0.2, limit=25)
        req = build_search_request(cfg, "u1", "篮球")

        assert req.mode == SearchMode.HYBRID
        assert (req.keyword_weight, req.vector_weight) == (0.3, 0.7)
        assert req.threshold == 0.2
        assert req.limit == 25

    def test_call_arguments_win(self):
        req = build_search_request(
            RetrievalConfig(), "u1", "篮球", mode="vector", threshold=0.0, limit=1
        )
        assert req.mode == SearchMode.VECTOR
        assert req.threshold == 0.0
        assert req.limit == 1

    def test_empty_query_is_valid(self):
        assert build_search_request(RetrievalConfig(), "u1", "").query == ""

    def test_weights_need_not_sum_to_one(self):
        req = build_search_request(RetrievalConfig(), "u1", "x", keyword_weight=1, vector_weight=1)
        assert req.keyword_weight + req.vector_weight == 2.0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"user_id": None},
            {"user_id": ""},
            {"query": None},
            {"limit": 0},
            {"limit": MAX_LIMIT + 1},
            {"threshold": -0.01},
            {"vector_weight": 1.01},
            {"mode": "semantic"},
        ],
    )
    def test_invalid(self, kwargs):
        call = {"user_id": "u1", "query": "x", **kwargs}
        with pytest.raises(InvalidParameters):
            build_search_request(RetrievalConfig(), **call)

    def test_error_names_the_field(self):
        with pytest.raises(InvalidParameters, match="limit"):
            build_search_request(RetrievalConfig(), "u1", "x", limit=-5)

    def test_request_is_frozen(self):
        req = build_search_request(RetrievalConfig(), "u1", "x")
        with pytest.raises(ValidationError):
            req.limit = 5
