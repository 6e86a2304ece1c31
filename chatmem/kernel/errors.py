"""
Error taxonomy for the retrieval kernel

Only InvalidParameters and SearchUnavailable ever reach callers of
HybridRetriever.hybrid_search(); dependency errors are converted into
empty sub-results at the orchestrator boundary.
"""

from __future__ import annotations


class ChatmemError(Exception):
    """Base class for all chatmem errors"""

    pass


class InvalidParameters(ChatmemError, ValueError):
    """Raised when a search or config value is missing or out of range"""

    pass


class DependencyError(ChatmemError):
    """A remote collaborator returned an error or an unusable response"""

    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service
        self.message = message


class DependencyTimeout(DependencyError):
    """A remote collaborator exceeded its time bound"""

    def __init__(self, service: str, timeout_s: float) -> None:
        super().__init__(service, f"timed out after {timeout_s:.1f}s")
        self.timeout_s = timeout_s


class DimensionMismatch(ChatmemError, ValueError):
    """A vector's length disagrees with the active embedding dimension"""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Expected {expected}-dim vector, got {actual}")
        self.expected = expected
        self.actual = actual


class SearchUnavailable(ChatmemError):
    """Every retrieval path that was attempted failed"""

    pass
