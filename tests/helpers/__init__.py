"""Test helpers package"""

from .fakes import FailingEmbeddingProvider, MappedEmbeddingProvider, make_engine
from .retrieval import BASKETBALL, COMPUTER, add_memory, make_retriever, seed_u1
from .sqlite import seed_memories, table_names


__all__ = [
    "BASKETBALL",
    "COMPUTER",
    "FailingEmbeddingProvider",
    "MappedEmbeddingProvider",
    "add_memory",
    "make_engine",
    "make_retriever",
    "seed_memories",
    "seed_u1",
    "table_names",
]
