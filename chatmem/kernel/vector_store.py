"""
Vector Store for chatmem
SQLite-backed embedding storage with brute-force cosine similarity

I/O goes through aiosqlite; the scoring core (cosine_similarity,
score_vectors) is plain synchronous NumPy so it can be tested directly.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

import aiosqlite
import numpy as np

from chatmem.kernel.db_ctx import set_wal_pragmas_async
from chatmem.kernel.errors import DimensionMismatch
from chatmem.kernel.metrics_registry import get_retrieval_metrics
from chatmem.kernel.time_utils import parse_ts, utc_now_iso
from chatmem.kernel.types import VectorRecord


logger = logging.getLogger(__name__)


VECTOR_SCHEMA = """
CREATE TABLE IF NOT EXISTS vector_memories (
  id         INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id    TEXT NOT NULL,
  content    TEXT NOT NULL,
  category   TEXT NOT NULL DEFAULT 'other',
  metadata   TEXT NOT NULL DEFAULT '{}',
  dim        INTEGER NOT NULL,
  vec        BLOB NOT NULL,
  norm       REAL NOT NULL,
  model      TEXT,
  created_at TEXT NOT NULL,
  UNIQUE(user_id, content)
);

CREATE INDEX IF NOT EXISTS idx_vecmem_user ON vector_memories(user_id);
CREATE INDEX IF NOT EXISTS idx_vecmem_dim ON vector_memories(dim);
"""


def cosine_similarity(
    a: np.ndarray,
    b: np.ndarray,
    norm_a: float | None = None,
    norm_b: float | None = None,
) -> float:
    """
    Cosine similarity of two vectors

    Returns 0.0 instead of raising when the shapes differ or either
    vector has zero norm. Cached norms can be passed in to skip
    recomputation.
    """
    if a.shape != b.shape:
        return 0.0
    if norm_a is None:
        norm_a = float(np.linalg.norm(a))
    if norm_b is None:
        norm_b = float(np.linalg.norm(b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


@dataclass
class ScanReport:
    """What a similarity scan looked at and why rows were skipped"""

    scanned: int = 0
    dimension_mismatches: int = 0
    zero_norm: int = 0
    below_threshold: int = 0
    mismatched_ids: list[int] = field(default_factory=list)


def score_vectors(
    qvec: np.ndarray,
    records: list[VectorRecord],
    threshold: float,
    report: ScanReport | None = None,
) -> list[tuple[VectorRecord, float]]:
    """
    Score records against a query vector

    Records whose dimension differs from the query are excluded and
    counted, never compared. Records below threshold are excluded before
    ranking. Survivors are ordered by similarity, then recency, then id.

    Args:
        qvec: Query vector
        records: Candidate records (already scoped to one user)
        threshold: Minimum similarity to keep
        report: Optional ScanReport to fill in

    Returns:
        List of (record, similarity) tuples
    """
    report = report if report is not None else ScanReport()
    qvec = np.asarray(qvec, dtype=np.float32)
    qnorm = float(np.linalg.norm(qvec))
    dim = qvec.shape[0]

    scored: list[tuple[VectorRecord, float]] = []
    for record in records:
        report.scanned += 1
        if record.dim != dim:
            report.dimension_mismatches += 1
            report.mismatched_ids.append(record.id)
            continue
        if record.norm == 0.0 or qnorm == 0.0:
            report.zero_norm += 1
            continue
        similarity = cosine_similarity(qvec, record.embedding, qnorm, record.norm)
        if similarity < threshold:
            report.below_threshold += 1
            continue
        scored.append((record, similarity))

    scored.sort(key=lambda item: (-item[1], -parse_ts(item[0].created_at), -(item[0].id or 0)))
    return scored


def _row_to_record(row: aiosqlite.Row) -> VectorRecord:
    return VectorRecord(
        id=row["id"],
        user_id=row["user_id"],
        content=row["content"],
        category=row["category"],
        metadata=json.loads(row["metadata"] or "{}"),
        embedding=np.frombuffer(row["vec"], dtype=np.float32),
        norm=row["norm"],
        model=row["model"],
        created_at=row["created_at"],
    )


class VectorStore:
    """
    Flat vector store with brute-force similarity search

    Args:
        db_path: Path to SQLite database
        dim: Expected embedding dimension. When set, store() rejects
            vectors of any other length.
    """

    def __init__(self, db_path: str, dim: int | None = None) -> None:
        self.db_path = db_path
        self.dim = dim
        self._initialized = False

    async def init(self) -> None:
        """Create vector table if not exists"""
        async with aiosqlite.connect(self.db_path) as db:
            await set_wal_pragmas_async(db)
            await db.executescript(VECTOR_SCHEMA)
            await db.commit()
        self._initialized = True

    async def _ensure_init(self) -> None:
        if not self._initialized:
            await self.init()

    async def store(
        self,
        user_id: str,
        content: str,
        vector: np.ndarray,
        category: str = "other",
        metadata: dict[str, Any] | None = None,
        model: str | None = None,
    ) -> int:
        """
        Insert or update the vector for (user_id, content)

        Args:
            user_id: Owner
            content: Text the vector was computed from
            vector: 1D embedding
            category: Memory category
            metadata: Opaque blob (tags, importance, source, memory_id)
            model: Embedding model identifier

        Returns:
            Record id (stable across updates of the same pair)
        """
        vec = np.asarray(vector, dtype=np.float32)
        if vec.ndim != 1:
            raise ValueError(f"Expected 1D vector, got shape {vec.shape}")
        if self.dim is not None and vec.shape[0] != self.dim:
            raise DimensionMismatch(self.dim, vec.shape[0])

        norm = float(np.linalg.norm(vec))
        if norm == 0.0:
            logger.warning(f"Storing zero-norm vector for user {user_id}; it will never match")

        await self._ensure_init()
        async with aiosqlite.connect(self.db_path) as db:
            await set_wal_pragmas_async(db)
            await db.execute(
                "INSERT INTO vector_memories "
                "(user_id, content, category, metadata, dim, vec, norm, model, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(user_id, content) DO UPDATE SET "
                "category=excluded.category, metadata=excluded.metadata, dim=excluded.dim, "
                "vec=excluded.vec, norm=excluded.norm, model=excluded.model",
                (
                    user_id,
                    content,
                    category,
                    json.dumps(metadata or {}, ensure_ascii=False),
                    int(vec.shape[0]),
                    vec.tobytes(),
                    norm,
                    model,
                    utc_now_iso(),
                ),
            )
            cursor = await db.execute(
                "SELECT id FROM vector_memories WHERE user_id = ? AND content = ?",
                (user_id, content),
            )
            row = await cursor.fetchone()
            await db.commit()

        return row[0]

    async def _load_user_records(self, user_id: str) -> list[VectorRecord]:
        await self._ensure_init()
        async with aiosqlite.connect(self.db_path) as db:
            await set_wal_pragmas_async(db)
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM vector_memories WHERE user_id = ?", (user_id,)
            )
            rows = await cursor.fetchall()
        return [_row_to_record(r) for r in rows]

    async def similarity_search(
        self,
        user_id: str,
        qvec: np.ndarray,
        limit: int = 10,
        threshold: float = 0.3,
        report: ScanReport | None = None,
    ) -> list[tuple[VectorRecord, float]]:
        """
        Find a user's records most similar to a query vector

        Args:
            user_id: Owner to scope the scan to
            qvec: Query vector
            limit: Maximum results
            threshold: Minimum cosine similarity
            report: Optional ScanReport filled in for this call only

        Returns:
            List of (record, similarity), similarity descending
        """
        qvec = np.asarray(qvec, dtype=np.float32)
        if qvec.ndim != 1:
            raise ValueError(f"Expected 1D query vector, got shape {qvec.shape}")

        records = await self._load_user_records(user_id)
        report = report if report is not None else ScanReport()
        results = score_vectors(qvec, records, threshold, report)[:limit]

        if report.dimension_mismatches:
            get_retrieval_metrics().dimension_mismatch_total.inc(report.dimension_mismatches)
            logger.warning(
                f"Skipped {report.dimension_mismatches} vectors for user {user_id} "
                f"with dimension != {qvec.shape[0]}: ids={report.mismatched_ids[:10]}"
            )

        logger.debug(
            f"Vector scan for {user_id}: scanned={report.scanned} "
            f"kept={len(results)} below_threshold={report.below_threshold}"
        )
        return results

    async def get(self, record_id: int) -> VectorRecord | None:
        await self._ensure_init()
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM vector_memories WHERE id = ?", (record_id,))
            row = await cursor.fetchone()
        return _row_to_record(row) if row else None

    async def delete(self, record_id: int) -> bool:
        await self._ensure_init()
        async with aiosqlite.connect(self.db_path) as db:
            await set_wal_pragmas_async(db)
            cursor = await db.execute("DELETE FROM vector_memories WHERE id = ?", (record_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def count(self, user_id: str | None = None) -> int:
        await self._ensure_init()
        async with aiosqlite.connect(self.db_path) as db:
            if user_id is None:
                cursor = await db.execute("SELECT COUNT(*) FROM vector_memories")
            else:
                cursor = await db.execute(
                    "SELECT COUNT(*) FROM vector_memories WHERE user_id = ?", (user_id,)
                )
            row = await cursor.fetchone()
        return row[0]

    async def linked_memory_ids(self, user_id: str | None = None) -> set[int]:
        """MemoryRecord ids already carried in vector metadata"""
        await self._ensure_init()
        async with aiosqlite.connect(self.db_path) as db:
            if user_id is None:
                cursor = await db.execute("SELECT metadata FROM vector_memories")
            else:
                cursor = await db.execute(
                    "SELECT metadata FROM vector_memories WHERE user_id = ?", (user_id,)
                )
            rows = await cursor.fetchall()

        ids: set[int] = set()
        for (raw,) in rows:
            memory_id = json.loads(raw or "{}").get("memory_id")
            if memory_id is not None:
                ids.add(int(memory_id))
        return ids

    async def stored_pairs(self, user_id: str | None = None) -> set[tuple[str, str]]:
        """(user_id, content) pairs that already carry a vector"""
        await self._ensure_init()
        async with aiosqlite.connect(self.db_path) as db:
            if user_id is None:
                cursor = await db.execute("SELECT user_id, content FROM vector_memories")
            else:
                cursor = await db.execute(
                    "SELECT user_id, content FROM vector_memories WHERE user_id = ?", (user_id,)
                )
            rows = await cursor.fetchall()
        return {(row[0], row[1]) for row in rows}

    async def get_user_memory_stats(self, user_id: str) -> dict[str, Any]:
        """
        Summarize a user's vector records

        A record counts as vectorized when its norm is non-zero and, if the
        store has a configured dimension, its dim matches it.

        Returns:
            Dict with total_memories, vectorized_memories,
            avg_vector_dimensions, categories and dimension_mismatches
        """
        await self._ensure_init()
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT category, dim, norm FROM vector_memories WHERE user_id = ?",
                (user_id,),
            )
            rows = await cursor.fetchall()

        categories: dict[str, int] = {}
        valid_dims: list[int] = []
        mismatches = 0
        for row in rows:
            categories[row["category"]] = categories.get(row["category"], 0) + 1
            if self.dim is not None and row["dim"] != self.dim:
                mismatches += 1
                continue
            if row["norm"] > 0:
                valid_dims.append(row["dim"])

        if valid_dims:
            avg_dim = float(sum(valid_dims)) / len(valid_dims)
        else:
            avg_dim = float(self.dim or 0)

        return {
            "total_memories": len(rows),
            "vectorized_memories": len(valid_dims),
            "avg_vector_dimensions": avg_dim,
            "categories": categories,
            "dimension_mismatches": mismatches,
        }
