"""
Embedding backfill for chatmem

Embeds every memory record that has no vector counterpart yet and stores
it in the vector store with metadata.memory_id pointing back at the
record. Safe to re-run: records already linked, or whose content
already has a vector for the same user, are skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from chatmem.kernel.embedding_engine import EmbeddingEngine
from chatmem.kernel.errors import DependencyError
from chatmem.kernel.memory_store import MemoryStore
from chatmem.kernel.vector_store import VectorStore


logger = logging.getLogger(__name__)


@dataclass
class BackfillStats:
    """Track backfill statistics"""

    total: int = 0
    embedded: int = 0
    skipped: int = 0
    errors: int = 0

    def report(self) -> str:
        """Generate summary report"""
        return (
            f"\n{'=' * 60}\n"
            f"Embedding Backfill Complete\n"
            f"{'=' * 60}\n"
            f"Total memories:       {self.total}\n"
            f"Embedded:             {self.embedded}\n"
            f"Skipped (linked):     {self.skipped}\n"
            f"Errors:               {self.errors}\n"
            f"{'=' * 60}"
        )


async def backfill_embeddings(
    memory_store: MemoryStore,
    vector_store: VectorStore,
    engine: EmbeddingEngine,
    user_id: str | None = None,
    batch_size: int = 16,
    dry_run: bool = False,
) -> BackfillStats:
    """
    Embed memories that have no vector record

    Args:
        memory_store: Source of memory records
        vector_store: Destination for vectors
        engine: Embedding engine
        user_id: Restrict to one user (all users when None)
        batch_size: Texts per embedding request
        dry_run: Count what would be embedded without writing

    Returns:
        BackfillStats for the run
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")

    stats = BackfillStats()
    records = memory_store.iter_all(user_id)
    linked = await vector_store.linked_memory_ids(user_id)
    covered = await vector_store.stored_pairs(user_id)
    stats.total = len(records)

    # Memories sharing (user_id, content) share one vector row
    pending = []
    for record in records:
        pair = (record.user_id, record.content)
        if record.id in linked or pair in covered:
            continue
        covered.add(pair)
        pending.append(record)
    stats.skipped = stats.total - len(pending)
    logger.info(f"Backfill: {len(pending)} of {stats.total} memories need embeddings")

    if dry_run:
        logger.info("Dry run, nothing written")
        return stats

    for start in range(0, len(pending), batch_size):
        batch = pending[start : start + batch_size]
        try:
            vectors = await engine.embed_texts([r.content for r in batch])
        except DependencyError as e:
            logger.error(f"Embedding batch at offset {start} failed: {e}")
            stats.errors += len(batch)
            continue

        for record, vec in zip(batch, vectors):
            try:
                await vector_store.store(
                    record.user_id,
                    record.content,
                    vec,
                    category=record.category,
                    metadata={
                        "memory_id": record.id,
                        "tags": record.tags,
                        "importance": record.importance,
                        "source": record.source,
                    },
                    model=engine.config.model,
                )
                stats.embedded += 1
            except ValueError as e:
                logger.error(f"Failed to store vector for memory {record.id}: {e}")
                stats.errors += 1

        logger.info(f"Backfill progress: {min(start + batch_size, len(pending))}/{len(pending)}")

    return stats
