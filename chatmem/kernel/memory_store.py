"""
Memory Store for chatmem
SQLite-backed store of user-scoped memory records with lexical search
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Iterable

from chatmem.kernel.db_ctx import wal_db
from chatmem.kernel.time_utils import utc_now_iso
from chatmem.kernel.types import MemoryRecord, content_key


logger = logging.getLogger(__name__)


MEMORY_SCHEMA = """
CREATE TABLE IF NOT EXISTS memories (
  id              INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id         TEXT NOT NULL,
  content         TEXT NOT NULL,
  content_key     TEXT NOT NULL,
  category        TEXT NOT NULL DEFAULT 'other',
  tags            TEXT NOT NULL DEFAULT '[]',
  source          TEXT NOT NULL DEFAULT 'conversation'
                  CHECK(source IN ('conversation','upload','manual')),
  importance      INTEGER NOT NULL DEFAULT 5
                  CHECK(importance BETWEEN 1 AND 10),
  conversation_id TEXT,
  extracted_from  TEXT,
  created_at      TEXT NOT NULL,
  updated_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_memories_user_importance
  ON memories(user_id, importance DESC, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_memories_user_key
  ON memories(user_id, content_key);
CREATE INDEX IF NOT EXISTS idx_memories_user_category
  ON memories(user_id, category);
"""

# importance first, then recency, then insertion order
_ORDER_BY = "ORDER BY importance DESC, created_at DESC, id DESC"

# instr() keeps matching case-sensitive; LIKE would fold ASCII case
_KEYWORD_CLAUSE = (
    "(instr(content, ?) > 0 OR EXISTS ("
    "SELECT 1 FROM json_each(memories.tags) WHERE instr(json_each.value, ?) > 0))"
)


def _row_to_record(row: sqlite3.Row) -> MemoryRecord:
    return MemoryRecord(
        id=row["id"],
        user_id=row["user_id"],
        content=row["content"],
        category=row["category"],
        tags=json.loads(row["tags"] or "[]"),
        source=row["source"],
        importance=row["importance"],
        conversation_id=row["conversation_id"],
        extracted_from=row["extracted_from"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class MemoryStore:
    """
    Lexical memory store

    Search is binary (a record matches or it does not); the only ranking
    signal at this layer is importance, with recency as tie-breaker.
    Every query is scoped to a single user_id.
    """

    def __init__(self, db_path: str) -> None:
        """
        Initialize memory store

        Args:
            db_path: Path to SQLite database
        """
        self.db_path = db_path
        self._init_schema()

    def _init_schema(self) -> None:
        """Create memories table if not exists"""
        with wal_db(self.db_path) as conn:
            conn.executescript(MEMORY_SCHEMA)

    def insert(self, record: MemoryRecord, skip_duplicates: bool = False) -> int:
        """
        Persist a new memory record

        Args:
            record: Record to store (its id and timestamps are assigned here)
            skip_duplicates: Return the id of an existing record with the
                same (user_id, trimmed content) instead of inserting

        Returns:
            Storage-assigned record id
        """
        if skip_duplicates:
            existing = self.find_duplicate(record.user_id, record.content)
            if existing is not None:
                logger.debug(
                    f"Skipping duplicate memory for user {record.user_id}: id={existing.id}"
                )
                return existing.id

        now = utc_now_iso()
        with wal_db(self.db_path) as conn:
            cursor = conn.execute(
                "INSERT INTO memories "
                "(user_id, content, content_key, category, tags, source, importance, "
                "conversation_id, extracted_from, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.user_id,
                    record.content,
                    record.content_key,
                    record.category,
                    json.dumps(record.tags, ensure_ascii=False),
                    record.source,
                    record.importance,
                    record.conversation_id,
                    record.extracted_from,
                    record.created_at or now,
                    record.updated_at or record.created_at or now,
                ),
            )
            memory_id = cursor.lastrowid

        logger.debug(f"Stored memory {memory_id} for user {record.user_id}")
        return memory_id

    def get_by_id(self, memory_id: int) -> MemoryRecord | None:
        with wal_db(self.db_path) as conn:
            row = conn.execute("SELECT * FROM memories WHERE id = ?", (memory_id,)).fetchone()
        return _row_to_record(row) if row else None

    def get_user_memories(self, user_id: str, limit: int = 100) -> list[MemoryRecord]:
        """Most important memories for a user, newest first within a tier"""
        with wal_db(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM memories WHERE user_id = ? {_ORDER_BY} LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def search(self, user_id: str, keywords: list[str], limit: int = 10) -> list[MemoryRecord]:
        """
        Lexical search over content and tags

        Args:
            user_id: Owner to scope the search to
            keywords: Substrings to look for; any match qualifies. An empty
                list broadens to the user's most important memories.
            limit: Maximum records to return

        Returns:
            Matching records ordered by importance, then recency
        """
        terms = [k for k in dict.fromkeys(keywords) if k]
        if not terms:
            records = self.get_user_memories(user_id, limit)
            logger.debug(f"No keywords, returning top {len(records)} memories by importance")
            return records

        conditions = " OR ".join([_KEYWORD_CLAUSE] * len(terms))
        params: list[Any] = [user_id]
        for term in terms:
            params.extend((term, term))
        params.append(limit)

        with wal_db(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM memories WHERE user_id = ? AND ({conditions}) {_ORDER_BY} LIMIT ?",
                params,
            ).fetchall()

        logger.debug(f"Keyword search for {len(terms)} terms matched {len(rows)} memories")
        return [_row_to_record(r) for r in rows]

    def get_by_category(self, user_id: str, category: str) -> list[MemoryRecord]:
        with wal_db(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM memories WHERE user_id = ? AND category = ? {_ORDER_BY}",
                (user_id, category),
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def delete(self, memory_id: int) -> bool:
        """
        Delete a memory immediately

        Returns:
            True if a record was removed
        """
        with wal_db(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.debug(f"Deleted memory {memory_id}")
        return deleted

    def stats(self, user_id: str) -> dict[str, Any]:
        """
        Count a user's memories

        Returns:
            Dict with 'total' and 'by_category' counts
        """
        with wal_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT category, COUNT(*) AS n FROM memories WHERE user_id = ? "
                "GROUP BY category ORDER BY n DESC, category",
                (user_id,),
            ).fetchall()
        by_category = {r["category"]: r["n"] for r in rows}
        return {"total": sum(by_category.values()), "by_category": by_category}

    def find_duplicate(self, user_id: str, content: str) -> MemoryRecord | None:
        """Existing record with the same (user_id, trimmed content) natural key"""
        trimmed = content.strip()
        with wal_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM memories WHERE user_id = ? AND content_key = ? ORDER BY id",
                (user_id, content_key(content)),
            ).fetchall()
        for row in rows:
            if row["content"].strip() == trimmed:
                return _row_to_record(row)
        return None

    def existing_refs(
        self,
        user_id: str,
        memory_ids: Iterable[int],
        content_keys: Iterable[str],
    ) -> tuple[set[int], set[str]]:
        """
        Which of the given ids / content keys still exist for a user

        Used to tell live vector hits from orphans whose memory was deleted.

        Returns:
            (live ids, live content keys)
        """
        ids = sorted(set(memory_ids))
        keys = sorted(set(content_keys))
        live_ids: set[int] = set()
        live_keys: set[str] = set()

        with wal_db(self.db_path) as conn:
            if ids:
                placeholders = ",".join("?" * len(ids))
                rows = conn.execute(
                    f"SELECT id FROM memories WHERE user_id = ? AND id IN ({placeholders})",
                    [user_id, *ids],
                ).fetchall()
                live_ids = {r["id"] for r in rows}
            if keys:
                placeholders = ",".join("?" * len(keys))
                rows = conn.execute(
                    "SELECT DISTINCT content_key FROM memories "
                    f"WHERE user_id = ? AND content_key IN ({placeholders})",
                    [user_id, *keys],
                ).fetchall()
                live_keys = {r["content_key"] for r in rows}

        return live_ids, live_keys

    def iter_all(self, user_id: str | None = None) -> list[MemoryRecord]:
        """All records, optionally for one user, oldest first"""
        with wal_db(self.db_path) as conn:
            if user_id is None:
                rows = conn.execute("SELECT * FROM memories ORDER BY id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM memories WHERE user_id = ? ORDER BY id", (user_id,)
                ).fetchall()
        return [_row_to_record(r) for r in rows]
