"""Durable memory storage.

``MemoryStore`` is the narrow set of operations the engine needs;
``SQLiteMemoryStore`` implements it with one connection per operation,
WAL journaling and indexes on the hot lookups.
"""

import json
import os
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Sequence

import numpy as np

from .logging_config import get_logger
from .models import MemoryCategory, MemoryEntry

logger = get_logger(__name__)


class StoreError(Exception):
    """Raised when the backing store cannot complete an operation."""
    pass


class MemoryStore(ABC):
    @abstractmethod
    def insert(self, entry: MemoryEntry) -> MemoryEntry:
        ...

    @abstractmethod
    def update_content(
        self,
        memory_id: str,
        content: str,
        importance_score: float,
        keywords: Sequence[str] = (),
        embedding: Optional[np.ndarray] = None,
        semantic_hash: Optional[str] = None,
        labels: Optional[Sequence[str]] = None,
    ) -> Optional[MemoryEntry]:
        """Replace content in place, bump update_count; returns the updated entry.

        ``labels`` replaces the stored labels when given; None keeps them.
        """

    @abstractmethod
    def find_by_semantic_hash(self, owner_id: str, semantic_hash: str) -> Optional[MemoryEntry]:
        ...

    @abstractmethod
    def find_active_since(self, owner_id: str, since: datetime, limit: int = 20) -> List[MemoryEntry]:
        """Active entries created at or after ``since``, newest first."""

    @abstractmethod
    def find_all_active(self, owner_id: str) -> List[MemoryEntry]:
        ...

    @abstractmethod
    def soft_delete(self, owner_id: str, memory_id: str) -> bool:
        ...

    @abstractmethod
    def touch_access(self, memory_ids: Sequence[str]) -> None:
        ...

    @abstractmethod
    def get(self, memory_id: str) -> Optional[MemoryEntry]:
        ...


_COLUMNS = (
    "id, owner_id, content, category, importance_score, keywords, labels, "
    "embedding, embedding_dim, semantic_hash, access_count, last_accessed_at, "
    "update_count, is_active, created_at, updated_at"
)


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_entry(row) -> MemoryEntry:
    (mem_id, owner_id, content, category, importance, keywords, labels,
     emb_bytes, emb_dim, semantic_hash, access_count, last_accessed_at,
     update_count, is_active, created_at, updated_at) = row

    embedding = None
    if emb_bytes is not None:
        embedding = np.frombuffer(emb_bytes, dtype=np.float32).reshape(emb_dim).copy()

    return MemoryEntry(
        id=mem_id,
        owner_id=owner_id,
        content=content,
        category=MemoryCategory.parse(category),
        importance_score=importance,
        keywords=json.loads(keywords or "[]"),
        labels=json.loads(labels or "[]"),
        embedding=embedding,
        semantic_hash=semantic_hash or "",
        access_count=access_count,
        last_accessed_at=_from_iso(last_accessed_at),
        update_count=update_count,
        is_active=bool(is_active),
        created_at=_from_iso(created_at),
        updated_at=_from_iso(updated_at),
    )


class SQLiteMemoryStore(MemoryStore):
    def __init__(self, db_path: Optional[str] = None):
        if db_path is None:
            db_path = os.path.join("data", "coach_memory.db")

        # Ensure directory for the DB exists if it is relative and has a parent
        if not os.path.isabs(db_path):
            db_dir = os.path.dirname(db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)

        self.db_path = db_path
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self):
        conn = self._connect()
        try:
            c = conn.cursor()
            c.execute('PRAGMA journal_mode = WAL')
            c.execute('PRAGMA synchronous = NORMAL')

            c.execute('''CREATE TABLE IF NOT EXISTS memories
                         (id TEXT PRIMARY KEY, owner_id TEXT NOT NULL, content TEXT NOT NULL,
                          category TEXT NOT NULL, importance_score REAL NOT NULL,
                          keywords TEXT, labels TEXT, embedding BLOB, embedding_dim INTEGER,
                          semantic_hash TEXT, access_count INTEGER DEFAULT 0,
                          last_accessed_at TEXT, update_count INTEGER DEFAULT 1,
                          is_active INTEGER DEFAULT 1, created_at TEXT NOT NULL,
                          updated_at TEXT NOT NULL)''')

            c.execute('''CREATE INDEX IF NOT EXISTS idx_memories_owner_hash
                         ON memories(owner_id, semantic_hash, is_active)''')
            c.execute('''CREATE INDEX IF NOT EXISTS idx_memories_owner_created
                         ON memories(owner_id, created_at DESC)''')
            conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to initialize memory store at {self.db_path}: {e}") from e
        finally:
            conn.close()

    def _fetch(self, query: str, params: tuple) -> List[MemoryEntry]:
        conn = self._connect()
        try:
            c = conn.cursor()
            c.execute(query, params)
            return [_row_to_entry(row) for row in c.fetchall()]
        except sqlite3.Error as e:
            raise StoreError(f"Memory query failed: {e}") from e
        finally:
            conn.close()

    def insert(self, entry: MemoryEntry) -> MemoryEntry:
        emb = entry.embedding
        conn = self._connect()
        try:
            c = conn.cursor()
            c.execute(
                f"INSERT INTO memories ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.id,
                    entry.owner_id,
                    entry.content,
                    entry.category.value,
                    entry.importance_score,
                    json.dumps(entry.keywords),
                    json.dumps(entry.labels),
                    emb.astype(np.float32).tobytes() if emb is not None else None,
                    int(emb.shape[0]) if emb is not None else None,
                    entry.semantic_hash,
                    entry.access_count,
                    _to_iso(entry.last_accessed_at),
                    entry.update_count,
                    int(entry.is_active),
                    _to_iso(entry.created_at),
                    _to_iso(entry.updated_at),
                ),
            )
            conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to insert memory {entry.id}: {e}") from e
        finally:
            conn.close()
        return entry

    def update_content(
        self, memory_id, content, importance_score, keywords=(), embedding=None, semantic_hash=None, labels=None
    ):
        now = datetime.now().isoformat()
        importance = min(1.0, max(0.1, float(importance_score)))
        conn = self._connect()
        try:
            c = conn.cursor()
            c.execute(
                '''UPDATE memories
                   SET content = ?, importance_score = ?, keywords = ?,
                       update_count = update_count + 1, updated_at = ?
                   WHERE id = ? AND is_active = 1''',
                (content, importance, json.dumps(sorted(set(keywords or []))), now, memory_id),
            )
            if c.rowcount == 0:
                conn.commit()
                return None
            if embedding is not None:
                emb = np.asarray(embedding, dtype=np.float32)
                c.execute(
                    "UPDATE memories SET embedding = ?, embedding_dim = ? WHERE id = ?",
                    (emb.tobytes(), int(emb.shape[0]), memory_id),
                )
            if semantic_hash:
                c.execute("UPDATE memories SET semantic_hash = ? WHERE id = ?", (semantic_hash, memory_id))
            if labels is not None:
                c.execute(
                    "UPDATE memories SET labels = ? WHERE id = ?", (json.dumps(sorted(set(labels))), memory_id)
                )
            conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to update memory {memory_id}: {e}") from e
        finally:
            conn.close()
        return self.get(memory_id)

    def find_by_semantic_hash(self, owner_id, semantic_hash):
        rows = self._fetch(
            f'''SELECT {_COLUMNS} FROM memories
                WHERE owner_id = ? AND semantic_hash = ? AND is_active = 1
                LIMIT 1''',
            (owner_id, semantic_hash),
        )
        return rows[0] if rows else None

    def find_active_since(self, owner_id, since, limit=20):
        return self._fetch(
            f'''SELECT {_COLUMNS} FROM memories
                WHERE owner_id = ? AND is_active = 1 AND created_at >= ?
                ORDER BY created_at DESC
                LIMIT ?''',
            (owner_id, since.isoformat(), limit),
        )

    def find_all_active(self, owner_id):
        return self._fetch(
            f'''SELECT {_COLUMNS} FROM memories
                WHERE owner_id = ? AND is_active = 1
                ORDER BY created_at DESC''',
            (owner_id,),
        )

    def get(self, memory_id):
        rows = self._fetch(f"SELECT {_COLUMNS} FROM memories WHERE id = ?", (memory_id,))
        return rows[0] if rows else None

    def soft_delete(self, owner_id, memory_id):
        conn = self._connect()
        try:
            c = conn.cursor()
            c.execute(
                "UPDATE memories SET is_active = 0, updated_at = ? WHERE id = ? AND owner_id = ? AND is_active = 1",
                (datetime.now().isoformat(), memory_id, owner_id),
            )
            conn.commit()
            return c.rowcount > 0
        except sqlite3.Error as e:
            raise StoreError(f"Failed to delete memory {memory_id}: {e}") from e
        finally:
            conn.close()

    def touch_access(self, memory_ids):
        if not memory_ids:
            return
        now = datetime.now().isoformat()
        conn = self._connect()
        try:
            c = conn.cursor()
            c.executemany(
                "UPDATE memories SET access_count = access_count + 1, last_accessed_at = ? WHERE id = ?",
                [(now, mid) for mid in memory_ids],
            )
            conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to record memory access: {e}") from e
        finally:
            conn.close()
