import json
import re
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, ContextManager, Dict, Iterator, List, Optional
from uuid import uuid4

from core.models import (
    Checkpoint,
    KnowledgeSnapshot,
    MarathonTask,
    MemoryItem,
    StoredCheckpoint,
    utc_now,
)
from core.observability import get_logger

from memory.storage_base import CheckpointStore, KnowledgeStore


logger = get_logger(__name__)

SNAPSHOT_CATEGORIES = ("infrastructure", "projects", "interactions", "workflows", "insights")
LIST_CATEGORIES = ("interactions", "workflows")

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def _tokens(text: str) -> set:
    return set(_TOKEN_RE.findall(text.lower()))


@contextmanager
def _connection(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Open a connection that commits on success and is always closed."""
    conn = sqlite3.connect(str(db_path))
    try:
        with conn:
            yield conn
    finally:
        conn.close()


@dataclass
class SQLiteConfig:
    """Configuration for the SQLite-backed stores."""
    db_path: Path


class SQLiteKnowledgeStore(KnowledgeStore):
    """
    SQLite-based implementation of KnowledgeStore.

    Memory items live in one table; each knowledge-base category is a JSON
    document in a second table. Search scores items by the share of query
    terms they contain, weighted by the item's stored relevance.
    """

    def __init__(self, config: SQLiteConfig):
        self.config = config
        self._write_lock = threading.Lock()
        self._init_db()

    def _connect(self) -> ContextManager[sqlite3.Connection]:
        return _connection(self.config.db_path)

    def _init_db(self) -> None:
        """Initialize the database schema if it doesn't exist."""
        db_path = Path(self.config.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS memory_items (
                    id TEXT PRIMARY KEY,
                    content TEXT NOT NULL,
                    category TEXT NOT NULL,
                    relevance_score REAL NOT NULL,
                    metadata TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS knowledge_snapshot (
                    category TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.commit()

    def search(self, query: str, limit: int = 10, threshold: float = 0.1) -> List[MemoryItem]:
        query_tokens = _tokens(query)
        if not query_tokens:
            return []

        with self._connect() as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute("SELECT * FROM memory_items").fetchall()

        scored = []
        for row in rows:
            overlap = len(query_tokens & _tokens(row["content"]))
            if not overlap:
                continue
            score = (overlap / len(query_tokens)) * max(row["relevance_score"], 0.1)
            if score >= threshold:
                scored.append((score, row))

        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [self._row_to_item(row, score) for score, row in scored[:limit]]

    def get_snapshot(self) -> KnowledgeSnapshot:
        with self._connect() as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute("SELECT * FROM knowledge_snapshot").fetchall()

        values: Dict[str, Any] = {}
        last_updated: Optional[datetime] = None
        for row in rows:
            values[row["category"]] = json.loads(row["data"])
            updated_at = datetime.fromisoformat(row["updated_at"])
            if last_updated is None or updated_at > last_updated:
                last_updated = updated_at

        return KnowledgeSnapshot(**values, last_updated=last_updated)

    def store(
        self,
        content: str,
        category: str,
        relevance_score: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        item_id = uuid4().hex
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO memory_items
                   (id, content, category, relevance_score, metadata, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    item_id,
                    content,
                    category,
                    relevance_score,
                    json.dumps(metadata or {}, default=str),
                    utc_now().isoformat(),
                ),
            )
            conn.commit()

        logger.debug("memory_item_stored", item_id=item_id, category=category)
        return item_id

    def update_snapshot(self, category: str, data: Any) -> None:
        if category not in SNAPSHOT_CATEGORIES:
            raise ValueError(f"Unknown knowledge-base category '{category}'.")

        # Held across read and write so every concurrent append is kept.
        with self._write_lock, self._connect() as conn:
            row = conn.execute(
                "SELECT data FROM knowledge_snapshot WHERE category = ?",
                (category,),
            ).fetchone()

            if category in LIST_CATEGORIES:
                current = json.loads(row[0]) if row else []
                current.append(data)
            else:
                current = json.loads(row[0]) if row else {}
                current.update(data)

            conn.execute(
                """INSERT INTO knowledge_snapshot (category, data, updated_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(category) DO UPDATE SET
                       data = excluded.data,
                       updated_at = excluded.updated_at""",
                (category, json.dumps(current, default=str), utc_now().isoformat()),
            )
            conn.commit()

    def get(self, item_id: str) -> Optional[MemoryItem]:
        with self._connect() as conn:
            conn.row_factory = sqlite3.Row
            row = conn.execute(
                "SELECT * FROM memory_items WHERE id = ?",
                (item_id,),
            ).fetchone()

        if row is None:
            return None
        return self._row_to_item(row, row["relevance_score"])

    @staticmethod
    def _row_to_item(row: sqlite3.Row, score: float) -> MemoryItem:
        return MemoryItem(
            id=row["id"],
            content=row["content"],
            category=row["category"],
            relevance_score=score,
            metadata=json.loads(row["metadata"]),
            timestamp=datetime.fromisoformat(row["created_at"]),
        )


class SQLiteCheckpointStore(CheckpointStore):
    """
    SQLite-based implementation of CheckpointStore.

    Each row carries the owning task's description and session id so a fresh
    process can rebuild the task from a single checkpoint id.
    """

    def __init__(self, config: SQLiteConfig):
        self.config = config
        self._init_db()

    def _connect(self) -> ContextManager[sqlite3.Connection]:
        return _connection(self.config.db_path)

    def _init_db(self) -> None:
        db_path = Path(self.config.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS marathon_checkpoints (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    task_id TEXT NOT NULL,
                    task_description TEXT NOT NULL,
                    session_id TEXT NOT NULL,
                    description TEXT NOT NULL,
                    data TEXT NOT NULL,
                    automatic INTEGER NOT NULL,
                    critical INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_checkpoints_task ON marathon_checkpoints(task_id)"
            )
            conn.commit()

    def append(self, task: MarathonTask, checkpoint: Checkpoint) -> None:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO marathon_checkpoints
                   (id, task_id, task_description, session_id, description,
                    data, automatic, critical, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    checkpoint.id,
                    task.id,
                    task.task_description,
                    task.session_id,
                    checkpoint.description,
                    json.dumps(checkpoint.data, default=str),
                    int(checkpoint.automatic),
                    int(checkpoint.critical),
                    checkpoint.created_at.isoformat(),
                ),
            )
            conn.commit()

    def get(self, checkpoint_id: str) -> Optional[StoredCheckpoint]:
        with self._connect() as conn:
            conn.row_factory = sqlite3.Row
            row = conn.execute(
                "SELECT * FROM marathon_checkpoints WHERE id = ?",
                (checkpoint_id,),
            ).fetchone()

        if row is None:
            return None
        return StoredCheckpoint(
            checkpoint=self._row_to_checkpoint(row),
            task_description=row["task_description"],
            session_id=row["session_id"],
        )

    def list_for_task(self, task_id: str) -> List[Checkpoint]:
        with self._connect() as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                "SELECT * FROM marathon_checkpoints WHERE task_id = ? ORDER BY seq",
                (task_id,),
            ).fetchall()
        return [self._row_to_checkpoint(row) for row in rows]

    @staticmethod
    def _row_to_checkpoint(row: sqlite3.Row) -> Checkpoint:
        return Checkpoint(
            id=row["id"],
            task_id=row["task_id"],
            description=row["description"],
            data=json.loads(row["data"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            automatic=bool(row["automatic"]),
            critical=bool(row["critical"]),
        )
