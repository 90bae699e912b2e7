from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from core.models import (
    Checkpoint,
    KnowledgeSnapshot,
    MarathonTask,
    MemoryItem,
    StoredCheckpoint,
)


class KnowledgeStore(ABC):
    """
    Abstract base class for knowledge storage backends.

    Implementations must be safe to call from several orchestrator steps
    concurrently.
    """

    @abstractmethod
    def search(self, query: str, limit: int = 10, threshold: float = 0.1) -> List[MemoryItem]:
        """
        Return stored items relevant to a query.

        Args:
            query: Free text to match against stored content
            limit: Maximum number of items to return
            threshold: Minimum relevance score an item must reach

        Returns:
            Items ranked by descending relevance
        """
        pass

    @abstractmethod
    def get_snapshot(self) -> KnowledgeSnapshot:
        """Return the current knowledge-base summary."""
        pass

    @abstractmethod
    def store(
        self,
        content: str,
        category: str,
        relevance_score: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Persist a memory item.

        Args:
            content: Serialized payload of the item
            category: Knowledge-base category, e.g. "interactions"
            relevance_score: Base relevance used when ranking search results
            metadata: Free-form tags stored alongside the content

        Returns:
            Identifier of the stored item
        """
        pass

    @abstractmethod
    def update_snapshot(self, category: str, data: Any) -> None:
        """
        Merge data into one knowledge-base category.

        List categories get ``data`` appended; mapping categories are updated
        key by key.
        """
        pass

    @abstractmethod
    def get(self, item_id: str) -> Optional[MemoryItem]:
        """Load a single stored item, or None if the id is unknown."""
        pass


class CheckpointStore(ABC):
    """
    Durable, append-only storage for marathon checkpoints.

    Records must survive a process restart so that a later process can restore
    a marathon task from any checkpoint id.
    """

    @abstractmethod
    def append(self, task: MarathonTask, checkpoint: Checkpoint) -> None:
        """Durably record a checkpoint belonging to ``task``."""
        pass

    @abstractmethod
    def get(self, checkpoint_id: str) -> Optional[StoredCheckpoint]:
        """Load a checkpoint and its task identity, or None if unknown."""
        pass

    @abstractmethod
    def list_for_task(self, task_id: str) -> List[Checkpoint]:
        """Return a task's checkpoints ordered by creation time."""
        pass
