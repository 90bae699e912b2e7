"""Shared test fixtures and in-memory collaborators."""

from __future__ import annotations

import threading
import time
from typing import Any, Dict, List, Optional

import pytest

from core.config import OrchestratorConfig
from core.marathon import MarathonManager
from core.models import (
    Checkpoint,
    HealthStatus,
    IntegrationResponse,
    KnowledgeSnapshot,
    MarathonTask,
    MemoryItem,
    StoredCheckpoint,
    SystemHealth,
)
from core.orchestration import CommandOrchestrator
from core.state import SessionRecord
from integrations.base import IntegrationManager
from memory.storage_base import CheckpointStore, KnowledgeStore


class InMemoryKnowledgeStore(KnowledgeStore):
    """Dict-backed knowledge store; methods named in ``failing`` raise."""

    def __init__(self) -> None:
        self.items: Dict[str, MemoryItem] = {}
        self.snapshot = KnowledgeSnapshot()
        self.failing: set = set()
        self._lock = threading.Lock()

    def _maybe_fail(self, name: str) -> None:
        if name in self.failing:
            raise RuntimeError(f"{name} unavailable")

    def search(self, query: str, limit: int = 10, threshold: float = 0.1) -> List[MemoryItem]:
        self._maybe_fail("search")
        words = set(query.lower().split())
        hits = [item for item in self.items.values() if words & set(item.content.lower().split())]
        return hits[:limit]

    def get_snapshot(self) -> KnowledgeSnapshot:
        self._maybe_fail("get_snapshot")
        return self.snapshot

    def store(
        self,
        content: str,
        category: str,
        relevance_score: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        self._maybe_fail("store")
        item = MemoryItem(
            content=content,
            category=category,
            relevance_score=relevance_score,
            metadata=metadata or {},
        )
        with self._lock:
            self.items[item.id] = item
        return item.id

    def update_snapshot(self, category: str, data: Any) -> None:
        self._maybe_fail("update_snapshot")
        with self._lock:
            current = getattr(self.snapshot, category)
            if isinstance(current, list):
                current.append(data)
            else:
                current.update(data)

    def get(self, item_id: str) -> Optional[MemoryItem]:
        return self.items.get(item_id)


class ScriptedIntegrationManager(IntegrationManager):
    """
    Records every dispatch. ``failures`` maps a method name to the exception
    it raises; ``delays`` maps a method name to seconds to sleep first.
    """

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.failures: Dict[str, Exception] = {}
        self.delays: Dict[str, float] = {}
        self.health_failure: Optional[Exception] = None
        self._lock = threading.Lock()

    def _respond(self, name: str, **params: Any) -> IntegrationResponse:
        with self._lock:
            self.calls.append((name, params))
        if name in self.delays:
            time.sleep(self.delays[name])
        if name in self.failures:
            raise self.failures[name]
        return IntegrationResponse(success=True, data={"method": name, **params}, duration_ms=1.0)

    def get_system_health(self) -> SystemHealth:
        if self.health_failure is not None:
            raise self.health_failure
        return SystemHealth(overall=HealthStatus.HEALTHY)

    def get_available_integrations(self) -> Dict[str, bool]:
        return {"workflow": True, "browser": True, "structured_store": True, "business_data": True}

    def trigger_workflow(self, workflow_id, data):
        return self._respond("trigger_workflow", workflow_id=workflow_id, data=data)

    def take_screenshot(self, url, options=None):
        return self._respond("take_screenshot", url=url, options=options)

    def scrape_web_content(self, url, selectors):
        return self._respond("scrape_web_content", url=url, selectors=selectors)

    def store_structured(self, table, data):
        return self._respond("store_structured", table=table, data=data)

    def get_business_data(self, doctype, filters=None):
        return self._respond("get_business_data", doctype=doctype, filters=filters)


class InMemoryCheckpointStore(CheckpointStore):
    def __init__(self) -> None:
        self.rows: List[tuple] = []
        self.fail_appends = False

    def append(self, task: MarathonTask, checkpoint: Checkpoint) -> None:
        if self.fail_appends:
            raise OSError("disk full")
        self.rows.append((task.task_description, task.session_id, checkpoint))

    def get(self, checkpoint_id: str) -> Optional[StoredCheckpoint]:
        for description, session_id, checkpoint in self.rows:
            if checkpoint.id == checkpoint_id:
                return StoredCheckpoint(
                    checkpoint=checkpoint,
                    task_description=description,
                    session_id=session_id,
                )
        return None

    def list_for_task(self, task_id: str) -> List[Checkpoint]:
        return [cp for _, _, cp in self.rows if cp.task_id == task_id]


@pytest.fixture()
def knowledge_store() -> InMemoryKnowledgeStore:
    return InMemoryKnowledgeStore()


@pytest.fixture()
def integrations() -> ScriptedIntegrationManager:
    return ScriptedIntegrationManager()


@pytest.fixture()
def checkpoint_store() -> InMemoryCheckpointStore:
    return InMemoryCheckpointStore()


@pytest.fixture()
def marathon(checkpoint_store):
    manager = MarathonManager(checkpoint_store)
    yield manager
    manager.close()


@pytest.fixture()
def session() -> SessionRecord:
    return SessionRecord()


@pytest.fixture()
def orchestrator(session, knowledge_store, integrations, marathon):
    orch = CommandOrchestrator(
        session=session,
        knowledge_store=knowledge_store,
        integrations=integrations,
        marathon=marathon,
        config=OrchestratorConfig(step_timeout_seconds=2.0),
    )
    yield orch
    orch.shutdown()
