from __future__ import annotations

import sqlite3
import threading

import pytest

from core.models import Checkpoint, MarathonTask
from memory.sqlite_storage import SQLiteCheckpointStore, SQLiteConfig, SQLiteKnowledgeStore


@pytest.fixture()
def knowledge_db(tmp_path):
    return SQLiteConfig(db_path=tmp_path / "data" / "knowledge.db")


def test_store_and_get_round_trip(knowledge_db) -> None:
    store = SQLiteKnowledgeStore(knowledge_db)

    item_id = store.store("nightly backup finished", "interactions", 0.8, {"type": "note"})
    item = store.get(item_id)

    assert item.content == "nightly backup finished"
    assert item.category == "interactions"
    assert item.relevance_score == 0.8
    assert item.metadata == {"type": "note"}
    assert store.get("missing") is None


def test_items_survive_new_store_instance(knowledge_db) -> None:
    item_id = SQLiteKnowledgeStore(knowledge_db).store("kept", "insights", 1.0)

    assert SQLiteKnowledgeStore(knowledge_db).get(item_id).content == "kept"


def test_search_ranks_by_overlap_and_respects_threshold(knowledge_db) -> None:
    store = SQLiteKnowledgeStore(knowledge_db)
    store.store("deploy the billing service", "interactions", 1.0)
    store.store("billing report", "interactions", 1.0)
    store.store("unrelated note", "interactions", 1.0)

    results = store.search("deploy billing service", limit=10, threshold=0.1)

    assert [r.content for r in results] == ["deploy the billing service", "billing report"]
    assert results[0].relevance_score == pytest.approx(1.0)
    assert results[1].relevance_score == pytest.approx(1 / 3)

    assert len(store.search("deploy billing service", limit=1)) == 1
    assert [r.content for r in store.search("deploy billing service", threshold=0.5)] == [
        "deploy the billing service"
    ]
    assert store.search("   ") == []


def test_snapshot_categories(knowledge_db) -> None:
    store = SQLiteKnowledgeStore(knowledge_db)
    empty = store.get_snapshot()
    assert empty.interactions == []
    assert empty.last_updated is None

    store.update_snapshot("interactions", {"command": "first"})
    store.update_snapshot("interactions", {"command": "second"})
    store.update_snapshot("projects", {"billing": {"owner": "ops"}})
    store.update_snapshot("projects", {"search": {"owner": "data"}})

    snapshot = SQLiteKnowledgeStore(knowledge_db).get_snapshot()
    assert snapshot.interactions == [{"command": "first"}, {"command": "second"}]
    assert set(snapshot.projects) == {"billing", "search"}
    assert snapshot.last_updated is not None


def test_unknown_snapshot_category_is_rejected(knowledge_db) -> None:
    store = SQLiteKnowledgeStore(knowledge_db)

    with pytest.raises(ValueError):
        store.update_snapshot("gossip", {"x": 1})


def test_checkpoints_are_durable_and_ordered(tmp_path) -> None:
    config = SQLiteConfig(db_path=tmp_path / "marathon.db")
    task = MarathonTask(task_description="migrate billing", session_id="s1")
    other = MarathonTask(task_description="other", session_id="s1")
    first = Checkpoint(task_id=task.id, description="one", data={"n": 1})
    second = Checkpoint(task_id=task.id, description="two", critical=True)

    writer = SQLiteCheckpointStore(config)
    writer.append(task, first)
    writer.append(other, Checkpoint(task_id=other.id, description="elsewhere"))
    writer.append(task, second)

    reader = SQLiteCheckpointStore(config)
    assert reader.list_for_task(task.id) == [first, second]

    stored = reader.get(second.id)
    assert stored.checkpoint == second
    assert stored.task_description == "migrate billing"
    assert stored.session_id == "s1"
    assert reader.get("checkpoint_missing") is None


def test_concurrent_snapshot_appends_are_all_kept(knowledge_db) -> None:
    store = SQLiteKnowledgeStore(knowledge_db)

    def append(worker: int) -> None:
        for n in range(25):
            store.update_snapshot("interactions", {"worker": worker, "n": n})

    threads = [threading.Thread(target=append, args=(w,)) for w in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    interactions = store.get_snapshot().interactions
    assert len(interactions) == 200
    assert {(i["worker"], i["n"]) for i in interactions} == {(w, n) for w in range(8) for n in range(25)}


def test_connections_are_closed_after_each_operation(tmp_path, monkeypatch) -> None:
    opened = []
    real_connect = sqlite3.connect

    def connect(*args, **kwargs):
        conn = real_connect(*args, **kwargs)
        opened.append(conn)
        return conn

    monkeypatch.setattr(sqlite3, "connect", connect)
    knowledge = SQLiteKnowledgeStore(SQLiteConfig(db_path=tmp_path / "knowledge.db"))
    knowledge.store("note", "insights", 1.0)
    knowledge.search("note")
    knowledge.update_snapshot("insights", {"k": "v"})
    checkpoints = SQLiteCheckpointStore(SQLiteConfig(db_path=tmp_path / "marathon.db"))
    task = MarathonTask(task_description="t", session_id="s")
    checkpoints.append(task, Checkpoint(task_id=task.id, description="c"))
    checkpoints.list_for_task(task.id)

    assert len(opened) >= 7
    for conn in opened:
        with pytest.raises(sqlite3.ProgrammingError):
            conn.execute("SELECT 1")
