"""
Marathon lifecycle: a pure transition function plus the manager that owns the
single active-task slot and applies side effects.

States:
  idle -> active -> active_with_checkpoint -> transferred
  idle -> restored -> active_with_checkpoint
  any active state -> completed

At most one task is in the active family (active, active_with_checkpoint,
restored) at any time. Starting while active is rejected; callers use
save-and-switch instead.

While a task is active the manager records an auto-save checkpoint on a fixed
interval and recommends a session switch once the task outlives the
configured maximum duration.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple, Type, Union

from pydantic import BaseModel

from core.config import MarathonConfig
from core.errors import (
    CheckpointNotFoundError,
    MarathonAlreadyActiveError,
    MarathonTransitionError,
    NoActiveMarathonError,
)
from core.models import (
    Checkpoint,
    ContinuationPayload,
    MarathonProgress,
    MarathonStatus,
    MarathonTask,
    StoredCheckpoint,
    utc_now,
)
from core.observability import get_logger
from memory.storage_base import CheckpointStore


logger = get_logger(__name__)

ACTIVE_STATES = frozenset(
    {MarathonStatus.ACTIVE, MarathonStatus.ACTIVE_WITH_CHECKPOINT, MarathonStatus.RESTORED}
)
STARTABLE_STATES = frozenset(
    {MarathonStatus.IDLE, MarathonStatus.COMPLETED, MarathonStatus.TRANSFERRED}
)
TRANSFERABLE_STATES = frozenset(
    {MarathonStatus.ACTIVE, MarathonStatus.ACTIVE_WITH_CHECKPOINT}
)

COMPLEXITY_KEYWORDS = ("deploy", "integrate", "configure", "setup", "develop", "analyze")


def estimate_task_complexity(task_description: str) -> int:
    complexity = 10 + min(len(task_description) / 10, 20)
    text = task_description.lower()
    complexity += 5 * sum(1 for keyword in COMPLEXITY_KEYWORDS if keyword in text)
    return int(max(10, min(complexity, 100)))


def continuation_command(task: MarathonTask) -> str:
    return f"--- +++ ... *** Continue {task.task_description} from previous session ({task.session_id})"


class MarathonSnapshot(BaseModel):
    status: MarathonStatus = MarathonStatus.IDLE
    task: Optional[MarathonTask] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATES


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StartTask:
    task_description: str
    session_id: str


@dataclass(frozen=True)
class RecordCheckpoint:
    description: str
    data: Dict[str, Any] = field(default_factory=dict)
    automatic: bool = False
    critical: bool = False


@dataclass(frozen=True)
class SaveAndSwitch:
    task_description: str
    session_id: str


@dataclass(frozen=True)
class Transfer:
    pass


@dataclass(frozen=True)
class Restore:
    stored: StoredCheckpoint
    history: Tuple[Checkpoint, ...]
    session_id: str


@dataclass(frozen=True)
class Resume:
    pass


@dataclass(frozen=True)
class UpdateProgress:
    completed: int
    total: Optional[int] = None


@dataclass(frozen=True)
class Complete:
    reason: str = "completed"


MarathonEvent = Union[
    StartTask, RecordCheckpoint, SaveAndSwitch, Transfer, Restore, Resume, UpdateProgress, Complete
]


# ---------------------------------------------------------------------------
# Effects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PersistCheckpoint:
    task: MarathonTask
    checkpoint: Checkpoint


@dataclass(frozen=True)
class PublishContinuation:
    payload: ContinuationPayload


MarathonEffect = Union[PersistCheckpoint, PublishContinuation]


@dataclass(frozen=True)
class Transition:
    snapshot: MarathonSnapshot
    effects: Tuple[MarathonEffect, ...] = ()


# ---------------------------------------------------------------------------
# Transition function
# ---------------------------------------------------------------------------


def _require_active(snapshot: MarathonSnapshot, event: MarathonEvent) -> MarathonTask:
    if not snapshot.is_active or snapshot.task is None:
        raise NoActiveMarathonError(
            f"{type(event).__name__} requires an active marathon task "
            f"(current status: {snapshot.status.value})."
        )
    return snapshot.task


def _with_checkpoint(
    task: MarathonTask, checkpoint: Checkpoint, status: MarathonStatus
) -> MarathonTask:
    return task.model_copy(
        update={"checkpoints": [*task.checkpoints, checkpoint], "status": status}
    )


def _start(snapshot: MarathonSnapshot, event: StartTask) -> Transition:
    if snapshot.status not in STARTABLE_STATES:
        current = snapshot.task.task_description if snapshot.task else "unknown"
        raise MarathonAlreadyActiveError(
            f"Marathon task '{current}' is already active; use save-and-switch."
        )

    previous = snapshot.task.session_id if snapshot.task else None
    task = MarathonTask(
        task_description=event.task_description,
        session_id=event.session_id,
        previous_session_id=previous,
        status=MarathonStatus.ACTIVE,
        progress=MarathonProgress(total=estimate_task_complexity(event.task_description)),
    )
    return Transition(MarathonSnapshot(status=MarathonStatus.ACTIVE, task=task))


def _checkpoint(snapshot: MarathonSnapshot, event: RecordCheckpoint) -> Transition:
    task = _require_active(snapshot, event)
    checkpoint = Checkpoint(
        task_id=task.id,
        description=event.description,
        data=dict(event.data),
        automatic=event.automatic,
        critical=event.critical,
    )
    status = MarathonStatus.ACTIVE_WITH_CHECKPOINT
    updated = _with_checkpoint(task, checkpoint, status)
    return Transition(
        MarathonSnapshot(status=status, task=updated),
        (PersistCheckpoint(updated, checkpoint),),
    )


def _save_and_switch(snapshot: MarathonSnapshot, event: SaveAndSwitch) -> Transition:
    current = _require_active(snapshot, event)
    closing = Checkpoint(
        task_id=current.id,
        description="Save and switch checkpoint",
        data={
            "save_and_switch": True,
            "new_task_description": event.task_description,
            "progress": current.progress.model_dump(),
        },
        automatic=False,
        critical=True,
    )
    closed = _with_checkpoint(current, closing, MarathonStatus.COMPLETED)

    task = MarathonTask(
        task_description=event.task_description,
        session_id=event.session_id,
        previous_session_id=current.session_id,
        status=MarathonStatus.ACTIVE,
        progress=MarathonProgress(total=estimate_task_complexity(event.task_description)),
    )
    return Transition(
        MarathonSnapshot(status=MarathonStatus.ACTIVE, task=task),
        (PersistCheckpoint(closed, closing),),
    )


def _transfer(snapshot: MarathonSnapshot, event: Transfer) -> Transition:
    if snapshot.status not in TRANSFERABLE_STATES or snapshot.task is None:
        raise MarathonTransitionError(
            f"Cannot transfer from status {snapshot.status.value}."
        )

    current = snapshot.task
    command = continuation_command(current)
    # Restoring in another process needs a stored checkpoint id to start from.
    handoff = Checkpoint(
        task_id=current.id,
        description="Marathon transferred",
        data={
            "transfer": True,
            "continuation_command": command,
            "progress": current.progress.model_dump(),
        },
        automatic=False,
        critical=True,
    )
    task = _with_checkpoint(current, handoff, MarathonStatus.TRANSFERRED)
    payload = ContinuationPayload(
        task_id=task.id,
        task_description=task.task_description,
        session_id=task.session_id,
        last_checkpoint=handoff,
        continuation_command=command,
    )
    return Transition(
        MarathonSnapshot(status=MarathonStatus.TRANSFERRED, task=task),
        (PersistCheckpoint(task, handoff), PublishContinuation(payload)),
    )


def _restore(snapshot: MarathonSnapshot, event: Restore) -> Transition:
    if snapshot.status not in STARTABLE_STATES:
        raise MarathonAlreadyActiveError(
            "Cannot restore while another marathon task is active."
        )

    source = event.stored.checkpoint
    marker = Checkpoint(
        task_id=source.task_id,
        description="Marathon restored",
        data={
            "restored_from": source.id,
            "previous_session_id": event.stored.session_id,
        },
        automatic=False,
        critical=True,
    )
    task = MarathonTask(
        id=source.task_id,
        task_description=event.stored.task_description,
        session_id=event.session_id,
        previous_session_id=event.stored.session_id,
        status=MarathonStatus.RESTORED,
        checkpoints=[*event.history, marker],
        progress=MarathonProgress(total=estimate_task_complexity(event.stored.task_description)),
        restored_from=source.id,
    )
    return Transition(
        MarathonSnapshot(status=MarathonStatus.RESTORED, task=task),
        (PersistCheckpoint(task, marker),),
    )


def _resume(snapshot: MarathonSnapshot, event: Resume) -> Transition:
    if snapshot.status != MarathonStatus.RESTORED or snapshot.task is None:
        raise MarathonTransitionError(
            f"Cannot resume from status {snapshot.status.value}."
        )
    status = MarathonStatus.ACTIVE_WITH_CHECKPOINT
    task = snapshot.task.model_copy(update={"status": status})
    return Transition(MarathonSnapshot(status=status, task=task))


def _update_progress(snapshot: MarathonSnapshot, event: UpdateProgress) -> Transition:
    task = _require_active(snapshot, event)
    total = event.total if event.total is not None else task.progress.total
    total = max(total, 1)
    progress = MarathonProgress(
        completed=event.completed,
        total=total,
        percentage=min(100.0, event.completed / total * 100),
    )
    updated = task.model_copy(update={"progress": progress})
    return Transition(MarathonSnapshot(status=snapshot.status, task=updated))


def _complete(snapshot: MarathonSnapshot, event: Complete) -> Transition:
    task = _require_active(snapshot, event)
    final = Checkpoint(
        task_id=task.id,
        description=f"Marathon ended: {event.reason}",
        data={
            "reason": event.reason,
            "final_progress": task.progress.model_dump(),
            "duration_seconds": (utc_now() - task.started_at).total_seconds(),
        },
        automatic=False,
        critical=True,
    )
    updated = _with_checkpoint(task, final, MarathonStatus.COMPLETED)
    return Transition(
        MarathonSnapshot(status=MarathonStatus.COMPLETED, task=updated),
        (PersistCheckpoint(updated, final),),
    )


_HANDLERS: Dict[Type, Callable[[MarathonSnapshot, Any], Transition]] = {
    StartTask: _start,
    RecordCheckpoint: _checkpoint,
    SaveAndSwitch: _save_and_switch,
    Transfer: _transfer,
    Restore: _restore,
    Resume: _resume,
    UpdateProgress: _update_progress,
    Complete: _complete,
}


def transition(snapshot: MarathonSnapshot, event: MarathonEvent) -> Transition:
    """
    Compute the next marathon snapshot and the side effects to apply.

    Raises MarathonTransitionError (or a subclass) when the event is not legal
    in the snapshot's status. The input snapshot is never modified.
    """
    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise MarathonTransitionError(f"Unknown marathon event {type(event).__name__}.")
    return handler(snapshot, event)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class MarathonManager:
    """
    Owns the process-wide marathon slot.

    Every operation runs one or two events through ``transition`` under a lock,
    persists any checkpoints it produced and only then publishes the new
    snapshot, so a failed write leaves the previous state in place.

    An auto-save thread runs while the slot holds an active task and stops on
    transfer, completion and ``close()``.
    """

    def __init__(
        self, checkpoint_store: CheckpointStore, config: Optional[MarathonConfig] = None
    ) -> None:
        self._store = checkpoint_store
        self._config = config or MarathonConfig()
        self._snapshot = MarathonSnapshot()
        self._lock = threading.RLock()
        self._auto_save_stop: Optional[threading.Event] = None
        self._auto_save_thread: Optional[threading.Thread] = None
        self._switch_recommended_for: Optional[str] = None

    @property
    def snapshot(self) -> MarathonSnapshot:
        return self._snapshot

    @property
    def status(self) -> MarathonStatus:
        return self._snapshot.status

    @property
    def auto_save_running(self) -> bool:
        return self._auto_save_stop is not None

    @property
    def switch_recommended(self) -> bool:
        task = self._snapshot.task
        return task is not None and self._switch_recommended_for == task.id

    def is_active(self) -> bool:
        return self._snapshot.is_active

    def current_task(self) -> Optional[MarathonTask]:
        return self._snapshot.task

    def start(self, task_description: str, session_id: str) -> MarathonTask:
        return self._apply(StartTask(task_description, session_id)).snapshot.task

    def checkpoint(
        self,
        description: str,
        data: Optional[Dict[str, Any]] = None,
        automatic: bool = False,
        critical: bool = False,
    ) -> Checkpoint:
        result = self._apply(RecordCheckpoint(description, data or {}, automatic, critical))
        return result.snapshot.task.last_checkpoint

    def save_and_switch(self, task_description: str, session_id: str) -> MarathonTask:
        return self._apply(SaveAndSwitch(task_description, session_id)).snapshot.task

    def transfer(self) -> ContinuationPayload:
        result = self._apply(Transfer())
        for effect in result.effects:
            if isinstance(effect, PublishContinuation):
                return effect.payload
        raise MarathonTransitionError("Transfer produced no continuation payload.")

    def restore(self, checkpoint_id: str, session_id: str) -> MarathonTask:
        with self._lock:
            stored = self._store.get(checkpoint_id)
            if stored is None:
                raise CheckpointNotFoundError(f"Unknown checkpoint '{checkpoint_id}'.")

            history = []
            for checkpoint in self._store.list_for_task(stored.checkpoint.task_id):
                history.append(checkpoint)
                if checkpoint.id == checkpoint_id:
                    break

            self._apply(Restore(stored, tuple(history), session_id))
            return self._apply(Resume()).snapshot.task

    def update_progress(self, completed: int, total: Optional[int] = None) -> MarathonTask:
        return self._apply(UpdateProgress(completed, total)).snapshot.task

    def complete(self, reason: str = "completed") -> MarathonTask:
        return self._apply(Complete(reason)).snapshot.task

    def auto_save(self) -> Optional[Checkpoint]:
        """
        Record an auto-save checkpoint on the active task, if any.

        Also logs ``session_switch_recommended`` the first time the task is
        older than ``max_session_duration_seconds``.
        """
        with self._lock:
            if not self.is_active():
                return None

            checkpoint = self.checkpoint(
                "Auto-save checkpoint",
                {"auto_save": True, "timestamp": utc_now().isoformat()},
                automatic=True,
            )

            task = self._snapshot.task
            age = (utc_now() - task.started_at).total_seconds()
            limit = self._config.max_session_duration_seconds
            if age > limit and self._switch_recommended_for != task.id:
                self._switch_recommended_for = task.id
                logger.warning(
                    "session_switch_recommended",
                    reason="duration_exceeded",
                    task_id=task.id,
                    session_id=task.session_id,
                    duration_seconds=round(age, 1),
                    max_duration_seconds=limit,
                )
            return checkpoint

    def close(self) -> None:
        """Stop the auto-save thread and wait briefly for it to exit."""
        with self._lock:
            self._stop_auto_save()
            thread = self._auto_save_thread
            self._auto_save_thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)

    def _apply(self, event: MarathonEvent) -> Transition:
        with self._lock:
            before = self._snapshot.status
            result = transition(self._snapshot, event)

            for effect in result.effects:
                if isinstance(effect, PersistCheckpoint):
                    self._store.append(effect.task, effect.checkpoint)
                    logger.info(
                        "checkpoint_created",
                        checkpoint_id=effect.checkpoint.id,
                        task_id=effect.task.id,
                        description=effect.checkpoint.description,
                        automatic=effect.checkpoint.automatic,
                        critical=effect.checkpoint.critical,
                    )

            self._snapshot = result.snapshot
            logger.info(
                "marathon_transition",
                marathon_event=type(event).__name__,
                from_status=before.value,
                to_status=result.snapshot.status.value,
            )

            if result.snapshot.is_active:
                self._start_auto_save()
            else:
                self._stop_auto_save()
            return result

    # ------------------------------------------------------------------
    # Auto-save
    # ------------------------------------------------------------------

    def _start_auto_save(self) -> None:
        interval = self._config.auto_save_interval_seconds
        if interval <= 0 or self._auto_save_stop is not None:
            return

        stop = threading.Event()
        thread = threading.Thread(
            target=self._auto_save_loop,
            args=(stop, interval),
            name="marathon-auto-save",
            daemon=True,
        )
        self._auto_save_stop = stop
        self._auto_save_thread = thread
        thread.start()
        logger.debug("auto_save_started", interval_seconds=interval)

    def _stop_auto_save(self) -> None:
        if self._auto_save_stop is None:
            return
        self._auto_save_stop.set()
        self._auto_save_stop = None
        logger.debug("auto_save_stopped")

    def _auto_save_loop(self, stop: threading.Event, interval: float) -> None:
        while not stop.wait(interval):
            try:
                self.auto_save()
            except Exception as exc:
                logger.error("auto_save_failed", error=str(exc))
