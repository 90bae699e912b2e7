from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4
from pydantic import BaseModel, Field

from core.errors import SessionClosedError
from core.models import (
    CommandExecution,
    MarathonTask,
    ParsedCommand,
    StepOutcome,
    StepResult,
    utc_now,
)


class SessionContext(BaseModel):
    knowledge_loaded: bool = False
    marathon_active: bool = False
    tools_available: List[str] = Field(default_factory=list)
    integration_status: Dict[str, bool] = Field(default_factory=dict)
    recent_interactions: List[str] = Field(default_factory=list)


class SessionRecord(BaseModel):
    """
    In-process record of one run's commands and step results.

    Commands and results are append-only. Once ``end_time`` is set the session
    is closed and rejects further mutation.
    """

    id: str = Field(default_factory=lambda: uuid4().hex)
    start_time: datetime = Field(default_factory=utc_now)
    end_time: Optional[datetime] = None
    commands: List[CommandExecution] = Field(default_factory=list)
    results: List[StepResult] = Field(default_factory=list)
    marathon_mode: bool = False
    context: SessionContext = Field(default_factory=SessionContext)
    metadata: Dict[str, Any] = Field(
        default_factory=lambda: {"features": ["memory", "marathon", "integrations"]}
    )

    @property
    def is_closed(self) -> bool:
        return self.end_time is not None

    def record_command(self, execution: CommandExecution, results: List[StepResult]) -> None:
        self._ensure_open()
        self.commands.append(execution)
        self.results.extend(results)

    def remember_interaction(self, summary: str, limit: int) -> None:
        self._ensure_open()
        self.context.recent_interactions.append(summary)
        del self.context.recent_interactions[:-limit]

    def close(self) -> None:
        self._ensure_open()
        self.end_time = utc_now()

    def _ensure_open(self) -> None:
        if self.is_closed:
            raise SessionClosedError(f"Session {self.id} was already finalised.")


class CommandState(BaseModel):
    """State threaded through the command pipeline graph for one command."""

    raw_command: str
    parsed: Optional[ParsedCommand] = None
    started_at: Optional[datetime] = None

    outcomes: List[StepOutcome] = Field(default_factory=list)
    marathon_state: Optional[MarathonTask] = None
    marathon_started_by_execute: bool = False
    auto_checkpoint_id: Optional[str] = None
    duration_ms: float = 0.0
    recorded: bool = False

    @property
    def results(self) -> List[StepResult]:
        return [o.result for o in self.outcomes if o.result is not None]

    @property
    def errors(self) -> List[str]:
        return [o.error for o in self.outcomes if o.error is not None]
