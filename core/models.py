# core/models.py

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# --------------------
# Enums
# --------------------

class CommandSymbol(str, Enum):
    LOAD = "---"
    EXECUTE = "+++"
    UPDATE = "..."
    MARATHON = "***"


class Priority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class StepKind(str, Enum):
    LOAD = "load"
    EXECUTE = "execute"
    UPDATE = "update"


class CapabilityKind(str, Enum):
    WORKFLOW = "workflow"
    BROWSER_CAPTURE = "browser_capture"
    BROWSER_SCRAPE = "browser_scrape"
    STRUCTURED_STORE = "structured_store"
    BUSINESS_DATA = "business_data"


class MarathonStatus(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    ACTIVE_WITH_CHECKPOINT = "active_with_checkpoint"
    TRANSFERRED = "transferred"
    RESTORED = "restored"
    COMPLETED = "completed"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


# --------------------
# Command parsing and requirement analysis
# --------------------

class ParsedCommand(BaseModel):
    raw_command: str
    symbols: List[CommandSymbol] = []
    task_description: str = ""
    priority: Priority = Priority.MEDIUM
    estimated_duration: int = 0
    is_valid: bool = False
    # Set only for slash commands such as "/execute --marathon ...".
    slash_command: Optional[str] = None
    parameters: Dict[str, Any] = {}
    flags: List[str] = []
    error: Optional[str] = None

    @property
    def has_load(self) -> bool:
        return CommandSymbol.LOAD in self.symbols

    @property
    def has_execute(self) -> bool:
        return CommandSymbol.EXECUTE in self.symbols

    @property
    def has_update(self) -> bool:
        return CommandSymbol.UPDATE in self.symbols

    @property
    def has_marathon(self) -> bool:
        return CommandSymbol.MARATHON in self.symbols


class CapabilityRequest(BaseModel):
    kind: CapabilityKind
    params: Dict[str, Any] = {}


class CapabilityOutcome(BaseModel):
    kind: CapabilityKind
    success: bool
    data: Any = None
    error: Optional[str] = None
    duration_ms: float = 0.0


# --------------------
# Step results and outcomes
# --------------------

class StepResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    step: StepKind
    command: str
    data: Any = None
    success: bool
    duration_ms: float
    timestamp: datetime = Field(default_factory=utc_now)


class StepOutcome(BaseModel):
    """
    Tagged result of one pipeline step.

    Either ``result`` is set (the step ran and produced a StepResult, which may
    itself report success=False) or ``error`` carries the reason the step
    could not complete.
    """

    step: str
    result: Optional[StepResult] = None
    error: Optional[str] = None

    @classmethod
    def succeeded(cls, step: str, result: StepResult) -> "StepOutcome":
        return cls(step=step, result=result)

    @classmethod
    def failed(cls, step: str, reason: str) -> "StepOutcome":
        return cls(step=step, error=f"{step.capitalize()} failed: {reason}")

    @property
    def ok(self) -> bool:
        return self.error is None


class CommandExecution(BaseModel):
    command: str
    timestamp: datetime = Field(default_factory=utc_now)
    symbols: List[CommandSymbol] = []
    task_description: str
    duration_ms: float = 0.0
    success: bool = False


# --------------------
# Marathon records
# --------------------

class Checkpoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"checkpoint_{uuid4().hex}")
    task_id: str
    description: str
    data: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utc_now)
    automatic: bool = False
    critical: bool = False


class MarathonProgress(BaseModel):
    completed: int = 0
    total: int = 10
    percentage: float = 0.0


class MarathonTask(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    task_description: str
    session_id: str
    previous_session_id: Optional[str] = None
    status: MarathonStatus = MarathonStatus.ACTIVE
    started_at: datetime = Field(default_factory=utc_now)
    checkpoints: List[Checkpoint] = []
    progress: MarathonProgress = Field(default_factory=MarathonProgress)
    restored_from: Optional[str] = None

    @property
    def last_checkpoint(self) -> Optional[Checkpoint]:
        return self.checkpoints[-1] if self.checkpoints else None

    @computed_field
    @property
    def last_checkpoint_id(self) -> Optional[str]:
        return self.checkpoints[-1].id if self.checkpoints else None


class StoredCheckpoint(BaseModel):
    """A checkpoint as read back from durable storage, with its task's identity."""

    checkpoint: Checkpoint
    task_description: str
    session_id: str


class ContinuationPayload(BaseModel):
    task_id: str
    task_description: str
    session_id: str
    last_checkpoint: Optional[Checkpoint] = None
    continuation_command: str
    created_at: datetime = Field(default_factory=utc_now)


# --------------------
# Collaborator records
# --------------------

class MemoryItem(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    content: str
    category: str
    relevance_score: float = 0.0
    metadata: Dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=utc_now)


class KnowledgeSnapshot(BaseModel):
    infrastructure: Dict[str, Any] = {}
    projects: Dict[str, Any] = {}
    interactions: List[Any] = []
    workflows: List[Any] = []
    insights: Dict[str, Any] = {}
    last_updated: Optional[datetime] = None


class ComponentHealth(BaseModel):
    status: HealthStatus
    message: Optional[str] = None


class SystemHealth(BaseModel):
    overall: HealthStatus = HealthStatus.HEALTHY
    components: Dict[str, ComponentHealth] = {}
    last_check: datetime = Field(default_factory=utc_now)


class IntegrationResponse(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
    duration_ms: float = 0.0


# --------------------
# Orchestrator output
# --------------------

class CommandOutcome(BaseModel):
    success: bool
    results: List[StepResult] = []
    session_id: str
    marathon_state: Optional[MarathonTask] = None
    errors: Optional[List[str]] = None
