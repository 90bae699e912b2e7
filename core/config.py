"""Runtime configuration for the command orchestrator and its collaborators."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class OrchestratorConfig:
    """
    Tuning knobs for CommandOrchestrator.

    Attributes:
        step_timeout_seconds: Upper bound for every external collaborator call.
        max_parallel_dispatch: Worker count for concurrent capability dispatch.
        search_limit: Number of knowledge items requested by the load step.
        search_threshold: Minimum relevance for knowledge items in the load step.
        recent_interactions_limit: How many interaction summaries the session
            context keeps.
    """

    step_timeout_seconds: float = 30.0
    max_parallel_dispatch: int = 4
    search_limit: int = 10
    search_threshold: float = 0.1
    recent_interactions_limit: int = 10


@dataclass
class MarathonConfig:
    """
    Background behaviour of an active marathon task.

    Attributes:
        auto_save_interval_seconds: Seconds between automatic checkpoints while
            a task is active. Zero or less disables auto-save.
        max_session_duration_seconds: Task age after which a session switch is
            recommended.
    """

    auto_save_interval_seconds: float = 300.0
    max_session_duration_seconds: float = 3600.0


@dataclass
class IntegrationSettings:
    """Which capability families are switched on for this process."""

    workflow_enabled: bool = False
    browser_enabled: bool = False
    structured_store_enabled: bool = False
    business_data_enabled: bool = False


@dataclass
class Settings:
    """Application settings grouped by concern."""

    data_dir: Path = Path.home() / ".commandpilot"
    log_level: str = "INFO"
    log_format: str = "json"
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    marathon: MarathonConfig = field(default_factory=MarathonConfig)
    integrations: IntegrationSettings = field(default_factory=IntegrationSettings)

    @property
    def knowledge_db_path(self) -> Path:
        return self.data_dir / "knowledge.db"

    @property
    def marathon_db_path(self) -> Path:
        return self.data_dir / "marathon.db"

    @classmethod
    def from_env(cls, data_dir: Path | None = None) -> Settings:
        """Load settings from COMMANDPILOT_* environment variables."""
        default_dir = Path.home() / ".commandpilot"
        return cls(
            data_dir=data_dir or Path(os.getenv("COMMANDPILOT_DATA_DIR", str(default_dir))),
            log_level=os.getenv("COMMANDPILOT_LOG_LEVEL", "INFO"),
            log_format=os.getenv("COMMANDPILOT_LOG_FORMAT", "json"),
            orchestrator=OrchestratorConfig(
                step_timeout_seconds=float(os.getenv("COMMANDPILOT_STEP_TIMEOUT", "30")),
                max_parallel_dispatch=int(os.getenv("COMMANDPILOT_MAX_PARALLEL", "4")),
                search_limit=int(os.getenv("COMMANDPILOT_SEARCH_LIMIT", "10")),
                search_threshold=float(os.getenv("COMMANDPILOT_SEARCH_THRESHOLD", "0.1")),
            ),
            marathon=MarathonConfig(
                auto_save_interval_seconds=float(os.getenv("COMMANDPILOT_AUTO_SAVE_INTERVAL", "300")),
                max_session_duration_seconds=float(
                    os.getenv("COMMANDPILOT_MAX_SESSION_DURATION", "3600")
                ),
            ),
            integrations=IntegrationSettings(
                workflow_enabled=_env_flag("COMMANDPILOT_ENABLE_WORKFLOW"),
                browser_enabled=_env_flag("COMMANDPILOT_ENABLE_BROWSER"),
                structured_store_enabled=_env_flag("COMMANDPILOT_ENABLE_STRUCTURED_STORE"),
                business_data_enabled=_env_flag("COMMANDPILOT_ENABLE_BUSINESS_DATA"),
            ),
        )
