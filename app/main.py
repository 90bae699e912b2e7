from fastapi import FastAPI, HTTPException
from pydantic import BaseModel
from typing import Any, Dict, Optional

from core.config import Settings
from core.errors import CheckpointNotFoundError, MarathonError
from core.observability import setup_logging
from core.orchestration import CommandOrchestrator, create_default_orchestrator

app = FastAPI(title="CommandPilot API")

orchestrator: Optional[CommandOrchestrator] = None


class CommandRequest(BaseModel):
    command: str


class CheckpointRequest(BaseModel):
    description: str
    data: Dict[str, Any] = {}


class RestoreRequest(BaseModel):
    checkpoint_id: str


class ProgressRequest(BaseModel):
    completed: int
    total: Optional[int] = None


class CompleteRequest(BaseModel):
    reason: str = "completed"


@app.on_event("startup")
def startup_event():
    global orchestrator

    settings = Settings.from_env()
    setup_logging(settings.log_level, settings.log_format)
    orchestrator = create_default_orchestrator(settings)


@app.on_event("shutdown")
def shutdown_event():
    global orchestrator

    if orchestrator is not None:
        orchestrator.shutdown()
        orchestrator = None


def _require_orchestrator() -> CommandOrchestrator:
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not initialized")
    return orchestrator


@app.get("/")
def health_check():
    return {"status": "ok"}


@app.post("/commands")
def process_command(request: CommandRequest):
    outcome = _require_orchestrator().process_command(request.command)
    return outcome.model_dump(mode="json", exclude_none=True)


@app.get("/session")
def get_session():
    session = _require_orchestrator().get_current_session()
    if session is None:
        raise HTTPException(status_code=404, detail="No active session")
    return session.model_dump(mode="json")


@app.get("/marathon")
def get_marathon():
    marathon = _require_orchestrator().marathon
    task = marathon.current_task()
    return {
        "status": marathon.status.value,
        "task": task.model_dump(mode="json") if task else None,
    }


@app.post("/marathon/checkpoints")
def create_checkpoint(request: CheckpointRequest):
    try:
        checkpoint = _require_orchestrator().checkpoint(request.description, request.data)
    except MarathonError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return checkpoint.model_dump(mode="json")


@app.post("/marathon/transfer")
def transfer_marathon():
    try:
        payload = _require_orchestrator().transfer_marathon()
    except MarathonError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return payload.model_dump(mode="json")


@app.post("/marathon/restore")
def restore_marathon(request: RestoreRequest):
    try:
        task = _require_orchestrator().restore_marathon(request.checkpoint_id)
    except CheckpointNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except MarathonError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return task.model_dump(mode="json")


@app.post("/marathon/progress")
def update_marathon_progress(request: ProgressRequest):
    try:
        task = _require_orchestrator().update_marathon_progress(request.completed, request.total)
    except MarathonError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return task.model_dump(mode="json")


@app.post("/marathon/complete")
def complete_marathon(request: CompleteRequest):
    try:
        task = _require_orchestrator().complete_marathon(request.reason)
    except MarathonError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return task.model_dump(mode="json")
