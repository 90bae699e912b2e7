from __future__ import annotations

import json
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import structlog
from langgraph.graph import END, START, StateGraph

from agents.command_parser import CommandParser, create_default_command_parser
from agents.requirement_analyzer import (
    TaskRequirementAnalyzer,
    create_default_requirement_analyzer,
)
from core.config import OrchestratorConfig, Settings
from core.errors import InvalidCommandError, SessionClosedError, StepTimeoutError
from core.marathon import MarathonManager
from core.models import (
    CapabilityKind,
    CapabilityOutcome,
    CapabilityRequest,
    Checkpoint,
    CommandExecution,
    CommandOutcome,
    ContinuationPayload,
    IntegrationResponse,
    MarathonTask,
    StepKind,
    StepOutcome,
    StepResult,
)
from core.observability import get_logger
from core.state import CommandState, SessionRecord
from integrations.base import IntegrationManager
from integrations.registry import RegistryIntegrationManager
from memory.sqlite_storage import SQLiteCheckpointStore, SQLiteConfig, SQLiteKnowledgeStore
from memory.storage_base import KnowledgeStore


logger = get_logger(__name__)

INVALID_COMMAND_MESSAGE = "Invalid command format"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


# Maps every capability kind to the integration method that serves it.
CAPABILITY_DISPATCH: Dict[
    CapabilityKind, Callable[[IntegrationManager, Dict[str, Any]], IntegrationResponse]
] = {
    CapabilityKind.WORKFLOW: lambda im, p: im.trigger_workflow(p["workflow_id"], p.get("data", {})),
    CapabilityKind.BROWSER_CAPTURE: lambda im, p: im.take_screenshot(p["url"], p.get("options")),
    CapabilityKind.BROWSER_SCRAPE: lambda im, p: im.scrape_web_content(p["url"], p.get("selectors", [])),
    CapabilityKind.STRUCTURED_STORE: lambda im, p: im.store_structured(p["table"], p.get("data", {})),
    CapabilityKind.BUSINESS_DATA: lambda im, p: im.get_business_data(p["doctype"], p.get("filters")),
}


@dataclass
class PipelineContext:
    """Collaborators shared by every node of the command graph."""

    session: SessionRecord
    knowledge_store: KnowledgeStore
    integrations: IntegrationManager
    marathon: MarathonManager
    parser: CommandParser
    analyzer: TaskRequirementAnalyzer
    config: OrchestratorConfig
    executor: ThreadPoolExecutor

    def call(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Run a collaborator call on the worker pool with the configured timeout.

        A timeout is raised as StepTimeoutError; the call's own exceptions
        propagate unchanged.
        """
        timeout = self.config.step_timeout_seconds
        future = self.executor.submit(fn, *args, **kwargs)
        done, _ = wait([future], timeout=timeout)
        if future not in done:
            self.abandon([future])
            raise StepTimeoutError(f"{name} timed out after {timeout:g}s")
        return future.result()

    def abandon(self, futures: List[Future]) -> None:
        """
        Give up on unfinished futures.

        A future that is already running cannot be cancelled and keeps its
        worker busy, so the pool is retired and replaced with a fresh one.
        Later calls never queue behind a hung collaborator.
        """
        stuck = [f for f in futures if not f.cancel() and not f.done()]
        if not stuck:
            return

        retired = self.executor
        self.executor = _new_executor(self.config)
        retired.shutdown(wait=False, cancel_futures=True)
        logger.warning("worker_pool_replaced", hung_calls=len(stuck))


def _new_executor(config: OrchestratorConfig) -> ThreadPoolExecutor:
    return ThreadPoolExecutor(
        max_workers=max(config.max_parallel_dispatch, 1),
        thread_name_prefix="commandpilot",
    )


def _append(state: CommandState, outcome: StepOutcome) -> List[StepOutcome]:
    return [*state.outcomes, outcome]


def _fail(state: CommandState, step: str, exc: Exception) -> Dict[str, Any]:
    outcome = StepOutcome.failed(step, str(exc))
    logger.warning("step_failed", step=step, error=outcome.error)
    return {"outcomes": _append(state, outcome)}


# ---------------------------------------------------------------------------
# Pipeline nodes
# ---------------------------------------------------------------------------


def make_parse_node(ctx: PipelineContext) -> Callable[[CommandState], Dict[str, Any]]:
    def parse(state: CommandState) -> Dict[str, Any]:
        parsed = ctx.parser.parse(state.raw_command)
        if not parsed.is_valid:
            logger.warning("command_invalid", command=state.raw_command, reason=parsed.error)
        return {"parsed": parsed, "started_at": _now_utc()}

    return parse


def make_load_node(ctx: PipelineContext) -> Callable[[CommandState], Dict[str, Any]]:
    """
    Load step: relevant knowledge, the knowledge-base summary and system health.
    """

    def load(state: CommandState) -> Dict[str, Any]:
        parsed = state.parsed
        if not parsed.has_load:
            return {}

        started = time.perf_counter()
        try:
            items = ctx.call(
                "knowledge search",
                ctx.knowledge_store.search,
                parsed.task_description,
                ctx.config.search_limit,
                ctx.config.search_threshold,
            )
            snapshot = ctx.call("knowledge snapshot", ctx.knowledge_store.get_snapshot)
            health = ctx.call("system health", ctx.integrations.get_system_health)
            available = ctx.call("integration listing", ctx.integrations.get_available_integrations)
        except Exception as exc:
            return _fail(state, "load", exc)

        data = {
            "search_results": [item.model_dump(mode="json") for item in items],
            "knowledge_base": {
                "infrastructure": snapshot.infrastructure or "No infrastructure data",
                "projects": len(snapshot.projects),
                "interactions": len(snapshot.interactions),
                "workflows": len(snapshot.workflows),
                "insights": snapshot.insights,
            },
            "system_health": health.model_dump(mode="json"),
            "available_integrations": available,
            "current_session": ctx.session.id,
            "last_updated": snapshot.last_updated.isoformat() if snapshot.last_updated else None,
        }
        result = StepResult(
            step=StepKind.LOAD,
            command=state.raw_command,
            data=data,
            success=True,
            duration_ms=_elapsed_ms(started),
        )
        logger.debug("step_completed", step="load", result_id=result.id)
        return {"outcomes": _append(state, StepOutcome.succeeded("load", result))}

    return load


def _dispatch_capabilities(
    ctx: PipelineContext, requests: List[CapabilityRequest]
) -> List[CapabilityOutcome]:
    """
    Fan capability requests out over the worker pool and collect every outcome.

    Outcomes are returned in request order. A failing or timed-out capability
    never prevents collection of the others.
    """
    if not requests:
        return []

    timeout = ctx.config.step_timeout_seconds
    futures: List[Future] = [
        ctx.executor.submit(CAPABILITY_DISPATCH[request.kind], ctx.integrations, request.params)
        for request in requests
    ]
    done, pending = wait(futures, timeout=timeout)
    if pending:
        ctx.abandon(list(pending))

    outcomes: List[CapabilityOutcome] = []
    for request, future in zip(requests, futures):
        if future not in done:
            error = f"{request.kind.value} timed out after {timeout:g}s"
            logger.warning("capability_failed", capability=request.kind.value, error=error)
            outcomes.append(CapabilityOutcome(kind=request.kind, success=False, error=error))
            continue

        try:
            response = future.result()
        except Exception as exc:
            logger.warning("capability_failed", capability=request.kind.value, error=str(exc))
            outcomes.append(CapabilityOutcome(kind=request.kind, success=False, error=str(exc)))
            continue

        outcomes.append(
            CapabilityOutcome(
                kind=request.kind,
                success=response.success,
                data=response.data,
                error=response.error,
                duration_ms=response.duration_ms,
            )
        )
    return outcomes


def make_execute_node(ctx: PipelineContext) -> Callable[[CommandState], Dict[str, Any]]:
    """
    Execute step: optionally start a marathon task, infer the required
    capabilities and dispatch them.

    The step succeeds only if every dispatched capability succeeded; with no
    capability requests it succeeds trivially.
    """

    def execute(state: CommandState) -> Dict[str, Any]:
        parsed = state.parsed
        if not parsed.has_execute:
            return {}

        started = time.perf_counter()
        started_marathon = False
        try:
            if parsed.has_marathon and not ctx.marathon.is_active():
                ctx.marathon.start(parsed.task_description, ctx.session.id)
                started_marathon = True

            requests = ctx.analyzer.analyze(parsed.task_description)
            outcomes = _dispatch_capabilities(ctx, requests)
        except Exception as exc:
            update = _fail(state, "execute", exc)
            update["marathon_started_by_execute"] = started_marathon
            return update

        result = StepResult(
            step=StepKind.EXECUTE,
            command=state.raw_command,
            data={
                "task": parsed.task_description,
                "required_integrations": len(requests),
                "results": [outcome.model_dump(mode="json") for outcome in outcomes],
                "marathon_active": ctx.marathon.is_active(),
            },
            success=all(outcome.success for outcome in outcomes),
            duration_ms=_elapsed_ms(started),
        )
        logger.debug(
            "step_completed",
            step="execute",
            result_id=result.id,
            capabilities=len(requests),
            success=result.success,
        )
        return {
            "outcomes": _append(state, StepOutcome.succeeded("execute", result)),
            "marathon_started_by_execute": started_marathon,
        }

    return execute


def make_update_node(ctx: PipelineContext) -> Callable[[CommandState], Dict[str, Any]]:
    """
    Update step: summarise this command's results and persist the summary as
    an interaction memory and into the knowledge-base interactions log.
    """

    def update(state: CommandState) -> Dict[str, Any]:
        parsed = state.parsed
        if not parsed.has_update:
            return {}

        started = time.perf_counter()
        prior = state.results
        succeeded = sum(1 for r in prior if r.success)
        try:
            available = ctx.call("integration listing", ctx.integrations.get_available_integrations)
            summary = {
                "command": parsed.task_description,
                "timestamp": _now_utc().isoformat(),
                "session_id": ctx.session.id,
                "results": [
                    {"type": r.step.value, "success": r.success, "duration_ms": r.duration_ms}
                    for r in prior
                ],
                "integrations": available,
                "performance": {
                    "total_duration_ms": sum(r.duration_ms for r in prior),
                    "success_rate": succeeded / len(prior) if prior else 1.0,
                },
            }
            memory_id = ctx.call(
                "memory store",
                ctx.knowledge_store.store,
                json.dumps(summary),
                "interactions",
                1.0,
                {
                    "type": "command_execution",
                    "session_id": ctx.session.id,
                    "command_type": "".join(symbol.value for symbol in parsed.symbols),
                    "success": succeeded == len(prior),
                },
            )
            ctx.call(
                "knowledge update",
                ctx.knowledge_store.update_snapshot,
                "interactions",
                summary,
            )
        except Exception as exc:
            return _fail(state, "update", exc)

        result = StepResult(
            step=StepKind.UPDATE,
            command=state.raw_command,
            data={"memory_id": memory_id, "update_data": summary, "stored": True},
            success=True,
            duration_ms=_elapsed_ms(started),
        )
        logger.debug("step_completed", step="update", result_id=result.id, memory_id=memory_id)
        return {"outcomes": _append(state, StepOutcome.succeeded("update", result))}

    return update


def make_marathon_node(ctx: PipelineContext) -> Callable[[CommandState], Dict[str, Any]]:
    """
    Marathon step: start a task, or save-and-switch when one is already active.

    A task started by this command's execute step is reported as is.
    """

    def marathon(state: CommandState) -> Dict[str, Any]:
        parsed = state.parsed
        if not parsed.has_marathon:
            return {}

        try:
            if state.marathon_started_by_execute and ctx.marathon.is_active():
                task = ctx.marathon.current_task()
            elif ctx.marathon.is_active():
                task = ctx.marathon.save_and_switch(parsed.task_description, ctx.session.id)
            else:
                task = ctx.marathon.start(parsed.task_description, ctx.session.id)
        except Exception as exc:
            return _fail(state, "marathon", exc)

        return {"marathon_state": task}

    return marathon


def make_auto_checkpoint_node(ctx: PipelineContext) -> Callable[[CommandState], Dict[str, Any]]:
    def auto_checkpoint(state: CommandState) -> Dict[str, Any]:
        duration_ms = (_now_utc() - state.started_at).total_seconds() * 1000
        results = state.results
        if not ctx.marathon.is_active() or not results:
            return {"duration_ms": duration_ms}

        try:
            checkpoint = ctx.marathon.checkpoint(
                f"Command executed: {state.parsed.task_description}",
                {
                    "command": state.raw_command,
                    "result_count": len(results),
                    "duration_ms": duration_ms,
                },
                automatic=True,
            )
        except Exception as exc:
            update = _fail(state, "checkpoint", exc)
            update["duration_ms"] = duration_ms
            return update

        return {"duration_ms": duration_ms, "auto_checkpoint_id": checkpoint.id}

    return auto_checkpoint


def make_record_node(ctx: PipelineContext) -> Callable[[CommandState], Dict[str, Any]]:
    """
    Session bookkeeping. Exceptions raised here are fatal to the command.
    """

    def record(state: CommandState) -> Dict[str, Any]:
        parsed = state.parsed
        success = not state.errors
        execution = CommandExecution(
            command=state.raw_command,
            timestamp=state.started_at,
            symbols=parsed.symbols,
            task_description=parsed.task_description,
            duration_ms=state.duration_ms,
            success=success,
        )
        ctx.session.record_command(execution, state.results)

        if any(r.step == StepKind.LOAD and r.success for r in state.results):
            ctx.session.context.knowledge_loaded = True
        ctx.session.marathon_mode = ctx.marathon.is_active()
        ctx.session.context.marathon_active = ctx.marathon.is_active()

        symbols = "".join(symbol.value for symbol in parsed.symbols)
        ctx.session.remember_interaction(
            f"{symbols} {parsed.task_description} -> {'ok' if success else 'failed'}",
            ctx.config.recent_interactions_limit,
        )
        return {"recorded": True}

    return record


# ---------------------------------------------------------------------------
# Conditional routing
# ---------------------------------------------------------------------------


def _route_after_parse(state: CommandState) -> str:
    """Invalid commands end the run before any step touches the session."""
    if state.parsed is None or not state.parsed.is_valid:
        return "end"
    return "load"


# ---------------------------------------------------------------------------
# Graph construction
# ---------------------------------------------------------------------------


def build_command_graph(ctx: PipelineContext) -> StateGraph:
    """
    Build the LangGraph StateGraph representing one command's pipeline.

    Nodes:
      - parse
      - load
      - execute
      - update
      - marathon
      - auto_checkpoint
      - record

    Control flow:
      parse -> (END if the command is invalid)
      load -> execute -> update -> marathon -> auto_checkpoint -> record
      Step nodes whose symbol is absent pass the state through unchanged.
    """
    graph: StateGraph[CommandState] = StateGraph(CommandState)

    graph.add_node("parse", make_parse_node(ctx))
    graph.add_node("load", make_load_node(ctx))
    graph.add_node("execute", make_execute_node(ctx))
    graph.add_node("update", make_update_node(ctx))
    graph.add_node("marathon", make_marathon_node(ctx))
    graph.add_node("auto_checkpoint", make_auto_checkpoint_node(ctx))
    graph.add_node("record", make_record_node(ctx))

    graph.add_edge(START, "parse")
    graph.add_conditional_edges(
        "parse",
        _route_after_parse,
        {
            "load": "load",
            "end": END,
        },
    )
    graph.add_edge("load", "execute")
    graph.add_edge("execute", "update")
    graph.add_edge("update", "marathon")
    graph.add_edge("marathon", "auto_checkpoint")
    graph.add_edge("auto_checkpoint", "record")
    graph.add_edge("record", END)

    return graph


def compile_command_graph(ctx: PipelineContext) -> Callable[[CommandState], CommandState]:
    """
    Compile the command graph into a callable returning the final CommandState.
    """
    app = build_command_graph(ctx).compile()

    def run(state: CommandState) -> CommandState:
        final = app.invoke(state)
        if isinstance(final, CommandState):
            return final
        return CommandState.model_validate(final)

    return run


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class CommandOrchestrator:
    """
    Top-level coordinator for symbolic commands.

    The session handle is owned by the caller and passed in explicitly. All
    session mutation happens under one lock, so commands submitted from
    several threads are recorded in submission order.
    """

    def __init__(
        self,
        session: SessionRecord,
        knowledge_store: KnowledgeStore,
        integrations: IntegrationManager,
        marathon: MarathonManager,
        parser: Optional[CommandParser] = None,
        analyzer: Optional[TaskRequirementAnalyzer] = None,
        config: Optional[OrchestratorConfig] = None,
    ) -> None:
        config = config or OrchestratorConfig()
        self._ctx = PipelineContext(
            session=session,
            knowledge_store=knowledge_store,
            integrations=integrations,
            marathon=marathon,
            parser=parser or create_default_command_parser(),
            analyzer=analyzer or create_default_requirement_analyzer(),
            config=config,
            executor=_new_executor(config),
        )
        self._run = compile_command_graph(self._ctx)
        self._lock = threading.RLock()
        self._shut_down = False

        status = integrations.get_available_integrations()
        session.context.integration_status = dict(status)
        session.context.tools_available = list(status)
        logger.info("orchestrator_initialized", session_id=session.id)

    @property
    def session(self) -> SessionRecord:
        return self._ctx.session

    @property
    def marathon(self) -> MarathonManager:
        return self._ctx.marathon

    def get_current_session(self) -> Optional[SessionRecord]:
        return self._ctx.session

    def process_command(self, command: str) -> CommandOutcome:
        session = self._ctx.session
        with self._lock, structlog.contextvars.bound_contextvars(session_id=session.id):
            logger.info("command_received", command=command)
            try:
                if self._shut_down:
                    raise SessionClosedError(f"Session {session.id} was already finalised.")
                final = self._run(CommandState(raw_command=command))
                if not final.recorded:
                    raise InvalidCommandError(INVALID_COMMAND_MESSAGE)
            except InvalidCommandError as exc:
                return CommandOutcome(
                    success=False,
                    results=[],
                    session_id=session.id,
                    errors=[str(exc)],
                )
            except Exception as exc:
                logger.error("command_failed", command=command, error=str(exc))
                return CommandOutcome(
                    success=False,
                    results=[],
                    session_id=session.id,
                    errors=[str(exc)],
                )

            errors = final.errors
            marathon_state = None
            if final.parsed.has_marathon or self._ctx.marathon.is_active():
                marathon_state = self._ctx.marathon.current_task()

            logger.info(
                "command_completed",
                success=not errors,
                result_count=len(final.results),
                error_count=len(errors),
                duration_ms=round(final.duration_ms, 2),
            )
            return CommandOutcome(
                success=not errors,
                results=final.results,
                session_id=session.id,
                marathon_state=marathon_state,
                errors=errors or None,
            )

    # ------------------------------------------------------------------
    # Marathon operations outside the command pipeline
    # ------------------------------------------------------------------

    def checkpoint(self, description: str, data: Optional[Dict[str, Any]] = None) -> Checkpoint:
        """Record a user-triggered checkpoint on the active marathon task."""
        with self._lock:
            return self._ctx.marathon.checkpoint(description, data or {}, automatic=False)

    def transfer_marathon(self) -> ContinuationPayload:
        with self._lock:
            payload = self._ctx.marathon.transfer()
            self._sync_marathon_flags()
            return payload

    def restore_marathon(self, checkpoint_id: str) -> MarathonTask:
        with self._lock:
            task = self._ctx.marathon.restore(checkpoint_id, self._ctx.session.id)
            self._sync_marathon_flags()
            return task

    def update_marathon_progress(self, completed: int, total: Optional[int] = None) -> MarathonTask:
        with self._lock:
            return self._ctx.marathon.update_progress(completed, total)

    def complete_marathon(self, reason: str = "completed") -> MarathonTask:
        with self._lock:
            task = self._ctx.marathon.complete(reason)
            self._sync_marathon_flags()
            return task

    def _sync_marathon_flags(self) -> None:
        active = self._ctx.marathon.is_active()
        self._ctx.session.marathon_mode = active
        self._ctx.session.context.marathon_active = active

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def shutdown(self) -> Optional[str]:
        """
        Finalise the session and persist it through the knowledge store.

        Persistence failures are logged, never raised. Returns the stored
        item id, or None when nothing was persisted. Calling it again is a
        no-op.
        """
        with self._lock:
            if self._shut_down:
                return None
            self._shut_down = True

            session = self._ctx.session
            logger.info("orchestrator_shutting_down", session_id=session.id)
            if not session.is_closed:
                session.close()

            memory_id: Optional[str] = None
            try:
                memory_id = self._ctx.call(
                    "session persist",
                    self._ctx.knowledge_store.store,
                    session.model_dump_json(),
                    "interactions",
                    0.8,
                    {
                        "type": "session_data",
                        "session_id": session.id,
                        "command_count": len(session.commands),
                    },
                )
            except Exception as exc:
                logger.warning("session_persist_failed", session_id=session.id, error=str(exc))
            finally:
                self._ctx.marathon.close()
                self._ctx.executor.shutdown(wait=False)

            logger.info("orchestrator_shutdown_completed", session_id=session.id, memory_id=memory_id)
            return memory_id


def create_default_orchestrator(settings: Optional[Settings] = None) -> CommandOrchestrator:
    """
    Convenience factory wiring SQLite stores and the registry integration
    manager into a fresh session.

    Callers (API/tests) can use this to obtain a working orchestrator while
    keeping CommandOrchestrator parameterized over the abstract collaborators.
    """
    settings = settings or Settings.from_env()
    knowledge_store = SQLiteKnowledgeStore(SQLiteConfig(db_path=Path(settings.knowledge_db_path)))
    checkpoint_store = SQLiteCheckpointStore(SQLiteConfig(db_path=Path(settings.marathon_db_path)))

    return CommandOrchestrator(
        session=SessionRecord(),
        knowledge_store=knowledge_store,
        integrations=RegistryIntegrationManager(settings.integrations),
        marathon=MarathonManager(checkpoint_store, settings.marathon),
        config=settings.orchestrator,
    )
