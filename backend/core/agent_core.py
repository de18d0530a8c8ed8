"""
AgentCore — per-request agent loop and session state.

Architecture:
  - ProviderRouter resolves the selected catalog entry to a provider adapter
  - Each run() creates a Task whose loop alternates model calls and tool rounds
  - ToolExecutor runs the calls of one round concurrently and records them in
    the ExecutionRegistry
  - Every transition is published on the EventBus before the next step starts

Only one task runs at a time. The conversation of finished tasks is kept in
memory so follow-up prompts see earlier turns.
"""

import asyncio
import logging
from typing import Optional

from config import VERSION
from core.prompts import build_system_prompt
from core.task import Task, TaskStatus
from errors import (
    BackendConnectionError, KestrelError, LoopLimitExceeded, OperationCancelled,
    ProtocolError, ProviderError, ProviderErrorKind, ToolError, ToolErrorKind,
)
from inference import Failure, FinalMessage, Message, ProviderRouter, ToolCallRequest, get_router
from inference.base import ProviderAdapter
from orchestration.events import EventBus, Topic
from orchestration.executor import ToolExecutor
from orchestration.registry import ExecutionRegistry
from settings import Settings, get_settings
from tools import build_tool_schemas, get_all_tools

logger = logging.getLogger(__name__)

INTERRUPT_MESSAGE = "Task interrupted by user"


def failure_kind(error: KestrelError) -> str:
    """Wire `kind` for a processing_error raised out of the task loop."""
    if isinstance(error, ProviderError):
        return error.kind.value
    if isinstance(error, BackendConnectionError):
        return ProviderErrorKind.NETWORK.value
    return "internal_error"


class AgentCore:
    def __init__(self, settings: Optional[Settings] = None, router: Optional[ProviderRouter] = None,
                 bus: Optional[EventBus] = None, tools: Optional[list] = None):
        self.settings = settings or get_settings()
        self.router = router or (get_router() if settings is None else ProviderRouter(self.settings))
        self.bus = bus or EventBus()
        self.root = self.settings.working_root()
        self.registry = ExecutionRegistry(grace_seconds=self.settings.agent.registry_grace_seconds)
        self.tools = tools if tools is not None else get_all_tools()
        self.tool_schemas = build_tool_schemas(self.tools)
        self.executor = ToolExecutor(
            self.tools, self.registry, self.bus, self.root,
            timeout_ceiling=self.settings.agent.tool_timeout_ceiling,
            context_defaults={
                "command_timeout": self.settings.agent.command_timeout,
                "max_file_bytes": self.settings.search.max_file_bytes,
                "max_results": self.settings.search.max_results,
                "max_workers": self.settings.search.max_workers,
            },
        )
        self.max_tool_rounds = self.settings.agent.max_tool_rounds
        self.interrupt_deadline = self.settings.agent.interrupt_deadline
        self.selected_model = 0
        self.conversation: list[Message] = []
        self.current_task: Optional[Task] = None
        self._providers: dict[str, dict] = {}
        self._ready = False

    # ── Startup / Shutdown ──

    async def start(self):
        """Bind the event bus to the running loop and check provider reachability."""
        self.bus.bind_loop(asyncio.get_running_loop())
        await self.refresh_backends()
        reachable = [n for n, info in self._providers.items() if info.get("reachable")]
        logger.info("Providers reachable: %s", ", ".join(reachable) or "none")
        logger.info("Working directory: %s", self.root)
        self._ready = True
        logger.info("Core ready (%d models, %d tools)", len(self.router.catalog()), len(self.tools))

    async def shutdown(self):
        task = self.current_task
        if task is not None and not task.finished:
            await self.interrupt_processing()
        self._ready = False

    async def refresh_backends(self) -> dict[str, dict]:
        self._providers = await self.router.check_reachability()
        return self._providers

    def has_reachable_provider(self) -> bool:
        return any(info.get("reachable") for info in self._providers.values())

    def backend_info(self) -> dict:
        return {
            "name": self.settings.system.name,
            "version": VERSION,
            "working_directory": str(self.root),
            "selected_model": self.selected_model,
            "providers": self._providers,
        }

    # ── Model Selection ──

    def get_available_models(self) -> list[dict]:
        return self.router.catalog()

    def set_selected_model(self, model_index: int) -> dict:
        self.router.model_at(model_index)
        self.selected_model = model_index
        entry = self.router.catalog()[model_index]
        logger.info("Selected model %d: %s", model_index, entry["id"])
        return {"model_index": model_index, "model": entry}

    # ── Task Lifecycle ──

    def run(self, prompt: str, model_index: Optional[int] = None) -> dict:
        """Accept a prompt and start its task. Must be called on the event loop."""
        if self.current_task is not None and not self.current_task.finished:
            raise ProtocolError(ProtocolError.BUSY, "A task is already running",
                                data={"task_id": self.current_task.task_id})
        if not prompt or not prompt.strip():
            raise ProtocolError(ProtocolError.INVALID_PARAMS, "Empty prompt")
        index = self.selected_model if model_index is None else model_index
        model = self.router.model_at(index)
        adapter = self.router.adapter_for(model)
        self.selected_model = index

        task = Task(prompt=prompt, model=model)
        self.current_task = task
        task.runner = asyncio.get_running_loop().create_task(
            self._run_task(task, adapter), name=f"agent:{task.task_id}")
        logger.info("Task %s started on %s", task.task_id, model.id)
        return {"task_id": task.task_id}

    def get_tool_executions(self, task_id: Optional[str] = None) -> list[dict]:
        return self.registry.snapshot(task_id)

    def reset_conversation(self) -> dict:
        if self.current_task is not None and not self.current_task.finished:
            raise ProtocolError(ProtocolError.BUSY, "Cannot reset while a task is running")
        dropped = len(self.conversation)
        self.conversation = []
        return {"cleared": dropped}

    # ── Agent Loop ──

    def _provider_view(self, task: Task, use_agent: bool) -> list[Message]:
        """System prompt plus every non-system turn of the session and this task."""
        turns = [m for m in self.conversation + task.messages if m.role != "system"]
        return [Message.system(build_system_prompt(str(self.root), use_agent))] + turns

    def _set_status(self, task: Task, status: TaskStatus, message: str):
        task.transition(status)
        self.bus.emit(Topic.PROCESSING_PROGRESS, task_id=task.task_id,
                      message=message, status=status.value)

    async def _run_task(self, task: Task, adapter: ProviderAdapter):
        use_agent = task.model.supports_agent
        tools = self.tool_schemas if use_agent else []
        task.messages.append(Message.user(task.prompt, task_id=task.task_id))
        self.bus.emit(Topic.PROCESSING_STARTED, task_id=task.task_id, use_agent=use_agent)
        try:
            self._set_status(task, TaskStatus.RUNNING, f"Processing with {task.model.name or task.model.id}")
            while True:
                task.cancel.raise_if_cancelled()
                result = await adapter.complete(self._provider_view(task, use_agent), tools,
                                                task.model, cancel=task.cancel)
                if isinstance(result, Failure):
                    self._fail(task, result.kind.value, result.message)
                    return
                if isinstance(result, FinalMessage):
                    self._complete(task, result.text)
                    return
                if isinstance(result, ToolCallRequest):
                    if not use_agent:
                        self._fail(task, ProviderErrorKind.UNSUPPORTED_TOOL_CALL.value,
                                   f"{task.model.id} requested tools but is not configured for agent mode")
                        return
                    if task.rounds >= self.max_tool_rounds:
                        raise LoopLimitExceeded(task.rounds)
                    await self._tool_round(task, result)
                    task.cancel.raise_if_cancelled()
                    self._set_status(task, TaskStatus.RUNNING, "Tool results received; continuing")
        except LoopLimitExceeded as e:
            self._fail(task, "loop_limit_exceeded", str(e))
        except (OperationCancelled, asyncio.CancelledError):
            self._finish_interrupted(task, task.cancel.reason or INTERRUPT_MESSAGE)
        except KestrelError as e:
            logger.error("Task %s failed: %s", task.task_id, e)
            self._fail(task, failure_kind(e), str(e))
        except Exception as e:
            logger.exception("Task %s crashed", task.task_id)
            self._fail(task, "internal_error", f"{type(e).__name__}: {e}")

    async def _tool_round(self, task: Task, request: ToolCallRequest):
        task.rounds += 1
        task.messages.append(Message.assistant(request.text, request.calls, task_id=task.task_id))
        names = ", ".join(c.name for c in request.calls)
        self._set_status(task, TaskStatus.AWAITING_TOOL_RESULTS,
                         f"Round {task.rounds}: running {len(request.calls)} tool call(s): {names}")

        pending = []
        results: dict[str, tuple] = {}
        for call in request.calls:
            if call.argument_error:
                outcome = self.executor.fail_immediately(
                    call.name, task.task_id, ToolError(ToolErrorKind.EXECUTION_FAILURE, call.argument_error))
                results[call.id] = (outcome.content, True, outcome.execution_id)
                continue
            execution = self.executor.dispatch(call.name, call.arguments, task.task_id, cancel=task.cancel)
            pending.append((call, execution))

        outcomes = await asyncio.gather(*(self.executor.wait(e) for _, e in pending))
        for (call, _), outcome in zip(pending, outcomes):
            results[call.id] = (outcome.content, outcome.is_error, outcome.execution_id)

        for call in request.calls:
            content, is_error, execution_id = results[call.id]
            execution = self.registry.get(execution_id)
            tool_data = execution.to_status_dict() if execution else {"id": execution_id, "name": call.name}
            task.messages.append(Message.tool_result(call, content, is_error=is_error,
                                                     task_id=task.task_id, tool_data=tool_data))

    # ── Terminal States ──

    def _complete(self, task: Task, text: str):
        task.messages.append(Message.assistant(text, task_id=task.task_id))
        task.response = text
        task.transition(TaskStatus.COMPLETED)
        self._commit(task)
        logger.info("Task %s completed after %d tool rounds", task.task_id, task.rounds)
        self.bus.emit(Topic.PROCESSING_COMPLETE, task_id=task.task_id,
                      response=text, status=task.status.value)

    def _fail(self, task: Task, kind: str, message: str):
        if task.finished:
            return
        task.error = message
        task.transition(TaskStatus.FAILED)
        self._commit(task, note=f"Error: {message}")
        logger.warning("Task %s failed (%s): %s", task.task_id, kind, message)
        self.bus.emit(Topic.PROCESSING_ERROR, task_id=task.task_id,
                      error=message, kind=kind, status=task.status.value)

    def _finish_interrupted(self, task: Task, reason: str):
        if task.finished:
            return
        closed = self.executor.force_close(task.task_id, reason)
        task.error = reason
        task.transition(TaskStatus.INTERRUPTED)
        self._commit(task, note=reason)
        logger.info("Task %s interrupted (%d executions force-closed)", task.task_id, closed)
        self.bus.emit(Topic.PROCESSING_ERROR, task_id=task.task_id,
                      error=reason, kind="interrupted", status=task.status.value)

    def _commit(self, task: Task, note: Optional[str] = None):
        """Close dangling tool calls, add the terminal note and append the task's turns to the session."""
        answered = {m.tool_call_id for m in task.messages if m.role == "tool"}
        for msg in list(task.messages):
            for call in msg.tool_calls:
                if call.id not in answered:
                    task.messages.append(Message.tool_result(
                        call, f"Cancelled: {task.error or INTERRUPT_MESSAGE}",
                        is_error=True, task_id=task.task_id))
                    answered.add(call.id)
        if note:
            task.messages.append(Message(role="system", content=note, task_id=task.task_id))
        self.conversation.extend(task.messages)

    # ── Interruption ──

    async def interrupt_processing(self) -> dict:
        task = self.current_task
        if task is None or task.finished:
            return {"interrupted": False}
        logger.info("Interrupting task %s", task.task_id)
        task.cancel.cancel(INTERRUPT_MESSAGE)
        self.executor.cancel_task(task.task_id)
        if task.runner is not None and not task.runner.done():
            done, _ = await asyncio.wait({task.runner}, timeout=self.interrupt_deadline)
            if not done:
                logger.warning("Task %s did not unwind within %.1fs; cancelling",
                               task.task_id, self.interrupt_deadline)
                task.runner.cancel()
        self._finish_interrupted(task, INTERRUPT_MESSAGE)
        return {"interrupted": True, "task_id": task.task_id, "status": task.status.value}
