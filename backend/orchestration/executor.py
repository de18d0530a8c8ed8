"""
ToolExecutor — dispatches tool calls and tracks them in the registry.

dispatch() registers a Running execution, publishes its `started` events
before returning, and schedules the work as its own asyncio task. Completion
mutates the record in place and publishes `updated`. A ToolError ends only
that execution; its message goes back to the model as the tool result.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from errors import OperationCancelled, ToolError, ToolErrorKind
from orchestration.cancellation import CancelToken
from orchestration.events import EventBus, Topic
from orchestration.registry import ExecutionRegistry, ExecutionStatus, ToolExecution
from tools import ToolContext, ToolOutput, check_arguments, describe_call

logger = logging.getLogger(__name__)


@dataclass
class ToolOutcome:
    execution_id: str
    content: str
    is_error: bool = False
    error_kind: Optional[str] = None


class ToolExecutor:
    def __init__(self, tools: list, registry: ExecutionRegistry, bus: EventBus,
                 root: Path, timeout_ceiling: float = 600, context_defaults: dict = None):
        self.tool_map = {fn.__name__: fn for fn in tools}
        self.registry = registry
        self.bus = bus
        self.root = root
        self.timeout_ceiling = timeout_ceiling
        self.context_defaults = dict(context_defaults or {})
        self._jobs: dict[str, asyncio.Task] = {}
        self._owners: dict[str, str] = {}  # execution id -> task id

    # ── Events ──

    def _publish(self, update_type: str, execution_id: str):
        execution = self.registry.get(execution_id)
        if execution is None:
            return
        self.bus.emit(Topic.TOOL_STATUS, task_id=execution.task_id,
                      type=update_type, execution=execution.to_status_dict())
        self.bus.emit(Topic.TOOL_EXECUTION, task_id=execution.task_id, **execution.to_legacy_dict())

    # ── Dispatch ──

    def dispatch(self, name: str, arguments: dict, task_id: str,
                 cancel: Optional[CancelToken] = None) -> ToolExecution:
        """Register and start one tool call. Must be called on the event loop."""
        message, metadata = describe_call(name, arguments or {})
        execution = ToolExecution.create(name, task_id, message=message, metadata=metadata)
        self.registry.insert(execution)
        self._publish("started", execution.id)
        token = (cancel or CancelToken()).child()
        job = asyncio.get_running_loop().create_task(
            self._run(execution.id, name, arguments or {}, token),
            name=f"tool:{name}:{execution.id}",
        )
        self._jobs[execution.id] = job
        self._owners[execution.id] = task_id
        return execution

    async def wait(self, execution: ToolExecution) -> ToolOutcome:
        job = self._jobs.get(execution.id)
        if job is None:
            raise KeyError(f"Unknown execution {execution.id}")
        try:
            return await asyncio.shield(job)
        finally:
            if job.done():
                self._jobs.pop(execution.id, None)
                self._owners.pop(execution.id, None)

    def fail_immediately(self, name: str, task_id: str, error: ToolError) -> ToolOutcome:
        """Record a call that cannot run at all (e.g. unparseable arguments)."""
        execution = ToolExecution.create(name, task_id, message=f"Invalid call to {name}")
        self.registry.insert(execution)
        self._publish("started", execution.id)
        return self._finish_error(execution.id, error)

    # ── Execution ──

    async def _run(self, execution_id: str, name: str, arguments: dict, token: CancelToken) -> ToolOutcome:
        try:
            output = await asyncio.wait_for(self._invoke(name, arguments, token), timeout=self.timeout_ceiling)
        except asyncio.TimeoutError:
            token.cancel(f"{name} exceeded {self.timeout_ceiling:g}s")
            return self._finish_error(execution_id, ToolError(
                ToolErrorKind.TIMEOUT, f"{name} timed out after {self.timeout_ceiling:g}s"))
        except ToolError as e:
            return self._finish_error(execution_id, e)
        except OperationCancelled as e:
            return self._finish_cancelled(execution_id, e.reason)
        except asyncio.CancelledError:
            token.cancel("cancelled")
            self._finish_cancelled(execution_id, token.reason or "cancelled")
            raise
        except Exception as e:
            logger.exception("Tool %s crashed", name)
            return self._finish_error(execution_id, ToolError(
                ToolErrorKind.EXECUTION_FAILURE, f"{type(e).__name__}: {e}"))

        snapshot = self.registry.finish(execution_id, ExecutionStatus.SUCCESS,
                                        output.message or f"{name} completed", output.metadata)
        if snapshot is not None:
            self._publish("updated", execution_id)
            self.registry.schedule_eviction(execution_id)
        return ToolOutcome(execution_id=execution_id, content=output.content)

    async def _invoke(self, name: str, arguments: dict, token: CancelToken) -> ToolOutput:
        fn = self.tool_map.get(name)
        if fn is None:
            raise ToolError(ToolErrorKind.NOT_FOUND,
                            f"Unknown tool '{name}'. Available tools: {', '.join(sorted(self.tool_map))}")
        problem = check_arguments(fn, arguments)
        if problem:
            raise ToolError(ToolErrorKind.EXECUTION_FAILURE, problem)
        ctx = ToolContext(root=self.root, cancel=token, **self.context_defaults)
        if inspect.iscoroutinefunction(fn):
            return await fn(**arguments, ctx=ctx)
        return await asyncio.to_thread(fn, **arguments, ctx=ctx)

    def _finish_error(self, execution_id: str, error: ToolError) -> ToolOutcome:
        logger.info("Tool execution %s failed (%s): %s", execution_id, error.kind.value, error)
        snapshot = self.registry.finish(execution_id, ExecutionStatus.ERROR, str(error),
                                        {"error_kind": error.kind.value})
        if snapshot is not None:
            self._publish("updated", execution_id)
            self.registry.schedule_eviction(execution_id)
        return ToolOutcome(execution_id=execution_id, content=f"Error: {error}",
                           is_error=True, error_kind=error.kind.value)

    def _finish_cancelled(self, execution_id: str, reason: str) -> ToolOutcome:
        message = f"Cancelled: {reason}"
        snapshot = self.registry.finish(execution_id, ExecutionStatus.ERROR, message, {"cancelled": True})
        if snapshot is not None:
            self._publish("updated", execution_id)
            self.registry.schedule_eviction(execution_id)
        return ToolOutcome(execution_id=execution_id, content=message, is_error=True, error_kind="cancelled")

    # ── Interruption ──

    def cancel_task(self, task_id: str):
        """Cancel every unfinished asyncio job dispatched for a task."""
        for execution_id, owner in list(self._owners.items()):
            job = self._jobs.get(execution_id)
            if owner == task_id and job is not None and not job.done():
                job.cancel()

    def force_close(self, task_id: str, reason: str) -> int:
        """Mark every still-running execution of a task as cancelled. Returns how many were closed."""
        closed = 0
        for execution_id in self.registry.running(task_id):
            self._finish_cancelled(execution_id, reason)
            closed += 1
        return closed
