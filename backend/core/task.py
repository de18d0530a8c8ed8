"""
Task — one user request's processing lifecycle.

Valid status paths:
    Idle -> Running -> (AwaitingToolResults -> Running)* -> Completed | Failed | Interrupted
Interrupted may be entered from any non-terminal state.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from inference.types import Message
from orchestration.cancellation import CancelToken
from settings import ModelEntry


class TaskStatus(Enum):
    IDLE = "idle"
    RUNNING = "running"
    AWAITING_TOOL_RESULTS = "awaiting_tool_results"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


TERMINAL_STATUSES = {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.INTERRUPTED}

_TRANSITIONS = {
    TaskStatus.IDLE: {TaskStatus.RUNNING, TaskStatus.INTERRUPTED, TaskStatus.FAILED},
    TaskStatus.RUNNING: {TaskStatus.AWAITING_TOOL_RESULTS, TaskStatus.COMPLETED,
                         TaskStatus.FAILED, TaskStatus.INTERRUPTED},
    TaskStatus.AWAITING_TOOL_RESULTS: {TaskStatus.RUNNING, TaskStatus.FAILED, TaskStatus.INTERRUPTED},
}


@dataclass
class Task:
    prompt: str
    model: ModelEntry
    task_id: str = field(default_factory=lambda: f"task-{uuid.uuid4().hex[:12]}")
    status: TaskStatus = TaskStatus.IDLE
    messages: list[Message] = field(default_factory=list)
    history: list[TaskStatus] = field(default_factory=lambda: [TaskStatus.IDLE])
    rounds: int = 0
    error: Optional[str] = None
    response: str = ""
    cancel: CancelToken = field(default_factory=CancelToken)
    runner: Optional[asyncio.Task] = None

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, new_status: TaskStatus):
        if new_status not in _TRANSITIONS.get(self.status, set()):
            raise RuntimeError(f"Illegal task transition {self.status.value} -> {new_status.value}")
        self.status = new_status
        self.history.append(new_status)

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "model": self.model.id,
            "rounds": self.rounds,
            "error": self.error,
        }
