"""
Tool execution records and the registry of in-flight executions.

ToolExecution is the single canonical record of one tool invocation. It has
two wire encodings: the tool_status shape and the legacy tool_execution shape.
The registry is the only shared mutable state touched by concurrent workers;
every mutation and every snapshot happens under one lock.
"""

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class ExecutionStatus(Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


def _now_ms() -> int:
    return int(time.time() * 1000)


# Metadata keys carried over into the legacy tool_execution event.
_LEGACY_FIELDS = ("file_path", "lines", "description", "pattern")


@dataclass
class ToolExecution:
    id: str
    task_id: str
    name: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    start_time: int = field(default_factory=_now_ms)
    end_time: Optional[int] = None
    message: str = ""
    metadata: dict = field(default_factory=dict)

    @classmethod
    def create(cls, name: str, task_id: str, message: str = "", metadata: dict = None) -> "ToolExecution":
        return cls(
            id=f"tool-{uuid.uuid4().hex[:12]}",
            task_id=task_id,
            name=name,
            message=message,
            metadata=dict(metadata or {}),
        )

    @property
    def finished(self) -> bool:
        return self.status is not ExecutionStatus.RUNNING

    def to_status_dict(self) -> dict:
        d = {
            "id": self.id,
            "task_id": self.task_id,
            "name": self.name,
            "status": self.status.value,
            "startTime": self.start_time,
            "message": self.message,
            "metadata": dict(self.metadata),
        }
        if self.end_time is not None:
            d["endTime"] = self.end_time
        return d

    def to_legacy_dict(self) -> dict:
        d = {
            "tool": self.name,
            "status": self.status.value,
            "message": self.message,
            "task_id": self.task_id,
        }
        for key in _LEGACY_FIELDS:
            if self.metadata.get(key) is not None:
                d[key] = self.metadata[key]
        return d


class ExecutionRegistry:
    """Concurrency-safe map of execution id -> ToolExecution."""

    def __init__(self, grace_seconds: float = 3.0):
        self.grace_seconds = grace_seconds
        self._executions: dict[str, ToolExecution] = {}
        self._lock = threading.Lock()

    def insert(self, execution: ToolExecution):
        with self._lock:
            if execution.id in self._executions:
                raise KeyError(f"Duplicate execution id: {execution.id}")
            self._executions[execution.id] = execution

    def get(self, execution_id: str) -> Optional[ToolExecution]:
        with self._lock:
            return self._executions.get(execution_id)

    def finish(self, execution_id: str, status: ExecutionStatus, message: str,
               metadata: dict = None) -> Optional[dict]:
        """Move a running execution to a terminal status, in place.

        Returns the post-update status snapshot, or None if the execution was
        already terminal or is unknown (first writer wins).
        """
        if status is ExecutionStatus.RUNNING:
            raise ValueError("finish() requires a terminal status")
        with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or execution.finished:
                return None
            execution.status = status
            execution.end_time = max(_now_ms(), execution.start_time)
            execution.message = message
            if metadata:
                execution.metadata.update(metadata)
            return execution.to_status_dict()

    def snapshot(self, task_id: Optional[str] = None) -> list[dict]:
        with self._lock:
            return [e.to_status_dict() for e in self._executions.values()
                    if task_id is None or e.task_id == task_id]

    def running(self, task_id: Optional[str] = None) -> list[str]:
        with self._lock:
            return [e.id for e in self._executions.values()
                    if not e.finished and (task_id is None or e.task_id == task_id)]

    def evict(self, execution_id: str) -> bool:
        with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or not execution.finished:
                return False
            del self._executions[execution_id]
            return True

    def schedule_eviction(self, execution_id: str):
        """Remove a terminal execution after the grace window."""
        loop = asyncio.get_running_loop()
        loop.call_later(self.grace_seconds, self.evict, execution_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._executions)
