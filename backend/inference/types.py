"""
Provider-neutral conversation, tool-schema and result types.

Adapters translate these into their own wire formats. A completion is always
one of FinalMessage, ToolCallRequest or Failure.
"""

import time
from dataclasses import dataclass, field
from typing import Optional, Union

from errors import ProviderErrorKind


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict = field(default_factory=dict)
    argument_error: Optional[str] = None  # set when the provider sent unparseable arguments


@dataclass
class Message:
    role: str  # user | assistant | system | tool
    content: str = ""
    timestamp: float = field(default_factory=time.time)
    task_id: Optional[str] = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    is_error: bool = False
    tool_status: Optional[str] = None
    tool_data: Optional[dict] = None

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str, task_id: str = None) -> "Message":
        return cls(role="user", content=content, task_id=task_id)

    @classmethod
    def assistant(cls, content: str, tool_calls: list[ToolCall] = None, task_id: str = None) -> "Message":
        return cls(role="assistant", content=content, tool_calls=list(tool_calls or []), task_id=task_id)

    @classmethod
    def tool_result(cls, call: ToolCall, content: str, is_error: bool = False,
                    task_id: str = None, tool_data: dict = None) -> "Message":
        return cls(
            role="tool",
            content=content,
            tool_call_id=call.id,
            name=call.name,
            is_error=is_error,
            task_id=task_id,
            tool_status="error" if is_error else "success",
            tool_data=tool_data,
        )


@dataclass
class ToolSpec:
    name: str
    description: str
    parameters: dict


@dataclass
class FinalMessage:
    text: str


@dataclass
class ToolCallRequest:
    calls: list[ToolCall]
    text: str = ""


@dataclass
class Failure:
    kind: ProviderErrorKind
    message: str


ProviderResult = Union[FinalMessage, ToolCallRequest, Failure]
