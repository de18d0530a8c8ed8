"""
Core package — the agent loop.

Structure:
    agent_core.py — AgentCore: model selection, task lifecycle, interruption
    task.py       — Task and its status state machine
    prompts.py    — System prompts

Usage:
    from core import AgentCore
"""

from core.agent_core import AgentCore
from core.task import Task, TaskStatus

__all__ = [
    "AgentCore",
    "Task",
    "TaskStatus",
]
