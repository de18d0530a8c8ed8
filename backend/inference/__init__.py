"""
Inference package — provider abstraction layer.

Provides adapters for hosted and local LLM endpoints, the provider-neutral
conversation and result types, and a router that maps catalog entries to
adapters based on settings.

Quick start:
    from inference import get_router
    router = get_router()
    model = router.model_at(0)
    result = await router.adapter_for(model).complete(conversation, tools, model)
"""

from inference.base import ProviderAdapter
from inference.anthropic import AnthropicAdapter
from inference.openai_compat import OpenAICompatAdapter
from inference.ollama import OllamaAdapter
from inference.router import ProviderRouter, get_router
from inference.types import (
    Failure,
    FinalMessage,
    Message,
    ProviderResult,
    ToolCall,
    ToolCallRequest,
    ToolSpec,
)

__all__ = [
    "ProviderAdapter",
    "AnthropicAdapter",
    "OpenAICompatAdapter",
    "OllamaAdapter",
    "ProviderRouter",
    "get_router",
    "Failure",
    "FinalMessage",
    "Message",
    "ProviderResult",
    "ToolCall",
    "ToolCallRequest",
    "ToolSpec",
]
