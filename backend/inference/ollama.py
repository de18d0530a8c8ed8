"""
Ollama provider adapter.

Wraps Ollama's native API endpoints:
  - /api/chat for chat completion (non-streaming)
  - /api/tags for model listing

Ollama takes OpenAI-style function tools but returns tool-call arguments as
objects and without call ids, so ids are generated here.
"""

import logging
import uuid

from errors import ProviderError, ProviderErrorKind
from inference.base import ProviderAdapter
from inference.openai_compat import parse_tool_arguments
from inference.types import FinalMessage, Message, ProviderResult, ToolCall, ToolCallRequest, ToolSpec
from settings import ModelEntry

logger = logging.getLogger(__name__)


class OllamaAdapter(ProviderAdapter):
    type_name = "ollama"

    def serialize_messages(self, conversation: list[Message]) -> list[dict]:
        out = []
        for msg in conversation:
            entry = {"role": msg.role, "content": msg.content or ""}
            if msg.role == "assistant" and msg.tool_calls:
                entry["tool_calls"] = [
                    {"function": {"name": tc.name, "arguments": tc.arguments}}
                    for tc in msg.tool_calls
                ]
            if msg.role == "tool" and msg.name:
                entry["tool_name"] = msg.name
            out.append(entry)
        return out

    def serialize_tools(self, tools: list[ToolSpec]) -> list[dict]:
        return [
            {"type": "function",
             "function": {"name": t.name, "description": t.description, "parameters": t.parameters}}
            for t in tools
        ]

    def parse_response(self, data: dict) -> ProviderResult:
        message = data.get("message")
        if not isinstance(message, dict):
            raise ProviderError(ProviderErrorKind.MALFORMED_RESPONSE,
                                f"Response has no message: {str(data)[:200]}")
        text = message.get("content") or ""
        raw_calls = message.get("tool_calls") or []
        if not raw_calls:
            return FinalMessage(text=text)
        calls = []
        for tc in raw_calls:
            fn = tc.get("function") or {}
            if not fn.get("name"):
                raise ProviderError(ProviderErrorKind.MALFORMED_RESPONSE, "Tool call without a function name")
            args, err = parse_tool_arguments(fn.get("arguments"))
            calls.append(ToolCall(id=tc.get("id") or f"call_{uuid.uuid4().hex[:8]}",
                                  name=fn["name"], arguments=args, argument_error=err or None))
        return ToolCallRequest(calls=calls, text=text)

    async def _complete_once(self, conversation: list[Message], tools: list[ToolSpec],
                             model: ModelEntry) -> ProviderResult:
        payload = {
            "model": model.id,
            "messages": self.serialize_messages(conversation),
            "stream": False,
            "options": {
                "num_predict": model.max_tokens,
                "temperature": model.temperature,
            },
        }
        if tools:
            payload["tools"] = self.serialize_tools(tools)
        data = await self._post_json("/api/chat", payload)
        return self.parse_response(data)

    async def discover_models(self) -> list[str]:
        data = await self._get_json("/api/tags")
        return [m.get("name", "").removesuffix(":latest") for m in data.get("models", [])
                if isinstance(m, dict)]
