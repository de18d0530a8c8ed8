"""
OpenAI-compatible provider adapter.

Covers any server that implements the OpenAI chat-completions contract
(OpenAI, LM Studio, vLLM, llama.cpp server, text-generation-webui):
  - /v1/chat/completions with function tools
  - /v1/models for discovery
"""

import json
import logging

from errors import ProviderError, ProviderErrorKind
from inference.base import ProviderAdapter
from inference.types import FinalMessage, Message, ProviderResult, ToolCall, ToolCallRequest, ToolSpec
from settings import ModelEntry

logger = logging.getLogger(__name__)


def parse_tool_arguments(raw) -> tuple[dict, str]:
    """Decode a function-call argument payload. Returns (arguments, error)."""
    if isinstance(raw, dict):
        return raw, ""
    if raw is None or raw == "":
        return {}, ""
    try:
        args = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        return {}, f"JSON parse error: {e}. Raw: {str(raw)[:200]}"
    if not isinstance(args, dict):
        return {}, f"Tool arguments must be a JSON object, got {type(args).__name__}"
    return args, ""


class OpenAICompatAdapter(ProviderAdapter):
    """Adapter for OpenAI-compatible chat-completion servers."""

    type_name = "openai"

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    # ── Wire translation ──

    def serialize_messages(self, conversation: list[Message]) -> list[dict]:
        out = []
        for msg in conversation:
            if msg.role == "tool":
                out.append({"role": "tool", "tool_call_id": msg.tool_call_id, "content": msg.content})
            elif msg.role == "assistant" and msg.tool_calls:
                out.append({
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
                        }
                        for tc in msg.tool_calls
                    ],
                })
            else:
                out.append({"role": msg.role, "content": msg.content})
        return out

    def serialize_tools(self, tools: list[ToolSpec]) -> list[dict]:
        return [
            {
                "type": "function",
                "function": {
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.parameters,
                },
            }
            for t in tools
        ]

    def parse_response(self, data: dict) -> ProviderResult:
        try:
            choice = data["choices"][0]
            msg = choice["message"]
        except (KeyError, IndexError, TypeError):
            raise ProviderError(ProviderErrorKind.MALFORMED_RESPONSE,
                                f"Response has no choices: {str(data)[:200]}")
        text = msg.get("content") or ""
        raw_calls = msg.get("tool_calls") or []
        if not raw_calls:
            return FinalMessage(text=text)

        calls = []
        for i, tc in enumerate(raw_calls):
            fn = tc.get("function") or {}
            name = fn.get("name")
            if not name:
                raise ProviderError(ProviderErrorKind.MALFORMED_RESPONSE, "Tool call without a function name")
            args, err = parse_tool_arguments(fn.get("arguments"))
            calls.append(ToolCall(id=tc.get("id") or f"call_{i}", name=name,
                                  arguments=args, argument_error=err or None))
        return ToolCallRequest(calls=calls, text=text)

    # ── Completion ──

    async def _complete_once(self, conversation: list[Message], tools: list[ToolSpec],
                             model: ModelEntry) -> ProviderResult:
        payload = {
            "model": model.id,
            "messages": self.serialize_messages(conversation),
            "max_tokens": model.max_tokens,
            "temperature": model.temperature,
        }
        if tools:
            payload["tools"] = self.serialize_tools(tools)
            payload["tool_choice"] = "auto"
        data = await self._post_json("/v1/chat/completions", payload, headers=self._headers())
        return self.parse_response(data)

    # ── Discovery ──

    async def discover_models(self) -> list[str]:
        data = await self._get_json("/v1/models", headers=self._headers())
        return [m.get("id", "") for m in data.get("data", []) if isinstance(m, dict)]
