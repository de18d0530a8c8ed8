"""
Anthropic Messages API adapter.

System prompts are hoisted into the top-level `system` field; assistant tool
calls become `tool_use` content blocks and tool results become `tool_result`
blocks inside a user turn. Consecutive tool results share one user turn, as
the API requires.
"""

import logging

from errors import ProviderError, ProviderErrorKind
from inference.base import ProviderAdapter
from inference.types import FinalMessage, Message, ProviderResult, ToolCall, ToolCallRequest, ToolSpec
from settings import ModelEntry

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicAdapter(ProviderAdapter):
    type_name = "anthropic"

    def _headers(self) -> dict:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    # ── Wire translation ──

    def system_prompt(self, conversation: list[Message]) -> str:
        return "\n\n".join(m.content for m in conversation if m.role == "system" and m.content)

    def serialize_messages(self, conversation: list[Message]) -> list[dict]:
        out: list[dict] = []
        for msg in conversation:
            if msg.role == "system":
                continue
            if msg.role == "tool":
                block = {
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id,
                    "content": msg.content,
                }
                if msg.is_error:
                    block["is_error"] = True
                prev = out[-1] if out else None
                if prev and prev["role"] == "user" and isinstance(prev["content"], list) \
                        and all(b.get("type") == "tool_result" for b in prev["content"]):
                    prev["content"].append(block)
                else:
                    out.append({"role": "user", "content": [block]})
            elif msg.role == "assistant" and msg.tool_calls:
                blocks = []
                if msg.content:
                    blocks.append({"type": "text", "text": msg.content})
                for tc in msg.tool_calls:
                    blocks.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments})
                out.append({"role": "assistant", "content": blocks})
            elif msg.role == "assistant" and not msg.content:
                # the Messages API rejects empty text content
                continue
            else:
                out.append({"role": msg.role, "content": msg.content})
        return out

    def serialize_tools(self, tools: list[ToolSpec]) -> list[dict]:
        return [
            {"name": t.name, "description": t.description, "input_schema": t.parameters}
            for t in tools
        ]

    def parse_response(self, data: dict) -> ProviderResult:
        blocks = data.get("content")
        if not isinstance(blocks, list):
            if data.get("type") == "error":
                err = data.get("error") or {}
                raise ProviderError(ProviderErrorKind.MALFORMED_RESPONSE, str(err.get("message", err))[:300])
            raise ProviderError(ProviderErrorKind.MALFORMED_RESPONSE,
                                f"Response has no content blocks: {str(data)[:200]}")

        text_parts = []
        calls = []
        for block in blocks:
            btype = block.get("type")
            if btype == "text":
                text_parts.append(block.get("text", ""))
            elif btype == "tool_use":
                args = block.get("input")
                if not isinstance(args, dict):
                    calls.append(ToolCall(id=block.get("id", ""), name=block.get("name", ""),
                                          argument_error="tool input must be a JSON object"))
                else:
                    calls.append(ToolCall(id=block.get("id", ""), name=block.get("name", ""), arguments=args))
        text = "".join(text_parts)

        if data.get("stop_reason") == "tool_use" and not calls:
            raise ProviderError(ProviderErrorKind.UNSUPPORTED_TOOL_CALL,
                                "stop_reason is tool_use but no tool_use blocks were returned")
        if calls:
            return ToolCallRequest(calls=calls, text=text)
        return FinalMessage(text=text)

    # ── Completion ──

    async def _complete_once(self, conversation: list[Message], tools: list[ToolSpec],
                             model: ModelEntry) -> ProviderResult:
        if not self.api_key:
            raise ProviderError(ProviderErrorKind.AUTH_INVALID, f"No API key configured for {self.name}")
        payload = {
            "model": model.id,
            "max_tokens": model.max_tokens,
            "temperature": model.temperature,
            "messages": self.serialize_messages(conversation),
        }
        system = self.system_prompt(conversation)
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = self.serialize_tools(tools)
        data = await self._post_json("/v1/messages", payload, headers=self._headers())
        return self.parse_response(data)

    # ── Discovery ──

    async def discover_models(self) -> list[str]:
        if not self.api_key:
            raise ProviderError(ProviderErrorKind.AUTH_INVALID, f"No API key configured for {self.name}")
        data = await self._get_json("/v1/models", headers=self._headers())
        return [m.get("id", "") for m in data.get("data", []) if isinstance(m, dict)]
