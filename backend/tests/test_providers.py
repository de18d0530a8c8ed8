"""
Tests for the provider adapters — wire translation, error mapping and retries.
Provider HTTP is mocked; nothing here touches the network.
"""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from errors import OperationCancelled, ProviderError, ProviderErrorKind
from inference import (
    AnthropicAdapter,
    Failure,
    FinalMessage,
    Message,
    OllamaAdapter,
    OpenAICompatAdapter,
    ToolCall,
    ToolCallRequest,
    ToolSpec,
)
from inference.base import error_from_status
from inference.openai_compat import parse_tool_arguments
from orchestration.cancellation import CancelToken
from settings import ModelEntry

MODEL = ModelEntry(name="M", id="model-1", provider="p", max_tokens=123, temperature=0.1)
TOOLS = [ToolSpec(name="glob_files", description="Find files",
                  parameters={"type": "object", "properties": {"pattern": {"type": "string"}},
                              "required": ["pattern"]})]


def _adapter(cls, **kwargs):
    defaults = dict(name="p", base_url="http://provider.test/", api_key="k",
                    retry_attempts=3, retry_min_wait=0, retry_max_wait=0)
    defaults.update(kwargs)
    return cls(**defaults)


def _conversation():
    call = ToolCall(id="c1", name="glob_files", arguments={"pattern": "*.py"})
    call2 = ToolCall(id="c2", name="read_file", arguments={"file_path": "a.py"})
    return [
        Message.system("be helpful"),
        Message.user("list files"),
        Message.assistant("looking", [call, call2]),
        Message.tool_result(call, "a.py"),
        Message.tool_result(call2, "Error: not found", is_error=True),
    ]


class TestErrorMapping:
    @pytest.mark.parametrize("status,kind", [
        (401, ProviderErrorKind.AUTH_INVALID),
        (403, ProviderErrorKind.AUTH_INVALID),
        (429, ProviderErrorKind.RATE_LIMITED),
        (529, ProviderErrorKind.RATE_LIMITED),
        (500, ProviderErrorKind.NETWORK),
        (503, ProviderErrorKind.NETWORK),
        (400, ProviderErrorKind.MALFORMED_RESPONSE),
        (422, ProviderErrorKind.MALFORMED_RESPONSE),
    ])
    def test_status_codes(self, status, kind):
        err = error_from_status(status, "body")
        assert err.kind is kind
        assert err.status_code == status

    def test_only_transient_kinds_retryable(self):
        assert ProviderError(ProviderErrorKind.RATE_LIMITED, "x").retryable
        assert ProviderError(ProviderErrorKind.NETWORK, "x").retryable
        assert not ProviderError(ProviderErrorKind.AUTH_INVALID, "x").retryable
        assert not ProviderError(ProviderErrorKind.MALFORMED_RESPONSE, "x").retryable

    @pytest.mark.asyncio
    async def test_http_error_status_raised(self):
        adapter = _adapter(OpenAICompatAdapter)
        response = httpx.Response(429, text="slow down")
        with patch("httpx.AsyncClient.post", new=AsyncMock(return_value=response)):
            with pytest.raises(ProviderError) as exc:
                await adapter._post_json("/v1/chat/completions", {})
        assert exc.value.kind is ProviderErrorKind.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_transport_error_is_network(self):
        adapter = _adapter(OpenAICompatAdapter)
        with patch("httpx.AsyncClient.post", new=AsyncMock(side_effect=httpx.ConnectError("refused"))):
            with pytest.raises(ProviderError) as exc:
                await adapter._post_json("/v1/chat/completions", {})
        assert exc.value.kind is ProviderErrorKind.NETWORK

    @pytest.mark.asyncio
    async def test_undecodable_body_is_malformed(self):
        adapter = _adapter(OpenAICompatAdapter)
        response = httpx.Response(200, content=b"<html>oops</html>")
        with patch("httpx.AsyncClient.post", new=AsyncMock(return_value=response)):
            with pytest.raises(ProviderError) as exc:
                await adapter._post_json("/v1/chat/completions", {})
        assert exc.value.kind is ProviderErrorKind.MALFORMED_RESPONSE


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_failure_retried_then_succeeds(self):
        adapter = _adapter(OpenAICompatAdapter)
        reply = {"choices": [{"message": {"content": "hi"}}]}
        post = AsyncMock(side_effect=[ProviderError(ProviderErrorKind.NETWORK, "reset"), reply])
        with patch.object(adapter, "_post_json", new=post):
            result = await adapter.complete([Message.user("hi")], [], MODEL)
        assert result == FinalMessage(text="hi")
        assert post.await_count == 2

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self):
        adapter = _adapter(OpenAICompatAdapter, retry_attempts=3)
        post = AsyncMock(side_effect=ProviderError(ProviderErrorKind.RATE_LIMITED, "429"))
        with patch.object(adapter, "_post_json", new=post):
            result = await adapter.complete([Message.user("hi")], [], MODEL)
        assert isinstance(result, Failure)
        assert result.kind is ProviderErrorKind.RATE_LIMITED
        assert post.await_count == 3

    @pytest.mark.asyncio
    async def test_auth_failure_not_retried(self):
        adapter = _adapter(OpenAICompatAdapter)
        post = AsyncMock(side_effect=ProviderError(ProviderErrorKind.AUTH_INVALID, "401"))
        with patch.object(adapter, "_post_json", new=post):
            result = await adapter.complete([Message.user("hi")], [], MODEL)
        assert result.kind is ProviderErrorKind.AUTH_INVALID
        assert post.await_count == 1

    @pytest.mark.asyncio
    async def test_cancelled_token_aborts_before_request(self):
        adapter = _adapter(OpenAICompatAdapter)
        token = CancelToken()
        token.cancel("Task interrupted by user")
        post = AsyncMock()
        with patch.object(adapter, "_post_json", new=post):
            with pytest.raises(OperationCancelled):
                await adapter.complete([Message.user("hi")], [], MODEL, cancel=token)
        post.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_during_backoff_aborts_promptly(self):
        adapter = _adapter(OpenAICompatAdapter, retry_attempts=10, retry_min_wait=30, retry_max_wait=30)
        token = CancelToken()
        post = AsyncMock(side_effect=ProviderError(ProviderErrorKind.NETWORK, "connection reset"))
        loop = asyncio.get_running_loop()
        loop.call_later(0.1, token.cancel, "Task interrupted by user")
        started = loop.time()
        with patch.object(adapter, "_post_json", new=post):
            with pytest.raises(OperationCancelled) as exc:
                await adapter.complete([Message.user("hi")], [], MODEL, cancel=token)
        assert loop.time() - started < 2
        assert exc.value.reason == "Task interrupted by user"


class TestOpenAICompat:
    def test_parse_tool_arguments(self):
        assert parse_tool_arguments('{"a": 1}') == ({"a": 1}, "")
        assert parse_tool_arguments({"a": 1}) == ({"a": 1}, "")
        assert parse_tool_arguments("") == ({}, "")
        args, err = parse_tool_arguments("{not json")
        assert args == {} and "JSON parse error" in err
        args, err = parse_tool_arguments("[1, 2]")
        assert "JSON object" in err

    def test_serialize_messages(self):
        wire = _adapter(OpenAICompatAdapter).serialize_messages(_conversation())
        assert wire[0] == {"role": "system", "content": "be helpful"}
        assert wire[2]["tool_calls"][0]["function"] == {"name": "glob_files",
                                                         "arguments": json.dumps({"pattern": "*.py"})}
        assert wire[3] == {"role": "tool", "tool_call_id": "c1", "content": "a.py"}

    def test_serialize_tools(self):
        [tool] = _adapter(OpenAICompatAdapter).serialize_tools(TOOLS)
        assert tool["type"] == "function"
        assert tool["function"]["parameters"]["required"] == ["pattern"]

    def test_parse_tool_call_response(self):
        data = {"choices": [{"message": {"content": None, "tool_calls": [
            {"id": "x1", "function": {"name": "glob_files", "arguments": '{"pattern": "*"}'}},
            {"function": {"name": "read_file", "arguments": "{broken"}},
        ]}}]}
        result = _adapter(OpenAICompatAdapter).parse_response(data)
        assert isinstance(result, ToolCallRequest)
        assert result.calls[0] == ToolCall(id="x1", name="glob_files", arguments={"pattern": "*"})
        assert result.calls[1].id == "call_1"
        assert result.calls[1].argument_error

    def test_missing_choices_malformed(self):
        with pytest.raises(ProviderError) as exc:
            _adapter(OpenAICompatAdapter).parse_response({"error": "nope"})
        assert exc.value.kind is ProviderErrorKind.MALFORMED_RESPONSE

    @pytest.mark.asyncio
    async def test_request_payload(self):
        adapter = _adapter(OpenAICompatAdapter)
        post = AsyncMock(return_value={"choices": [{"message": {"content": "ok"}}]})
        with patch.object(adapter, "_post_json", new=post):
            await adapter.complete(_conversation(), TOOLS, MODEL)
        path, payload = post.await_args.args[:2]
        assert path == "/v1/chat/completions"
        assert payload["model"] == "model-1"
        assert payload["tool_choice"] == "auto"
        assert post.await_args.kwargs["headers"] == {"Authorization": "Bearer k"}


class TestAnthropic:
    def test_system_prompt_hoisted(self):
        adapter = _adapter(AnthropicAdapter)
        conversation = _conversation()
        assert adapter.system_prompt(conversation) == "be helpful"
        assert all(m["role"] != "system" for m in adapter.serialize_messages(conversation))

    def test_tool_blocks(self):
        wire = _adapter(AnthropicAdapter).serialize_messages(_conversation())
        assert [m["role"] for m in wire] == ["user", "assistant", "user"]
        assert wire[1]["content"][0] == {"type": "text", "text": "looking"}
        assert wire[1]["content"][1] == {"type": "tool_use", "id": "c1", "name": "glob_files",
                                         "input": {"pattern": "*.py"}}
        results = wire[2]["content"]
        assert [b["tool_use_id"] for b in results] == ["c1", "c2"]
        assert results[1]["is_error"] is True
        assert "is_error" not in results[0]

    def test_empty_assistant_turn_skipped(self):
        conversation = [Message.user("first"), Message.assistant(""), Message.user("second")]
        wire = _adapter(AnthropicAdapter).serialize_messages(conversation)
        assert wire == [{"role": "user", "content": "first"}, {"role": "user", "content": "second"}]
        assert all(m["content"] for m in wire)

    def test_empty_text_with_tool_calls_kept(self):
        call = ToolCall(id="c1", name="glob_files", arguments={"pattern": "*"})
        wire = _adapter(AnthropicAdapter).serialize_messages(
            [Message.user("go"), Message.assistant("", [call]), Message.tool_result(call, "x.py")])
        assert [m["role"] for m in wire] == ["user", "assistant", "user"]
        assert wire[1]["content"] == [{"type": "tool_use", "id": "c1", "name": "glob_files",
                                       "input": {"pattern": "*"}}]

    def test_serialize_tools(self):
        [tool] = _adapter(AnthropicAdapter).serialize_tools(TOOLS)
        assert tool["input_schema"]["properties"]["pattern"]["type"] == "string"

    def test_parse_tool_use(self):
        data = {"stop_reason": "tool_use", "content": [
            {"type": "text", "text": "Let me look."},
            {"type": "tool_use", "id": "tu1", "name": "glob_files", "input": {"pattern": "*"}},
        ]}
        result = _adapter(AnthropicAdapter).parse_response(data)
        assert result == ToolCallRequest(
            calls=[ToolCall(id="tu1", name="glob_files", arguments={"pattern": "*"})], text="Let me look.")

    def test_parse_final_text(self):
        data = {"stop_reason": "end_turn", "content": [{"type": "text", "text": "All done."}]}
        assert _adapter(AnthropicAdapter).parse_response(data) == FinalMessage(text="All done.")

    def test_tool_use_without_blocks_unsupported(self):
        data = {"stop_reason": "tool_use", "content": [{"type": "text", "text": "hmm"}]}
        with pytest.raises(ProviderError) as exc:
            _adapter(AnthropicAdapter).parse_response(data)
        assert exc.value.kind is ProviderErrorKind.UNSUPPORTED_TOOL_CALL

    def test_non_object_input_becomes_argument_error(self):
        data = {"content": [{"type": "tool_use", "id": "t", "name": "glob_files", "input": "*.py"}]}
        [call] = _adapter(AnthropicAdapter).parse_response(data).calls
        assert call.argument_error

    @pytest.mark.asyncio
    async def test_missing_key_is_auth_failure(self):
        adapter = _adapter(AnthropicAdapter, api_key="")
        result = await adapter.complete([Message.user("hi")], [], MODEL)
        assert isinstance(result, Failure)
        assert result.kind is ProviderErrorKind.AUTH_INVALID

    @pytest.mark.asyncio
    async def test_request_payload(self):
        adapter = _adapter(AnthropicAdapter)
        post = AsyncMock(return_value={"content": [{"type": "text", "text": "ok"}]})
        with patch.object(adapter, "_post_json", new=post):
            await adapter.complete(_conversation(), TOOLS, MODEL)
        path, payload = post.await_args.args[:2]
        headers = post.await_args.kwargs["headers"]
        assert path == "/v1/messages"
        assert payload["system"] == "be helpful"
        assert payload["max_tokens"] == 123
        assert payload["tools"][0]["name"] == "glob_files"
        assert headers["x-api-key"] == "k"
        assert headers["anthropic-version"] == "2023-06-01"


class TestOllama:
    def test_serialize_messages(self):
        wire = _adapter(OllamaAdapter).serialize_messages(_conversation())
        assert wire[2]["tool_calls"][0] == {"function": {"name": "glob_files", "arguments": {"pattern": "*.py"}}}
        assert wire[3] == {"role": "tool", "content": "a.py", "tool_name": "glob_files"}

    def test_generates_call_ids(self):
        data = {"message": {"content": "", "tool_calls": [
            {"function": {"name": "glob_files", "arguments": {"pattern": "*"}}},
            {"function": {"name": "glob_files", "arguments": {"pattern": "*.md"}}},
        ]}}
        result = _adapter(OllamaAdapter).parse_response(data)
        ids = [c.id for c in result.calls]
        assert all(ids) and len(set(ids)) == 2

    def test_missing_message_malformed(self):
        with pytest.raises(ProviderError):
            _adapter(OllamaAdapter).parse_response({"done": True})

    @pytest.mark.asyncio
    async def test_request_payload(self):
        adapter = _adapter(OllamaAdapter)
        post = AsyncMock(return_value={"message": {"content": "ok"}})
        with patch.object(adapter, "_post_json", new=post):
            result = await adapter.complete([Message.user("hi")], TOOLS, MODEL)
        assert result == FinalMessage(text="ok")
        path, payload = post.await_args.args[:2]
        assert path == "/api/chat"
        assert payload["stream"] is False
        assert payload["options"] == {"num_predict": 123, "temperature": 0.1}

    @pytest.mark.asyncio
    async def test_discover_models(self):
        adapter = _adapter(OllamaAdapter)
        get = AsyncMock(return_value={"models": [{"name": "qwen:latest"}, {"name": "llama3.2:3b"}]})
        with patch.object(adapter, "_get_json", new=get):
            assert await adapter.discover_models() == ["qwen", "llama3.2:3b"]
