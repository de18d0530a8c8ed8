"""
Abstract base class for all provider adapters.

Every adapter (Anthropic, OpenAI-compatible, Ollama) implements the wire
translation for its server and inherits retries, cancellation and error
normalization from here, so the orchestrator can treat them interchangeably.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from errors import ProviderError, ProviderErrorKind
from inference.types import Failure, Message, ProviderResult, ToolSpec
from orchestration.cancellation import CancelToken
from settings import ModelEntry

logger = logging.getLogger(__name__)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


def _log_retry(state: RetryCallState):
    exc = state.outcome.exception() if state.outcome else None
    logger.warning("Provider call failed (attempt %d): %s; retrying",
                   state.attempt_number, exc)


def error_from_status(status_code: int, body: str) -> ProviderError:
    """Map an HTTP status from any provider onto the shared taxonomy."""
    snippet = body[:300]
    if status_code in (401, 403):
        kind = ProviderErrorKind.AUTH_INVALID
    elif status_code in (429, 529):
        kind = ProviderErrorKind.RATE_LIMITED
    elif status_code >= 500:
        kind = ProviderErrorKind.NETWORK
    else:
        kind = ProviderErrorKind.MALFORMED_RESPONSE
    return ProviderError(kind, f"HTTP {status_code}: {snippet}", status_code=status_code)


class ProviderAdapter(ABC):
    """Uniform completion interface over one inference endpoint."""

    type_name = "base"

    def __init__(self, name: str, base_url: str, api_key: str = "",
                 default_timeout: float = 300, retry_attempts: int = 3,
                 retry_min_wait: float = 1.0, retry_max_wait: float = 20.0):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.default_timeout = default_timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_min_wait = retry_min_wait
        self.retry_max_wait = retry_max_wait

    # ── Completion ──

    async def complete(self, conversation: list[Message], tools: list[ToolSpec],
                       model: ModelEntry, cancel: Optional[CancelToken] = None) -> ProviderResult:
        """Run one completion with retries.

        Transient failures (rate limiting, network) are retried with bounded
        exponential backoff; everything else is returned as a Failure at once.
        OperationCancelled propagates to the caller, including from the
        backoff sleep between attempts.
        """
        cancel = cancel or CancelToken()

        async def _sleep(seconds: float):
            await cancel.guard(asyncio.sleep(seconds))

        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_random_exponential(min=self.retry_min_wait, max=self.retry_max_wait),
            sleep=_sleep,
            before_sleep=_log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    cancel.raise_if_cancelled()
                    return await cancel.guard(self._complete_once(conversation, tools, model))
        except ProviderError as e:
            logger.error("[%s] %s failed: %s", self.name, model.id, e)
            return Failure(kind=e.kind, message=str(e))

    async def _post_json(self, path: str, payload: dict, headers: dict = None,
                         timeout: float = None) -> dict:
        """POST JSON and return the decoded body, raising ProviderError on failure."""
        try:
            async with httpx.AsyncClient(timeout=timeout or self.default_timeout) as client:
                resp = await client.post(f"{self.base_url}{path}", json=payload, headers=headers)
        except httpx.TransportError as e:
            raise ProviderError(ProviderErrorKind.NETWORK,
                                f"Cannot reach {self.name} at {self.base_url}: {e}")
        if resp.status_code >= 400:
            raise error_from_status(resp.status_code, resp.text)
        try:
            data = resp.json()
        except json.JSONDecodeError as e:
            raise ProviderError(ProviderErrorKind.MALFORMED_RESPONSE, f"Invalid JSON from {self.name}: {e}")
        if not isinstance(data, dict):
            raise ProviderError(ProviderErrorKind.MALFORMED_RESPONSE,
                                f"Unexpected response type from {self.name}: {type(data).__name__}")
        return data

    async def _get_json(self, path: str, headers: dict = None, timeout: float = 10) -> dict:
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.get(f"{self.base_url}{path}", headers=headers)
        except httpx.TransportError as e:
            raise ProviderError(ProviderErrorKind.NETWORK,
                                f"Cannot reach {self.name} at {self.base_url}: {e}")
        if resp.status_code >= 400:
            raise error_from_status(resp.status_code, resp.text)
        try:
            return resp.json()
        except json.JSONDecodeError as e:
            raise ProviderError(ProviderErrorKind.MALFORMED_RESPONSE, f"Invalid JSON from {self.name}: {e}")

    @abstractmethod
    async def _complete_once(self, conversation: list[Message], tools: list[ToolSpec],
                             model: ModelEntry) -> ProviderResult:
        """Single request/response round trip, raising ProviderError on failure."""
        ...

    # ── Wire translation ──

    @abstractmethod
    def serialize_messages(self, conversation: list[Message]) -> list[dict]:
        ...

    @abstractmethod
    def serialize_tools(self, tools: list[ToolSpec]) -> list[dict]:
        ...

    # ── Discovery ──

    @abstractmethod
    async def discover_models(self) -> list[str]:
        """Return model ids the endpoint reports. Raises ProviderError if unreachable."""
        ...
