"""
ProviderRouter — builds provider adapters from settings and publishes the
model catalog.

The catalog is the ordered list of models from settings.yaml. Clients select
a model by index into that list; the router resolves the entry to the adapter
of its provider.

Usage:
    from inference import get_router
    router = get_router()
    model = router.model_at(0)
    result = await router.adapter_for(model).complete(conversation, tools, model)
"""

import asyncio
import logging
import os
from typing import Optional

from errors import BackendConnectionError, KestrelError, ProtocolError
from settings import ModelEntry, Settings, get_settings

from inference.anthropic import AnthropicAdapter
from inference.base import ProviderAdapter
from inference.ollama import OllamaAdapter
from inference.openai_compat import OpenAICompatAdapter

logger = logging.getLogger(__name__)

# Map of provider type strings to adapter classes
_ADAPTER_CLASSES: dict[str, type[ProviderAdapter]] = {
    "anthropic": AnthropicAdapter,
    "openai": OpenAICompatAdapter,
    "ollama": OllamaAdapter,
}


class ProviderRouter:
    """Routes model entries to the adapter of their configured provider."""

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings
        self._adapters: dict[str, ProviderAdapter] = {}
        self._models: list[ModelEntry] = []
        self._initialized = False

    def initialize(self):
        """Read settings and set up adapters and the catalog.

        Can be called again after reload_settings() to pick up changes.
        """
        settings = self._settings or get_settings()
        adapters = {}
        for cfg in settings.providers:
            if not cfg.enabled:
                logger.info("Provider %s disabled", cfg.name)
                continue
            cls = _ADAPTER_CLASSES.get(cfg.type)
            if cls is None:
                logger.warning("Unknown provider type %r for %s; skipping", cfg.type, cfg.name)
                continue
            api_key = os.environ.get(cfg.api_key_env, "") if cfg.api_key_env else ""
            adapters[cfg.name] = cls(
                name=cfg.name,
                base_url=cfg.endpoint,
                api_key=api_key,
                default_timeout=cfg.timeout,
                retry_attempts=settings.retry.attempts,
                retry_min_wait=settings.retry.min_wait,
                retry_max_wait=settings.retry.max_wait,
            )
            logger.info("Provider %s (%s) -> %s", cfg.name, cfg.type, cfg.endpoint)
        self._adapters = adapters
        self._models = [m for m in settings.models if m.provider in adapters]
        dropped = len(settings.models) - len(self._models)
        if dropped:
            logger.warning("%d catalog entries skipped: provider missing or disabled", dropped)
        self._initialized = True

    def _ensure(self):
        if not self._initialized:
            self.initialize()

    def register_adapter(self, adapter: ProviderAdapter, models: list[ModelEntry]):
        """Install an adapter and its catalog entries directly (embedding and tests)."""
        self._ensure()
        self._adapters[adapter.name] = adapter
        self._models.extend(models)

    # ── Catalog ──

    def catalog(self) -> list[dict]:
        self._ensure()
        return [
            {"name": m.name or m.id, "id": m.id, "description": m.description,
             "supports_agent": m.supports_agent}
            for m in self._models
        ]

    def model_at(self, index) -> ModelEntry:
        self._ensure()
        if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < len(self._models):
            raise ProtocolError(
                ProtocolError.INVALID_PARAMS,
                f"model_index {index!r} out of range (0..{len(self._models) - 1})",
            )
        return self._models[index]

    def adapter_for(self, model: ModelEntry) -> ProviderAdapter:
        self._ensure()
        adapter = self._adapters.get(model.provider)
        if adapter is None:
            raise BackendConnectionError(f"No provider configured for {model.provider!r}")
        return adapter

    # ── Health ──

    async def check_reachability(self) -> dict[str, dict]:
        """Check every adapter's endpoint. Returns {provider: {type, endpoint, reachable, error?}}."""
        self._ensure()

        async def _check(adapter: ProviderAdapter) -> dict:
            info = {"type": adapter.type_name, "endpoint": adapter.base_url}
            try:
                models = await adapter.discover_models()
                info["reachable"] = True
                info["models"] = len(models)
            except KestrelError as e:
                info["reachable"] = False
                info["error"] = str(e)
            return info

        names = list(self._adapters)
        results = await asyncio.gather(*(_check(self._adapters[n]) for n in names))
        return dict(zip(names, results))


_router: Optional[ProviderRouter] = None


def get_router() -> ProviderRouter:
    """Get or create the singleton ProviderRouter."""
    global _router
    if _router is None:
        _router = ProviderRouter()
        _router.initialize()
    return _router
