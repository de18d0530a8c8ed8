"""
Settings — loads settings.yaml and provides validated configuration.

The settings file is the single source of truth for user-configurable values:
service name and logging, the web listener, inference providers, the
published model catalog, agent loop limits, retry policy and search limits.

Usage:
    from settings import get_settings
    settings = get_settings()
    print(settings.system.name)
"""

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

# ── Settings Path Resolution ──
_PROJECT_ROOT = Path(__file__).parent.parent
_DEFAULT_SETTINGS_PATH = _PROJECT_ROOT / "settings.yaml"


# ── Dataclasses ──

@dataclass
class SystemConfig:
    name: str = "kestrel"
    log_level: str = "INFO"
    log_format: str = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
    forward_log_level: str = "WARNING"  # records at or above this become log_message events


@dataclass
class WebConfig:
    host: str = "127.0.0.1"
    port: int = 8765
    cors_origins: list[str] = field(default_factory=lambda: [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ])


@dataclass
class ProviderConfig:
    name: str = "anthropic"
    type: str = "anthropic"  # anthropic | openai | ollama
    endpoint: str = "https://api.anthropic.com"
    api_key_env: str = ""
    enabled: bool = True
    timeout: float = 300


@dataclass
class ModelEntry:
    name: str = ""
    id: str = ""
    description: str = ""
    provider: str = "anthropic"
    supports_agent: bool = True
    max_tokens: int = 4096
    temperature: float = 0.25


@dataclass
class AgentConfig:
    working_directory: str = "."
    max_tool_rounds: int = 25
    tool_timeout_ceiling: float = 600
    command_timeout: float = 120
    registry_grace_seconds: float = 3.0
    interrupt_deadline: float = 5.0


@dataclass
class RetryConfig:
    attempts: int = 3
    min_wait: float = 1.0
    max_wait: float = 20.0


@dataclass
class SearchConfig:
    max_workers: int = 8
    max_file_bytes: int = 1_000_000
    max_results: int = 500


def _default_providers() -> list[ProviderConfig]:
    return [ProviderConfig(name="anthropic", type="anthropic",
                           endpoint="https://api.anthropic.com",
                           api_key_env="ANTHROPIC_API_KEY")]


def _default_models() -> list[ModelEntry]:
    return [ModelEntry(
        name="Claude 3.7 Sonnet",
        id="claude-3-7-sonnet-20250219",
        description="Hosted model with tool calling",
        provider="anthropic",
        supports_agent=True,
    )]


@dataclass
class Settings:
    system: SystemConfig = field(default_factory=SystemConfig)
    web: WebConfig = field(default_factory=WebConfig)
    providers: list[ProviderConfig] = field(default_factory=_default_providers)
    models: list[ModelEntry] = field(default_factory=_default_models)
    agent: AgentConfig = field(default_factory=AgentConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    search: SearchConfig = field(default_factory=SearchConfig)

    def get_provider(self, name: str) -> Optional[ProviderConfig]:
        """Get a provider config by name."""
        for p in self.providers:
            if p.name == name:
                return p
        return None

    def working_root(self) -> Path:
        """Resolve the agent working directory relative to the project root."""
        root = Path(self.agent.working_directory).expanduser()
        if not root.is_absolute():
            root = _PROJECT_ROOT / root
        return root.resolve()


# ── Parsing ──

def _parse_dict(data: dict, cls, **overrides):
    """Create a dataclass instance from a dict, ignoring unknown keys."""
    field_names = {f.name for f in dataclasses.fields(cls)}
    filtered = {k: v for k, v in data.items() if k in field_names}
    filtered.update(overrides)
    return cls(**filtered)


def _parse_list(items, cls) -> list:
    if not isinstance(items, list):
        return []
    return [_parse_dict(item, cls) for item in items if isinstance(item, dict)]


def _load_settings_from_dict(raw: dict) -> Settings:
    """Parse a raw YAML dict into a Settings dataclass."""
    settings = Settings()

    sections = {
        "system": SystemConfig,
        "web": WebConfig,
        "agent": AgentConfig,
        "retry": RetryConfig,
        "search": SearchConfig,
    }
    for key, cls in sections.items():
        if key in raw and isinstance(raw[key], dict):
            setattr(settings, key, _parse_dict(raw[key], cls))

    if "providers" in raw:
        providers = _parse_list(raw["providers"], ProviderConfig)
        if providers:
            settings.providers = providers

    if "models" in raw:
        models = _parse_list(raw["models"], ModelEntry)
        if models:
            settings.models = models

    unknown = [m.name or m.id for m in settings.models if settings.get_provider(m.provider) is None]
    if unknown:
        logger.warning("Models reference unknown providers: %s", ", ".join(unknown))

    return settings


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load settings from YAML file.

    Falls back to defaults if the file doesn't exist or is malformed.
    """
    if path is None:
        env_path = os.environ.get("KESTREL_SETTINGS_PATH")
        path = Path(env_path) if env_path else _DEFAULT_SETTINGS_PATH

    if not path.exists():
        logger.warning("No settings file at %s; using defaults", path)
        return Settings()

    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        logger.error("Malformed settings file %s: %s", path, e)
        return Settings()

    if not isinstance(raw, dict):
        logger.error("Settings file %s is not a mapping; using defaults", path)
        return Settings()

    settings = _load_settings_from_dict(raw)
    logger.info("Settings loaded from %s (%d models, %d providers)",
                path, len(settings.models), len(settings.providers))
    return settings


# ── Singleton ──

_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the cached settings, loading from disk on first call."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reload_settings() -> Settings:
    """Force re-read of settings from disk."""
    global _settings
    _settings = load_settings()
    return _settings
