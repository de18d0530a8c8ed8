"""
Test fixtures for the Kestrel backend test suite.
"""

import asyncio
import inspect
import os
import sys
from pathlib import Path

import pytest

# Add backend to path
BACKEND_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(BACKEND_DIR))

# Point settings at the example file before importing anything that reads config
os.environ["KESTREL_SETTINGS_PATH"] = str(BACKEND_DIR.parent / "settings.yaml.example")

from core import AgentCore  # noqa: E402
from errors import ProviderError, ProviderErrorKind  # noqa: E402
from inference import FinalMessage, ProviderAdapter, ProviderRouter  # noqa: E402
from orchestration.events import EventBus  # noqa: E402
from settings import AgentConfig, ModelEntry, SearchConfig, Settings  # noqa: E402


HANG = object()  # script item: block until cancelled


class ScriptedProvider(ProviderAdapter):
    """Adapter that replays a fixed list of results instead of calling a server.

    Script items may be a ProviderResult, an exception to raise, a callable
    taking the conversation, or HANG to block until the call is cancelled.
    """

    type_name = "scripted"

    def __init__(self, script=None, name="scripted", reachable=True, **retry):
        retry.setdefault("retry_attempts", 1)
        super().__init__(name=name, base_url="http://scripted.invalid", **retry)
        self.script = list(script or [])
        self.calls = []
        self.reachable = reachable

    async def _complete_once(self, conversation, tools, model):
        self.calls.append({"conversation": list(conversation), "tools": list(tools), "model": model})
        if not self.script:
            return FinalMessage(text="done")
        item = self.script.pop(0)
        if item is HANG:
            await asyncio.sleep(3600)
        if callable(item) and not isinstance(item, type):
            item = item(conversation)
        if inspect.isawaitable(item):
            item = await item
        if isinstance(item, BaseException):
            raise item
        return item

    def serialize_messages(self, conversation):
        return [{"role": m.role, "content": m.content} for m in conversation]

    def serialize_tools(self, tools):
        return [{"name": t.name} for t in tools]

    async def discover_models(self):
        if not self.reachable:
            raise ProviderError(ProviderErrorKind.NETWORK, "scripted provider offline")
        return ["scripted-model"]


def make_settings(root: Path, **agent) -> Settings:
    """Settings with no configured providers and short limits, rooted at `root`."""
    agent_cfg = dict(
        working_directory=str(root),
        max_tool_rounds=5,
        tool_timeout_ceiling=10,
        command_timeout=10,
        registry_grace_seconds=1.0,
        interrupt_deadline=2.0,
    )
    agent_cfg.update(agent)
    return Settings(
        providers=[],
        models=[],
        agent=AgentConfig(**agent_cfg),
        search=SearchConfig(max_workers=4, max_file_bytes=100_000, max_results=100),
    )


def drain(queue: asyncio.Queue) -> list:
    """Pop everything currently queued."""
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


@pytest.fixture
def workspace(tmp_path):
    """A small project tree with ignored files, a binary file and nested sources."""
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text(
        "import os\n"
        "\n"
        "class Greeter:\n"
        "    def greet(self, name):\n"
        "        return f'hello {name}'\n"
        "\n"
        "def main():\n"
        "    print(Greeter().greet('world'))\n"
    )
    (tmp_path / "src" / "util.js").write_text(
        "function add(a, b) {\n"
        "  return a + b;\n"
        "}\n"
        "class Counter {\n"
        "  increment() { this.n += 1; }\n"
        "}\n"
    )
    (tmp_path / "src" / "nested").mkdir()
    (tmp_path / "src" / "nested" / "deep.py").write_text("def helper():\n    return 'hello again'\n")
    (tmp_path / "README.md").write_text("# Demo\nSay hello to the project.\n")
    (tmp_path / ".gitignore").write_text("build/\n*.log\n")
    (tmp_path / "build").mkdir()
    (tmp_path / "build" / "out.txt").write_text("hello from build\n")
    (tmp_path / "debug.log").write_text("hello log\n")
    (tmp_path / "data.bin").write_bytes(b"\x00\x01hello\x00\x02")
    return tmp_path


@pytest.fixture
def scripted_provider():
    return ScriptedProvider()


@pytest.fixture
def settings(workspace):
    return make_settings(workspace)


@pytest.fixture
def core(settings, scripted_provider):
    """AgentCore wired to the scripted provider: index 0 agent model, index 1 chat-only."""
    router = ProviderRouter(settings)
    router.register_adapter(scripted_provider, [
        ModelEntry(name="Scripted", id="scripted-model", provider="scripted", supports_agent=True),
        ModelEntry(name="Chat only", id="chat-model", provider="scripted", supports_agent=False),
    ])
    return AgentCore(settings=settings, router=router, bus=EventBus())
