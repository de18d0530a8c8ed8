"""
Configuration — centralized constants for the backend.
User-configurable values come from settings.yaml via get_settings().
Protocol limits and internal constants remain as code constants.
"""

from settings import get_settings

VERSION = "0.1.0"

_settings = get_settings()

# ── Web ──
HOST = _settings.web.host
PORT = _settings.web.port

# ── Agent Loop ──
WORKING_ROOT = _settings.working_root()
COMMAND_TIMEOUT = _settings.agent.command_timeout

# ── Search ──
SEARCH_MAX_WORKERS = _settings.search.max_workers
MAX_FILE_BYTES = _settings.search.max_file_bytes
MAX_SEARCH_RESULTS = _settings.search.max_results

# ── Tool limits (code constants — not user config) ──
MAX_COMMAND_TIMEOUT = 600          # seconds, hard cap for a single shell call
MAX_TOOL_OUTPUT_CHARS = 30_000
MAX_VIEW_LINES = 2000

# ── WebSocket ──
WS_MAX_MESSAGE_SIZE = 100_000
WS_MAX_PROMPT_LENGTH = 50_000
