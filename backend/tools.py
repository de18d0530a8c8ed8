"""
Agent Tools — functions the model may call during a task.
Each function has type hints and a docstring; the JSON schema sent to the
provider is generated from them (see build_tool_schemas).

Tool categories:
  - Files: read_file, write_file, edit_file, replace_lines, list_directory
  - Search: glob_files, grep_files, lookup_symbols
  - Shell: run_command

Every tool takes a ToolContext as `ctx` (never exposed to the model), returns a
ToolOutput, and raises ToolError on failure.
"""

import asyncio
import difflib
import fnmatch
import inspect
import logging
import os
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from config import (
    COMMAND_TIMEOUT, MAX_COMMAND_TIMEOUT, MAX_FILE_BYTES, MAX_SEARCH_RESULTS,
    MAX_TOOL_OUTPUT_CHARS, MAX_VIEW_LINES, SEARCH_MAX_WORKERS, WORKING_ROOT,
)
from errors import OperationCancelled, ToolError, ToolErrorKind
from inference.types import ToolSpec
from orchestration.cancellation import CancelToken
from search import find_symbols, glob_paths, grep

logger = logging.getLogger(__name__)


@dataclass
class ToolContext:
    root: Path = WORKING_ROOT
    cancel: CancelToken = field(default_factory=CancelToken)
    command_timeout: float = COMMAND_TIMEOUT
    max_file_bytes: int = MAX_FILE_BYTES
    max_results: int = MAX_SEARCH_RESULTS
    max_workers: int = SEARCH_MAX_WORKERS


@dataclass
class ToolOutput:
    content: str
    message: str = ""
    metadata: dict = field(default_factory=dict)


def _truncate(text: str) -> str:
    if len(text) > MAX_TOOL_OUTPUT_CHARS:
        return text[:MAX_TOOL_OUTPUT_CHARS] + f"\n\n[Truncated — output is {len(text)} chars]"
    return text


def _validate_path(p: Path, root: Path) -> Path:
    """Resolve a path and ensure it's within the working root. Raises ToolError on traversal."""
    resolved = p.resolve()
    if not resolved.is_relative_to(root.resolve()):
        raise ToolError(ToolErrorKind.PERMISSION_DENIED,
                        f"Path traversal blocked: {resolved} is outside {root}")
    return resolved


def _resolve(path: str, ctx: ToolContext) -> Path:
    p = Path(path or ".").expanduser()
    if not p.is_absolute():
        p = ctx.root / p
    return _validate_path(p, ctx.root)


def _rel(p: Path, ctx: ToolContext) -> str:
    try:
        return str(p.relative_to(ctx.root.resolve())) or "."
    except ValueError:
        return str(p)


def _read(p: Path, ctx: ToolContext) -> str:
    if not p.exists():
        raise ToolError(ToolErrorKind.NOT_FOUND, f"File not found: {_rel(p, ctx)}")
    if p.is_dir():
        raise ToolError(ToolErrorKind.EXECUTION_FAILURE, f"{_rel(p, ctx)} is a directory")
    try:
        return p.read_text(encoding="utf-8")
    except PermissionError as e:
        raise ToolError(ToolErrorKind.PERMISSION_DENIED, str(e))
    except (OSError, UnicodeDecodeError) as e:
        raise ToolError(ToolErrorKind.EXECUTION_FAILURE, f"Error reading {_rel(p, ctx)}: {e}")


def _write(p: Path, content: str, ctx: ToolContext):
    try:
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(content, encoding="utf-8")
    except PermissionError as e:
        raise ToolError(ToolErrorKind.PERMISSION_DENIED, str(e))
    except OSError as e:
        raise ToolError(ToolErrorKind.EXECUTION_FAILURE, f"Error writing {_rel(p, ctx)}: {e}")


def _diff(rel: str, before: str, after: str) -> tuple[str, int, int]:
    """Unified diff of a file edit plus its added and removed line counts."""
    lines = list(difflib.unified_diff(before.splitlines(keepends=True), after.splitlines(keepends=True),
                                      fromfile=f"a/{rel}", tofile=f"b/{rel}"))
    additions = sum(1 for ln in lines if ln.startswith("+") and not ln.startswith("+++"))
    removals = sum(1 for ln in lines if ln.startswith("-") and not ln.startswith("---"))
    text = "".join(ln if ln.endswith("\n") else ln + "\n" for ln in lines)
    return text, additions, removals


def _edit_output(summary: str, message: str, rel: str, before: str, after: str, **metadata) -> ToolOutput:
    diff, additions, removals = _diff(rel, before, after)
    return ToolOutput(
        content=_truncate(f"{summary}\n\n{diff}" if diff else f"{summary} (no changes)"),
        message=message,
        metadata={"file_path": rel, "additions": additions, "removals": removals, **metadata},
    )


def _split_globs(value: str) -> list[str]:
    return [g.strip() for g in (value or "").split(",") if g.strip()]


# ── File Operations ──

def read_file(file_path: str, offset: int = 0, limit: int = 0, ctx: ToolContext = None) -> ToolOutput:
    """Read a file from the working directory and return its lines prefixed with line numbers. Use offset and limit to page through large files."""
    ctx = ctx or ToolContext()
    p = _resolve(file_path, ctx)
    lines = _read(p, ctx).splitlines()
    start = max(0, offset)
    count = limit if limit > 0 else MAX_VIEW_LINES
    window = lines[start:start + count]
    body = "\n".join(f"{start + i + 1:6}\t{line}" for i, line in enumerate(window))
    if start + count < len(lines):
        body += f"\n\n[{len(lines) - start - count} more lines — use offset={start + count}]"
    rel = _rel(p, ctx)
    return ToolOutput(
        content=_truncate(body) or "(empty file)",
        message=f"Read {len(window)} lines from {rel}",
        metadata={"file_path": rel, "lines": len(window), "total_lines": len(lines)},
    )


def write_file(file_path: str, content: str, ctx: ToolContext = None) -> ToolOutput:
    """Create or completely replace a file with the given content. Parent directories are created as needed."""
    ctx = ctx or ToolContext()
    p = _resolve(file_path, ctx)
    existed = p.exists()
    before = _read(p, ctx) if existed else ""
    _write(p, content, ctx)
    rel = _rel(p, ctx)
    line_count = len(content.splitlines())
    verb = "Replaced" if existed else "Created"
    return _edit_output(f"{verb} {rel} ({line_count} lines, {len(content)} chars)", f"{verb} {rel}",
                        rel, before, content, lines=line_count, created=not existed)


def edit_file(file_path: str, old_string: str, new_string: str, ctx: ToolContext = None) -> ToolOutput:
    """Replace one exact occurrence of old_string with new_string in a file. old_string must match exactly once, including whitespace; an empty old_string creates a new file containing new_string."""
    ctx = ctx or ToolContext()
    p = _resolve(file_path, ctx)
    rel = _rel(p, ctx)
    if not old_string:
        if p.exists():
            raise ToolError(ToolErrorKind.EXECUTION_FAILURE,
                            f"{rel} already exists; provide old_string to edit it")
        _write(p, new_string, ctx)
        return _edit_output(f"Created {rel}", f"Created {rel}", rel, "", new_string,
                            lines=len(new_string.splitlines()))

    text = _read(p, ctx)
    occurrences = text.count(old_string)
    if occurrences == 0:
        raise ToolError(ToolErrorKind.EXECUTION_FAILURE, f"old_string not found in {rel}")
    if occurrences > 1:
        raise ToolError(ToolErrorKind.EXECUTION_FAILURE,
                        f"old_string occurs {occurrences} times in {rel}; add context to make it unique")
    start_line = text[:text.index(old_string)].count("\n") + 1
    updated = text.replace(old_string, new_string, 1)
    _write(p, updated, ctx)
    return _edit_output(f"Edited {rel} at line {start_line}", f"Edited {rel}", rel, text, updated,
                        lines=len(new_string.splitlines()), start_line=start_line)


def replace_lines(file_path: str, start_line: int, end_line: int, new_text: str,
                  ctx: ToolContext = None) -> ToolOutput:
    """Replace lines start_line..end_line (1-based, inclusive) of a file with new_text. Use an empty new_text to delete the range."""
    ctx = ctx or ToolContext()
    p = _resolve(file_path, ctx)
    rel = _rel(p, ctx)
    text = _read(p, ctx)
    lines = text.splitlines(keepends=True)
    if start_line < 1 or end_line < start_line or end_line > len(lines):
        raise ToolError(ToolErrorKind.EXECUTION_FAILURE,
                        f"Invalid range {start_line}-{end_line} for {rel} ({len(lines)} lines)")
    replacement = new_text
    if replacement and not replacement.endswith("\n"):
        replacement += "\n"
    updated = "".join(lines[:start_line - 1]) + replacement + "".join(lines[end_line:])
    _write(p, updated, ctx)
    return _edit_output(f"Replaced lines {start_line}-{end_line} of {rel}", f"Edited {rel}", rel, text, updated,
                        lines=len(replacement.splitlines()), start_line=start_line, end_line=end_line)


def list_directory(path: str = "", ignore: str = "", ctx: ToolContext = None) -> ToolOutput:
    """List files and directories at the given path. ignore is an optional comma-separated list of glob patterns to hide."""
    ctx = ctx or ToolContext()
    p = _resolve(path, ctx)
    rel = _rel(p, ctx)
    if not p.exists():
        raise ToolError(ToolErrorKind.NOT_FOUND, f"Path not found: {rel}")
    if not p.is_dir():
        raise ToolError(ToolErrorKind.EXECUTION_FAILURE, f"Not a directory: {rel}")
    patterns = _split_globs(ignore)
    try:
        entries = sorted(p.iterdir(), key=lambda e: (not e.is_dir(), e.name))
    except PermissionError as e:
        raise ToolError(ToolErrorKind.PERMISSION_DENIED, str(e))
    lines = []
    for e in entries:
        if any(fnmatch.fnmatch(e.name, pat) for pat in patterns):
            continue
        if e.is_dir():
            lines.append(f"  {e.name}/")
        else:
            try:
                lines.append(f"  {e.name}  ({e.stat().st_size}B)")
            except OSError:
                lines.append(f"  {e.name}")
    body = f"{rel}/\n" + "\n".join(lines) if lines else f"{rel}/ (empty)"
    return ToolOutput(content=_truncate(body), message=f"Listed {len(lines)} entries in {rel}",
                      metadata={"file_path": rel, "count": len(lines)})


# ── Search ──

def glob_files(pattern: str, path: str = "", ctx: ToolContext = None) -> ToolOutput:
    """Find files by wildcard pattern such as '**/*.py' or 'src/*.rs'. Files excluded by .gitignore are skipped. Returns matching paths relative to the search directory."""
    ctx = ctx or ToolContext()
    p = _resolve(path, ctx)
    if not p.exists():
        raise ToolError(ToolErrorKind.NOT_FOUND, f"Path not found: {_rel(p, ctx)}")
    matches, skipped = glob_paths(p, pattern, cancel=ctx.cancel, max_workers=ctx.max_workers)
    shown = matches[:ctx.max_results]
    body = "\n".join(shown) if shown else f"No files match {pattern}"
    if len(matches) > len(shown):
        body += f"\n\n[{len(matches) - len(shown)} more matches not shown]"
    return ToolOutput(
        content=body,
        message=f"Found {len(matches)} files matching {pattern}",
        metadata={"pattern": pattern, "count": len(matches), "matches": shown, "skipped": skipped},
    )


def grep_files(pattern: str, path: str = "", include: str = "", literal: bool = False,
               ctx: ToolContext = None) -> ToolOutput:
    """Search file contents with a regular expression (or a literal string when literal is true). include is an optional comma-separated list of file globs like '*.py,*.toml'. Returns path:line: text for each matching line."""
    ctx = ctx or ToolContext()
    p = _resolve(path, ctx)
    if not p.exists():
        raise ToolError(ToolErrorKind.NOT_FOUND, f"Path not found: {_rel(p, ctx)}")
    report = grep(p, pattern, literal=literal, include=_split_globs(include),
                  max_results=ctx.max_results, cancel=ctx.cancel,
                  max_workers=ctx.max_workers, max_file_bytes=ctx.max_file_bytes).collect()
    matches = sorted(report.matches, key=lambda m: (m.path, m.line_number))
    body = "\n".join(f"{m.path}:{m.line_number}: {m.line.strip()[:300]}" for m in matches)
    if not body:
        body = f"No matches for {pattern}"
    if report.truncated:
        body += f"\n\n[Results truncated at {ctx.max_results} matches]"
    if report.skipped:
        body += f"\n[{report.skipped} files skipped]"
    return ToolOutput(
        content=_truncate(body),
        message=f"Found {len(matches)} matches for {pattern}",
        metadata={"pattern": pattern, "count": len(matches), "skipped": report.skipped,
                  "files": len({m.path for m in matches})},
    )


def lookup_symbols(path: str = "", name: str = "", kind: str = "", ctx: ToolContext = None) -> ToolOutput:
    """List functions, classes, methods and other definitions found by parsing source files under path (a file or directory). Filter by a name substring and/or a kind such as 'function', 'class' or 'method'. Supports Python, JavaScript, TypeScript, Rust, Go, Java, C, C++ and Ruby."""
    ctx = ctx or ToolContext()
    p = _resolve(path, ctx)
    if not p.exists():
        raise ToolError(ToolErrorKind.NOT_FOUND, f"Path not found: {_rel(p, ctx)}")
    report = find_symbols(p, name=name or None, kind=kind or None, cancel=ctx.cancel,
                          max_workers=ctx.max_workers, max_file_bytes=ctx.max_file_bytes)
    symbols = sorted(report.symbols, key=lambda s: (s.path, s.start_line))
    body = "\n".join(f"{s.path}:{s.start_line}-{s.end_line} {s.kind} {s.name}"
                     for s in symbols[:ctx.max_results])
    if not body:
        body = "No symbols found"
    if len(symbols) > ctx.max_results:
        body += f"\n\n[{len(symbols) - ctx.max_results} more symbols not shown]"
    if report.errors:
        body += "\n" + "\n".join(f"[skipped {e.path}: {e.message}]" for e in report.errors[:20])
    return ToolOutput(
        content=_truncate(body),
        message=f"Found {len(symbols)} symbols in {report.files} files",
        metadata={"file_path": _rel(p, ctx), "count": len(symbols), "files": report.files,
                  "skipped": report.skipped,
                  "symbols": [s.to_dict() for s in symbols[:ctx.max_results]]},
    )


# ── Shell ──

def _kill_group(proc: asyncio.subprocess.Process):
    if proc.returncode is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


async def run_command(command: str, timeout: int = 0, ctx: ToolContext = None) -> ToolOutput:
    """Execute a bash command in the working directory and return stdout and stderr. timeout is in milliseconds (default from settings, max 600000)."""
    ctx = ctx or ToolContext()
    if not command or not command.strip():
        raise ToolError(ToolErrorKind.EXECUTION_FAILURE, "Empty command")
    limit = min(timeout / 1000 if timeout and timeout > 0 else ctx.command_timeout, MAX_COMMAND_TIMEOUT)
    ctx.cancel.raise_if_cancelled()
    try:
        proc = await asyncio.create_subprocess_exec(
            "bash", "-c", command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(ctx.root),
            start_new_session=True,
        )
    except FileNotFoundError as e:
        raise ToolError(ToolErrorKind.NOT_FOUND, f"bash not available: {e}")

    kill = lambda: _kill_group(proc)  # noqa: E731
    ctx.cancel.add_callback(kill)
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=limit)
    except asyncio.TimeoutError:
        _kill_group(proc)
        await proc.wait()
        raise ToolError(ToolErrorKind.TIMEOUT, f"Command timed out after {limit:g}s")
    except asyncio.CancelledError:
        _kill_group(proc)
        await proc.wait()
        raise
    finally:
        ctx.cancel.remove_callback(kill)

    if ctx.cancel.cancelled:
        raise OperationCancelled(ctx.cancel.reason)
    output = stdout.decode("utf-8", errors="replace")
    if stderr:
        output += ("\n" if output else "") + stderr.decode("utf-8", errors="replace")
    if proc.returncode != 0:
        output += f"\n[exit code {proc.returncode}]"
    return ToolOutput(
        content=_truncate(output.strip()) or "(no output)",
        message=f"Command exited with code {proc.returncode}",
        metadata={"description": command[:200], "exit_code": proc.returncode},
    )


# ── Registry ──

_PARAM_DOCS = {
    "file_path": "Path of the file, absolute or relative to the working directory",
    "path": "File or directory to operate on, relative to the working directory (default: the working directory)",
    "offset": "Line number to start reading from, 0-based (optional)",
    "limit": "Number of lines to read (optional)",
    "content": "The full content to write",
    "old_string": "The exact text to replace (must be unique within the file)",
    "new_string": "The text to replace it with",
    "start_line": "First line of the range to replace, 1-based",
    "end_line": "Last line of the range to replace, inclusive",
    "new_text": "Replacement text for the range",
    "ignore": "Comma-separated glob patterns to hide (optional)",
    "pattern": "The pattern to match",
    "include": "Comma-separated file globs to search, e.g. '*.py,*.toml' (optional)",
    "literal": "Treat the pattern as a literal string instead of a regular expression",
    "name": "Substring of the symbol name to look for (optional)",
    "kind": "Symbol kind filter such as function, class or method (optional)",
    "command": "The bash command to execute",
    "timeout": "Timeout in milliseconds (optional, max 600000)",
}


def build_tool_schemas(tools: list) -> list[ToolSpec]:
    """Convert tool functions to provider-neutral tool specs."""
    specs = []
    for fn in tools:
        sig = inspect.signature(fn)
        params = {}
        required = []
        for name, param in sig.parameters.items():
            if name == "ctx":
                continue
            hint = param.annotation
            ptype = "string"
            if hint == int:
                ptype = "integer"
            elif hint == float:
                ptype = "number"
            elif hint == bool:
                ptype = "boolean"
            params[name] = {"type": ptype, "description": _PARAM_DOCS.get(name, f"The {name} parameter")}
            if param.default is inspect.Parameter.empty:
                required.append(name)
        specs.append(ToolSpec(
            name=fn.__name__,
            description=(fn.__doc__ or "").strip(),
            parameters={"type": "object", "properties": params, "required": required},
        ))
    return specs


def get_all_tools() -> list:
    """Return every tool function exposed to the model."""
    return [
        read_file,
        write_file,
        edit_file,
        replace_lines,
        list_directory,
        glob_files,
        grep_files,
        lookup_symbols,
        run_command,
    ]


def describe_call(name: str, arguments: dict) -> tuple[str, dict]:
    """Human-readable start message and initial metadata for a tool call."""
    target = arguments.get("file_path") or arguments.get("path") or ""
    metadata = {}
    if target:
        metadata["file_path"] = target
    if "pattern" in arguments:
        metadata["pattern"] = arguments["pattern"]
    if name == "run_command":
        metadata["description"] = str(arguments.get("command", ""))[:200]
        return f"Running: {metadata['description']}", metadata
    if name == "read_file":
        return f"Reading file: {target}", metadata
    if name in ("write_file", "edit_file", "replace_lines"):
        return f"Editing file: {target}", metadata
    if "pattern" in arguments:
        return f"Searching for {arguments['pattern']}", metadata
    return f"Running {name}" + (f" on {target}" if target else ""), metadata


def check_arguments(fn, arguments: dict) -> Optional[str]:
    """Return an error string if arguments don't fit fn's signature, else None."""
    sig = inspect.signature(fn)
    allowed = {n for n in sig.parameters if n != "ctx"}
    unknown = set(arguments) - allowed
    if unknown:
        return f"Unknown arguments for {fn.__name__}: {', '.join(sorted(unknown))}"
    missing = [n for n, p in sig.parameters.items()
               if n != "ctx" and p.default is inspect.Parameter.empty and n not in arguments]
    if missing:
        return f"Missing required arguments for {fn.__name__}: {', '.join(missing)}"
    return None
