"""
Parallel, ignore-aware directory traversal.

Each directory is scanned by one job on a thread pool; files are yielded as
soon as their directory finishes, so output order follows completion, not
path order. Every .gitignore met on the way down applies to its own subtree.
Unreadable directories are yielded as error items and do not stop the walk.
"""

import logging
import os
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Sequence

import pathspec

from orchestration.cancellation import CancelToken

logger = logging.getLogger(__name__)

ALWAYS_SKIP_DIRS = {".git", ".hg", ".svn"}


@dataclass
class WalkItem:
    path: Path
    rel_path: str
    error: Optional[str] = None


@dataclass
class _IgnoreLayer:
    base: str  # relative dir ("" for root) the patterns are anchored to
    spec: pathspec.GitIgnoreSpec


def _compile(patterns: Sequence[str]) -> Optional[pathspec.GitIgnoreSpec]:
    patterns = [p for p in patterns if p and p.strip()]
    if not patterns:
        return None
    return pathspec.GitIgnoreSpec.from_lines(patterns)


def _load_gitignore(directory: Path) -> Optional[pathspec.GitIgnoreSpec]:
    gitignore = directory / ".gitignore"
    try:
        if not gitignore.is_file():
            return None
        with open(gitignore, "r", encoding="utf-8", errors="replace") as f:
            return pathspec.GitIgnoreSpec.from_lines(f)
    except OSError as e:
        logger.debug("Failed to read %s: %s", gitignore, e)
        return None


def _is_ignored(rel_path: str, is_dir: bool, layers: Sequence[_IgnoreLayer]) -> bool:
    for layer in layers:
        if layer.base:
            if not rel_path.startswith(layer.base + "/"):
                continue
            local = rel_path[len(layer.base) + 1:]
        else:
            local = rel_path
        if layer.spec.match_file(local + "/" if is_dir else local):
            return True
    return False


def _scan(directory: Path, rel_dir: str, layers: tuple, exclude) -> tuple:
    """Scan one directory. Returns (files, subdirs, layers, error)."""
    spec = _load_gitignore(directory)
    if spec is not None:
        layers = layers + (_IgnoreLayer(rel_dir, spec),)
    files, subdirs = [], []
    try:
        with os.scandir(directory) as it:
            entries = list(it)
    except OSError as e:
        return files, subdirs, layers, str(e)
    for entry in entries:
        rel = f"{rel_dir}/{entry.name}" if rel_dir else entry.name
        try:
            is_dir = entry.is_dir(follow_symlinks=False)
        except OSError:
            is_dir = False
        if is_dir and entry.name in ALWAYS_SKIP_DIRS:
            continue
        if _is_ignored(rel, is_dir, layers):
            continue
        if exclude is not None and exclude.match_file(rel + "/" if is_dir else rel):
            continue
        if is_dir:
            subdirs.append((Path(entry.path), rel))
        elif entry.is_file():
            files.append((Path(entry.path), rel))
    return files, subdirs, layers, None


def walk(root, include: Sequence[str] = (), exclude: Sequence[str] = (),
         cancel: Optional[CancelToken] = None, max_workers: int = 8) -> Iterator[WalkItem]:
    """Yield files under root that survive ignore rules and include/exclude globs.

    A file root yields just that file. Each call is an independent pass.
    """
    root = Path(root)
    include_spec = _compile(include)
    exclude_spec = _compile(exclude)

    if root.is_file():
        if include_spec is None or include_spec.match_file(root.name):
            yield WalkItem(path=root, rel_path=root.name)
        return
    if not root.is_dir():
        yield WalkItem(path=root, rel_path="", error="No such directory")
        return

    with ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="walk") as pool:
        pending: dict[Future, tuple[Path, str]] = {
            pool.submit(_scan, root, "", (), exclude_spec): (root, "")
        }
        try:
            while pending:
                if cancel is not None:
                    cancel.raise_if_cancelled()
                done, _ = wait(pending, return_when=FIRST_COMPLETED)
                for fut in done:
                    directory, rel_dir = pending.pop(fut)
                    files, subdirs, layers, error = fut.result()
                    if error:
                        yield WalkItem(path=directory, rel_path=rel_dir, error=error)
                        continue
                    for sub_path, sub_rel in subdirs:
                        pending[pool.submit(_scan, sub_path, sub_rel, layers, exclude_spec)] = (sub_path, sub_rel)
                    for file_path, rel in files:
                        if include_spec is not None and not include_spec.match_file(rel):
                            continue
                        yield WalkItem(path=file_path, rel_path=rel)
        finally:
            for fut in pending:
                fut.cancel()
