"""
Content search over an ignore-filtered file tree.

grep() returns a SearchPass: a lazy iterable of matches. Each iteration walks
the tree afresh, so a pass can be re-run for a new result set. Files are
searched on a thread pool in bounded batches. Unreadable, binary, oversized
and undecodable files are counted as skipped; the reasons are kept per path.
"""

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional, Sequence

from errors import ToolError, ToolErrorKind
from orchestration.cancellation import CancelToken
from search.walker import walk

logger = logging.getLogger(__name__)

_BINARY_SNIFF_BYTES = 8192


@dataclass
class Match:
    path: str
    line_number: int
    line: str


@dataclass
class SearchIssue:
    path: str
    message: str


@dataclass
class SearchReport:
    matches: list = field(default_factory=list)
    errors: list[SearchIssue] = field(default_factory=list)
    skipped: int = 0
    truncated: bool = False


def compile_pattern(pattern: str, literal: bool = False, ignore_case: bool = False) -> re.Pattern:
    flags = re.IGNORECASE if ignore_case else 0
    try:
        return re.compile(re.escape(pattern) if literal else pattern, flags)
    except re.error as e:
        raise ToolError(ToolErrorKind.EXECUTION_FAILURE, f"Invalid regular expression {pattern!r}: {e}")


def read_text(path: Path, max_bytes: int) -> str:
    """Read a text file, raising ValueError for binary or oversized files."""
    size = path.stat().st_size
    if max_bytes and size > max_bytes:
        raise ValueError(f"file too large ({size} bytes)")
    data = path.read_bytes()
    if b"\x00" in data[:_BINARY_SNIFF_BYTES]:
        raise ValueError("binary file")
    return data.decode("utf-8")


def _search_file(path: Path, rel: str, regex: re.Pattern, max_bytes: int):
    try:
        text = read_text(path, max_bytes)
    except (OSError, ValueError) as e:  # UnicodeDecodeError is a ValueError
        return [], str(e)
    hits = []
    for i, line in enumerate(text.splitlines(), start=1):
        if regex.search(line):
            hits.append(Match(path=rel, line_number=i, line=line))
    return hits, None


class SearchPass:
    def __init__(self, root, regex: re.Pattern, include: Sequence[str] = (),
                 exclude: Sequence[str] = (), max_results: Optional[int] = None,
                 cancel: Optional[CancelToken] = None, max_workers: int = 8,
                 max_file_bytes: int = 1_000_000):
        self.root = Path(root)
        self.regex = regex
        self.include = tuple(include)
        self.exclude = tuple(exclude)
        self.max_results = max_results
        self.cancel = cancel
        self.max_workers = max_workers
        self.max_file_bytes = max_file_bytes
        self.errors: list[SearchIssue] = []
        self.skipped = 0
        self.truncated = False

    def __iter__(self) -> Iterator[Match]:
        self.errors = []
        self.skipped = 0
        self.truncated = False
        produced = 0
        batch_size = max(1, self.max_workers) * 4
        items = walk(self.root, self.include, self.exclude, cancel=self.cancel,
                     max_workers=self.max_workers)
        with ThreadPoolExecutor(max_workers=max(1, self.max_workers), thread_name_prefix="grep") as pool:
            try:
                while True:
                    batch = []
                    for item in items:
                        if item.error:
                            self._skip(item.rel_path or str(item.path), item.error)
                            continue
                        batch.append(item)
                        if len(batch) >= batch_size:
                            break
                    if not batch:
                        return
                    futures = [pool.submit(_search_file, it.path, it.rel_path, self.regex, self.max_file_bytes)
                               for it in batch]
                    for it, fut in zip(batch, futures):
                        if self.cancel is not None:
                            self.cancel.raise_if_cancelled()
                        hits, error = fut.result()
                        if error:
                            self._skip(it.rel_path, error)
                            continue
                        for hit in hits:
                            if self.max_results is not None and produced >= self.max_results:
                                self.truncated = True
                                return
                            produced += 1
                            yield hit
            finally:
                items.close()

    def _skip(self, path: str, message: str):
        self.skipped += 1
        self.errors.append(SearchIssue(path=path, message=message))

    def collect(self) -> SearchReport:
        matches = list(self)
        return SearchReport(matches=matches, errors=list(self.errors),
                            skipped=self.skipped, truncated=self.truncated)


def grep(root, pattern: str, literal: bool = False, ignore_case: bool = False,
         include: Sequence[str] = (), exclude: Sequence[str] = (),
         max_results: Optional[int] = None, cancel: Optional[CancelToken] = None,
         max_workers: int = 8, max_file_bytes: int = 1_000_000) -> SearchPass:
    """Build a search pass. The pattern is validated before any traversal."""
    regex = compile_pattern(pattern, literal=literal, ignore_case=ignore_case)
    return SearchPass(root, regex, include=include, exclude=exclude, max_results=max_results,
                      cancel=cancel, max_workers=max_workers, max_file_bytes=max_file_bytes)
