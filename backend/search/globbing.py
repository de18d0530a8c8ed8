"""Wildcard file matching on top of the ignore-aware walker."""

from typing import Optional

import pathspec

from orchestration.cancellation import CancelToken
from search.walker import walk


def glob_paths(root, pattern: str, cancel: Optional[CancelToken] = None,
               max_workers: int = 8) -> tuple[list[str], int]:
    """Return (sorted relative paths matching pattern, unreadable directory count).

    Patterns use gitignore wildcard rules: "*.py" matches at any depth,
    "src/**/*.rs" is anchored to the root.
    """
    spec = pathspec.GitIgnoreSpec.from_lines([pattern])
    matches, skipped = [], 0
    for item in walk(root, cancel=cancel, max_workers=max_workers):
        if item.error:
            skipped += 1
            continue
        if spec.match_file(item.rel_path):
            matches.append(item.rel_path)
    matches.sort()
    return matches, skipped
