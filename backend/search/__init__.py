"""
Search package — code search engine behind the grep, glob, ls and symbol tools.

    walker.py   — parallel, .gitignore-aware traversal
    grep.py     — regex/literal content search (lazy, restartable passes)
    globbing.py — wildcard path matching
    symbols.py  — tree-sitter symbol extraction

Usage:
    from search import search
    pass_ = search(root, r"def \\w+", include=["*.py"])
    report = pass_.collect()
"""

from search.globbing import glob_paths
from search.grep import Match, SearchIssue, SearchPass, SearchReport, compile_pattern, grep
from search.symbols import Symbol, SymbolReport, extract_symbols, find_symbols, language_for
from search.walker import WalkItem, walk

# `search` is the engine-level name for a content search pass.
search = grep

__all__ = [
    "search",
    "grep",
    "glob_paths",
    "compile_pattern",
    "extract_symbols",
    "find_symbols",
    "language_for",
    "walk",
    "Match",
    "SearchIssue",
    "SearchPass",
    "SearchReport",
    "Symbol",
    "SymbolReport",
    "WalkItem",
]
