"""
AST symbol extraction with tree-sitter.

Each supported language maps grammar node types to a symbol kind. Extraction
walks the whole tree and returns a flat list of (name, kind, line range).
Files whose extension has no grammar are skipped, not errored.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from tree_sitter import Parser
from tree_sitter_language_pack import get_language

from orchestration.cancellation import CancelToken
from search.grep import SearchIssue, read_text
from search.walker import walk

logger = logging.getLogger(__name__)

EXTENSION_LANGUAGES = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".rs": "rust",
    ".go": "go",
    ".java": "java",
    ".c": "c",
    ".h": "c",
    ".cc": "cpp",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".rb": "ruby",
}

_JS_KINDS = {
    "function_declaration": "function",
    "generator_function_declaration": "function",
    "class_declaration": "class",
    "method_definition": "method",
}

NODE_KINDS: dict[str, dict[str, str]] = {
    "python": {
        "function_definition": "function",
        "class_definition": "class",
    },
    "javascript": _JS_KINDS,
    "typescript": {
        **_JS_KINDS,
        "interface_declaration": "interface",
        "type_alias_declaration": "type",
        "enum_declaration": "enum",
        "abstract_class_declaration": "class",
    },
    "rust": {
        "function_item": "function",
        "struct_item": "struct",
        "enum_item": "enum",
        "trait_item": "trait",
        "mod_item": "module",
        "type_item": "type",
        "macro_definition": "macro",
    },
    "go": {
        "function_declaration": "function",
        "method_declaration": "method",
        "type_spec": "type",
    },
    "java": {
        "class_declaration": "class",
        "interface_declaration": "interface",
        "enum_declaration": "enum",
        "method_declaration": "method",
        "constructor_declaration": "constructor",
    },
    "c": {
        "function_definition": "function",
        "struct_specifier": "struct",
        "enum_specifier": "enum",
    },
    "cpp": {
        "function_definition": "function",
        "class_specifier": "class",
        "struct_specifier": "struct",
        "enum_specifier": "enum",
        "namespace_definition": "namespace",
    },
    "ruby": {
        "method": "method",
        "singleton_method": "method",
        "class": "class",
        "module": "module",
    },
}
NODE_KINDS["tsx"] = NODE_KINDS["typescript"]

# Container kinds whose nested functions are reported as methods.
_CLASS_KINDS = {"class", "struct", "trait", "interface"}


@dataclass
class Symbol:
    name: str
    kind: str
    start_line: int
    end_line: int
    path: str = ""

    def to_dict(self) -> dict:
        return {"name": self.name, "kind": self.kind, "path": self.path,
                "start_line": self.start_line, "end_line": self.end_line}


@dataclass
class SymbolReport:
    symbols: list[Symbol] = field(default_factory=list)
    errors: list[SearchIssue] = field(default_factory=list)
    skipped: int = 0
    files: int = 0


_local = threading.local()


def language_for(path) -> Optional[str]:
    return EXTENSION_LANGUAGES.get(Path(path).suffix.lower())


def _get_parser(language: str) -> Parser:
    # Parsers are not thread safe; each worker thread caches its own.
    cache = getattr(_local, "parsers", None)
    if cache is None:
        cache = _local.parsers = {}
    parser = cache.get(language)
    if parser is None:
        parser = cache[language] = Parser(get_language(language))
    return parser


def _node_name(node) -> Optional[str]:
    name_node = node.child_by_field_name("name")
    if name_node is None:
        # C/C++ functions carry the name inside the declarator chain.
        declarator = node.child_by_field_name("declarator")
        while declarator is not None:
            if declarator.type in ("identifier", "field_identifier", "qualified_identifier",
                                   "destructor_name", "operator_name"):
                name_node = declarator
                break
            declarator = declarator.child_by_field_name("declarator")
    if name_node is None or name_node.text is None:
        return None
    return name_node.text.decode("utf-8", errors="replace")


def symbols_from_source(source: bytes, language: str) -> list[Symbol]:
    kinds = NODE_KINDS[language]
    tree = _get_parser(language).parse(source)
    found = []
    stack = [(tree.root_node, None)]
    while stack:
        node, container = stack.pop()
        kind = kinds.get(node.type)
        child_container = container
        if kind is not None:
            name = _node_name(node)
            if name:
                if kind == "function" and container in _CLASS_KINDS:
                    kind = "method"
                found.append(Symbol(name=name, kind=kind,
                                    start_line=node.start_point[0] + 1,
                                    end_line=node.end_point[0] + 1))
            child_container = kind
        stack.extend((child, child_container) for child in reversed(node.children))
    found.sort(key=lambda s: (s.start_line, s.end_line))
    return found


def extract_symbols(path, max_file_bytes: int = 1_000_000) -> list[Symbol]:
    """Extract symbols from one file.

    Returns [] for languages without a grammar. Raises OSError or ValueError
    for unreadable, binary or oversized files.
    """
    path = Path(path)
    language = language_for(path)
    if language is None:
        return []
    text = read_text(path, max_file_bytes)
    symbols = symbols_from_source(text.encode("utf-8"), language)
    for s in symbols:
        s.path = str(path)
    return symbols


def _extract_one(path: Path, rel: str, max_file_bytes: int):
    try:
        symbols = extract_symbols(path, max_file_bytes)
    except (OSError, ValueError, LookupError) as e:
        return None, str(e)
    for s in symbols:
        s.path = rel
    return symbols, None


def find_symbols(root, name: Optional[str] = None, kind: Optional[str] = None,
                 include: Sequence[str] = (), exclude: Sequence[str] = (),
                 cancel: Optional[CancelToken] = None, max_workers: int = 8,
                 max_file_bytes: int = 1_000_000) -> SymbolReport:
    """Collect symbols across a file or tree, filtered by name substring and kind."""
    report = SymbolReport()
    candidates = []
    for item in walk(root, include, exclude, cancel=cancel, max_workers=max_workers):
        if item.error:
            report.skipped += 1
            report.errors.append(SearchIssue(path=item.rel_path or str(item.path), message=item.error))
        elif language_for(item.path) is None:
            report.skipped += 1
        else:
            candidates.append(item)

    needle = name.lower() if name else None
    with ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="symbols") as pool:
        futures = [pool.submit(_extract_one, it.path, it.rel_path, max_file_bytes) for it in candidates]
        for it, fut in zip(candidates, futures):
            if cancel is not None:
                cancel.raise_if_cancelled()
            symbols, error = fut.result()
            if error:
                report.skipped += 1
                report.errors.append(SearchIssue(path=it.rel_path, message=error))
                continue
            report.files += 1
            for s in symbols:
                if needle and needle not in s.name.lower():
                    continue
                if kind and s.kind != kind:
                    continue
                report.symbols.append(s)
    return report
