"""
Pattern-based source chunker.

Splits a source file into function / class / method chunks using line-anchored
definition regexes, then finds where each definition ends:
- indentation languages (.py, .pyi): first non-blank line at or left of the
  definition's indent, outside open brackets and triple-quoted strings
- brace languages: when the braces opened by the definition balance again

Files with no recognised definitions become a single ``module`` chunk.
Chunk size is counted in lines, both ends inclusive.
"""

import re
from pathlib import PurePosixPath
from typing import Dict, List, Optional, Pattern, Sequence, Tuple

from memory_engineering.ingestion.pattern_rules import detect_patterns
from memory_engineering.shared.config import IngestionConfig
from memory_engineering.shared.records import CodeChunk

INDENT_LANGUAGES = {".py", ".pyi"}

_LANGUAGE_BY_SUFFIX = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "javascript",
    ".tsx": "javascript",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".kt": "java",
    ".cs": "java",
}

Definition = Tuple[str, Pattern[str]]

_PY_CLASS = re.compile(r"^(?P<indent>[ \t]*)class\s+(?P<name>\w+)")
_PY_FUNC = re.compile(r"^(?P<indent>[ \t]*)(?:async\s+)?def\s+(?P<name>\w+)")

_JS_CLASS = re.compile(
    r"^(?P<indent>[ \t]*)(?:export\s+)?(?:default\s+)?(?:declare\s+)?(?:abstract\s+)?"
    r"(?:class|interface|enum)\s+(?P<name>\w+)"
)
_JS_TYPE = re.compile(r"^(?P<indent>[ \t]*)(?:export\s+)?type\s+(?P<name>\w+)\s*(?:<[^>]*>)?\s*=")
_JS_FUNC = re.compile(
    r"^(?P<indent>[ \t]*)(?:export\s+)?(?:default\s+)?(?:async\s+)?function\s*\*?\s*(?P<name>\w+)"
)
_JS_ARROW = re.compile(
    r"^(?P<indent>[ \t]*)(?:export\s+)?(?:const|let|var)\s+(?P<name>\w+)\s*(?::[^=]+)?=\s*"
    r"(?:async\s+)?(?:function\b|\([^)]*\)\s*(?::\s*[^=]+)?=>|\w+\s*=>)"
)
_JS_METHOD = re.compile(
    r"^(?P<indent>[ \t]+)(?:(?:public|private|protected|static|readonly|async|override|get|set)\s+)*"
    r"(?P<name>[A-Za-z_$][\w$]*)\s*(?:<[^>]*>)?\([^)]*\)\s*(?::\s*[^{]+)?\{\s*$"
)

_GO_FUNC = re.compile(r"^func\s+(?P<receiver>\([^)]*\)\s*)?(?P<name>\w+)")
_GO_TYPE = re.compile(r"^type\s+(?P<name>\w+)\s+(?:struct|interface)\b")

_RS_CLASS = re.compile(
    r"^(?P<indent>[ \t]*)(?:pub(?:\([^)]*\))?\s+)?(?:struct|enum|trait|impl)\b\s*(?:<[^>]*>\s*)?(?P<name>\w+)"
)
_RS_FUNC = re.compile(
    r"^(?P<indent>[ \t]*)(?:pub(?:\([^)]*\))?\s+)?(?:const\s+)?(?:async\s+)?(?:unsafe\s+)?fn\s+(?P<name>\w+)"
)

_JAVA_CLASS = re.compile(
    r"^(?P<indent>[ \t]*)(?:(?:public|private|protected|internal|abstract|final|static|sealed|partial|data)\s+)*"
    r"(?:class|interface|enum|record|object)\s+(?P<name>\w+)"
)
_JAVA_METHOD = re.compile(
    r"^(?P<indent>[ \t]*)(?:public|private|protected|internal)\s+"
    r"(?:(?:static|final|abstract|synchronized|async|override|virtual|suspend)\s+)*"
    r"(?:fun\s+)?[\w<>\[\],.?]+\s+(?P<name>\w+)\s*\("
)

# (class-like, function-like, in-class-only) definitions per language
_DEFINITIONS: Dict[str, Tuple[List[Definition], List[Definition], List[Definition]]] = {
    "python": ([("class", _PY_CLASS)], [("function", _PY_FUNC)], []),
    "javascript": (
        [("class", _JS_CLASS), ("other", _JS_TYPE)],
        [("function", _JS_FUNC), ("function", _JS_ARROW)],
        [("method", _JS_METHOD)],
    ),
    "go": ([("class", _GO_TYPE)], [("function", _GO_FUNC)], []),
    "rust": ([("class", _RS_CLASS)], [("function", _RS_FUNC)], []),
    "java": ([("class", _JAVA_CLASS)], [("function", _JAVA_METHOD)], []),
}
_GENERIC = (
    [("class", _JS_CLASS), ("class", _GO_TYPE), ("class", _RS_CLASS)],
    [("function", _PY_FUNC), ("function", _JS_FUNC), ("function", _GO_FUNC), ("function", _RS_FUNC)],
    [],
)

_CONTROL_WORDS = frozenset(
    {"if", "for", "while", "switch", "catch", "return", "function", "else", "do", "with", "constructor"}
)

_STRING_RE = re.compile(r'"(?:\\.|[^"\\])*"|\'(?:\\.|[^\'\\])*\'|`(?:\\.|[^`\\])*`')
_LINE_COMMENT_RE = re.compile(r"//.*$")
_CONTEXT_RE = re.compile(r"^(?:import|from|require|use|using|include|package|#include)\b")
_COMMENT_PREFIXES = ("//", "/*", "*", "#")

_IMPORT_PATTERNS = [
    re.compile(r"\bfrom\s+['\"]([^'\"]+)['\"]"),
    re.compile(r"\brequire\s*\(\s*['\"]([^'\"]+)['\"]\s*\)"),
    re.compile(r"^\s*import\s+['\"]([^'\"]+)['\"]"),
    re.compile(r"^\s*import\s+(?:\w+\s+)?\"([^\"]+)\""),
    re.compile(r"^\s*use\s+([\w:]+)"),
    re.compile(r"^\s*import\s+(?:static\s+)?([\w.]+)\s*;"),
    re.compile(r"^\s*from\s+([\w.]+)\s+import\b"),
    re.compile(r"^\s*import\s+([\w.]+)"),
]
_GO_IMPORT_LINE = re.compile(r"^\s*(?:\w+\s+)?\"([^\"]+)\"\s*$")


def _indent_width(line: str) -> int:
    prefix = line[: len(line) - len(line.lstrip(" \t"))]
    return len(prefix.replace("\t", "    "))


def _bracket_delta(code: str) -> int:
    return sum(code.count(ch) for ch in "([{") - sum(code.count(ch) for ch in ")]}")


def _strip_code(line: str) -> str:
    return _LINE_COMMENT_RE.sub("", _STRING_RE.sub('""', line))


def find_indent_end(lines: Sequence[str], start: int, max_lines: int) -> int:
    """Exclusive end index of the indentation block opened at ``start``."""
    base = _indent_width(lines[start])
    limit = min(len(lines), start + max_lines)
    depth = 0
    in_docstring = False
    end = limit
    for idx in range(start, limit):
        line = lines[idx]
        stripped = line.strip()
        if (
            idx > start
            and stripped
            and depth <= 0
            and not in_docstring
            and _indent_width(line) <= base
            and stripped[0] not in ")]}"
        ):
            end = idx
            break
        quotes = line.count('"""') + line.count("'''")
        if quotes % 2 == 1:
            in_docstring = not in_docstring
        if not in_docstring:
            depth = max(0, depth + _bracket_delta(_STRING_RE.sub('""', line.split("#", 1)[0])))
    while end > start + 1 and not lines[end - 1].strip():
        end -= 1
    return end


def find_brace_end(lines: Sequence[str], start: int, max_lines: int) -> int:
    """Exclusive end index of the brace block opened at or after ``start``."""
    limit = min(len(lines), start + max_lines)
    depth = 0
    opened = False
    for idx in range(start, limit):
        code = _strip_code(lines[idx])
        for ch in code:
            if ch == "{":
                depth += 1
                opened = True
            elif ch == "}":
                depth -= 1
        if opened and depth <= 0:
            return idx + 1
        if not opened and code.rstrip().endswith(";"):
            return idx + 1
    return limit


def extract_context(lines: Sequence[str], context_lines: int) -> str:
    picked = []
    for line in lines[:context_lines]:
        stripped = line.strip()
        if _CONTEXT_RE.match(stripped) or stripped.startswith(_COMMENT_PREFIXES):
            picked.append(line)
    return "\n".join(picked)


def extract_dependencies(lines: Sequence[str]) -> List[str]:
    """Imported module names plus their root package, in first-seen order."""
    found: List[str] = []
    in_go_block = False
    for line in lines:
        stripped = line.strip()
        if stripped.startswith("import ("):
            in_go_block = True
            continue
        if in_go_block:
            if stripped.startswith(")"):
                in_go_block = False
                continue
            match = _GO_IMPORT_LINE.match(line)
            if match:
                found.append(match.group(1))
            continue
        for pattern in _IMPORT_PATTERNS:
            match = pattern.search(line)
            if match:
                found.append(match.group(1))
                break
    deps: List[str] = []
    for module in found:
        if not module.strip("."):
            continue
        root = re.split(r"::|[./]", module.lstrip("@./"), maxsplit=1)[0]
        if module.startswith("@") and "/" in module:
            root = "/".join(module.split("/")[:2])
        for dep in (module, root):
            if dep and dep not in deps:
                deps.append(dep)
    return deps


class CodeChunker:
    """Turns one source file into CodeChunk records (unfiltered by size)."""

    def __init__(self, config: Optional[IngestionConfig] = None):
        self.config = config or IngestionConfig()

    def chunk_text(
        self,
        text: str,
        file_path: str,
        project_id: str,
        last_modified: float,
    ) -> List[CodeChunk]:
        lines = text.splitlines()
        suffix = PurePosixPath(file_path).suffix.lower()
        language = _LANGUAGE_BY_SUFFIX.get(suffix)
        class_defs, func_defs, method_defs = _DEFINITIONS.get(language, _GENERIC)
        find_end = find_indent_end if suffix in INDENT_LANGUAGES else find_brace_end

        context = extract_context(lines, self.config.context_lines)
        dependencies = extract_dependencies(lines)
        chunks: List[CodeChunk] = []
        class_spans: List[Tuple[int, int]] = []

        for idx, line in enumerate(lines):
            found = self._match(line, class_defs)
            max_lines = self.config.class_max_lines
            if found is None:
                found = self._match(line, func_defs)
                max_lines = self.config.function_max_lines
            if found is None and self._inside(idx, class_spans):
                found = self._match(line, method_defs)
                max_lines = self.config.function_max_lines
                if found and found[1].group("name") in _CONTROL_WORDS:
                    found = None
            if found is None:
                continue

            kind, match = found
            end = find_end(lines, idx, max_lines)
            groups = match.groupdict()
            if kind == "class":
                class_spans.append((idx, end))
            elif kind == "function" and (
                groups.get("receiver") or self._inside(idx, class_spans)
            ):
                kind = "method"

            name = groups["name"]
            body = "\n".join(lines[idx:end])
            chunks.append(
                CodeChunk(
                    project_id=project_id,
                    file_path=file_path,
                    start_line=idx + 1,
                    end_line=end,
                    kind=kind,
                    name=name,
                    signature=line.strip(),
                    content=body,
                    context=context,
                    pattern_tags=detect_patterns(name, body),
                    dependencies=list(dependencies),
                    exports=[name],
                    last_modified=last_modified,
                )
            )

        if not chunks and lines:
            name = PurePosixPath(file_path).name
            body = text[: self.config.module_max_chars]
            chunks.append(
                CodeChunk(
                    project_id=project_id,
                    file_path=file_path,
                    start_line=1,
                    end_line=len(lines),
                    kind="module",
                    name=name,
                    signature="",
                    content=body,
                    pattern_tags=detect_patterns(name, body),
                    dependencies=list(dependencies),
                    last_modified=last_modified,
                )
            )
        return chunks

    @staticmethod
    def _match(line: str, definitions: List[Definition]):
        for kind, pattern in definitions:
            match = pattern.match(line)
            if match:
                return kind, match
        return None

    @staticmethod
    def _inside(idx: int, spans: List[Tuple[int, int]]) -> bool:
        return any(start < idx < end for start, end in spans)


def filter_by_size(chunks: Sequence[CodeChunk], min_chunk_size: int) -> List[CodeChunk]:
    """Keep chunks with ``size >= min_chunk_size``."""
    return [chunk for chunk in chunks if chunk.size >= min_chunk_size]
