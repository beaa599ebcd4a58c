"""
Code-search variants.

Each variant is a pipeline-selection policy over the same retrieval
primitives:
- similar: pure semantic
- implements: keyword match restricted to function/class/method chunks
- uses: chunks whose file imports the queried module
- pattern: chunks carrying a detected pattern tag, query expanded by synonyms
"""

from dataclasses import dataclass
from typing import Dict, List, Tuple

from memory_engineering.shared.text import tokenize
from memory_engineering.store.base import LEXICAL, SEMANTIC

VARIANT_SIMILAR = "similar"
VARIANT_IMPLEMENTS = "implements"
VARIANT_USES = "uses"
VARIANT_PATTERN = "pattern"
CODE_SEARCH_VARIANTS = (VARIANT_SIMILAR, VARIANT_IMPLEMENTS, VARIANT_USES, VARIANT_PATTERN)

IMPLEMENTATION_KINDS = ("function", "class", "method")

SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "auth": ("authentication", "authorization", "login"),
    "authentication": ("authentication", "authorization", "login"),
    "authorization": ("authentication", "authorization"),
    "login": ("authentication", "login"),
    "error": ("error-handling", "error-handler"),
    "errors": ("error-handling", "error-handler"),
    "exception": ("error-handling", "error-handler"),
    "db": ("database", "repository"),
    "database": ("database", "repository"),
    "persistence": ("database", "repository"),
    "log": ("logging",),
    "logs": ("logging",),
    "config": ("configuration",),
    "settings": ("configuration",),
    "routing": ("router", "controller"),
    "route": ("router",),
    "endpoint": ("api", "router", "controller"),
    "async": ("async", "promise"),
    "concurrency": ("async", "promise"),
    "validate": ("validation",),
    "tests": ("test",),
    "testing": ("test",),
    "handler": ("event-handler",),
    "events": ("event-handler",),
    "caching": ("cache",),
    "jobs": ("queue",),
}


@dataclass(frozen=True)
class CodeSearchPlan:
    variant: str
    pipelines: Tuple[str, ...]
    kinds: Tuple[str, ...] = ()
    dependencies: Tuple[str, ...] = ()
    pattern_tags: Tuple[str, ...] = ()


def expand_pattern_terms(query: str) -> List[str]:
    """Pattern tags for a query: the literal tag plus synonym expansions."""
    tags: List[str] = []

    def add(tag: str) -> None:
        if tag and tag not in tags:
            tags.append(tag)

    normalized = "-".join(query.strip().lower().split())
    add(normalized)
    for token in tokenize(query):
        add(token)
        for synonym in SYNONYMS.get(token, ()):
            add(synonym)
    return tags


def dependency_terms(query: str) -> List[str]:
    raw = query.strip()
    terms = [raw] if raw else []
    for part in raw.split():
        if part not in terms:
            terms.append(part)
    return terms


def plan_code_search(variant: str, query: str) -> CodeSearchPlan:
    if variant == VARIANT_SIMILAR:
        return CodeSearchPlan(variant, (SEMANTIC,))
    if variant == VARIANT_IMPLEMENTS:
        return CodeSearchPlan(variant, (LEXICAL,), kinds=IMPLEMENTATION_KINDS)
    if variant == VARIANT_USES:
        return CodeSearchPlan(
            variant, (SEMANTIC, LEXICAL), dependencies=tuple(dependency_terms(query))
        )
    if variant == VARIANT_PATTERN:
        return CodeSearchPlan(
            variant, (SEMANTIC, LEXICAL), pattern_tags=tuple(expand_pattern_terms(query))
        )
    raise ValueError(
        f"Unknown code search variant '{variant}'. Use one of {CODE_SEARCH_VARIANTS}."
    )
