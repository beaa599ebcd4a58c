"""
Declarative pattern-tag rules for code chunks.

Each rule is ``(tag, predicate, description)``; predicates receive the set of
identifier tokens of the chunk name and the chunk content. Rules are evaluated
in table order, once per chunk, and a tag appears at most once.

Name rules match whole identifier tokens (``AuthService.login`` ->
{auth, service, login}) so that e.g. ``catalog`` never tags as ``logging``.
Content rules use word-boundary regexes on language constructs rather than
bare words.
"""

import re
from typing import Callable, FrozenSet, List, NamedTuple

from memory_engineering.shared.text import tokenize

Predicate = Callable[[FrozenSet[str], str], bool]


class PatternRule(NamedTuple):
    tag: str
    predicate: Predicate
    description: str


def name_has(*tokens: str) -> Predicate:
    wanted = frozenset(tokens)

    def predicate(name_tokens: FrozenSet[str], content: str) -> bool:
        return bool(wanted & name_tokens)

    return predicate


def content_matches(pattern: str, flags: int = re.MULTILINE) -> Predicate:
    compiled = re.compile(pattern, flags)

    def predicate(name_tokens: FrozenSet[str], content: str) -> bool:
        return bool(content) and compiled.search(content) is not None

    return predicate


PATTERN_RULES: List[PatternRule] = [
    # name-derived
    PatternRule("event-handler", name_has("handler", "handlers", "handle"), "handler naming"),
    PatternRule("middleware", name_has("middleware", "middlewares"), "middleware naming"),
    PatternRule("controller", name_has("controller", "controllers"), "controller naming"),
    PatternRule("service", name_has("service", "services"), "service naming"),
    PatternRule("repository", name_has("repository", "repo", "repositories"), "repository naming"),
    PatternRule("error-handler", name_has("error", "errors", "exception", "exceptions"), "error type naming"),
    PatternRule(
        "authentication",
        name_has(
            "auth", "authenticate", "authentication", "authorize", "authorization",
            "login", "logout", "oauth", "jwt", "signin", "signup", "password",
        ),
        "authentication naming",
    ),
    PatternRule("test", name_has("test", "tests", "spec"), "test naming"),
    PatternRule("utility", name_has("util", "utils", "utility"), "utility naming"),
    PatternRule("helper", name_has("helper", "helpers"), "helper naming"),
    PatternRule("model", name_has("model", "models", "schema", "schemas", "entity"), "model naming"),
    PatternRule("router", name_has("route", "routes", "router"), "router naming"),
    PatternRule("api", name_has("api", "endpoint", "endpoints"), "API naming"),
    PatternRule("database", name_has("db", "database", "sql", "query"), "database naming"),
    PatternRule("cache", name_has("cache", "cached", "caching"), "cache naming"),
    PatternRule("queue", name_has("queue", "queues", "worker"), "queue naming"),
    PatternRule("logging", name_has("log", "logger", "logging"), "logging naming"),
    PatternRule("configuration", name_has("config", "configuration", "settings"), "config naming"),
    PatternRule("validation", name_has("validate", "validator", "validation"), "validation naming"),
    # content-derived
    PatternRule(
        "error-handling",
        content_matches(
            r"^\s*try\s*[:{]|\bcatch\s*\(|^\s*except\b|^\s*raise\s+\w|\bthrow\s+\w|\bErr\(|\bif\s+err\s*!=\s*nil\b"
        ),
        "try/catch/except/raise/throw constructs",
    ),
    PatternRule(
        "async",
        content_matches(r"\basync\s+(?:def|function|fn)\b|\bawait\b|\basync\s*\(|\bgo\s+func\b"),
        "asynchronous definitions or awaits",
    ),
    PatternRule("promise", content_matches(r"\bPromise\b|\.then\s*\("), "promise usage"),
    PatternRule(
        "class-based",
        content_matches(r"^\s*(?:export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+\w"),
        "class definitions",
    ),
    PatternRule(
        "module",
        content_matches(r"^\s*export\s|\bmodule\.exports\b|^__all__\s*="),
        "explicit exports",
    ),
    PatternRule(
        "dependency",
        content_matches(r"^\s*import\s|^\s*from\s+\S+\s+import\s|\brequire\s*\(|^\s*use\s+\w"),
        "imports inside the chunk",
    ),
    PatternRule(
        "logging",
        content_matches(r"\b(?:logger|logging|log)\.(?:debug|info|warn|warning|error|exception)\s*\(|\bconsole\.(?:log|warn|error)\s*\("),
        "logger calls",
    ),
]


def detect_patterns(name: str, content: str, rules: List[PatternRule] = PATTERN_RULES) -> List[str]:
    name_tokens = frozenset(tokenize(name or "", drop_stopwords=False))
    tags: List[str] = []
    for rule in rules:
        if rule.tag in tags:
            continue
        if rule.predicate(name_tokens, content or ""):
            tags.append(rule.tag)
    return tags
