import pytest

from memory_engineering.ingestion.pattern_rules import (
    PATTERN_RULES,
    PatternRule,
    content_matches,
    detect_patterns,
    name_has,
)


@pytest.mark.parametrize(
    "name,content,expected",
    [
        ("getLogger", "", ["logging"]),
        ("handleRequest", "", ["event-handler"]),
        ("UserRepository", "", ["repository"]),
        ("parse", "try:\n    x()\nexcept KeyError:\n    pass\n", ["error-handling"]),
        ("fetch", "const r = await fetch(url);", ["async"]),
        ("load", "return fetch(url).then((r) => r.json());", ["promise"]),
    ],
)
def test_single_rule_matches(name, content, expected):
    assert detect_patterns(name, content) == expected


def test_name_rules_match_whole_tokens_only():
    assert detect_patterns("CatalogView", "") == []
    assert detect_patterns("blogPost", "") == []


def test_content_rules_ignore_prose():
    assert "error-handling" not in detect_patterns("notes", "we should catch up and try again")
    assert "error-handling" in detect_patterns("notes", "throw new Error('x')")


def test_tags_appear_once_even_when_name_and_content_agree():
    tags = detect_patterns("AppLogger", "logger.info('start')\nlogger.error('stop')")
    assert tags.count("logging") == 1


def test_custom_rule_table():
    rules = [
        PatternRule("graphql", content_matches(r"\bgql`"), "graphql tagged templates"),
        PatternRule("resolver", name_has("resolver"), "resolver naming"),
    ]
    assert detect_patterns("UserResolver", "const q = gql`{ user }`", rules) == [
        "graphql",
        "resolver",
    ]


def test_rule_table_is_well_formed():
    for rule in PATTERN_RULES:
        assert rule.tag and rule.tag == rule.tag.lower()
        assert callable(rule.predicate)
        assert rule.description
