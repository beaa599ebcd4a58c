"""
Text helpers shared by ingestion and retrieval.

``searchable_text`` is the denormalised field the lexical pipeline matches
against; ``tokenize`` must agree with the store's word tokenizer so client-side
scoring ranks the same terms the text index matched.
"""

import re
from typing import Iterable, List, Optional

_HEADER_RE = re.compile(r"^#{1,6}\s+", re.MULTILINE)
_BOLD_RE = re.compile(r"\*\*(.*?)\*\*")
_ITALIC_RE = re.compile(r"\*(.*?)\*")
_CODE_RE = re.compile(r"`{1,3}[^`]*`{1,3}")
_LINK_RE = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_BULLET_RE = re.compile(r"^\s*[-*+]\s+", re.MULTILINE)
_NUMBERED_RE = re.compile(r"^\s*\d+\.\s+", re.MULTILINE)
_BLANK_RUN_RE = re.compile(r"\n{3,}")

_TOKEN_RE = re.compile(r"[a-z0-9]+")
# Splits camelCase / PascalCase identifiers: AuthService -> Auth Service
_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

STOPWORDS = frozenset(
    {"a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "in", "is",
     "it", "of", "on", "or", "that", "the", "this", "to", "was", "with"}
)


def strip_markdown(markdown: str) -> str:
    text = _HEADER_RE.sub("", markdown)
    text = _BOLD_RE.sub(r"\1", text)
    text = _ITALIC_RE.sub(r"\1", text)
    text = _CODE_RE.sub("", text)
    text = _LINK_RE.sub(r"\1", text)
    text = _BULLET_RE.sub("", text)
    text = _NUMBERED_RE.sub("", text)
    text = _BLANK_RUN_RE.sub("\n\n", text)
    return text.strip()


def memory_searchable_text(name: Optional[str], content: str) -> str:
    parts = [name] if name else []
    parts.append(strip_markdown(content))
    return " ".join(part for part in parts if part)


def split_identifier(value: str) -> str:
    """``AuthService.login`` -> ``Auth Service login``."""
    return " ".join(_CAMEL_RE.sub(" ", part) for part in re.split(r"[._\-/]", value))


def tokenize(text: str, *, drop_stopwords: bool = True) -> List[str]:
    tokens = _TOKEN_RE.findall(split_identifier(text).lower()) if text else []
    if drop_stopwords:
        tokens = [tok for tok in tokens if tok not in STOPWORDS]
    return tokens


def term_overlap_score(query_terms: Iterable[str], text: str) -> float:
    """Fraction of distinct query terms present in ``text`` plus a small frequency bonus."""
    terms = set(query_terms)
    if not terms:
        return 0.0
    doc_tokens = tokenize(text, drop_stopwords=False)
    if not doc_tokens:
        return 0.0
    present = [term for term in terms if term in doc_tokens]
    if not present:
        return 0.0
    frequency = sum(doc_tokens.count(term) for term in present)
    return len(present) / len(terms) + min(frequency, 20) / 1000.0


def snippet(text: str, length: int = 240) -> str:
    collapsed = " ".join(text.split())
    if len(collapsed) <= length:
        return collapsed
    return collapsed[: length - 3].rstrip() + "..."
