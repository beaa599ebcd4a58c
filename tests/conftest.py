# Shared fixtures: in-memory store, deterministic embedder, small config
# No network: providers are faked or driven through httpx.MockTransport

import os
import re
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import pytest

from memory_engineering.providers.embeddings.contracts import EmbeddingBatchResult
from memory_engineering.shared.config import Config
from memory_engineering.store.memory_store import InMemoryDocumentStore

os.environ["ENV"] = "development"

FIXED_NOW = 1_760_000_000.0  # 2025-10-09T08:53:20Z

# Each concept is one vector dimension; synonyms land on the same axis so
# "JWT authentication" and "login" are semantically close without sharing words.
CONCEPTS: List[Sequence[str]] = [
    ("auth", "authentication", "authenticate", "login", "jwt", "token", "password", "session"),
    ("database", "db", "sql", "query", "repository", "persistence"),
    ("error", "exception", "raise", "failure", "retry"),
    ("cache", "caching", "memoize"),
    ("log", "logger", "logging"),
    ("config", "configuration", "settings"),
    ("http", "route", "router", "api", "endpoint", "request"),
    ("test", "tests", "assert", "fixture"),
]
DIMS = len(CONCEPTS)
_WORD_RE = re.compile(r"[A-Za-z]+")
_CAMEL_RE = re.compile(r"(?<=[a-z])(?=[A-Z])")


def concept_vector(text: str) -> List[float]:
    words = [w.lower() for w in _WORD_RE.findall(_CAMEL_RE.sub(" ", text))]
    vector = [0.01] * DIMS
    for axis, keywords in enumerate(CONCEPTS):
        vector[axis] += sum(1.0 for word in words if word in keywords)
    return vector


class FakeEmbedder:
    """Deterministic EmbeddingProvider; texts matching ``flag_when`` come back flagged."""

    def __init__(
        self,
        dims: int = DIMS,
        flag_when: Optional[Callable[[str], bool]] = None,
        error: Optional[Exception] = None,
    ):
        self._dims = dims
        self.flag_when = flag_when
        self.error = error
        self.document_calls: List[List[str]] = []
        self.query_calls: List[str] = []

    @property
    def dims(self) -> int:
        return self._dims

    @property
    def model_id(self) -> str:
        return "fake-concepts"

    @property
    def provider_name(self) -> str:
        return "fake"

    async def embed_documents(self, texts: Sequence[str]) -> EmbeddingBatchResult:
        if self.error is not None:
            raise self.error
        self.document_calls.append(list(texts))
        vectors: List[Optional[List[float]]] = []
        flagged: Dict[int, str] = {}
        for idx, text in enumerate(texts):
            if self.flag_when and self.flag_when(text):
                vectors.append(None)
                flagged[idx] = "missing: no vector returned"
            else:
                vectors.append(concept_vector(text))
        return EmbeddingBatchResult(vectors=vectors, dims=self._dims, flagged=flagged)

    async def embed_query(self, text: str) -> List[float]:
        if self.error is not None:
            raise self.error
        self.query_calls.append(text)
        return concept_vector(text)

    async def aclose(self) -> None:
        return None


class Clock:
    def __init__(self, now: float = FIXED_NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def config() -> Config:
    return Config(
        embedding={"dims": DIMS, "batch_size": 16},
        rerank={"enabled": False},
        store={"backend": "memory"},
        ingestion={"min_chunk_size": 1},
    )


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def make_embedder() -> Callable[..., FakeEmbedder]:
    return FakeEmbedder


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def sample_project(tmp_path: Path) -> Path:
    """A small polyglot project on disk."""
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "auth.py").write_text(
        "import jwt\n"
        "from app.db import session\n"
        "\n"
        "\n"
        "class AuthService:\n"
        "    \"\"\"Issues and checks login tokens.\"\"\"\n"
        "\n"
        "    def login(self, user, password):\n"
        "        try:\n"
        "            token = jwt.encode({'sub': user}, 'secret')\n"
        "        except ValueError:\n"
        "            raise\n"
        "        return token\n"
        "\n"
        "    def logout(self, token):\n"
        "        session.revoke(token)\n"
        "\n"
        "\n"
        "def check_password(raw, hashed):\n"
        "    return raw == hashed\n",
        encoding="utf-8",
    )
    (tmp_path / "src" / "cache.ts").write_text(
        "import { Redis } from 'ioredis';\n"
        "\n"
        "export async function getCached(key: string) {\n"
        "  const client = new Redis();\n"
        "  const value = await client.get(key);\n"
        "  return value;\n"
        "}\n",
        encoding="utf-8",
    )
    (tmp_path / "src" / "test_auth.py").write_text(
        "def test_login():\n    assert True\n", encoding="utf-8"
    )
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "dep.js").write_text(
        "function vendored() {\n  return 1;\n}\n", encoding="utf-8"
    )
    return tmp_path
