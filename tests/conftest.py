"""Shared fixtures and fakes for the Cortex test suite.

Nothing here talks to the network: embeddings come from
:class:`FakeEmbedding` (vectors chosen per test) and text generation from
:class:`FakeTextService` (canned JSON responses).
"""

from __future__ import annotations

import math

import pytest

from cortex.embeddings import EmbeddingProvider, EmbeddingRouter
from cortex.errors import ServiceUnavailable
from cortex.llm import TextService
from cortex.memory import GLOBAL_SCOPE, Memory
from cortex.store import MemoryStore


def angle_vector(degrees: float) -> list[float]:
    """2-D unit vector; the cosine between two of them is cos(angle difference)."""
    rad = math.radians(degrees)
    return [math.cos(rad), math.sin(rad)]


def sim_vector(similarity: float) -> list[float]:
    """Unit vector whose cosine similarity with ``[1, 0]`` is *similarity*."""
    return [similarity, math.sqrt(max(0.0, 1.0 - similarity * similarity))]


def make_memory(content: str = "test memory", vector: list[float] | None = None, **kwargs) -> Memory:
    """Create a Memory with sensible defaults for testing."""
    if vector is not None:
        kwargs["embedding"] = vector
    return Memory(content=content, **kwargs)


class FakeEmbedding(EmbeddingProvider):
    """Deterministic embedding provider.

    Texts containing a key of *vectors* get that vector; anything else
    gets *default*.  Every embedded text is recorded in :attr:`seen`.
    """

    def __init__(
        self,
        vectors: dict[str, list[float]] | None = None,
        default: list[float] | None = None,
        kind: str = "remote",
        available: bool = True,
    ) -> None:
        self.vectors = vectors or {}
        self.default = default if default is not None else [1.0, 0.0]
        self.kind = kind
        self.available = available
        self.seen: list[str] = []

    def embed(self, text: str) -> list[float]:
        if not self.available:
            raise ServiceUnavailable("fake embedding offline")
        self.seen.append(text)
        for key, vector in self.vectors.items():
            if key in text:
                return list(vector)
        return list(self.default)


class FakeTextService(TextService):
    """Text service answering with canned responses.

    Responses are chosen from the prompt's opening words, so the real
    prompt builders and response decoders are exercised.
    """

    def __init__(
        self,
        extraction: str = "[]",
        classification: str = "[]",
        merge: str = '{"content": "merged", "summary": "merged"}',
        available: bool = True,
    ) -> None:
        self.extraction = extraction
        self.classification = classification
        self.merge = merge
        self.available = available
        self.prompts: list[str] = []

    def complete(self, prompt: str, timeout: float = 30.0) -> str:
        if not self.available:
            raise ServiceUnavailable("fake text service offline")
        self.prompts.append(prompt)
        if prompt.startswith("You maintain"):
            return self.extraction
        if prompt.startswith("Classify"):
            return self.classification
        return self.merge


@pytest.fixture
def store(tmp_path):
    """Project-scope store in a temporary directory."""
    s = MemoryStore(path=tmp_path / "project" / "memories.db")
    yield s
    s.close()


@pytest.fixture
def global_store(tmp_path):
    s = MemoryStore(path=tmp_path / "global" / "global.db", scope=GLOBAL_SCOPE)
    yield s
    s.close()


@pytest.fixture
def fake_embedder():
    return FakeEmbedding()


@pytest.fixture
def router(fake_embedder):
    return EmbeddingRouter(primary=fake_embedder)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep real API keys and guard variables out of every test."""
    for name in (
        "GEMINI_API_KEY",
        "CORTEX_EXTRACTING",
        "CORTEX_PROJECT_ROOT",
        "CORTEX_PROJECT_PATH",
        "CORTEX_GLOBAL_PATH",
        "CORTEX_HOME",
        "CORTEX_EMBEDDING",
    ):
        monkeypatch.delenv(name, raising=False)
