"""Tests for embedding providers and the fallback router.

No network or model download happens here: the Gemini provider is only
constructed, and vectors come from :class:`FakeEmbedding`.
"""

from __future__ import annotations

import pytest
from conftest import FakeEmbedding, make_memory

from cortex.embeddings import (
    EmbeddingRouter,
    GeminiEmbedding,
    LocalEmbedding,
    NoopEmbedding,
    create_embedding_router,
    embedding_text,
)
from cortex.errors import ServiceUnavailable

# ------------------------------------------------------------------
# Router
# ------------------------------------------------------------------


class TestRouter:
    def test_primary_answers(self):
        router = EmbeddingRouter(primary=FakeEmbedding(default=[0.1, 0.2]))
        result = router.embed_query("hello")
        assert result.kind == "remote"
        assert result.vector == [0.1, 0.2]

    def test_falls_back_to_local(self):
        primary = FakeEmbedding(available=False)
        fallback = FakeEmbedding(default=[0.5, 0.5, 0.5], kind="local")
        result = EmbeddingRouter(primary=primary, fallback=fallback).embed_query("hello")
        assert result.kind == "local"
        assert fallback.seen == ["hello"]

    def test_all_unavailable_returns_none(self):
        router = EmbeddingRouter(primary=NoopEmbedding(), fallback=FakeEmbedding(available=False))
        assert router.embed_query("hello") is None

    def test_no_providers(self):
        assert EmbeddingRouter().embed_query("hello") is None


class TestEmbedMemory:
    def test_remote_vector_goes_to_embedding(self, router):
        mem = make_memory("prose")
        assert router.embed_memory(mem) is True
        assert mem.embedding == [1.0, 0.0]
        assert mem.local_embedding is None

    def test_local_vector_goes_to_local_embedding(self):
        router = EmbeddingRouter(fallback=FakeEmbedding(default=[0.3, 0.4], kind="local"))
        mem = make_memory("prose")
        assert router.embed_memory(mem) is True
        assert mem.embedding is None
        assert mem.local_embedding == [0.3, 0.4]

    def test_code_memories_are_refused(self, router, fake_embedder):
        code = make_memory("def secret(): return 42", memory_type="code")
        with pytest.raises(ValueError):
            router.embed_memory(code)
        assert fake_embedder.seen == []

    def test_unavailable_leaves_memory_untouched(self):
        mem = make_memory("prose")
        assert EmbeddingRouter(primary=NoopEmbedding()).embed_memory(mem) is False
        assert mem.embedding is None


def test_embedding_text_combines_summary_and_content():
    mem = make_memory("Full body of the memory.", summary="Short")
    assert embedding_text(mem) == "Short\n\nFull body of the memory."
    assert embedding_text(make_memory("same")) == "same"


# ------------------------------------------------------------------
# Factory
# ------------------------------------------------------------------


class TestFactory:
    def test_none(self):
        assert EmbeddingRouter().providers == []
        assert create_embedding_router("none").providers == []

    def test_local(self):
        router = create_embedding_router("local", local_model="paraphrase-MiniLM-L3-v2")
        assert router.primary is None
        assert isinstance(router.fallback, LocalEmbedding)
        assert "paraphrase-MiniLM-L3-v2" in repr(router.fallback)

    def test_gemini_without_key_is_local_only(self):
        router = create_embedding_router("gemini")
        assert router.primary is None
        assert isinstance(router.fallback, LocalEmbedding)

    def test_gemini_with_key(self):
        router = create_embedding_router("gemini", api_key="test-key")
        assert isinstance(router.primary, GeminiEmbedding)
        assert router.primary.dimension == 1024

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown embedding provider"):
            create_embedding_router("word2vec")


def test_gemini_requires_key():
    with pytest.raises(ValueError):
        GeminiEmbedding()


def test_gemini_unreachable_is_service_unavailable():
    provider = GeminiEmbedding(api_key="k", base_url="http://127.0.0.1:9", timeout=0.5)
    with pytest.raises(ServiceUnavailable):
        provider.embed("hello")


def test_noop_is_unavailable():
    with pytest.raises(ServiceUnavailable):
        NoopEmbedding().embed("x")


class _BrokenModel:
    def encode(self, texts, convert_to_numpy=True):
        raise RuntimeError("CUDA error: device-side assert triggered")


class TestLocalFailures:
    def _broken(self):
        provider = LocalEmbedding()
        provider._model = _BrokenModel()
        return provider

    def test_encode_failure_is_service_unavailable(self):
        provider = self._broken()
        with pytest.raises(ServiceUnavailable):
            provider.embed("hello")
        with pytest.raises(ServiceUnavailable):
            provider.embed_batch(["a", "b"])

    def test_router_degrades_to_keyword_only(self):
        router = EmbeddingRouter(primary=FakeEmbedding(available=False), fallback=self._broken())
        assert router.embed_query("hello") is None
