"""Pluggable embedding providers for Cortex.

Each provider implements a simple interface: given text, return a vector of
floats.  A remote provider (Gemini) produces the primary vectors; a local
sentence-transformers model is the offline fallback.  Providers are
lazy-loaded so heavy ML dependencies are only imported when used.

Raw code is never sent to a provider: :class:`EmbeddingRouter` refuses
``code`` memories outright.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from .errors import ServiceUnavailable
from .memory import Memory
from .transport import post_json

logger = logging.getLogger(__name__)

EMBEDDING_TIMEOUT = 15.0
REMOTE_DIMENSION = 1024
LOCAL_DIMENSION = 384

# ---------------------------------------------------------------------------
# Abstract base
# ---------------------------------------------------------------------------


class EmbeddingProvider(ABC):
    """Abstract base class for all embedding providers.

    Subclasses must implement :meth:`embed`.  Failures should surface as
    :class:`ServiceUnavailable`.
    """

    kind: str = "remote"
    """Which memory column the vectors belong to (``remote``/``local``)."""

    @abstractmethod
    def embed(self, text: str) -> list[float]:
        """Compute the embedding vector for a single piece of text."""

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Compute embeddings for multiple texts (sequential by default)."""
        return [self.embed(t) for t in texts]

    @property
    def dimension(self) -> int | None:
        """Dimensionality of the vectors, if known ahead of time."""
        return None


# ---------------------------------------------------------------------------
# Gemini (remote)
# ---------------------------------------------------------------------------


class GeminiEmbedding(EmbeddingProvider):
    """Embedding provider using the Gemini ``embedContent`` REST API.

    Args:
        api_key: Gemini API key.  Falls back to ``GEMINI_API_KEY``.
        model: Embedding model name.
        dimension: Requested output dimensionality.
        base_url: API base URL.
        timeout: Hard timeout per request, in seconds.
    """

    kind = "remote"

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gemini-embedding-001",
        dimension: int = REMOTE_DIMENSION,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = EMBEDDING_TIMEOUT,
    ) -> None:
        self._api_key = api_key or os.environ.get("GEMINI_API_KEY")
        if not self._api_key:
            raise ValueError(
                "A Gemini API key is required for remote embeddings.  Set "
                "GEMINI_API_KEY, or use CORTEX_EMBEDDING=local / none."
            )
        self._model = model
        self._dimension = dimension
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def embed(self, text: str) -> list[float]:
        """Compute the embedding via ``models/<model>:embedContent``.

        Raises:
            ServiceUnavailable: If the API is unreachable, errors, times
                out, or returns a vector of the wrong size.
        """
        url = f"{self._base_url}/models/{self._model}:embedContent"
        payload = {
            "model": f"models/{self._model}",
            "content": {"parts": [{"text": text}]},
            "outputDimensionality": self._dimension,
        }
        data = post_json(url, payload, self._api_key, self._timeout, "Gemini embedding API")

        values = (data.get("embedding") or {}).get("values") if isinstance(data, dict) else None
        if not values or len(values) != self._dimension:
            raise ServiceUnavailable(f"Gemini returned an unexpected embedding: {str(data)[:200]}")
        return [float(v) for v in values]

    @property
    def dimension(self) -> int:
        return self._dimension

    def __repr__(self) -> str:
        return f"GeminiEmbedding(model={self._model!r}, dimension={self._dimension})"


# ---------------------------------------------------------------------------
# Local (sentence-transformers)
# ---------------------------------------------------------------------------


class LocalEmbedding(EmbeddingProvider):
    """Embedding provider using ``sentence-transformers`` locally.

    The model is lazily loaded on the first call to :meth:`embed` so that
    import time and memory usage stay low until embeddings are needed.

    Args:
        model_name: The Hugging Face model identifier.  Defaults to
            ``all-MiniLM-L6-v2`` (384 dimensions).
        device: PyTorch device string.
    """

    kind = "local"

    def __init__(
        self,
        model_name: str = "all-MiniLM-L6-v2",
        device: str = "cpu",
    ) -> None:
        self._model_name = model_name
        self._device = device
        self._model: Any = None

    def _load_model(self) -> None:
        """Import sentence-transformers and load the model."""
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as exc:
            raise ServiceUnavailable(
                "The 'sentence-transformers' package is required for local "
                "embeddings.  Install it with:\n\n"
                "    pip install 'cortex-memory[local]'\n"
            ) from exc

        logger.info(
            "Loading sentence-transformers model '%s' on %s ...",
            self._model_name,
            self._device,
        )
        try:
            self._model = SentenceTransformer(self._model_name, device=self._device)
        except Exception as exc:
            raise ServiceUnavailable(f"Cannot load local model {self._model_name}: {exc}") from exc

    def embed(self, text: str) -> list[float]:
        if self._model is None:
            self._load_model()
        try:
            vector = self._model.encode(text, convert_to_numpy=True)
        except Exception as exc:
            raise ServiceUnavailable(f"Local embedding failed: {exc}") from exc
        return [float(v) for v in vector.tolist()]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        if self._model is None:
            self._load_model()
        try:
            vectors = self._model.encode(texts, convert_to_numpy=True)
        except Exception as exc:
            raise ServiceUnavailable(f"Local embedding failed: {exc}") from exc
        return [[float(x) for x in v.tolist()] for v in vectors]

    @property
    def dimension(self) -> int:
        return LOCAL_DIMENSION

    def __repr__(self) -> str:
        return f"LocalEmbedding(model={self._model_name!r}, device={self._device!r})"


# ---------------------------------------------------------------------------
# Noop (keyword-only)
# ---------------------------------------------------------------------------


class NoopEmbedding(EmbeddingProvider):
    """Always unavailable; use when only keyword search is wanted."""

    def embed(self, text: str) -> list[float]:
        raise ServiceUnavailable("Embeddings are disabled.")

    @property
    def dimension(self) -> int:
        return 0

    def __repr__(self) -> str:
        return "NoopEmbedding()"


# ---------------------------------------------------------------------------
# Router with fallback
# ---------------------------------------------------------------------------


@dataclass
class QueryVector:
    """A query embedding and the memory column it should be compared with."""

    kind: str
    vector: list[float]


class EmbeddingRouter:
    """Tries the primary provider, then the local fallback.

    Args:
        primary: Remote provider, or ``None``.
        fallback: Local provider, or ``None``.
    """

    def __init__(
        self,
        primary: EmbeddingProvider | None = None,
        fallback: EmbeddingProvider | None = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback

    @property
    def providers(self) -> list[EmbeddingProvider]:
        return [p for p in (self.primary, self.fallback) if p is not None]

    def embed_query(self, text: str) -> QueryVector | None:
        """Embed *text* with the first provider that answers.

        Returns:
            A :class:`QueryVector`, or ``None`` when every provider is
            unavailable (callers fall back to keyword search).
        """
        for provider in self.providers:
            try:
                vector = provider.embed(text)
            except ServiceUnavailable as exc:
                logger.warning("Embedding provider %r unavailable: %s", provider, exc)
                continue
            if vector:
                return QueryVector(kind=provider.kind, vector=vector)
        return None

    def embed_memory(self, memory: Memory) -> bool:
        """Fill the memory's embedding field in place.

        The remote vector goes to ``embedding`` and the local one to
        ``local_embedding``.  Only the summary and content prose is sent.

        Returns:
            ``True`` if a vector was stored on the memory.

        Raises:
            ValueError: If *memory* is a raw ``code`` memory.
        """
        if memory.is_code:
            raise ValueError("Raw code memories are never embedded.")
        result = self.embed_query(embedding_text(memory))
        if result is None:
            return False
        if result.kind == "remote":
            memory.embedding = result.vector
        else:
            memory.local_embedding = result.vector
        return True

    def __repr__(self) -> str:
        return f"EmbeddingRouter(primary={self.primary!r}, fallback={self.fallback!r})"


def embedding_text(memory: Memory) -> str:
    """The prose sent to an embedding provider for *memory*."""
    if memory.summary and memory.summary != memory.content:
        return f"{memory.summary}\n\n{memory.content}"
    return memory.content


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_embedding_router(name: str = "gemini", **kwargs: Any) -> EmbeddingRouter:
    """Build a router from a provider name.

    Args:
        name: ``"gemini"`` (remote with local fallback), ``"local"`` (local
            only), or ``"none"`` (keyword search only).
        **kwargs: ``api_key``, ``local_model`` and ``local_device``.

    Raises:
        ValueError: If *name* is not recognised.
    """
    name = name.lower().strip()
    local_kwargs: dict[str, Any] = {}
    if kwargs.get("local_model"):
        local_kwargs["model_name"] = kwargs["local_model"]
    if kwargs.get("local_device"):
        local_kwargs["device"] = kwargs["local_device"]

    if name in ("none", "noop"):
        return EmbeddingRouter()
    if name in ("local", "sentence-transformers"):
        return EmbeddingRouter(fallback=LocalEmbedding(**local_kwargs))
    if name in ("gemini", "remote"):
        primary: EmbeddingProvider | None
        try:
            primary = GeminiEmbedding(api_key=kwargs.get("api_key"))
        except ValueError:
            logger.info("No GEMINI_API_KEY set; using the local embedding model only.")
            primary = None
        return EmbeddingRouter(primary=primary, fallback=LocalEmbedding(**local_kwargs))
    raise ValueError(
        f"Unknown embedding provider {name!r}. Supported providers: gemini, local, none"
    )
