"""Cortex -- persistent, project-scoped memory for AI coding assistants.

Knowledge is extracted from session transcripts when a session ends,
stored in SQLite, linked into a typed graph, decayed and consolidated over
time, and surfaced as a short Markdown digest when the next session
starts.

Quick start::

    from cortex import Cortex

    cortex = Cortex(project_path=".cortex/memories.db", embedder="local")
    cortex.remember("Auth tokens are refreshed by the API gateway.", memory_type="architecture")
    hits = cortex.recall("who refreshes tokens?")

Everything works offline: without a Gemini API key, embeddings come from a
local sentence-transformers model (or are queued for backfill) and recall
falls back to full-text search.
"""

from __future__ import annotations

__version__ = "1.0.0"

from .code_index import IndexedCode, index_code
from .config import CortexConfig
from .consolidation import ConsolidationResult, MergeProposal, StoreCheckpoint, find_clusters
from .core import Cortex, ExtractionResult, RecallHit
from .embeddings import (
    EmbeddingProvider,
    EmbeddingRouter,
    GeminiEmbedding,
    LocalEmbedding,
    NoopEmbedding,
    create_embedding_router,
)
from .errors import (
    ConsolidationAborted,
    CortexError,
    DimensionMismatch,
    DuplicateEdge,
    EmptyExtraction,
    LockTimeout,
    ServiceUnavailable,
    StoreUnavailable,
)
from .graph import auto_link, centrality, link
from .lifecycle import apply_decay, run_sweep, sweep_status
from .llm import GeminiTextService, OfflineTextService, TextService, create_text_service
from .locking import StoreLock
from .memory import GLOBAL_SCOPE, PROJECT_SCOPE, Edge, ExtractionCheckpoint, Memory, validate_scope
from .relevance import RankingContext, RankingWeights, RelevanceEngine
from .similarity import cosine_similarity
from .store import MemoryStore, detect_project_root
from .surface import PushSurface, build_push_surface, write_surface

__all__ = [
    # Core
    "Cortex",
    "ExtractionResult",
    "RecallHit",
    "CortexConfig",
    # Data model
    "Memory",
    "Edge",
    "ExtractionCheckpoint",
    "PROJECT_SCOPE",
    "GLOBAL_SCOPE",
    "validate_scope",
    # Storage
    "MemoryStore",
    "StoreLock",
    "detect_project_root",
    # Similarity and ranking
    "cosine_similarity",
    "RelevanceEngine",
    "RankingWeights",
    "RankingContext",
    # Push surface
    "PushSurface",
    "build_push_surface",
    "write_surface",
    # Graph
    "auto_link",
    "centrality",
    "link",
    # Lifecycle
    "apply_decay",
    "sweep_status",
    "run_sweep",
    # Consolidation
    "find_clusters",
    "ConsolidationResult",
    "MergeProposal",
    "StoreCheckpoint",
    # Code indexing
    "index_code",
    "IndexedCode",
    # Embeddings
    "EmbeddingProvider",
    "EmbeddingRouter",
    "GeminiEmbedding",
    "LocalEmbedding",
    "NoopEmbedding",
    "create_embedding_router",
    # Text service
    "TextService",
    "GeminiTextService",
    "OfflineTextService",
    "create_text_service",
    # Errors
    "CortexError",
    "StoreUnavailable",
    "DuplicateEdge",
    "DimensionMismatch",
    "ServiceUnavailable",
    "EmptyExtraction",
    "LockTimeout",
    "ConsolidationAborted",
    # Metadata
    "__version__",
]
