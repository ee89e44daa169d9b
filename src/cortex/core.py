"""Core Cortex class -- the entry point used by the CLI and host hooks.

Ties the project and global stores together with the embedding router,
the text service, ranking and the lifecycle passes.  The main operations
are :meth:`Cortex.extract` (end of session), :meth:`Cortex.generate_surface`
(start of session) and :meth:`Cortex.recall` (mid-session queries).
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from . import code_index as _code_index
from .config import CortexConfig
from .consolidation import (
    MANUAL_MAX_CLUSTER_SIZE,
    MANUAL_THRESHOLD,
    META_EXTRACTIONS,
    ConsolidationResult,
    MergeProposal,
    consolidate,
    find_clusters,
    run_automatic,
)
from .embeddings import EmbeddingRouter, create_embedding_router
from .errors import CortexError, ServiceUnavailable
from .graph import auto_link, centrality_map
from .graph import link as _link
from .lifecycle import SweepResult, run_sweep
from .llm import TextService, create_text_service
from .memory import ACTIVE, GLOBAL_SCOPE, PROJECT_SCOPE, Edge, ExtractionCheckpoint, Memory, validate_scope
from .relevance import RankingContext, RankingWeights, RelevanceEngine
from .store import MemoryStore
from .surface import DEFAULT_TOKEN_BUDGET, PushSurface, build_push_surface, read_surface, surface_path, write_surface
from .transcript import DEFAULT_MAX_CHARS, GitContext, git_context, read_new_text

logger = logging.getLogger(__name__)

EXTRACTING_ENV = "CORTEX_EXTRACTING"
"""Set while an extraction runs so nested hook invocations do nothing."""

DEFAULT_RECALL_K = 10

SIMILARITY_WEIGHT = 0.7
"""Share of the recall score taken by query similarity; the rest is relevance."""


@dataclass
class ExtractionResult:
    """What one :meth:`Cortex.extract` call did.

    Attributes:
        session_id: The session that was processed.
        created: Memories inserted by this run.
        edges: Edges created while linking them.
        cursor: Transcript cursor after the run.
        sweep: Lifecycle sweep outcome, if it ran.
        consolidation: Automatic consolidation outcome, if it ran.
        surface_path: Push-surface artifact written, if any.
        skipped: ``True`` when the re-entrancy guard stopped the run.
    """

    session_id: str = ""
    created: list[Memory] = field(default_factory=list)
    edges: list[Edge] = field(default_factory=list)
    cursor: int = 0
    sweep: SweepResult | None = None
    consolidation: ConsolidationResult | None = None
    surface_path: str | None = None
    skipped: bool = False


@dataclass
class RecallHit:
    """A recalled memory with the scores that placed it."""

    memory: Memory
    score: float
    similarity: float = 0.0


class Cortex:
    """Persistent, project-scoped memory for a coding assistant.

    Cortex uses two stores:

    * a **project store** holding memories about the current repository;
    * a **global store** holding cross-project knowledge.

    When *project_path* is ``None`` only the global store is available and
    extraction writes there.

    Args:
        project_path: Project SQLite file, or ``None``.
        global_path: Global SQLite file.  Defaults to ``~/.cortex/global.db``.
        embedder: An :class:`EmbeddingRouter` or a router name
            (``"gemini"``, ``"local"``, ``"none"``).
        text_service: Extraction/classification/merge collaborator.  When
            omitted a Gemini service is used if an API key is available.
        project_root: Root of the project (for the surface artifact).
        api_key: Gemini API key.
        token_budget: Push-surface token budget.
        max_chars: Transcript characters per extraction run.
        weights: Ranking weights.
    """

    def __init__(
        self,
        project_path: str | os.PathLike[str] | None = None,
        global_path: str | os.PathLike[str] | None = None,
        embedder: str | EmbeddingRouter = "gemini",
        text_service: TextService | None = None,
        project_root: str | None = None,
        api_key: str | None = None,
        token_budget: int = DEFAULT_TOKEN_BUDGET,
        max_chars: int = DEFAULT_MAX_CHARS,
        weights: RankingWeights | None = None,
    ) -> None:
        self._project_store: MemoryStore | None = (
            MemoryStore(path=project_path, scope=PROJECT_SCOPE) if project_path else None
        )
        self._global_store = MemoryStore(path=global_path, scope=GLOBAL_SCOPE)

        if isinstance(embedder, EmbeddingRouter):
            self._embedder = embedder
        else:
            self._embedder = create_embedding_router(embedder, api_key=api_key)
        self._text_service = text_service or create_text_service(api_key)
        self._engine = RelevanceEngine(weights=weights)

        self.project_root = project_root
        self.token_budget = token_budget
        self.max_chars = max_chars

        logger.info(
            "Cortex initialised  project_store=%r  global_store=%r  embedder=%r",
            self._project_store,
            self._global_store,
            self._embedder,
        )

    @classmethod
    def from_config(cls, config: CortexConfig, **kwargs: Any) -> Cortex:
        """Build an instance from a :class:`~cortex.config.CortexConfig`."""
        options: dict[str, Any] = {
            "project_path": config.project_path,
            "global_path": config.global_path,
            "embedder": config.embedding,
            "project_root": config.project_root,
            "api_key": config.api_key,
            "token_budget": config.token_budget,
            "max_chars": config.max_chars,
        }
        options.update(kwargs)
        return cls(**options)

    # ------------------------------------------------------------------
    # Path properties
    # ------------------------------------------------------------------

    @property
    def project_path(self) -> str | None:
        """Return the project database path, or ``None`` if not configured."""
        return self._project_store.path if self._project_store else None

    @property
    def global_path(self) -> str:
        """Return the global database path."""
        return self._global_store.path

    @property
    def surface_path(self) -> str | None:
        """Push-surface artifact path, or ``None`` without a project root."""
        return surface_path(self.project_root) if self.project_root else None

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def extract(
        self,
        session_id: str,
        transcript_path: str,
        cwd: str | None = None,
        now: datetime | None = None,
    ) -> ExtractionResult:
        """Extract memories from the new part of a session transcript.

        Runs insert, then link, then sweep and consolidation, advances the
        session cursor and regenerates the push surface.  A failing
        external service only skips its own step.

        Never raises: unexpected errors are logged and an empty result is
        returned so the host session is never blocked.
        """
        if os.environ.get(EXTRACTING_ENV) == "1":
            logger.info("Extraction already running; skipping session %s", session_id)
            return ExtractionResult(session_id=session_id, skipped=True)

        os.environ[EXTRACTING_ENV] = "1"
        try:
            return self._extract(session_id, transcript_path, cwd, now or datetime.now(timezone.utc))
        except Exception:
            logger.exception("Extraction failed for session %s", session_id)
            return ExtractionResult(session_id=session_id)
        finally:
            os.environ.pop(EXTRACTING_ENV, None)

    def _extract(
        self,
        session_id: str,
        transcript_path: str,
        cwd: str | None,
        now: datetime,
    ) -> ExtractionResult:
        store = self._primary_store()
        result = ExtractionResult(session_id=session_id)

        checkpoint = store.get_checkpoint(session_id)
        cursor = checkpoint.cursor_position if checkpoint else 0
        chunk = read_new_text(transcript_path, cursor, self.max_chars)
        result.cursor = cursor
        if chunk.is_empty:
            if chunk.end != cursor:
                store.save_checkpoint(ExtractionCheckpoint(session_id, chunk.end, now))
                result.cursor = chunk.end
            logger.info("No new transcript text for session %s", session_id)
            return result

        git = git_context(cwd) if cwd else GitContext()
        try:
            proposed = self._text_service.extract(chunk.text, git.as_dict())
        except ServiceUnavailable as exc:
            # Cursor stays put so the same text is retried next time.
            logger.warning("Extraction skipped for session %s: %s", session_id, exc)
            return result

        memories: list[Memory] = []
        for item in proposed:
            context: dict[str, Any] = {}
            if git.branch:
                context["branch"] = git.branch
            memories.append(
                Memory(
                    content=item.content,
                    summary=item.summary,
                    memory_type=item.memory_type,
                    scope=store.scope,
                    confidence=item.confidence,
                    priority=item.priority,
                    tags=list(item.tags),
                    source_type="extraction",
                    source_session=session_id,
                    source_context=context,
                    created_at=now,
                    updated_at=now,
                )
            )

        embedded = {mem.id: self._embedder.embed_memory(mem) for mem in memories}

        with store.lock:
            with store.transaction():
                for mem in memories:
                    store.insert(mem)
                    if not embedded[mem.id]:
                        store.enqueue_backfill(mem.id)
                store.save_checkpoint(ExtractionCheckpoint(session_id, chunk.end, now))
        result.created = memories
        result.cursor = chunk.end

        for mem in memories:
            linked = auto_link(store, mem, text_service=self._text_service)
            result.edges.extend(linked.edges)

        store.increment_meta(META_EXTRACTIONS)

        try:
            result.sweep = run_sweep(store, now)
        except CortexError as exc:
            logger.warning("Lifecycle sweep skipped: %s", exc)

        try:
            result.consolidation = run_automatic(store, self._text_service, self._embedder, now)
        except CortexError as exc:
            logger.warning("Automatic consolidation skipped: %s", exc)

        if self.project_root:
            try:
                result.surface_path = self.generate_surface(cwd or self.project_root)
            except (CortexError, OSError) as exc:
                logger.warning("Push surface not regenerated: %s", exc)

        logger.info(
            "Extracted %d memories (%d edges) from session %s, cursor %d",
            len(result.created),
            len(result.edges),
            session_id,
            result.cursor,
        )
        return result

    # ------------------------------------------------------------------
    # Explicit writes
    # ------------------------------------------------------------------

    def remember(
        self,
        content: str,
        memory_type: str = "context",
        scope: str = PROJECT_SCOPE,
        summary: str = "",
        tags: list[str] | None = None,
        priority: int = 5,
        confidence: float = 0.9,
        pinned: bool = False,
        source_context: dict[str, Any] | None = None,
    ) -> Memory:
        """Store a memory on explicit request and link it.

        Raises:
            ValueError: For ``code``/``code_description`` types (use
                :meth:`index_code`) or invalid fields.
            RuntimeError: If *scope* is project but no project store exists.
        """
        if memory_type in ("code", "code_description"):
            raise ValueError("Use index_code() to store code memories.")
        store = self._store_for_scope(validate_scope(scope))
        mem = Memory(
            content=content,
            summary=summary,
            memory_type=memory_type,
            scope=scope,
            tags=tags or [],
            priority=priority,
            confidence=confidence,
            pinned=pinned,
            source_type="manual",
            source_context=source_context or {},
        )
        embedded = self._embedder.embed_memory(mem)
        with store.lock, store.transaction():
            store.insert(mem)
            if not embedded:
                store.enqueue_backfill(mem.id)
        auto_link(store, mem, text_service=self._text_service)
        return mem

    def backfill(self, limit: int = 100) -> int:
        """Embed memories queued while no embedding service answered.

        Returns:
            Number of memories embedded.
        """
        done = 0
        for store in self._stores():
            for mem in store.pending_backfill(limit):
                if mem.embedding is not None or mem.local_embedding is not None:
                    store.clear_backfill(mem.id)
                    continue
                if not self._embedder.embed_memory(mem):
                    logger.info("Backfill stopped: no embedding service available")
                    return done
                with store.transaction():
                    store.update(
                        mem.id,
                        touch=False,
                        embedding=mem.embedding,
                        local_embedding=mem.local_embedding,
                    )
                    store.clear_backfill(mem.id)
                auto_link(store, mem, text_service=self._text_service)
                done += 1
        logger.info("Backfilled %d embeddings", done)
        return done

    def index_code(
        self,
        file_path: str,
        prose_summary: str,
        line_range: tuple[int | None, int | None] | None = None,
        scope: str = PROJECT_SCOPE,
    ) -> _code_index.IndexedCode:
        """Index a file range as a prose/code pair (see :mod:`cortex.code_index`)."""
        store = self._store_for_scope(validate_scope(scope))
        indexed = _code_index.index_code(
            store,
            file_path,
            prose_summary,
            line_range=line_range,
            embedder=self._embedder,
            scope=scope,
            base_dir=self.project_root,
        )
        auto_link(store, indexed.prose, text_service=self._text_service)
        return indexed

    def link(
        self,
        source_id: str,
        target_id: str,
        relation_type: str,
        strength: float = 1.0,
        bidirectional: bool = False,
        scope: str = PROJECT_SCOPE,
    ) -> Edge:
        """Create an edge by hand; the only path that may add ``supersedes``."""
        store = self._store_for_scope(validate_scope(scope))
        return _link(store, source_id, target_id, relation_type, strength, bidirectional)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def recall(
        self,
        query: str,
        k: int = DEFAULT_RECALL_K,
        scope: str | None = None,
        now: datetime | None = None,
    ) -> list[RecallHit]:
        """Recall the memories most relevant to *query*.

        Vector matches (when an embedding service answers) are merged with
        full-text matches, then ordered by a blend of query similarity and
        relevance score.  Every returned memory has its access recorded,
        which brings archived memories back to active.

        Args:
            query: Natural-language query.
            k: Maximum number of results.
            scope: ``"project"``, ``"global"`` or ``None`` for both.

        Returns:
            Up to *k* :class:`RecallHit` objects, best first.
        """
        if not query.strip() or k <= 0:
            return []
        query_vector = self._embedder.embed_query(query)
        if query_vector is None:
            logger.info("Recall falling back to keyword search only")

        hits: list[tuple[RecallHit, MemoryStore]] = []
        for store in self._stores(scope):
            matches: dict[str, tuple[Memory, float]] = {}
            if query_vector is not None:
                for mem, sim in store.vector_matches(query_vector.vector, query_vector.kind, limit=k * 3):
                    matches[mem.id] = (mem, sim)

            keyword = store.keyword_matches(query, limit=k * 3)
            top = max((rank for _, rank in keyword), default=0.0)
            for mem, rank in keyword:
                normalised = rank / top if top > 0 else 0.0
                if mem.id in matches:
                    prev_mem, prev_sim = matches[mem.id]
                    matches[mem.id] = (prev_mem, max(prev_sim, normalised))
                else:
                    matches[mem.id] = (mem, normalised)

            if not matches:
                continue
            central = centrality_map(store)
            max_access = max(m.access_count for m, _ in matches.values())
            for mem, sim in matches.values():
                relevance = self._engine.score(mem, central.get(mem.id, 0.0), max_access)
                score = SIMILARITY_WEIGHT * max(0.0, sim) + (1 - SIMILARITY_WEIGHT) * relevance
                hits.append((RecallHit(memory=mem, score=score, similarity=sim), store))

        hits.sort(key=lambda pair: (pair[0].score, pair[0].memory.created_at), reverse=True)
        selected = hits[:k]

        now = now or datetime.now(timezone.utc)
        for hit, store in selected:
            store.record_access(hit.memory.id, now)
            hit.memory.access_count += 1
            hit.memory.last_accessed_at = now
            if hit.memory.status != ACTIVE:
                hit.memory.status = ACTIVE
                hit.memory.low_confidence_since = None
                hit.memory.archived_at = None
        return [hit for hit, _ in selected]

    def get(self, memory_id: str) -> Memory | None:
        """Look a memory up in the project store, then the global store."""
        for store in self._stores():
            mem = store.get(memory_id)
            if mem is not None:
                return mem
        return None

    # ------------------------------------------------------------------
    # Push surface
    # ------------------------------------------------------------------

    def build_surface(self, cwd: str | None = None, context: RankingContext | None = None) -> PushSurface:
        """Select the push surface across both stores."""
        if context is None:
            git = git_context(cwd or self.project_root or os.getcwd())
            context = RankingContext(branch=git.branch, changed_files=git.changed_files)
        candidates: list[Memory] = []
        central: dict[str, float] = {}
        for store in self._stores():
            candidates.extend(store.list_active())
            central.update(centrality_map(store))
        return build_push_surface(
            candidates,
            token_budget=self.token_budget,
            context=context,
            centrality=central,
            engine=self._engine,
        )

    def generate_surface(self, cwd: str | None = None, context: RankingContext | None = None) -> str:
        """Write the push surface into the project artifact.

        Returns:
            The artifact path.

        Raises:
            RuntimeError: If no project root is known.
        """
        path = self.surface_path
        if path is None:
            raise RuntimeError("No project root detected; cannot write the push surface.")
        surface = self.build_surface(cwd, context)
        write_surface(path, surface.render())
        return path

    def load_surface(self) -> str | None:
        """Return the current push-surface body, or ``None`` if not generated yet."""
        path = self.surface_path
        return read_surface(path) if path else None

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def consolidate(
        self,
        scope: str = PROJECT_SCOPE,
        threshold: float = MANUAL_THRESHOLD,
        max_cluster_size: int | None = MANUAL_MAX_CLUSTER_SIZE,
        approve: Callable[[list[MergeProposal]], list[MergeProposal]] | None = None,
    ) -> ConsolidationResult:
        """Run a manual consolidation pass.

        Raises:
            ConsolidationAborted: If the run failed; the store is unchanged.
        """
        store = self._store_for_scope(validate_scope(scope))
        clusters = find_clusters(store.list_active(), threshold=threshold, max_cluster_size=max_cluster_size)
        if not clusters:
            return ConsolidationResult()
        return consolidate(store, clusters, self._text_service, embedder=self._embedder, approve=approve)

    def sweep(self, scope: str | None = None, now: datetime | None = None) -> dict[str, SweepResult]:
        """Run the lifecycle sweep on each selected store."""
        return {store.scope: run_sweep(store, now) for store in self._stores(scope)}

    def stats(self) -> dict[str, Any]:
        """Counts per store, status and type."""
        out: dict[str, Any] = {}
        for store in self._stores():
            by_status = {
                status: store.count(status) for status in ("active", "superseded", "archived")
            }
            by_type: dict[str, int] = {}
            for mem in store.list_active():
                by_type[mem.memory_type] = by_type.get(mem.memory_type, 0) + 1
            out[store.scope] = {
                "path": store.path,
                "total": store.count(),
                "status": by_status,
                "types": by_type,
                "edges": len(store.list_edges()),
                "pending_backfill": len(store.pending_backfill()),
                "extractions_since_consolidation": int(store.get_meta(META_EXTRACTIONS, "0") or 0),
            }
        return out

    def close(self) -> None:
        """Close the underlying database connections."""
        if self._project_store:
            self._project_store.close()
        self._global_store.close()

    def __enter__(self) -> Cortex:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _primary_store(self) -> MemoryStore:
        return self._project_store or self._global_store

    def _stores(self, scope: str | None = None) -> list[MemoryStore]:
        stores: list[MemoryStore] = []
        if scope in (None, PROJECT_SCOPE) and self._project_store is not None:
            stores.append(self._project_store)
        if scope in (None, GLOBAL_SCOPE):
            stores.append(self._global_store)
        return stores

    def _store_for_scope(self, scope: str) -> MemoryStore:
        if scope == GLOBAL_SCOPE:
            return self._global_store
        if self._project_store is not None:
            return self._project_store
        raise RuntimeError(
            "No project database configured. Run inside a project directory, "
            "set CORTEX_PROJECT_ROOT, or use scope='global'."
        )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"Cortex(project_store={self._project_store!r}, "
            f"global_store={self._global_store!r}, "
            f"embedder={self._embedder!r})"
        )
