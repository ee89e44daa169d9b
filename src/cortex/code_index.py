"""Prose/code pairing for indexed source files.

Indexing a file range stores two memories: a ``code_description`` holding
the prose summary (embedded) and a ``code`` memory holding the raw text
(never embedded), joined by a ``source_of`` edge.  Re-indexing the same
path supersedes the previous pair after the new one is in place, so the
file always has at least one active version.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from .embeddings import EmbeddingRouter
from .errors import EmptyExtraction
from .memory import ACTIVE, PROJECT_SCOPE, SUPERSEDED, Edge, Memory
from .store import MemoryStore

logger = logging.getLogger(__name__)


@dataclass
class IndexedCode:
    """The memories produced by :func:`index_code`."""

    prose: Memory
    code: Memory
    superseded_ids: list[str] = field(default_factory=list)


def read_line_range(
    file_path: str,
    line_start: int | None = None,
    line_end: int | None = None,
) -> tuple[str, int, int]:
    """Read lines ``line_start..line_end`` (1-based, inclusive) of a file.

    Omitted bounds default to the first/last line; bounds past the end are
    clipped.

    Returns:
        ``(text, first_line, last_line)``.

    Raises:
        EmptyExtraction: If the selected text is blank.
        ValueError: If the bounds are inverted or below 1.
    """
    with open(file_path, encoding="utf-8", errors="replace") as fh:
        lines = fh.read().splitlines()

    first = 1 if line_start is None else line_start
    last = len(lines) if line_end is None else min(line_end, len(lines))
    if first < 1 or (line_end is not None and line_end < first):
        raise ValueError(f"Invalid line range {line_start}-{line_end} for {file_path}.")

    selected = lines[first - 1 : last]
    text = "\n".join(selected)
    if not text.strip():
        raise EmptyExtraction(f"No code found in {file_path} lines {first}-{last}.")
    return text, first, last


def index_code(
    store: MemoryStore,
    file_path: str,
    prose_summary: str,
    line_range: tuple[int | None, int | None] | None = None,
    embedder: EmbeddingRouter | None = None,
    scope: str = PROJECT_SCOPE,
    base_dir: str | None = None,
    source_session: str | None = None,
) -> IndexedCode:
    """Index a file (or line range) as a prose/code memory pair.

    Args:
        store: Store of the target scope.
        file_path: File to read.  Stored relative to *base_dir* when given.
        prose_summary: Human-readable description of the code.
        line_range: ``(start, end)`` 1-based inclusive; ``None`` for the
            whole file.
        embedder: Embeds the prose memory only.
        scope: Memory scope (must match *store*).
        base_dir: Directory the stored path is made relative to.
        source_session: Session that requested the indexing.

    Returns:
        An :class:`IndexedCode` with the new pair and the superseded ids.

    Raises:
        EmptyExtraction: If the range holds no text.
        ValueError: If *prose_summary* is empty.
        LockTimeout: If the store lock cannot be acquired.
    """
    if not prose_summary or not prose_summary.strip():
        raise ValueError("A prose summary is required to index code.")

    start, end = line_range if line_range is not None else (None, None)
    read_path = file_path
    if base_dir and not os.path.isabs(file_path):
        read_path = os.path.join(base_dir, file_path)
    text, first, last = read_line_range(read_path, start, end)
    stored_path = _stored_path(read_path, base_dir)

    context = {"file_path": stored_path, "line_start": first, "line_end": last}
    prose = Memory(
        content=prose_summary.strip(),
        memory_type="code_description",
        scope=scope,
        priority=6,
        confidence=0.9,
        source_type="code_index",
        source_session=source_session,
        source_context=dict(context),
        tags=["code", os.path.basename(stored_path)],
    )
    code = Memory(
        content=text,
        summary=f"{stored_path}:{first}-{last}",
        memory_type="code",
        scope=scope,
        priority=4,
        confidence=0.9,
        source_type="code_index",
        source_session=source_session,
        source_context=dict(context),
        tags=["code", os.path.basename(stored_path)],
    )

    embedded = False
    if embedder is not None:
        embedded = embedder.embed_memory(prose)

    with store.lock:
        previous = store.find_by_file_path(stored_path, memory_type="code", status=ACTIVE)
        previous_prose = _partners(store, previous)

        # New pair first: a crash after this point leaves two versions, never zero.
        with store.transaction():
            store.insert(prose)
            store.insert(code)
            store.add_edge(
                Edge(source_id=prose.id, target_id=code.id, relation_type="source_of", strength=1.0)
            )
            if not embedded:
                store.enqueue_backfill(prose.id)

        superseded: list[str] = []
        with store.transaction():
            for old_new in [(old, code) for old in previous] + [(old, prose) for old in previous_prose]:
                old, replacement = old_new
                store.update(old.id, status=SUPERSEDED)
                store.add_edge(
                    Edge(
                        source_id=replacement.id,
                        target_id=old.id,
                        relation_type="supersedes",
                        strength=1.0,
                    )
                )
                superseded.append(old.id)

    logger.info(
        "Indexed %s:%d-%d (%d chars), superseded %d memories",
        stored_path,
        first,
        last,
        len(text),
        len(superseded),
    )
    return IndexedCode(prose=prose, code=code, superseded_ids=superseded)


def _stored_path(path: str, base_dir: str | None) -> str:
    real = os.path.realpath(path)
    if base_dir:
        base = os.path.realpath(base_dir)
        try:
            rel = os.path.relpath(real, base)
        except ValueError:
            return real
        if not rel.startswith(".."):
            return rel.replace(os.sep, "/")
    return real


def _partners(store: MemoryStore, code_memories: list[Memory]) -> list[Memory]:
    """Active ``code_description`` memories linked to *code_memories* via ``source_of``."""
    partners: list[Memory] = []
    seen: set[str] = set()
    for code in code_memories:
        for edge in store.get_edges(code.id, direction="in", relation_type="source_of"):
            if edge.source_id in seen:
                continue
            prose = store.get(edge.source_id)
            if prose is not None and prose.status == ACTIVE and prose.memory_type == "code_description":
                partners.append(prose)
                seen.add(prose.id)
    return partners
