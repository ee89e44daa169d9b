"""Data model for Cortex.

Defines the :class:`Memory`, :class:`Edge` and :class:`ExtractionCheckpoint`
dataclasses plus the closed vocabularies (memory types, scopes, statuses,
relation types) used throughout the package.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------

PROJECT_SCOPE = "project"
GLOBAL_SCOPE = "global"
VALID_SCOPES = frozenset({PROJECT_SCOPE, GLOBAL_SCOPE})

MEMORY_TYPES = frozenset(
    {
        "architecture",
        "decision",
        "pattern",
        "gotcha",
        "context",
        "progress",
        "code_description",
        "code",
    }
)

ACTIVE = "active"
SUPERSEDED = "superseded"
ARCHIVED = "archived"
PRUNED = "pruned"
MEMORY_STATUSES = frozenset({ACTIVE, SUPERSEDED, ARCHIVED, PRUNED})

RELATION_TYPES = frozenset(
    {
        "relates_to",
        "derived_from",
        "contradicts",
        "exemplifies",
        "refines",
        "supersedes",
        "source_of",
    }
)

SUMMARY_MAX_CHARS = 200
_ELLIPSIS = "..."


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    """Generate a new unique memory identifier."""
    return uuid.uuid4().hex


def validate_scope(scope: str) -> str:
    """Validate a scope value.

    Args:
        scope: The scope to check.

    Returns:
        The validated scope.

    Raises:
        ValueError: If *scope* is not ``"project"`` or ``"global"``.
    """
    if scope not in VALID_SCOPES:
        raise ValueError(f"Invalid scope {scope!r}. Must be 'project' or 'global'.")
    return scope


def make_summary(text: str, limit: int = SUMMARY_MAX_CHARS) -> str:
    """Collapse whitespace and bound *text* to *limit* characters.

    Longer text is cut and terminated with ``"..."`` so the result is
    never longer than *limit*.
    """
    flat = " ".join(text.split())
    if len(flat) <= limit:
        return flat
    return flat[: limit - len(_ELLIPSIS)].rstrip() + _ELLIPSIS


def _parse_dt(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _dedupe_tags(tags: Any) -> list[str]:
    seen: list[str] = []
    for tag in tags or []:
        tag = str(tag).strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


@dataclass
class Memory:
    """A single unit of knowledge stored in Cortex.

    Attributes:
        content: Full text of the memory.
        memory_type: One of :data:`MEMORY_TYPES`.
        id: Unique identifier (hex UUID).  Auto-generated if not provided.
        summary: At most 200 characters.  Derived from *content* when empty.
        scope: ``"project"`` or ``"global"``.
        embedding: Vector from the remote embedding service, or ``None``.
        local_embedding: Vector from the local fallback model, or ``None``.
        confidence: How much the memory is trusted, in ``[0, 1]``.
        priority: Author-assigned priority in ``[1, 10]``.
        pinned: Pinned memories never decay and always reach the push
            surface.
        source_type: Where the memory came from (``extraction``,
            ``manual``, ``code_index``, ``consolidation``).
        source_session: Session that produced the memory.
        source_context: Structured provenance, e.g. ``file_path``,
            ``line_start``, ``line_end``, ``branch``.
        tags: Ordered, de-duplicated tags.
        access_count: Number of times the memory was recalled.
        last_accessed_at: Time of the last recall.
        status: One of :data:`MEMORY_STATUSES`.
        low_confidence_since: When confidence first dropped below the
            archive threshold, ``None`` while it is above.
        archived_at: When the memory was archived.
    """

    content: str
    memory_type: str = "context"
    id: str = field(default_factory=_new_id)
    summary: str = ""
    scope: str = PROJECT_SCOPE
    embedding: list[float] | None = None
    local_embedding: list[float] | None = None
    confidence: float = 0.7
    priority: int = 5
    pinned: bool = False
    source_type: str = "manual"
    source_session: str | None = None
    source_context: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    access_count: int = 0
    last_accessed_at: datetime | None = None
    status: str = ACTIVE
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    low_confidence_since: datetime | None = None
    archived_at: datetime | None = None

    def __post_init__(self) -> None:
        """Validate and normalise field values."""
        if not self.content or not self.content.strip():
            raise ValueError("Memory content must not be empty.")
        if self.memory_type not in MEMORY_TYPES:
            raise ValueError(f"Invalid memory type {self.memory_type!r}.")
        if self.status not in MEMORY_STATUSES:
            raise ValueError(f"Invalid memory status {self.status!r}.")
        validate_scope(self.scope)
        if self.memory_type == "code" and (
            self.embedding is not None or self.local_embedding is not None
        ):
            raise ValueError("Raw code memories must never carry an embedding.")

        self.summary = make_summary(self.summary or self.content)
        self.confidence = max(0.0, min(1.0, float(self.confidence)))
        self.priority = max(1, min(10, int(self.priority)))
        self.tags = _dedupe_tags(self.tags)
        if self.embedding is not None and len(self.embedding) == 0:
            self.embedding = None
        if self.local_embedding is not None and len(self.local_embedding) == 0:
            self.local_embedding = None

    @property
    def is_code(self) -> bool:
        return self.memory_type == "code"

    @property
    def file_path(self) -> str | None:
        """The file this memory was indexed from, if any."""
        value = self.source_context.get("file_path")
        return str(value) if value else None

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialise the memory to a JSON-safe dictionary."""
        data = asdict(self)
        for key in (
            "created_at",
            "updated_at",
            "last_accessed_at",
            "low_confidence_since",
            "archived_at",
        ):
            value = getattr(self, key)
            data[key] = value.isoformat() if value is not None else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Memory:
        """Reconstruct a Memory from the output of :meth:`to_dict`."""
        d = dict(data)
        for key in (
            "created_at",
            "updated_at",
            "last_accessed_at",
            "low_confidence_since",
            "archived_at",
        ):
            if key in d:
                d[key] = _parse_dt(d[key])
        ctx = d.get("source_context")
        if isinstance(ctx, str):
            d["source_context"] = json.loads(ctx)
        return cls(**d)

    def __repr__(self) -> str:  # pragma: no cover
        preview = self.summary[:60] + ("..." if len(self.summary) > 60 else "")
        return (
            f"Memory(id={self.id!r}, type={self.memory_type!r}, "
            f"summary={preview!r}, confidence={self.confidence:.2f}, "
            f"status={self.status!r})"
        )


# ---------------------------------------------------------------------------
# Edge
# ---------------------------------------------------------------------------


@dataclass
class Edge:
    """A typed relationship between two memories.

    Attributes:
        source_id: Memory the edge starts from.
        target_id: Memory the edge points to.
        relation_type: One of :data:`RELATION_TYPES`.
        strength: Edge weight in ``[0, 1]``.
        bidirectional: Whether the relation holds in both directions.
        status: ``"active"`` or ``"archived"``.
        created_at: Creation time (UTC).
        id: Row id assigned by the store, ``None`` until saved.
    """

    source_id: str
    target_id: str
    relation_type: str
    strength: float = 0.5
    bidirectional: bool = False
    status: str = ACTIVE
    created_at: datetime = field(default_factory=_utcnow)
    id: int | None = None

    def __post_init__(self) -> None:
        if self.relation_type not in RELATION_TYPES:
            raise ValueError(f"Invalid relation type {self.relation_type!r}.")
        if self.source_id == self.target_id:
            raise ValueError("An edge cannot connect a memory to itself.")
        self.strength = max(0.0, min(1.0, float(self.strength)))

    @property
    def key(self) -> tuple[str, str, str]:
        """The uniqueness triple of this edge."""
        return (self.source_id, self.target_id, self.relation_type)


# ---------------------------------------------------------------------------
# Extraction checkpoint
# ---------------------------------------------------------------------------


@dataclass
class ExtractionCheckpoint:
    """How far into a session transcript extraction has progressed."""

    session_id: str
    cursor_position: int = 0
    extracted_at: datetime = field(default_factory=_utcnow)
