"""Confidence decay and status lifecycle for Cortex memories.

Decay is half-life based and depends on the memory type::

    confidence' = confidence * 0.5 ** (days_since_update / half_life)

Status moves active -> archived once confidence is below
:data:`ARCHIVE_CONFIDENCE` and the memory has gone untouched for
:data:`ARCHIVE_AFTER_DAYS`, and archived ->
pruned after :data:`PRUNE_AFTER_DAYS` without access.  A recall restores an
archived memory.  :func:`apply_decay` and :func:`sweep_status` are pure;
:func:`run_sweep` applies them to a store.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .graph import centrality_map
from .memory import ACTIVE, ARCHIVED, PRUNED, Memory
from .store import MemoryStore

logger = logging.getLogger(__name__)

HALF_LIVES: dict[str, float] = {
    "progress": 7.0,
    "context": 30.0,
    "gotcha": 45.0,
    "pattern": 60.0,
    "architecture": math.inf,
    "decision": math.inf,
    "code_description": math.inf,
    "code": math.inf,
}
"""Half-life in days per memory type."""

FREQUENT_ACCESS = 10
CENTRAL = 0.5
ARCHIVE_CONFIDENCE = 0.3
ARCHIVE_AFTER_DAYS = 14.0
PRUNE_AFTER_DAYS = 30.0

_SECONDS_PER_DAY = 86400.0


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _days_between(start: datetime, end: datetime) -> float:
    return max(0.0, (_aware(end) - _aware(start)).total_seconds() / _SECONDS_PER_DAY)


def last_touched(memory: Memory) -> datetime:
    """The later of ``updated_at`` and ``last_accessed_at``."""
    touched = _aware(memory.updated_at)
    if memory.last_accessed_at is not None and _aware(memory.last_accessed_at) > touched:
        touched = _aware(memory.last_accessed_at)
    return touched


def effective_half_life(memory: Memory, centrality: float = 0.0) -> float:
    """Half-life of *memory* after boosts.

    Doubles when ``access_count > 10`` and again when ``centrality > 0.5``.
    """
    half_life = HALF_LIVES.get(memory.memory_type, math.inf)
    if memory.access_count > FREQUENT_ACCESS:
        half_life *= 2
    if centrality > CENTRAL:
        half_life *= 2
    return half_life


def apply_decay(memory: Memory, now: datetime | None = None, centrality: float = 0.0) -> float:
    """Return the decayed confidence of *memory* at *now*.

    Pinned memories and types without decay return their confidence
    unchanged, as does ``days_since_update == 0``.
    """
    if memory.pinned:
        return memory.confidence
    half_life = effective_half_life(memory, centrality)
    if math.isinf(half_life):
        return memory.confidence
    days = _days_between(memory.updated_at, now or datetime.now(timezone.utc))
    if days == 0:
        return memory.confidence
    return memory.confidence * 0.5 ** (days / half_life)


@dataclass
class StatusChange:
    """Result of :func:`sweep_status` for one memory.

    Attributes:
        status: The new status.
        low_confidence_since: New value of the low-confidence clock.
        archived_at: New archive timestamp.
    """

    status: str
    low_confidence_since: datetime | None
    archived_at: datetime | None

    def differs_from(self, memory: Memory) -> bool:
        return (
            self.status != memory.status
            or self.low_confidence_since != memory.low_confidence_since
            or self.archived_at != memory.archived_at
        )


def sweep_status(memory: Memory, now: datetime | None = None) -> StatusChange:
    """Compute the next lifecycle state of *memory*.

    * active, confidence < 0.3: archive once the memory has gone untouched
      for 14 days.  The clock runs from ``low_confidence_since`` when a
      previous sweep set it, otherwise from :func:`last_touched`; a later
      access restarts it.
    * active, confidence >= 0.3: reset the clock.
    * archived for 30 days with no access since: pruned.

    Pinned memories never change state.
    """
    now = now or datetime.now(timezone.utc)
    unchanged = StatusChange(memory.status, memory.low_confidence_since, memory.archived_at)
    if memory.pinned:
        return unchanged

    if memory.status == ACTIVE:
        if memory.confidence >= ARCHIVE_CONFIDENCE:
            return StatusChange(ACTIVE, None, None)
        since = _aware(memory.low_confidence_since or last_touched(memory))
        if memory.last_accessed_at is not None and _aware(memory.last_accessed_at) > since:
            since = _aware(memory.last_accessed_at)
        if _days_between(since, now) >= ARCHIVE_AFTER_DAYS:
            return StatusChange(ARCHIVED, since, now)
        return StatusChange(ACTIVE, since, None)

    if memory.status == ARCHIVED:
        archived_at = memory.archived_at or memory.updated_at
        last_touch = archived_at
        if memory.last_accessed_at is not None and _aware(memory.last_accessed_at) > _aware(last_touch):
            last_touch = memory.last_accessed_at
        if _days_between(last_touch, now) >= PRUNE_AFTER_DAYS:
            return StatusChange(PRUNED, memory.low_confidence_since, archived_at)
        return StatusChange(ARCHIVED, memory.low_confidence_since, archived_at)

    return unchanged


def restore_on_access(memory: Memory, now: datetime | None = None) -> Memory:
    """Return archived *memory* to active and reset its low-confidence clock."""
    if memory.status == ARCHIVED:
        memory.status = ACTIVE
        memory.low_confidence_since = None
        memory.archived_at = None
    memory.access_count += 1
    memory.last_accessed_at = now or datetime.now(timezone.utc)
    return memory


# ---------------------------------------------------------------------------
# Store sweep
# ---------------------------------------------------------------------------


@dataclass
class SweepResult:
    """What a :func:`run_sweep` pass changed."""

    decayed: int = 0
    archived: list[str] = field(default_factory=list)
    pruned: list[str] = field(default_factory=list)


def run_sweep(store: MemoryStore, now: datetime | None = None) -> SweepResult:
    """Decay and transition every active/archived memory in *store*.

    Decayed confidence is persisted together with ``updated_at = now`` so
    the next sweep decays from the new baseline.  Pruned memories are
    hard-deleted.  Runs under the store lock as one transaction.

    Raises:
        LockTimeout: If another process holds the store lock too long.
    """
    now = now or datetime.now(timezone.utc)
    result = SweepResult()

    with store.lock, store.transaction():
        central = centrality_map(store)
        for mem in store.list_by_status((ACTIVE, ARCHIVED)):
            fields: dict[str, object] = {}
            if mem.status == ACTIVE:
                decayed = apply_decay(mem, now, central.get(mem.id, 0.0))
                if decayed != mem.confidence:
                    mem.confidence = decayed
                    fields["confidence"] = decayed
                    fields["updated_at"] = now
                    result.decayed += 1

            # mem.updated_at still holds the pre-sweep value here.
            change = sweep_status(mem, now)
            if change.status == PRUNED:
                store.delete(mem.id)
                result.pruned.append(mem.id)
                continue
            if change.differs_from(mem):
                fields["status"] = change.status
                fields["low_confidence_since"] = change.low_confidence_since
                fields["archived_at"] = change.archived_at
                if change.status == ARCHIVED and mem.status == ACTIVE:
                    result.archived.append(mem.id)
            if fields:
                store.update(mem.id, touch=False, **fields)

    logger.info(
        "Lifecycle sweep (%s): %d decayed, %d archived, %d pruned",
        store.scope,
        result.decayed,
        len(result.archived),
        len(result.pruned),
    )
    return result
