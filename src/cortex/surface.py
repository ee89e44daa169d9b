"""Push-surface selection and rendering.

The push surface is the small Markdown digest the host reads at session
start.  Memories are ranked by :class:`~cortex.relevance.RelevanceEngine`,
admitted into a soft token budget and grouped into three tiers.  The
rendered body lives between marker comments in the artifact file so any
text the user writes around it survives regeneration.
"""

from __future__ import annotations

import logging
import math
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from .memory import Memory
from .relevance import RankingContext, RelevanceEngine

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_BUDGET = 400

BEGIN_MARKER = "<!-- cortex:begin -->"
END_MARKER = "<!-- cortex:end -->"

SURFACE_RELATIVE_PATH = os.path.join(".claude", "cortex-memory.local.md")
"""Artifact location relative to the project root."""

CRITICAL = "Critical"
CONTEXT_SPECIFIC = "Context-Specific"
CODE_INDEX = "Code Index"
TIERS = (CRITICAL, CONTEXT_SPECIFIC, CODE_INDEX)


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters, rounded up."""
    return math.ceil(len(text) / 4)


def format_line(memory: Memory) -> str:
    """Render one memory as a single Markdown bullet."""
    summary = " ".join((memory.summary or memory.content).split())
    if memory.memory_type == "code_description":
        ctx = memory.source_context or {}
        path = ctx.get("file_path")
        if path:
            start, end = ctx.get("line_start"), ctx.get("line_end")
            where = f"{path}:{start}-{end}" if start and end else path
            return f"- `{where}` {summary}"
    flag = " (pinned)" if memory.pinned else ""
    return f"- [{memory.memory_type}]{flag} {summary}"


def tier_of(memory: Memory, context: RankingContext | None = None) -> str:
    """Tier a selected memory is rendered under."""
    if memory.memory_type == "code_description":
        return CODE_INDEX
    if memory.pinned:
        return CRITICAL
    if context is not None and context.matches(memory):
        return CONTEXT_SPECIFIC
    return CRITICAL


@dataclass
class PushSurface:
    """Memories selected for the push surface.

    Attributes:
        entries: ``(memory, line, tokens)`` in selection order.
        token_budget: The soft budget used for selection.
        context: Branch/changed-file context used for tiering.
    """

    entries: list[tuple[Memory, str, int]] = field(default_factory=list)
    token_budget: int = DEFAULT_TOKEN_BUDGET
    context: RankingContext | None = None

    @property
    def memories(self) -> list[Memory]:
        return [mem for mem, _, _ in self.entries]

    @property
    def token_count(self) -> int:
        return sum(tokens for _, _, tokens in self.entries)

    def tiers(self) -> dict[str, list[str]]:
        """Rendered lines grouped by tier, in selection order."""
        grouped: dict[str, list[str]] = {tier: [] for tier in TIERS}
        for mem, line, _ in self.entries:
            grouped[tier_of(mem, self.context)].append(line)
        return grouped

    def render(self) -> str:
        """Deterministic Markdown body (without markers)."""
        lines = ["# Cortex Memory", ""]
        if not self.entries:
            lines.append("No memories stored yet.")
            return "\n".join(lines) + "\n"
        for tier, tier_lines in self.tiers().items():
            if not tier_lines:
                continue
            lines.append(f"## {tier}")
            lines.append("")
            lines.extend(tier_lines)
            lines.append("")
        return "\n".join(lines).rstrip("\n") + "\n"


def build_push_surface(
    memories: Sequence[Memory],
    token_budget: int = DEFAULT_TOKEN_BUDGET,
    context: RankingContext | None = None,
    centrality: Mapping[str, float] | None = None,
    engine: RelevanceEngine | None = None,
) -> PushSurface:
    """Select memories for the push surface.

    Pinned memories come first and are always admitted.  The rest are taken
    in ranked order while their lines fit the budget; the first non-pinned
    memory is admitted even when it alone exceeds the budget.  Raw ``code``
    memories are never included.

    Args:
        memories: Candidate memories (normally every active memory).
        token_budget: Soft token target.
        context: Current branch and changed files.
        centrality: Normalised in-degree per memory id.
        engine: Ranking engine; a default one is used when omitted.

    Returns:
        A :class:`PushSurface`.
    """
    engine = engine or RelevanceEngine()
    candidates = [m for m in memories if not m.is_code]
    ranked = engine.rank(candidates, centrality, context)

    surface = PushSurface(token_budget=token_budget, context=context)
    used = 0
    first_unpinned = True
    for _, mem in ranked:
        line = format_line(mem)
        tokens = estimate_tokens(line)
        if mem.pinned:
            surface.entries.append((mem, line, tokens))
            used += tokens
            continue
        if used + tokens > token_budget and not first_unpinned:
            continue
        first_unpinned = False
        surface.entries.append((mem, line, tokens))
        used += tokens

    logger.debug(
        "Push surface: %d of %d candidates, %d tokens (budget %d)",
        len(surface.entries),
        len(candidates),
        used,
        token_budget,
    )
    return surface


# ---------------------------------------------------------------------------
# Artifact file
# ---------------------------------------------------------------------------


def surface_path(project_root: str) -> str:
    """Default artifact path for *project_root*."""
    return os.path.join(project_root, SURFACE_RELATIVE_PATH)


def splice(existing: str, body: str) -> str:
    """Replace the marked block of *existing* with *body*.

    Text outside the markers is kept verbatim.  When no complete marker
    pair is present the block is appended.
    """
    block = f"{BEGIN_MARKER}\n{body.rstrip()}\n{END_MARKER}"
    start = existing.find(BEGIN_MARKER)
    end = existing.find(END_MARKER, start + len(BEGIN_MARKER)) if start != -1 else -1
    if start == -1 or end == -1:
        if not existing:
            return block + "\n"
        separator = "" if existing.endswith("\n\n") else ("\n" if existing.endswith("\n") else "\n\n")
        return existing + separator + block + "\n"
    return existing[:start] + block + existing[end + len(END_MARKER) :]


def write_surface(path: str, body: str) -> str:
    """Write *body* into the marked block of the file at *path*.

    Returns:
        The full file content written.
    """
    existing = ""
    if os.path.isfile(path):
        with open(path, encoding="utf-8") as f:
            existing = f.read()

    content = splice(existing, body)
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
    logger.info("Wrote push surface to %s", path)
    return content


def read_surface(path: str) -> str | None:
    """Return the marked block body of the artifact, or ``None`` if absent."""
    if not os.path.isfile(path):
        return None
    with open(path, encoding="utf-8") as f:
        content = f.read()
    start = content.find(BEGIN_MARKER)
    if start == -1:
        return None
    end = content.find(END_MARKER, start)
    if end == -1:
        return None
    return content[start + len(BEGIN_MARKER) : end].strip("\n") + "\n"
