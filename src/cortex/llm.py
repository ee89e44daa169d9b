"""Text-generation service boundary for Cortex.

The engine asks an external text model for three things: proposed memories
from a transcript, relation types for memory pairs, and a merged memory for
a consolidation cluster.  Responses are free-form text; the ``parse_*``
functions decode them into closed, validated variants and drop anything
that does not fit rather than coercing it.
"""

from __future__ import annotations

import json
import logging
import os
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from .errors import ServiceUnavailable
from .memory import MEMORY_TYPES, RELATION_TYPES, Memory
from .transport import post_json

logger = logging.getLogger(__name__)

EXTRACTION_TIMEOUT = 30.0
"""Hard timeout, in seconds, for a text-service call."""

# Types an extraction may propose.  Code pairs come only from code indexing.
EXTRACTABLE_TYPES = MEMORY_TYPES - {"code", "code_description"}

# Relations automated classification may assign.
CLASSIFIABLE_RELATIONS = RELATION_TYPES - {"supersedes", "source_of"}

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)

# ---------------------------------------------------------------------------
# Decoded variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProposedMemory:
    """A memory suggested by the extraction model."""

    memory_type: str
    content: str
    summary: str = ""
    confidence: float = 0.7
    priority: int = 5
    tags: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class EdgeClassification:
    """A relation suggested for one memory pair."""

    source_id: str
    target_id: str
    relation_type: str
    strength: float
    bidirectional: bool = False


@dataclass(frozen=True)
class MergedMemory:
    """The body proposed for a consolidated cluster."""

    content: str
    summary: str = ""
    tags: tuple[str, ...] = field(default_factory=tuple)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def extract_json_payload(text: str) -> Any | None:
    """Pull the first JSON value out of a model response.

    Handles fenced code blocks and leading/trailing prose.  Returns
    ``None`` when nothing parses.
    """
    if not text or not text.strip():
        return None
    candidates = [m.group(1) for m in _FENCE.finditer(text)] + [text]
    for candidate in candidates:
        candidate = candidate.strip()
        try:
            return json.loads(candidate)
        except ValueError:
            pass
        starts = [i for i in (candidate.find("["), candidate.find("{")) if i >= 0]
        if not starts:
            continue
        start = min(starts)
        closer = "]" if candidate[start] == "[" else "}"
        end = candidate.rfind(closer)
        if end > start:
            try:
                return json.loads(candidate[start : end + 1])
            except ValueError:
                continue
    return None


def _as_unit_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    return value if 0.0 <= value <= 1.0 else None


def _as_priority(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int):
        return None
    return value if 1 <= value <= 10 else None


def _as_tags(value: Any) -> tuple[str, ...] | None:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(t, str) for t in value):
        return None
    return tuple(dict.fromkeys(t.strip() for t in value if t.strip()))


def parse_extraction(text: str) -> list[ProposedMemory]:
    """Decode an extraction response into proposed memories.

    The expected shape is a JSON array (or an object with a ``memories``
    array) of ``{type, content, summary, confidence, priority, tags}``.
    Items with an unknown type, empty content, or out-of-range
    confidence/priority are dropped.  A malformed response yields ``[]``.
    """
    payload = extract_json_payload(text)
    if isinstance(payload, dict):
        payload = payload.get("memories")
    if not isinstance(payload, list):
        return []

    proposed: list[ProposedMemory] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        memory_type = item.get("type", item.get("memory_type"))
        content = item.get("content")
        if memory_type not in EXTRACTABLE_TYPES:
            continue
        if not isinstance(content, str) or not content.strip():
            continue
        summary = item.get("summary", "")
        if not isinstance(summary, str):
            continue
        confidence = _as_unit_float(item.get("confidence", 0.7))
        priority = _as_priority(item.get("priority", 5))
        tags = _as_tags(item.get("tags"))
        if confidence is None or priority is None or tags is None:
            continue
        proposed.append(
            ProposedMemory(
                memory_type=memory_type,
                content=content.strip(),
                summary=summary.strip(),
                confidence=confidence,
                priority=priority,
                tags=tags,
            )
        )
    return proposed


def parse_classifications(
    text: str,
    pairs: Sequence[tuple[Memory, Memory]],
) -> list[EdgeClassification]:
    """Decode an edge-classification response.

    Expects a JSON array of ``{pair, relation_type, strength,
    bidirectional}`` where ``pair`` indexes *pairs*.  Entries with an
    unknown index, a relation outside :data:`CLASSIFIABLE_RELATIONS`, or a
    strength outside ``[0, 1]`` are discarded.
    """
    payload = extract_json_payload(text)
    if isinstance(payload, dict):
        payload = payload.get("classifications")
    if not isinstance(payload, list):
        return []

    results: list[EdgeClassification] = []
    seen: set[int] = set()
    for item in payload:
        if not isinstance(item, dict):
            continue
        index = item.get("pair")
        if isinstance(index, bool) or not isinstance(index, int):
            continue
        if not 0 <= index < len(pairs) or index in seen:
            continue
        relation = item.get("relation_type", item.get("type"))
        if relation not in CLASSIFIABLE_RELATIONS:
            continue
        strength = _as_unit_float(item.get("strength"))
        if strength is None:
            continue
        bidirectional = item.get("bidirectional", False)
        if not isinstance(bidirectional, bool):
            continue
        seen.add(index)
        source, target = pairs[index]
        results.append(
            EdgeClassification(
                source_id=source.id,
                target_id=target.id,
                relation_type=relation,
                strength=strength,
                bidirectional=bidirectional,
            )
        )
    return results


def parse_merge(text: str) -> MergedMemory | None:
    """Decode a merge response ``{content, summary, tags}``; ``None`` if invalid."""
    payload = extract_json_payload(text)
    if not isinstance(payload, dict):
        return None
    content = payload.get("content")
    if not isinstance(content, str) or not content.strip():
        return None
    summary = payload.get("summary", "")
    tags = _as_tags(payload.get("tags"))
    if not isinstance(summary, str) or tags is None:
        return None
    return MergedMemory(content=content.strip(), summary=summary.strip(), tags=tags)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

_EXTRACTION_PROMPT = """\
You maintain long-term memory for a coding assistant working in one project.
Read the new part of the session transcript below and propose durable
knowledge worth remembering in future sessions.  Skip chit-chat, transient
tool output, and anything already obvious from the code.

Return ONLY a JSON array.  Each item:
  {{"type": one of {types},
    "content": full statement, self-contained,
    "summary": at most 200 characters,
    "confidence": number 0..1,
    "priority": integer 1..10,
    "tags": [short strings]}}
Return [] when nothing is worth keeping.

Git context:
{git}

Transcript:
{transcript}
"""

_CLASSIFY_PROMPT = """\
Classify the relationship of each memory pair below.  Allowed relation
types: {relations}.  Return ONLY a JSON array of
  {{"pair": index, "relation_type": type, "strength": number 0..1,
    "bidirectional": true|false}}
Omit pairs that are unrelated.

{pairs}
"""

_MERGE_PROMPT = """\
The memories below overlap.  Merge them into ONE memory.  Preserve every
unique detail (names, numbers, caveats, file paths); only remove genuine
redundancy.  Do not invent facts.

Return ONLY a JSON object:
  {{"content": merged text, "summary": at most 200 characters,
    "tags": [short strings]}}

{memories}
"""


def build_extraction_prompt(transcript: str, git_context: Mapping[str, Any] | None = None) -> str:
    """Render the extraction prompt for *transcript* and git metadata."""
    git_lines = []
    for key, value in (git_context or {}).items():
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(v) for v in value) or "(none)"
        git_lines.append(f"- {key}: {value}")
    return _EXTRACTION_PROMPT.format(
        types=", ".join(sorted(EXTRACTABLE_TYPES)),
        git="\n".join(git_lines) or "(unavailable)",
        transcript=transcript,
    )


def build_classification_prompt(pairs: Sequence[tuple[Memory, Memory]]) -> str:
    blocks = [
        f"[{i}] A ({a.memory_type}): {a.summary}\n    B ({b.memory_type}): {b.summary}"
        for i, (a, b) in enumerate(pairs)
    ]
    return _CLASSIFY_PROMPT.format(
        relations=", ".join(sorted(CLASSIFIABLE_RELATIONS)),
        pairs="\n".join(blocks),
    )


def build_merge_prompt(memories: Sequence[Memory]) -> str:
    blocks = [f"--- memory {i + 1} ({m.memory_type})\n{m.content}" for i, m in enumerate(memories)]
    return _MERGE_PROMPT.format(memories="\n".join(blocks))


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


class TextService(ABC):
    """Abstract text-generation collaborator.

    Subclasses implement :meth:`complete`; the task methods build prompts
    and decode responses.  Every failure surfaces as
    :class:`ServiceUnavailable`.
    """

    @abstractmethod
    def complete(self, prompt: str, timeout: float = EXTRACTION_TIMEOUT) -> str:
        """Return the model's text response to *prompt*."""

    def extract(
        self,
        transcript: str,
        git_context: Mapping[str, Any] | None = None,
    ) -> list[ProposedMemory]:
        """Propose memories for the new part of a transcript."""
        response = self.complete(build_extraction_prompt(transcript, git_context))
        proposed = parse_extraction(response)
        logger.debug("Extraction response decoded into %d proposed memories", len(proposed))
        return proposed

    def classify_edges(
        self,
        pairs: Sequence[tuple[Memory, Memory]],
    ) -> list[EdgeClassification]:
        """Classify all *pairs* in one call."""
        if not pairs:
            return []
        response = self.complete(build_classification_prompt(pairs))
        return parse_classifications(response, pairs)

    def merge_cluster(self, memories: Sequence[Memory]) -> MergedMemory:
        """Merge a cluster of near-duplicates.

        Raises:
            ServiceUnavailable: If the call fails or the response cannot
                be decoded.
        """
        response = self.complete(build_merge_prompt(memories))
        merged = parse_merge(response)
        if merged is None:
            raise ServiceUnavailable("Merge response could not be decoded.")
        return merged


class GeminiTextService(TextService):
    """Text service backed by the Gemini ``generateContent`` REST API.

    Args:
        api_key: Gemini API key.  Falls back to ``GEMINI_API_KEY``.
        model: Model name.
        base_url: API base URL.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gemini-2.0-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
    ) -> None:
        self._api_key = api_key or os.environ.get("GEMINI_API_KEY")
        if not self._api_key:
            raise ValueError(
                "A Gemini API key is required.  Set the GEMINI_API_KEY "
                "environment variable or pass api_key=..."
            )
        self._model = model
        self._base_url = base_url.rstrip("/")

    def complete(self, prompt: str, timeout: float = EXTRACTION_TIMEOUT) -> str:
        url = f"{self._base_url}/models/{self._model}:generateContent"
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": 0.2},
        }
        data = post_json(url, payload, self._api_key, timeout, "Gemini API")

        try:
            parts = data["candidates"][0]["content"]["parts"]
            return "".join(p.get("text", "") for p in parts)
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            raise ServiceUnavailable(f"Gemini returned an unexpected response: {data}") from exc

    def __repr__(self) -> str:
        return f"GeminiTextService(model={self._model!r})"


class OfflineTextService(TextService):
    """Stand-in used when no text model is configured; every call fails."""

    def complete(self, prompt: str, timeout: float = EXTRACTION_TIMEOUT) -> str:
        raise ServiceUnavailable("No text service configured (set GEMINI_API_KEY).")

    def __repr__(self) -> str:
        return "OfflineTextService()"


def create_text_service(api_key: str | None = None, model: str | None = None) -> TextService:
    """Return a Gemini service when a key is available, else the offline stand-in."""
    key = api_key or os.environ.get("GEMINI_API_KEY")
    if not key:
        return OfflineTextService()
    kwargs: dict[str, Any] = {"api_key": key}
    if model:
        kwargs["model"] = model
    return GeminiTextService(**kwargs)
