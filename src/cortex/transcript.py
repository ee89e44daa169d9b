"""Transcript intake and git context.

Transcripts arrive as JSONL, one message part per line::

    {"role": "user", "type": "text", "text": "..."}
    {"role": "assistant", "type": "tool_use", "tool": "Edit", "input": {...}}
    {"role": "tool", "type": "tool_result", "tool": "Edit", "output": "..."}

They are rendered to plain ``role: text`` lines.  Extraction checkpoints
store a character offset into that rendering.
"""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHARS = 50_000
"""Upper bound on the transcript text sent to extraction in one run."""

_TOOL_INPUT_CHARS = 500
_TOOL_OUTPUT_CHARS = 1_000
_GIT_TIMEOUT = 5.0
_RECENT_COMMITS = 5


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def render_entry(entry: dict[str, Any]) -> str | None:
    """Render one JSONL entry, or ``None`` for entries with nothing to say."""
    role = entry.get("role") or "unknown"
    kind = entry.get("type", "text")

    if kind == "text":
        text = entry.get("text")
        if not isinstance(text, str) or not text.strip():
            return None
        return f"{role}: {text.strip()}"

    if kind == "tool_use":
        payload = entry.get("input")
        if not isinstance(payload, str):
            payload = json.dumps(payload, sort_keys=True, default=str)
        return f"{role}: [tool {entry.get('tool', '?')}] {_truncate(payload, _TOOL_INPUT_CHARS)}"

    if kind == "tool_result":
        output = entry.get("output")
        if output is None:
            return None
        if not isinstance(output, str):
            output = json.dumps(output, sort_keys=True, default=str)
        return f"{role}: [result {entry.get('tool', '?')}] {_truncate(output, _TOOL_OUTPUT_CHARS)}"

    return None


def render_transcript(path: str) -> str:
    """Read a JSONL transcript and render it as text.

    Malformed lines are skipped.

    Raises:
        OSError: If the file cannot be read.
    """
    rendered: list[str] = []
    skipped = 0
    with open(path, encoding="utf-8", errors="replace") as f:
        for raw in f:
            raw = raw.strip()
            if not raw:
                continue
            try:
                entry = json.loads(raw)
            except json.JSONDecodeError:
                skipped += 1
                continue
            if not isinstance(entry, dict):
                skipped += 1
                continue
            line = render_entry(entry)
            if line is not None:
                rendered.append(line)
    if skipped:
        logger.debug("Skipped %d malformed transcript lines in %s", skipped, path)
    return "\n".join(rendered)


@dataclass
class TranscriptSlice:
    """The portion of a transcript handed to one extraction run.

    Attributes:
        text: The new text (may be empty).
        start: Cursor the slice begins at.
        end: Cursor to persist once the run succeeds.
    """

    text: str
    start: int
    end: int

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()


def read_new_text(path: str, cursor: int = 0, max_chars: int = DEFAULT_MAX_CHARS) -> TranscriptSlice:
    """Return transcript text after *cursor*, at most *max_chars* long.

    A cursor beyond the rendered length (the transcript was replaced)
    restarts from the beginning.
    """
    full = render_transcript(path)
    if cursor < 0 or cursor > len(full):
        logger.info("Transcript %s shrank below cursor %d; starting over", path, cursor)
        cursor = 0
    end = min(len(full), cursor + max_chars) if max_chars > 0 else len(full)
    return TranscriptSlice(text=full[cursor:end], start=cursor, end=end)


# ---------------------------------------------------------------------------
# Git context
# ---------------------------------------------------------------------------


@dataclass
class GitContext:
    """Working-tree facts attached to extraction and ranking."""

    branch: str | None = None
    recent_commits: list[str] = field(default_factory=list)
    changed_files: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "branch": self.branch,
            "recent_commits": list(self.recent_commits),
            "changed_files": list(self.changed_files),
        }


def _git(cwd: str, *args: str) -> str | None:
    try:
        proc = subprocess.run(
            ["git", "-C", cwd, *args],
            check=False,
            capture_output=True,
            text=True,
            timeout=_GIT_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("git %s failed: %s", " ".join(args), exc)
        return None
    if proc.returncode != 0:
        return None
    return proc.stdout


def git_context(cwd: str) -> GitContext:
    """Collect branch, recent commit subjects and changed files.

    Outside a repository (or without git) an empty context is returned.
    """
    ctx = GitContext()
    branch = _git(cwd, "rev-parse", "--abbrev-ref", "HEAD")
    if branch is None:
        return ctx
    branch = branch.strip()
    ctx.branch = branch if branch and branch != "HEAD" else None

    log = _git(cwd, "log", f"-{_RECENT_COMMITS}", "--pretty=format:%s")
    if log:
        ctx.recent_commits = [line for line in log.splitlines() if line.strip()]

    status = _git(cwd, "status", "--porcelain")
    if status:
        for line in status.splitlines():
            path = line[3:].strip()
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            if path:
                ctx.changed_files.append(path.strip('"'))
    return ctx
