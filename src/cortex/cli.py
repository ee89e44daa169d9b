"""Cortex CLI -- host hook entry points and a small management tool.

Hook commands (``extract``, ``generate``, ``load-surface``, ``backfill``)
never fail the host: every error is logged to stderr and the exit code is
0.  Management commands report errors and exit non-zero.

Usage::

    cortex extract                      < hook-input.json
    cortex generate      [CWD]
    cortex load-surface  [CWD]
    cortex backfill      [CWD]
    cortex recall        <query> [--limit N] [--scope project|global|all] [--format table|json]
    cortex index         <file> --summary TEXT [--lines START-END] [--scope ...]
    cortex consolidate   [--scope ...] [--threshold X] [--max-cluster-size N] [--yes | --dry-run]
    cortex sweep         [--scope ...]
    cortex link          <source_id> <target_id> <relation> [--strength X] [--bidirectional]
    cortex stats         [--format table|json]
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import shutil
import sys
from typing import Any

from .config import CortexConfig
from .consolidation import MANUAL_MAX_CLUSTER_SIZE, MANUAL_THRESHOLD, MergeProposal
from .core import Cortex
from .errors import CortexError
from .memory import RELATION_TYPES

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _configure_logging(level_name: str) -> None:
    """Send ``cortex`` logs to stderr so stdout stays clean for the host."""
    root = logging.getLogger("cortex")
    level = logging.getLevelName(level_name.upper())
    root.setLevel(level if isinstance(level, int) else logging.WARNING)
    if not any(getattr(h, "_cortex_cli", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._cortex_cli = True  # type: ignore[attr-defined]
        root.addHandler(handler)


def _build_cortex(args: argparse.Namespace, cwd: str | None = None) -> Cortex:
    """Build a :class:`Cortex` from the environment and CLI overrides."""
    config = CortexConfig.from_env(cwd=cwd)
    if getattr(args, "project_path", None):
        config.project_path = args.project_path
    if getattr(args, "global_path", None):
        config.global_path = args.global_path
    return Cortex.from_config(config)


def _resolve_scope(scope_arg: str) -> str | None:
    return None if scope_arg == "all" else scope_arg


def _truncate(text: str, width: int) -> str:
    if len(text) <= width:
        return text
    return text[: width - 3] + "..."


def _parse_lines(value: str | None) -> tuple[int | None, int | None] | None:
    """Parse ``START-END``, ``START-`` or ``-END`` into a line range."""
    if not value:
        return None
    start_raw, sep, end_raw = value.partition("-")
    if not sep:
        line = int(start_raw)
        return line, line
    start = int(start_raw) if start_raw.strip() else None
    end = int(end_raw) if end_raw.strip() else None
    return start, end


def _run_hook(name: str, func: Any) -> int:
    """Run a hook body; log every failure and always exit 0."""
    try:
        func()
    except Exception:
        logger.exception("cortex %s failed", name)
    return 0


# ---------------------------------------------------------------------------
# Hook commands
# ---------------------------------------------------------------------------


def _cmd_extract(args: argparse.Namespace) -> int:
    """Handle ``extract``: hook input JSON arrives on stdin."""

    def body() -> None:
        raw = sys.stdin.read()
        payload = json.loads(raw) if raw.strip() else {}
        if not isinstance(payload, dict):
            raise ValueError("Hook input must be a JSON object.")
        session_id = payload.get("session_id")
        transcript_path = payload.get("transcript_path")
        if not session_id or not transcript_path:
            raise ValueError("Hook input needs session_id and transcript_path.")
        cwd = payload.get("cwd") or os.getcwd()

        with _build_cortex(args, cwd) as cortex:
            result = cortex.extract(str(session_id), str(transcript_path), cwd)
        if not result.skipped:
            print(f"Extracted {len(result.created)} memories (cursor {result.cursor}).", file=sys.stderr)

    return _run_hook("extract", body)


def _cmd_generate(args: argparse.Namespace) -> int:
    """Handle ``generate``: write the push surface for CWD."""

    def body() -> None:
        cwd = args.cwd or os.getcwd()
        with _build_cortex(args, cwd) as cortex:
            path = cortex.generate_surface(cwd)
        print(f"Wrote {path}", file=sys.stderr)

    return _run_hook("generate", body)


def _cmd_load_surface(args: argparse.Namespace) -> int:
    """Handle ``load-surface``: print the current surface to stdout."""

    def body() -> None:
        cwd = args.cwd or os.getcwd()
        with _build_cortex(args, cwd) as cortex:
            text = cortex.load_surface()
            if text is None and cortex.project_root:
                cortex.generate_surface(cwd)
                text = cortex.load_surface()
        if text:
            sys.stdout.write(text)

    return _run_hook("load-surface", body)


def _cmd_backfill(args: argparse.Namespace) -> int:
    """Handle ``backfill``: embed memories queued while offline."""

    def body() -> None:
        cwd = args.cwd or os.getcwd()
        with _build_cortex(args, cwd) as cortex:
            done = cortex.backfill(limit=args.limit)
        print(f"Backfilled {done} memories.", file=sys.stderr)

    return _run_hook("backfill", body)


# ---------------------------------------------------------------------------
# Management commands
# ---------------------------------------------------------------------------


def _cmd_recall(args: argparse.Namespace) -> int:
    with _build_cortex(args) as cortex:
        hits = cortex.recall(args.query, k=args.limit, scope=_resolve_scope(args.scope))

    if args.format == "json":
        rows = [dict(hit.memory.to_dict(), score=hit.score, similarity=hit.similarity) for hit in hits]
        print(json.dumps(rows, indent=2, default=str))
        return 0

    if not hits:
        print(f'No memories found matching "{args.query}".')
        return 0

    term_width = shutil.get_terminal_size((80, 24)).columns
    fixed_width = 8 + 2 + 7 + 2 + 12 + 2 + 5 + 2
    text_width = max(20, term_width - fixed_width)

    print(f"{'ID':<8}  {'Scope':<7}  {'Type':<12}  {'Score':>5}  Summary")
    print(f"{'─' * 8}  {'─' * 7}  {'─' * 12}  {'─' * 5}  {'─' * text_width}")
    for hit in hits:
        mem = hit.memory
        print(
            f"{mem.id[:8]:<8}  {mem.scope:<7}  {mem.memory_type:<12}  "
            f"{hit.score:5.2f}  {_truncate(mem.summary, text_width)}"
        )
    print(f'\n{len(hits)} result(s) for "{args.query}"')
    return 0


def _cmd_index(args: argparse.Namespace) -> int:
    with _build_cortex(args) as cortex:
        indexed = cortex.index_code(
            args.file,
            args.summary,
            line_range=_parse_lines(args.lines),
            scope=args.scope,
        )
    ctx = indexed.code.source_context
    print(
        f"Indexed {ctx['file_path']}:{ctx['line_start']}-{ctx['line_end']} "
        f"(prose {indexed.prose.id[:8]}, code {indexed.code.id[:8]})"
    )
    if indexed.superseded_ids:
        print(f"Superseded {len(indexed.superseded_ids)} older memories.")
    return 0


def _prompt_approval(proposals: list[MergeProposal]) -> list[MergeProposal]:
    accepted: list[MergeProposal] = []
    for proposal in proposals:
        print(f"\nMerge {len(proposal.cluster)} memories:")
        for mem in proposal.cluster:
            print(f"  - {mem.id[:8]}  {_truncate(mem.summary, 70)}")
        print(f"  => {_truncate(proposal.merged.summary, 70)}")
        answer = input("Apply? [y/N] ").strip().lower()
        if answer in ("y", "yes"):
            accepted.append(proposal)
    return accepted


def _preview_only(proposals: list[MergeProposal]) -> list[MergeProposal]:
    for proposal in proposals:
        ids = ", ".join(m.id[:8] for m in proposal.cluster)
        print(f"Would merge [{ids}] -> {_truncate(proposal.merged.summary, 60)}")
    return []


def _cmd_consolidate(args: argparse.Namespace) -> int:
    approve: Any = _prompt_approval
    if args.dry_run:
        approve = _preview_only
    elif args.yes:
        approve = None

    with _build_cortex(args) as cortex:
        result = cortex.consolidate(
            scope=args.scope,
            threshold=args.threshold,
            max_cluster_size=args.max_cluster_size,
            approve=approve,
        )

    if not result.proposals:
        print(f"No clusters found (scope: {args.scope}, threshold: {args.threshold:.2f}).")
        return 0
    print(
        f"Merged {len(result.merged)} cluster(s), superseded {len(result.superseded_ids)} "
        f"memories, {len(result.rejected)} declined."
    )
    return 0


def _cmd_sweep(args: argparse.Namespace) -> int:
    with _build_cortex(args) as cortex:
        results = cortex.sweep(scope=_resolve_scope(args.scope))
    for scope, result in results.items():
        print(
            f"{scope}: {result.decayed} decayed, {len(result.archived)} archived, "
            f"{len(result.pruned)} pruned"
        )
    return 0


def _cmd_link(args: argparse.Namespace) -> int:
    with _build_cortex(args) as cortex:
        edge = cortex.link(
            args.source_id,
            args.target_id,
            args.relation,
            strength=args.strength,
            bidirectional=args.bidirectional,
            scope=args.scope,
        )
    arrow = "<->" if edge.bidirectional else "->"
    print(f"{edge.source_id[:8]} {arrow} {edge.target_id[:8]} [{edge.relation_type} {edge.strength:.2f}]")
    return 0


def _cmd_stats(args: argparse.Namespace) -> int:
    with _build_cortex(args) as cortex:
        stats = cortex.stats()

    if args.format == "json":
        print(json.dumps(stats, indent=2))
        return 0

    for scope, info in stats.items():
        print(f"{scope.title()} store: {info['path']}")
        print(f"  Total:     {info['total']}")
        for status, n in info["status"].items():
            print(f"  {status.title() + ':':<10} {n}")
        print(f"  Edges:     {info['edges']}")
        print(f"  Backfill:  {info['pending_backfill']}")
        for memory_type, n in sorted(info["types"].items()):
            print(f"    {memory_type:<17} {n}")
    return 0


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cortex",
        description="Cortex -- persistent project memory for coding assistants.",
    )
    parser.add_argument("--project-path", default=None, help="Path to the project SQLite database file.")
    parser.add_argument("--global-path", default=None, help="Path to the global SQLite database file.")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("extract", help="Extract memories (hook input JSON on stdin).")

    for name, help_text in (
        ("generate", "Write the push surface for a project."),
        ("load-surface", "Print the push surface for a project."),
        ("backfill", "Embed memories stored while offline."),
    ):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("cwd", nargs="?", default=None, help="Working directory (default: CWD).")
        if name == "backfill":
            p.add_argument("--limit", type=int, default=100, help="Maximum memories to embed.")

    p_recall = subparsers.add_parser("recall", help="Semantic search over memories.")
    p_recall.add_argument("query", help="Natural-language query.")
    p_recall.add_argument("--limit", "-k", type=int, default=10, help="Maximum results (default: 10).")
    p_recall.add_argument("--scope", choices=["project", "global", "all"], default="all")
    p_recall.add_argument("--format", choices=["table", "json"], default="table")

    p_index = subparsers.add_parser("index", help="Index a source file as a prose/code pair.")
    p_index.add_argument("file", help="File to index.")
    p_index.add_argument("--summary", required=True, help="Prose description of the code.")
    p_index.add_argument("--lines", default=None, help="Line range START-END (1-based, inclusive).")
    p_index.add_argument("--scope", choices=["project", "global"], default="project")

    p_consolidate = subparsers.add_parser("consolidate", help="Merge near-duplicate memories.")
    p_consolidate.add_argument("--scope", choices=["project", "global"], default="project")
    p_consolidate.add_argument("--threshold", type=float, default=MANUAL_THRESHOLD)
    p_consolidate.add_argument("--max-cluster-size", type=int, default=MANUAL_MAX_CLUSTER_SIZE)
    mode = p_consolidate.add_mutually_exclusive_group()
    mode.add_argument("--yes", "-y", action="store_true", help="Apply every proposal without asking.")
    mode.add_argument("--dry-run", action="store_true", help="Show proposals without applying them.")

    p_sweep = subparsers.add_parser("sweep", help="Run confidence decay and the status lifecycle.")
    p_sweep.add_argument("--scope", choices=["project", "global", "all"], default="all")

    p_link = subparsers.add_parser("link", help="Create an edge between two memories.")
    p_link.add_argument("source_id")
    p_link.add_argument("target_id")
    p_link.add_argument("relation", choices=sorted(RELATION_TYPES))
    p_link.add_argument("--strength", type=float, default=1.0)
    p_link.add_argument("--bidirectional", action="store_true")
    p_link.add_argument("--scope", choices=["project", "global"], default="project")

    p_stats = subparsers.add_parser("stats", help="Show memory statistics.")
    p_stats.add_argument("--format", choices=["table", "json"], default="table")

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point.

    Args:
        argv: Command-line arguments. Defaults to ``sys.argv[1:]``.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    _configure_logging(os.environ.get("CORTEX_LOG_LEVEL", "WARNING"))

    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    commands: dict[str, Any] = {
        "extract": _cmd_extract,
        "generate": _cmd_generate,
        "load-surface": _cmd_load_surface,
        "backfill": _cmd_backfill,
        "recall": _cmd_recall,
        "index": _cmd_index,
        "consolidate": _cmd_consolidate,
        "sweep": _cmd_sweep,
        "link": _cmd_link,
        "stats": _cmd_stats,
    }

    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    try:
        result: int = handler(args)
    except (CortexError, ValueError, RuntimeError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return result


if __name__ == "__main__":
    sys.exit(main())
