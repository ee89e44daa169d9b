"""Tests for the Cortex CLI (``cortex.cli``).

Hook commands must always exit 0; management commands report errors with
a non-zero exit code.  Every test points the CLI at temporary stores via
environment variables and runs with embeddings disabled.
"""

from __future__ import annotations

import io
import json

import pytest

from cortex import Cortex
from cortex.cli import _parse_lines, main

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def repo(tmp_path, monkeypatch):
    """A project directory with env vars pointing the CLI at temp stores."""
    root = tmp_path / "repo"
    root.mkdir()
    monkeypatch.setenv("CORTEX_PROJECT_PATH", str(root / ".cortex" / "memories.db"))
    monkeypatch.setenv("CORTEX_GLOBAL_PATH", str(tmp_path / "global.db"))
    monkeypatch.setenv("CORTEX_EMBEDDING", "none")
    return root


@pytest.fixture()
def populated(repo, tmp_path):
    with Cortex(
        project_path=str(repo / ".cortex" / "memories.db"),
        global_path=str(tmp_path / "global.db"),
        embedder="none",
    ) as c:
        c.remember("The deploy script lives in scripts/deploy.sh.", memory_type="pattern")
        c.remember("Never force-push to main.", memory_type="gotcha", pinned=True)
        c.remember("User likes terse deploy summaries.", scope="global")
    return repo


def _stdin(monkeypatch, text):
    monkeypatch.setattr("sys.stdin", io.StringIO(text))


# ---------------------------------------------------------------------------
# No subcommand
# ---------------------------------------------------------------------------


def test_no_subcommand(capsys):
    assert main([]) == 0
    assert "cortex" in capsys.readouterr().out.lower()


# ---------------------------------------------------------------------------
# Hooks
# ---------------------------------------------------------------------------


class TestHooks:
    def test_extract_bad_input_exits_zero(self, repo, monkeypatch):
        _stdin(monkeypatch, "this is not json")
        assert main(["extract"]) == 0

    def test_extract_missing_fields_exits_zero(self, repo, monkeypatch):
        _stdin(monkeypatch, json.dumps({"session_id": "s1"}))
        assert main(["extract"]) == 0

    def test_extract_offline_keeps_cursor(self, repo, tmp_path, monkeypatch):
        transcript = tmp_path / "s1.jsonl"
        transcript.write_text(json.dumps({"role": "user", "type": "text", "text": "hello"}) + "\n")
        _stdin(
            monkeypatch,
            json.dumps({"session_id": "s1", "transcript_path": str(transcript), "cwd": str(repo)}),
        )
        assert main(["extract"]) == 0

        with Cortex(
            project_path=str(repo / ".cortex" / "memories.db"),
            global_path=str(tmp_path / "global.db"),
            embedder="none",
        ) as c:
            assert c._primary_store().get_checkpoint("s1") is None

    def test_generate_and_load_surface(self, populated, capsys):
        assert main(["generate", str(populated)]) == 0
        assert (populated / ".claude" / "cortex-memory.local.md").exists()
        capsys.readouterr()

        assert main(["load-surface", str(populated)]) == 0
        out = capsys.readouterr().out
        assert out.startswith("# Cortex Memory")
        assert "Never force-push to main." in out

    def test_load_surface_generates_when_missing(self, populated, capsys):
        assert main(["load-surface", str(populated)]) == 0
        assert "deploy script" in capsys.readouterr().out

    def test_backfill_without_service(self, populated, capsys):
        assert main(["backfill", str(populated)]) == 0
        assert "Backfilled 0" in capsys.readouterr().err


# ---------------------------------------------------------------------------
# recall
# ---------------------------------------------------------------------------


def test_recall_json(populated, capsys):
    assert main(["recall", "deploy", "--format", "json"]) == 0
    rows = json.loads(capsys.readouterr().out)
    assert {r["scope"] for r in rows} == {"project", "global"}
    assert all("score" in r for r in rows)


def test_recall_table(populated, capsys):
    assert main(["recall", "deploy", "--scope", "project"]) == 0
    out = capsys.readouterr().out
    assert "deploy script" in out
    assert "1 result(s)" in out


def test_recall_no_results(populated, capsys):
    assert main(["recall", "kubernetes"]) == 0
    assert "No memories found" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# index / link / consolidate / sweep
# ---------------------------------------------------------------------------


def test_index_command(repo, capsys):
    (repo / "a.ts").write_text("one\ntwo\nthree\n")
    assert main(["index", str(repo / "a.ts"), "--summary", "Counts to three.", "--lines", "2-3"]) == 0
    assert "Indexed a.ts:2-3" in capsys.readouterr().out


def test_index_empty_range_fails(repo, capsys):
    (repo / "a.ts").write_text("one\n\n\n")
    assert main(["index", str(repo / "a.ts"), "--summary", "Blank.", "--lines", "2-3"]) == 1
    assert "Error:" in capsys.readouterr().err


def test_link_unknown_memory_fails(repo, capsys):
    assert main(["link", "aaa", "bbb", "refines"]) == 1
    assert "Error:" in capsys.readouterr().err


def test_consolidate_dry_run(populated, capsys):
    assert main(["consolidate", "--dry-run"]) == 0
    assert "No clusters found" in capsys.readouterr().out


def test_sweep(populated, capsys):
    assert main(["sweep"]) == 0
    out = capsys.readouterr().out
    assert "project:" in out and "global:" in out


# ---------------------------------------------------------------------------
# stats
# ---------------------------------------------------------------------------


def test_stats_json(populated, capsys):
    assert main(["stats", "--format", "json"]) == 0
    stats = json.loads(capsys.readouterr().out)
    assert stats["project"]["total"] == 2
    assert stats["global"]["total"] == 1


def test_stats_table(populated, capsys):
    assert main(["stats"]) == 0
    out = capsys.readouterr().out
    assert "Project store:" in out
    assert "pattern" in out


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "value,expected",
    [(None, None), ("5", (5, 5)), ("2-9", (2, 9)), ("4-", (4, None)), ("-7", (None, 7))],
)
def test_parse_lines(value, expected):
    assert _parse_lines(value) == expected
