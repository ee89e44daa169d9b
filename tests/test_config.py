"""Tests for environment-driven configuration."""

from __future__ import annotations

import os

from cortex.config import CortexConfig
from cortex.surface import DEFAULT_TOKEN_BUDGET
from cortex.transcript import DEFAULT_MAX_CHARS


def test_defaults_outside_project(tmp_path):
    home = tmp_path / "home"
    cfg = CortexConfig.from_env(cwd="/", env={"CORTEX_HOME": str(home)})
    assert cfg.home == str(home)
    assert cfg.global_path == os.path.join(str(home), "global.db")
    assert cfg.embedding == "gemini"
    assert cfg.api_key is None
    assert cfg.token_budget == DEFAULT_TOKEN_BUDGET
    assert cfg.max_chars == DEFAULT_MAX_CHARS
    assert cfg.log_level == "WARNING"


def test_project_detected_from_cwd(tmp_path):
    (tmp_path / ".git").mkdir()
    cfg = CortexConfig.from_env(cwd=str(tmp_path), env={})
    root = str(tmp_path.resolve())
    assert cfg.project_root == root
    assert cfg.project_path == os.path.join(root, ".cortex", "memories.db")
    assert cfg.surface_path == os.path.join(root, ".claude", "cortex-memory.local.md")


def test_explicit_paths(tmp_path):
    project_db = tmp_path / "repo" / ".cortex" / "memories.db"
    cfg = CortexConfig.from_env(
        cwd="/",
        env={
            "CORTEX_PROJECT_PATH": str(project_db),
            "CORTEX_GLOBAL_PATH": str(tmp_path / "g.db"),
        },
    )
    assert cfg.project_path == str(project_db)
    assert cfg.project_root == str(tmp_path / "repo")
    assert cfg.global_path == str(tmp_path / "g.db")


def test_numeric_settings(tmp_path):
    cfg = CortexConfig.from_env(
        cwd="/",
        env={"CORTEX_TOKEN_BUDGET": "250", "CORTEX_MAX_CHARS": "abc", "CORTEX_HOME": str(tmp_path)},
    )
    assert cfg.token_budget == 250
    assert cfg.max_chars == DEFAULT_MAX_CHARS

    negative = CortexConfig.from_env(cwd="/", env={"CORTEX_TOKEN_BUDGET": "-5", "CORTEX_HOME": str(tmp_path)})
    assert negative.token_budget == DEFAULT_TOKEN_BUDGET


def test_embedding_and_key(tmp_path):
    cfg = CortexConfig.from_env(
        cwd="/",
        env={
            "CORTEX_EMBEDDING": "LOCAL",
            "GEMINI_API_KEY": "k",
            "CORTEX_LOG_LEVEL": "debug",
            "CORTEX_HOME": str(tmp_path),
        },
    )
    assert cfg.embedding == "local"
    assert cfg.api_key == "k"
    assert cfg.log_level == "DEBUG"


def test_unknown_embedding_falls_back_to_none(tmp_path, caplog):
    cfg = CortexConfig.from_env(cwd="/", env={"CORTEX_EMBEDDING": "word2vec", "CORTEX_HOME": str(tmp_path)})
    assert cfg.embedding == "none"
    assert "CORTEX_EMBEDDING" in caplog.text

