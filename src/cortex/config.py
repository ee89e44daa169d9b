"""Environment-driven configuration.

Variables read by :meth:`CortexConfig.from_env`:

* ``CORTEX_HOME``: directory for global data (default ``~/.cortex``).
* ``CORTEX_GLOBAL_PATH``: global store file (default ``$CORTEX_HOME/global.db``).
* ``CORTEX_PROJECT_PATH``: project store file; overrides root detection.
* ``CORTEX_EMBEDDING``: ``gemini``, ``local`` or ``none``.
* ``CORTEX_TOKEN_BUDGET``: push-surface token budget.
* ``CORTEX_MAX_CHARS``: transcript characters per extraction run.
* ``CORTEX_LOG_LEVEL``: level of the ``cortex`` logger.
* ``GEMINI_API_KEY``: enables the remote text and embedding services.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

from .store import detect_project_root, project_db_path
from .surface import DEFAULT_TOKEN_BUDGET, surface_path
from .transcript import DEFAULT_MAX_CHARS

logger = logging.getLogger(__name__)

_EMBEDDING_CHOICES = ("gemini", "local", "none")


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default
    if value <= 0:
        logger.warning("Ignoring non-positive %s=%r", name, raw)
        return default
    return value


@dataclass
class CortexConfig:
    """Resolved settings for one Cortex invocation.

    Attributes:
        home: Directory holding global data.
        global_path: Global store file.
        project_path: Project store file, or ``None`` outside a project.
        project_root: Detected project root, or ``None``.
        embedding: Embedding router name.
        api_key: Gemini API key, if any.
        token_budget: Push-surface token budget.
        max_chars: Transcript characters per extraction run.
        log_level: Name of the ``cortex`` logger level.
    """

    home: str
    global_path: str
    project_path: str | None = None
    project_root: str | None = None
    embedding: str = "gemini"
    api_key: str | None = None
    token_budget: int = DEFAULT_TOKEN_BUDGET
    max_chars: int = DEFAULT_MAX_CHARS
    log_level: str = "WARNING"

    @classmethod
    def from_env(
        cls,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CortexConfig:
        """Build a config from environment variables.

        Args:
            cwd: Directory used for project-root detection.
            env: Mapping to read instead of ``os.environ``.
        """
        env = os.environ if env is None else env
        home = os.path.expanduser(env.get("CORTEX_HOME") or os.path.join("~", ".cortex"))
        global_path = os.path.expanduser(env.get("CORTEX_GLOBAL_PATH") or os.path.join(home, "global.db"))

        project_root: str | None = None
        project_path = env.get("CORTEX_PROJECT_PATH") or None
        if project_path:
            project_path = os.path.expanduser(project_path)
            # <root>/.cortex/memories.db
            project_root = os.path.dirname(os.path.dirname(os.path.abspath(project_path)))
        else:
            project_root = detect_project_root(cwd)
            if project_root is not None:
                project_path = project_db_path(project_root)

        embedding = (env.get("CORTEX_EMBEDDING") or "gemini").lower().strip()
        if embedding not in _EMBEDDING_CHOICES:
            logger.warning("Unknown CORTEX_EMBEDDING=%r, using 'none'", embedding)
            embedding = "none"

        return cls(
            home=home,
            global_path=global_path,
            project_path=project_path,
            project_root=project_root,
            embedding=embedding,
            api_key=env.get("GEMINI_API_KEY") or None,
            token_budget=_int_env(env, "CORTEX_TOKEN_BUDGET", DEFAULT_TOKEN_BUDGET),
            max_chars=_int_env(env, "CORTEX_MAX_CHARS", DEFAULT_MAX_CHARS),
            log_level=(env.get("CORTEX_LOG_LEVEL") or "WARNING").upper(),
        )

    @property
    def surface_path(self) -> str | None:
        """Push-surface artifact path, or ``None`` outside a project."""
        if self.project_root is None:
            return None
        return surface_path(self.project_root)
