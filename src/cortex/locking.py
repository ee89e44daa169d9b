"""Cross-process exclusive section for a Cortex store.

Each invocation of Cortex is a short-lived process, so the lock is a file
next to the database that records its owner (pid, host and a token unique
to the acquisition) and the acquisition time.  Acquisition polls with a
bounded wait, and a lock whose owner is gone or whose timestamp is older
than the stale timeout is broken so that a crashed process cannot block
later invocations.
"""

from __future__ import annotations

import contextlib
import errno
import json
import logging
import os
import socket
import threading
import time
import uuid
from typing import Any

from .errors import LockTimeout

logger = logging.getLogger(__name__)

DEFAULT_WAIT_SECONDS = 10.0
DEFAULT_STALE_SECONDS = 60.0
_POLL_INTERVAL = 0.05


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class StoreLock:
    """Re-entrant (per instance) exclusive file lock.

    Args:
        path: Lock file path, conventionally ``<db>.lock``.
        wait_seconds: How long :meth:`acquire` polls before raising
            :class:`LockTimeout`.
        stale_seconds: Age after which a held lock is considered abandoned.

    Usage::

        lock = StoreLock("/path/memories.db.lock")
        with lock:
            ...  # dependent writes
    """

    def __init__(
        self,
        path: str,
        wait_seconds: float = DEFAULT_WAIT_SECONDS,
        stale_seconds: float = DEFAULT_STALE_SECONDS,
    ) -> None:
        self.path = path
        self.wait_seconds = wait_seconds
        self.stale_seconds = stale_seconds
        self._depth = 0
        self._token: str | None = None
        self._guard = threading.RLock()

    @property
    def held(self) -> bool:
        return self._depth > 0

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    def acquire(self) -> None:
        """Take the lock, waiting at most :attr:`wait_seconds`.

        Raises:
            LockTimeout: If another live owner keeps the lock past the
                bounded wait.
        """
        self._guard.acquire()
        if self._depth > 0:
            self._depth += 1
            return

        deadline = time.monotonic() + self.wait_seconds
        try:
            while True:
                if self._try_create():
                    self._depth = 1
                    return
                if self._break_if_stale():
                    continue
                if time.monotonic() >= deadline:
                    owner = self.read_owner()
                    raise LockTimeout(
                        f"Store lock {self.path} is held by {owner or 'an unknown owner'}; "
                        "retry once the other Cortex process finishes."
                    )
                time.sleep(_POLL_INTERVAL)
        except BaseException:
            self._guard.release()
            raise

    def release(self) -> None:
        """Release one level of the lock; the file goes away at depth zero.

        The file is only removed while it still carries this instance's
        token.  A lock broken as stale and taken by another process stays.
        """
        if self._depth == 0:
            return
        self._depth -= 1
        if self._depth == 0:
            owner = self.read_owner()
            if owner is not None and owner.get("token") == self._token:
                with contextlib.suppress(FileNotFoundError):
                    os.remove(self.path)
            else:
                logger.warning("Store lock %s was taken over by %s; leaving it in place", self.path, owner)
            self._token = None
        self._guard.release()

    def __enter__(self) -> StoreLock:
        self.acquire()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.release()

    # ------------------------------------------------------------------
    # Owner record
    # ------------------------------------------------------------------

    def read_owner(self) -> dict[str, Any] | None:
        """Return the owner record of the lock file, or ``None``."""
        try:
            with open(self.path, encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    def _try_create(self) -> bool:
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except OSError as exc:
            if exc.errno == errno.EEXIST:
                return False
            raise
        self._token = uuid.uuid4().hex
        record = {
            "pid": os.getpid(),
            "token": self._token,
            "host": socket.gethostname(),
            "acquired_at": time.time(),
        }
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(record, fh)
        return True

    def _break_if_stale(self) -> bool:
        owner = self.read_owner()
        try:
            mtime = os.path.getmtime(self.path)
        except FileNotFoundError:
            return True

        acquired_at = mtime
        if owner is not None:
            with contextlib.suppress(TypeError, ValueError):
                acquired_at = float(owner.get("acquired_at", mtime))

        stale = time.time() - acquired_at >= self.stale_seconds
        if not stale and owner is not None and owner.get("host") == socket.gethostname():
            with contextlib.suppress(TypeError, ValueError):
                stale = not _pid_alive(int(owner.get("pid", 0)))

        if not stale:
            return False

        logger.warning("Breaking stale store lock %s (owner=%s)", self.path, owner)
        with contextlib.suppress(FileNotFoundError):
            os.remove(self.path)
        return True

    def __repr__(self) -> str:  # pragma: no cover
        return f"StoreLock(path={self.path!r}, held={self.held})"
