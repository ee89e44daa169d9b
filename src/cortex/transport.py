"""JSON-over-HTTP calls to the remote model APIs with a total deadline.

``urlopen(timeout=...)`` bounds each socket operation, not the whole call,
so a server that trickles its body one byte at a time could hold a hook
open indefinitely.  :func:`post_json` reads the body in small pieces and
gives up once the overall deadline has passed.
"""

from __future__ import annotations

import json
import time
import urllib.error
import urllib.request
from typing import Any

from .errors import ServiceUnavailable

_CHUNK_SIZE = 16384


def read_body(resp: Any, timeout: float) -> bytes:
    """Read *resp* to the end, raising :class:`TimeoutError` after *timeout* seconds.

    Each piece comes from a single ``read1`` so no call waits for a full
    buffer; the elapsed time can exceed *timeout* by at most one socket
    timeout.
    """
    deadline = time.monotonic() + timeout
    reader = getattr(resp, "read1", resp.read)
    chunks: list[bytes] = []
    while True:
        if time.monotonic() > deadline:
            raise TimeoutError(f"response body not received within {timeout:.1f}s")
        chunk = reader(_CHUNK_SIZE)
        if not chunk:
            return b"".join(chunks)
        chunks.append(chunk)


def post_json(url: str, payload: dict[str, Any], api_key: str, timeout: float, label: str) -> Any:
    """POST *payload* to a Gemini endpoint and decode the JSON reply.

    Raises:
        ServiceUnavailable: On HTTP errors, network failures, timeouts or
            an undecodable body.  *label* names the service in the message.
    """
    req = urllib.request.Request(
        url,
        data=json.dumps(payload).encode(),
        headers={
            "Content-Type": "application/json",
            "x-goog-api-key": api_key,
        },
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return json.loads(read_body(resp, timeout).decode())
    except urllib.error.HTTPError as exc:
        body = exc.read().decode(errors="replace") if exc.fp else ""
        raise ServiceUnavailable(f"{label} error ({exc.code}): {body[:200]}") from exc
    except (urllib.error.URLError, TimeoutError, OSError, ValueError) as exc:
        raise ServiceUnavailable(f"{label} unreachable: {exc}") from exc
