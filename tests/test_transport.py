"""Tests for remote calls bounded by a total deadline."""

from __future__ import annotations

import time

import pytest

from cortex.errors import ServiceUnavailable
from cortex.transport import post_json, read_body


class _TricklingResponse:
    """Hands out one byte per call, pausing before each."""

    def __init__(self, size: int, pause: float) -> None:
        self.remaining = size
        self.pause = pause

    def read1(self, amount: int) -> bytes:
        if self.remaining == 0:
            return b""
        time.sleep(self.pause)
        self.remaining -= 1
        return b"x"


class _PlainResponse:
    def __init__(self, body: bytes) -> None:
        self.body = body

    def read(self, amount: int) -> bytes:
        piece, self.body = self.body[:amount], self.body[amount:]
        return piece


def test_read_body_collects_everything():
    assert read_body(_TricklingResponse(5, 0.0), timeout=5) == b"xxxxx"


def test_read_body_without_read1():
    assert read_body(_PlainResponse(b'{"a": 1}' * 5000), timeout=5) == b'{"a": 1}' * 5000


def test_read_body_enforces_total_deadline():
    start = time.monotonic()
    with pytest.raises(TimeoutError):
        read_body(_TricklingResponse(1000, 0.05), timeout=0.3)
    assert time.monotonic() - start < 1.0


def test_post_json_unreachable():
    with pytest.raises(ServiceUnavailable, match="Test API unreachable"):
        post_json("http://127.0.0.1:9/x", {"a": 1}, api_key="k", timeout=0.5, label="Test API")
