"""Correlation ids threading one logical request through logs and events.

An id looks like ``req_1706635845_9f86d081``: the unix time at creation and
eight random hex characters. The current id lives in a context variable, so a
value set inside an ``asyncio`` task or a worker job is not visible to other
tasks. Callers own the boundaries: use :meth:`CorrelationTracker.scope` around
a request or task, or call :meth:`CorrelationTracker.reset` when it ends.
"""

from __future__ import annotations

import re
import secrets
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

import structlog

CORRELATION_LOG_KEY = "correlation_id"
CORRELATION_ID_PATTERN = re.compile(r"^req_\d+_[0-9a-f]{8}$")


def new_correlation_id() -> str:
    return f"req_{int(time.time())}_{secrets.token_hex(4)}"


class CorrelationTracker:
    def __init__(self) -> None:
        self._current: ContextVar[str | None] = ContextVar(f"correlation_id_{id(self)}", default=None)

    def generate(self) -> str:
        """Create a new id and make it the current one."""
        correlation_id = new_correlation_id()
        self._adopt(correlation_id)
        return correlation_id

    def get(self) -> str | None:
        return self._current.get()

    def set(self, correlation_id: str) -> None:
        """Adopt an id received from an upstream system."""
        if not isinstance(correlation_id, str) or not correlation_id.strip():
            raise ValueError("correlation id must be a non-empty string")
        self._adopt(correlation_id)

    def get_or_generate(self) -> str:
        current = self._current.get()
        if current is None:
            return self.generate()
        return current

    def reset(self) -> None:
        self._current.set(None)
        structlog.contextvars.unbind_contextvars(CORRELATION_LOG_KEY)

    @contextmanager
    def scope(self, correlation_id: str | None = None) -> Iterator[str]:
        """Run a block under ``correlation_id`` (or a fresh one) and restore the previous id on exit."""
        value = correlation_id or new_correlation_id()
        token = self._current.set(value)
        try:
            with structlog.contextvars.bound_contextvars(**{CORRELATION_LOG_KEY: value}):
                yield value
        finally:
            self._current.reset(token)

    def _adopt(self, correlation_id: str) -> None:
        self._current.set(correlation_id)
        structlog.contextvars.bind_contextvars(**{CORRELATION_LOG_KEY: correlation_id})


__all__ = ["CorrelationTracker", "CORRELATION_ID_PATTERN", "new_correlation_id"]
