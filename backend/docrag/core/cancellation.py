"""
Cooperative cancellation token.

A token is created per ingestion run and passed down through every stage
boundary. Stages ``await checkpoint(token, message)`` between extraction
pages, before the classification call, before each embedding batch and
before persisting. Nothing is interrupted preemptively: an in-flight
service call always finishes before the next checkpoint sees the flag.

Three signals can set a token:
  • ``cancel()``  — in-process, from any thread (flag is a threading.Event)
  • ``probe``     — sync callable, e.g. Celery's ``AbortableTask.is_aborted``
  • watchers      — async callables polled only at checkpoints, e.g. "is my
                    document row still there?" against the shared store, so a
                    cancel issued by another worker process is still observed
"""

from __future__ import annotations

import logging
import threading
from typing import Awaitable, Callable

from docrag.core.exceptions import OperationCancelled

logger = logging.getLogger(__name__)

Watcher = Callable[[], Awaitable[bool]]


class CancellationToken:

    def __init__(
        self,
        run_id: str | None = None,
        probe:  Callable[[], bool] | None = None,
    ) -> None:
        self.run_id  = run_id
        self._probe  = probe
        self._event  = threading.Event()
        self._reason: str | None = None
        self._watchers: list[tuple[Watcher, str]] = []

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()
            logger.info("Cancellation | run=%s reason=%s", self.run_id, reason)

    def watch(self, watcher: Watcher, reason: str) -> None:
        """Register an async signal; a True result cancels the token with ``reason``."""
        self._watchers.append((watcher, reason))

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._probe is not None and self._probe():
            self.cancel("external abort signal")
            return True
        return False

    @property
    def reason(self) -> str | None:
        return self._reason

    async def poll(self) -> bool:
        """Check every signal, watchers included."""
        if self.cancelled:
            return True
        for watcher, reason in self._watchers:
            if await watcher():
                self.cancel(reason)
                return True
        return False

    def raise_if_cancelled(self, message: str = "Operation cancelled") -> None:
        if self.cancelled:
            raise OperationCancelled(message)

    async def checkpoint(self, message: str = "Operation cancelled") -> None:
        if await self.poll():
            raise OperationCancelled(message)

    def __repr__(self) -> str:
        return f"CancellationToken(run_id={self.run_id!r}, cancelled={self._event.is_set()})"


async def checkpoint(token: CancellationToken | None, message: str = "Operation cancelled") -> None:
    """Checkpoint helper for stages that accept an optional token."""
    if token is not None:
        await token.checkpoint(message)
