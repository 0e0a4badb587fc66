"""Short-lived undo windows for destructive actions.

A registry belongs to one session (one user of the API). Nothing here is
shared between processes, so a restart silently forfeits pending undos.
"""
from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from aws_lambda_powertools import Logger

from . import config
from .errors import UndoExpiredError

logger = Logger()

Clock = Callable[[], float]


@dataclass
class _Window:
    undo_fn: Callable[[], Any]
    deadline: float
    expires_at: datetime


class UndoInvoker:
    """Calls the registered undo function at most once, before the deadline."""

    def __init__(self, registry: UndoRegistry, key: str, window: _Window) -> None:
        self._registry = registry
        self.key = key
        self._window = window

    @property
    def expires_at(self) -> datetime:
        return self._window.expires_at

    def __call__(self) -> Any:
        window = self._registry._claim(self.key, self._window)
        return window.undo_fn()


class UndoRegistry:
    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    def __len__(self) -> int:
        self.sweep()
        return len(self._windows)

    def __contains__(self, key: str) -> bool:
        self.sweep()
        return key in self._windows

    def register(
        self,
        key: str,
        undo_fn: Callable[[], Any],
        timeout_ms: int = config.UNDO_WINDOW_MS,
    ) -> UndoInvoker:
        self.sweep()
        if key in self._windows:
            logger.debug("Replacing live undo window", extra={"undo_key": key})
        window = _Window(
            undo_fn=undo_fn,
            deadline=self._clock() + timeout_ms / 1000,
            expires_at=datetime.now(UTC) + timedelta(milliseconds=timeout_ms),
        )
        self._windows[key] = window
        return UndoInvoker(self, key, window)

    def invoke(self, key: str) -> Any:
        self.sweep()
        window = self._windows.get(key)
        if window is None:
            raise UndoExpiredError("Nothing to undo; the undo window has closed", token=key)
        return UndoInvoker(self, key, window)()

    def dismiss(self, key: str) -> None:
        self._windows.pop(key, None)

    def sweep(self) -> None:
        now = self._clock()
        for key in [k for k, w in self._windows.items() if now >= w.deadline]:
            del self._windows[key]

    def _claim(self, key: str, window: _Window) -> _Window:
        # A replaced, dismissed, used or expired window can no longer fire
        if self._windows.get(key) is not window or self._clock() >= window.deadline:
            self.sweep()
            raise UndoExpiredError("Nothing to undo; the undo window has closed", token=key)
        del self._windows[key]
        return window


@dataclass
class UndoSessions:
    """Per-user undo registries, held on the application state."""

    clock: Clock = time.monotonic
    _registries: dict[str, UndoRegistry] = field(default_factory=dict)

    def for_user(self, user_id: str) -> UndoRegistry:
        self.prune()
        registry = self._registries.get(user_id)
        if registry is None:
            registry = self._registries[user_id] = UndoRegistry(self.clock)
        return registry

    def __len__(self) -> int:
        return len(self._registries)

    def prune(self) -> None:
        """Drop every registry whose windows have all closed."""
        for user_id in [u for u, r in self._registries.items() if len(r) == 0]:
            del self._registries[user_id]
