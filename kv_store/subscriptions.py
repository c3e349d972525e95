"""Per-key subscriber registry with ordered, re-entrant-safe dispatch."""

from __future__ import annotations

import itertools
import logging
from collections import deque
from collections.abc import Callable
from typing import Any


logger = logging.getLogger(__name__)

Callback = Callable[[Any], None]
FailureHandler = Callable[[str, Callback, Exception], None]


class Subscription:
    """Handle returned by :meth:`SubscriptionRegistry.add`.

    Calling the handle, or :meth:`cancel`, removes the callback. Both are
    idempotent.
    """

    def __init__(self, registry: SubscriptionRegistry, key: str, token: int) -> None:
        super().__init__()
        self._registry = registry
        self.key = key
        self._token = token

    @property
    def active(self) -> bool:
        return self._registry.contains(self.key, self._token)

    def cancel(self) -> None:
        self._registry.remove(self.key, self._token)

    def __call__(self) -> None:
        self.cancel()

    def __repr__(self) -> str:
        return f"Subscription(key={self.key!r}, active={self.active})"


class SubscriptionRegistry:
    """Ordered callbacks per key.

    Notifications published while another notification is being delivered are
    queued and delivered once the current pass finishes, so every subscriber
    observes the changes of a key in the order they were published.
    """

    def __init__(self, on_failure: FailureHandler | None = None) -> None:
        super().__init__()
        self._callbacks: dict[str, dict[int, Callback]] = {}
        self._tokens = itertools.count()
        self._on_failure = on_failure
        self._pending: deque[tuple[str, Any, list[Callback]]] = deque()
        self._dispatching = False

    def add(self, key: str, callback: Callback) -> Subscription:
        token = next(self._tokens)
        self._callbacks.setdefault(key, {})[token] = callback
        return Subscription(self, key, token)

    def remove(self, key: str, token: int) -> None:
        callbacks = self._callbacks.get(key)
        if callbacks is None:
            return
        _ = callbacks.pop(token, None)
        if not callbacks:
            del self._callbacks[key]

    def contains(self, key: str, token: int) -> bool:
        return token in self._callbacks.get(key, {})

    def count(self, key: str) -> int:
        return len(self._callbacks.get(key, {}))

    def clear(self) -> None:
        self._callbacks.clear()
        self._pending.clear()

    def notify(self, key: str, value: Any) -> None:
        """Deliver value to a snapshot of the key's current subscribers."""
        callbacks = list(self._callbacks.get(key, {}).values())
        if not callbacks:
            return
        self._pending.append((key, value, callbacks))
        if self._dispatching:
            return

        self._dispatching = True
        try:
            while self._pending:
                pending_key, pending_value, snapshot = self._pending.popleft()
                for callback in snapshot:
                    self._invoke(pending_key, callback, pending_value)
        finally:
            self._dispatching = False

    def _invoke(self, key: str, callback: Callback, value: Any) -> None:
        try:
            callback(value)
        except Exception as error:
            if self._on_failure is None:
                logger.exception("subscriber %r failed for key %r", callback, key)
                return
            self._on_failure(key, callback, error)
