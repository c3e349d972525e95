"""Exception types raised or reported by the store."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from collections.abc import Callable


class StoreError(Exception):
    """Base exception for all store errors."""


class StoreClosedError(StoreError):
    """Raised when a torn-down store is asked to change state."""


class BackendError(StoreError):
    """Raised when the persistence medium fails an operation."""

    def __init__(self, operation: str, key: str | None = None, detail: str = "") -> None:
        self.operation = operation
        self.key = key
        msg = f"backend error during '{operation}'"
        if key is not None:
            msg += f" for key '{key}'"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class BackendUnavailableError(BackendError):
    """The medium cannot be reached."""


class QuotaExceededError(BackendError):
    """The medium rejected a write for lack of space."""


class CorruptValueError(StoreError):
    """A stored payload could not be decoded."""

    def __init__(self, key: str, raw: str) -> None:
        self.key = key
        self.raw = raw
        super().__init__(f"corrupt payload for key '{key}'")


class SubscriberError(StoreError):
    """A subscriber callback raised while being notified."""

    def __init__(self, key: str, callback: Callable[[Any], None]) -> None:
        self.key = key
        self.callback = callback
        super().__init__(f"subscriber {callback!r} failed for key '{key}'")
