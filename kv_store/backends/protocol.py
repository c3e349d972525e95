"""Backend interface definitions."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """A change to a backend key reported by a backend watch.

    ``value`` is the new raw payload. It is ``None`` either for a deletion
    (``deleted=True``) or when the medium does not carry the new payload, in
    which case the receiver has to read the key again.
    """

    key: str
    value: str | None = None
    deleted: bool = False

    @property
    def has_payload(self) -> bool:
        return self.deleted or self.value is not None


ChangeCallback = Callable[[ChangeEvent], None]
CancelWatch = Callable[[], None]


class Backend(ABC):
    """Async key-value backend interface."""

    echoes_writes: bool = False
    """True when :meth:`watch` may report this handle's own writes back."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return raw value for key, or None when key does not exist."""

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store raw value for key."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete key if present."""

    @abstractmethod
    async def list_keys(self, prefix: str) -> list[str]:
        """List all keys beginning with prefix."""

    @abstractmethod
    async def close(self) -> None:
        """Close any backend resources."""

    def watch(self, prefix: str, callback: ChangeCallback) -> CancelWatch | None:  # noqa: ARG002
        """Report external changes to keys beginning with prefix.

        Returns a function that stops watching, or None when the backend has no
        change feed. Backends without one are still usable; stores built on them
        only see their own writes.
        """
        return None
