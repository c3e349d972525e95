"""Namespace-prefixed backend keys."""

from __future__ import annotations


class KeyMapper:
    """Map between logical store keys and namespaced backend keys."""

    def __init__(self, namespace: str, sep: str = ":") -> None:
        super().__init__()
        if not namespace:
            msg = "namespace must not be empty"
            raise ValueError(msg)
        if not sep:
            msg = "sep must not be empty"
            raise ValueError(msg)
        if sep in namespace:
            msg = "namespace must not contain separator"
            raise ValueError(msg)

        self.namespace = namespace
        self.sep = sep
        self.prefix = f"{namespace}{sep}"

    def full_key(self, key: str) -> str:
        """Build the backend key for a logical key."""
        if not key:
            msg = "key must not be empty"
            raise ValueError(msg)
        if self.sep in key:
            msg = "key must not contain separator"
            raise ValueError(msg)
        return self.prefix + key

    def matches(self, backend_key: str) -> bool:
        """Return True when a backend key is a direct member of this namespace."""
        if not backend_key.startswith(self.prefix):
            return False
        relative = backend_key.removeprefix(self.prefix)
        return bool(relative) and self.sep not in relative

    def logical_key(self, backend_key: str) -> str:
        """Convert a backend key back into its logical key."""
        if not self.matches(backend_key):
            msg = f"key does not belong to namespace '{self.namespace}': {backend_key}"
            raise ValueError(msg)
        return backend_key.removeprefix(self.prefix)
