"""Value codecs between logical values and backend string payloads."""

from __future__ import annotations

import enum
import json
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Final, override


if TYPE_CHECKING:
    from collections.abc import Callable


class _Corrupt(enum.Enum):
    CORRUPT = "corrupt"

    @override
    def __repr__(self) -> str:
        return "CORRUPT"


CORRUPT: Final = _Corrupt.CORRUPT
"""Returned by :meth:`Codec.decode` for payloads that cannot be decoded."""


class Codec(ABC):
    """Serialize values to backend payloads and back."""

    @abstractmethod
    def encode(self, value: Any) -> str:
        """Return the payload for value."""

    @abstractmethod
    def decode(self, raw: str) -> Any:
        """Return the value for a payload, or ``CORRUPT`` when it is malformed."""


class JsonCodec(Codec):
    """JSON codec; the default for :class:`~kv_store.store.Store`."""

    def __init__(
        self,
        json_encoder: Callable[[Any], str] = json.dumps,
        json_decoder: Callable[[str], Any] = json.loads,
    ) -> None:
        super().__init__()
        self._json_encoder = json_encoder
        self._json_decoder = json_decoder

    @override
    def encode(self, value: Any) -> str:
        return self._json_encoder(value)

    @override
    def decode(self, raw: str) -> Any:
        try:
            return self._json_decoder(raw)
        except (ValueError, TypeError):
            return CORRUPT
