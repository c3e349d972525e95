"""kv-store - cached, observable key-value store over pluggable async backends"""

from ._version import version as __version__
from .backends import Backend, ChangeEvent, InMemoryAsyncBackend, InMemoryMedium
from .codec import CORRUPT, Codec, JsonCodec
from .errors import (
    BackendError,
    BackendUnavailableError,
    CorruptValueError,
    QuotaExceededError,
    StoreClosedError,
    StoreError,
    SubscriberError,
)
from .key_mapping import KeyMapper
from .store import Store
from .subscriptions import Subscription, SubscriptionRegistry


__all__ = [
    "CORRUPT",
    "Backend",
    "BackendError",
    "BackendUnavailableError",
    "ChangeEvent",
    "Codec",
    "CorruptValueError",
    "InMemoryAsyncBackend",
    "InMemoryMedium",
    "JsonCodec",
    "KeyMapper",
    "QuotaExceededError",
    "Store",
    "StoreClosedError",
    "StoreError",
    "Subscription",
    "SubscriberError",
    "SubscriptionRegistry",
    "__version__",
]
