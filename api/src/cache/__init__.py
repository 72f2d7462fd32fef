# SkyCache cache layer
from .coalescer import Coalescer, InFlight
from .config import CacheConfig
from .errors import CacheError, InvalidTTLError, ProducerError
from .store import CacheState, CoalescingStore, FetchResult

__all__ = [
    "CacheConfig",
    "CacheError",
    "CacheState",
    "Coalescer",
    "CoalescingStore",
    "FetchResult",
    "InFlight",
    "InvalidTTLError",
    "ProducerError",
]
