"""
Keyed caches shared by the identity resolver and the group expander.

Each cache guarantees that a value is loaded at most once per key, even when
several threads ask for the same key at the same time: the first caller runs
the loader while the others wait for its result.
"""

from threading import Event, Lock
from typing import Callable, Dict, Generic, Hashable, Iterator, List, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class SingleFlightCache(Generic[K, V]):
    """
    Thread-safe cache where concurrent loads of the same key collapse into one.
    """

    def __init__(self, name: str = "cache") -> None:
        self.name = name
        self._lock = Lock()
        self._values: Dict[K, V] = {}
        self._in_flight: Dict[K, Event] = {}

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        """
        Return a cached value without loading it.
        """
        with self._lock:
            return self._values.get(key, default)

    def put(self, key: K, value: V) -> V:
        """
        Store a value unless one is already cached, returning the cached value.
        """
        with self._lock:
            return self._values.setdefault(key, value)

    def get_or_load(self, key: K, loader: Callable[[K], V]) -> V:
        """
        Return the cached value for key, calling loader(key) on a miss.

        If another thread is already loading the key, wait for it instead of
        issuing a second load. If that load raises, one of the waiting
        threads takes over and retries.

        Args:
            key: Cache key
            loader: Function computing the value for a missing key

        Returns:
            The cached or freshly loaded value
        """
        while True:
            with self._lock:
                if key in self._values:
                    return self._values[key]

                event = self._in_flight.get(key)
                if event is None:
                    event = Event()
                    self._in_flight[key] = event
                    is_loader = True
                else:
                    is_loader = False

            if not is_loader:
                event.wait()
                continue

            try:
                value = loader(key)
                with self._lock:
                    self._values[key] = value
                return value
            finally:
                with self._lock:
                    del self._in_flight[key]
                event.set()

    def keys(self) -> List[K]:
        with self._lock:
            return list(self._values.keys())

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._values

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

    def __iter__(self) -> Iterator[K]:
        return iter(self.keys())
