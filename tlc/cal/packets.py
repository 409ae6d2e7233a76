"""
Shared cache of compressed video packets.

A background demuxer appends packets while any number of consumers wait
for the prefix they need: a single frame for previews, the whole
recording for bulk extraction. Consumers only ever see complete packets
and never a count larger than what is actually stored.
"""

import logging
import threading
from typing import Any, List, Optional

from .errors import TLCError

logger = logging.getLogger(__name__)


class PacketCache:
    """
    Bounded, thread-safe, append-only packet sequence.

    Example:
        >>> cache = PacketCache()
        >>> cache.reset(capacity=1000)       # producer side, before refill
        >>> cache.append(packet)              # producer side
        >>> cache.wait_for(10)                # consumer side, blocks
        >>> packet = cache[9]
    """

    def __init__(self):
        self._packets: List[Any] = []
        self._capacity = 0
        self._error: Optional[BaseException] = None
        self._cond = threading.Condition()

    @property
    def capacity(self) -> int:
        """Number of packets the current fill will produce."""
        return self._capacity

    def reset(self, capacity: int) -> None:
        """Clear the cache and reserve it for ``capacity`` packets."""
        with self._cond:
            self._packets = []
            self._capacity = capacity
            self._error = None
            self._cond.notify_all()

    def append(self, packet: Any) -> None:
        with self._cond:
            if len(self._packets) >= self._capacity:
                raise IndexError(f"Packet cache is full ({self._capacity} packets)")
            self._packets.append(packet)
            self._cond.notify_all()

    def fail(self, error: BaseException) -> None:
        """Record a producer error; every current and future waiter raises it."""
        with self._cond:
            self._error = error
            self._cond.notify_all()

    def wait_for(self, count: int, timeout: Optional[float] = None) -> None:
        """
        Block until at least ``count`` packets are stored.

        Args:
            count: Number of packets needed
            timeout: Seconds to wait before giving up, None waits forever

        Raises:
            IndexError: If ``count`` exceeds the capacity of the current fill
            TLCError: The producer's error, if the fill failed first
            TimeoutError: If ``timeout`` elapsed
        """
        with self._cond:
            if count > self._capacity:
                raise IndexError(f"Requested {count} packets, cache holds at most {self._capacity}")
            ready = self._cond.wait_for(
                lambda: len(self._packets) >= count or self._error is not None,
                timeout=timeout,
            )
            if len(self._packets) >= count:
                return
            if self._error is not None:
                if isinstance(self._error, TLCError):
                    raise self._error
                raise TLCError(f"Packet demuxing failed ({self._error})") from self._error
            if not ready:
                raise TimeoutError(f"Timed out waiting for {count} packets")

    def slice(self, start: int, stop: int) -> List[Any]:
        """Snapshot of packets ``start:stop``; call after :meth:`wait_for`."""
        with self._cond:
            return self._packets[start:stop]

    def clear(self) -> None:
        """Release every packet and forget the capacity; pending waiters raise."""
        with self._cond:
            self._packets = []
            self._capacity = 0
            self._error = TLCError("Packet cache released")
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._packets)

    def __getitem__(self, index: int) -> Any:
        with self._cond:
            return self._packets[index]

    def __repr__(self) -> str:
        return f"<PacketCache {len(self)}/{self._capacity}>"
