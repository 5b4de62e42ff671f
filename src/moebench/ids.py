from __future__ import annotations

import secrets
import threading
import time
from typing import Callable
from uuid import UUID

_COUNTER_BITS = 12
_COUNTER_MAX = (1 << _COUNTER_BITS) - 1
_RAND_B_BITS = 62


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class IdentifierAllocator:
    """
    Generates unique, time-sortable identifiers for experiments and results.

    Layout follows UUIDv7: 48-bit unix milliseconds, version nibble, a 12-bit
    counter that keeps ids monotonic within one millisecond, the RFC variant
    and 62 random bits. The canonical lowercase string form sorts lexically in
    allocation order for a single allocator.

    If the clock steps backwards, or the counter overflows inside one
    millisecond, the allocator keeps using (and advances) its last timestamp.
    """

    def __init__(self, clock: Callable[[], int] = _now_ms) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._last_ms = -1
        self._counter = 0

    def new_id(self) -> str:
        return str(self.new_uuid())

    def new_uuid(self) -> UUID:
        with self._lock:
            now = self._clock()
            if now > self._last_ms:
                self._last_ms = now
                # random start leaves headroom for the counter
                self._counter = secrets.randbits(_COUNTER_BITS - 1)
            elif self._counter < _COUNTER_MAX:
                self._counter += 1
            else:
                self._last_ms += 1
                self._counter = 0
            ms, counter = self._last_ms, self._counter

        value = (ms & ((1 << 48) - 1)) << 80
        value |= 0x7 << 76
        value |= counter << 64
        value |= 0b10 << 62
        value |= secrets.randbits(_RAND_B_BITS)
        return UUID(int=value)


_default = IdentifierAllocator()


def new_id() -> str:
    return _default.new_id()


def id_timestamp_ms(identifier: str) -> int:
    """Millisecond timestamp embedded in an id produced by IdentifierAllocator."""
    return UUID(identifier).int >> 80
