from __future__ import annotations

import threading
from uuid import UUID

from moebench.ids import IdentifierAllocator, id_timestamp_ms, new_id


class SteppingClock:
    def __init__(self, *values: int) -> None:
        self._values = list(values)

    def __call__(self) -> int:
        if len(self._values) > 1:
            return self._values.pop(0)
        return self._values[0]


def test_ids_are_uuid7_strings():
    ident = IdentifierAllocator().new_id()
    u = UUID(ident)

    assert u.version == 7
    assert ident == str(u)
    assert ident == ident.lower()


def test_module_level_new_id_is_unique():
    assert new_id() != new_id()


def test_timestamp_is_embedded():
    alloc = IdentifierAllocator(clock=lambda: 1_700_000_000_123)
    assert id_timestamp_ms(alloc.new_id()) == 1_700_000_000_123


def test_ids_sort_in_allocation_order_within_one_millisecond():
    alloc = IdentifierAllocator(clock=lambda: 1_000)
    ids = [alloc.new_id() for _ in range(500)]

    assert ids == sorted(ids)
    assert len(set(ids)) == len(ids)


def test_ids_sort_across_milliseconds():
    alloc = IdentifierAllocator(clock=SteppingClock(1_000, 1_001, 1_005))
    ids = [alloc.new_id() for _ in range(3)]

    assert ids == sorted(ids)
    assert [id_timestamp_ms(i) for i in ids] == [1_000, 1_001, 1_005]


def test_clock_going_backwards_keeps_monotonic_order():
    alloc = IdentifierAllocator(clock=SteppingClock(5_000, 4_000, 4_000))
    ids = [alloc.new_id() for _ in range(3)]

    assert ids == sorted(ids)
    assert all(id_timestamp_ms(i) == 5_000 for i in ids)


def test_counter_overflow_advances_timestamp():
    alloc = IdentifierAllocator(clock=lambda: 10)
    ids = [alloc.new_id() for _ in range(5_000)]

    assert ids == sorted(ids)
    assert len(set(ids)) == len(ids)
    assert id_timestamp_ms(ids[-1]) > 10


def test_allocation_is_thread_safe():
    alloc = IdentifierAllocator()
    out: list[str] = []
    lock = threading.Lock()

    def work() -> None:
        local = [alloc.new_id() for _ in range(200)]
        with lock:
            out.extend(local)

    threads = [threading.Thread(target=work) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(out) == 1_600
    assert len(set(out)) == 1_600
