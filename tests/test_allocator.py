import pytest

from salon_tokens.allocator import SequenceAllocator
from salon_tokens.errors import AllocationUnavailable, StoreUnavailable
from salon_tokens.store import MemoryTokenStore


def test_numbers_are_per_queue_and_consecutive():
    alloc = SequenceAllocator(MemoryTokenStore())
    assert [alloc.next("male") for _ in range(3)] == [1, 2, 3]
    assert alloc.next("female") == 1
    assert alloc.next("male") == 4


def test_unreachable_counter_has_no_fallback():
    class DownStore:
        def next_sequence(self, queue):
            raise StoreUnavailable("connection refused")

    with pytest.raises(AllocationUnavailable) as exc:
        SequenceAllocator(DownStore()).next("male")
    assert exc.value.code == "allocation_unavailable"
    assert exc.value.retryable
