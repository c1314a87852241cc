import threading
import time

import pytest

from conftest import CountingAllocator
from fdkpipe.exceptions import AllocationFailure, PipelineAborted, ReleaseFailure
from fdkpipe.memory import MemoryPool


def test_pool_grows_lazily_and_reuses_blocks():
    allocator = CountingAllocator()
    pool = MemoryPool(allocator, (4, 4), limit=3)
    assert pool.allocated == 0

    block = pool.acquire()
    assert pool.allocated == 1
    assert tuple(block.buffer.shape) == (4, 4)
    pool.release(block)

    again = pool.acquire()
    assert again is block
    assert allocator.allocations == 1
    assert pool.allocated == 1
    pool.release(again)


def test_acquire_beyond_limit_blocks_until_release():
    pool = MemoryPool(CountingAllocator(), (2, 2), limit=1)
    first = pool.acquire()
    with pytest.raises(TimeoutError):
        pool.acquire(timeout=0.1)

    timer = threading.Timer(0.1, pool.release, args=(first,))
    timer.start()
    second = pool.acquire(timeout=5.0)
    timer.join()
    assert second is first
    assert pool.outstanding == 1


def test_pool_bound_under_concurrency():
    limit = 3
    pool = MemoryPool(CountingAllocator(), (2, 2), limit=limit)
    peak = []
    lock = threading.Lock()

    def worker():
        for _ in range(50):
            block = pool.acquire(timeout=5.0)
            with lock:
                peak.append(pool.outstanding)
            time.sleep(0.0005)
            block.release()

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert max(peak) <= limit
    assert pool.allocated <= limit
    assert pool.outstanding == 0


def test_allocation_failure_is_not_retried():
    allocator = CountingAllocator(fail_after=1)
    pool = MemoryPool(allocator, (2, 2), limit=4)
    pool.acquire()
    with pytest.raises(AllocationFailure):
        pool.acquire()
    assert pool.allocated == 1


def test_abort_wakes_blocked_acquire():
    pool = MemoryPool(CountingAllocator(), (2, 2), limit=1)
    pool.acquire()
    errors = []

    def blocked():
        try:
            pool.acquire()
        except PipelineAborted as exc:
            errors.append(exc)

    thread = threading.Thread(target=blocked)
    thread.start()
    time.sleep(0.1)
    pool.abort()
    thread.join(timeout=5.0)
    assert not thread.is_alive()
    assert len(errors) == 1


def test_double_and_foreign_release_fail():
    pool = MemoryPool(CountingAllocator(), (2, 2), limit=2)
    other = MemoryPool(CountingAllocator(), (2, 2), limit=2)
    block = pool.acquire()
    pool.release(block)
    with pytest.raises(ReleaseFailure):
        pool.release(block)
    foreign = other.acquire()
    with pytest.raises(ReleaseFailure):
        pool.release(foreign)


def test_close_frees_free_and_returned_blocks():
    allocator = CountingAllocator()
    pool = MemoryPool(allocator, (2, 2), limit=2)
    kept = pool.acquire()
    pool.release(pool.acquire())
    pool.close()
    assert allocator.deallocations == 1

    kept.release()
    assert allocator.deallocations == 2
    assert kept.buffer is None
    with pytest.raises(PipelineAborted):
        pool.acquire()


def test_invalid_limit():
    with pytest.raises(ValueError):
        MemoryPool(CountingAllocator(), (2, 2), limit=0)
