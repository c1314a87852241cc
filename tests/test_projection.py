import copy
import gc
import pickle

import pytest
import torch

from conftest import CountingAllocator
from fdkpipe.exceptions import ReleaseFailure
from fdkpipe.memory import MemoryPool
from fdkpipe.projection import Projection


@pytest.fixture
def pool():
    return MemoryPool(CountingAllocator(), (3, 5), limit=2)


def pooled(pool, index=0):
    block = pool.acquire()
    block.buffer.fill_(float(index))
    return Projection(block, 5, 3, index, 0.25)


def test_take_moves_buffer_and_metadata(pool):
    source = pooled(pool, index=7)
    moved = source.take()

    assert moved.valid and moved.index == 7 and moved.angle == 0.25
    assert torch.all(moved.data == 7.0)
    assert not source.valid
    with pytest.raises(ReleaseFailure):
        source.data
    assert pool.outstanding == 1

    moved.release()
    assert pool.outstanding == 0


def test_release_happens_once(pool):
    projection = pooled(pool)
    projection.release()
    projection.release()
    assert pool.outstanding == 0
    assert pool.free == 1


def test_context_manager_releases(pool):
    with pooled(pool) as projection:
        assert pool.outstanding == 1
        assert projection.device == torch.device("cpu")
    assert pool.outstanding == 0


def test_finalizer_returns_block(pool):
    projection = pooled(pool)
    del projection
    gc.collect()
    assert pool.outstanding == 0


def test_projections_cannot_be_copied(pool):
    projection = pooled(pool)
    with pytest.raises(TypeError):
        copy.copy(projection)
    with pytest.raises(TypeError):
        copy.deepcopy(projection)
    with pytest.raises(TypeError):
        pickle.dumps(projection)
    projection.release()


def test_sentinel_has_no_buffer():
    sentinel = Projection.sentinel()
    assert not sentinel.valid
    with pytest.raises(ReleaseFailure):
        sentinel.data
    sentinel.release()
    assert "sentinel" in repr(sentinel)


def test_plain_tensor_buffer():
    projection = Projection(torch.ones(2, 3), 3, 2, 1, 0.0)
    assert projection.data.shape == (2, 3)
    projection.release()
