"""Pooled projection memory.

Raw allocators hand out single projection-sized buffers on one device; a
:class:`MemoryPool` recycles those buffers so that the steady state of a run
never allocates. Pools grow lazily up to their limit, never shrink during a
run, and block callers while every block is handed out.
"""

import logging
import threading
import time

import torch

from .constants import _POLL_INTERVAL
from .exceptions import AllocationFailure, PipelineAborted, ReleaseFailure

logger = logging.getLogger(__name__)


# ============================================================================
# Raw Allocators
# ============================================================================

class DeviceAllocator:
    """Allocate float32 buffers in the memory of one device.

    Parameters
    ----------
    device : torch.device
        Target device. CUDA devices get device memory, ``cpu`` gets pageable host memory.
    """

    def __init__(self, device):
        self.device = torch.device(device)

    def allocate(self, shape):
        """Return a new uninitialised buffer of `shape`.

        Raises
        ------
        AllocationFailure
            If the device cannot provide the memory.
        """
        try:
            return torch.empty(shape, dtype=torch.float32, device=self.device)
        except RuntimeError as exc:  # torch.cuda.OutOfMemoryError is a RuntimeError
            raise AllocationFailure(
                f"cannot allocate {tuple(shape)} float32 buffer on {self.device}: {exc}"
            ) from exc

    def deallocate(self, buffer):
        del buffer

    def __repr__(self):
        return f"{type(self).__name__}({self.device})"


class PinnedHostAllocator(DeviceAllocator):
    """Allocate page-locked host buffers for asynchronous host-to-device copies.

    Falls back to pageable memory when no CUDA runtime is present.
    """

    def __init__(self):
        super().__init__("cpu")

    def allocate(self, shape):
        try:
            return torch.empty(shape, dtype=torch.float32,
                               pin_memory=torch.cuda.is_available())
        except RuntimeError as exc:
            raise AllocationFailure(f"cannot allocate pinned {tuple(shape)} buffer: {exc}") from exc


# ============================================================================
# Pool
# ============================================================================

class PooledBlock:
    """One projection-sized buffer owned by a :class:`MemoryPool`.

    While a block is checked out its ``buffer`` is exclusively owned by the
    holder; :meth:`release` gives it back.
    """

    __slots__ = ("buffer", "pool", "_checked_out")

    def __init__(self, buffer, pool):
        self.buffer = buffer
        self.pool = pool
        self._checked_out = False

    @property
    def device(self):
        return self.buffer.device

    def release(self):
        self.pool.release(self)

    def __repr__(self):
        if self.buffer is None:
            return "PooledBlock(<freed>)"
        return f"PooledBlock({tuple(self.buffer.shape)}, {self.buffer.device})"


class MemoryPool:
    """Fixed-size block pool bound to one device.

    Parameters
    ----------
    allocator : DeviceAllocator
        Raw allocator used to grow the pool.
    block_shape : tuple of int
        Shape of every block, usually ``(det_rows, det_cols)``.
    limit : int
        Maximum number of blocks the pool ever creates.

    Examples
    --------
    >>> pool = MemoryPool(DeviceAllocator('cpu'), (4, 4), limit=2)
    >>> block = pool.acquire()
    >>> pool.outstanding
    1
    >>> pool.release(block)
    >>> pool.outstanding
    0
    """

    def __init__(self, allocator, block_shape, limit):
        if limit < 1:
            raise ValueError(f"pool limit must be at least 1, got {limit}")
        self.allocator = allocator
        self.block_shape = tuple(block_shape)
        self.limit = limit
        self._free = []
        self._allocated = 0
        self._outstanding = 0
        self._closed = False
        self._aborted = False
        self._cond = threading.Condition()

    @property
    def allocated(self):
        """Number of blocks created so far (monotonic during a run)."""
        return self._allocated

    @property
    def outstanding(self):
        """Number of blocks currently checked out."""
        return self._outstanding

    @property
    def free(self):
        return len(self._free)

    def acquire(self, timeout=None):
        """Check out one block, growing the pool or waiting for a release.

        Parameters
        ----------
        timeout : float, optional
            Give up after this many seconds and raise ``TimeoutError``.
            ``None`` waits until a block is released.

        Returns
        -------
        PooledBlock

        Raises
        ------
        AllocationFailure
            If the raw allocator fails while the pool grows. Not retried.
        PipelineAborted
            If the pool was aborted while waiting.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._free and self._allocated >= self.limit:
                self._check_usable()
                if deadline is not None and time.monotonic() >= deadline:
                    raise TimeoutError(f"no block released within {timeout} s")
                self._cond.wait(_POLL_INTERVAL)
            self._check_usable()

            if self._free:
                block = self._free.pop()
            else:
                block = PooledBlock(self.allocator.allocate(self.block_shape), self)
                self._allocated += 1
                logger.debug("Pool on %s grew to %d/%d blocks",
                             self.allocator.device, self._allocated, self.limit)
            block._checked_out = True
            self._outstanding += 1
            return block

    def release(self, block):
        """Return `block` to the free list. Device memory stays allocated."""
        if block.pool is not self:
            raise ReleaseFailure(f"{block!r} does not belong to this pool")
        with self._cond:
            if not block._checked_out:
                raise ReleaseFailure(f"{block!r} released twice")
            block._checked_out = False
            self._outstanding -= 1
            if self._closed:
                self.allocator.deallocate(block.buffer)
                block.buffer = None
            else:
                self._free.append(block)
            self._cond.notify()

    def abort(self):
        """Wake every blocked :meth:`acquire` with :class:`PipelineAborted`."""
        with self._cond:
            self._aborted = True
            self._cond.notify_all()

    def close(self):
        """Free every block. Blocks still checked out are freed on release."""
        with self._cond:
            self._closed = True
            for block in self._free:
                self.allocator.deallocate(block.buffer)
                block.buffer = None
            self._free.clear()
            self._cond.notify_all()
        logger.debug("Closed pool on %s (%d blocks)", self.allocator.device, self._allocated)

    def _check_usable(self):
        if self._aborted:
            raise PipelineAborted("memory pool aborted")
        if self._closed:
            raise PipelineAborted("memory pool is closed")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def __repr__(self):
        return (f"MemoryPool({self.allocator!r}, block_shape={self.block_shape}, "
                f"limit={self.limit}, allocated={self._allocated}, "
                f"outstanding={self._outstanding})")
