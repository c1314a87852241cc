"""Preloader stage: stage host projections into pooled device memory.

Projections are spread round-robin over the configured devices. Every device
has its own :class:`~fdkpipe.memory.MemoryPool`, so the pool limit bounds
how far loading can run ahead of the compute stages on that device.
"""

import logging

from .exceptions import MalformedInput, TransferFailure
from .memory import DeviceAllocator, MemoryPool
from .projection import Projection
from .stage import Stage
from .utils import new_stream, stream_scope

logger = logging.getLogger(__name__)


class PreloaderStage(Stage):
    """Move host-resident projections to the devices ahead of processing.

    Parameters
    ----------
    devices : sequence of torch.device
        Devices to distribute projections over; position in the sequence is the
        device index carried by outgoing projections.
    block_shape : tuple of int
        ``(det_rows, det_cols)`` of every projection.
    pool_limit : int
        Block limit of each per-device pool.
    allocator_factory : callable, optional
        ``device -> allocator``; defaults to :class:`~fdkpipe.memory.DeviceAllocator`.
    """

    name = "preloader"

    def __init__(self, devices, block_shape, pool_limit, allocator_factory=DeviceAllocator):
        super().__init__()
        self.devices = tuple(devices)
        self.block_shape = tuple(block_shape)
        self.pools = [MemoryPool(allocator_factory(dev), self.block_shape, pool_limit)
                      for dev in self.devices]
        self._next_device = 0

    def process(self, host_projection):
        rows, cols = self.block_shape
        if (host_projection.height, host_projection.width) != (rows, cols):
            raise MalformedInput(
                f"projection #{host_projection.index} is {host_projection.width}x"
                f"{host_projection.height}, expected {cols}x{rows}"
            )

        device_index = self._next_device
        self._next_device = (self._next_device + 1) % len(self.devices)
        device = self.devices[device_index]

        block = self.pools[device_index].acquire()
        stream = new_stream(device)
        source = host_projection.take()
        try:
            with stream_scope(stream):
                block.buffer.copy_(source.data, non_blocking=True)
        except RuntimeError as exc:
            block.release()
            source.release()
            raise TransferFailure(
                f"host-to-device copy of projection #{source.index} to {device} failed: {exc}"
            ) from exc

        projection = Projection(block, source.width, source.height, source.index, source.angle,
                                stream=stream, device_index=device_index)
        # The asynchronous copy still reads from the host buffer
        projection.hold(source)
        logger.debug("Preloaded projection #%d onto %s", projection.index, device)
        return projection

    def abort(self):
        for pool in self.pools:
            pool.abort()

    def close(self):
        for pool in self.pools:
            pool.close()
