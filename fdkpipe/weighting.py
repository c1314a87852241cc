"""Weighting stage: cone-beam distance weighting of every projection.

Incoming projections are sorted into one FIFO per device and drained by one
worker thread per device, so a slow device never holds up another. The
end-of-stream sentinel is queued behind the real work of every device and
forwarded once all of them have drained.
"""

import logging
import queue
import threading

import torch

from .constants import _DTYPE
from .exceptions import MalformedInput
from .kernels import _weighting_kernel
from .stage import Stage
from .utils import (
    TorchCUDABridge,
    _get_numba_external_stream_for,
    _grid_2d,
    stream_scope,
)

logger = logging.getLogger(__name__)


def weight_projection(data, h_min, v_min, d_sd, pitch_u, pitch_v, stream=None):
    """Apply the cone-beam weight to `data` in place.

    Parameters
    ----------
    data : torch.Tensor
        Projection of shape (rows, cols), float32, on any device.
    h_min, v_min : float
        Physical coordinates of the detector's lower-left edge.
    d_sd : float
        Source-to-detector distance.
    pitch_u, pitch_v : float
        Detector pixel pitch.
    stream : torch.cuda.Stream, optional
        Stream to launch the CUDA kernel on.

    Returns
    -------
    torch.Tensor
        `data`, weighted.
    """
    n_rows, n_cols = data.shape
    if data.is_cuda:
        grid, tpb = _grid_2d(n_cols, n_rows)
        with stream_scope(stream):
            numba_stream = _get_numba_external_stream_for(torch.cuda.current_stream(data.device))
            _weighting_kernel[grid, tpb, numba_stream](
                TorchCUDABridge.tensor_to_cuda_array(data), n_cols, n_rows,
                _DTYPE(h_min), _DTYPE(v_min), _DTYPE(d_sd), _DTYPE(pitch_u), _DTYPE(pitch_v)
            )
        return data

    h = pitch_u * 0.5 + torch.arange(n_cols, dtype=torch.float32) * pitch_u + h_min
    v = pitch_v * 0.5 + torch.arange(n_rows, dtype=torch.float32) * pitch_v + v_min
    weights = d_sd / torch.sqrt(d_sd * d_sd + h[None, :] ** 2 + v[:, None] ** 2)
    return data.mul_(weights)


class WeightingStage(Stage):
    """Apply the cone-beam weight, one worker per device.

    Parameters
    ----------
    geometry : Geometry
        Detector geometry of the run.
    num_devices : int
        Number of devices projections may arrive from.
    queue_limit : int, optional
        Capacity of each per-device queue. ``0`` means unbounded; the upstream
        pools already bound the number of in-flight projections.
    """

    name = "weighting"

    def __init__(self, geometry, num_devices, queue_limit=0):
        super().__init__()
        self.geometry = geometry
        self.num_devices = num_devices
        self._queues = [queue.Queue(maxsize=queue_limit) for _ in range(num_devices)]
        self._errors = []

    def run(self):
        """Dispatch projections to their device queue until the sentinel arrives."""
        self._check_wiring()
        workers = [threading.Thread(target=self._worker, args=(dev,),
                                    name=f"weighting-{dev}", daemon=True)
                   for dev in range(self.num_devices)]
        for worker in workers:
            worker.start()

        sentinel = None
        try:
            while not self._errors:
                item = self._input()
                if not item.valid:
                    sentinel = item
                    break
                if not 0 <= item.device_index < self.num_devices:
                    item.release()
                    raise MalformedInput(
                        f"projection #{item.index} names device {item.device_index} "
                        f"of {self.num_devices}"
                    )
                self._queues[item.device_index].put(item)
        finally:
            # Every worker stops behind the work already queued for its device
            for q in self._queues:
                q.put(None)
            for worker in workers:
                worker.join()

        if self._errors:
            raise self._errors[0]
        logger.debug("weighting drained all devices")
        self._output(sentinel)

    def process(self, device_index):
        """Weight the next projection queued for `device_index` and push it downstream.

        Returns
        -------
        bool
            ``False`` once the device queue has been closed.
        """
        item = self._queues[device_index].get()
        if item is None:
            return False
        projection = item.take()
        try:
            geo = self.geometry
            # Constants of the pixel-to-detector mapping
            h_min = geo.h_min
            v_min = geo.v_min
            weight_projection(projection.data, h_min, v_min, geo.d_sd,
                              geo.det_pitch_u, geo.det_pitch_v, projection.stream)
            self._output(projection)
        except BaseException:
            if projection.valid:
                projection.release()
            raise
        return True

    def _worker(self, device_index):
        try:
            while self.process(device_index):
                pass
        except BaseException as exc:
            logger.error("weighting worker for device %d failed: %s", device_index, exc)
            self._errors.append(exc)
            self._discard(device_index)

    def _discard(self, device_index):
        q = self._queues[device_index]
        while True:
            item = q.get()
            if item is None:
                return
            item.release()
