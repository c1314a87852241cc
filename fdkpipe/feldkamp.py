"""Feldkamp (FDK) backprojection distributed over several devices.

Each device owns one axial slab of the output volume, chosen by
:class:`~fdkpipe.scheduler.FeldkampScheduler`, and one worker thread that
backprojects every projection queued for it into the device-resident
partial volume. A projection is queued for every device whose slab lies in
the cone's footprint, copied device-to-device where needed. Once all
expected projections are through, the partial volumes are copied to the host
and stitched together in ascending offset order.
"""

import logging
import math
import queue
import threading
from pathlib import Path

import torch

from .config import angular_step, load_angles
from .constants import _DTYPE, _EPSILON, _POLL_INTERVAL, DEFAULT_POOL_LIMIT
from .exceptions import MalformedInput, PipelineAborted, TransferFailure
from .kernels import _fdk_backprojection_kernel
from .memory import DeviceAllocator, MemoryPool
from .projection import Projection
from .scheduler import FeldkampScheduler
from .stage import Stage
from .utils import (
    DeviceManager,
    TorchCUDABridge,
    _get_numba_external_stream_for,
    _grid_3d,
    _trig_tables,
    new_stream,
    stream_scope,
)

logger = logging.getLogger(__name__)

IDLE = "idle"
RUNNING = "running"
MERGING = "merging"
DONE = "done"
FAILED = "failed"


# ============================================================================
# Backprojection
# ============================================================================

def _bilinear(data, u, v):
    """Sample `data` at continuous pixel positions, zero outside the detector."""
    n_rows, n_cols = data.shape
    u0 = torch.floor(u)
    v0 = torch.floor(v)
    du = u - u0
    dv = v - v0
    u0 = u0.long()
    v0 = v0.long()

    def tap(vi, ui, weight):
        inside = (ui >= 0) & (ui < n_cols) & (vi >= 0) & (vi < n_rows)
        values = data[vi.clamp(0, n_rows - 1), ui.clamp(0, n_cols - 1)]
        return values * weight * inside.to(values.dtype)

    return (tap(v0, u0, (1 - du) * (1 - dv))
            + tap(v0, u0 + 1, du * (1 - dv))
            + tap(v0 + 1, u0, (1 - du) * dv)
            + tap(v0 + 1, u0 + 1, du * dv))


def backproject(volume, data, geometry, slab, sin_phi, cos_phi, scale, stream=None):
    """Accumulate one weighted, filtered projection into a partial volume.

    Parameters
    ----------
    volume : torch.Tensor
        Partial volume of shape ``slab.shape``, updated in place.
    data : torch.Tensor
        Projection of shape (det_rows, det_cols) on the same device.
    geometry : Geometry
        Run geometry.
    slab : VolumeGeometry
        Position of `volume` inside the full volume.
    sin_phi, cos_phi : float
        Trigonometric table entries of the projection angle.
    scale : float
        Angular integration factor.
    stream : torch.cuda.Stream, optional
        Stream the CUDA kernel is launched on.
    """
    nz, ny, nx = volume.shape
    n_rows, n_cols = data.shape
    cx = (geometry.vol_x - 1) / 2
    cy = (geometry.vol_y - 1) / 2
    cz = (slab.total_z - 1) / 2

    if volume.is_cuda:
        grid, tpb = _grid_3d(nx, ny, nz)
        with stream_scope(stream):
            numba_stream = _get_numba_external_stream_for(torch.cuda.current_stream(volume.device))
            _fdk_backprojection_kernel[grid, tpb, numba_stream](
                TorchCUDABridge.tensor_to_cuda_array(volume), nx, ny, nz,
                TorchCUDABridge.tensor_to_cuda_array(data), n_cols, n_rows,
                _DTYPE(sin_phi), _DTYPE(cos_phi),
                _DTYPE(slab.voxel_x), _DTYPE(slab.voxel_y), _DTYPE(slab.voxel_z),
                _DTYPE(cx), _DTYPE(cy), _DTYPE(cz), slab.offset,
                _DTYPE(geometry.d_so), _DTYPE(geometry.d_sd),
                _DTYPE(geometry.h_min), _DTYPE(geometry.v_min),
                _DTYPE(geometry.det_pitch_u), _DTYPE(geometry.det_pitch_v),
                _DTYPE(scale)
            )
        return volume

    x = (torch.arange(nx, dtype=torch.float32) - cx) * slab.voxel_x
    y = (torch.arange(ny, dtype=torch.float32) - cy) * slab.voxel_y
    z = (torch.arange(nz, dtype=torch.float32) + slab.offset - cz) * slab.voxel_z

    s = x[None, :] * cos_phi + y[:, None] * sin_phi
    t = -x[None, :] * sin_phi + y[:, None] * cos_phi
    dist = geometry.d_so + s
    behind_source = dist < _EPSILON
    dist = dist.clamp(min=float(_EPSILON))
    mag = geometry.d_sd / dist

    u = (t * mag - geometry.h_min) / geometry.det_pitch_u - 0.5
    v = (z[:, None, None] * mag[None] - geometry.v_min) / geometry.det_pitch_v - 0.5
    weight = scale * (geometry.d_so / dist) ** 2
    weight = weight.masked_fill(behind_source, 0.0)

    values = _bilinear(data, u.expand_as(v), v)
    volume += weight[None] * values
    return volume


def merge_volumes(parts, total_z=None):
    """Stitch host copies of partial volumes into one volume.

    Parameters
    ----------
    parts : iterable of (VolumeGeometry, torch.Tensor)
        Slabs and their data, in any order.
    total_z : int, optional
        Axial size of the output; defaults to the slabs' ``total_z``.

    Returns
    -------
    torch.Tensor
        Host volume of shape (total_z, dim_y, dim_x).

    Raises
    ------
    ValueError
        If the slabs leave gaps, overlap or do not cover `total_z`.
    """
    parts = sorted(parts, key=lambda part: part[0].offset)
    if not parts:
        raise ValueError("nothing to merge")
    first = parts[0][0]
    total_z = first.total_z if total_z is None else total_z

    output = torch.empty((total_z, first.dim_y, first.dim_x), dtype=torch.float32)
    expected = 0
    for slab, data in parts:
        if slab.offset != expected:
            raise ValueError(f"slab at offset {slab.offset} does not continue at {expected}")
        if tuple(data.shape) != slab.shape:
            raise ValueError(f"slab data {tuple(data.shape)} does not match {slab.shape}")
        output[slab.offset:slab.stop].copy_(data)
        expected = slab.stop
    if expected != total_z:
        raise ValueError(f"slabs cover {expected} of {total_z} slices")
    return output


# ============================================================================
# Backprojector Stage
# ============================================================================

class Feldkamp(Stage):
    """Multi-device Feldkamp backprojector.

    Parameters
    ----------
    geometry : Geometry
        Run geometry.
    angles : sequence of float or str or pathlib.Path
        Angles in radians, or the path of an angle file (degrees).
    devices : sequence of torch.device
        Pipeline devices, indexed like the ``device_index`` of incoming projections.
    volume_geometries : list of VolumeGeometry, optional
        Slab partition. Computed with :class:`FeldkampScheduler` from the free
        device memory when omitted.
    pool_limit : int, optional
        Block limit of the per-device pools used for device-to-device copies.
    allocator_factory : callable, optional
        ``device -> allocator`` for partial volumes and peer copies.
    """

    name = "feldkamp"

    def __init__(self, geometry, angles, devices, volume_geometries=None,
                 pool_limit=DEFAULT_POOL_LIMIT, allocator_factory=DeviceAllocator):
        super().__init__()
        if isinstance(angles, (str, Path)):
            angles = load_angles(angles)
        self.geometry = geometry
        self.angles = tuple(angles)
        self.devices = tuple(devices)
        self.allocator_factory = allocator_factory

        if volume_geometries is None:
            budgets = [DeviceManager.memory_budget(dev) for dev in self.devices]
            volume_geometries = FeldkampScheduler(geometry, budgets).volume_geometries()
        self.volume_geometries = sorted(volume_geometries, key=lambda g: g.offset)

        # Tables are read-only from here on and shared by all workers
        sin_tab, cos_tab = _trig_tables(self.angles)
        self._sin = sin_tab.tolist()
        self._cos = cos_tab.tolist()
        self._scale = 0.5 * angular_step(self.angles) * geometry.d_sd / geometry.d_so

        self._slabs = {}
        for slab in self.volume_geometries:
            self._slabs.setdefault(slab.device_index, []).append(slab)
        self._targets = sorted(dev for dev, slabs in self._slabs.items()
                               if any(self._in_footprint(slab) for slab in slabs))

        self._queues = {dev: queue.Queue() for dev in self._slabs}
        self._peer_pools = {
            dev: MemoryPool(allocator_factory(self.devices[dev]), geometry.projection_shape,
                            pool_limit)
            for dev in self._slabs
        }
        self._volumes = {}
        self._threads = {}
        self._errors = []
        self._lock = threading.Lock()
        self._input_num = None
        self._received = 0
        self._closed_queues = False
        self._aborted = threading.Event()
        self._state = IDLE
        self._merged = None

    @property
    def state(self):
        """One of ``idle``, ``running``, ``merging``, ``done`` or ``failed``."""
        return self._state

    @property
    def target_devices(self):
        """Devices every projection is backprojected on."""
        return list(self._targets)

    def set_input_num(self, n):
        """Announce how many projections :meth:`process` will receive in total."""
        with self._lock:
            self._input_num = int(n)
            self._maybe_close_queues()

    def process(self, projection):
        """Queue `projection` for every device whose slab it contributes to."""
        if not projection.valid:
            raise MalformedInput("the end-of-stream sentinel cannot be backprojected")
        if not 0 <= projection.index < len(self.angles):
            projection.release()
            raise MalformedInput(
                f"projection index {projection.index} outside the angle table "
                f"({len(self.angles)} entries)"
            )
        if self._errors:
            projection.release()
            raise self._errors[0]
        with self._lock:
            if self._input_num is not None and self._received >= self._input_num:
                projection.release()
                raise MalformedInput(
                    f"received more than the announced {self._input_num} projections"
                )
            if self._stopped():
                projection.release()
                raise PipelineAborted("backprojection aborted")
        self._start()
        projection = projection.take()

        copies = []
        try:
            for dev in self._targets:
                if dev != projection.device_index:
                    copies.append(self._copy_to(projection, dev))
        except BaseException:
            for copy in copies:
                copy.release()
            projection.release()
            # A failed worker aborts the peer pools; report its error, not the abort
            if self._errors:
                raise self._errors[0]
            raise

        local = projection.device_index in self._targets
        with self._lock:
            # The workers may have been stopped while the copies were made
            stopped = self._stopped()
            if not stopped:
                for copy in copies:
                    self._queues[copy.device_index].put(copy)
                if local:
                    self._queues[projection.device_index].put(projection)
                self._received += 1
                self._maybe_close_queues()
        if stopped:
            for copy in copies:
                copy.release()
            projection.release()
            raise PipelineAborted("backprojection aborted")
        if not local:
            projection.release()

    def wait(self):
        """Block until every worker is through, then merge the partial volumes.

        Returns
        -------
        torch.Tensor
            Host volume of shape ``geometry.volume_shape``.

        Raises
        ------
        RuntimeError
            If :meth:`set_input_num` was never called.
        """
        if self._state == DONE:
            return self._merged
        if self._input_num is None:
            raise RuntimeError("set_input_num() must be called before wait()")
        self._start()
        for thread in list(self._threads.values()):
            while thread.is_alive() and not self._aborted.is_set():
                thread.join(_POLL_INTERVAL)
        if self._errors:
            self._fail()
            raise self._errors[0]
        if self._aborted.is_set():
            self._fail()
            raise PipelineAborted("backprojection aborted")

        self._state = MERGING
        parts = []
        for slab in self.volume_geometries:
            parts.append((slab, self._volumes.pop(slab).cpu()))
        volume = merge_volumes(parts, self.geometry.vol_z)
        self._merged = volume
        for pool in self._peer_pools.values():
            pool.close()
        self._state = DONE
        logger.info("Merged %d partial volume(s) into %s", len(parts), tuple(volume.shape))
        return volume

    def run(self):
        """Backproject until the sentinel, then push the merged volume and the sentinel."""
        self._check_wiring()
        while True:
            item = self._input()
            if not item.valid:
                break
            self.process(item)
        volume = self.wait()
        self._output(volume)
        self._output(item)

    def abort(self):
        self._aborted.set()
        for pool in self._peer_pools.values():
            pool.abort()
        with self._lock:
            self._close_queues()

    def close(self):
        self._drain_queues()
        for pool in self._peer_pools.values():
            pool.close()
        self._volumes.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _in_footprint(self, slab):
        """Whether any ray reaching the detector crosses `slab`, at any angle."""
        geo = self.geometry
        radius = math.hypot(geo.vol_x * geo.voxel_x / 2, geo.vol_y * geo.voxel_y / 2)
        if radius >= geo.d_so:
            return True
        mags = (geo.d_sd / (geo.d_so + radius), geo.d_sd / (geo.d_so - radius))
        cz = (slab.total_z - 1) / 2
        z_lo = (slab.offset - 0.5 - cz) * slab.voxel_z
        z_hi = (slab.stop - 0.5 - cz) * slab.voxel_z
        v_lo = min(z_lo * m for m in mags)
        v_hi = max(z_hi * m for m in mags)
        det_lo = geo.v_min - geo.det_pitch_v
        det_hi = geo.v_min + (geo.det_rows + 1) * geo.det_pitch_v
        return v_lo <= det_hi and v_hi >= det_lo

    def _start(self):
        with self._lock:
            if self._state != IDLE:
                return
            self._state = RUNNING
            for dev in self._slabs:
                thread = threading.Thread(target=self._processor, args=(dev,),
                                          name=f"feldkamp-{dev}", daemon=True)
                self._threads[dev] = thread
                thread.start()
            logger.debug("Started %d backprojection worker(s)", len(self._threads))

    def _copy_to(self, projection, dev):
        device = self.devices[dev]
        block = self._peer_pools[dev].acquire()
        stream = new_stream(device)
        try:
            with stream_scope(stream):
                if stream is not None and projection.stream is not None:
                    stream.wait_stream(projection.stream)
                block.buffer.copy_(projection.data, non_blocking=True)
            # The source changes hands right after this call
            if stream is not None:
                stream.synchronize()
        except RuntimeError as exc:
            block.release()
            raise TransferFailure(
                f"copy of projection #{projection.index} to {device} failed: {exc}"
            ) from exc
        return Projection(block, projection.width, projection.height, projection.index,
                          projection.angle, stream=stream, device_index=dev)

    def _stopped(self):
        return self._aborted.is_set() or self._closed_queues

    def _maybe_close_queues(self):
        if self._input_num is not None and self._received >= self._input_num:
            self._close_queues()

    def _close_queues(self):
        if self._closed_queues:
            return
        self._closed_queues = True
        for q in self._queues.values():
            q.put(None)

    def _create_volumes(self, dev):
        device = self.devices[dev]
        allocator = self.allocator_factory(device)
        for slab in self._slabs[dev]:
            self._volumes[slab] = allocator.allocate(slab.shape).zero_()
            logger.debug("Partial volume %s at offset %d on %s", slab.shape, slab.offset, device)

    def _processor(self, dev):
        q = self._queues[dev]
        try:
            self._create_volumes(dev)
            while True:
                item = q.get()
                if item is None:
                    break
                with item:
                    if self._aborted.is_set():
                        continue
                    sin_phi = self._sin[item.index]
                    cos_phi = self._cos[item.index]
                    for slab in self._slabs[dev]:
                        backproject(self._volumes[slab], item.data, self.geometry, slab,
                                    sin_phi, cos_phi, self._scale, item.stream)
        except BaseException as exc:
            logger.error("backprojection worker for device %d failed: %s", dev, exc)
            self._errors.append(exc)
            self.abort()
            self._discard(q)

    def _discard(self, q):
        while True:
            item = q.get()
            if item is None:
                return
            item.release()

    def _drain_queues(self):
        """Release every projection still queued, keeping the workers' stop markers."""
        for q in self._queues.values():
            markers = 0
            while True:
                try:
                    item = q.get_nowait()
                except queue.Empty:
                    break
                if item is None:
                    markers += 1
                else:
                    item.release()
            for _ in range(markers):
                q.put(None)

    def _fail(self):
        self._state = FAILED
        self._volumes.clear()
        self._drain_queues()
        for pool in self._peer_pools.values():
            pool.close()
