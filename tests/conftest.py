import math
import threading

import numpy as np
import pytest
import torch

from fdkpipe.config import Geometry
from fdkpipe.exceptions import AllocationFailure
from fdkpipe.memory import DeviceAllocator
from fdkpipe.projection import Projection

CPU = torch.device("cpu")


class CountingAllocator(DeviceAllocator):
    """CPU allocator that records every call and can fail on demand."""

    def __init__(self, device=CPU, fail_after=None, fail_ndim=None):
        super().__init__(device)
        self.fail_after = fail_after
        self.fail_ndim = fail_ndim
        self.allocations = 0
        self.deallocations = 0
        self._lock = threading.Lock()

    def allocate(self, shape):
        with self._lock:
            if self.fail_ndim is not None and len(shape) == self.fail_ndim:
                raise AllocationFailure(f"refusing {shape}")
            if self.fail_after is not None and self.allocations >= self.fail_after:
                raise AllocationFailure("out of memory")
            self.allocations += 1
        return super().allocate(shape)

    def deallocate(self, buffer):
        with self._lock:
            self.deallocations += 1


@pytest.fixture
def cpu():
    return CPU


@pytest.fixture
def small_geometry():
    return Geometry(
        det_cols=8, det_rows=6, det_pitch_u=1.0, det_pitch_v=1.0,
        d_so=100.0, d_od=100.0,
        vol_x=4, vol_y=4, vol_z=6,
        voxel_x=0.5, voxel_y=0.5, voxel_z=0.5,
    )


@pytest.fixture
def ball_geometry():
    return Geometry(
        det_cols=32, det_rows=32, det_pitch_u=1.0, det_pitch_v=1.0,
        d_so=100.0, d_od=100.0,
        vol_x=25, vol_y=25, vol_z=25,
        voxel_x=0.5, voxel_y=0.5, voxel_z=0.5,
    )


def make_projection(rows, cols, index=0, angle=0.0, fill=None):
    if fill is None:
        data = torch.arange(rows * cols, dtype=torch.float32).reshape(rows, cols)
    else:
        data = torch.full((rows, cols), float(fill), dtype=torch.float32)
    return Projection(data, cols, rows, index, angle)


def ball_projections(geometry, angles, radius):
    """Exact line integrals through a unit-density ball centred at the isocenter."""
    h = (np.arange(geometry.det_cols) + 0.5) * geometry.det_pitch_u + geometry.h_min
    v = (np.arange(geometry.det_rows) + 0.5) * geometry.det_pitch_v + geometry.v_min
    hh, vv = np.meshgrid(h, v)
    d_sd = geometry.d_sd
    dist = geometry.d_so * np.sqrt(hh ** 2 + vv ** 2) / np.sqrt(d_sd ** 2 + hh ** 2 + vv ** 2)
    chord = 2.0 * np.sqrt(np.clip(radius ** 2 - dist ** 2, 0.0, None))
    image = torch.from_numpy(chord.astype(np.float32))
    return [Projection(image.clone(), geometry.det_cols, geometry.det_rows, i, angle)
            for i, angle in enumerate(angles)]


def full_circle(n):
    return tuple(2 * math.pi * i / n for i in range(n))
