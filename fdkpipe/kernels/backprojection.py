"""CUDA kernel for voxel-driven Feldkamp backprojection into one axial slab."""

import math
from numba import cuda

from ..constants import _FASTMATH_DECORATOR, _EPSILON


@_FASTMATH_DECORATOR
def _fdk_backprojection_kernel(
    d_vol, nx, ny, nz,
    d_proj, n_cols, n_rows,
    sin_phi, cos_phi,
    vx, vy, vz, cx, cy, cz, z_offset,
    d_so, d_sd, h_min, v_min, pitch_u, pitch_v, scale
):
    """Accumulate one filtered projection into a partial volume.

    Parameters
    ----------
    d_vol : numba.cuda.cudadrv.devicearray.DeviceNDArray
        Partial volume of shape (nz, ny, nx), updated in place.
    nx, ny, nz : int
        Slab size in voxels.
    d_proj : numba.cuda.cudadrv.devicearray.DeviceNDArray
        Weighted and filtered projection of shape (n_rows, n_cols).
    n_cols, n_rows : int
        Detector size in pixels.
    sin_phi, cos_phi : float
        Trigonometric table entries of the projection angle.
    vx, vy, vz : float
        Voxel pitch.
    cx, cy, cz : float
        Center of the full volume in voxel indices, ``(n - 1) / 2``.
    z_offset : int
        Axial offset of the slab inside the full volume.
    d_so : float
        Source-to-isocenter distance.
    d_sd : float
        Source-to-detector distance.
    h_min, v_min : float
        Physical coordinates of the detector's lower-left edge.
    pitch_u, pitch_v : float
        Detector pixel pitch.
    scale : float
        Angular integration factor of this projection.

    Notes
    -----
    One thread per voxel, so no atomics are needed. The voxel is rotated into
    the source frame, projected onto the detector with magnification
    ``d_sd / (d_so + s)``, sampled bilinearly and weighted by ``(d_so / (d_so + s))^2``.
    """
    ix, iy, iz = cuda.grid(3)
    if ix >= nx or iy >= ny or iz >= nz:
        return

    # Physical voxel center
    x = (ix - cx) * vx
    y = (iy - cy) * vy
    z = (iz + z_offset - cz) * vz

    # Rotate into the frame where the source sits at s = -d_so
    s = x * cos_phi + y * sin_phi
    t = -x * sin_phi + y * cos_phi

    dist = d_so + s
    if dist < _EPSILON:
        return
    mag = d_sd / dist

    # Continuous detector indices (pixel centers at integer positions)
    u = (t * mag - h_min) / pitch_u - 0.5
    v = (z * mag - v_min) / pitch_v - 0.5

    u0 = int(math.floor(u))
    v0 = int(math.floor(v))
    du = u - u0
    dv = v - v0

    val = 0.0
    if 0 <= v0 < n_rows:
        if 0 <= u0 < n_cols:
            val += d_proj[v0, u0] * (1.0 - du) * (1.0 - dv)
        if 0 <= u0 + 1 < n_cols:
            val += d_proj[v0, u0 + 1] * du * (1.0 - dv)
    if 0 <= v0 + 1 < n_rows:
        if 0 <= u0 < n_cols:
            val += d_proj[v0 + 1, u0] * (1.0 - du) * dv
        if 0 <= u0 + 1 < n_cols:
            val += d_proj[v0 + 1, u0 + 1] * du * dv

    w = d_so / dist
    d_vol[iz, iy, ix] += scale * w * w * val
