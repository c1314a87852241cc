"""CUDA kernel for the cone-beam cosine weighting of one projection."""

import math
from numba import cuda

from ..constants import _PRECISE_DECORATOR


@_PRECISE_DECORATOR
def _weighting_kernel(d_proj, n_cols, n_rows, h_min, v_min, d_sd, pitch_u, pitch_v):
    """Multiply every detector pixel by its cone-beam distance weight.

    Parameters
    ----------
    d_proj : numba.cuda.cudadrv.devicearray.DeviceNDArray
        Projection of shape (n_rows, n_cols), weighted in place.
    n_cols : int
        Number of detector columns (u-axis).
    n_rows : int
        Number of detector rows (v-axis).
    h_min : float
        Physical u-coordinate of the detector's left edge.
    v_min : float
        Physical v-coordinate of the detector's lower edge.
    d_sd : float
        Source-to-detector distance.
    pitch_u : float
        Pixel pitch along u.
    pitch_v : float
        Pixel pitch along v.

    Notes
    -----
    The weight ``d_sd / sqrt(d_sd^2 + h^2 + v^2)`` is the cosine of the angle
    between the ray through pixel center (h, v) and the central ray. Compiled
    without fastmath so repeated runs are bit-identical.
    """
    col, row = cuda.grid(2)
    if col >= n_cols or row >= n_rows:
        return

    # Pixel center in physical detector coordinates
    h = pitch_u * 0.5 + col * pitch_u + h_min
    v = pitch_v * 0.5 + row * pitch_v + v_min

    d_proj[row, col] *= d_sd / math.sqrt(d_sd * d_sd + h * h + v * v)
