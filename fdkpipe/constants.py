"""Global constants and configuration for the fdkpipe package.

This module defines core constants used throughout the reconstruction pipeline,
including data types, CUDA thread block configurations, numerical precision
parameters and the default sizes of pools and inter-stage channels.
"""

import numpy as np
from numba import cuda

# ---------------------------------------------------------------------------
# Data Types and Numerical Constants
# ---------------------------------------------------------------------------

_DTYPE = np.float32
"""Default data type for projections and volumes (numpy.float32)."""

_EPSILON = _DTYPE(1e-6)
"""Small epsilon value guarding divisions by (near) zero source distances."""

# ---------------------------------------------------------------------------
# CUDA Thread Block Configurations
# ---------------------------------------------------------------------------

# 2D blocks: one thread per detector pixel (weighting)
_TPB_2D = (16, 16)
"""CUDA threads-per-block for per-pixel kernels: (16, 16) = 256 threads."""

# 3D blocks: one thread per voxel (backprojection)
_TPB_3D = (8, 8, 8)
"""CUDA threads-per-block for per-voxel kernels: (8, 8, 8) = 512 threads."""

# ---------------------------------------------------------------------------
# CUDA JIT Decorators
# ---------------------------------------------------------------------------

# Backprojection tolerates fastmath, the weighting must stay bit-reproducible
_FASTMATH_DECORATOR = cuda.jit(cache=True, fastmath=True)
"""Numba CUDA JIT decorator with fastmath enabled for backprojection kernels."""

_PRECISE_DECORATOR = cuda.jit(cache=True)
"""Numba CUDA JIT decorator without fastmath for reproducible pixel weighting."""

# ---------------------------------------------------------------------------
# Pipeline Defaults
# ---------------------------------------------------------------------------

DEFAULT_POOL_LIMIT = 8
"""Default number of projection-sized blocks a per-device pool may grow to."""

DEFAULT_CHANNEL_CAPACITY = 4
"""Default number of projections buffered between two neighbouring stages."""

DEFAULT_MEMORY_FRACTION = 0.9
"""Fraction of the free device memory the scheduler may plan with."""

_POLL_INTERVAL = 0.05
"""Seconds between abort checks while a pipeline thread is blocked."""
