"""CUDA kernels for the per-pixel and per-voxel steps of FDK reconstruction.

This subpackage contains the numba CUDA kernels for cone-beam projection
weighting and voxel-driven Feldkamp backprojection.
"""

from .weighting import _weighting_kernel
from .backprojection import _fdk_backprojection_kernel

__all__ = [
    '_weighting_kernel',
    '_fdk_backprojection_kernel',
]
