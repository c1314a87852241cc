"""Utility classes and helper functions for the fdkpipe package.

This module provides utilities for device enumeration and memory budgets,
PyTorch-CUDA bridging, execution stream handling, trigonometric table
generation and CUDA grid computation.
"""

import contextlib
import math
import os
import sys
import threading

import numpy as np
import torch
from numba import cuda

from .constants import _DTYPE, _TPB_2D, _TPB_3D


# ============================================================================
# Device Management Utilities
# ============================================================================

class DeviceManager:
    """Utilities for selecting devices and querying their memory."""

    @staticmethod
    def available_devices():
        """Return every usable device, one entry per accelerator.

        Returns
        -------
        list of torch.device
            All CUDA devices, or ``[torch.device('cpu')]`` when CUDA is absent.

        Examples
        --------
        >>> DeviceManager.available_devices()
        [device(type='cuda', index=0), device(type='cuda', index=1)]
        """
        if torch.cuda.is_available():
            return [torch.device("cuda", i) for i in range(torch.cuda.device_count())]
        return [torch.device("cpu")]

    @staticmethod
    def resolve(devices):
        """Turn device specifications (strings, ints, torch.device) into torch.device objects.

        Parameters
        ----------
        devices : iterable or None
            Device specifications. ``None`` selects all available devices.

        Returns
        -------
        tuple of torch.device
        """
        if devices is None:
            return tuple(DeviceManager.available_devices())
        resolved = []
        for dev in devices:
            if isinstance(dev, int):
                dev = torch.device("cuda", dev)
            resolved.append(torch.device(dev))
        return tuple(resolved)

    @staticmethod
    def memory_budget(device, fraction=1.0):
        """Return the number of bytes a device offers to the scheduler.

        Parameters
        ----------
        device : torch.device
            Device to query.
        fraction : float, optional
            Share of the currently free memory to hand out. Default is 1.0.

        Returns
        -------
        int
            Usable bytes. For the CPU this is the available physical memory when
            the platform reports it, ``sys.maxsize`` otherwise.
        """
        if device.type == "cuda":
            free, _ = torch.cuda.mem_get_info(device)
            return int(free * fraction)
        try:
            free = os.sysconf("SC_PAGE_SIZE") * os.sysconf("SC_AVPHYS_PAGES")
        except (AttributeError, ValueError, OSError):
            return sys.maxsize
        return int(free * fraction)


# ============================================================================
# PyTorch-CUDA Bridge
# ============================================================================

class TorchCUDABridge:
    """Bridge between PyTorch tensors and Numba CUDA arrays."""

    @staticmethod
    def tensor_to_cuda_array(tensor):
        """Convert a PyTorch CUDA tensor to a Numba CUDA DeviceNDArray.

        The returned array is a zero-copy view sharing memory with `tensor`.

        Parameters
        ----------
        tensor : torch.Tensor
            PyTorch tensor on a CUDA device.

        Returns
        -------
        numba.cuda.cudadrv.devicearray.DeviceNDArray
            Numba CUDA array view sharing memory with `tensor`.

        Raises
        ------
        ValueError
            If `tensor` is not on a CUDA device.
        """
        if not tensor.is_cuda:
            raise ValueError("Tensor must be on CUDA device")
        return cuda.as_cuda_array(tensor.detach())


# ============================================================================
# Stream Management
# ============================================================================

# Several stage threads launch kernels concurrently, so the cache is keyed by
# the raw stream handle and guarded by a lock.
_numba_streams = {}
_numba_streams_lock = threading.Lock()


def _get_numba_external_stream_for(pt_stream=None):
    """Return a cached numba.cuda.external_stream for a PyTorch CUDA stream.

    Parameters
    ----------
    pt_stream : torch.cuda.Stream, optional
        PyTorch CUDA stream. If None, uses the current stream.

    Returns
    -------
    numba.cuda.cudadrv.driver.Stream
        Numba external stream wrapper around the PyTorch CUDA stream.
    """
    if pt_stream is None:
        pt_stream = torch.cuda.current_stream()
    ptr = int(pt_stream.cuda_stream)
    with _numba_streams_lock:
        numba_stream = _numba_streams.get(ptr)
        if numba_stream is None:
            numba_stream = cuda.external_stream(pt_stream.cuda_stream)
            _numba_streams[ptr] = numba_stream
        return numba_stream


def _forget_numba_stream(pt_stream):
    with _numba_streams_lock:
        _numba_streams.pop(int(pt_stream.cuda_stream), None)


def new_stream(device):
    """Create a dedicated execution stream for `device`.

    Returns ``None`` for the CPU, which executes synchronously.
    """
    if device.type == "cuda":
        return torch.cuda.Stream(device=device)
    return None


def release_stream(stream):
    """Wait for all work queued on `stream` and drop every cached handle to it."""
    if stream is None:
        return
    stream.synchronize()
    _forget_numba_stream(stream)


def stream_scope(stream):
    """Context manager that makes `stream` current; a no-op for ``None``."""
    if stream is None:
        return contextlib.nullcontext()
    return torch.cuda.stream(stream)


# ============================================================================
# Trigonometric Table Generation
# ============================================================================

def _trig_tables(angles, dtype=_DTYPE, device=None):
    """Compute sine and cosine tables for every angle index.

    Parameters
    ----------
    angles : array-like
        Projection angles in radians, indexed by projection index.
    dtype : numpy.dtype, optional
        Precision of the tables. Default is `_DTYPE`.
    device : torch.device, optional
        Where the tables should live. Defaults to the CPU.

    Returns
    -------
    sin : torch.Tensor
    cos : torch.Tensor

    Examples
    --------
    >>> sin, cos = _trig_tables(np.linspace(0, np.pi, 4))
    >>> cos[0].item()
    1.0
    """
    angles = np.asarray(angles, dtype=np.float64)
    sin_host = torch.from_numpy(np.sin(angles).astype(dtype))
    cos_host = torch.from_numpy(np.cos(angles).astype(dtype))
    if device is not None:
        return sin_host.to(device), cos_host.to(device)
    return sin_host, cos_host


# ============================================================================
# CUDA Grid Computation
# ============================================================================

def _grid_2d(n1, n2, tpb=_TPB_2D):
    """Compute 2D CUDA grid and block dimensions.

    Parameters
    ----------
    n1 : int
        Number of elements along the first dimension (detector columns).
    n2 : int
        Number of elements along the second dimension (detector rows).
    tpb : tuple of int, optional
        Threads per block (default is `_TPB_2D`).

    Returns
    -------
    grid : tuple of int
        Blocks count per axis.
    tpb : tuple of int
        Threads per block per axis.

    Examples
    --------
    >>> _grid_2d(180, 256)
    ((12, 16), (16, 16))
    """
    return (math.ceil(n1 / tpb[0]), math.ceil(n2 / tpb[1])), tpb


def _grid_3d(n1, n2, n3, tpb=_TPB_3D):
    """Compute 3D CUDA grid and block dimensions.

    Parameters
    ----------
    n1, n2, n3 : int
        Number of voxels along x, y and the slab's z extent.
    tpb : tuple of int, optional
        Threads per block (default is `_TPB_3D`).

    Returns
    -------
    grid : tuple of int
    tpb : tuple of int

    Examples
    --------
    >>> _grid_3d(256, 256, 100)
    ((32, 32, 13), (8, 8, 8))
    """
    return (
        math.ceil(n1 / tpb[0]),
        math.ceil(n2 / tpb[1]),
        math.ceil(n3 / tpb[2]),
    ), tpb
