"""Projection loaders.

Loaders decode detector files into host-resident :class:`Projection` objects
carrying width, height, index and angle. A loader either returns every
projection of a file or raises :class:`MalformedInput`; partially decoded
items never reach the pipeline.
"""

import logging
from pathlib import Path

import numpy as np
import torch

from .exceptions import MalformedInput
from .memory import PinnedHostAllocator
from .projection import Projection

logger = logging.getLogger(__name__)


# ============================================================================
# HIS (Heimann / Varian) Detector Files
# ============================================================================

_HIS_FILE_ID = 0x7000

_HIS_FILE_HEADER = np.dtype([
    ("file_type", "<u2"),
    ("header_size", "<u2"),
    ("header_version", "<u2"),
    ("file_size", "<u4"),
    ("image_header_size", "<u2"),
    ("ulx", "<u2"),
    ("uly", "<u2"),
    ("brx", "<u2"),
    ("bry", "<u2"),
    ("frames", "<u2"),
    ("correction", "<u2"),
    ("integration_time", "<f8"),
    ("number_type", "<u2"),
    ("reserved", "V34"),
])
"""68-byte HIS file header; a 32-byte image header follows it."""

_HIS_NUMBER_TYPES = {
    4: np.dtype("<u2"),
    32: np.dtype("<u4"),
}


class HisLoader:
    """Decode multi-frame HIS files, one projection per frame."""

    suffixes = (".his",)

    def read_frames(self, path):
        """Return the frames of `path` as a ``(frames, rows, cols)`` float32 array."""
        path = Path(path)
        try:
            raw = path.read_bytes()
        except OSError as exc:
            raise MalformedInput(f"cannot read {path}: {exc}") from exc
        if len(raw) < _HIS_FILE_HEADER.itemsize:
            raise MalformedInput(f"{path}: file too short for a HIS header")

        header = np.frombuffer(raw, dtype=_HIS_FILE_HEADER, count=1)[0]
        if int(header["file_type"]) != _HIS_FILE_ID:
            raise MalformedInput(f"{path}: not a HIS file (id 0x{int(header['file_type']):04x})")
        number_type = int(header["number_type"])
        if number_type not in _HIS_NUMBER_TYPES:
            raise MalformedInput(f"{path}: unsupported HIS pixel type {number_type}")

        cols = int(header["brx"]) - int(header["ulx"]) + 1
        rows = int(header["bry"]) - int(header["uly"]) + 1
        frames = int(header["frames"])
        if cols <= 0 or rows <= 0 or frames <= 0:
            raise MalformedInput(f"{path}: invalid frame layout {frames}x{rows}x{cols}")

        dtype = _HIS_NUMBER_TYPES[number_type]
        offset = int(header["header_size"]) + int(header["image_header_size"])
        count = frames * rows * cols
        if len(raw) < offset + count * dtype.itemsize:
            raise MalformedInput(f"{path}: truncated, expected {frames} frames of {rows}x{cols}")

        data = np.frombuffer(raw, dtype=dtype, count=count, offset=offset)
        return data.reshape(frames, rows, cols).astype(np.float32)


class NpyLoader:
    """Load a single projection (2-D) or a stack of projections (3-D) from ``.npy``."""

    suffixes = (".npy",)

    def read_frames(self, path):
        path = Path(path)
        try:
            data = np.load(path, allow_pickle=False)
        except (OSError, ValueError) as exc:
            raise MalformedInput(f"cannot read {path}: {exc}") from exc
        if data.ndim == 2:
            data = data[None]
        if data.ndim != 3 or 0 in data.shape:
            raise MalformedInput(f"{path}: expected a 2-D image or 3-D stack, got {data.shape}")
        return np.asarray(data, dtype=np.float32)


_LOADERS = (HisLoader, NpyLoader)


def _frames_to_projections(frames, allocator, start_index, angles):
    projections = []
    for i, frame in enumerate(frames):
        index = start_index + i
        buffer = allocator.allocate(frame.shape)
        buffer.copy_(torch.from_numpy(np.ascontiguousarray(frame)))
        angle = angles[index] if angles is not None else 0.0
        rows, cols = frame.shape
        projections.append(Projection(buffer, cols, rows, index, angle))
    return projections


def load_projections(paths, angles=None, allocator=None):
    """Load every projection of `paths`, numbered in file and frame order.

    Parameters
    ----------
    paths : iterable of str or pathlib.Path
        Detector files (``.his`` or ``.npy``).
    angles : sequence of float, optional
        Angle table in radians; projection ``i`` gets ``angles[i]``.
    allocator : DeviceAllocator, optional
        Host allocator for the buffers; pinned memory by default.

    Returns
    -------
    list of Projection
        Host-resident projections, all of the same size.

    Raises
    ------
    MalformedInput
        On unreadable files, unknown suffixes, mixed detector sizes or more
        projections than angles.
    """
    allocator = allocator if allocator is not None else PinnedHostAllocator()
    projections = []
    shape = None
    for path in paths:
        path = Path(path)
        loader_cls = next((cls for cls in _LOADERS if path.suffix.lower() in cls.suffixes), None)
        if loader_cls is None:
            raise MalformedInput(f"{path}: no loader for suffix {path.suffix!r}")
        frames = loader_cls().read_frames(path)
        if shape is None:
            shape = frames.shape[1:]
        elif frames.shape[1:] != shape:
            raise MalformedInput(f"{path}: frame size {frames.shape[1:]} differs from {shape}")
        if angles is not None and len(projections) + len(frames) > len(angles):
            raise MalformedInput(
                f"{path}: more projections than angles ({len(angles)})"
            )
        projections.extend(_frames_to_projections(frames, allocator, len(projections), angles))
        logger.debug("Loaded %d frame(s) from %s", len(frames), path)

    logger.info("Loaded %d projection(s)", len(projections))
    return projections
