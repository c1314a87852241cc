"""Immutable run configuration: scanner geometry, angle table and pipeline limits.

Everything in here is validated on construction so that malformed input is
reported before a single device buffer is allocated.
"""

import logging
import math
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional, Tuple

import numpy as np

from .constants import DEFAULT_CHANNEL_CAPACITY, DEFAULT_MEMORY_FRACTION, DEFAULT_POOL_LIMIT
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


# ============================================================================
# Scanner Geometry
# ============================================================================

@dataclass(frozen=True)
class Geometry:
    """Detector, source and volume description of one cone-beam scan.

    Parameters
    ----------
    det_cols, det_rows : int
        Detector pixel counts along u (projection width) and v (height).
    det_pitch_u, det_pitch_v : float
        Physical pixel pitch in mm.
    det_offset_u, det_offset_v : float
        Offset of the detector center from the central ray, in pixels.
    d_so : float
        Source-to-object (isocenter) distance in mm.
    d_od : float
        Object-to-detector distance in mm.
    vol_x, vol_y, vol_z : int
        Reconstructed volume size in voxels.
    voxel_x, voxel_y, voxel_z : float
        Voxel pitch in mm.
    """

    det_cols: int
    det_rows: int
    det_pitch_u: float
    det_pitch_v: float
    d_so: float
    d_od: float
    vol_x: int
    vol_y: int
    vol_z: int
    voxel_x: float
    voxel_y: float
    voxel_z: float
    det_offset_u: float = 0.0
    det_offset_v: float = 0.0

    def __post_init__(self):
        for name in ("det_cols", "det_rows", "vol_x", "vol_y", "vol_z"):
            value = getattr(self, name)
            if int(value) != value or value <= 0:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")
        for name in ("det_pitch_u", "det_pitch_v", "voxel_x", "voxel_y", "voxel_z"):
            if not getattr(self, name) > 0:
                raise ConfigurationError(f"{name} must be positive, got {getattr(self, name)!r}")
        if not self.d_so > 0 or not self.d_od >= 0:
            raise ConfigurationError(
                f"source distances must be positive (d_so={self.d_so!r}, d_od={self.d_od!r})"
            )

    @property
    def d_sd(self):
        """Source-to-detector distance."""
        return abs(self.d_so) + abs(self.d_od)

    @property
    def projection_shape(self):
        """Shape ``(rows, cols)`` of one projection buffer."""
        return (self.det_rows, self.det_cols)

    @property
    def projection_bytes(self):
        return self.det_rows * self.det_cols * np.dtype(np.float32).itemsize

    @property
    def volume_shape(self):
        """Shape ``(z, y, x)`` of the reconstructed volume."""
        return (self.vol_z, self.vol_y, self.vol_x)

    @property
    def h_min(self):
        """Physical u-coordinate of the detector's left edge."""
        return self.det_offset_u * self.det_pitch_u - self.det_cols * self.det_pitch_u / 2

    @property
    def v_min(self):
        """Physical v-coordinate of the detector's lower edge."""
        return self.det_offset_v * self.det_pitch_v - self.det_rows * self.det_pitch_v / 2

    @classmethod
    def derive_volume(cls, det_cols, det_rows, det_pitch_u, det_pitch_v, d_so, d_od,
                      det_offset_u=0.0, det_offset_v=0.0):
        """Build a geometry whose volume covers the detector's field of view.

        The detector pitch is demagnified to the isocenter to obtain the voxel
        pitch; the in-plane extent is the diameter of the largest circle seen by
        every projection, the axial extent the demagnified detector height.

        Returns
        -------
        Geometry
        """
        d_sd = abs(d_so) + abs(d_od)
        if not d_sd > 0 or not d_so > 0:
            raise ConfigurationError("source distances must be positive")
        voxel_xy = det_pitch_u * d_so / d_sd
        voxel_z = det_pitch_v * d_so / d_sd

        half_width = det_cols * det_pitch_u / 2 + abs(det_offset_u) * det_pitch_u
        alpha = math.atan(half_width / d_sd)
        radius = d_so * math.sin(alpha)

        vol_xy = max(1, math.ceil(2 * radius / voxel_xy))
        vol_z = max(1, math.ceil(det_rows * det_pitch_v * (d_so / d_sd) / voxel_z))
        logger.info("Derived volume %dx%dx%d with voxel pitch %.4f/%.4f mm",
                    vol_xy, vol_xy, vol_z, voxel_xy, voxel_z)
        return cls(
            det_cols=det_cols, det_rows=det_rows,
            det_pitch_u=det_pitch_u, det_pitch_v=det_pitch_v,
            d_so=d_so, d_od=d_od,
            vol_x=vol_xy, vol_y=vol_xy, vol_z=vol_z,
            voxel_x=voxel_xy, voxel_y=voxel_xy, voxel_z=voxel_z,
            det_offset_u=det_offset_u, det_offset_v=det_offset_v,
        )


# ============================================================================
# Angle Tables
# ============================================================================

def load_angles(path):
    """Parse an angle file into radians.

    The file holds one angle in degrees per line. Blank lines and everything
    after a ``#`` are ignored.

    Parameters
    ----------
    path : str or pathlib.Path
        Angle file.

    Returns
    -------
    tuple of float
        Angles in radians, in file order (index ``i`` belongs to projection ``i``).

    Raises
    ------
    ConfigurationError
        If the file cannot be read, holds a non-numeric entry or no angle at all.
    """
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as exc:
        raise ConfigurationError(f"cannot read angle file {path}: {exc}") from exc

    angles = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        line = line.split("#", 1)[0].strip()
        if not line:
            continue
        try:
            degrees = float(line)
        except ValueError:
            raise ConfigurationError(f"{path}:{lineno}: not an angle: {line!r}") from None
        if not math.isfinite(degrees):
            raise ConfigurationError(f"{path}:{lineno}: angle must be finite")
        angles.append(math.radians(degrees))

    if not angles:
        raise ConfigurationError(f"angle file {path} contains no angles")
    logger.debug("Read %d angles from %s", len(angles), path)
    return tuple(angles)


def angular_step(angles):
    """Angular increment per projection, assuming evenly spaced angles.

    A single angle counts as a full rotation.

    Examples
    --------
    >>> round(angular_step([0.0, math.pi / 2, math.pi, 3 * math.pi / 2]), 6)
    1.570796
    """
    n = len(angles)
    if n < 2:
        return 2 * math.pi
    coverage = (max(angles) - min(angles)) * n / (n - 1)
    return coverage / n


# ============================================================================
# Run Configuration
# ============================================================================

@dataclass(frozen=True)
class ReconstructionConfig:
    """Everything a reconstruction run needs, fixed before the pipeline starts.

    Parameters
    ----------
    geometry : Geometry
        Scanner and volume geometry.
    angles : tuple of float
        Projection angles in radians, indexed by projection index.
    devices : tuple, optional
        Devices to distribute the work over. ``None`` uses every available device.
    pool_limit : int, optional
        Number of projection-sized blocks each per-device pool may hold.
    channel_capacity : int, optional
        Number of projections buffered between neighbouring stages.
    memory_fraction : float, optional
        Share of free device memory the scheduler may plan with.
    """

    geometry: Geometry
    angles: Tuple[float, ...]
    devices: Optional[Tuple] = None
    pool_limit: int = DEFAULT_POOL_LIMIT
    channel_capacity: int = DEFAULT_CHANNEL_CAPACITY
    memory_fraction: float = DEFAULT_MEMORY_FRACTION

    def __post_init__(self):
        object.__setattr__(self, "angles", tuple(float(a) for a in self.angles))
        if not self.angles:
            raise ConfigurationError("at least one projection angle is required")
        if not all(math.isfinite(a) for a in self.angles):
            raise ConfigurationError("projection angles must be finite")
        if self.pool_limit < 1:
            raise ConfigurationError(f"pool_limit must be at least 1, got {self.pool_limit}")
        if self.channel_capacity < 1:
            raise ConfigurationError(
                f"channel_capacity must be at least 1, got {self.channel_capacity}"
            )
        if not 0.0 < self.memory_fraction <= 1.0:
            raise ConfigurationError(
                f"memory_fraction must lie in (0, 1], got {self.memory_fraction}"
            )
        if self.devices is not None:
            if len(self.devices) == 0:
                raise ConfigurationError("device list must not be empty")
            object.__setattr__(self, "devices", tuple(self.devices))

    @classmethod
    def from_angle_file(cls, geometry, angle_path, **kwargs):
        """Build a configuration whose angles come from :func:`load_angles`."""
        return cls(geometry=geometry, angles=load_angles(angle_path), **kwargs)

    @property
    def num_projections(self):
        return len(self.angles)

    @property
    def angular_step(self):
        return angular_step(self.angles)

    def with_devices(self, devices):
        return replace(self, devices=tuple(devices))
