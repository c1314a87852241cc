"""Partition of the output volume into one axial slab per device."""

import logging
from dataclasses import dataclass

import numpy as np

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VolumeGeometry:
    """The slab of the output volume one device reconstructs.

    Attributes
    ----------
    device_index : int
        Pipeline device holding the slab.
    dim_x, dim_y, dim_z : int
        Slab size in voxels; ``dim_x``/``dim_y`` equal the full volume.
    voxel_x, voxel_y, voxel_z : float
        Voxel pitch.
    offset : int
        Index of the slab's first slice inside the full volume.
    total_z : int
        Axial size of the full volume.
    """

    device_index: int
    dim_x: int
    dim_y: int
    dim_z: int
    voxel_x: float
    voxel_y: float
    voxel_z: float
    offset: int
    total_z: int

    @property
    def shape(self):
        return (self.dim_z, self.dim_y, self.dim_x)

    @property
    def nbytes(self):
        return self.dim_x * self.dim_y * self.dim_z * np.dtype(np.float32).itemsize

    @property
    def stop(self):
        """One past the slab's last slice."""
        return self.offset + self.dim_z


class FeldkampScheduler:
    """Split the volume along z into contiguous slabs, one per device.

    Every device receives ``total_z // D`` slices in ascending order; the last
    device also takes the remainder. A slab plus the device's working buffers
    must fit into that device's memory budget.

    Parameters
    ----------
    geometry : Geometry
        Full run geometry.
    budgets : sequence of int
        Usable bytes per device, in device order.
    working_bytes : int, optional
        Memory each device needs besides its slab (pools, filter buffers).

    Examples
    --------
    >>> scheduler = FeldkampScheduler(geometry, [2**33, 2**33])
    >>> [(g.offset, g.dim_z) for g in scheduler.volume_geometries()]
    [(0, 50), (50, 50)]
    """

    def __init__(self, geometry, budgets, working_bytes=0):
        if len(budgets) == 0:
            raise ConfigurationError("at least one device is required")
        self.geometry = geometry
        self.budgets = [int(b) for b in budgets]
        self.working_bytes = int(working_bytes)
        self._geometries = self._partition()

    def volume_geometries(self):
        """Return the per-device slabs in ascending offset order."""
        return list(self._geometries)

    def _partition(self):
        geo = self.geometry
        total_z = geo.vol_z
        # Never hand out empty slabs
        n_devices = min(len(self.budgets), total_z)
        if n_devices < len(self.budgets):
            logger.warning("Only %d slices for %d devices; using %d device(s)",
                           total_z, len(self.budgets), n_devices)

        base = total_z // n_devices
        slabs = []
        offset = 0
        for dev in range(n_devices):
            dim_z = base if dev < n_devices - 1 else total_z - offset
            slab = VolumeGeometry(
                device_index=dev,
                dim_x=geo.vol_x, dim_y=geo.vol_y, dim_z=dim_z,
                voxel_x=geo.voxel_x, voxel_y=geo.voxel_y, voxel_z=geo.voxel_z,
                offset=offset, total_z=total_z,
            )
            needed = slab.nbytes + self.working_bytes
            if needed > self.budgets[dev]:
                raise ConfigurationError(
                    f"device {dev}: slab {slab.shape} needs {needed} bytes, "
                    f"only {self.budgets[dev]} available"
                )
            slabs.append(slab)
            offset += dim_z

        logger.info("Volume partition: %s",
                    ", ".join(f"dev{s.device_index}[{s.offset}:{s.stop}]" for s in slabs))
        return slabs
