# fdkpipe/__init__.py
"""fdkpipe - Multi-GPU Feldkamp Cone-Beam Reconstruction.

A streaming FDK reconstruction pipeline built with PyTorch and Numba CUDA.
Projections flow through preloading, cone-beam weighting, ramp filtering and
voxel-driven backprojection, with the output volume split across devices.
"""

import logging

from .config import (
    Geometry,
    ReconstructionConfig,
    angular_step,
    load_angles,
)

from .exceptions import (
    AllocationFailure,
    ConfigurationError,
    FdkError,
    MalformedInput,
    PipelineAborted,
    ReleaseFailure,
    ResourceExhaustion,
    TransferFailure,
)

from .memory import DeviceAllocator, MemoryPool, PinnedHostAllocator
from .projection import Projection
from .stage import Channel, Stage
from .preloader import PreloaderStage
from .weighting import WeightingStage
from .filtering import FilterStage
from .scheduler import FeldkampScheduler, VolumeGeometry
from .feldkamp import Feldkamp, merge_volumes
from .loader import HisLoader, NpyLoader, load_projections
from .pipeline import Pipeline, reconstruct, save_volume

__version__ = '0.1.0'

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    'Geometry',
    'ReconstructionConfig',
    'angular_step',
    'load_angles',
    'FdkError',
    'ResourceExhaustion',
    'AllocationFailure',
    'TransferFailure',
    'ConfigurationError',
    'MalformedInput',
    'ReleaseFailure',
    'PipelineAborted',
    'DeviceAllocator',
    'PinnedHostAllocator',
    'MemoryPool',
    'Projection',
    'Channel',
    'Stage',
    'PreloaderStage',
    'WeightingStage',
    'FilterStage',
    'FeldkampScheduler',
    'VolumeGeometry',
    'Feldkamp',
    'merge_volumes',
    'HisLoader',
    'NpyLoader',
    'load_projections',
    'Pipeline',
    'reconstruct',
    'save_volume',
]
