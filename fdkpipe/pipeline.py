"""Pipeline driver: wire the stages together and run one reconstruction.

Every stage runs in its own thread; neighbouring stages are connected by a
bounded :class:`~fdkpipe.stage.Channel`. All channels share one abort event,
so the first failure anywhere wakes every blocked thread, after which the
in-flight projections are returned to their pools and the original error is
re-raised to the caller.
"""

import logging
import threading
import time
from pathlib import Path

import numpy as np
import torch

from .constants import DEFAULT_CHANNEL_CAPACITY
from .exceptions import PipelineAborted
from .feldkamp import Feldkamp
from .filtering import FilterStage, filter_length
from .memory import DeviceAllocator
from .preloader import PreloaderStage
from .projection import Projection
from .scheduler import FeldkampScheduler
from .stage import Channel
from .utils import DeviceManager
from .weighting import WeightingStage

logger = logging.getLogger(__name__)


class Pipeline:
    """Run a chain of stages concurrently.

    Parameters
    ----------
    stages : sequence of Stage
        Stages in data-flow order.
    capacity : int, optional
        Capacity of every inter-stage channel.
    """

    def __init__(self, stages, capacity=DEFAULT_CHANNEL_CAPACITY):
        if not stages:
            raise ValueError("a pipeline needs at least one stage")
        self.stages = list(stages)
        self._abort_event = threading.Event()
        self.channels = [
            Channel(capacity, self._abort_event, name=f"{up.name}->{down.name}")
            for up, down in zip(self.stages, self.stages[1:])
        ]
        for channel, up, down in zip(self.channels, self.stages, self.stages[1:]):
            up.set_output_function(channel.put)
            down.set_input_function(channel.get)
        self._errors = []
        self._errors_lock = threading.Lock()

    def run(self, items):
        """Feed `items` followed by the sentinel and collect the last stage's output.

        Returns
        -------
        list
            Everything the last stage emitted before its sentinel.

        Raises
        ------
        Exception
            The first error raised by any stage.
        """
        results = []

        def sink(item):
            if not _is_sentinel(item):
                results.append(item)

        self.stages[0].set_input_function(self._source(iter(items)))
        self.stages[-1].set_output_function(sink)

        threads = [threading.Thread(target=self._run_stage, args=(stage,),
                                    name=f"stage-{stage.name}", daemon=True)
                   for stage in self.stages]
        for thread in threads:
            thread.start()
        try:
            for thread in threads:
                thread.join()
        finally:
            self._drain()
            for stage in self.stages:
                stage.close()

        if self._errors:
            for item in results:
                _release(item)
            raise self._root_cause()
        return results

    def abort(self):
        """Wake every stage and channel; the run then fails with the first error."""
        self._abort_event.set()
        for channel in self.channels:
            channel.abort()
        for stage in self.stages:
            stage.abort()

    def _source(self, iterator):
        def pull():
            if self._abort_event.is_set():
                raise PipelineAborted("input aborted")
            try:
                return next(iterator)
            except StopIteration:
                return Projection.sentinel()
        return pull

    def _run_stage(self, stage):
        try:
            stage.run()
        except BaseException as exc:
            with self._errors_lock:
                self._errors.append(exc)
            if isinstance(exc, PipelineAborted):
                logger.debug("%s stopped: %s", stage.name, exc)
            else:
                logger.error("%s failed: %s", stage.name, exc)
            self.abort()
        else:
            logger.debug("%s finished", stage.name)

    def _drain(self):
        for channel in self.channels:
            for item in channel.drain():
                _release(item)

    def _root_cause(self):
        for exc in self._errors:
            if not isinstance(exc, PipelineAborted):
                return exc
        return self._errors[0]


def _is_sentinel(item):
    return isinstance(item, Projection) and not item.valid


def _release(item):
    if isinstance(item, Projection):
        item.release()


# ============================================================================
# High-Level API
# ============================================================================

def working_bytes(geometry, pool_limit):
    """Device memory a run needs besides its volume slab."""
    n = filter_length(geometry.det_cols)
    # Preloader pool, peer-copy pool, one complex spectrum per row
    return (2 * pool_limit * geometry.projection_bytes
            + geometry.det_rows * (n // 2 + 1) * 8)


def reconstruct(config, projections, allocator_factory=DeviceAllocator):
    """Reconstruct a volume from host-resident projections.

    Parameters
    ----------
    config : ReconstructionConfig
        Geometry, angles, devices and limits of the run.
    projections : sequence of Projection
        Host projections, e.g. from :func:`~fdkpipe.loader.load_projections`.
        Their ``index`` selects the angle. The run takes ownership of them.
    allocator_factory : callable, optional
        ``device -> allocator`` used for every device buffer.

    Returns
    -------
    torch.Tensor
        Host volume of shape ``config.geometry.volume_shape``.

    Raises
    ------
    ConfigurationError
        If the volume does not fit the devices.
    FdkError
        The first failure of any stage.

    Examples
    --------
    >>> config = ReconstructionConfig(geometry, angles, devices=["cuda:0", "cuda:1"])
    >>> volume = reconstruct(config, load_projections(paths, config.angles))
    """
    geo = config.geometry
    devices = DeviceManager.resolve(config.devices)
    budgets = [DeviceManager.memory_budget(dev, config.memory_fraction) for dev in devices]
    scheduler = FeldkampScheduler(geo, budgets, working_bytes(geo, config.pool_limit))

    started = time.perf_counter()
    preloader = PreloaderStage(devices, geo.projection_shape, config.pool_limit,
                               allocator_factory)
    weighting = WeightingStage(geo, len(devices))
    filtering = FilterStage(geo, devices)
    feldkamp = Feldkamp(geo, config.angles, devices, scheduler.volume_geometries(),
                        config.pool_limit, allocator_factory)
    feldkamp.set_input_num(len(projections))

    logger.info("Reconstructing %s from %d projection(s) on %s",
                geo.volume_shape, len(projections), ", ".join(str(d) for d in devices))
    pipeline = Pipeline([preloader, weighting, filtering, feldkamp], config.channel_capacity)
    (volume,) = pipeline.run(projections)
    logger.info("Reconstruction finished in %.2f s", time.perf_counter() - started)
    return volume


def save_volume(path, volume):
    """Write `volume` as a ``.npy`` array of shape (z, y, x)."""
    path = Path(path)
    if isinstance(volume, torch.Tensor):
        volume = volume.detach().cpu().numpy()
    np.save(path, np.asarray(volume, dtype=np.float32))
    logger.info("Saved volume %s to %s", volume.shape, path)
    return path
