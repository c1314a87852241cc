"""Producer/consumer building blocks of the reconstruction pipeline.

A stage pulls items through its input function and pushes results through
its output function. Both are plain callables wired up by the driver before
:meth:`Stage.run` is invoked, usually the ``get``/``put`` methods of the
bounded :class:`Channel` that connects two neighbouring stages. A full channel
blocks the upstream stage, which is all the backpressure the pipeline needs.
"""

import collections
import logging
import threading

from .constants import _POLL_INTERVAL
from .exceptions import PipelineAborted

logger = logging.getLogger(__name__)


# ============================================================================
# Channels
# ============================================================================

class Channel:
    """Bounded FIFO between two stages that can be aborted.

    Parameters
    ----------
    capacity : int
        Maximum number of buffered items; ``put`` blocks beyond it.
    abort_event : threading.Event, optional
        Shared event that makes every blocked ``put``/``get`` raise
        :class:`PipelineAborted`. A private event is created if omitted.
    name : str, optional
        Used in log messages.
    """

    def __init__(self, capacity, abort_event=None, name="channel"):
        if capacity < 1:
            raise ValueError(f"channel capacity must be at least 1, got {capacity}")
        self.capacity = capacity
        self.name = name
        self._abort = abort_event if abort_event is not None else threading.Event()
        self._items = collections.deque()
        self._cond = threading.Condition()

    def put(self, item):
        with self._cond:
            while len(self._items) >= self.capacity:
                self._check_abort()
                self._cond.wait(_POLL_INTERVAL)
            self._check_abort()
            self._items.append(item)
            self._cond.notify_all()

    def get(self):
        with self._cond:
            while not self._items:
                self._check_abort()
                self._cond.wait(_POLL_INTERVAL)
            item = self._items.popleft()
            self._cond.notify_all()
            return item

    def abort(self):
        self._abort.set()
        with self._cond:
            self._cond.notify_all()

    def drain(self):
        """Remove and return everything still buffered."""
        with self._cond:
            items = list(self._items)
            self._items.clear()
            self._cond.notify_all()
        return items

    def __len__(self):
        return len(self._items)

    def _check_abort(self):
        if self._abort.is_set():
            raise PipelineAborted(f"{self.name} aborted")


# ============================================================================
# Stage Base Class
# ============================================================================

class Stage:
    """Base class of every pipeline stage.

    Subclasses implement :meth:`process`, which turns one valid input item
    into one output item. :meth:`run` handles the loop and the end-of-stream
    sentinel, which is forwarded verbatim without touching :meth:`process`.
    """

    name = "stage"

    def __init__(self):
        self._input = None
        self._output = None

    def set_input_function(self, input_function):
        """Set the blocking pull callable ``() -> item``."""
        self._input = input_function

    def set_output_function(self, output_function):
        """Set the blocking push callable ``(item) -> None``."""
        self._output = output_function

    def process(self, item):
        raise NotImplementedError

    def abort(self):
        """Wake up anything this stage blocks on outside its channels."""

    def close(self):
        """Release resources the stage owns (pools, plans)."""

    def run(self):
        """Pull, process and push until the sentinel arrives, then forward it."""
        self._check_wiring()
        logger.debug("%s started", self.name)
        while True:
            item = self._input()
            if not item.valid:
                logger.debug("%s received end of stream", self.name)
                self._output(item)
                return
            try:
                result = self.process(item)
            except BaseException:
                item.release()
                raise
            try:
                self._output(result)
            except BaseException:
                result.release()
                raise

    def _check_wiring(self):
        if self._input is None or self._output is None:
            raise RuntimeError(
                f"{self.name}: set_input_function() and set_output_function() "
                "must be called before run()"
            )
