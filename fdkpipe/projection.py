"""The unit of work flowing through the pipeline.

A :class:`Projection` exclusively owns its buffer and its execution stream.
Handing it to the next stage is a move: :meth:`Projection.take` transfers
both to a fresh object and leaves the source empty and invalid. Copies are
refused, since two stages must never believe they own the same buffer.
"""

import logging

from .exceptions import ReleaseFailure
from .memory import PooledBlock
from .utils import release_stream

logger = logging.getLogger(__name__)


class Projection:
    """One detector image plus its acquisition metadata.

    Parameters
    ----------
    buffer : PooledBlock or torch.Tensor or None
        Image data of shape ``(height, width)``. A pooled block goes back to
        its pool on release, a plain tensor is simply dropped.
    width, height : int
        Detector columns and rows.
    index : int
        Position of the projection in the scan; selects its trig table entry.
    angle : float
        Acquisition angle in radians.
    valid : bool
        ``False`` marks the end-of-stream sentinel, which carries no buffer.
    stream : torch.cuda.Stream or None
        Execution stream all asynchronous work on `buffer` is queued on.
    device_index : int
        Index of the pipeline device the buffer lives on.
    """

    __slots__ = ("_buffer", "width", "height", "index", "angle", "valid",
                 "stream", "device_index", "_held", "_released")

    def __init__(self, buffer, width, height, index, angle, valid=True, stream=None,
                 device_index=0):
        self._buffer = buffer
        self.width = width
        self.height = height
        self.index = index
        self.angle = angle
        self.valid = valid
        self.stream = stream
        self.device_index = device_index
        self._held = None
        self._released = False

    @classmethod
    def sentinel(cls):
        """Return the end-of-stream marker."""
        return cls(None, 0, 0, 0, 0.0, valid=False)

    @property
    def data(self):
        """The image tensor. Never available on the sentinel."""
        if self._buffer is None:
            raise ReleaseFailure("projection has no buffer (sentinel, moved or released)")
        if isinstance(self._buffer, PooledBlock):
            return self._buffer.buffer
        return self._buffer

    @property
    def device(self):
        return self.data.device

    def hold(self, obj):
        """Keep `obj` alive until this projection's stream has been synchronised.

        Used for the source of an asynchronous copy that must outlive the copy.
        """
        self._held = obj

    def take(self):
        """Move buffer, stream and metadata into a new projection.

        Returns
        -------
        Projection
            The new owner. `self` is left invalid with no buffer and no stream.
        """
        moved = Projection(self._buffer, self.width, self.height, self.index, self.angle,
                           self.valid, self.stream, self.device_index)
        moved._held = self._held
        self._buffer = None
        self._held = None
        self.stream = None
        self.width = self.height = self.index = 0
        self.angle = 0.0
        self.valid = False
        return moved

    def release(self):
        """Synchronise the stream, return the buffer to its pool and drop the stream.

        Safe to call more than once; only the first call releases anything.

        Raises
        ------
        ReleaseFailure
            If synchronising the stream or returning the block fails.
        """
        if self._released:
            return
        self._released = True
        buffer, stream, held = self._buffer, self.stream, self._held
        self._buffer = None
        self.stream = None
        self._held = None
        try:
            release_stream(stream)
            if isinstance(buffer, PooledBlock):
                buffer.release()
        except ReleaseFailure:
            raise
        except RuntimeError as exc:
            raise ReleaseFailure(f"releasing projection #{self.index} failed: {exc}") from exc
        finally:
            del held

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.release()

    def __copy__(self):
        raise TypeError("projections are move-only; use take()")

    def __deepcopy__(self, memo):
        raise TypeError("projections are move-only; use take()")

    def __reduce__(self):
        raise TypeError("projections cannot be pickled")

    def __del__(self):
        try:
            self.release()
        except ReleaseFailure:
            logger.error("Releasing projection #%d in finalizer failed", self.index,
                         exc_info=True)

    def __repr__(self):
        if not self.valid and self._buffer is None:
            return "Projection(<sentinel>)"
        return (f"Projection(#{self.index}, {self.width}x{self.height}, "
                f"angle={self.angle:.4f}, device={self.device_index})")
