"""Exception hierarchy for the reconstruction pipeline.

Low-level failures (allocation, transfer) are never retried inside the
pipeline. They stop the whole run and surface to the caller unchanged.
"""


class FdkError(Exception):
    """Base class for every error raised by fdkpipe."""


class ResourceExhaustion(FdkError):
    """A device resource could not be obtained. Fatal to the run."""


class AllocationFailure(ResourceExhaustion):
    """The raw device allocator failed while a pool or partial volume grew."""


class TransferFailure(FdkError):
    """A host-to-device or device-to-device copy failed."""


class ConfigurationError(FdkError, ValueError):
    """Malformed angle file or inconsistent geometry, detected before any device work."""


class MalformedInput(FdkError, ValueError):
    """A loaded projection lacks the structural fields every stage relies on."""


class ReleaseFailure(FdkError):
    """Returning a block or releasing a stream failed during teardown."""


class PipelineAborted(FdkError):
    """Raised in a stage that was woken up because another stage failed."""
