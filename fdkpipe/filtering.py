"""Filtering stage: ramp filter every detector row in the frequency domain.

Rows are zero-padded to a power of two at least twice the detector width so
that the circular convolution computed by the FFT equals the linear one. The
ramp is the spatial Ram-Lak kernel transformed once per run, and the
forward/inverse transform plans are built (and warmed up) when the stage is
constructed, never on the per-projection path.
"""

import logging
import math

import torch

from .stage import Stage
from .utils import stream_scope

logger = logging.getLogger(__name__)


# ============================================================================
# Transform Plans
# ============================================================================

def filter_length(n_cols):
    """Padded row length used for filtering: ``2 ** ceil(log2(2 * n_cols))``.

    Examples
    --------
    >>> filter_length(100)
    256
    """
    return 2 ** math.ceil(math.log2(2 * n_cols))


class ForwardPlan:
    """Batched real-to-complex transform of zero-padded rows.

    The input is never modified; the spectrum is written to a new tensor.
    """

    def __init__(self, n, batch, device):
        self.n = n
        self.batch = batch
        self.device = torch.device(device)

    def __call__(self, rows):
        if rows.shape[0] != self.batch:
            raise ValueError(f"plan expects {self.batch} rows, got {rows.shape[0]}")
        return torch.fft.rfft(rows, n=self.n, dim=-1)


class InversePlan:
    """Batched complex-to-real transform writing the unpadded rows into `out`.

    The spectrum passed in may be overwritten; callers must not rely on it
    afterwards.
    """

    def __init__(self, n, batch, device):
        self.n = n
        self.batch = batch
        self.device = torch.device(device)

    def __call__(self, spectrum, out):
        if spectrum.shape[0] != self.batch:
            raise ValueError(f"plan expects {self.batch} rows, got {spectrum.shape[0]}")
        rows = torch.fft.irfft(spectrum, n=self.n, dim=-1)
        out.copy_(rows[..., :out.shape[-1]])
        return out


def _warm_up(forward, inverse, n_cols):
    # cuFFT builds and caches its plan on first execution
    rows = torch.zeros((forward.batch, n_cols), dtype=torch.float32, device=forward.device)
    inverse(forward(rows), rows)


def make_forward_plan(n, batch, device):
    """Create the forward plan for `batch` rows padded to length `n`."""
    return ForwardPlan(n, batch, device)


def make_inverse_plan(n, batch, device):
    """Create the inverse plan matching :func:`make_forward_plan`."""
    return InversePlan(n, batch, device)


# ============================================================================
# Ramp Kernel
# ============================================================================

def ramp_kernel(n, tau, device=None):
    """Frequency response of the discrete Ram-Lak filter.

    Parameters
    ----------
    n : int
        Padded filter length (even).
    tau : float
        Detector pixel pitch along the filtered direction.
    device : torch.device, optional
        Where to place the kernel.

    Returns
    -------
    torch.Tensor
        Real float32 tensor of length ``n // 2 + 1`` to multiply an ``rfft``
        spectrum with.

    Notes
    -----
    The spatial kernel is ``h(0) = 1 / (4 tau^2)``, ``h(k) = -1 / (k pi tau)^2``
    for odd ``k`` and zero otherwise, laid out with negative ``k`` wrapped to
    the end. Its transform is scaled by ``tau``, the sampling interval of
    the convolution integral.
    """
    j = torch.arange(n, dtype=torch.float64)
    k = torch.where(j < n // 2, j, j - n)
    h = torch.zeros(n, dtype=torch.float64)
    h[k == 0] = 1.0 / (4.0 * tau * tau)
    odd = (k % 2) != 0
    h[odd] = -1.0 / (k[odd] * k[odd] * math.pi * math.pi * tau * tau)
    response = tau * torch.fft.rfft(h).real
    return response.to(dtype=torch.float32, device=device)


# ============================================================================
# Filter Stage
# ============================================================================

class FilterStage(Stage):
    """Ramp-filter each detector row of every projection.

    Parameters
    ----------
    geometry : Geometry
        Detector geometry; rows are ``det_cols`` wide, ``det_rows`` per batch.
    devices : sequence of torch.device
        Devices projections may arrive on, indexed by ``device_index``.
    """

    name = "filtering"

    def __init__(self, geometry, devices):
        super().__init__()
        self.geometry = geometry
        self.devices = tuple(devices)
        self.n = filter_length(geometry.det_cols)
        batch = geometry.det_rows

        self._kernels = []
        self._plans = []
        for device in self.devices:
            forward = make_forward_plan(self.n, batch, device)
            inverse = make_inverse_plan(self.n, batch, device)
            _warm_up(forward, inverse, geometry.det_cols)
            self._plans.append((forward, inverse))
            self._kernels.append(ramp_kernel(self.n, geometry.det_pitch_u, device))
        logger.info("Filter plans ready: %d rows padded to %d on %d device(s)",
                    batch, self.n, len(self.devices))

    def process(self, projection):
        projection = projection.take()
        forward, inverse = self._plans[projection.device_index]
        kernel = self._kernels[projection.device_index]
        with stream_scope(projection.stream):
            data = projection.data
            spectrum = forward(data)
            spectrum.mul_(kernel)
            inverse(spectrum, data)
        return projection
