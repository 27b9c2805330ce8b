import logging
import math
from typing import Callable

import numpy as np
import torch

from MCparallel.base import Uniform, LinearMap
from MCparallel.maps import Vegas, CompositeMap
from MCparallel.utils import RAvg, ConfigurationError

logger = logging.getLogger(__name__)


def as_bounds(bounds, dtype=torch.float64, device="cpu"):
    """
    Convert integration bounds to a (dim, 2) tensor and check them.

    Args:
        bounds (list, tuple, numpy.ndarray or torch.Tensor): (lower, upper)
            pairs, one per dimension

    Returns:
        torch.Tensor: Bounds of shape (dim, 2)

    Raises:
        TypeError: If ``bounds`` is not array-like or holds non-numbers
        ConfigurationError: If the shape is wrong, a limit is not finite or a
            lower limit exceeds its upper limit
    """
    if isinstance(bounds, torch.Tensor):
        bounds = bounds.to(dtype=dtype, device=device)
    elif isinstance(bounds, (list, tuple, np.ndarray)):
        try:
            bounds = np.asarray(bounds)
        except ValueError as e:
            raise ConfigurationError(f"bounds are not a rectangular array: {e}") from e
        if bounds.size and bounds.dtype.kind not in "biuf":
            raise TypeError(f"bounds must be numbers, got dtype {bounds.dtype}.")
        bounds = torch.tensor(bounds.astype(np.float64), dtype=dtype, device=device)
    else:
        raise TypeError("bounds must be a list, numpy array or torch tensor.")

    if bounds.dim() != 2 or bounds.shape[1] != 2 or bounds.shape[0] == 0:
        raise ConfigurationError(
            f"bounds must have shape (dim, 2), got {tuple(bounds.shape)}."
        )
    if not torch.all(torch.isfinite(bounds)):
        raise ConfigurationError("bounds must be finite.")
    if torch.any(bounds[:, 0] > bounds[:, 1]):
        raise ConfigurationError("every lower bound must not exceed its upper bound.")
    return bounds


class Integrator:
    """
    Base class of the per-worker integrators.

    A worker allocates a state with :meth:`allocate`, calls :meth:`integrate`
    once with its own random generator, and hands the state back to
    :meth:`release`. Integrator objects hold configuration only, so one
    instance can serve every worker at once.
    """

    min_neval = 2

    def __init__(self, batch_size=100000, device=None, dtype=torch.float64):
        if batch_size < 1:
            raise ValueError("batch_size must be positive.")
        self.batch_size = batch_size
        self.device = torch.device("cpu") if device is None else torch.device(device)
        self.dtype = dtype

    def allocate(self, dim):
        "Fresh per-worker state for a ``dim``-dimensional integral."
        return None

    def release(self, state):
        pass

    def check(self, neval):
        """
        Raises:
            ConfigurationError: If ``neval`` samples are too few for an
                error estimate
        """
        if neval < self.min_neval:
            raise ConfigurationError(
                f"{type(self).__name__} needs at least {self.min_neval} samples "
                f"per worker, got {neval}."
            )

    def integrate(self, f: Callable, bounds, dim, neval, generator, state):
        """
        Estimate the integral of ``f(x, fx)`` over ``bounds``.

        Returns:
            tuple: (estimate, standard error)
        """
        raise NotImplementedError("Subclasses must implement this method")

    def _prepare(self, bounds, dim):
        bounds = as_bounds(bounds, self.dtype, self.device)
        if len(bounds) != dim:
            raise ConfigurationError(
                f"dim is {dim} but bounds describe {len(bounds)} dimensions."
            )
        return LinearMap.from_bounds(bounds, device=self.device, dtype=self.dtype)

    def sweep(self, f, maps, dim, neval, generator, vegas=None):
        """
        Draw ``neval`` points in batches and return the mean of ``f * J`` and
        the variance of that mean. When ``vegas`` is given, ``(f * J)**2`` is
        fed to it as training data.
        """
        q0 = Uniform(dim, device=self.device, dtype=self.dtype)
        fx = torch.empty((self.batch_size, 1), dtype=self.dtype, device=self.device)
        total = 0.0
        total_sq = 0.0
        remaining = neval
        while remaining > 0:
            n = min(self.batch_size, remaining)
            u, log_detJ0 = q0.sample(n, generator)
            x, log_detJ = maps.forward(u)
            weight = f(x, fx[:n]) * torch.exp(log_detJ0 + log_detJ)
            if vegas is not None:
                vegas.add_training_data(u, weight**2)
            total += weight.sum().item()
            total_sq += (weight**2).sum().item()
            remaining -= n

        mean = total / neval
        var = (total_sq / neval - mean**2) / (neval - 1)
        if var < 0:
            var = 0.0
        return mean, var


class PlainIntegrator(Integrator):
    """Uniform sampling over the domain, no adaptation."""

    def integrate(self, f, bounds, dim, neval, generator, state=None):
        domain = self._prepare(bounds, dim)
        mean, var = self.sweep(f, domain, dim, neval, generator)
        return mean, math.sqrt(var) if var >= 0 else float("nan")


class VegasIntegrator(Integrator):
    """
    Adaptive importance sampling with a VEGAS grid.

    The sample count is split into ``nitn`` iterations. After every iteration
    the grid is adapted to the training data it produced, and the iteration
    estimates are combined with inverse-variance weights.
    """

    def __init__(
        self,
        nitn=5,
        alpha=1.5,
        ninc=50,
        batch_size=100000,
        device=None,
        dtype=torch.float64,
    ):
        super().__init__(batch_size, device, dtype)
        if nitn < 1:
            raise ValueError("nitn must be positive.")
        self.nitn = nitn
        self.alpha = alpha
        self.ninc = ninc
        self.min_neval = 2 * nitn

    def allocate(self, dim):
        return Vegas(dim, ninc=self.ninc, device=self.device, dtype=self.dtype)

    def release(self, state):
        state.clear()

    def iterations(self, neval):
        "Samples per iteration; the first ``neval % nitn`` iterations get one extra."
        size, extra = divmod(neval, self.nitn)
        return [size + 1 if itn < extra else size for itn in range(self.nitn)]

    def integrate(self, f, bounds, dim, neval, generator, state):
        domain = self._prepare(bounds, dim)
        maps = CompositeMap([state, domain])
        result = RAvg(weighted=True)
        for itn, neval_itn in enumerate(self.iterations(neval)):
            mean, var = self.sweep(f, maps, dim, neval_itn, generator, vegas=state)
            if not (math.isfinite(mean) and math.isfinite(var)):
                logger.debug("iteration %d gave a non-finite estimate %r", itn, mean)
                return mean, math.sqrt(var) if var >= 0 else float("nan")
            result.update(mean, var, neval_itn)
            state.adapt(self.alpha)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("VEGAS iterations:\n%s", result.summary())
        return result.mean, result.sdev
