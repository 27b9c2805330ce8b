# base.py
# Base sampling distribution and the linear map that carries unit-cube points
# onto the integration domain.

import torch
from torch import nn
import numpy as np
from MCparallel.utils import get_device


class BaseDistribution(nn.Module):
    """
    Base class for the distributions the integrators draw points from.
    Every draw goes through an explicit ``torch.Generator`` so that parallel
    workers never share a random stream.
    """

    def __init__(self, dim, device="cpu", dtype=torch.float64):
        """
        Args:
            dim (int): Dimensionality of the distribution
            device (str or torch.device): Device to use for computation
            dtype (torch.dtype): Data type for computations
        """
        super().__init__()
        self.dtype = dtype
        self.dim = dim
        self.device = device

    def sample(self, batch_size=1, generator=None):
        """
        Draw ``batch_size`` points.

        Returns:
            tuple: (samples, log_det_jacobian)
        """
        raise NotImplementedError


class Uniform(BaseDistribution):
    """Uniform distribution over the unit hypercube [0,1)^dim."""

    def sample(self, batch_size=1, generator=None):
        u = torch.rand(
            (batch_size, self.dim),
            generator=generator,
            device=self.device,
            dtype=self.dtype,
        )
        log_detJ = torch.zeros(batch_size, device=self.device, dtype=self.dtype)
        return u, log_detJ


class LinearMap(nn.Module):
    """
    Affine map x = u * A + b.

    With ``A = upper - lower`` and ``b = lower`` it carries the unit cube onto a
    hyper-rectangle. A zero entry in ``A`` (a flat domain) gives a zero Jacobian.
    """

    def __init__(self, A, b, device=None, dtype=torch.float64):
        super().__init__()
        self.device = get_device() if device is None else device
        self.dtype = dtype

        if len(A) != len(b):
            raise ValueError("A and b must have the same dimension.")
        self.A = self._as_tensor(A, "A")
        self.b = self._as_tensor(b, "b")
        self._detJ = torch.prod(self.A)

    def _as_tensor(self, value, name):
        if isinstance(value, torch.Tensor):
            return value.to(dtype=self.dtype, device=self.device)
        if isinstance(value, (list, tuple, np.ndarray)):
            return torch.tensor(value, dtype=self.dtype, device=self.device)
        raise ValueError(f"'{name}' must be a list, numpy array, or torch tensor.")

    @classmethod
    def from_bounds(cls, bounds, device=None, dtype=torch.float64):
        """
        Map from the unit cube onto the box described by ``bounds``.

        Args:
            bounds (torch.Tensor): Tensor of shape (dim, 2) with lower and upper limits
        """
        bounds = torch.as_tensor(bounds, dtype=dtype)
        return cls(bounds[:, 1] - bounds[:, 0], bounds[:, 0], device, dtype)

    @property
    def volume(self):
        return self._detJ.item()

    def forward(self, u):
        """
        Returns:
            tuple: (transformed points, log_det_jacobian)
        """
        return u * self.A + self.b, torch.log(self._detJ.repeat(u.shape[0]))
