import sys
import numpy as np
import torch
from torch import nn
from MCparallel.utils import get_device

TINY = 10 ** (sys.float_info.min_10_exp + 50)


class Map(nn.Module):
    def __init__(self, device=None, dtype=torch.float64):
        super().__init__()
        self.device = get_device() if device is None else device
        self.dtype = dtype

    def forward(self, u):
        raise NotImplementedError("Subclasses must implement this method")


class CompositeMap(Map):
    """Applies ``maps`` in order, summing their log-Jacobians."""

    def __init__(self, maps, device=None, dtype=None):
        if not maps:
            raise ValueError("Maps can not be empty.")
        if dtype is None:
            dtype = maps[-1].dtype
        if device is None:
            device = maps[-1].device
        super().__init__(device, dtype)
        self.maps = maps

    def forward(self, u):
        log_detJ = torch.zeros(len(u), device=u.device, dtype=self.dtype)
        for m in self.maps:
            u, log_detj = m.forward(u)
            log_detJ += log_detj
        return u, log_detJ


class Vegas(Map):
    """
    VEGAS adaptive map of the unit hypercube onto itself.

    Each axis is cut into ``ninc`` increments of equal probability. Training
    data gathered with :meth:`add_training_data` moves the increment edges so
    that increments shrink where ``(f * J)**2`` is large, which concentrates
    samples where the integrand contributes most to the variance.
    """

    def __init__(self, dim, ninc=50, device=None, dtype=torch.float64):
        super().__init__(device, dtype)
        self.dim = dim

        if isinstance(ninc, int):
            self.ninc = torch.full((dim,), ninc, dtype=torch.int64, device=self.device)
        elif isinstance(ninc, (list, tuple, np.ndarray, torch.Tensor)):
            self.ninc = torch.as_tensor(ninc, dtype=torch.int64).to(self.device)
        else:
            raise ValueError(
                "'ninc' must be an int, list, numpy array, or torch tensor."
            )
        if self.ninc.shape != (dim,):
            raise ValueError(f"'ninc' must be a scalar or a 1D array of length {dim}.")
        if torch.any(self.ninc < 2):
            raise ValueError("'ninc' must be at least 2 on every axis.")

        self.max_ninc = int(self.ninc.max().item())
        self.sum_f = torch.zeros(dim, self.max_ninc, dtype=dtype, device=self.device)
        self.n_f = torch.zeros(dim, self.max_ninc, dtype=dtype, device=self.device)
        self.make_uniform()

    @torch.no_grad()
    def make_uniform(self):
        "Reset the grid to equal increments on every axis."
        self.grid = torch.zeros(
            self.dim, self.max_ninc + 1, dtype=self.dtype, device=self.device
        )
        for d in range(self.dim):
            n = int(self.ninc[d])
            self.grid[d, : n + 1] = torch.linspace(
                0, 1, n + 1, dtype=self.dtype, device=self.device
            )
        self._update_inc()
        self.clear()

    def _update_inc(self):
        self.inc = torch.zeros(
            self.dim, self.max_ninc, dtype=self.dtype, device=self.device
        )
        for d in range(self.dim):
            n = int(self.ninc[d])
            self.inc[d, :n] = self.grid[d, 1 : n + 1] - self.grid[d, :n]

    def extract_grid(self):
        "Return a list of lists specifying the map's grid."
        return [self.grid[d, : int(self.ninc[d]) + 1].tolist() for d in range(self.dim)]

    @torch.no_grad()
    def clear(self):
        "Drop the training data accumulated by :meth:`add_training_data`."
        self.sum_f.zero_()
        self.n_f.zero_()

    @torch.no_grad()
    def add_training_data(self, u, fval):
        """
        Accumulate training values ``fval`` at unit-cube points ``u``.

        Args:
            u (torch.Tensor): Points of shape (batch_size, dim) in [0, 1)
            fval (torch.Tensor): Training values of shape (batch_size,),
                normally ``(f * J)**2``
        """
        iu = torch.floor(u * self.ninc).long()
        iu = torch.minimum(iu, (self.ninc - 1).unsqueeze(0))
        fval = fval.abs()
        ones = torch.ones_like(fval)
        for d in range(self.dim):
            self.sum_f[d].scatter_add_(0, iu[:, d], fval)
            self.n_f[d].scatter_add_(0, iu[:, d], ones)

    def _smoothed_density(self, d, alpha):
        n = int(self.ninc[d])
        counts = self.n_f[d, :n]
        avg_f = torch.where(
            counts > 0, self.sum_f[d, :n] / counts.clamp_min(1), torch.zeros_like(counts)
        )
        if alpha <= 0:
            return avg_f
        smooth = torch.empty_like(avg_f)
        smooth[0] = (7.0 * avg_f[0] + avg_f[1]) / 8.0
        smooth[n - 1] = (7.0 * avg_f[n - 1] + avg_f[n - 2]) / 8.0
        smooth[1 : n - 1] = (6.0 * avg_f[1 : n - 1] + avg_f[: n - 2] + avg_f[2:n]) / 8.0
        smooth = smooth.abs() / smooth.abs().sum().clamp_min(TINY) + TINY
        # Compress the dynamic range before redistributing the increments.
        return (-(1 - smooth) / torch.log(smooth)).pow(alpha)

    @torch.no_grad()
    def adapt(self, alpha=1.5):
        """
        Move the grid according to the accumulated training data, then clear it.

        Args:
            alpha (float): Adaptation rate. Large values adapt quickly, values
                well below one adapt slowly, and ``alpha == 0`` leaves the grid
                unchanged.
        """
        if alpha == 0:
            self.clear()
            return
        new_grid = self.grid.clone()
        for d in range(self.dim):
            n = int(self.ninc[d])
            avg_f = self._smoothed_density(d, alpha)
            total = avg_f.sum()
            if not torch.isfinite(total) or total <= 0:
                continue
            cumulative = torch.cat(
                (torch.zeros(1, dtype=self.dtype, device=self.device), avg_f.cumsum(0))
            )
            targets = torch.arange(1, n, dtype=self.dtype, device=self.device) * (
                total / n
            )
            idx = torch.searchsorted(cumulative, targets, right=True) - 1
            idx = idx.clamp(0, n - 1)
            frac = (targets - cumulative[idx]) / avg_f[idx].clamp_min(TINY)
            new_grid[d, 1:n] = self.grid[d, idx] + frac.clamp(0, 1) * self.inc[d, idx]
        self.grid = new_grid
        self._update_inc()
        self.clear()

    @torch.no_grad()
    def forward(self, u):
        """
        Map unit-cube points ``u`` through the grid.

        Returns:
            tuple: (x of shape (batch_size, dim), log_detJ of shape (batch_size,))
        """
        u_ninc = u * self.ninc
        iu = torch.floor(u_ninc).long()
        iu_clamped = torch.minimum(iu, (self.ninc - 1).unsqueeze(0))
        du = u_ninc - iu_clamped

        grid = self.grid.unsqueeze(0).expand(u.shape[0], -1, -1)
        inc = self.inc.unsqueeze(0).expand(u.shape[0], -1, -1)
        grid_lo = torch.gather(grid, 2, iu_clamped.unsqueeze(2)).squeeze(2)
        inc_d = torch.gather(inc, 2, iu_clamped.unsqueeze(2)).squeeze(2)

        x = grid_lo + inc_d * du
        log_detJ = (inc_d * self.ninc).log().sum(dim=1)
        return x, log_detJ
