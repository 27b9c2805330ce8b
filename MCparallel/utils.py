# utils.py
# Shared helpers for the parallel integrators: the RAvg running average used to
# fold VEGAS iterations together, seed derivation for per-worker random
# streams, and the package's error and warning types.

import time
import torch
import numpy as np
import gvar

# Floor applied to variances before taking inverse-variance weights
MINVAL = 1e-45
# Odd 64-bit constant (golden ratio) mixed into every worker seed
SEED_MIX = 0x9E3779B97F4A7C15
SEED_MASK = (1 << 64) - 1


class ConfigurationError(ValueError):
    """Raised when an integration run is set up with inconsistent inputs."""


class NumericalWarning(UserWarning):
    """Issued when a worker estimate or its error is not finite."""


class RAvg(gvar.GVar):
    """
    Running average of Monte Carlo estimates, stored as a gvar.GVar.

    In weighted mode every added estimate is weighted by its inverse variance.
    In unweighted mode the mean is the plain average and the error is
    ``sqrt(sum of variances) / count``.
    """

    def __init__(self, weighted=True, itn_results=None, sum_neval=0):
        """
        Args:
            weighted (bool): Use inverse-variance weights
            itn_results (list): Estimates (gvar.GVar) to start from
            sum_neval (int): Number of evaluations behind ``itn_results``
        """
        self.weighted = weighted
        self._mlist = []
        self._wlist = []
        self._sum = 0.0
        self._varsum = 0.0
        self.itn_results = []
        super(RAvg, self).__init__(*gvar.gvar(0.0, 0.0).internaldata)
        for res in itn_results or []:
            self.add(res)
        self.sum_neval = sum_neval

    def update(self, mean, var, last_neval=None):
        """
        Add one estimate given as a mean and its variance.

        Args:
            mean (float): Estimate
            var (float): Variance of the estimate
            last_neval (int, optional): Evaluations spent on this estimate
        """
        self.add(gvar.gvar(mean, var**0.5))
        if last_neval is not None:
            self.sum_neval += last_neval

    def add(self, res):
        self.itn_results.append(res)
        self._mlist.append(res.mean)
        if self.weighted:
            self._wlist.append(1 / max(res.var, MINVAL))
            var = 1.0 / np.sum(self._wlist)
            mean = np.sum([w * m for w, m in zip(self._wlist, self._mlist)]) * var
            sdev = np.sqrt(var)
        else:
            self._sum += res.mean
            self._varsum += res.var
            count = len(self._mlist)
            mean = self._sum / count
            sdev = np.sqrt(self._varsum) / count
        super(RAvg, self).__init__(*gvar.gvar(mean, sdev).internaldata)

    def extend(self, ravg):
        """Append every estimate held by another RAvg."""
        for res in ravg.itn_results:
            self.add(res)
        self.sum_neval += ravg.sum_neval

    def _chi2(self):
        if len(self.itn_results) <= 1:
            return 0.0
        avg = self.mean
        if self.weighted:
            return float(
                np.sum([(avg - m) ** 2 * w for m, w in zip(self._mlist, self._wlist)])
            )
        mean_var = max(self._varsum / len(self._mlist), MINVAL)
        return float(np.sum([(m - avg) ** 2 for m in self._mlist]) / mean_var)

    chi2 = property(_chi2, None, None, "*chi**2* of the average.")

    @property
    def dof(self):
        "Degrees of freedom of the average."
        return len(self.itn_results) - 1

    @property
    def nitn(self):
        "Number of estimates added so far."
        return len(self.itn_results)

    @property
    def Q(self):
        "*Q* or *p-value* of the average's *chi**2*."
        if self.dof > 0 and self.chi2 >= 0:
            return gvar.gammaQ(self.dof / 2.0, self.chi2 / 2.0)
        return float("nan")

    @property
    def avg_neval(self):
        "Average number of evaluations per estimate."
        return self.sum_neval / self.nitn if self.nitn > 0 else 0

    def summary(self, weighted=None):
        """
        Table of the individual estimates and the running average after each.

        Args:
            weighted (bool, optional): Override the averaging mode

        Returns:
            str: One line per estimate
        """
        if weighted is None:
            weighted = self.weighted
        acc = RAvg(weighted=weighted)
        header = ("itn", "integral", "wgt average" if weighted else "average")
        rows = []
        for i, res in enumerate(self.itn_results):
            acc.add(res)
            chi2dof = acc.chi2 / acc.dof if i > 0 else 0.0
            Q = acc.Q if i > 0 else 1.0
            rows.append(
                ("%3d" % (i + 1), str(res), str(acc), "%8.2f" % chi2dof, "%8.2f" % Q)
            )
        header = header + ("chi2/dof", "Q")
        widths = [max(len(row[k]) for row in rows + [header]) for k in range(5)]
        fmt = "%%%ds   %%-%ds %%-%ds %%%ds %%%ds\n" % tuple(widths)
        ans = fmt % header
        ans += len(ans[:-1]) * "-" + "\n"
        for row in rows:
            ans += fmt % row
        return ans

    def converged(self, rtol, atol):
        """True when the error is below ``atol + rtol * |mean|``."""
        return self.sdev < atol + rtol * abs(self.mean)


def derive_seed(base_seed, index):
    """
    Seed of the random stream owned by worker ``index``.

    Workers sharing a base seed still get distinct seeds, and the result
    always fits in 64 bits.

    Args:
        base_seed (int): Seed shared by the whole run
        index (int): Worker index

    Returns:
        int: Seed in ``[0, 2**64)``
    """
    return (int(base_seed) ^ (int(index) + SEED_MIX)) & SEED_MASK


def time_seed():
    "Base seed taken from the nanosecond wall clock."
    return time.time_ns() & SEED_MASK


def set_seed(seed):
    """
    Seed the global numpy and torch generators.

    Args:
        seed (int): Random seed to set
    """
    np.random.seed(seed)
    torch.manual_seed(seed)


def get_device():
    """
    Get the best available device (CUDA GPU if available, otherwise CPU).

    Returns:
        torch.device: The selected device
    """
    return torch.device("cuda" if torch.cuda.is_available() else "cpu")
