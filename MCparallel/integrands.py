# integrands.py
# Batched integrands with their parameter records.
#
# An integrand has the signature ``f(x, fx, params)``: ``x`` is a
# (batch_size, dim) tensor of points, ``fx`` a (batch_size, 1) buffer the
# integrand fills, and the return value is ``fx[:, 0]``. Integrands must not
# keep state, so every worker may call the same one concurrently.

from collections import namedtuple
from functools import partial
import torch

Parameters = namedtuple("Parameters", ["p", "q"])
Parameters.__doc__ = "Coefficients of :func:`linear_quadratic`."


def bind(integrand, params):
    """
    Fix the parameter record of ``integrand``.

    Returns a two-argument callable ``f(x, fx)``. The result is a
    ``functools.partial`` and stays picklable when ``integrand`` is a
    module-level function.
    """
    return partial(integrand, params=params)


def linear_quadratic(x, fx, params):
    """f(x) = p * sum_i x_i + q * sum_i x_i**2"""
    fx[:, 0] = params.p * x.sum(dim=1) + params.q * (x * x).sum(dim=1)
    return fx[:, 0]


def linear_quadratic_exact(bounds, params):
    """
    Exact integral of :func:`linear_quadratic` over the box ``bounds``.

    Args:
        bounds (list or torch.Tensor): (lower, upper) pairs, one per dimension
        params (Parameters): Coefficients

    Returns:
        float: 0.25 for the unit cube in 3 dimensions with p = q = 0.1
    """
    bounds = torch.as_tensor(bounds, dtype=torch.float64)
    lo, hi = bounds[:, 0], bounds[:, 1]
    volume = torch.prod(hi - lo)
    linear = ((lo + hi) / 2).sum()
    quadratic = ((lo * lo + lo * hi + hi * hi) / 3).sum()
    return (volume * (params.p * linear + params.q * quadratic)).item()
