# parallel.py
# Parallel integration coordinator.
#
# The total sample budget is split evenly across workers. Every worker runs
# its own integrator instance with an independent random stream, and the
# workers' (estimate, error) pairs are combined once all of them have
# finished.

import logging
import os
import warnings
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor, ProcessPoolExecutor, as_completed
from contextlib import contextmanager, nullcontext

import gvar
import numpy as np
import torch
import torch.multiprocessing as mp

from MCparallel.integrands import bind
from MCparallel.integrators import VegasIntegrator, as_bounds
from MCparallel.utils import (
    MINVAL,
    ConfigurationError,
    NumericalWarning,
    derive_seed,
    time_seed,
)

logger = logging.getLogger(__name__)

NUM_WORKERS_ENV = "MCPARALLEL_NUM_WORKERS"
BACKENDS = ("thread", "process")

WorkerResult = namedtuple("WorkerResult", ["mean", "sdev", "neval", "seed"])


def get_num_workers(nworkers=None):
    """
    Number of parallel workers to run.

    Uses ``nworkers`` when given, otherwise the ``MCPARALLEL_NUM_WORKERS``
    environment variable, otherwise the number of threads torch reports.
    Values below one become one.
    """
    if nworkers is None:
        env = os.getenv(NUM_WORKERS_ENV)
        if env:
            try:
                nworkers = int(env)
            except ValueError as e:
                raise ConfigurationError(
                    f"{NUM_WORKERS_ENV} must be an integer, got {env!r}."
                ) from e
        else:
            nworkers = torch.get_num_threads()
    return max(int(nworkers), 1)


def partition_budget(neval, nworkers):
    """
    Per-worker sample counts. Each worker gets ``neval // nworkers``; the
    remainder is not used.
    """
    return [neval // nworkers] * nworkers


class IntegrationConfig:
    """
    Settings of one parallel integration run.

    Args:
        bounds: (lower, upper) pairs, one per dimension
        neval (int): Total number of integrand evaluations
        dim (int, optional): Dimension, must equal ``len(bounds)``
        nworkers (int, optional): Worker count, see :func:`get_num_workers`
        seed (int, optional): Base seed; taken from the clock when omitted
        weighted (bool): Combine workers with inverse-variance weights
            instead of the plain average
        backend (str): ``"thread"`` or ``"process"``
    """

    def __init__(
        self,
        bounds,
        neval,
        dim=None,
        nworkers=None,
        seed=None,
        weighted=False,
        backend="thread",
    ):
        self.bounds = bounds
        self.neval = neval
        self.dim = dim
        self.nworkers = nworkers
        self.seed = seed
        self.weighted = weighted
        self.backend = backend

    def validate(self):
        """
        Check the settings before any work starts.

        Returns:
            tuple: (bounds tensor of shape (dim, 2), dim, number of workers)

        Raises:
            ConfigurationError: On any inconsistent setting
        """
        bounds = as_bounds(self.bounds)
        dim = len(bounds) if self.dim is None else self.dim
        if dim != len(bounds):
            raise ConfigurationError(
                f"dim is {dim} but bounds describe {len(bounds)} dimensions."
            )
        if isinstance(self.neval, bool) or not isinstance(
            self.neval, (int, np.integer)
        ):
            raise ConfigurationError(f"neval must be an integer, got {self.neval!r}.")
        if self.neval <= 0:
            raise ConfigurationError(f"neval must be positive, got {self.neval}.")
        nworkers = get_num_workers(self.nworkers)
        if self.neval < nworkers:
            raise ConfigurationError(
                f"neval ({self.neval}) is smaller than the number of workers "
                f"({nworkers})."
            )
        if self.backend not in BACKENDS:
            raise ConfigurationError(
                f"backend must be one of {BACKENDS}, got {self.backend!r}."
            )
        return bounds, dim, nworkers


class IntegrationResult:
    """
    Combined estimate of a parallel run.

    Unpacks as ``(mean, sdev)``. ``nonfinite`` is set when some worker
    returned a non-finite estimate or error.
    """

    def __init__(self, mean, sdev, worker_results, weighted=False, nonfinite=False):
        self.mean = float(mean)
        self.sdev = float(sdev)
        self.worker_results = list(worker_results)
        self.weighted = weighted
        self.nonfinite = nonfinite

    def __iter__(self):
        return iter((self.mean, self.sdev))

    def __str__(self):
        if self.nonfinite:
            return f"{self.mean} +- {self.sdev}"
        return str(self.gvar)

    def __repr__(self):
        return (
            f"IntegrationResult(mean={self.mean!r}, sdev={self.sdev!r}, "
            f"nworkers={self.nworkers}, weighted={self.weighted})"
        )

    @property
    def gvar(self):
        return gvar.gvar(self.mean, self.sdev)

    @property
    def nworkers(self):
        return len(self.worker_results)

    @property
    def neval(self):
        "Number of integrand evaluations actually used."
        return sum(r.neval for r in self.worker_results)

    @property
    def dof(self):
        return self.nworkers - 1

    @property
    def chi2(self):
        "*chi**2* of the worker estimates about the combined mean."
        if self.nworkers <= 1:
            return 0.0
        means = np.array([r.mean for r in self.worker_results])
        var = np.array([r.sdev for r in self.worker_results]) ** 2
        if self.weighted:
            return float(np.sum((means - self.mean) ** 2 / np.maximum(var, MINVAL)))
        return float(np.sum((means - self.mean) ** 2) / max(np.mean(var), MINVAL))

    @property
    def Q(self):
        "*Q* or *p-value* of :attr:`chi2`."
        chi2 = self.chi2
        if self.dof > 0 and chi2 >= 0:
            return gvar.gammaQ(self.dof / 2.0, chi2 / 2.0)
        return float("nan")


def combine(worker_results, weighted=False):
    """
    Fold worker (estimate, error) pairs into one result.

    The default keeps the plain average::

        mean = sum(mean_w) / W
        sdev = sqrt(sum(sdev_w**2)) / W

    With ``weighted=True`` the estimates are combined with inverse-variance
    weights instead. A :class:`NumericalWarning` is issued when any input is
    not finite; the non-finite values propagate into the result.

    Args:
        worker_results (list): Items with ``mean`` and ``sdev`` attributes, or
            ``(mean, sdev)`` pairs
        weighted (bool): Use inverse-variance weights

    Returns:
        IntegrationResult
    """
    worker_results = [
        r if isinstance(r, WorkerResult) else WorkerResult(r[0], r[1], 0, None)
        for r in worker_results
    ]
    if not worker_results:
        raise ValueError("no worker results to combine.")
    means = np.array([r.mean for r in worker_results], dtype=np.float64)
    sdevs = np.array([r.sdev for r in worker_results], dtype=np.float64)

    nonfinite = not (np.all(np.isfinite(means)) and np.all(np.isfinite(sdevs)))
    if nonfinite:
        warnings.warn(
            "some worker estimates are not finite; "
            "retry with another seed or more samples.",
            NumericalWarning,
            stacklevel=2,
        )

    if weighted:
        wgt = 1.0 / np.maximum(sdevs**2, MINVAL)
        var = 1.0 / np.sum(wgt)
        mean = np.sum(wgt * means) * var
        sdev = np.sqrt(var)
    else:
        nworkers = len(worker_results)
        mean = np.sum(means) / nworkers
        sdev = np.sqrt(np.sum(sdevs**2)) / nworkers
    return IntegrationResult(mean, sdev, worker_results, weighted, nonfinite)


@contextmanager
def worker_stream(integrator, dim, seed):
    """
    Random generator and integrator state owned by a single worker.

    Both are released when the block exits, including on error.
    """
    generator = torch.Generator(device=integrator.device)
    generator.manual_seed(seed)
    state = integrator.allocate(dim)
    try:
        yield generator, state
    finally:
        integrator.release(state)


@contextmanager
def intra_op_threads(nthreads):
    """Limit torch to ``nthreads`` intra-op threads inside the block."""
    previous = torch.get_num_threads()
    torch.set_num_threads(nthreads)
    try:
        yield
    finally:
        torch.set_num_threads(previous)


def run_worker(f, integrator, bounds, dim, neval, seed, nthreads=None):
    """
    Integrate ``f`` on one worker and return its :class:`WorkerResult`.

    ``nthreads`` caps the intra-op threads of a worker running in its own
    process.
    """
    limit = nullcontext() if nthreads is None else intra_op_threads(nthreads)
    with limit, worker_stream(integrator, dim, seed) as (generator, state):
        mean, sdev = integrator.integrate(f, bounds, dim, neval, generator, state)
    return WorkerResult(float(mean), float(sdev), neval, seed)


class ParallelIntegrator:
    """
    Runs one integrator per worker and combines their results.

    Args:
        f (callable): Integrand ``f(x, fx)``, or ``f(x, fx, params)`` when
            ``params`` is given
        params (optional): Parameter record bound to ``f``
        integrator (Integrator, optional): Per-worker integrator, defaults to
            :class:`~MCparallel.integrators.VegasIntegrator`
    """

    def __init__(self, f, params=None, integrator=None):
        self.f = f if params is None else bind(f, params)
        self.integrator = VegasIntegrator() if integrator is None else integrator

    def _executor(self, backend, nworkers):
        if backend == "process":
            return ProcessPoolExecutor(
                max_workers=nworkers, mp_context=mp.get_context("spawn")
            )
        return ThreadPoolExecutor(max_workers=nworkers)

    def __call__(self, config):
        bounds, dim, nworkers = config.validate()
        budget = partition_budget(config.neval, nworkers)
        self.integrator.check(budget[0])

        base_seed = time_seed() if config.seed is None else config.seed
        seeds = [derive_seed(base_seed, w) for w in range(nworkers)]
        dropped = config.neval - sum(budget)
        if dropped:
            logger.debug("%d samples dropped by the even split", dropped)
        logger.info(
            "integrating with %d workers, %d samples each", nworkers, budget[0]
        )

        # One intra-op thread per worker: W workers use W cores, not W**2 threads.
        shared = nworkers > 1
        threaded = config.backend == "thread"
        limit = intra_op_threads(1) if shared and threaded else nullcontext()
        worker_threads = 1 if shared and not threaded else None

        results = [None] * nworkers
        with limit, self._executor(config.backend, nworkers) as executor:
            futures = {
                executor.submit(
                    run_worker,
                    self.f,
                    self.integrator,
                    bounds,
                    dim,
                    n,
                    seed,
                    worker_threads,
                ): w
                for w, (n, seed) in enumerate(zip(budget, seeds))
            }
            for future in as_completed(futures):
                w = futures[future]
                results[w] = future.result()
                logger.debug(
                    "worker %d (seed %d): %r +- %r",
                    w,
                    results[w].seed,
                    results[w].mean,
                    results[w].sdev,
                )
        return combine(results, weighted=config.weighted)


def parallel_integrate(f, config=None, params=None, integrator=None, **kwargs):
    """
    Integrate ``f`` in parallel.

    Either pass an :class:`IntegrationConfig` or its arguments as keywords::

        value, error = parallel_integrate(
            linear_quadratic, params=Parameters(0.1, 0.1),
            bounds=[(0, 1)] * 3, neval=10_000_000,
        )

    Returns:
        IntegrationResult
    """
    if config is None:
        config = IntegrationConfig(**kwargs)
    elif kwargs:
        raise TypeError("pass either a config or keyword settings, not both.")
    return ParallelIntegrator(f, params, integrator)(config)
