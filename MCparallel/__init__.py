# MCparallel/__init__.py
#
# Parallel Monte Carlo Integration Package
#
# This package estimates definite integrals over hyper-rectangles with VEGAS
# adaptive importance sampling, splitting the sample budget across parallel
# workers inside one process and combining their partial results.
#
# The package provides:
#   - Per-worker integrators (VEGAS and plain Monte Carlo)
#   - The VEGAS adaptive map and the linear domain map
#   - The parallel coordinator and the result combination rules
#   - Batched integrands with parameter records
#   - Utilities for running averages and seed derivation
#

from .integrators import Integrator, PlainIntegrator, VegasIntegrator
from .maps import Vegas
from .integrands import Parameters, bind, linear_quadratic, linear_quadratic_exact
from .parallel import (
    IntegrationConfig,
    IntegrationResult,
    ParallelIntegrator,
    WorkerResult,
    combine,
    get_num_workers,
    parallel_integrate,
    partition_budget,
)
from .utils import (
    RAvg,
    ConfigurationError,
    NumericalWarning,
    derive_seed,
    time_seed,
    set_seed,
    get_device,
)
