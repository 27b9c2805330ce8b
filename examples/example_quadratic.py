# Example: Linear-plus-quadratic integrand on the unit cube
#
# Integrates f(x, y, z) = p*(x + y + z) + q*(x^2 + y^2 + z^2) over [0,1]^3
# with p = q = 0.1, whose exact value is 1/4. The sample budget is split
# across all available workers, each running its own VEGAS integrator.
#
# Prints the expected result, the computed result, its error and the elapsed
# wall-clock time, one per line.
#
# Set MCPARALLEL_NUM_WORKERS to change the number of workers.

import logging
import time
from MCparallel import (
    IntegrationConfig,
    ParallelIntegrator,
    Parameters,
    linear_quadratic,
    linear_quadratic_exact,
)

dim = 3
bounds = [(0.0, 1.0)] * dim
n_eval = 10000000
params = Parameters(p=0.1, q=0.1)


def main():
    logging.basicConfig(level=logging.WARNING)
    start = time.perf_counter()
    config = IntegrationConfig(bounds, neval=n_eval, dim=dim)
    result, error = ParallelIntegrator(linear_quadratic, params)(config)
    elapsed = time.perf_counter() - start

    print(f"Expected Result: {linear_quadratic_exact(bounds, params)}")
    print(f"Result: {result}")
    print(f"Error:  {error}")
    print(f"Time taken: {elapsed} s")


if __name__ == "__main__":
    main()
