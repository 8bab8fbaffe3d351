"""Log densities and random draws used by the sampler.

Thin wrappers over scipy.stats with the parameterizations the model is
written in (variances rather than standard deviations, symmetric
truncation intervals, shape/scale inverse gamma). Every draw takes the
chain's Generator explicitly.
"""

from __future__ import annotations

import numpy as np
from scipy import stats


def _trnorm_bounds(mu, sigma2: float, bound: float):
    sigma = np.sqrt(sigma2)
    return (-bound - mu) / sigma, (bound - mu) / sigma, sigma


def dtrnormln(x, mu, sigma2: float, bound: float) -> float:
    """Summed log density of N(mu, sigma2) truncated to [-bound, bound].

    Returns -inf if any x lies outside the interval.
    """
    x = np.asarray(x, dtype=np.float64)
    if x.size == 0:
        return 0.0
    a, b, sigma = _trnorm_bounds(mu, sigma2, bound)
    return float(np.sum(stats.truncnorm.logpdf(x, a, b, loc=mu, scale=sigma)))


def rtrnorm(rng: np.random.Generator, mu: float, sigma2: float, bound: float) -> float:
    """One draw from N(mu, sigma2) truncated to [-bound, bound]."""
    a, b, sigma = _trnorm_bounds(mu, sigma2, bound)
    return float(stats.truncnorm.rvs(a, b, loc=mu, scale=sigma, random_state=rng))


def rtrnorm_vector(rng: np.random.Generator, n: int, sigma2: float, bound: float) -> np.ndarray:
    """n iid draws from N(0, sigma2) truncated to [-bound, bound]."""
    a, b, sigma = _trnorm_bounds(0.0, sigma2, bound)
    return np.asarray(
        stats.truncnorm.rvs(a, b, loc=0.0, scale=sigma, size=n, random_state=rng),
        dtype=np.float64,
    ).reshape(n)


def dnegbinln(k: int, size: int, prob: float) -> float:
    """Log probability of k successes before `size` failures (success prob `prob`).

    Mean number of tiles is size * prob / (1 - prob).
    """
    return float(stats.nbinom.logpmf(k, size, 1.0 - prob))


def rnegbin(rng: np.random.Generator, size: int, prob: float) -> int:
    return int(rng.negative_binomial(size, 1.0 - prob))


def dinvgamln(x: float, shape: float, scale: float) -> float:
    """Log density of the inverse gamma distribution (shape, scale)."""
    if x <= 0:
        return -np.inf
    return float(stats.invgamma.logpdf(x, shape, scale=scale))


def rinvgam(rng: np.random.Generator, shape: float, scale: float) -> float:
    """One draw from the inverse gamma distribution (shape, scale)."""
    return float(stats.invgamma.rvs(shape, scale=scale, random_state=rng))
