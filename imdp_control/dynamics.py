"""
Dynamics Module - Dynamics, noise and mode capabilities.

The engine never looks inside user functions. A stochastic system is a
list of Modes; each mode pairs a Dynamics (deterministic next-state
mean) with a NoiseModel (additive perturbation) and a selection weight.

To add a new system, either wrap a plain function with FunctionDynamics
or subclass Dynamics and override post() when a tighter successor box
is known (see LinearDynamics).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import minimize
from scipy.stats import norm

from .grid import lattice


# =============================================================================
# Dynamics
# =============================================================================

class Dynamics(ABC):
    """
    Abstract deterministic part of x(t+1) = f(x(t), u(t), w(t)) + noise.

    Any concrete model must implement:
    - mean(): next-state mean for one state point
    - state_dim: dimension of the state
    """

    margin: float = 0.0
    optimize: bool = True

    @property
    @abstractmethod
    def state_dim(self) -> int:
        """Dimension of the state space."""
        pass

    @abstractmethod
    def mean(self, x: np.ndarray, u: np.ndarray, w: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Next-state mean.

        Args:
            x: State point
            u: Input point
            w: Disturbance point (None when the system has no disturbance space)
        """
        pass

    def means(self, points: np.ndarray, u: np.ndarray,
              disturbances: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Next-state means for every state point and every disturbance value.

        Returns:
            Array of shape (len(points) * max(1, len(disturbances)), state_dim)
        """
        ws = [None] if disturbances is None else list(disturbances)
        out = []
        for x in points:
            for w in ws:
                out.append(self.evaluate(x, u, w))
        return np.array(out)

    def evaluate(self, x, u, w) -> np.ndarray:
        y = np.asarray(self.mean(x, u, w), dtype=float).reshape(-1)
        if y.size != self.state_dim:
            raise ValueError(f"dynamics returned {y.size} values, expected {self.state_dim}")
        return y

    def critical_points(self, x_lo: np.ndarray, x_hi: np.ndarray, u: np.ndarray,
                        w: Optional[np.ndarray] = None,
                        samples_per_dim: int = 3) -> np.ndarray:
        """
        Points of the cell where the mean components reach their extremes.

        The lattice over the cell (corners included) plus, when self.optimize
        is set, the minimizer and maximizer of every mean component found
        by bounded L-BFGS-B started from each lattice point.

        Returns:
            Array of shape (n_points, state_dim)
        """
        x_lo = np.asarray(x_lo, dtype=float)
        x_hi = np.asarray(x_hi, dtype=float)
        samples = lattice(x_lo, x_hi, samples_per_dim)
        if not self.optimize:
            return samples

        bounds = list(zip(x_lo, x_hi))
        found = [samples]
        for i in range(self.state_dim):
            for sign in (1.0, -1.0):
                def objective(x, i=i, sign=sign):
                    return sign * self.evaluate(x, u, w)[i]

                for x0 in samples:
                    res = minimize(objective, x0, method='L-BFGS-B', bounds=bounds)
                    found.append(np.clip(res.x, x_lo, x_hi).reshape(1, -1))

        points = np.vstack(found)
        points = np.unique(np.round(points, 9), axis=0)
        return np.clip(points, x_lo, x_hi)

    def post(self, x_lo: np.ndarray, x_hi: np.ndarray, u: np.ndarray,
             disturbances: Optional[np.ndarray] = None,
             samples_per_dim: int = 3) -> Tuple[np.ndarray, np.ndarray]:
        """
        Box containing the next-state means of every point of [x_lo, x_hi].

        Default: bounding box of the means at critical_points() (for each
        disturbance value), widened by self.margin. Subclasses with
        structure (monotone, linear) should override.

        Returns:
            (mean_lo, mean_hi)
        """
        ws = [None] if disturbances is None else list(disturbances)
        lo = np.full(self.state_dim, np.inf)
        hi = np.full(self.state_dim, -np.inf)
        for w in ws:
            points = self.critical_points(x_lo, x_hi, u, w, samples_per_dim)
            means = self.means(points, u, None if w is None else np.atleast_2d(w))
            lo = np.minimum(lo, means.min(axis=0))
            hi = np.maximum(hi, means.max(axis=0))
        return lo - self.margin, hi + self.margin


class FunctionDynamics(Dynamics):
    """
    Wraps a plain callable.

    Args:
        func: f(x, u) -> mean, or f(x, u, w) -> mean when with_disturbance is set
        state_dim: Dimension of the state
        margin: Growth margin added on each side of the successor box
        with_disturbance: Pass the disturbance value as a third argument
        optimize: Search the cell for the extremes of each mean component;
            with optimize=False only the lattice is used and margin must
            cover the gap (e.g. Lipschitz constant times the cell half-width)
    """

    def __init__(self, func: Callable[..., np.ndarray], state_dim: int,
                 margin: float = 0.0, with_disturbance: bool = False,
                 optimize: bool = True):
        if margin < 0:
            raise ValueError("margin must be non-negative")
        self.func = func
        self._state_dim = int(state_dim)
        self.margin = float(margin)
        self.with_disturbance = with_disturbance
        self.optimize = optimize

    @property
    def state_dim(self) -> int:
        return self._state_dim

    def mean(self, x: np.ndarray, u: np.ndarray, w: Optional[np.ndarray] = None) -> np.ndarray:
        if self.with_disturbance:
            if w is None:
                raise ValueError("dynamics expects a disturbance but no disturbance grid was given")
            return self.func(x, u, w)
        return self.func(x, u)


class LinearDynamics(Dynamics):
    """
    Affine system x(t+1) = A x + B u + E w + c.

    The successor box is exact: with cell center x* and half-width δ,
    the means range over A x* ± |A| δ (plus the input, disturbance and
    offset terms).
    """

    optimize = False  # affine extremes sit on the cell corners

    def __init__(self, A, B, c=None, E=None):
        self.A = np.atleast_2d(np.asarray(A, dtype=float))
        n = self.A.shape[0]
        if self.A.shape != (n, n):
            raise ValueError("A must be square")
        self.B = np.asarray(B, dtype=float).reshape(n, -1)
        self.c = np.zeros(n) if c is None else np.asarray(c, dtype=float).reshape(n)
        self.E = None if E is None else np.asarray(E, dtype=float).reshape(n, -1)

    @property
    def state_dim(self) -> int:
        return self.A.shape[0]

    def mean(self, x: np.ndarray, u: np.ndarray, w: Optional[np.ndarray] = None) -> np.ndarray:
        y = self.A @ np.asarray(x, dtype=float) + self.B @ np.atleast_1d(u) + self.c
        if self.E is not None and w is not None:
            y = y + self.E @ np.atleast_1d(w)
        return y

    def post(self, x_lo, x_hi, u, disturbances=None, samples_per_dim=3):
        x_center = (np.asarray(x_lo) + np.asarray(x_hi)) / 2
        delta_x = (np.asarray(x_hi) - np.asarray(x_lo)) / 2

        f_center = self.A @ x_center + self.B @ np.atleast_1d(u) + self.c
        growth = np.abs(self.A) @ delta_x

        lo = f_center - growth
        hi = f_center + growth
        if self.E is not None and disturbances is not None:
            shifts = np.array([self.E @ np.atleast_1d(w) for w in disturbances])
            lo = lo + shifts.min(axis=0)
            hi = hi + shifts.max(axis=0)
        return lo, hi


# =============================================================================
# Noise
# =============================================================================

class NoiseType(Enum):
    NORMAL = 'normal'
    CUSTOM = 'custom'


@dataclass
class DensityParams:
    """
    Context handed to a density function.

    Attributes:
        mean: Next-state mean f(x, u) the density is centered at
        state_start: Source point x
        input: Input point u
        lb, ub, eta: State-space lower bound, upper bound and step
        extra: User parameters given to the noise model
    """
    mean: np.ndarray
    state_start: np.ndarray
    input: np.ndarray
    lb: np.ndarray
    ub: np.ndarray
    eta: np.ndarray
    extra: Any = None


class NoiseModel(ABC):
    """Additive noise on the next-state mean."""

    noise_type: NoiseType = NoiseType.CUSTOM

    @abstractmethod
    def density(self, points: np.ndarray, params: DensityParams) -> np.ndarray:
        """
        Density of the next state at each row of points.

        Returns:
            Array of shape (len(points),)
        """
        pass

    def sample(self, mean: np.ndarray, rng: np.random.Generator) -> np.ndarray:
        """Draw a next state around mean (used by closed-loop simulation)."""
        raise NotImplementedError(f"{self.__class__.__name__} cannot be sampled")


class GaussianNoise(NoiseModel):
    """
    Independent Gaussian noise with per-dimension standard deviation.

    Along one axis the probability of landing in [a, b] is
        g(μ) = Φ((b - μ) / σ) - Φ((a - μ) / σ)
    which is unimodal in μ with its peak at (a + b) / 2.
    """

    noise_type = NoiseType.NORMAL

    def __init__(self, sigma):
        self.sigma = np.atleast_1d(np.array(sigma, dtype=float))
        if np.any(self.sigma <= 0) or not np.all(np.isfinite(self.sigma)):
            raise ValueError("sigma must be positive and finite")

    def _sigma(self, d: int) -> float:
        return float(self.sigma[0] if self.sigma.size == 1 else self.sigma[d])

    def interval_probability(self, a, b, mu, d: int) -> np.ndarray:
        """P(μ + noise_d ∈ [a, b]) along dimension d (vectorized)."""
        s = self._sigma(d)
        return np.clip(norm.cdf((b - mu) / s) - norm.cdf((a - mu) / s), 0.0, 1.0)

    def axis_bounds(self, a: np.ndarray, b: np.ndarray, mu_lo: float, mu_hi: float,
                    d: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        Min and max over μ ∈ [mu_lo, mu_hi] of the probability of each interval [a_i, b_i].

        The minimum of a unimodal function sits at an end of the range, the
        maximum at the peak clipped into the range.
        """
        a = np.asarray(a, dtype=float)
        b = np.asarray(b, dtype=float)
        at_lo = self.interval_probability(a, b, mu_lo, d)
        at_hi = self.interval_probability(a, b, mu_hi, d)
        peak = np.clip((a + b) / 2, mu_lo, mu_hi)
        return np.minimum(at_lo, at_hi), self.interval_probability(a, b, peak, d)

    def density(self, points: np.ndarray, params: DensityParams) -> np.ndarray:
        points = np.atleast_2d(points)
        sigma = np.broadcast_to(self.sigma, (points.shape[1],))
        return np.prod(norm.pdf(points, loc=params.mean, scale=sigma), axis=1)

    def sample(self, mean: np.ndarray, rng: np.random.Generator) -> np.ndarray:
        mean = np.asarray(mean, dtype=float)
        return rng.normal(mean, np.broadcast_to(self.sigma, mean.shape))


class DensityNoise(NoiseModel):
    """
    Arbitrary density given as pdf(point, dim, params) -> value >= 0.

    Only usable with the Monte Carlo method.

    Args:
        pdf: Density function; params is a DensityParams
        params: User parameters, exposed to pdf as params.extra
        vectorized: pdf accepts an (n, dim) array and returns n values
        sampler: Optional sampler(mean, rng) -> next state, for simulation
    """

    noise_type = NoiseType.CUSTOM

    def __init__(self, pdf: Callable[[np.ndarray, int, DensityParams], float], params: Any = None,
                 vectorized: bool = False, sampler: Optional[Callable] = None):
        self.pdf = pdf
        self.params = params
        self.vectorized = vectorized
        self.sampler = sampler

    def density(self, points: np.ndarray, params: DensityParams) -> np.ndarray:
        points = np.atleast_2d(points)
        dim = points.shape[1]
        if params.extra is None:
            params.extra = self.params
        if self.vectorized:
            return np.asarray(self.pdf(points, dim, params), dtype=float).reshape(-1)
        return np.array([self.pdf(p, dim, params) for p in points], dtype=float)

    def sample(self, mean: np.ndarray, rng: np.random.Generator) -> np.ndarray:
        if self.sampler is None:
            return super().sample(mean, rng)
        return np.asarray(self.sampler(mean, rng), dtype=float)


# =============================================================================
# Modes
# =============================================================================

@dataclass
class Mode:
    """
    One stochastic dynamics law of a switched system.

    Attributes:
        dynamics: Next-state mean
        noise: Additive noise
        weight: Probability of this mode being active at each step
    """
    dynamics: Dynamics
    noise: NoiseModel
    weight: float = 1.0


def validate_modes(modes: Sequence[Mode]) -> List[Mode]:
    """Check that the mode weights form a probability distribution."""
    modes = list(modes)
    if not modes:
        raise ValueError("at least one mode is required")
    weights = np.array([m.weight for m in modes], dtype=float)
    if np.any(weights < 0):
        raise ValueError("mode weights must be non-negative")
    if abs(weights.sum() - 1.0) > 1e-9:
        raise ValueError(f"mode weights must sum to 1, got {weights.sum()}")
    dims = {m.dynamics.state_dim for m in modes}
    if len(dims) != 1:
        raise ValueError(f"all modes must share one state dimension, got {sorted(dims)}")
    return modes
