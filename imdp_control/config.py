"""
Configuration for abstraction and synthesis runs.

Both structs are passed explicitly to the components that need them,
so several runs with different settings can coexist in one process.
"""

import os
from dataclasses import dataclass
from typing import Optional


NOISE_METHODS = ('closed_form', 'monte_carlo')


@dataclass
class AbstractionConfig:
    """
    Settings for the Transition Bound Computer.

    Attributes:
        noise_method: 'closed_form' (Gaussian CDF bounds) or 'monte_carlo'
        samples_per_dim: Lattice points per dimension used to sample a source cell
        mc_samples: Uniform samples per Monte Carlo batch
        confidence: Confidence level of the Monte Carlo margin
        integration_tol: Target standard error of the in-box mass
        max_integration_batches: Batch budget before IntegrationError
        probability_floor: Bounds below this value are set to zero
        n_workers: Worker threads for the per-cell units
        best_effort: Replace failed units by vacuous [0, 1] rows instead of raising
        seed: Base seed for Monte Carlo sampling
        verbose: Print progress
    """
    noise_method: str = 'closed_form'
    samples_per_dim: int = 3
    mc_samples: int = 2000
    confidence: float = 0.95
    integration_tol: float = 1e-3
    max_integration_batches: int = 50
    probability_floor: float = 1e-10
    n_workers: Optional[int] = None
    best_effort: bool = False
    seed: int = 0
    verbose: bool = False

    def __post_init__(self):
        if self.noise_method not in NOISE_METHODS:
            raise ValueError(f"noise_method must be one of {NOISE_METHODS}, got '{self.noise_method}'")
        if self.samples_per_dim < 2:
            raise ValueError("samples_per_dim must be at least 2 (cell corners)")
        if self.mc_samples < 2:
            raise ValueError("mc_samples must be at least 2")
        if not 0.0 < self.confidence < 1.0:
            raise ValueError("confidence must lie in (0, 1)")
        if self.integration_tol <= 0:
            raise ValueError("integration_tol must be positive")
        if self.max_integration_batches < 1:
            raise ValueError("max_integration_batches must be at least 1")
        if not 0.0 <= self.probability_floor < 1.0:
            raise ValueError("probability_floor must lie in [0, 1)")
        if self.n_workers is None:
            self.n_workers = os.cpu_count() or 1
        if self.n_workers < 1:
            raise ValueError("n_workers must be at least 1")


@dataclass
class SynthesisConfig:
    """
    Settings for the Controller Synthesizer.

    Attributes:
        horizon: Number of steps N, or None for the infinite-horizon fixed point
        pessimistic: Resolve interval uncertainty adversarially (True) or cooperatively
        tolerance: Max-norm change that ends infinite-horizon iteration
        max_iterations: Iteration budget for the infinite horizon
        realizability_tol: Slack allowed when checking row sums
        verbose: Print progress
    """
    horizon: Optional[int] = None
    pessimistic: bool = True
    tolerance: float = 1e-6
    max_iterations: int = 10000
    realizability_tol: float = 1e-6
    verbose: bool = False

    def __post_init__(self):
        if self.horizon is not None and self.horizon < 0:
            raise ValueError("horizon must be non-negative")
        if self.tolerance <= 0:
            raise ValueError("tolerance must be positive")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if self.realizability_tol < 0:
            raise ValueError("realizability_tol must be non-negative")
