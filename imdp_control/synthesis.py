"""
Synthesis Module - Reach-avoid controller synthesis on an IMDP.

Value iteration with interval transition probabilities:
    V₀(s) = 0 for normal states (target = 1, avoid = 0 throughout)
    Vₖ₊₁(s) = max_a  ext_{P ∈ [P_min(s,a), P_max(s,a)]}  Σ_d P(d) Vₖ(d)
where ext is min (pessimistic) or max (optimistic).

The inner extremum over an interval row is solved by ordering the
destinations by value and pouring the free mass 1 - Σ P_min into them
in that order (lowest values first when pessimistic). The order only
depends on Vₖ, so it is computed once per step for all rows.
"""

import threading
import warnings
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

import numpy as np

from .config import SynthesisConfig
from .errors import MaxIterationsExceeded
from .grid import Grid
from .imdp import IMDP


# =============================================================================
# Interval expectation
# =============================================================================

def destination_order(values: np.ndarray, pessimistic: bool = True) -> np.ndarray:
    """
    Order in which free mass is assigned.

    Ascending values for pessimistic, descending for optimistic; equal
    values keep increasing destination index.
    """
    values = np.asarray(values, dtype=float)
    idx = np.arange(values.size)
    key = values if pessimistic else -values
    return np.lexsort((idx, key))


def extremal_distribution(values: np.ndarray, lower: np.ndarray, upper: np.ndarray,
                          pessimistic: bool = True) -> np.ndarray:
    """
    Distribution within [lower, upper] minimizing (or maximizing) the expected value.

    Every destination starts at its lower bound; the remaining mass goes to
    destinations in destination_order(), each up to its upper bound.

    Args:
        values: Value of each destination, shape (n_dest,)
        lower, upper: Interval rows, shape (..., n_dest)

    Returns:
        Probabilities, same shape as lower
    """
    values = np.asarray(values, dtype=float)
    lower = np.asarray(lower, dtype=float)
    upper = np.asarray(upper, dtype=float)

    order = destination_order(values, pessimistic)
    lo = lower[..., order]
    gap = np.maximum(upper[..., order] - lo, 0.0)
    remaining = np.maximum(1.0 - lower.sum(axis=-1, keepdims=True), 0.0)

    assigned_before = np.cumsum(gap, axis=-1) - gap
    extra = np.clip(remaining - assigned_before, 0.0, gap)

    probs = np.empty_like(lower)
    probs[..., order] = lo + extra
    return probs


def interval_expectation(values: np.ndarray, lower: np.ndarray, upper: np.ndarray,
                         pessimistic: bool = True) -> np.ndarray:
    """
    Worst-case (pessimistic) or best-case expectation of values over interval rows.

    Args:
        values: Value of each destination, shape (n_dest,)
        lower, upper: Interval rows, shape (..., n_dest)

    Returns:
        Expectations, shape lower.shape[:-1]
    """
    probs = extremal_distribution(values, lower, upper, pessimistic)
    return probs @ np.asarray(values, dtype=float)


# =============================================================================
# Results
# =============================================================================

class SynthesisStatus(Enum):
    INITIALIZED = 'initialized'
    ITERATING = 'iterating'
    HORIZON_REACHED = 'horizon_reached'
    CONVERGED = 'converged'
    MAX_ITERATIONS_EXCEEDED = 'max_iterations_exceeded'
    CANCELLED = 'cancelled'


@dataclass
class SynthesisResult:
    """
    Output of a synthesis run, spread over the whole grid.

    Finite horizon:
        values[k]: value with k steps to go, shape (iterations + 1, num_cells)
        policy[k - 1]: input index to apply with k steps to go, shape (iterations, num_cells)
    Infinite horizon:
        values, policy: shape (num_cells,)

    Target/avoid cells have value 1/0 and policy -1.
    """
    status: SynthesisStatus
    pessimistic: bool
    horizon: Optional[int]
    values: np.ndarray
    policy: np.ndarray
    iterations: int
    residual: float = 0.0

    @property
    def converged(self) -> bool:
        return self.status in (SynthesisStatus.CONVERGED, SynthesisStatus.HORIZON_REACHED)

    @property
    def final_values(self) -> np.ndarray:
        """Certified bound per cell for the full (completed) horizon."""
        return self.values[-1] if self.horizon is not None else self.values


# =============================================================================
# Synthesizer
# =============================================================================

class ControllerSynthesizer:
    """
    Robust value iteration over an IMDP.

    Usage:
        synth = ControllerSynthesizer(imdp, SynthesisConfig(horizon=10))
        result = synth.run()
    """

    def __init__(self, imdp: IMDP, config: Optional[SynthesisConfig] = None):
        self.imdp = imdp
        self.config = config if config is not None else SynthesisConfig()
        self.status = SynthesisStatus.INITIALIZED

    def _destination_values(self, state_values: np.ndarray) -> np.ndarray:
        return np.concatenate([state_values, [1.0, 0.0]])

    def bellman_step(self, state_values: np.ndarray, rows: Optional[np.ndarray] = None):
        """
        One backward-induction step.

        Args:
            state_values: Current values of the normal states
            rows: Optional boolean mask restricting the update to some states

        Returns:
            (new_values, best_actions) for the selected states
        """
        lower, upper = self.imdp.lower, self.imdp.upper
        if rows is not None:
            lower, upper = lower[rows], upper[rows]

        q = interval_expectation(self._destination_values(state_values), lower, upper,
                                 self.config.pessimistic)
        best = np.argmax(q, axis=1)
        return np.clip(q[np.arange(q.shape[0]), best], 0.0, 1.0), best

    def run(self, cancel_event: Optional[threading.Event] = None) -> SynthesisResult:
        """Finite horizon if config.horizon is set, infinite otherwise."""
        if self.config.horizon is None:
            return self.infinite_horizon(cancel_event)
        return self.finite_horizon(self.config.horizon, cancel_event)

    def finite_horizon(self, horizon: int,
                       cancel_event: Optional[threading.Event] = None) -> SynthesisResult:
        """
        Exactly `horizon` backward-induction steps.

        Args:
            horizon: Number of steps N
            cancel_event: Checked before each step; when set, the last completed step is returned
        """
        if horizon < 0:
            raise ValueError("horizon must be non-negative")

        imdp = self.imdp
        verbose = self.config.verbose
        mode = "pessimistic" if self.config.pessimistic else "optimistic"
        if verbose:
            print("=" * 50)
            print(f"FINITE HORIZON SYNTHESIS (N={horizon}, {mode})")
            print("=" * 50)

        self.status = SynthesisStatus.INITIALIZED
        values = [np.zeros(imdp.num_states)]
        policies = []
        status = SynthesisStatus.HORIZON_REACHED

        for k in range(1, horizon + 1):
            if cancel_event is not None and cancel_event.is_set():
                status = SynthesisStatus.CANCELLED
                break
            self.status = SynthesisStatus.ITERATING
            new_values, best = self.bellman_step(values[-1])
            values.append(new_values)
            policies.append(best)
            if verbose:
                print(f"Step {k}: max value {new_values.max() if new_values.size else 0.0:.4f}")

        self.status = status
        if verbose:
            print(f"Done after {len(policies)} steps ({status.value})")

        policy = np.array(policies, dtype=int).reshape(len(policies), imdp.num_states)
        return SynthesisResult(
            status=status,
            pessimistic=self.config.pessimistic,
            horizon=horizon,
            values=imdp.full_values(np.array(values)),
            policy=imdp.full_policy(policy),
            iterations=len(policies),
        )

    def infinite_horizon(self, cancel_event: Optional[threading.Event] = None) -> SynthesisResult:
        """
        Iterate to a fixed point.

        Stops when the max-norm change drops below config.tolerance. After
        config.max_iterations a MaxIterationsExceeded warning is issued and
        the current estimate is returned.
        """
        imdp = self.imdp
        verbose = self.config.verbose
        mode = "pessimistic" if self.config.pessimistic else "optimistic"
        if verbose:
            print("=" * 50)
            print(f"INFINITE HORIZON SYNTHESIS ({mode})")
            print("=" * 50)

        self.status = SynthesisStatus.INITIALIZED

        # States that cannot reach the target keep value 0
        active = ~imdp.prob_zero_states()
        if verbose:
            print(f"States: {imdp.num_states} | without a path to target: {int(np.sum(~active))}")

        values = np.zeros(imdp.num_states)
        policy = np.zeros(imdp.num_states, dtype=int)
        residual = np.inf
        iteration = 0
        status = SynthesisStatus.MAX_ITERATIONS_EXCEEDED

        while iteration < self.config.max_iterations:
            if cancel_event is not None and cancel_event.is_set():
                status = SynthesisStatus.CANCELLED
                break
            self.status = SynthesisStatus.ITERATING
            iteration += 1

            new_values = values.copy()
            if np.any(active):
                new_values[active], policy[active] = self.bellman_step(values, active)
            residual = float(np.max(np.abs(new_values - values))) if values.size else 0.0
            values = new_values

            if verbose and iteration % 100 == 0:
                print(f"Iteration {iteration}: residual {residual:.3e}")

            if residual < self.config.tolerance:
                status = SynthesisStatus.CONVERGED
                break

        if status == SynthesisStatus.MAX_ITERATIONS_EXCEEDED:
            warnings.warn(
                f"value iteration did not converge in {self.config.max_iterations} iterations "
                f"(residual {residual:.3e} >= {self.config.tolerance:.3e}); returning current estimate",
                MaxIterationsExceeded)

        self.status = status
        if verbose:
            print(f"Done after {iteration} iterations ({status.value}, residual {residual:.3e})")

        return SynthesisResult(
            status=status,
            pessimistic=self.config.pessimistic,
            horizon=None,
            values=imdp.full_values(values),
            policy=imdp.full_policy(policy),
            iterations=iteration,
            residual=residual,
        )


# =============================================================================
# Controller
# =============================================================================

class Controller:
    """
    Synthesized controller: grid cell (and time step) -> input.

    Usage:
        ctrl = Controller(result, state_grid, input_grid)
        u = ctrl.action_for_point(x, step=t)
    """

    def __init__(self, result: SynthesisResult, state_grid: Grid, input_grid: Grid):
        self.result = result
        self.state_grid = state_grid
        self.input_grid = input_grid

    @property
    def is_finite_horizon(self) -> bool:
        return self.result.horizon is not None

    @property
    def horizon(self) -> Optional[int]:
        """Number of completed steps (finite horizon only)."""
        return self.result.iterations if self.is_finite_horizon else None

    def action(self, cell_idx: int, step: int = 0) -> int:
        """
        Input index for a cell at time `step` (0-based).

        Returns -1 for target/avoid cells.
        """
        if not self.is_finite_horizon:
            return int(self.result.policy[cell_idx])
        steps_to_go = self.horizon - step
        if not 1 <= steps_to_go <= self.horizon:
            raise ValueError(f"step {step} outside horizon [0, {self.horizon})")
        return int(self.result.policy[steps_to_go - 1, cell_idx])

    def action_for_point(self, x: np.ndarray, step: int = 0) -> Optional[np.ndarray]:
        """Input (cell center) for a continuous state, or None outside the controlled cells."""
        cell_idx = self.state_grid.point_to_cell(x)
        if cell_idx < 0:
            return None
        u_idx = self.action(cell_idx, step)
        if u_idx < 0:
            return None
        return self.input_grid.cell_center(u_idx)

    def value(self, cell_idx: int) -> float:
        """Certified probability bound of a cell over the whole horizon."""
        return float(self.result.final_values[cell_idx])

    def export(self) -> Dict[str, np.ndarray]:
        """Per-cell (and per-step) input indices plus the certified bounds."""
        return {
            'policy': self.result.policy.copy(),
            'values': self.result.final_values.copy(),
            'pessimistic': np.array(self.result.pessimistic),
            'horizon': np.array(-1 if self.result.horizon is None else self.horizon),
            'input_centers': self.input_grid.centers.copy(),
        }
