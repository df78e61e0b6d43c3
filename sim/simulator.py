"""
Closed-loop simulation of a synthesized controller.

Runs the continuous stochastic system under the grid controller and
records whether the reach-avoid objective was met, so the certified
bounds can be compared with empirical frequencies.
"""

import numpy as np
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Callable, Sequence

from imdp_control.dynamics import Mode, validate_modes
from imdp_control.grid import Grid
from imdp_control.regions import Label, RegionLabeler
from imdp_control.synthesis import Controller


REACHED = 'reached'
VIOLATED = 'violated'
TIMEOUT = 'timeout'

DISTURBANCE_MODES = ('random', 'grid', 'custom')


@dataclass
class SimulationResult:
    """
    Container for one closed-loop run.

    Attributes:
        states: State trajectory (steps + 1 x n_states), truncated when the run stops
        inputs: Applied inputs (steps x n_inputs)
        disturbances: Applied disturbances (steps x n_dist, n_dist = 0 without a disturbance space)
        modes: Active mode index per step
        outcome: 'reached', 'violated' or 'timeout'
        metadata: Additional simulation information
    """
    states: np.ndarray
    inputs: np.ndarray
    disturbances: np.ndarray
    modes: np.ndarray
    outcome: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def steps(self) -> int:
        return len(self.inputs)

    @property
    def satisfied(self) -> bool:
        return self.outcome == REACHED


class Simulator:
    """
    Discrete-time simulation engine.

    At each step: look up the input for the current cell, draw a
    disturbance (if the system has a disturbance space), pick a mode by
    its weight, move to the mode's next-state mean and add a noise sample.
    """

    def __init__(self, modes: Sequence[Mode], controller: Controller,
                 labeler: RegionLabeler, seed: Optional[int] = None,
                 disturbance_grid: Optional[Grid] = None,
                 disturbance_mode: str = 'random'):
        """
        Initialize simulator.

        Args:
            modes: Stochastic dynamics laws used for the abstraction
            controller: Synthesized controller
            labeler: Target/avoid labels of the controller's state grid
            seed: Random seed for reproducibility
            disturbance_grid: Disturbance space the abstraction was built with
            disturbance_mode: 'random' (uniform over the disturbance box),
                'grid' (random grid center) or 'custom' (see set_custom_disturbance)
        """
        if labeler.grid is not controller.state_grid:
            raise ValueError("labeler and controller must share the state grid")
        if disturbance_mode not in DISTURBANCE_MODES:
            raise ValueError(f"disturbance_mode must be one of {DISTURBANCE_MODES}, got '{disturbance_mode}'")

        self.modes = validate_modes(modes)
        self.controller = controller
        self.labeler = labeler
        self.grid = controller.state_grid
        self.disturbance_grid = disturbance_grid
        self.disturbance_mode = disturbance_mode

        self._weights = np.array([m.weight for m in self.modes], dtype=float)
        self._custom_disturbance: Optional[Callable] = None
        self.rng = np.random.default_rng(seed)

    def set_custom_disturbance(self, func: Callable[[np.ndarray, int], np.ndarray]) -> None:
        """
        Set custom disturbance function.

        Args:
            func: Function (state, step) -> disturbance
        """
        if self.disturbance_grid is None:
            raise ValueError("a custom disturbance needs a disturbance grid")
        self._custom_disturbance = func
        self.disturbance_mode = 'custom'

    def _get_disturbance(self, x: np.ndarray, k: int) -> Optional[np.ndarray]:
        """Disturbance for step k, None when the system has none."""
        dgrid = self.disturbance_grid
        if dgrid is None:
            return None

        if self.disturbance_mode == 'random':
            return self.rng.uniform(dgrid.lower, dgrid.upper)
        elif self.disturbance_mode == 'grid':
            return dgrid.cell_center(int(self.rng.integers(dgrid.num_cells)))
        else:
            if self._custom_disturbance is None:
                raise ValueError("disturbance_mode is 'custom' but no function was set")
            return np.asarray(self._custom_disturbance(x, k), dtype=float).reshape(dgrid.dim)

    def _classify(self, x: np.ndarray) -> Optional[str]:
        """Outcome if the run stops at x, None otherwise."""
        cell_idx = self.grid.point_to_cell(x)
        if cell_idx < 0:
            return VIOLATED
        label = self.labeler.get_label(cell_idx)
        if label == Label.TARGET:
            return REACHED
        if label == Label.AVOID:
            return VIOLATED
        return None

    def run(self, x0: np.ndarray, steps: Optional[int] = None) -> SimulationResult:
        """
        Run closed-loop simulation.

        Args:
            x0: Initial state
            steps: Number of steps (defaults to the controller's horizon)

        Returns:
            SimulationResult with the trajectory and outcome
        """
        x0 = np.asarray(x0, dtype=float)
        if steps is None:
            steps = self.controller.horizon
            if steps is None:
                raise ValueError("steps is required for an infinite-horizon controller")
        if self.controller.is_finite_horizon and steps > self.controller.horizon:
            raise ValueError(f"steps ({steps}) exceeds the controller horizon ({self.controller.horizon})")

        states = [x0]
        inputs = []
        disturbances = []
        modes = []
        outcome = self._classify(x0)

        k = 0
        while outcome is None and k < steps:
            x = states[-1]
            u = self.controller.action_for_point(x, k)
            w = self._get_disturbance(x, k)

            m_idx = int(self.rng.choice(len(self.modes), p=self._weights))
            mode = self.modes[m_idx]
            mean = mode.dynamics.evaluate(x, u, w)
            x_next = mode.noise.sample(mean, self.rng)

            inputs.append(u)
            if w is not None:
                disturbances.append(w)
            modes.append(m_idx)
            states.append(x_next)
            outcome = self._classify(x_next)
            k += 1

        if outcome is None:
            outcome = TIMEOUT

        n_dist = 0 if self.disturbance_grid is None else self.disturbance_grid.dim
        metadata = {
            'x0': x0.copy(),
            'steps': steps,
            'pessimistic': self.controller.result.pessimistic,
            'certified_bound': self._certified_bound(x0),
            'disturbance_mode': self.disturbance_mode if n_dist else None,
        }

        return SimulationResult(
            states=np.array(states),
            inputs=np.array(inputs).reshape(len(inputs), self.controller.input_grid.dim),
            disturbances=np.array(disturbances).reshape(len(inputs), n_dist),
            modes=np.array(modes, dtype=int),
            outcome=outcome,
            metadata=metadata
        )

    def _certified_bound(self, x0: np.ndarray) -> Optional[float]:
        cell_idx = self.grid.point_to_cell(x0)
        if cell_idx < 0:
            return 0.0
        return self.controller.value(cell_idx)

    def run_batch(self, initial_states: List[np.ndarray],
                  steps: Optional[int] = None) -> List[SimulationResult]:
        """
        Run multiple simulations from different initial conditions.

        Args:
            initial_states: List of initial state vectors
            steps: Simulation length

        Returns:
            List of SimulationResult objects
        """
        results = []
        for x0 in initial_states:
            results.append(self.run(x0, steps))
        return results

    def estimate_satisfaction(self, x0: np.ndarray, runs: int = 1000,
                              steps: Optional[int] = None) -> float:
        """Fraction of runs from x0 that reach the target without violation."""
        if runs < 1:
            raise ValueError("runs must be at least 1")
        reached = sum(self.run(x0, steps).satisfied for _ in range(runs))
        return reached / runs
