"""
Transitions Module - Interval transition probabilities.

For every normal source cell ξ, input cell a and mode m, computes
[P_min, P_max] of the next state landing in:
    - each normal cell,
    - the target aggregate (union of target cells),
    - the avoid aggregate (union of avoid cells and everything outside
      the state box),
where min/max range over all points of ξ (and over the disturbance
values, if a disturbance grid is given).

Two methods:
    closed_form  Gaussian noise: per-axis CDF bounds over the successor
                 mean box returned by dynamics.post().
    monte_carlo  Any density: uniform sampling of the state box for each
                 source point from dynamics.critical_points() (cell lattice
                 plus the extremes of the mean), widened by a confidence margin.

Units (one per source cell) run on a thread pool and write disjoint rows
of pre-allocated arrays.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
from scipy.stats import norm
from tqdm.auto import tqdm

from .config import AbstractionConfig
from .dynamics import DensityParams, GaussianNoise, Mode, NoiseType, validate_modes
from .errors import IntegrationError
from .grid import Grid
from .regions import Label, RegionLabeler


Unit = Tuple[int, int, int]  # (source cell, input index, mode index)


@dataclass
class TransitionTable:
    """
    Interval transition data, one row per (mode, source, input).

    Destinations are the normal cells in state_cells order, then the
    target aggregate (column target_column) and the avoid aggregate
    (column avoid_column).

    Attributes:
        state_cells: Grid indices of the normal (source) cells
        lower, upper: Arrays of shape (n_modes, n_states, n_inputs, n_states + 2)
        weights: Mode selection probabilities
        labels: Label of every grid cell
        failed_units: Units replaced by vacuous rows in best-effort mode
    """
    state_cells: np.ndarray
    lower: np.ndarray
    upper: np.ndarray
    weights: np.ndarray
    labels: np.ndarray
    failed_units: Dict[Unit, str] = field(default_factory=dict)

    @property
    def num_states(self) -> int:
        return len(self.state_cells)

    @property
    def num_inputs(self) -> int:
        return self.lower.shape[2]

    @property
    def num_modes(self) -> int:
        return self.lower.shape[0]

    @property
    def target_column(self) -> int:
        return self.num_states

    @property
    def avoid_column(self) -> int:
        return self.num_states + 1

    def mixed(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Combine modes with their fixed selection weights.

        Returns:
            (lower, upper), each of shape (n_states, n_inputs, n_states + 2)
        """
        w = self.weights.reshape(-1, 1, 1, 1)
        lower = np.clip(np.sum(w * self.lower, axis=0), 0.0, 1.0)
        upper = np.clip(np.sum(w * self.upper, axis=0), 0.0, 1.0)
        return lower, upper

    def export(self) -> Dict[str, np.ndarray]:
        """Sparse (source, input, mode, destination) -> (lower, upper) entries with upper > 0."""
        m, s, a, d = np.nonzero(self.upper > 0)
        return {
            'source': self.state_cells[s],
            'input': a,
            'mode': m,
            'destination': d,
            'lower': self.lower[m, s, a, d],
            'upper': self.upper[m, s, a, d],
            'state_cells': self.state_cells.copy(),
            'target_column': np.array(self.target_column),
            'avoid_column': np.array(self.avoid_column),
        }


class TransitionBoundComputer:
    """
    Computes the interval transition table of a labeled grid.

    Usage:
        computer = TransitionBoundComputer(state_grid, input_grid, labeler, modes, config)
        table = computer.compute()
    """

    def __init__(self, state_grid: Grid, input_grid: Grid, labeler: RegionLabeler,
                 modes: Sequence[Mode], config: Optional[AbstractionConfig] = None,
                 disturbance_grid: Optional[Grid] = None):
        """
        Args:
            state_grid: State-space grid
            input_grid: Input-space grid (inputs are the cell centers)
            labeler: Labels of the state grid
            modes: Stochastic dynamics laws with selection weights
            config: Method and numerical settings
            disturbance_grid: Optional adversarial disturbance values (cell centers)
        """
        if labeler.grid is not state_grid:
            raise ValueError("labeler must be built on the state grid")

        self.state_grid = state_grid
        self.input_grid = input_grid
        self.labeler = labeler
        self.modes = validate_modes(modes)
        self.config = config if config is not None else AbstractionConfig()
        self.disturbance_grid = disturbance_grid

        for m_idx, mode in enumerate(self.modes):
            if mode.dynamics.state_dim != state_grid.dim:
                raise ValueError(f"mode {m_idx}: dynamics has dimension {mode.dynamics.state_dim}, "
                                 f"state grid has {state_grid.dim}")
            if self.config.noise_method == 'closed_form' and mode.noise.noise_type != NoiseType.NORMAL:
                raise ValueError(f"mode {m_idx}: closed-form bounds need Gaussian noise, "
                                 f"use noise_method='monte_carlo'")
            if isinstance(mode.noise, GaussianNoise) and mode.noise.sigma.size not in (1, state_grid.dim):
                raise ValueError(f"mode {m_idx}: sigma must have 1 or {state_grid.dim} entries")

        labels = labeler.labels
        self.state_cells = np.flatnonzero(labels == Label.NORMAL)
        self._target_cells = np.flatnonzero(labels == Label.TARGET)
        self._avoid_cells = np.flatnonzero(labels == Label.AVOID)

        n_states = len(self.state_cells)
        # Destination column of every grid cell
        self._column = np.empty(state_grid.num_cells, dtype=int)
        self._column[self.state_cells] = np.arange(n_states)
        self._column[self._target_cells] = n_states
        self._column[self._avoid_cells] = n_states + 1

        self._disturbances = None if disturbance_grid is None else disturbance_grid.centers
        self._z = float(norm.ppf(0.5 + self.config.confidence / 2))

    @property
    def num_destinations(self) -> int:
        return len(self.state_cells) + 2

    # ------------------------------------------------------------------
    # Single unit
    # ------------------------------------------------------------------

    def compute_unit(self, cell_idx: int, input_idx: int, mode_idx: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        Interval row for one (source cell, input, mode).

        Returns:
            (lower, upper), each of length n_states + 2

        Raises:
            IntegrationError: If the bounds cannot be computed
        """
        mode = self.modes[mode_idx]
        u = self.input_grid.centers[input_idx]

        if self.config.noise_method == 'closed_form':
            lo, hi = self._closed_form_row(cell_idx, u, mode)
        else:
            rng = np.random.default_rng([self.config.seed, cell_idx, input_idx, mode_idx])
            lo, hi = self._monte_carlo_row(cell_idx, u, mode, rng)

        lo = np.clip(lo, 0.0, 1.0)
        hi = np.clip(hi, 0.0, 1.0)
        floor = self.config.probability_floor
        lo[lo < floor] = 0.0
        hi[hi < floor] = 0.0
        return lo, hi

    def _closed_form_row(self, cell_idx: int, u: np.ndarray, mode: Mode) -> Tuple[np.ndarray, np.ndarray]:
        grid = self.state_grid
        noise = mode.noise
        x_lo, x_hi = grid.cell_to_bounds(cell_idx)

        mu_lo, mu_hi = mode.dynamics.post(x_lo, x_hi, u, self._disturbances, self.config.samples_per_dim)
        mu_lo = np.asarray(mu_lo, dtype=float)
        mu_hi = np.asarray(mu_hi, dtype=float)
        if not (np.all(np.isfinite(mu_lo)) and np.all(np.isfinite(mu_hi))):
            raise IntegrationError(f"cell {cell_idx}: successor mean box is not finite")

        # Per-axis bounds for every grid interval and for the whole axis
        cell_lo = None
        cell_hi = None
        inside_lo = 1.0
        inside_hi = 1.0
        for d in range(grid.dim):
            edges = grid.axis_edges(d)
            p_lo, p_hi = noise.axis_bounds(edges[:-1], edges[1:], mu_lo[d], mu_hi[d], d)
            in_lo, in_hi = noise.axis_bounds(edges[:1], edges[-1:], mu_lo[d], mu_hi[d], d)
            inside_lo *= float(in_lo[0])
            inside_hi *= float(in_hi[0])

            # Product over independent axes, C order matches the flat cell index
            cell_lo = p_lo if cell_lo is None else np.multiply.outer(cell_lo, p_lo)
            cell_hi = p_hi if cell_hi is None else np.multiply.outer(cell_hi, p_hi)

        cell_lo = cell_lo.ravel()
        cell_hi = cell_hi.ravel()

        n_states = len(self.state_cells)
        lo = np.zeros(n_states + 2)
        hi = np.zeros(n_states + 2)
        lo[:n_states] = cell_lo[self.state_cells]
        hi[:n_states] = cell_hi[self.state_cells]

        lo[n_states] = np.sum(cell_lo[self._target_cells])
        hi[n_states] = min(1.0, np.sum(cell_hi[self._target_cells]))

        outside_lo = max(0.0, 1.0 - inside_hi)
        outside_hi = min(1.0, 1.0 - inside_lo)
        lo[n_states + 1] = outside_lo + np.sum(cell_lo[self._avoid_cells])
        hi[n_states + 1] = min(1.0, outside_hi + np.sum(cell_hi[self._avoid_cells]))
        return lo, hi

    def _monte_carlo_row(self, cell_idx: int, u: np.ndarray, mode: Mode,
                         rng: np.random.Generator) -> Tuple[np.ndarray, np.ndarray]:
        grid = self.state_grid
        x_lo, x_hi = grid.cell_to_bounds(cell_idx)
        ws = [None] if self._disturbances is None else list(self._disturbances)

        n_dest = self.num_destinations
        lo = np.full(n_dest, np.inf)
        hi = np.full(n_dest, -np.inf)
        for w in ws:
            # Lattice plus the extremes of each mean component over the cell
            sources = mode.dynamics.critical_points(x_lo, x_hi, u, w, self.config.samples_per_dim)
            for x in sources:
                mean = mode.dynamics.evaluate(x, u, w)
                if not np.all(np.isfinite(mean)):
                    raise IntegrationError(f"cell {cell_idx}: dynamics returned a non-finite mean")
                params = DensityParams(mean=mean, state_start=x, input=u,
                                       lb=grid.lower, ub=grid.upper, eta=grid.step)
                estimate, margin = self._integrate(mode, params, rng, cell_idx)
                lo = np.minimum(lo, estimate - margin)
                hi = np.maximum(hi, estimate + margin)
        return lo, hi

    def _integrate(self, mode: Mode, params: DensityParams, rng: np.random.Generator,
                   cell_idx: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        Monte Carlo estimate of the mass of every destination for one mean.

        Returns:
            (estimate, margin) per destination, margin = z * standard error
        """
        grid = self.state_grid
        volume = grid.volume
        n_dest = self.num_destinations
        avoid_col = n_dest - 1
        batch = self.config.mc_samples

        sum_w = np.zeros(n_dest)
        sum_w2 = np.zeros(n_dest)
        sum_in = 0.0
        sum_in2 = 0.0
        n = 0
        se_in = np.inf

        for _ in range(self.config.max_integration_batches):
            points = rng.uniform(grid.lower, grid.upper, size=(batch, grid.dim))
            dens = np.asarray(mode.noise.density(points, params), dtype=float)
            if dens.shape != (batch,):
                raise IntegrationError(f"cell {cell_idx}: density returned shape {dens.shape}, expected ({batch},)")
            if not np.all(np.isfinite(dens)) or np.any(dens < 0):
                raise IntegrationError(f"cell {cell_idx}: density returned negative or non-finite values")

            cols = self._column[grid.points_to_cells(points)]
            sum_w += np.bincount(cols, weights=dens, minlength=n_dest)
            sum_w2 += np.bincount(cols, weights=dens ** 2, minlength=n_dest)
            sum_in += float(dens.sum())
            sum_in2 += float(np.sum(dens ** 2))
            n += batch

            se_in = volume * np.sqrt(max(0.0, sum_in2 / n - (sum_in / n) ** 2) / n)
            if se_in <= self.config.integration_tol:
                break
        else:
            raise IntegrationError(
                f"cell {cell_idx}: Monte Carlo integration did not converge within "
                f"{self.config.max_integration_batches} batches (standard error {se_in:.3g} > "
                f"{self.config.integration_tol:.3g})")

        mean_w = sum_w / n
        estimate = volume * mean_w
        se = volume * np.sqrt(np.maximum(0.0, sum_w2 / n - mean_w ** 2) / n)

        # Avoid aggregate = 1 - mass of the non-avoid part of the box
        keep_mean = (sum_in - sum_w[avoid_col]) / n
        keep_sq = (sum_in2 - sum_w2[avoid_col]) / n
        estimate[avoid_col] = 1.0 - volume * keep_mean
        se[avoid_col] = volume * np.sqrt(max(0.0, keep_sq - keep_mean ** 2) / n)

        return estimate, self._z * se

    # ------------------------------------------------------------------
    # Whole table
    # ------------------------------------------------------------------

    def _compute_cell(self, src_pos: int, lower: np.ndarray, upper: np.ndarray) -> Dict[Unit, str]:
        """Fill the rows of one source cell (all inputs, all modes)."""
        cell_idx = int(self.state_cells[src_pos])
        failed = {}
        for mode_idx in range(len(self.modes)):
            for input_idx in range(self.input_grid.num_cells):
                try:
                    lo, hi = self.compute_unit(cell_idx, input_idx, mode_idx)
                except IntegrationError as exc:
                    failed[(cell_idx, input_idx, mode_idx)] = str(exc)
                    continue
                lower[mode_idx, src_pos, input_idx] = lo
                upper[mode_idx, src_pos, input_idx] = hi
        return failed

    def compute(self) -> TransitionTable:
        """
        Compute all rows.

        Raises:
            IntegrationError: If any unit failed and best_effort is off
        """
        n_states = len(self.state_cells)
        n_inputs = self.input_grid.num_cells
        n_modes = len(self.modes)
        shape = (n_modes, n_states, n_inputs, n_states + 2)
        lower = np.zeros(shape)
        upper = np.zeros(shape)

        verbose = self.config.verbose
        n_workers = self.config.n_workers
        if verbose:
            print(f"Computing transition bounds ({self.config.noise_method}) for "
                  f"{n_states} cells × {n_inputs} inputs × {n_modes} modes...")

        failed: Dict[Unit, str] = {}
        if n_workers > 1 and n_states > 1:
            with ThreadPoolExecutor(max_workers=n_workers) as executor:
                futures = [executor.submit(self._compute_cell, src_pos, lower, upper)
                           for src_pos in range(n_states)]
                for future in tqdm(futures, desc="Cells", disable=not verbose):
                    failed.update(future.result())
        else:
            for src_pos in tqdm(range(n_states), desc="Cells", disable=not verbose):
                failed.update(self._compute_cell(src_pos, lower, upper))

        if failed:
            if not self.config.best_effort:
                first = next(iter(failed.values()))
                raise IntegrationError(f"{len(failed)} transition units failed; first: {first}", failed)
            for cell_idx, input_idx, mode_idx in failed:
                src_pos = int(self._column[cell_idx])
                lower[mode_idx, src_pos, input_idx] = 0.0
                upper[mode_idx, src_pos, input_idx] = 1.0
            if verbose:
                print(f"WARNING: {len(failed)} units replaced by vacuous [0, 1] rows")

        if verbose:
            print(f"Done. Nonzero upper bounds: {int(np.count_nonzero(upper))}")

        return TransitionTable(
            state_cells=self.state_cells.copy(),
            lower=lower,
            upper=upper,
            weights=np.array([m.weight for m in self.modes], dtype=float),
            labels=self.labeler.labels,
            failed_units=failed,
        )
