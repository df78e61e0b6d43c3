"""
Grid Module - Uniform discretization of a continuous box.

The same class builds the state grid, the input grid and the optional
disturbance grid. Cells are enumerated in C order (last dimension varies
fastest), so flat and per-dimension indices convert with
np.ravel_multi_index / np.unravel_index.
"""

import numpy as np
from typing import Dict, Tuple

from .errors import InvalidBoundsError


# Relative tolerance on (upper - lower) / step being an integer
_DIVISIBILITY_TOL = 1e-6


class Grid:
    """
    Uniform hyper-rectangular partition of [lower, upper].

    Each cell has a flat index, a center and a half-width of step / 2.
    For point lookup cells are half-open [lo, hi), except that the upper
    face of the box belongs to the last cell along each dimension.
    """

    def __init__(self, lower, upper, step):
        """
        Args:
            lower: Lower corner of the box (scalar or one value per dimension)
            upper: Upper corner of the box
            step: Cell size (scalar broadcast to all dimensions, or per dimension)

        Raises:
            InvalidBoundsError: If any dimension is malformed
        """
        lower = np.atleast_1d(np.array(lower, dtype=float))
        upper = np.atleast_1d(np.array(upper, dtype=float))
        step = np.atleast_1d(np.array(step, dtype=float))

        if lower.ndim != 1 or upper.ndim != 1 or step.ndim != 1:
            raise InvalidBoundsError("lower, upper and step must be scalars or 1-D sequences")
        if lower.shape != upper.shape:
            raise InvalidBoundsError(f"lower has {lower.size} dimensions but upper has {upper.size}")
        if step.size == 1 and lower.size > 1:
            step = np.full(lower.shape, step[0])
        if step.shape != lower.shape:
            raise InvalidBoundsError(f"step must have {lower.size} elements, got {step.size}")
        if lower.size == 0:
            raise InvalidBoundsError("a grid needs at least one dimension")
        if not (np.all(np.isfinite(lower)) and np.all(np.isfinite(upper)) and np.all(np.isfinite(step))):
            raise InvalidBoundsError("bounds and steps must be finite")

        counts = []
        for d in range(lower.size):
            if lower[d] >= upper[d]:
                raise InvalidBoundsError(f"dimension {d}: lower ({lower[d]}) must be < upper ({upper[d]})")
            if step[d] <= 0:
                raise InvalidBoundsError(f"dimension {d}: step must be > 0, got {step[d]}")
            ratio = (upper[d] - lower[d]) / step[d]
            n = int(round(ratio))
            if n < 1 or abs(ratio - n) > _DIVISIBILITY_TOL * max(1.0, ratio):
                raise InvalidBoundsError(
                    f"dimension {d}: (upper - lower) = {upper[d] - lower[d]} is not a multiple of step {step[d]}")
            counts.append(n)

        self._lower = lower
        self._upper = upper
        self._step = step
        self._shape = tuple(counts)
        self._num_cells = int(np.prod(self._shape))

        # Pre-compute all cell bounds (vectorized)
        ranges = [np.arange(s) for s in self._shape]
        grids = np.meshgrid(*ranges, indexing='ij')
        all_indices = np.stack([g.ravel() for g in grids], axis=1)

        self._cells_lo = lower + all_indices * step
        self._cells_hi = self._cells_lo + step
        self._centers = self._cells_lo + step / 2

        for arr in (self._lower, self._upper, self._step, self._cells_lo, self._cells_hi, self._centers):
            arr.setflags(write=False)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def dim(self) -> int:
        return self._lower.size

    @property
    def shape(self) -> Tuple[int, ...]:
        return self._shape

    @property
    def num_cells(self) -> int:
        return self._num_cells

    @property
    def lower(self) -> np.ndarray:
        return self._lower

    @property
    def upper(self) -> np.ndarray:
        return self._upper

    @property
    def step(self) -> np.ndarray:
        return self._step

    @property
    def half_width(self) -> np.ndarray:
        return self._step / 2

    @property
    def centers(self) -> np.ndarray:
        """Cell centers, shape (num_cells, dim)."""
        return self._centers

    @property
    def cells_lo(self) -> np.ndarray:
        return self._cells_lo

    @property
    def cells_hi(self) -> np.ndarray:
        return self._cells_hi

    @property
    def volume(self) -> float:
        """Volume of the whole box."""
        return float(np.prod(self._upper - self._lower))

    # ------------------------------------------------------------------
    # Index conversions
    # ------------------------------------------------------------------

    def _check_index(self, cell_idx: int) -> None:
        if not 0 <= cell_idx < self._num_cells:
            raise IndexError(f"cell index {cell_idx} out of range [0, {self._num_cells})")

    def multi_index(self, cell_idx: int) -> Tuple[int, ...]:
        """Flat index -> per-dimension indices."""
        self._check_index(cell_idx)
        return tuple(int(i) for i in np.unravel_index(cell_idx, self._shape))

    def flat_index(self, multi_idx) -> int:
        """Per-dimension indices -> flat index."""
        return int(np.ravel_multi_index(tuple(multi_idx), self._shape))

    def cell_to_bounds(self, cell_idx: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        Convert a flat cell index to its spatial bounds.

        Returns:
            (lo, hi): Lower and upper corners of the cell
        """
        self._check_index(cell_idx)
        return self._cells_lo[cell_idx].copy(), self._cells_hi[cell_idx].copy()

    def cell_center(self, cell_idx: int) -> np.ndarray:
        self._check_index(cell_idx)
        return self._centers[cell_idx].copy()

    def is_in_bounds(self, x: np.ndarray) -> bool:
        """Check if a point lies in the closed box."""
        x = np.asarray(x, dtype=float)
        return bool(np.all(x >= self._lower) and np.all(x <= self._upper))

    def point_to_cell(self, x: np.ndarray) -> int:
        """Convert a continuous point to its cell index. Returns -1 if out of bounds."""
        x = np.asarray(x, dtype=float)
        if not self.is_in_bounds(x):
            return -1
        idx = np.floor((x - self._lower) / self._step).astype(int)
        idx = np.minimum(idx, np.array(self._shape) - 1)
        return self.flat_index(idx)

    def points_to_cells(self, points: np.ndarray) -> np.ndarray:
        """Vectorized point_to_cell for an (n, dim) array."""
        points = np.atleast_2d(np.asarray(points, dtype=float))
        inside = np.all((points >= self._lower) & (points <= self._upper), axis=1)
        idx = np.floor((points - self._lower) / self._step).astype(int)
        idx = np.clip(idx, 0, np.array(self._shape) - 1)
        flat = np.ravel_multi_index(tuple(idx.T), self._shape)
        return np.where(inside, flat, -1)

    def axis_edges(self, d: int) -> np.ndarray:
        """Cell boundaries along dimension d, length shape[d] + 1."""
        return self._lower[d] + np.arange(self._shape[d] + 1) * self._step[d]

    def sample_cell(self, cell_idx: int, samples_per_dim: int = 3) -> np.ndarray:
        """
        Lattice of points covering a cell, corners included.

        Returns:
            Array of shape (samples_per_dim ** dim, dim)
        """
        lo, hi = self.cell_to_bounds(cell_idx)
        return lattice(lo, hi, samples_per_dim)

    def export(self) -> Dict[str, np.ndarray]:
        """Ordered cell bounds and centers for persistence."""
        return {
            'lower': self._lower.copy(),
            'upper': self._upper.copy(),
            'step': self._step.copy(),
            'shape': np.array(self._shape),
            'cells_lo': self._cells_lo.copy(),
            'cells_hi': self._cells_hi.copy(),
            'centers': self._centers.copy(),
        }

    def __len__(self) -> int:
        return self._num_cells

    def __repr__(self) -> str:
        return f"Grid(shape={self._shape}, lower={self._lower.tolist()}, upper={self._upper.tolist()})"


def lattice(lo: np.ndarray, hi: np.ndarray, samples_per_dim: int) -> np.ndarray:
    """Regular lattice over the box [lo, hi] with samples_per_dim points per axis."""
    axes = [np.linspace(lo[d], hi[d], samples_per_dim) for d in range(len(lo))]
    mesh = np.meshgrid(*axes, indexing='ij')
    return np.stack([m.ravel() for m in mesh], axis=1)
