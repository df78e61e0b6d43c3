"""
Regions Module - Target/avoid labeling of grid cells.

A region is anything that can answer two questions: does it contain a
point, and does it contain a whole cell. The labeler uses the second
question by default, so a cell straddling the region boundary stays
'normal' and no probability mass is claimed for the part outside.
"""

from abc import ABC, abstractmethod
from enum import IntEnum
from typing import Callable, Dict

import numpy as np
from shapely.geometry import Polygon, Point, box

from .grid import Grid, lattice


class Label(IntEnum):
    """Per-cell label."""
    NORMAL = 0
    TARGET = 1
    AVOID = 2


LABEL_POLICIES = ('contained', 'center')


class Region(ABC):
    """Abstract region of the state space."""

    @abstractmethod
    def contains_point(self, x: np.ndarray) -> bool:
        pass

    @abstractmethod
    def contains_cell(self, lo: np.ndarray, hi: np.ndarray) -> bool:
        """True only if the whole cell [lo, hi] lies inside the region."""
        pass


class PredicateRegion(Region):
    """
    Region given by a boolean predicate over points.

    Whole-cell containment is decided on a lattice of samples_per_dim
    points per axis (corners and interior points): the cell is inside
    only if the predicate holds at every one of them.

    This is an approximation. A hole or boundary excursion that falls
    between lattice points is missed, and a target cell labeled that way
    claims mass the region does not hold. Use BoxRegion or PolygonRegion
    when the region has that shape, and raise samples_per_dim for
    predicates with features finer than the cell.
    """

    def __init__(self, predicate: Callable[[np.ndarray], bool], samples_per_dim: int = 3):
        if samples_per_dim < 2:
            raise ValueError("samples_per_dim must be at least 2 (cell corners)")
        self.predicate = predicate
        self.samples_per_dim = samples_per_dim

    def contains_point(self, x: np.ndarray) -> bool:
        return bool(self.predicate(np.asarray(x, dtype=float)))

    def contains_cell(self, lo: np.ndarray, hi: np.ndarray) -> bool:
        for x in lattice(lo, hi, self.samples_per_dim):
            if not self.predicate(x):
                return False
        return True


class BoxRegion(Region):
    """Axis-aligned box [[x_min, x_max], [y_min, y_max], ...] (closed)."""

    def __init__(self, bounds):
        self.bounds = np.array(bounds, dtype=float)
        if self.bounds.ndim != 2 or self.bounds.shape[1] != 2:
            raise ValueError("bounds must have shape (dim, 2)")
        if np.any(self.bounds[:, 0] > self.bounds[:, 1]):
            raise ValueError("box bounds must satisfy min <= max")

    def contains_point(self, x: np.ndarray) -> bool:
        x = np.asarray(x, dtype=float)
        return bool(np.all(x >= self.bounds[:, 0]) and np.all(x <= self.bounds[:, 1]))

    def contains_cell(self, lo: np.ndarray, hi: np.ndarray) -> bool:
        return bool(np.all(np.asarray(lo) >= self.bounds[:, 0]) and np.all(np.asarray(hi) <= self.bounds[:, 1]))


class PolygonRegion(Region):
    """
    Planar polygon region (first two state coordinates).

    Args:
        vertices: Polygon vertices (Nx2 array)
    """

    def __init__(self, vertices):
        self.polygon = Polygon(np.asarray(vertices, dtype=float))
        if not self.polygon.is_valid:
            raise ValueError("polygon vertices do not describe a valid polygon")

    def contains_point(self, x: np.ndarray) -> bool:
        return bool(self.polygon.covers(Point(float(x[0]), float(x[1]))))

    def contains_cell(self, lo: np.ndarray, hi: np.ndarray) -> bool:
        return bool(self.polygon.covers(box(lo[0], lo[1], hi[0], hi[1])))


class RegionLabeler:
    """
    Maps grid cells to labels (normal / target / avoid).

    Each set_* call first clears the labels of its own kind, so calling
    it twice with the same region leaves the labels unchanged.
    """

    def __init__(self, grid: Grid):
        self.grid = grid
        self._labels = np.full(grid.num_cells, Label.NORMAL, dtype=np.int8)

    def _matching_cells(self, region: Region, policy: str) -> np.ndarray:
        if policy not in LABEL_POLICIES:
            raise ValueError(f"policy must be one of {LABEL_POLICIES}, got '{policy}'")

        mask = np.zeros(self.grid.num_cells, dtype=bool)
        for cell_idx in range(self.grid.num_cells):
            if policy == 'contained':
                mask[cell_idx] = region.contains_cell(self.grid.cells_lo[cell_idx], self.grid.cells_hi[cell_idx])
            else:
                mask[cell_idx] = region.contains_point(self.grid.centers[cell_idx])
        return mask

    def _relabel(self, region: Region, label: Label, other: Label, policy: str) -> np.ndarray:
        mask = self._matching_cells(region, policy)
        clash = mask & (self._labels == other)
        if np.any(clash):
            raise ValueError(
                f"{int(np.sum(clash))} cells would be both {label.name.lower()} and {other.name.lower()}")

        self._labels[self._labels == label] = Label.NORMAL
        self._labels[mask] = label
        return np.flatnonzero(mask)

    def set_target(self, region: Region, policy: str = 'contained') -> np.ndarray:
        """
        Mark cells as target.

        Args:
            region: Target region
            policy: 'contained' (whole cell inside) or 'center' (cell center inside)

        Returns:
            Indices of target cells
        """
        return self._relabel(region, Label.TARGET, Label.AVOID, policy)

    def set_avoid(self, region: Region, policy: str = 'contained') -> np.ndarray:
        """Mark cells as avoid. Same conventions as set_target."""
        return self._relabel(region, Label.AVOID, Label.TARGET, policy)

    @property
    def labels(self) -> np.ndarray:
        return self._labels.copy()

    @property
    def target_cells(self) -> np.ndarray:
        return np.flatnonzero(self._labels == Label.TARGET)

    @property
    def avoid_cells(self) -> np.ndarray:
        return np.flatnonzero(self._labels == Label.AVOID)

    @property
    def normal_cells(self) -> np.ndarray:
        return np.flatnonzero(self._labels == Label.NORMAL)

    def get_label(self, cell_idx: int) -> Label:
        return Label(int(self._labels[cell_idx]))

    def export(self) -> Dict[str, np.ndarray]:
        return {
            'labels': self._labels.copy(),
            'target_cells': self.target_cells,
            'avoid_cells': self.avoid_cells,
        }
