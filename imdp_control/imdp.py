"""
IMDP Module - Interval Markov Decision Process assembly.

An IMDP row (state, action) is an interval vector over destinations:
the normal states, then the target aggregate, then the avoid aggregate.
A row is usable only if some probability vector inside the intervals
sums to one, i.e. sum(lower) <= 1 <= sum(upper).
"""

from typing import Dict, Optional, Sequence

import numpy as np
import networkx as nx

from .errors import InconsistentIntervalError
from .regions import Label
from .transitions import TransitionTable


TARGET_NODE = 'target'
AVOID_NODE = 'avoid'


class IMDP:
    """
    Interval MDP over the normal cells of a labeled grid.

    Attributes:
        lower, upper: Arrays of shape (num_states, num_actions, num_states + 2)
        state_cells: Grid index of each state
        num_cells: Number of grid cells (normal + target + avoid)
        target_cells, avoid_cells: Grid indices of the absorbing cells
    """

    def __init__(self, lower: np.ndarray, upper: np.ndarray,
                 state_cells: Optional[Sequence[int]] = None,
                 num_cells: Optional[int] = None,
                 target_cells: Sequence[int] = (),
                 avoid_cells: Sequence[int] = (),
                 tol: float = 1e-6,
                 validate: bool = True):
        """
        Args:
            lower, upper: Interval bounds, shape (n_states, n_actions, n_states + 2)
            state_cells: Grid index of each state (default: 0..n_states-1)
            num_cells: Grid size (default: n_states + number of target/avoid cells)
            target_cells, avoid_cells: Grid indices labeled target / avoid
            tol: Slack for the realizability check
            validate: Run the realizability check

        Raises:
            InconsistentIntervalError: If a row cannot be realized
        """
        self.lower = np.asarray(lower, dtype=float)
        self.upper = np.asarray(upper, dtype=float)
        if self.lower.ndim != 3 or self.lower.shape != self.upper.shape:
            raise ValueError("lower and upper must share a shape (n_states, n_actions, n_states + 2)")
        n_states = self.lower.shape[0]
        if self.lower.shape[2] != n_states + 2:
            raise ValueError(f"expected {n_states + 2} destinations, got {self.lower.shape[2]}")

        self.state_cells = np.arange(n_states) if state_cells is None else np.asarray(state_cells, dtype=int)
        self.target_cells = np.asarray(target_cells, dtype=int)
        self.avoid_cells = np.asarray(avoid_cells, dtype=int)
        if len(self.state_cells) != n_states:
            raise ValueError("state_cells must list one grid index per state")
        if num_cells is None:
            num_cells = n_states + len(self.target_cells) + len(self.avoid_cells)
        self.num_cells = int(num_cells)

        if validate:
            self.validate(tol)

    @property
    def num_states(self) -> int:
        return self.lower.shape[0]

    @property
    def num_actions(self) -> int:
        return self.lower.shape[1]

    @property
    def num_destinations(self) -> int:
        return self.lower.shape[2]

    @property
    def target_column(self) -> int:
        return self.num_states

    @property
    def avoid_column(self) -> int:
        return self.num_states + 1

    def validate(self, tol: float = 1e-6) -> None:
        """
        Check 0 <= lower <= upper <= 1 and sum(lower) <= 1 <= sum(upper) per row.

        Raises:
            InconsistentIntervalError: Listing the offending (state, action) rows
        """
        lower, upper = self.lower, self.upper
        bad = ~(np.all(np.isfinite(lower), axis=2) & np.all(np.isfinite(upper), axis=2))
        bad |= np.any(lower < -tol, axis=2) | np.any(upper > 1 + tol, axis=2)
        bad |= np.any(lower > upper + tol, axis=2)
        bad |= np.sum(upper, axis=2) < 1 - tol
        bad |= np.sum(lower, axis=2) > 1 + tol

        if np.any(bad):
            rows = [(int(s), int(a)) for s, a in zip(*np.nonzero(bad))]
            s, a = rows[0]
            raise InconsistentIntervalError(
                f"{len(rows)} rows are not realizable; first: state {s} (cell {self.state_cells[s]}), "
                f"action {a}: sum(lower)={lower[s, a].sum():.6g}, sum(upper)={upper[s, a].sum():.6g}",
                rows)

    def support_graph(self) -> nx.DiGraph:
        """
        Graph of possible moves: an edge s -> d exists if some action has upper(s, a, d) > 0.

        Nodes are state indices plus TARGET_NODE and AVOID_NODE.
        """
        graph = nx.DiGraph()
        graph.add_nodes_from(range(self.num_states))
        graph.add_node(TARGET_NODE)
        graph.add_node(AVOID_NODE)

        names = list(range(self.num_states)) + [TARGET_NODE, AVOID_NODE]
        support = np.any(self.upper > 0, axis=1)
        for s, d in zip(*np.nonzero(support)):
            graph.add_edge(int(s), names[d])
        return graph

    def prob_zero_states(self) -> np.ndarray:
        """
        States with no path to the target in the support graph.

        Their reach-avoid value is 0 under every action choice and every
        resolution of the intervals.

        Returns:
            Boolean mask of length num_states
        """
        graph = self.support_graph()
        can_reach = nx.ancestors(graph, TARGET_NODE)
        mask = np.ones(self.num_states, dtype=bool)
        for s in can_reach:
            if s != AVOID_NODE:
                mask[s] = False
        return mask

    def full_values(self, state_values: np.ndarray) -> np.ndarray:
        """
        Spread values over the grid: target cells 1, avoid cells 0.

        Args:
            state_values: Array whose last axis has length num_states

        Returns:
            Array with last axis of length num_cells
        """
        state_values = np.asarray(state_values, dtype=float)
        out = np.zeros(state_values.shape[:-1] + (self.num_cells,))
        out[..., self.state_cells] = state_values
        out[..., self.target_cells] = 1.0
        out[..., self.avoid_cells] = 0.0
        return out

    def full_policy(self, state_policy: np.ndarray) -> np.ndarray:
        """Spread a per-state policy over the grid, -1 on target/avoid cells."""
        state_policy = np.asarray(state_policy, dtype=int)
        out = np.full(state_policy.shape[:-1] + (self.num_cells,), -1, dtype=int)
        out[..., self.state_cells] = state_policy
        return out

    def export(self) -> Dict[str, np.ndarray]:
        """Mode-mixed rows (state, action, destination) -> (lower, upper) with upper > 0."""
        s, a, d = np.nonzero(self.upper > 0)
        return {
            'state': s,
            'action': a,
            'destination': d,
            'lower': self.lower[s, a, d],
            'upper': self.upper[s, a, d],
            'state_cells': self.state_cells.copy(),
            'target_cells': self.target_cells.copy(),
            'avoid_cells': self.avoid_cells.copy(),
        }

    def __repr__(self) -> str:
        return f"IMDP(states={self.num_states}, actions={self.num_actions})"


def assemble(table: TransitionTable, tol: float = 1e-6, verbose: bool = False) -> IMDP:
    """
    Mix the modes of a transition table and build a validated IMDP.

    Raises:
        InconsistentIntervalError: If a mixed row is not realizable
    """
    lower, upper = table.mixed()
    labels = np.asarray(table.labels)
    imdp = IMDP(
        lower, upper,
        state_cells=table.state_cells,
        num_cells=len(labels),
        target_cells=np.flatnonzero(labels == Label.TARGET),
        avoid_cells=np.flatnonzero(labels == Label.AVOID),
        tol=tol,
    )
    if verbose:
        print(f"IMDP assembled: {imdp.num_states} states × {imdp.num_actions} actions, "
              f"{int(np.count_nonzero(upper))} nonzero upper bounds")
    return imdp
