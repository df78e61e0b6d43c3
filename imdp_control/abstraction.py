"""
Abstraction Module - End-to-end IMDP abstraction and synthesis.

This module is MODEL-AGNOSTIC. It works with any list of Modes.

Pipeline:
    1. Grids for the state and input spaces (and optionally disturbances)
    2. Target / avoid labeling
    3. Interval transition bounds
    4. IMDP assembly and validation
    5. Finite- or infinite-horizon controller synthesis
"""

import threading
from typing import Callable, Optional, Sequence, Union

import numpy as np

from .config import AbstractionConfig, SynthesisConfig
from .dynamics import Mode
from .grid import Grid
from .imdp import IMDP, assemble
from .regions import PredicateRegion, Region, RegionLabeler
from .synthesis import Controller, ControllerSynthesizer, SynthesisResult
from .transitions import TransitionBoundComputer, TransitionTable


RegionLike = Union[Region, Callable[[np.ndarray], bool]]


class Abstraction:
    """
    IMDP abstraction of a stochastic system with reach-avoid synthesis.

    Usage:
        abst = Abstraction(Grid(lb, ub, eta), Grid(u_lb, u_ub, u_eta), [Mode(dyn, GaussianNoise(sigma))])
        abst.set_target(lambda x: ...)
        abst.build_transitions()
        ctrl = abst.finite_horizon_controller(10, pessimistic=True)
    """

    def __init__(self, state_space: Grid, input_space: Grid, modes: Sequence[Mode],
                 config: Optional[AbstractionConfig] = None,
                 disturbance_space: Optional[Grid] = None):
        """
        Args:
            state_space: State grid
            input_space: Input grid
            modes: Stochastic dynamics laws with selection weights
            config: Transition bound settings
            disturbance_space: Optional adversarial disturbance grid
        """
        self.state_space = state_space
        self.input_space = input_space
        self.modes = list(modes)
        self.config = config if config is not None else AbstractionConfig()
        self.disturbance_space = disturbance_space

        self.labeler = RegionLabeler(state_space)
        self.table: Optional[TransitionTable] = None
        self.imdp: Optional[IMDP] = None

    @staticmethod
    def _as_region(region: RegionLike) -> Region:
        if isinstance(region, Region):
            return region
        if callable(region):
            return PredicateRegion(region)
        raise ValueError("region must be a Region or a predicate callable")

    def _invalidate(self) -> None:
        self.table = None
        self.imdp = None

    def set_target(self, region: RegionLike, policy: str = 'contained') -> np.ndarray:
        """Label target cells. Returns their indices."""
        cells = self.labeler.set_target(self._as_region(region), policy)
        self._invalidate()
        if self.config.verbose:
            print(f"Target: {len(cells)} cells")
        return cells

    def set_avoid(self, region: RegionLike, policy: str = 'contained') -> np.ndarray:
        """Label avoid cells. Returns their indices."""
        cells = self.labeler.set_avoid(self._as_region(region), policy)
        self._invalidate()
        if self.config.verbose:
            print(f"Avoid: {len(cells)} cells")
        return cells

    def build_transitions(self) -> TransitionTable:
        """Compute the interval transition table for the current labels."""
        if len(self.labeler.target_cells) == 0:
            raise ValueError("No target cells defined")
        computer = TransitionBoundComputer(self.state_space, self.input_space, self.labeler,
                                           self.modes, self.config, self.disturbance_space)
        self.table = computer.compute()
        self.imdp = None
        return self.table

    def build_imdp(self, tol: float = 1e-6) -> IMDP:
        """Assemble (and validate) the IMDP, computing transitions first if needed."""
        if self.table is None:
            self.build_transitions()
        self.imdp = assemble(self.table, tol=tol, verbose=self.config.verbose)
        return self.imdp

    def synthesize(self, config: Optional[SynthesisConfig] = None,
                   cancel_event: Optional[threading.Event] = None) -> SynthesisResult:
        """Run synthesis with an explicit configuration."""
        config = config if config is not None else SynthesisConfig()
        if self.imdp is None:
            self.build_imdp(config.realizability_tol)
        return ControllerSynthesizer(self.imdp, config).run(cancel_event)

    def finite_horizon_controller(self, horizon: int, pessimistic: bool = True,
                                  cancel_event: Optional[threading.Event] = None) -> Controller:
        """Controller maximizing the probability of reaching the target within `horizon` steps."""
        config = SynthesisConfig(horizon=horizon, pessimistic=pessimistic, verbose=self.config.verbose)
        return Controller(self.synthesize(config, cancel_event), self.state_space, self.input_space)

    def infinite_horizon_controller(self, pessimistic: bool = True, tolerance: float = 1e-6,
                                    max_iterations: int = 10000,
                                    cancel_event: Optional[threading.Event] = None) -> Controller:
        """Controller maximizing the probability of eventually reaching the target."""
        config = SynthesisConfig(horizon=None, pessimistic=pessimistic, tolerance=tolerance,
                                 max_iterations=max_iterations, verbose=self.config.verbose)
        return Controller(self.synthesize(config, cancel_event), self.state_space, self.input_space)
