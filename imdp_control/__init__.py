"""IMDP Control Package"""

from .errors import InvalidBoundsError, IntegrationError, InconsistentIntervalError, MaxIterationsExceeded
from .config import AbstractionConfig, SynthesisConfig
from .grid import Grid
from .regions import Label, Region, PredicateRegion, BoxRegion, PolygonRegion, RegionLabeler
from .dynamics import (Dynamics, FunctionDynamics, LinearDynamics, NoiseType, DensityParams,
                       NoiseModel, GaussianNoise, DensityNoise, Mode)
from .transitions import TransitionTable, TransitionBoundComputer
from .imdp import IMDP, assemble
from .synthesis import (interval_expectation, extremal_distribution, SynthesisStatus, SynthesisResult,
                        ControllerSynthesizer, Controller)
from .abstraction import Abstraction
