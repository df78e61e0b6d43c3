"""
Simulation engine.

Provides closed-loop simulation of synthesized controllers under the
stochastic mode dynamics, and empirical satisfaction estimates.
"""

from .simulator import Simulator, SimulationResult, REACHED, VIOLATED, TIMEOUT, DISTURBANCE_MODES

__all__ = [
    'Simulator',
    'SimulationResult',
    'REACHED',
    'VIOLATED',
    'TIMEOUT',
    'DISTURBANCE_MODES',
]
