"""
Observed series, scenarios and synthetic data.
"""

from epinfer.data.observations import ObservationSeries, Scenario
from epinfer.data.generators import build_models, simulate, simulate_scenario, two_regime_sir_scenario

__all__ = [
    'ObservationSeries', 'Scenario',
    'build_models', 'simulate', 'simulate_scenario', 'two_regime_sir_scenario',
]
