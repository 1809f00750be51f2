"""
Filtering algorithms for partially observed epidemic models.
"""

from epinfer.filters.particle_filter import ParticleFilter, FilterOutput, estimate_loglik
from epinfer.filters.iterated_filter import IteratedFilter, IF2Result, TraceEntry, cooling_factor

__all__ = [
    'ParticleFilter', 'FilterOutput', 'estimate_loglik',
    'IteratedFilter', 'IF2Result', 'TraceEntry', 'cooling_factor',
]
