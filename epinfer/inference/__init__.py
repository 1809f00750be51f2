"""
Parameter estimation and uncertainty quantification.
"""

from epinfer.inference.search import (
    SearchController,
    SearchResult,
    SearchRow,
    fit_and_evaluate,
    sample_starts,
)
from epinfer.inference.mcap import MCAPResult, mcap
from epinfer.inference.profile import (
    ProfileLikelihoodCI,
    ProfilePoint,
    ProfileResult,
    collapse_profile,
)

__all__ = [
    'SearchController', 'SearchResult', 'SearchRow', 'fit_and_evaluate', 'sample_starts',
    'MCAPResult', 'mcap',
    'ProfileLikelihoodCI', 'ProfilePoint', 'ProfileResult', 'collapse_profile',
]
