"""
Exception types raised by the inference pipeline.

FilterCollapse is recoverable (a search drops the affected start),
InvalidTransform signals misconfiguration, DegenerateProfile means an
interval cannot be computed and SearchFailed means no start survived.
"""

from __future__ import annotations

from typing import Optional


class EpinferError(Exception):
    """Base class for all package errors."""


class FilterCollapse(EpinferError):
    """
    Every particle weight underflowed to zero during a filtering pass.

    Parameters
    ----------
    time_index : int, optional
        Index of the observation at which the filter lost all particles.
    time : float, optional
        Observation time at which the filter lost all particles.
    """

    def __init__(self, message: str = "all particle weights underflowed",
                 time_index: Optional[int] = None, time: Optional[float] = None):
        super().__init__(message)
        self.time_index = time_index
        self.time = time


class InvalidTransform(EpinferError, ValueError):
    """A parameter transform was applied outside its domain or is unknown."""


class DegenerateProfile(EpinferError):
    """Too few usable profile points to fit the MCAP approximation."""


class SearchFailed(EpinferError):
    """Every start of a multi-start search collapsed."""

    def __init__(self, message: str, num_failed: int = 0):
        super().__init__(message)
        self.num_failed = num_failed
