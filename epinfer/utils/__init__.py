"""
Utility modules for shared functionality across the codebase.

This package provides common utilities for:
- Run configuration and random substreams (context.py)
- Logging configuration (logging_config.py)
- Result caching (cache.py)
- Worker pool (parallel.py)
- Weighted least squares and loess (linalg.py)
"""

from __future__ import annotations

from epinfer.utils.context import RunContext

from epinfer.utils.logging_config import (
    get_logger,
    setup_logging,
    set_level,
)

from epinfer.utils.cache import (
    make_key,
    NullCache,
    MemoryCache,
    DirectoryCache,
)

__all__ = [
    # Configuration
    "RunContext",
    # Logging
    "get_logger",
    "setup_logging",
    "set_level",
    # Caching
    "make_key",
    "NullCache",
    "MemoryCache",
    "DirectoryCache",
]
