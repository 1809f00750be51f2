"""
Observed case-count series and scenario configuration.

An ObservationSeries is an initial time t0 followed by strictly increasing
observation times with non-negative counts. A Scenario bundles the model
settings and the free-parameter search box read from a configuration
dictionary or JSON file.
"""

from __future__ import annotations

import csv
import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Sequence, Tuple, Union

from epinfer.models.parameters import ParameterSpace, ParameterVector


@dataclass(frozen=True)
class ObservationSeries:
    """
    Ordered case counts.

    Parameters
    ----------
    t0 : float
        Initial time of the process; strictly before the first observation.
    times : sequence of float
        Strictly increasing observation times.
    counts : sequence of float
        Non-negative integer counts, one per time.
    """

    t0: float
    times: Tuple[float, ...]
    counts: Tuple[float, ...]

    def __post_init__(self):
        times = tuple(float(t) for t in self.times)
        counts = tuple(float(c) for c in self.counts)
        if len(times) != len(counts):
            raise ValueError(f"{len(times)} times but {len(counts)} counts")
        if not times:
            raise ValueError("An observation series needs at least one observation")
        if not float(self.t0) < times[0]:
            raise ValueError(f"t0 ({self.t0}) must precede the first observation ({times[0]})")
        for earlier, later in zip(times, times[1:]):
            if not later > earlier:
                raise ValueError(f"Observation times must be strictly increasing ({earlier} -> {later})")
        for c in counts:
            if not math.isfinite(c) or c < 0 or c != math.floor(c):
                raise ValueError(f"Counts must be non-negative integers, got {c}")
        object.__setattr__(self, "t0", float(self.t0))
        object.__setattr__(self, "times", times)
        object.__setattr__(self, "counts", counts)

    def __len__(self) -> int:
        return len(self.times)

    def __iter__(self) -> Iterator[Tuple[float, float]]:
        return iter(zip(self.times, self.counts))

    @staticmethod
    def from_rows(rows: Sequence[Tuple[float, float]]) -> "ObservationSeries":
        """
        Build a series from (time, count) rows.

        The first row defines t0; its count is not an observation.
        """
        rows = list(rows)
        if len(rows) < 2:
            raise ValueError("Need a t0 row and at least one observation row")
        t0 = rows[0][0]
        return ObservationSeries(t0, [r[0] for r in rows[1:]], [r[1] for r in rows[1:]])

    @staticmethod
    def from_csv(path: Union[str, Path], time_column: str = "time",
                 count_column: str = "count") -> "ObservationSeries":
        """Read a series from a CSV file with a header row."""
        with open(path, newline="") as f:
            reader = csv.DictReader(f)
            rows = [(float(r[time_column]), float(r[count_column])) for r in reader]
        return ObservationSeries.from_rows(rows)

    def to_rows(self) -> list:
        return [(self.t0, 0.0)] + list(zip(self.times, self.counts))


@dataclass(frozen=True)
class Scenario:
    """
    Model settings and search box for one inference problem.

    Parameters
    ----------
    model : str
        'sir' or 'seir'.
    measurement : str
        'binomial' or 'normal'.
    params : dict
        Natural-scale parameter values; fixed values plus defaults for the
        free ones.
    transforms : dict
        Free parameter -> transform name.
    box : dict
        Free parameter -> (lo, hi) search box.
    rw_sd : dict
        Random-walk sd per free parameter.
    windows : tuple of (start, end)
        Alternate transmission windows.
    duration : float
        Length of the simulated or observed period.
    t0 : float
        Initial time.
    dt : float
        Euler sub-step size.
    """

    model: str = "sir"
    measurement: str = "normal"
    params: Mapping[str, float] = field(default_factory=dict)
    transforms: Mapping[str, str] = field(default_factory=dict)
    box: Mapping[str, Tuple[float, float]] = field(default_factory=dict)
    rw_sd: Mapping[str, float] = field(default_factory=dict)
    windows: Tuple[Tuple[float, float], ...] = ()
    duration: float = 200.0
    t0: float = 0.0
    dt: float = 0.1

    def __post_init__(self):
        if self.model not in ("sir", "seir"):
            raise ValueError(f"Unknown model {self.model!r}")
        if self.measurement not in ("binomial", "normal"):
            raise ValueError(f"Unknown measurement {self.measurement!r}")
        for name, (lo, hi) in self.box.items():
            if not lo <= hi:
                raise ValueError(f"Box for {name!r} is empty: ({lo}, {hi})")
            if name not in self.transforms:
                raise ValueError(f"Box parameter {name!r} has no declared transform")
        object.__setattr__(self, "box", {k: (float(lo), float(hi)) for k, (lo, hi) in self.box.items()})
        object.__setattr__(self, "windows", tuple((float(a), float(b)) for a, b in self.windows))

    @staticmethod
    def from_config(cfg: Mapping[str, Any]) -> "Scenario":
        """
        Construct a Scenario from a configuration dictionary.

        Keys follow the field names; ``population`` and ``seeds`` are
        accepted as shorthands that are merged into ``params`` as ``N`` and
        the seed compartment names.
        """
        cfg = dict(cfg)
        params: Dict[str, float] = dict(cfg.pop("params", {}))
        if "population" in cfg:
            params["N"] = float(cfg.pop("population"))
        params.update({k: float(v) for k, v in cfg.pop("seeds", {}).items()})
        box = {k: tuple(v) for k, v in cfg.pop("box", {}).items()}
        windows = tuple(tuple(w) for w in cfg.pop("windows", ()))
        return Scenario(params=params, box=box, windows=windows, **cfg)

    @staticmethod
    def from_json(path: Union[str, Path]) -> "Scenario":
        with open(path) as f:
            return Scenario.from_config(json.load(f))

    @property
    def space(self) -> ParameterSpace:
        return ParameterSpace(self.transforms)

    @property
    def base_params(self) -> ParameterVector:
        return ParameterVector(self.params)
