from __future__ import annotations

import dataclasses
from dataclasses import dataclass

from ._exceptions import ConfigurationError
from .constraints import Caliper, ExactMatch
from .distance import METRICS

MODES    = ("pair", "full")
BACKENDS = ("flow", "linprog")


@dataclass(frozen=True)
class DesignConfig:
    """
    Everything that determines a matched design, as one immutable value.

    A design is iterated on by deriving a new config with ``replace()`` and
    re-running, never by mutating one in place::

        config = DesignConfig(covariates=("age", "income"), mode="full", max_controls=3)
        looser = config.replace(calipers=(Caliper(0.5, metric="propensity", score="ps"),))

    Attributes
    ----------
    covariates : tuple[str, ...]
        Covariates the base distance is computed on.
    metric : str
        ``"absolute"``, ``"rank_mahalanobis"`` or ``"propensity"``.
    score : str, optional
        Catalog column holding the fitted propensity score (propensity metric).
    calipers : tuple[Caliper, ...]
        Caliper constraints applied on top of the base distance.
    exact_match : str, optional
        Categorical column whose values every stratum must share.
    mode : str
        ``"pair"`` (1 treated : 1 comparison) or ``"full"`` (1 treated :
        ``min_controls``..``max_controls`` comparisons).
    min_controls, max_controls : int
        Bounds on comparisons per stratum in full mode. ``max_controls=None``
        leaves the upper bound open.
    allow_exclusion : bool
        Exclude treated units that cannot be satisfied instead of failing.
    tolerance : float
        Total costs within ``tolerance`` of the optimum count as tied. The
        returned design never costs more than the optimum plus ``tolerance``.
    backend : str
        ``"flow"`` (successive shortest paths, pure Python) or ``"linprog"``
        (HiGHS dual simplex). Use ``"linprog"`` for large designs: it is far
        faster once a block has tens of thousands of allowed pairs.
    n_jobs : int
        Worker threads used to solve exact-match blocks concurrently.
    """

    covariates: tuple = ()
    metric: str = "rank_mahalanobis"
    score: str | None = None
    calipers: tuple = ()
    exact_match: str | None = None
    mode: str = "pair"
    min_controls: int = 1
    max_controls: int | None = None
    allow_exclusion: bool = False
    tolerance: float = 1e-9
    backend: str = "flow"
    n_jobs: int = 1

    def __post_init__(self) -> None:
        object.__setattr__(self, "covariates", tuple(self.covariates))
        object.__setattr__(self, "calipers", tuple(self.calipers))

        if self.metric not in METRICS:
            raise ConfigurationError(f"Unknown metric '{self.metric}'. Choose from {list(METRICS)}.")
        if self.mode not in MODES:
            raise ConfigurationError(f"Unknown mode '{self.mode}'. Choose from {list(MODES)}.")
        if self.backend not in BACKENDS:
            raise ConfigurationError(f"Unknown backend '{self.backend}'. Choose from {list(BACKENDS)}.")
        if self.metric == "propensity" and self.score is None and len(self.covariates) != 1:
            raise ConfigurationError(
                "The propensity metric needs `score` (or a single covariate holding the score)."
            )
        if self.metric == "absolute" and len(self.covariates) > 1:
            raise ConfigurationError(
                f"The absolute metric uses a single covariate; got {list(self.covariates)}."
            )
        for cal in self.calipers:
            if not isinstance(cal, Caliper):
                raise ConfigurationError(f"Calipers must be Caliper instances; got {cal!r}.")
        if self.min_controls < 1:
            raise ConfigurationError(f"min_controls must be >= 1; got {self.min_controls}.")
        if self.max_controls is not None and self.max_controls < self.min_controls:
            raise ConfigurationError(
                f"max_controls ({self.max_controls}) is below min_controls ({self.min_controls})."
            )
        if self.mode == "pair" and (self.min_controls != 1 or self.max_controls not in (None, 1)):
            raise ConfigurationError("Pair matching fixes one comparison per stratum; leave the bounds unset.")
        if not self.tolerance >= 0:
            raise ConfigurationError(f"tolerance must be >= 0; got {self.tolerance}.")
        if self.n_jobs < 1:
            raise ConfigurationError(f"n_jobs must be >= 1; got {self.n_jobs}.")

    @property
    def constraints(self) -> list:
        """Calipers followed by the exact-match constraint, if any."""
        out = list(self.calipers)
        if self.exact_match is not None:
            out.append(ExactMatch(self.exact_match))
        return out

    def replace(self, **changes) -> DesignConfig:
        """A copy of this config with ``changes`` applied (and re-validated)."""
        return dataclasses.replace(self, **changes)
