from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import reduce

import numpy as np

from ._exceptions import ConfigurationError, EmptyBlock
from .distance import METRICS, DistanceMatrix, DistanceMatrixBuilder
from .units import UnitCatalog

logger = logging.getLogger(__name__)


# ── Constraints ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Caliper:
    """
    Forbid pairs whose distance on a source exceeds ``threshold``.

    The source is, in order of precedence: an explicit ``distance`` matrix,
    a matrix built from the catalog with ``metric`` / ``covariates`` /
    ``score``, or (when neither is given) the base matrix being constrained.
    A threshold of ``inf`` forbids nothing.
    """

    threshold: float
    distance: DistanceMatrix | None = field(default=None, compare=False)
    metric: str | None = None
    covariates: tuple = ()
    score: str | None = None

    def __post_init__(self) -> None:
        if not self.threshold >= 0:
            raise ConfigurationError(f"Caliper threshold must be >= 0; got {self.threshold}.")
        if self.metric is not None and self.metric not in METRICS:
            raise ConfigurationError(
                f"Unknown caliper metric '{self.metric}'. Choose from {list(METRICS)}."
            )
        if self.distance is not None and self.metric is not None:
            raise ConfigurationError("Give a caliper either a distance matrix or a metric, not both.")
        object.__setattr__(self, "covariates", tuple(self.covariates))

    def source(self, base: DistanceMatrix, catalog: UnitCatalog | None) -> DistanceMatrix:
        if self.distance is not None:
            return self.distance
        if self.metric is not None:
            if catalog is None:
                raise ConfigurationError("A metric caliper needs the unit catalog to build its source.")
            return DistanceMatrixBuilder(self.metric, self.covariates, self.score).build(catalog)
        return base

    def mask(self, base: DistanceMatrix, catalog: UnitCatalog | None = None) -> np.ndarray:
        src = self.source(base, catalog)
        values = src.values if src is base else src.aligned(base)
        return values > self.threshold


@dataclass(frozen=True)
class ExactMatch:
    """Forbid pairs whose values of the categorical ``column`` differ."""

    column: str

    def keys(self, catalog: UnitCatalog) -> dict:
        """Unit id → blocking key."""
        return catalog.values(self.column).to_dict()

    def mask(self, base: DistanceMatrix, catalog: UnitCatalog | None = None) -> np.ndarray:
        if catalog is None:
            raise ConfigurationError("Exact matching needs the unit catalog to read block keys.")
        keys = self.keys(catalog)
        kt = np.array([keys[t] for t in base.treated_ids], dtype=object)
        kc = np.array([keys[c] for c in base.control_ids], dtype=object)
        return kt[:, None] != kc[None, :]


@dataclass(frozen=True)
class Block:
    """An independent sub-problem: one blocking key and its distance matrix."""

    key: object
    distance: DistanceMatrix


# ── Applier ────────────────────────────────────────────────────────────────────

class ConstraintApplier:
    """
    Compose calipers and exact-match constraints into one forbidding mask.

    Constraints are folded left to right with a logical OR: a pair forbidden
    by any constraint is forbidden overall, so order never changes the
    result. The base matrix is never modified.

    Example::

        applier = ConstraintApplier([Caliper(0.2, metric="propensity", score="ps"),
                                     ExactMatch("sex")])
        blocks  = applier.partition(base, catalog)
    """

    def __init__(self, constraints=()) -> None:
        self._constraints = list(constraints)
        exact = [c for c in self._constraints if isinstance(c, ExactMatch)]
        if len(exact) > 1:
            raise ConfigurationError(
                f"At most one exact-match column is supported; got "
                f"{[c.column for c in exact]}. Combine them into one key column."
            )
        self._exact = exact[0] if exact else None

    @property
    def constraints(self) -> list:
        return list(self._constraints)

    def apply(self, base: DistanceMatrix, catalog: UnitCatalog | None = None) -> DistanceMatrix:
        """New matrix with every pair forbidden by some constraint set to ``FORBIDDEN``."""
        if not self._constraints:
            return base
        mask = reduce(
            np.logical_or,
            (c.mask(base, catalog) for c in self._constraints),
            np.zeros(base.shape, dtype=bool),
        )
        constrained = base.forbid(mask)
        logger.debug(
            "%d constraint(s) forbid %d of %d pairs",
            len(self._constraints), constrained.n_forbidden, base.values.size,
        )
        return constrained

    def partition(self, base: DistanceMatrix, catalog: UnitCatalog | None = None) -> list[Block]:
        """
        Apply the constraints and split the result into independent blocks.

        Without an exact-match constraint the whole matrix is a single block
        with key ``None``. With one, there is a block per key, in sorted key
        order.

        Raises
        ------
        ``EmptyBlock``
            If some key holds treated units but no comparison units, or the
            reverse.
        """
        constrained = self.apply(base, catalog)
        if self._exact is None:
            return [Block(None, constrained)]

        keys = self._exact.keys(catalog)
        by_key: dict = {}
        for t in constrained.treated_ids:
            by_key.setdefault(keys[t], ([], []))[0].append(t)
        for c in constrained.control_ids:
            by_key.setdefault(keys[c], ([], []))[1].append(c)

        empty = {}
        for key, (ts, cs) in by_key.items():
            if ts and not cs:
                empty[key] = "comparison"
            elif cs and not ts:
                empty[key] = "treated"
        if empty:
            raise EmptyBlock(self._exact.column, dict(sorted(empty.items(), key=lambda kv: str(kv[0]))))

        blocks = [
            Block(key, constrained.submatrix(ts, cs))
            for key, (ts, cs) in sorted(by_key.items(), key=lambda kv: str(kv[0]))
        ]
        logger.debug(
            "exact matching on '%s' gives %d block(s): %s",
            self._exact.column, len(blocks), [b.distance.shape for b in blocks],
        )
        return blocks
