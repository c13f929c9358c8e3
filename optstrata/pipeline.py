from __future__ import annotations

import logging
import threading

from .balance import BalanceReport, StrataEvaluator
from .config import DesignConfig
from .constraints import Block, ConstraintApplier
from .design import MatchedDesign
from .distance import DistanceMatrix, DistanceMatrixBuilder
from .solvers import OptimalMatchSolver
from .units import UnitCatalog

logger = logging.getLogger(__name__)


class OptimalStratification:
    """
    Build an optimally matched design from a unit catalog.

    Runs the whole construction for one ``DesignConfig``:

    1. Computes the base treated × comparison distance with the configured
       metric.
    2. Applies the calipers and the exact-match constraint, splitting the
       problem into one block per exact-match key.
    3. Solves each block as a minimum-cost flow (concurrently when
       ``n_jobs > 1``) and merges the blocks into one ``MatchedDesign``.

    Balance is then assessed with ``design.balance(catalog)``. If it is not
    acceptable, derive a new config (tighter calipers, other covariates) and
    fit again.

    Example::

        catalog = UnitCatalog.from_frame(df, id="id", treatment="treated")
        config  = DesignConfig(covariates=("age", "income"), exact_match="sex",
                               mode="full", max_controls=4)
        design  = OptimalStratification(config).fit(catalog)
        print(design.summary())
        print(design.balance(catalog).summary())
    """

    def __init__(self, config: DesignConfig) -> None:
        self._config = config

    @property
    def config(self) -> DesignConfig:
        return self._config

    def distance(self, catalog: UnitCatalog) -> DistanceMatrix:
        """The unconstrained base distance matrix."""
        cfg = self._config
        return DistanceMatrixBuilder(cfg.metric, cfg.covariates, cfg.score).build(catalog)

    def blocks(self, catalog: UnitCatalog) -> list[Block]:
        """The constrained, partitioned problem handed to the solver."""
        base = self.distance(catalog)
        return ConstraintApplier(self._config.constraints).partition(base, catalog)

    def fit(self, catalog: UnitCatalog, cancel: threading.Event | None = None) -> MatchedDesign:
        """
        Construct the design.

        Raises
        ------
        ``EmptyCovariateSet``, ``SingularCovariance``, ``DegenerateScore``
            If the base (or a caliper's) distance cannot be built.
        ``EmptyBlock``
            If an exact-match key lacks treated or comparison units.
        ``Infeasible``
            If some treated unit has no feasible stratum and exclusions are
            not allowed.
        ``SolveCancelled``
            If ``cancel`` is set before every block has been solved.
        """
        blocks = self.blocks(catalog)
        logger.info(
            "solving %d block(s) for %d treated and %d comparison unit(s)",
            len(blocks), len(catalog.treated_ids), len(catalog.control_ids),
        )
        return OptimalMatchSolver.from_config(self._config).solve(blocks, cancel=cancel)

    def fit_and_assess(self, catalog: UnitCatalog, covariates=None) -> tuple[MatchedDesign, BalanceReport]:
        """Construct the design and assess balance on ``covariates`` (default: all)."""
        design = self.fit(catalog)
        return design, StrataEvaluator(covariates).evaluate(design, catalog)

    def __repr__(self) -> str:
        return f"OptimalStratification({self._config!r})"
