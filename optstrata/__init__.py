import logging

from .units import Unit, UnitCatalog
from .distance import (
    DistanceMatrix, DistanceMatrixBuilder, FORBIDDEN,
    absolute_distance, rank_mahalanobis_distance, propensity_distance, propensity_scores,
)
from .constraints import Block, Caliper, ConstraintApplier, ExactMatch
from .config import DesignConfig
from .design import MatchedDesign, Stratum
from .solvers import OptimalMatchSolver
from .balance import BalanceReport, StrataEvaluator, unstratified
from .pipeline import OptimalStratification
from ._assumptions import Assumption
from ._exceptions import (
    OptStrataError, ConfigurationError,
    EmptyCovariateSet, SingularCovariance, DegenerateScore,
    EmptyBlock, Infeasible, SolveCancelled,
    EmptyDesign, DegenerateStratification,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "Unit", "UnitCatalog",
    "DistanceMatrix", "DistanceMatrixBuilder", "FORBIDDEN",
    "absolute_distance", "rank_mahalanobis_distance", "propensity_distance", "propensity_scores",
    "Block", "Caliper", "ConstraintApplier", "ExactMatch",
    "DesignConfig",
    "MatchedDesign", "Stratum",
    "OptimalMatchSolver",
    "BalanceReport", "StrataEvaluator", "unstratified",
    "OptimalStratification",
    "Assumption",
    "OptStrataError", "ConfigurationError",
    "EmptyCovariateSet", "SingularCovariance", "DegenerateScore",
    "EmptyBlock", "Infeasible", "SolveCancelled",
    "EmptyDesign", "DegenerateStratification",
]
