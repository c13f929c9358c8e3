from __future__ import annotations


class OptStrataError(Exception):
    """Base class for every error raised while building or assessing a design."""
    pass


class ConfigurationError(OptStrataError, ValueError):
    """Raised when a ``DesignConfig`` or ``Caliper`` is internally inconsistent."""
    pass


# ── Distance construction ──────────────────────────────────────────────────────

class EmptyCovariateSet(OptStrataError):
    """Raised when a distance is requested over zero covariates."""
    pass


class SingularCovariance(OptStrataError):
    """
    Raised when the rank covariance used by the rank-based Mahalanobis
    distance cannot be inverted (a constant covariate, or covariates whose
    ranks are collinear).
    """

    def __init__(self, covariates: list[str], message: str | None = None) -> None:
        self.covariates = list(covariates)
        if message is None:
            message = (
                f"Rank covariance of {self.covariates} is singular. "
                f"Drop constant or perfectly collinear covariates."
            )
        super().__init__(message)


class DegenerateScore(OptStrataError):
    """
    Raised when a propensity score cannot be standardised: it has zero pooled
    within-arm variance, or there are too few units to estimate one.
    """

    def __init__(self, score: str, message: str | None = None) -> None:
        self.score = score
        if message is None:
            message = (
                f"Propensity score '{score}' has zero pooled standard deviation; "
                f"it cannot be standardised into a distance."
            )
        super().__init__(message)


# ── Constraints ────────────────────────────────────────────────────────────────

class EmptyBlock(OptStrataError):
    """
    Raised when an exact-match block holds units of only one treatment arm.

    ``keys`` maps every offending blocking key to the arm it lacks
    (``"treated"`` or ``"comparison"``).
    """

    def __init__(self, column: str, keys: dict) -> None:
        self.column = column
        self.keys = dict(keys)
        listing = ", ".join(f"{k!r} (no {side} units)" for k, side in self.keys.items())
        super().__init__(
            f"Exact matching on '{column}' leaves blocks that cannot form a "
            f"stratum: {listing}. Exclude those units or merge the blocks."
        )


# ── Solver ─────────────────────────────────────────────────────────────────────

class Infeasible(OptStrataError):
    """
    Raised when the constrained problem admits no design that satisfies
    every treated unit. ``unit_ids`` lists the treated units that could not
    be given a feasible stratum; ``blocks`` lists the blocks they belong to.
    """

    def __init__(self, unit_ids: list, blocks: list | None = None, reason: str = "") -> None:
        self.unit_ids = list(unit_ids)
        self.blocks = list(blocks or [])
        where = f" in block(s) {self.blocks}" if any(b is not None for b in self.blocks) else ""
        message = (
            f"No feasible stratum for treated unit(s) {self.unit_ids}{where}."
        )
        if reason:
            message += f" {reason}"
        message += (
            " Relax the calipers or set-size bounds, or set allow_exclusion=True."
        )
        super().__init__(message)


class SolveCancelled(OptStrataError):
    """Raised when a multi-block solve is abandoned between blocks."""

    def __init__(self, completed_blocks: list) -> None:
        self.completed_blocks = list(completed_blocks)
        super().__init__(
            f"Solve cancelled after {len(self.completed_blocks)} block(s)."
        )


# ── Balance assessment ─────────────────────────────────────────────────────────

class EmptyDesign(OptStrataError):
    """Raised when a design assigns no units to any stratum."""
    pass


class DegenerateStratification(OptStrataError):
    """
    Raised when no stratum contains both treated and comparison units, so no
    within-stratum difference can be formed.
    """

    def __init__(self, strata: list) -> None:
        self.strata = list(strata)
        super().__init__(
            f"Every stratum lacks either treated or comparison units "
            f"(strata: {self.strata}); the balance statistic is undefined."
        )
